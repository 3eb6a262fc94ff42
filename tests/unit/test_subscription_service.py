"""Unit tests for the subscription lifecycle and credit metering."""

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from storyscene.config import BillingConfig
from storyscene.errors import (
    CreditLimitReachedError,
    ForbiddenError,
    InvalidPlanChangeError,
    NoActiveSubscriptionError,
    PaymentMethodError,
    PaymentMethodNotFoundError,
    PlanNotFoundError,
    ProviderError,
    SubscriptionError,
)
from storyscene.models.subscription import (
    BillingCycle,
    LogEventType,
    PaymentMethodSummary,
    PaymentProvider,
    PaymentStatus,
    PendingDowngrade,
    PlanName,
    UsageSummary,
)

START = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def _stripe_subscription(sub_id: str, price_id: str, *, status: str = "active") -> dict:
    return {
        "id": sub_id,
        "status": status,
        "customer": "cus_1",
        "items": {"data": [{"id": "si_1", "price": {"id": price_id}}]},
        "current_period_end": int((START + timedelta(days=30)).timestamp()),
        "metadata": {"user_id": "user-1"},
    }


def _invoice_event(
    event_id: str,
    *,
    subscription_id: str,
    price_id: str,
    event_type: str = "invoice.payment_succeeded",
    invoice_id: str = "in_1",
    payment_intent: str = "pi_1",
    customer: str = "cus_1",
    period_end: datetime | None = None,
) -> dict:
    return {
        "id": event_id,
        "type": event_type,
        "data": {
            "object": {
                "id": invoice_id,
                "customer": customer,
                "subscription": subscription_id,
                "payment_intent": payment_intent,
                "amount_paid": 1900,
                "amount_due": 1900,
                "currency": "usd",
                "number": "INV-0001",
                "attempt_count": 1,
                "billing_reason": "subscription_cycle",
                "lines": {
                    "data": [
                        {
                            "price": {"id": price_id},
                            "period": {"end": int((period_end or START + timedelta(days=30)).timestamp())},
                        }
                    ]
                },
            }
        },
    }


def _paypal_event(event_id: str, event_type: str, resource: dict) -> dict:
    return {"id": event_id, "event_type": event_type, "resource": resource}


def _events(repo, event_type: LogEventType) -> list:
    return [log for log in repo.logs if log.event_type == event_type]


class TestAccounts:
    async def test_new_account_gets_free_allotment(self, make_service):
        service, _, _ = make_service()

        account = await service.get_or_create_account("user-1", "user@example.com")

        sub = account.subscription
        assert sub.plan == PlanName.FREE
        assert sub.credits_total == 2
        assert sub.credits_used == 0
        assert sub.is_active is True
        assert sub.cycle_end_date == START + timedelta(days=30)

    async def test_usage_reports_days_until_reset(self, make_service):
        service, _, clock = make_service()
        await service.get_or_create_account("user-1")
        clock.advance(timedelta(days=10))

        usage = await service.get_usage("user-1")

        assert usage.days_until_reset == 20
        assert usage.credits_remaining == 2

    async def test_status_includes_plan_details_for_paid_plan(self, make_service, subscribe):
        service, _, _ = make_service()
        await subscribe(service, plan=PlanName.GROWTH)

        status = await service.get_status("user-1")

        assert status.plan_details is not None
        assert status.plan_details.name == PlanName.GROWTH
        assert status.subscription.credits_total == 50

    async def test_plans_are_sorted_with_savings(self, make_service):
        service, _, _ = make_service()

        plans = await service.list_plans()

        assert [p.name for p in plans] == [PlanName.STARTER, PlanName.GROWTH, PlanName.SCALE]
        assert plans[0].savings_amount == 38
        assert plans[0].savings_percentage == 17


class TestUseCredits:
    async def test_consumes_one_credit(self, make_service):
        service, _, _ = make_service()

        usage = await service.use_credits("user-1")

        assert usage.credits_used == 1
        assert usage.credits_remaining == 1

    async def test_refuses_when_allotment_exhausted_without_mutation(self, make_service):
        service, repo, _ = make_service()
        await service.use_credits("user-1", 2)

        with pytest.raises(CreditLimitReachedError) as exc_info:
            await service.use_credits("user-1")

        assert exc_info.value.status_code == 400
        assert exc_info.value.credits_used == 2
        account = await repo.get_account("user-1")
        assert account.subscription.credits_used == 2

    async def test_batch_larger_than_remaining_is_refused(self, make_service, subscribe):
        service, repo, _ = make_service()
        await subscribe(service, credits_used=8)

        with pytest.raises(CreditLimitReachedError):
            await service.use_credits("user-1", 3)

        assert (await repo.get_account("user-1")).subscription.credits_used == 8

    async def test_rejects_non_positive_amount(self, make_service):
        service, _, _ = make_service()

        with pytest.raises(SubscriptionError):
            await service.use_credits("user-1", 0)

    async def test_concurrent_consumption_never_overdraws(self, make_service, subscribe):
        service, repo, _ = make_service()
        await subscribe(service)

        results = await asyncio.gather(
            *(service.use_credits("user-1") for _ in range(15)),
            return_exceptions=True,
        )

        successes = [r for r in results if isinstance(r, UsageSummary)]
        refusals = [r for r in results if isinstance(r, CreditLimitReachedError)]
        assert len(successes) == 10
        assert len(refusals) == 5
        assert (await repo.get_account("user-1")).subscription.credits_used == 10


class TestUpgrade:
    async def test_upgrade_preserves_usage_and_sets_new_allotment(self, make_service, subscribe, fake_stripe):
        service, repo, _ = make_service()
        await subscribe(service, credits_used=3)

        quote, account = await service.upgrade("user-1", PlanName.GROWTH)

        sub = account.subscription
        assert sub.plan == PlanName.GROWTH
        assert sub.credits_total == 50
        assert sub.credits_used == 3
        assert sub.credits_remaining == 47
        assert sub.price_id == "price_growth_monthly"
        assert quote.prorated_amount == 30.0
        assert fake_stripe.price_updates == [("sub_1", "price_growth_monthly", 30.0)]
        assert len(_events(repo, LogEventType.PLAN_CHANGED)) == 1

    async def test_mid_cycle_upgrade_adds_prorated_credits_when_enabled(self, make_service, subscribe):
        service, _, clock = make_service(config=BillingConfig(prorate_upgrade_credits=True))
        await subscribe(service, credits_used=3)
        clock.advance(timedelta(days=15))

        quote, account = await service.upgrade("user-1", PlanName.GROWTH)

        assert quote.days_remaining == 15
        assert quote.prorated_amount == 15.0
        assert quote.additional_credits == 20
        assert account.subscription.credits_total == 70
        assert account.subscription.credits_used == 3

    async def test_rejects_plan_that_is_not_more_expensive(self, make_service, subscribe, fake_stripe):
        service, repo, _ = make_service()
        await subscribe(service, plan=PlanName.GROWTH)

        with pytest.raises(InvalidPlanChangeError):
            await service.upgrade("user-1", PlanName.STARTER)
        with pytest.raises(InvalidPlanChangeError):
            await service.upgrade("user-1", PlanName.GROWTH)

        assert fake_stripe.price_updates == []
        assert (await repo.get_account("user-1")).subscription.plan == PlanName.GROWTH

    async def test_requires_active_paid_subscription(self, make_service):
        service, _, _ = make_service()
        await service.get_or_create_account("user-1")

        with pytest.raises(NoActiveSubscriptionError):
            await service.upgrade("user-1", PlanName.GROWTH)

    async def test_provider_failure_leaves_account_unchanged(self, make_service, subscribe, fake_stripe):
        service, repo, _ = make_service()
        await subscribe(service, credits_used=3)
        fake_stripe.update_error = ProviderError("stripe", "Stripe error: card declined")

        with pytest.raises(ProviderError):
            await service.upgrade("user-1", PlanName.GROWTH)

        sub = (await repo.get_account("user-1")).subscription
        assert sub.plan == PlanName.STARTER
        assert sub.credits_total == 10

    async def test_paypal_upgrade_revises_billing_plan(self, make_service, subscribe, fake_paypal):
        service, _, _ = make_service()
        await subscribe(service, provider=PaymentProvider.PAYPAL, subscription_id="I-1")

        await service.upgrade("user-1", PlanName.SCALE)

        assert fake_paypal.revised == [("I-1", "P-SCALE-M")]

    async def test_upgrade_clears_pending_downgrade(self, make_service, subscribe):
        service, _, _ = make_service()
        await subscribe(service, plan=PlanName.GROWTH)
        await service.downgrade("user-1", PlanName.STARTER)

        _, account = await service.upgrade("user-1", PlanName.SCALE)

        assert account.subscription.pending_downgrade is None


class TestDowngrade:
    async def test_schedules_downgrade_at_cycle_end(self, make_service, subscribe, fake_stripe):
        service, repo, _ = make_service()
        await subscribe(service, plan=PlanName.GROWTH, credits_used=5)

        account = await service.downgrade("user-1", PlanName.STARTER)

        sub = account.subscription
        assert sub.plan == PlanName.GROWTH
        assert sub.credits_total == 50
        assert sub.pending_downgrade.plan == PlanName.STARTER
        assert sub.pending_downgrade.scheduled_date == START + timedelta(days=30)
        assert fake_stripe.scheduled_changes == [("sub_1", "price_starter_monthly")]
        assert len(_events(repo, LogEventType.SUBSCRIPTION_UPDATED)) == 1

    @pytest.mark.parametrize("target", [PlanName.GROWTH, PlanName.SCALE, PlanName.FREE])
    async def test_rejects_plan_that_is_not_cheaper(self, make_service, subscribe, target):
        service, repo, _ = make_service()
        await subscribe(service, plan=PlanName.GROWTH)

        with pytest.raises(InvalidPlanChangeError):
            await service.downgrade("user-1", target)

        assert (await repo.get_account("user-1")).subscription.pending_downgrade is None


class TestCancel:
    async def test_cancel_reverts_to_free_and_keeps_counters(self, make_service, subscribe, fake_stripe):
        service, repo, _ = make_service()
        await subscribe(service, credits_used=3)

        account = await service.cancel("user-1", "too expensive")

        sub = account.subscription
        assert sub.plan == PlanName.FREE
        assert sub.is_active is False
        assert sub.is_canceled is True
        assert sub.canceled_at == START
        assert sub.credits_used == 3
        assert sub.credits_total == 10
        assert sub.stripe_subscription_id is None
        assert fake_stripe.cancelled == ["sub_1"]
        log = _events(repo, LogEventType.SUBSCRIPTION_CANCELLED)[0]
        assert log.successful is True
        assert log.plan_name == PlanName.STARTER

    async def test_provider_failure_still_cancels_locally(self, make_service, subscribe, fake_stripe):
        service, repo, _ = make_service()
        await subscribe(service)
        fake_stripe.cancel_error = ProviderError("stripe", "Stripe error: boom")

        account = await service.cancel("user-1")

        assert account.subscription.plan == PlanName.FREE
        log = _events(repo, LogEventType.SUBSCRIPTION_CANCELLED)[0]
        assert log.successful is False
        assert log.error_message == "Stripe error: boom"

    async def test_paypal_cancel_passes_reason(self, make_service, subscribe, fake_paypal):
        service, _, _ = make_service()
        await subscribe(service, provider=PaymentProvider.PAYPAL, subscription_id="I-1")

        await service.cancel("user-1", "switching tools")

        assert fake_paypal.cancelled == [("I-1", "switching tools")]

    async def test_cancel_without_subscription_fails(self, make_service):
        service, _, _ = make_service()
        await service.get_or_create_account("user-1")

        with pytest.raises(NoActiveSubscriptionError):
            await service.cancel("user-1")


class TestCreditsDuringPlanChange:
    """Credits spent while a provider call is pending survive the plan change."""

    async def test_upgrade_keeps_credit_consumed_mid_call(self, make_service, subscribe, fake_stripe):
        service, repo, _ = make_service()
        await subscribe(service, credits_used=3)
        fake_stripe.gate = asyncio.Event()

        upgrade = asyncio.create_task(service.upgrade("user-1", PlanName.GROWTH))
        await fake_stripe.entered.wait()
        await repo.consume_credits("user-1", 1)
        fake_stripe.gate.set()
        _, account = await upgrade

        assert account.subscription.credits_used == 4
        assert (await repo.get_account("user-1")).subscription.credits_used == 4

    async def test_cancel_keeps_credit_consumed_mid_call(self, make_service, subscribe, fake_stripe):
        service, repo, _ = make_service()
        await subscribe(service, credits_used=9)
        fake_stripe.gate = asyncio.Event()

        cancel = asyncio.create_task(service.cancel("user-1"))
        await fake_stripe.entered.wait()
        await repo.consume_credits("user-1", 1)
        fake_stripe.gate.set()
        account = await cancel

        assert account.subscription.plan == PlanName.FREE
        assert account.subscription.credits_used == 10
        assert (await repo.get_account("user-1")).subscription.credits_used == 10

    async def test_downgrade_keeps_credit_consumed_mid_call(self, make_service, subscribe, fake_stripe):
        service, repo, _ = make_service()
        await subscribe(service, plan=PlanName.GROWTH, credits_used=5)
        fake_stripe.gate = asyncio.Event()

        downgrade = asyncio.create_task(service.downgrade("user-1", PlanName.STARTER))
        await fake_stripe.entered.wait()
        await repo.consume_credits("user-1", 2)
        fake_stripe.gate.set()
        account = await downgrade

        assert account.subscription.credits_used == 7
        assert account.subscription.pending_downgrade.plan == PlanName.STARTER

    async def test_use_credits_waits_for_pending_upgrade(self, make_service, subscribe, fake_stripe):
        service, repo, _ = make_service()
        await subscribe(service, credits_used=3)
        fake_stripe.gate = asyncio.Event()

        upgrade = asyncio.create_task(service.upgrade("user-1", PlanName.GROWTH))
        await fake_stripe.entered.wait()
        use = asyncio.create_task(service.use_credits("user-1"))
        await asyncio.sleep(0)
        assert not use.done()

        fake_stripe.gate.set()
        await upgrade
        usage = await use

        assert usage.credits_used == 4
        assert usage.credits_total == 50
        assert (await repo.get_account("user-1")).subscription.credits_used == 4


class TestPurchaseFlows:
    async def test_checkout_session_uses_plan_from_price(self, make_service, fake_stripe):
        service, repo, _ = make_service()

        session = await service.create_checkout_session("user-1", "user@example.com", "price_growth_yearly")

        assert session["url"] == "https://checkout.test/session"
        call = fake_stripe.checkout_calls[0]
        assert call["metadata"] == {"plan": "growth", "billing_cycle": "yearly"}
        assert call["success_url"] == "https://app.test/payment-success?session_id={CHECKOUT_SESSION_ID}"
        assert (await repo.get_account("user-1")).stripe_customer_id == "cus_test"

    async def test_checkout_session_unknown_price(self, make_service):
        service, _, _ = make_service()

        with pytest.raises(PlanNotFoundError):
            await service.create_checkout_session("user-1", None, "price_unknown")

    async def test_stripe_not_configured(self, make_service):
        service, _, _ = make_service(with_providers=False)

        with pytest.raises(SubscriptionError) as exc_info:
            await service.create_checkout_session("user-1", None, "price_starter_monthly")

        assert exc_info.value.status_code == 503

    async def test_payment_intent_success_activates_and_records_payment(self, make_service):
        service, repo, _ = make_service()

        result = await service.subscribe_with_payment_method(
            "user-1", "user@example.com", "price_starter_monthly", "pm_1"
        )

        assert result["status"] == "active"
        assert result["requires_action"] is False
        account = await repo.get_account("user-1")
        assert account.subscription.plan == PlanName.STARTER
        assert account.subscription.stripe_subscription_id == "sub_pi"
        assert account.payment_method.id == "pm_1"
        payment = repo.payments["pi_1"]
        assert payment.amount == 19.0
        assert payment.status == PaymentStatus.SUCCEEDED

    async def test_invoice_webhook_after_payment_intent_does_not_double_write(self, make_service):
        service, repo, _ = make_service()
        await service.subscribe_with_payment_method("user-1", None, "price_starter_monthly", "pm_1")
        await service.use_credits("user-1")

        await service.handle_stripe_event(
            _invoice_event(
                "evt_pi",
                subscription_id="sub_pi",
                price_id="price_starter_monthly",
                invoice_id="in_pi",
                customer="cus_test",
            )
        )

        assert list(repo.payments) == ["pi_1"]
        assert (await repo.get_account("user-1")).subscription.credits_used == 1

    async def test_payment_intent_requiring_action_returns_client_secret(self, make_service, fake_stripe):
        service, repo, _ = make_service()
        fake_stripe.intent_status = "requires_action"

        result = await service.subscribe_with_payment_method("user-1", None, "price_starter_monthly", "pm_1")

        assert result["requires_action"] is True
        assert result["client_secret"] == "pi_1_secret"
        assert (await repo.get_account("user-1")).subscription.plan == PlanName.FREE
        assert repo.payments == {}

    async def test_invalid_payment_method_is_forgotten(self, make_service, fake_stripe):
        service, repo, _ = make_service()
        account = await service.get_or_create_account("user-1")
        stale = PaymentMethodSummary(id="pm_bad", brand="visa", last4="0002")
        account.payment_method = stale
        account.payment_methods = [stale]
        await repo.upsert_account(account)
        fake_stripe.create_error = PaymentMethodError("Invalid payment method: pm_bad")

        with pytest.raises(PaymentMethodError):
            await service.subscribe_with_payment_method("user-1", None, "price_starter_monthly", "pm_bad")

        account = await repo.get_account("user-1")
        assert account.payment_methods == []
        assert account.payment_method is None

    async def test_remove_default_card_clears_default(self, make_service):
        service, repo, _ = make_service()
        account = await service.get_or_create_account("user-1")
        old = PaymentMethodSummary(id="pm_old", brand="visa", last4="1111")
        current = PaymentMethodSummary(id="pm_cur", brand="amex", last4="0005")
        account.payment_methods = [old, current]
        account.payment_method = current
        await repo.upsert_account(account)

        stored = await service.remove_payment_method("user-1", "pm_cur")

        assert [pm.id for pm in stored.payment_methods] == ["pm_old"]
        assert stored.payment_method is None
        assert [pm.id for pm in await service.list_payment_methods("user-1")] == ["pm_old"]

    async def test_remove_unknown_card(self, make_service):
        service, _, _ = make_service()
        await service.get_or_create_account("user-1")

        with pytest.raises(PaymentMethodNotFoundError):
            await service.remove_payment_method("user-1", "pm_missing")

    async def test_verify_session_rejects_other_users_session(self, make_service, fake_stripe):
        service, _, _ = make_service()
        fake_stripe.sessions["cs_1"] = {
            "id": "cs_1",
            "client_reference_id": "someone-else",
            "subscription": _stripe_subscription("sub_cs", "price_starter_monthly"),
        }

        with pytest.raises(ForbiddenError):
            await service.verify_checkout_session("user-1", "cs_1")

    async def test_verify_session_activates_once(self, make_service, fake_stripe):
        service, repo, _ = make_service()
        fake_stripe.sessions["cs_1"] = {
            "id": "cs_1",
            "client_reference_id": "user-1",
            "customer": "cus_1",
            "subscription": _stripe_subscription("sub_cs", "price_starter_monthly"),
        }

        account = await service.verify_checkout_session("user-1", "cs_1")
        await service.use_credits("user-1")
        again = await service.verify_checkout_session("user-1", "cs_1")

        assert account.subscription.plan == PlanName.STARTER
        assert account.subscription.credits_total == 10
        assert again.subscription.credits_used == 1
        assert len(_events(repo, LogEventType.SUBSCRIPTION_CREATED)) == 1

    async def test_paypal_activation(self, make_service, fake_paypal):
        service, _, _ = make_service()
        fake_paypal.subscriptions["I-1"] = {
            "id": "I-1",
            "status": "ACTIVE",
            "plan_id": "P-GROWTH-M",
            "custom_id": "user-1",
            "billing_info": {"next_billing_time": "2026-04-01T10:00:00Z"},
        }

        account = await service.activate_paypal_subscription("user-1", None, "I-1")

        sub = account.subscription
        assert sub.plan == PlanName.GROWTH
        assert sub.paypal_subscription_id == "I-1"
        assert sub.billing_cycle == BillingCycle.MONTHLY
        assert sub.end_date == datetime(2026, 4, 1, 10, 0, tzinfo=UTC)

    async def test_paypal_activation_requires_active_status(self, make_service, fake_paypal):
        service, _, _ = make_service()
        fake_paypal.subscriptions["I-1"] = {"id": "I-1", "status": "SUSPENDED", "plan_id": "P-GROWTH-M"}

        with pytest.raises(SubscriptionError, match="SUSPENDED"):
            await service.activate_paypal_subscription("user-1", None, "I-1")

    async def test_paypal_activation_unknown_plan(self, make_service, fake_paypal):
        service, _, _ = make_service()
        fake_paypal.subscriptions["I-1"] = {"id": "I-1", "status": "ACTIVE", "plan_id": "P-OTHER"}

        with pytest.raises(PlanNotFoundError):
            await service.activate_paypal_subscription("user-1", None, "I-1")


class TestStripeWebhooks:
    async def test_invoice_for_new_subscription_resets_usage(self, make_service):
        service, repo, _ = make_service()
        account = await service.get_or_create_account("user-1")
        account.stripe_customer_id = "cus_1"
        account.subscription.credits_used = 2
        await repo.upsert_account(account)

        processed = await service.handle_stripe_event(
            _invoice_event("evt_1", subscription_id="sub_new", price_id="price_starter_monthly", payment_intent="pi_new")
        )

        assert processed is True
        sub = (await repo.get_account("user-1")).subscription
        assert sub.plan == PlanName.STARTER
        assert sub.credits_used == 0
        assert sub.credits_total == 10
        assert sub.stripe_subscription_id == "sub_new"
        assert repo.payments["pi_new"].amount == 19.0
        assert repo.payments["pi_new"].receipt_url == "https://receipt.test/in_1"

    async def test_invoice_for_upgrade_preserves_usage(self, make_service, subscribe):
        service, repo, _ = make_service()
        await subscribe(service, credits_used=3)

        await service.handle_stripe_event(
            _invoice_event("evt_1", subscription_id="sub_1", price_id="price_growth_monthly")
        )

        sub = (await repo.get_account("user-1")).subscription
        assert sub.plan == PlanName.GROWTH
        assert sub.credits_total == 50
        assert sub.credits_used == 3
        assert repo.payments["pi_1"].metadata["kind"] == "upgrade"

    async def test_renewal_preserves_usage_and_extends_period(self, make_service, subscribe):
        service, repo, _ = make_service()
        await subscribe(service, credits_used=4)
        period_end = START + timedelta(days=60)

        await service.handle_stripe_event(
            _invoice_event(
                "evt_1",
                subscription_id="sub_1",
                price_id="price_starter_monthly",
                period_end=period_end,
            )
        )

        sub = (await repo.get_account("user-1")).subscription
        assert sub.credits_used == 4
        assert sub.end_date == period_end
        assert sub.payment_failed is False

    async def test_replayed_event_writes_one_ledger_row(self, make_service, subscribe):
        service, repo, _ = make_service()
        await subscribe(service)
        event = _invoice_event("evt_1", subscription_id="sub_1", price_id="price_starter_monthly")

        first = await service.handle_stripe_event(event)
        second = await service.handle_stripe_event(event)

        assert first is True
        assert second is False
        assert len(repo.payments) == 1

    async def test_same_payment_from_two_events_writes_one_row(self, make_service, subscribe):
        service, repo, _ = make_service()
        await subscribe(service)

        await service.handle_stripe_event(
            _invoice_event("evt_a", subscription_id="sub_1", price_id="price_starter_monthly")
        )
        await service.handle_stripe_event(
            _invoice_event(
                "evt_b",
                subscription_id="sub_1",
                price_id="price_starter_monthly",
                event_type="invoice.paid",
            )
        )

        assert len(repo.payments) == 1
        assert len(_events(repo, LogEventType.PAYMENT_SUCCEEDED)) == 1

    async def test_failed_invoice_flags_account_and_records_failure(self, make_service, subscribe):
        service, repo, _ = make_service()
        await subscribe(service)

        await service.handle_stripe_event(
            _invoice_event(
                "evt_f",
                subscription_id="sub_1",
                price_id="price_starter_monthly",
                event_type="invoice.payment_failed",
                invoice_id="in_2",
                payment_intent="pi_2",
            )
        )

        assert (await repo.get_account("user-1")).subscription.payment_failed is True
        payment = repo.payments["failed:in_2:1"]
        assert payment.status == PaymentStatus.FAILED
        assert payment.payment_id == "pi_2"
        assert _events(repo, LogEventType.PAYMENT_FAILED)[0].successful is False

    async def test_subscription_deleted_reverts_to_free(self, make_service, subscribe):
        service, repo, _ = make_service()
        await subscribe(service, credits_used=3)

        await service.handle_stripe_event(
            {
                "id": "evt_d",
                "type": "customer.subscription.deleted",
                "data": {"object": {"id": "sub_1", "customer": "cus_1"}},
            }
        )

        sub = (await repo.get_account("user-1")).subscription
        assert sub.plan == PlanName.FREE
        assert sub.credits_used == 3
        assert sub.credits_total == 10
        assert sub.canceled_at == START

    async def test_deletion_of_other_subscription_is_ignored(self, make_service, subscribe):
        service, repo, _ = make_service()
        await subscribe(service)

        await service.handle_stripe_event(
            {
                "id": "evt_d",
                "type": "customer.subscription.deleted",
                "data": {"object": {"id": "sub_old", "customer": "cus_1"}},
            }
        )

        assert (await repo.get_account("user-1")).subscription.plan == PlanName.STARTER

    async def test_checkout_completed_activates_subscription(self, make_service, fake_stripe):
        service, repo, _ = make_service()
        await service.get_or_create_account("user-1")
        fake_stripe.subscriptions["sub_9"] = _stripe_subscription("sub_9", "price_growth_monthly")

        await service.handle_stripe_event(
            {
                "id": "evt_c",
                "type": "checkout.session.completed",
                "data": {"object": {"client_reference_id": "user-1", "customer": "cus_1", "subscription": "sub_9"}},
            }
        )

        account = await repo.get_account("user-1")
        assert account.subscription.plan == PlanName.GROWTH
        assert account.stripe_customer_id == "cus_1"

    async def test_failed_handler_releases_event_for_retry(self, make_service, fake_stripe):
        service, repo, _ = make_service()
        await service.get_or_create_account("user-1")
        fake_stripe.retrieve_error = ProviderError("stripe", "Stripe error: unavailable")
        event = {
            "id": "evt_fail",
            "type": "checkout.session.completed",
            "data": {"object": {"client_reference_id": "user-1", "subscription": "sub_9"}},
        }

        with pytest.raises(ProviderError):
            await service.handle_stripe_event(event)

        assert "evt_fail" not in repo.processed_events

    async def test_unknown_event_is_acknowledged(self, make_service):
        service, repo, _ = make_service()

        processed = await service.handle_stripe_event(
            {"id": "evt_x", "type": "customer.created", "data": {"object": {}}}
        )

        assert processed is True
        assert repo.accounts == {}


class TestPayPalWebhooks:
    async def test_activation_event(self, make_service):
        service, repo, _ = make_service()
        await service.get_or_create_account("user-1")

        await service.handle_paypal_event(
            _paypal_event(
                "WH-1",
                "BILLING.SUBSCRIPTION.ACTIVATED",
                {"id": "I-1", "plan_id": "P-SCALE-Y", "custom_id": "user-1"},
            )
        )

        sub = (await repo.get_account("user-1")).subscription
        assert sub.plan == PlanName.SCALE
        assert sub.billing_cycle == BillingCycle.YEARLY
        assert sub.paypal_subscription_id == "I-1"

    async def test_sale_completed_records_payment_and_extends_period(self, make_service, subscribe):
        service, repo, _ = make_service()
        await subscribe(service, provider=PaymentProvider.PAYPAL, subscription_id="I-1")

        await service.handle_paypal_event(
            _paypal_event(
                "WH-2",
                "PAYMENT.SALE.COMPLETED",
                {
                    "id": "SALE-1",
                    "billing_agreement_id": "I-1",
                    "amount": {"total": "19.00", "currency": "USD"},
                    "create_time": "2026-03-01T12:00:00Z",
                },
            )
        )

        payment = repo.payments["SALE-1"]
        assert payment.provider == PaymentProvider.PAYPAL
        assert payment.amount == 19.0
        assert payment.currency == "usd"
        assert (await repo.get_account("user-1")).subscription.end_date == datetime(2026, 5, 1, 12, 0, tzinfo=UTC)

    async def test_payment_failed_flags_account(self, make_service, subscribe):
        service, repo, _ = make_service()
        await subscribe(service, provider=PaymentProvider.PAYPAL, subscription_id="I-1")

        await service.handle_paypal_event(
            _paypal_event(
                "WH-3",
                "BILLING.SUBSCRIPTION.PAYMENT.FAILED",
                {
                    "id": "I-1",
                    "billing_info": {
                        "last_failed_payment": {
                            "amount": {"value": "19.00", "currency_code": "USD"},
                            "time": "2026-03-02T00:00:00Z",
                        }
                    },
                },
            )
        )

        assert (await repo.get_account("user-1")).subscription.payment_failed is True
        assert repo.payments["failed:I-1:2026-03-02T00:00:00Z"].status == PaymentStatus.FAILED

    @pytest.mark.parametrize(
        ("event_type", "log_type"),
        [
            ("BILLING.SUBSCRIPTION.CANCELLED", LogEventType.SUBSCRIPTION_CANCELLED),
            ("BILLING.SUBSCRIPTION.EXPIRED", LogEventType.SUBSCRIPTION_EXPIRED),
        ],
    )
    async def test_cancellation_events_revert_to_free(self, make_service, subscribe, event_type, log_type):
        service, repo, _ = make_service()
        await subscribe(service, provider=PaymentProvider.PAYPAL, subscription_id="I-1", credits_used=2)

        await service.handle_paypal_event(_paypal_event("WH-4", event_type, {"id": "I-1"}))

        sub = (await repo.get_account("user-1")).subscription
        assert sub.plan == PlanName.FREE
        assert sub.credits_used == 2
        assert len(_events(repo, log_type)) == 1


class TestScheduledJobs:
    async def test_cycle_reset_zeroes_usage_and_rolls_window(self, make_service, subscribe):
        service, repo, clock = make_service()
        await subscribe(service, credits_used=5)
        clock.advance(timedelta(days=31))

        reset = await service.reset_due_credit_cycles()

        assert reset == 1
        sub = (await repo.get_account("user-1")).subscription
        assert sub.credits_used == 0
        assert sub.cycle_start_date == START + timedelta(days=30)
        assert sub.cycle_end_date == START + timedelta(days=60)
        assert sub.last_reset_date == clock.now()
        assert len(_events(repo, LogEventType.CYCLE_RESET)) == 1

    async def test_cycle_reset_skips_whole_missed_windows(self, make_service, subscribe):
        service, repo, clock = make_service()
        await subscribe(service)
        clock.advance(timedelta(days=95))

        await service.reset_due_credit_cycles()

        sub = (await repo.get_account("user-1")).subscription
        assert sub.cycle_end_date == START + timedelta(days=120)

    async def test_cycle_reset_is_noop_before_cycle_end(self, make_service, subscribe):
        service, repo, clock = make_service()
        await subscribe(service, credits_used=5)
        clock.advance(timedelta(days=29))

        assert await service.reset_due_credit_cycles() == 0
        assert (await repo.get_account("user-1")).subscription.credits_used == 5

    async def test_pending_downgrade_applied_at_rollover(self, make_service, subscribe):
        service, repo, clock = make_service()
        await subscribe(service, plan=PlanName.GROWTH, credits_used=20)
        await service.downgrade("user-1", PlanName.STARTER)
        clock.advance(timedelta(days=31))

        await service.reset_due_credit_cycles()

        sub = (await repo.get_account("user-1")).subscription
        assert sub.plan == PlanName.STARTER
        assert sub.credits_total == 10
        assert sub.credits_used == 0
        assert sub.pending_downgrade is None
        assert sub.price_id == "price_starter_monthly"

    async def test_cancelled_account_resets_to_free_allotment(self, make_service, subscribe):
        service, repo, clock = make_service()
        await subscribe(service, credits_used=3)
        await service.cancel("user-1")
        clock.advance(timedelta(days=31))

        await service.reset_due_credit_cycles()

        sub = (await repo.get_account("user-1")).subscription
        assert sub.plan == PlanName.FREE
        assert sub.credits_total == 2
        assert sub.credits_used == 0
        assert sub.is_active is True

    async def test_failed_reset_is_logged_and_batch_continues(self, make_service, subscribe):
        service, repo, clock = make_service()
        broken = await subscribe(service, "user-a")
        broken.subscription.pending_downgrade = PendingDowngrade(
            plan=PlanName.SCALE, scheduled_date=START + timedelta(days=30)
        )
        await repo.upsert_account(broken)
        await subscribe(service, "user-b", subscription_id="sub_2", customer_id="cus_2")
        del repo.plans[PlanName.SCALE]
        clock.advance(timedelta(days=31))

        reset = await service.reset_due_credit_cycles()

        assert reset == 1
        failures = _events(repo, LogEventType.CYCLE_RESET_FAILED)
        assert [log.user_id for log in failures] == ["user-a"]
        assert failures[0].successful is False
        assert (await repo.get_account("user-b")).subscription.credits_used == 0

    async def test_expiry_reverts_lapsed_manual_subscription(self, make_service, subscribe):
        service, repo, clock = make_service()
        await subscribe(service, "user-m", provider=PaymentProvider.MANUAL, customer_id="cus_m")
        await subscribe(service, "user-s", customer_id="cus_s")
        clock.advance(timedelta(days=32))

        expired = await service.expire_due_subscriptions()

        assert expired == 1
        manual = (await repo.get_account("user-m")).subscription
        assert manual.plan == PlanName.FREE
        assert manual.is_active is False
        assert manual.is_canceled is False
        assert (await repo.get_account("user-s")).subscription.plan == PlanName.STARTER
        assert len(_events(repo, LogEventType.SUBSCRIPTION_EXPIRED)) == 1


class TestRetryPayment:
    async def _failed_payment(self, service) -> str:
        await service.handle_stripe_event(
            _invoice_event(
                "evt_f",
                subscription_id="sub_1",
                price_id="price_starter_monthly",
                event_type="invoice.payment_failed",
            )
        )
        return "failed:in_1:1"

    async def test_successful_retry_updates_ledger_and_account(self, make_service, subscribe):
        service, repo, _ = make_service()
        await subscribe(service)
        key = await self._failed_payment(service)

        result = await service.retry_payment(key)

        assert result.success is True
        assert repo.payments[key].status == PaymentStatus.SUCCEEDED
        assert (await repo.get_account("user-1")).subscription.payment_failed is False
        assert len(_events(repo, LogEventType.PAYMENT_RETRY_SUCCESS)) == 1

    async def test_failed_retry_is_logged(self, make_service, subscribe, fake_stripe):
        service, repo, _ = make_service()
        await subscribe(service)
        key = await self._failed_payment(service)
        fake_stripe.retry_result = fake_stripe.retry_result.model_copy(
            update={"success": False, "status": "requires_payment_method", "error": "declined"}
        )

        result = await service.retry_payment(key)

        assert result.success is False
        assert repo.payments[key].status == PaymentStatus.FAILED
        assert _events(repo, LogEventType.PAYMENT_RETRY_FAILED)[0].error_message == "declined"

    async def test_unknown_payment(self, make_service):
        service, _, _ = make_service()

        with pytest.raises(SubscriptionError) as exc_info:
            await service.retry_payment("missing")

        assert exc_info.value.status_code == 404

    async def test_only_failed_payments_can_be_retried(self, make_service, subscribe):
        service, _, _ = make_service()
        await subscribe(service)
        await service.handle_stripe_event(
            _invoice_event("evt_1", subscription_id="sub_1", price_id="price_starter_monthly")
        )

        with pytest.raises(SubscriptionError, match="failed payments"):
            await service.retry_payment("pi_1")

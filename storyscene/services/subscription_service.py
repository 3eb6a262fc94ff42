"""Subscription lifecycle, credit metering and provider reconciliation."""

import asyncio
import calendar
from collections import defaultdict
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog

from storyscene.config import BillingConfig
from storyscene.errors import (
    AccountNotFoundError,
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
    Payment,
    PaymentMethodSummary,
    PaymentProvider,
    PaymentStatus,
    PendingDowngrade,
    Plan,
    PlanName,
    ProrationQuote,
    RetryResult,
    SubscriptionLog,
    SubscriptionState,
    SubscriptionStatus,
    UsageSummary,
    UserAccount,
)
from storyscene.services.paypal_service import PayPalService
from storyscene.services.proration import quote_upgrade
from storyscene.services.repository import SubscriptionRepository
from storyscene.services.stripe_service import (
    StripeService,
    invoice_payment_key,
    invoice_period_end,
    invoice_price_id,
    invoice_subscription_id,
    subscription_period_end,
    subscription_price_id,
)

logger = structlog.get_logger(__name__)

ACTIVE_STRIPE_STATUSES = {"active", "trialing"}
ACTIVE_PAYPAL_STATUSES = {"ACTIVE", "APPROVED"}


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _add_months(value: datetime, months: int) -> datetime:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def _parse_paypal_time(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def _billing_period_end(start: datetime, cycle: BillingCycle) -> datetime:
    return _add_months(start, 12 if cycle == BillingCycle.YEARLY else 1)


class SubscriptionService:
    """Owns every mutation of the embedded subscription document."""

    def __init__(
        self,
        repository: SubscriptionRepository,
        config: BillingConfig,
        stripe_service: StripeService | None = None,
        paypal_service: PayPalService | None = None,
        now_provider=_utcnow,
        client_url: str = "http://localhost:3000",
    ):
        """
        Initialize the subscription service.

        Args:
            repository: Storage for accounts, plans, payments and logs.
            config: Credit cycle length, free allotment and proration policy.
            stripe_service: Stripe adapter, or None when Stripe is not configured.
            paypal_service: PayPal adapter, or None when PayPal is not configured.
            now_provider: Clock, replaced in tests.
            client_url: Frontend origin used to build checkout redirect URLs.
        """
        self.repository = repository
        self.config = config
        self.stripe_service = stripe_service
        self.paypal_service = paypal_service
        self.now_provider = now_provider
        self.client_url = client_url.rstrip("/")
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _require_stripe(self) -> StripeService:
        if self.stripe_service is None:
            raise SubscriptionError("Stripe is not configured", status_code=503)
        return self.stripe_service

    def _require_paypal(self) -> PayPalService:
        if self.paypal_service is None:
            raise SubscriptionError("PayPal is not configured", status_code=503)
        return self.paypal_service

    def _start_cycle(self, sub: SubscriptionState, now: datetime) -> None:
        sub.cycle_start_date = now
        sub.cycle_end_date = now + timedelta(days=self.config.credit_cycle_days)

    async def _get_plan(self, name: PlanName) -> Plan:
        plan = await self.repository.get_plan(name)
        if plan is None:
            raise PlanNotFoundError(f"Plan not found: {name.value}")
        return plan

    async def _get_account(self, user_id: str) -> UserAccount:
        account = await self.repository.get_account(user_id)
        if account is None:
            raise AccountNotFoundError("User not found")
        return account

    async def _refresh_credits_used(self, account: UserAccount) -> None:
        """Take ``credits_used`` from the stored row before writing ``account`` back.

        Credits are consumed straight through the repository, so the copy
        read before a provider call can be behind.
        """
        latest = await self._get_account(account.user_id)
        account.subscription.credits_used = latest.subscription.credits_used

    async def _log(
        self, account: UserAccount | str, event_type: LogEventType, description: str, **fields: Any
    ) -> None:
        """Append to the audit trail. Failures are logged and never raised."""
        if isinstance(account, UserAccount):
            sub = account.subscription
            user_id = account.user_id
            fields.setdefault("plan_name", sub.plan)
            if sub.billing_cycle != BillingCycle.NONE:
                fields.setdefault("billing_cycle", sub.billing_cycle)
            fields.setdefault("payment_provider", sub.payment_provider)
            fields.setdefault("subscription_id", sub.provider_subscription_id)
        else:
            user_id = account

        entry = SubscriptionLog(
            user_id=user_id,
            event_type=event_type,
            description=description,
            created_at=self.now_provider(),
            **fields,
        )
        try:
            await self.repository.append_log(entry)
        except Exception as e:
            logger.warning(
                "subscription_log_write_failed",
                user_id=user_id,
                event_type=event_type.value,
                error=str(e),
            )

    async def _save_verified(self, account: UserAccount) -> UserAccount:
        """Persist the account, rewriting once if the stored plan or allotment differs."""
        expected = account.subscription
        stored = await self.repository.upsert_account(account)
        check = await self.repository.get_account(account.user_id) or stored
        if (
            check.subscription.credits_total != expected.credits_total
            or check.subscription.plan != expected.plan
        ):
            logger.warning(
                "subscription_write_mismatch",
                user_id=account.user_id,
                expected_credits_total=expected.credits_total,
                stored_credits_total=check.subscription.credits_total,
                expected_plan=expected.plan.value,
                stored_plan=check.subscription.plan.value,
            )
            stored = await self.repository.upsert_account(account)
        return stored

    def _activate(
        self,
        account: UserAccount,
        *,
        plan: Plan,
        billing_cycle: BillingCycle,
        provider: PaymentProvider,
        subscription_id: str | None,
        period_end: datetime | None,
        price_id: str | None = None,
    ) -> None:
        """Put the account on a fresh paid subscription and credit cycle."""
        now = self.now_provider()
        sub = account.subscription
        sub.plan = plan.name
        sub.credits_total = plan.credits_total
        sub.credits_used = 0
        sub.is_active = True
        sub.billing_cycle = billing_cycle
        sub.start_date = now
        sub.end_date = period_end or _billing_period_end(now, billing_cycle)
        self._start_cycle(sub, now)
        sub.last_reset_date = now
        sub.stripe_subscription_id = subscription_id if provider == PaymentProvider.STRIPE else None
        sub.paypal_subscription_id = subscription_id if provider == PaymentProvider.PAYPAL else None
        sub.price_id = price_id or None
        sub.price = plan.monthly_equivalent(billing_cycle)
        sub.actual_price = plan.price_for(billing_cycle)
        sub.canceled_at = None
        sub.cancel_at_period_end = False
        sub.is_canceled = False
        sub.payment_failed = False
        sub.pending_downgrade = None

    def _revert_to_free(self, account: UserAccount, *, canceled: bool) -> None:
        """Drop to the free plan keeping the current credit counters."""
        sub = account.subscription
        sub.plan = PlanName.FREE
        sub.is_active = False
        sub.billing_cycle = BillingCycle.NONE
        sub.stripe_subscription_id = None
        sub.paypal_subscription_id = None
        sub.price_id = None
        sub.price = None
        sub.actual_price = None
        sub.cancel_at_period_end = False
        sub.pending_downgrade = None
        if canceled:
            sub.is_canceled = True
            sub.canceled_at = self.now_provider()

    async def activate_subscription(
        self,
        account: UserAccount,
        *,
        plan: Plan,
        billing_cycle: BillingCycle,
        provider: PaymentProvider,
        subscription_id: str | None,
        period_end: datetime | None = None,
        price_id: str | None = None,
    ) -> UserAccount:
        """Activate a new paid subscription and persist it. Caller holds the user lock."""
        self._activate(
            account,
            plan=plan,
            billing_cycle=billing_cycle,
            provider=provider,
            subscription_id=subscription_id,
            period_end=period_end,
            price_id=price_id,
        )
        stored = await self._save_verified(account)
        logger.info(
            "subscription_activated",
            user_id=account.user_id,
            plan=plan.name.value,
            billing_cycle=billing_cycle.value,
            provider=provider.value,
            subscription_id=subscription_id,
        )
        await self._log(
            stored,
            LogEventType.SUBSCRIPTION_CREATED,
            f"Subscribed to {plan.name.value} ({billing_cycle.value})",
            amount=plan.price_for(billing_cycle),
        )
        return stored

    def _usage(self, account: UserAccount) -> UsageSummary:
        sub = account.subscription
        days_until_reset = None
        if sub.cycle_end_date:
            days_until_reset = max(0, (sub.cycle_end_date.date() - self.now_provider().date()).days)
        return UsageSummary(
            credits_used=sub.credits_used,
            credits_total=sub.credits_total,
            credits_remaining=sub.credits_remaining,
            plan=sub.plan,
            is_active=sub.is_active,
            billing_cycle=sub.billing_cycle,
            cycle_end_date=sub.cycle_end_date,
            days_until_reset=days_until_reset,
            pending_downgrade=sub.pending_downgrade,
        )

    async def _ensure_customer(self, account: UserAccount) -> str:
        stripe_service = self._require_stripe()
        customer_id = await stripe_service.get_or_create_customer(
            user_id=account.user_id,
            email=account.email,
            name=account.name,
            customer_id=account.stripe_customer_id,
        )
        if customer_id != account.stripe_customer_id:
            async with self._locks[account.user_id]:
                fresh = await self._get_account(account.user_id)
                fresh.stripe_customer_id = customer_id
                await self.repository.upsert_account(fresh)
            account.stripe_customer_id = customer_id
        return customer_id

    async def _account_for_stripe_object(
        self, *, customer_id: str | None, subscription_id: str | None, user_id: str | None = None
    ) -> UserAccount | None:
        if user_id:
            account = await self.repository.get_account(user_id)
            if account:
                return account
        if customer_id:
            account = await self.repository.get_account_by_customer_id(customer_id)
            if account:
                return account
        if subscription_id:
            return await self.repository.get_account_by_subscription_id(subscription_id)
        return None

    # ------------------------------------------------------------------
    # Accounts, plans and usage
    # ------------------------------------------------------------------

    async def get_or_create_account(
        self, user_id: str, email: str | None = None, name: str | None = None
    ) -> UserAccount:
        async with self._locks[user_id]:
            account = await self.repository.get_account(user_id)
            if account is not None:
                if email and not account.email:
                    account.email = email
                    account = await self.repository.upsert_account(account)
                return account

            now = self.now_provider()
            account = UserAccount(user_id=user_id, email=email, name=name)
            sub = account.subscription
            sub.credits_total = self.config.free_plan_credits
            sub.is_active = True
            sub.last_reset_date = now
            self._start_cycle(sub, now)
            logger.info("subscription_account_created", user_id=user_id)
            return await self.repository.upsert_account(account)

    async def list_plans(self) -> list[Plan]:
        return await self.repository.list_plans()

    async def get_status(self, user_id: str) -> SubscriptionStatus:
        account = await self.get_or_create_account(user_id)
        plan_details = None
        if account.subscription.plan != PlanName.FREE:
            plan_details = await self.repository.get_plan(account.subscription.plan)
        return SubscriptionStatus(subscription=account.subscription, plan_details=plan_details)

    async def get_usage(self, user_id: str) -> UsageSummary:
        return self._usage(await self.get_or_create_account(user_id))

    async def use_credits(self, user_id: str, amount: int = 1) -> UsageSummary:
        """
        Consume ``amount`` credits from the current cycle.

        Raises:
            CreditLimitReachedError: The allotment would be exceeded. Nothing is written.
        """
        if amount < 1:
            raise SubscriptionError("Credit amount must be at least 1")

        await self.get_or_create_account(user_id)
        async with self._locks[user_id]:
            updated = await self.repository.consume_credits(user_id, amount)
        if updated is None:
            account = await self._get_account(user_id)
            sub = account.subscription
            logger.info(
                "credit_limit_reached",
                user_id=user_id,
                requested=amount,
                credits_used=sub.credits_used,
                credits_total=sub.credits_total,
            )
            raise CreditLimitReachedError(
                "Credit limit reached for this billing cycle",
                credits_used=sub.credits_used,
                credits_total=sub.credits_total,
            )

        logger.info(
            "credits_consumed",
            user_id=user_id,
            amount=amount,
            credits_used=updated.subscription.credits_used,
            credits_total=updated.subscription.credits_total,
        )
        return self._usage(updated)

    # ------------------------------------------------------------------
    # Purchase flows
    # ------------------------------------------------------------------

    async def _plan_for_price(self, price_id: str) -> tuple[Plan, BillingCycle]:
        plan = await self.repository.get_plan_by_price_id(price_id)
        if plan is None:
            raise PlanNotFoundError("Plan not found for the provided price ID")
        return plan, plan.cycle_for_price_id(price_id)

    async def create_checkout_session(
        self, user_id: str, email: str | None, price_id: str
    ) -> dict[str, str]:
        stripe_service = self._require_stripe()
        plan, billing_cycle = await self._plan_for_price(price_id)
        account = await self.get_or_create_account(user_id, email)
        customer_id = await self._ensure_customer(account)

        session = await stripe_service.create_checkout_session(
            customer_id=customer_id,
            user_id=user_id,
            price_id=price_id,
            metadata={"plan": plan.name.value, "billing_cycle": billing_cycle.value},
            success_url=f"{self.client_url}/payment-success?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{self.client_url}/pricing",
        )
        logger.info(
            "checkout_session_created",
            user_id=user_id,
            plan=plan.name.value,
            session_id=session["id"],
        )
        return session

    async def create_billing_portal_session(
        self, user_id: str, email: str | None, return_url: str | None = None
    ) -> dict[str, str]:
        stripe_service = self._require_stripe()
        account = await self.get_or_create_account(user_id, email)
        customer_id = await self._ensure_customer(account)
        return await stripe_service.create_portal_session(
            customer_id=customer_id,
            return_url=return_url or f"{self.client_url}/settings",
        )

    async def list_payment_methods(self, user_id: str) -> list[PaymentMethodSummary]:
        account = await self.get_or_create_account(user_id)
        return account.payment_methods

    async def remove_payment_method(self, user_id: str, payment_method_id: str) -> UserAccount:
        """
        Drop a saved card. The default card is cleared when it is the one removed.

        Raises:
            PaymentMethodNotFoundError: The user has no saved card with that ID.
        """
        async with self._locks[user_id]:
            account = await self.repository.get_account(user_id)
            if account is None or all(pm.id != payment_method_id for pm in account.payment_methods):
                raise PaymentMethodNotFoundError("Payment method not found")
            account.payment_methods = [pm for pm in account.payment_methods if pm.id != payment_method_id]
            if account.payment_method and account.payment_method.id == payment_method_id:
                account.payment_method = None
            stored = await self.repository.upsert_account(account)
        logger.info("payment_method_removed", user_id=user_id, payment_method_id=payment_method_id)
        return stored

    @staticmethod
    def _remember_payment_method(account: UserAccount, card: PaymentMethodSummary | None) -> None:
        if card is None:
            return
        if all(pm.id != card.id for pm in account.payment_methods):
            account.payment_methods.append(card)
        account.payment_method = card

    async def subscribe_with_payment_method(
        self,
        user_id: str,
        email: str | None,
        price_id: str,
        payment_method_id: str,
    ) -> dict[str, Any]:
        """
        Subscribe with a card collected on the client.

        Returns a dict with ``status``, ``requires_action``, ``client_secret``
        and, once activated, the updated ``subscription``.
        """
        stripe_service = self._require_stripe()
        plan, billing_cycle = await self._plan_for_price(price_id)
        account = await self.get_or_create_account(user_id, email)
        customer_id = await self._ensure_customer(account)

        try:
            subscription, card = await stripe_service.create_subscription(
                customer_id=customer_id,
                price_id=price_id,
                payment_method_id=payment_method_id,
                metadata={"user_id": user_id, "plan": plan.name.value, "billing_cycle": billing_cycle.value},
            )
        except PaymentMethodError:
            saved = await self.list_payment_methods(user_id)
            if any(pm.id == payment_method_id for pm in saved):
                await self.remove_payment_method(user_id, payment_method_id)
            raise

        invoice = subscription.get("latest_invoice") or {}
        if not isinstance(invoice, dict):
            invoice = {"id": invoice}
        intent = invoice.get("payment_intent") or {}
        if not isinstance(intent, dict):
            intent = {"id": intent}
        intent_status = intent.get("status")
        result: dict[str, Any] = {
            "subscription_id": subscription.get("id"),
            "status": subscription.get("status"),
            "requires_action": False,
            "client_secret": None,
            "subscription": None,
        }

        if intent_status == "requires_action":
            result["requires_action"] = True
            result["client_secret"] = intent.get("client_secret")
            async with self._locks[user_id]:
                fresh = await self._get_account(user_id)
                self._remember_payment_method(fresh, card)
                await self.repository.upsert_account(fresh)
            return result

        if intent_status != "succeeded" and subscription.get("status") not in ACTIVE_STRIPE_STATUSES:
            raise PaymentMethodError(f"Payment failed with status: {intent_status or subscription.get('status')}")

        async with self._locks[user_id]:
            fresh = await self._get_account(user_id)
            self._remember_payment_method(fresh, card)
            stored = await self.activate_subscription(
                fresh,
                plan=plan,
                billing_cycle=billing_cycle,
                provider=PaymentProvider.STRIPE,
                subscription_id=subscription.get("id"),
                period_end=subscription_period_end(subscription),
                price_id=price_id,
            )

        payment = Payment(
            payment_key=invoice_payment_key(invoice),
            user_id=user_id,
            provider=PaymentProvider.STRIPE,
            payment_id=intent.get("id") or str(invoice.get("id", "")),
            invoice_id=invoice.get("id"),
            subscription_id=subscription.get("id"),
            customer_id=customer_id,
            date=self.now_provider(),
            amount=(invoice.get("amount_paid") or 0) / 100,
            currency=invoice.get("currency") or "usd",
            plan=plan.name,
            billing_cycle=billing_cycle,
            status=PaymentStatus.SUCCEEDED,
            receipt_url=invoice.get("hosted_invoice_url"),
            receipt_number=invoice.get("number"),
            payment_method=card,
            metadata={"source": "payment_intent"},
        )
        if await self.repository.record_payment(payment):
            await self._log(
                stored,
                LogEventType.PAYMENT_SUCCEEDED,
                f"Initial payment for {plan.name.value}",
                payment_id=payment.payment_id,
                amount=payment.amount,
            )

        result["status"] = "active"
        result["subscription"] = stored.subscription
        return result

    async def _activate_from_stripe_subscription(self, account: UserAccount, subscription: dict) -> UserAccount:
        """Activate from a Stripe subscription object unless it is already the active one."""
        sub_id = subscription.get("id")
        current = account.subscription
        if current.stripe_subscription_id == sub_id and current.is_active:
            return account

        price_id = subscription_price_id(subscription)
        plan = await self.repository.get_plan_by_price_id(price_id or "")
        if plan is None:
            raise PlanNotFoundError("Plan not found for the subscription price")
        return await self.activate_subscription(
            account,
            plan=plan,
            billing_cycle=plan.cycle_for_price_id(price_id),
            provider=PaymentProvider.STRIPE,
            subscription_id=sub_id,
            period_end=subscription_period_end(subscription),
            price_id=price_id,
        )

    async def verify_checkout_session(self, user_id: str, session_id: str) -> UserAccount:
        stripe_service = self._require_stripe()
        session = await stripe_service.retrieve_checkout_session(session_id)
        owner = session.get("client_reference_id") or (session.get("metadata") or {}).get("user_id")
        if owner != user_id:
            logger.warning("checkout_session_owner_mismatch", user_id=user_id, session_id=session_id)
            raise ForbiddenError("Unauthorized access to this session")

        subscription = session.get("subscription")
        if not subscription:
            raise SubscriptionError("Checkout session has no subscription")
        if not isinstance(subscription, dict):
            subscription = await stripe_service.retrieve_subscription(subscription)
        if subscription.get("status") not in ACTIVE_STRIPE_STATUSES:
            raise SubscriptionError(f"Subscription is {subscription.get('status')}")

        await self.get_or_create_account(user_id)
        async with self._locks[user_id]:
            account = await self._get_account(user_id)
            if session.get("customer") and not account.stripe_customer_id:
                account.stripe_customer_id = session["customer"]
            return await self._activate_from_stripe_subscription(account, subscription)

    async def activate_paypal_subscription(
        self, user_id: str, email: str | None, subscription_id: str
    ) -> UserAccount:
        paypal_service = self._require_paypal()
        paypal_sub = await paypal_service.get_subscription(subscription_id)
        status = paypal_sub.get("status")
        if status not in ACTIVE_PAYPAL_STATUSES:
            raise SubscriptionError(f"PayPal subscription is {status}")
        custom_id = paypal_sub.get("custom_id")
        if custom_id and custom_id != user_id:
            raise ForbiddenError("Unauthorized access to this subscription")

        plan_id = paypal_sub.get("plan_id") or ""
        plan = await self.repository.get_plan_by_paypal_plan_id(plan_id)
        if plan is None:
            raise PlanNotFoundError("Plan not found for the PayPal plan ID")

        await self.get_or_create_account(user_id, email)
        async with self._locks[user_id]:
            account = await self._get_account(user_id)
            current = account.subscription
            if current.paypal_subscription_id == subscription_id and current.is_active:
                return account
            next_billing = (paypal_sub.get("billing_info") or {}).get("next_billing_time")
            return await self.activate_subscription(
                account,
                plan=plan,
                billing_cycle=plan.cycle_for_paypal_plan_id(plan_id),
                provider=PaymentProvider.PAYPAL,
                subscription_id=subscription_id,
                period_end=_parse_paypal_time(next_billing),
            )

    # ------------------------------------------------------------------
    # Plan changes
    # ------------------------------------------------------------------

    async def upgrade(
        self,
        user_id: str,
        plan_name: PlanName,
        billing_cycle: BillingCycle | None = None,
    ) -> tuple[ProrationQuote, UserAccount]:
        """
        Move an active paid subscription to a more expensive plan now.

        ``credits_used`` is preserved. ``credits_total`` becomes the target
        allotment, plus the prorated extra credits when enabled.
        """
        async with self._locks[user_id]:
            account = await self._get_account(user_id)
            sub = account.subscription
            if not sub.has_paid_plan:
                raise NoActiveSubscriptionError("No active paid subscription to upgrade")
            if plan_name == PlanName.FREE:
                raise InvalidPlanChangeError("Cannot upgrade to the free plan")

            cycle = billing_cycle or sub.billing_cycle
            if cycle != sub.billing_cycle:
                raise InvalidPlanChangeError("Changing the billing cycle is not supported on upgrade")

            target = await self._get_plan(plan_name)
            current = await self._get_plan(sub.plan)
            if target.price_for(cycle) <= current.price_for(cycle):
                raise InvalidPlanChangeError(
                    f"{target.name.value} is not an upgrade from {current.name.value}"
                )

            now = self.now_provider()
            quote = quote_upgrade(
                current_plan=current,
                target_plan=target,
                billing_cycle=cycle,
                now=now,
                cycle_start=sub.cycle_start_date,
                cycle_end=sub.cycle_end_date,
                cycle_days=self.config.credit_cycle_days,
                free_plan_credits=self.config.free_plan_credits,
            )

            new_price_id = sub.price_id
            if sub.stripe_subscription_id:
                new_price_id = target.price_id_for(cycle)
                if not new_price_id:
                    raise SubscriptionError(f"No Stripe price configured for {target.name.value}")
                await self._require_stripe().update_subscription_price(
                    sub.stripe_subscription_id, new_price_id, quote.prorated_amount
                )
            elif sub.paypal_subscription_id:
                paypal_plan_id = target.paypal_plan_id_for(cycle)
                if not paypal_plan_id:
                    raise SubscriptionError(f"No PayPal plan configured for {target.name.value}")
                await self._require_paypal().revise_subscription(sub.paypal_subscription_id, paypal_plan_id)

            await self._refresh_credits_used(account)
            bonus = quote.additional_credits if self.config.prorate_upgrade_credits else 0
            sub.plan = target.name
            sub.credits_total = target.credits_total + bonus
            sub.price_id = new_price_id
            sub.price = target.monthly_equivalent(cycle)
            sub.actual_price = target.price_for(cycle)
            sub.pending_downgrade = None
            stored = await self._save_verified(account)

        logger.info(
            "subscription_upgraded",
            user_id=user_id,
            from_plan=current.name.value,
            to_plan=target.name.value,
            prorated_amount=quote.prorated_amount,
            credits_total=stored.subscription.credits_total,
            credits_used=stored.subscription.credits_used,
        )
        await self._log(
            stored,
            LogEventType.PLAN_CHANGED,
            f"Upgraded from {current.name.value} to {target.name.value}",
            amount=quote.prorated_amount,
            metadata=quote.model_dump(mode="json"),
        )
        return quote, stored

    async def downgrade(self, user_id: str, plan_name: PlanName) -> UserAccount:
        """Schedule a cheaper plan for the next credit-cycle boundary."""
        async with self._locks[user_id]:
            account = await self._get_account(user_id)
            sub = account.subscription
            if not sub.has_paid_plan:
                raise NoActiveSubscriptionError("No active paid subscription to downgrade")
            if plan_name == PlanName.FREE:
                raise InvalidPlanChangeError("Cancel the subscription to move to the free plan")

            cycle = sub.billing_cycle
            target = await self._get_plan(plan_name)
            current = await self._get_plan(sub.plan)
            if target.price_for(cycle) >= current.price_for(cycle):
                raise InvalidPlanChangeError(
                    f"{target.name.value} is not a downgrade from {current.name.value}"
                )

            now = self.now_provider()
            effective_date = None
            if sub.stripe_subscription_id:
                price_id = target.price_id_for(cycle)
                if not price_id:
                    raise SubscriptionError(f"No Stripe price configured for {target.name.value}")
                effective_date = await self._require_stripe().schedule_price_change(
                    sub.stripe_subscription_id, price_id
                )
            elif sub.paypal_subscription_id:
                paypal_plan_id = target.paypal_plan_id_for(cycle)
                if not paypal_plan_id:
                    raise SubscriptionError(f"No PayPal plan configured for {target.name.value}")
                await self._require_paypal().revise_subscription(sub.paypal_subscription_id, paypal_plan_id)

            await self._refresh_credits_used(account)
            scheduled = (
                sub.cycle_end_date
                or effective_date
                or now + timedelta(days=self.config.credit_cycle_days)
            )
            sub.pending_downgrade = PendingDowngrade(plan=target.name, scheduled_date=scheduled)
            stored = await self.repository.upsert_account(account)

        logger.info(
            "subscription_downgrade_scheduled",
            user_id=user_id,
            from_plan=current.name.value,
            to_plan=target.name.value,
            scheduled_date=scheduled.isoformat(),
        )
        await self._log(
            stored,
            LogEventType.SUBSCRIPTION_UPDATED,
            f"Downgrade from {current.name.value} to {target.name.value} scheduled",
            metadata={
                "scheduled_date": scheduled.isoformat(),
                "provider_effective_date": effective_date.isoformat() if effective_date else None,
            },
        )
        return stored

    async def cancel(self, user_id: str, reason: str | None = None) -> UserAccount:
        """
        Cancel immediately and drop to the free plan.

        The provider-side cancel is best effort: a failure is logged and
        recorded in the audit trail, but the local cancel still happens.
        """
        async with self._locks[user_id]:
            account = await self._get_account(user_id)
            sub = account.subscription
            if not sub.has_paid_plan:
                raise NoActiveSubscriptionError("No active subscription to cancel")

            provider = sub.payment_provider
            provider_sub_id = sub.provider_subscription_id
            previous_plan = sub.plan
            provider_error = None
            try:
                if provider == PaymentProvider.STRIPE:
                    await self._require_stripe().cancel_subscription(provider_sub_id)
                elif provider == PaymentProvider.PAYPAL:
                    await self._require_paypal().cancel_subscription(
                        provider_sub_id, reason or "Cancelled by user"
                    )
            except SubscriptionError as e:
                provider_error = e.message
                logger.warning(
                    "provider_cancel_failed",
                    user_id=user_id,
                    provider=provider.value if provider else None,
                    subscription_id=provider_sub_id,
                    error=e.message,
                )

            await self._refresh_credits_used(account)
            self._revert_to_free(account, canceled=True)
            stored = await self.repository.upsert_account(account)

        logger.info("subscription_cancelled", user_id=user_id, plan=previous_plan.value, reason=reason)
        await self._log(
            stored,
            LogEventType.SUBSCRIPTION_CANCELLED,
            f"Cancelled {previous_plan.value} subscription",
            plan_name=previous_plan,
            payment_provider=provider,
            subscription_id=provider_sub_id,
            successful=provider_error is None,
            error_message=provider_error,
            metadata={"reason": reason} if reason else {},
        )
        return stored

    # ------------------------------------------------------------------
    # Webhook reconciliation
    # ------------------------------------------------------------------

    async def _process_event(self, event_id: str | None, handler, payload: dict) -> bool:
        if not event_id:
            raise SubscriptionError("Webhook event has no ID")
        if not await self.repository.mark_webhook_processed(event_id):
            logger.info("webhook_event_duplicate", event_id=event_id)
            return False
        try:
            await handler(payload)
        except Exception:
            await self.repository.release_webhook_event(event_id)
            raise
        return True

    async def handle_stripe_event(self, event: dict) -> bool:
        """
        Apply a verified Stripe event.

        Returns False when the event was already processed. Unknown event
        types are acknowledged without changes.
        """
        handlers = {
            "checkout.session.completed": self._on_checkout_completed,
            "invoice.payment_succeeded": self._on_invoice_paid,
            "invoice.paid": self._on_invoice_paid,
            "invoice.payment_failed": self._on_invoice_failed,
            "customer.subscription.deleted": self._on_stripe_subscription_deleted,
        }
        event_type = event.get("type", "")
        handler = handlers.get(event_type)
        logger.info("stripe_event_received", event_id=event.get("id"), event_type=event_type)
        if handler is None:
            return await self._process_event(event.get("id"), self._ignore, event)
        obj = (event.get("data") or {}).get("object") or {}
        return await self._process_event(event.get("id"), handler, obj)

    @staticmethod
    async def _ignore(payload: dict) -> None:
        return None

    async def _on_checkout_completed(self, session: dict) -> None:
        user_id = session.get("client_reference_id") or (session.get("metadata") or {}).get("user_id")
        customer_id = session.get("customer")
        subscription = session.get("subscription")
        subscription_id = subscription.get("id") if isinstance(subscription, dict) else subscription
        account = await self._account_for_stripe_object(
            customer_id=customer_id, subscription_id=subscription_id, user_id=user_id
        )
        if account is None:
            logger.warning("stripe_checkout_account_missing", user_id=user_id, customer_id=customer_id)
            return
        if not subscription_id:
            return

        if not isinstance(subscription, dict):
            subscription = await self._require_stripe().retrieve_subscription(subscription_id)
        async with self._locks[account.user_id]:
            account = await self._get_account(account.user_id)
            if customer_id and not account.stripe_customer_id:
                account.stripe_customer_id = customer_id
            await self._activate_from_stripe_subscription(account, subscription)

    async def _on_invoice_paid(self, invoice: dict) -> None:
        subscription_id = invoice_subscription_id(invoice)
        if not subscription_id:
            logger.info("stripe_invoice_without_subscription", invoice_id=invoice.get("id"))
            return

        customer_id = invoice.get("customer")
        account = await self._account_for_stripe_object(
            customer_id=customer_id, subscription_id=subscription_id
        )
        if account is None:
            subscription = await self._require_stripe().retrieve_subscription(subscription_id)
            user_id = (subscription.get("metadata") or {}).get("user_id")
            account = await self.repository.get_account(user_id) if user_id else None
        if account is None:
            logger.warning("stripe_invoice_account_missing", invoice_id=invoice.get("id"), customer_id=customer_id)
            return

        price_id = invoice_price_id(invoice)
        plan = await self.repository.get_plan_by_price_id(price_id or "")
        if plan is None:
            logger.warning("stripe_invoice_plan_unknown", invoice_id=invoice.get("id"), price_id=price_id)
            return
        billing_cycle = plan.cycle_for_price_id(price_id)
        period_end = invoice_period_end(invoice)

        async with self._locks[account.user_id]:
            account = await self._get_account(account.user_id)
            sub = account.subscription
            if customer_id and not account.stripe_customer_id:
                account.stripe_customer_id = customer_id

            if sub.stripe_subscription_id != subscription_id:
                kind = "new"
                account = await self.activate_subscription(
                    account,
                    plan=plan,
                    billing_cycle=billing_cycle,
                    provider=PaymentProvider.STRIPE,
                    subscription_id=subscription_id,
                    period_end=period_end,
                    price_id=price_id,
                )
            else:
                kind = "upgrade" if sub.plan != plan.name else "renewal"
                if kind == "upgrade":
                    sub.plan = plan.name
                    sub.credits_total = plan.credits_total
                    sub.pending_downgrade = None
                sub.is_active = True
                sub.is_canceled = False
                sub.payment_failed = False
                sub.billing_cycle = billing_cycle
                sub.price_id = price_id
                sub.price = plan.monthly_equivalent(billing_cycle)
                sub.actual_price = plan.price_for(billing_cycle)
                if period_end:
                    sub.end_date = period_end
                account = await self._save_verified(account)

        logger.info(
            "stripe_invoice_applied",
            user_id=account.user_id,
            invoice_id=invoice.get("id"),
            kind=kind,
            plan=plan.name.value,
        )

        card, receipt_url = None, invoice.get("hosted_invoice_url")
        try:
            card, receipt_url = await self._require_stripe().invoice_receipt(invoice)
        except SubscriptionError as e:
            logger.warning("stripe_receipt_lookup_failed", invoice_id=invoice.get("id"), error=e.message)

        payment_key = invoice_payment_key(invoice)
        payment = Payment(
            payment_key=payment_key,
            user_id=account.user_id,
            provider=PaymentProvider.STRIPE,
            payment_id=payment_key,
            invoice_id=invoice.get("id"),
            subscription_id=subscription_id,
            customer_id=customer_id,
            date=self.now_provider(),
            amount=(invoice.get("amount_paid") or 0) / 100,
            currency=invoice.get("currency") or "usd",
            plan=plan.name,
            billing_cycle=billing_cycle,
            status=PaymentStatus.SUCCEEDED,
            receipt_url=receipt_url,
            receipt_number=invoice.get("number"),
            payment_method=card,
            metadata={"kind": kind, "billing_reason": invoice.get("billing_reason")},
        )
        if await self.repository.record_payment(payment):
            await self._log(
                account,
                LogEventType.PAYMENT_SUCCEEDED,
                f"Payment for {plan.name.value} ({kind})",
                payment_id=payment.payment_id,
                amount=payment.amount,
            )

    async def _on_invoice_failed(self, invoice: dict) -> None:
        subscription_id = invoice_subscription_id(invoice)
        account = await self._account_for_stripe_object(
            customer_id=invoice.get("customer"), subscription_id=subscription_id
        )
        if account is None:
            logger.warning("stripe_invoice_account_missing", invoice_id=invoice.get("id"))
            return

        async with self._locks[account.user_id]:
            account = await self._get_account(account.user_id)
            account.subscription.payment_failed = True
            account = await self.repository.upsert_account(account)

        sub = account.subscription
        plan = await self.repository.get_plan_by_price_id(invoice_price_id(invoice) or "")
        payment = Payment(
            payment_key=f"failed:{invoice.get('id')}:{invoice.get('attempt_count') or 1}",
            user_id=account.user_id,
            provider=PaymentProvider.STRIPE,
            payment_id=invoice_payment_key(invoice),
            invoice_id=invoice.get("id"),
            subscription_id=subscription_id,
            customer_id=invoice.get("customer"),
            date=self.now_provider(),
            amount=(invoice.get("amount_due") or 0) / 100,
            currency=invoice.get("currency") or "usd",
            plan=plan.name if plan else sub.plan,
            billing_cycle=sub.billing_cycle,
            status=PaymentStatus.FAILED,
            receipt_url=invoice.get("hosted_invoice_url"),
            receipt_number=invoice.get("number"),
            metadata={"attempt_count": invoice.get("attempt_count")},
        )
        logger.warning("stripe_payment_failed", user_id=account.user_id, invoice_id=invoice.get("id"))
        if await self.repository.record_payment(payment):
            await self._log(
                account,
                LogEventType.PAYMENT_FAILED,
                "Subscription payment failed",
                payment_id=payment.payment_id,
                amount=payment.amount,
                successful=False,
            )

    async def _on_stripe_subscription_deleted(self, subscription: dict) -> None:
        await self._end_provider_subscription(
            subscription.get("id"),
            customer_id=subscription.get("customer"),
            event_type=LogEventType.SUBSCRIPTION_CANCELLED,
            description="Subscription cancelled by Stripe",
        )

    async def _end_provider_subscription(
        self,
        subscription_id: str | None,
        *,
        customer_id: str | None = None,
        event_type: LogEventType,
        description: str,
    ) -> None:
        if not subscription_id:
            return
        account = await self.repository.get_account_by_subscription_id(subscription_id)
        if account is None and customer_id:
            account = await self.repository.get_account_by_customer_id(customer_id)
        if account is None or account.subscription.provider_subscription_id != subscription_id:
            logger.info("provider_subscription_end_ignored", subscription_id=subscription_id)
            return

        async with self._locks[account.user_id]:
            account = await self._get_account(account.user_id)
            if account.subscription.provider_subscription_id != subscription_id:
                return
            previous_plan = account.subscription.plan
            provider = account.subscription.payment_provider
            self._revert_to_free(account, canceled=True)
            account = await self.repository.upsert_account(account)

        logger.info("provider_subscription_ended", user_id=account.user_id, subscription_id=subscription_id)
        await self._log(
            account,
            event_type,
            description,
            plan_name=previous_plan,
            payment_provider=provider,
            subscription_id=subscription_id,
        )

    async def handle_paypal_event(self, event: dict) -> bool:
        """Apply a verified PayPal event. Returns False for duplicates."""
        handlers = {
            "BILLING.SUBSCRIPTION.ACTIVATED": self._on_paypal_activated,
            "PAYMENT.SALE.COMPLETED": self._on_paypal_sale_completed,
            "BILLING.SUBSCRIPTION.PAYMENT.FAILED": self._on_paypal_payment_failed,
            "BILLING.SUBSCRIPTION.CANCELLED": self._on_paypal_cancelled,
            "BILLING.SUBSCRIPTION.EXPIRED": self._on_paypal_expired,
        }
        event_type = event.get("event_type", "")
        logger.info("paypal_event_received", event_id=event.get("id"), event_type=event_type)
        resource = event.get("resource") or {}
        handler = handlers.get(event_type, self._ignore)
        return await self._process_event(event.get("id"), handler, resource)

    async def _on_paypal_activated(self, resource: dict) -> None:
        subscription_id = resource.get("id")
        account = None
        if resource.get("custom_id"):
            account = await self.repository.get_account(resource["custom_id"])
        if account is None and subscription_id:
            account = await self.repository.get_account_by_subscription_id(subscription_id)
        if account is None:
            logger.warning("paypal_activation_account_missing", subscription_id=subscription_id)
            return

        plan_id = resource.get("plan_id") or ""
        plan = await self.repository.get_plan_by_paypal_plan_id(plan_id)
        if plan is None:
            logger.warning("paypal_plan_unknown", plan_id=plan_id)
            return

        async with self._locks[account.user_id]:
            account = await self._get_account(account.user_id)
            current = account.subscription
            if current.paypal_subscription_id == subscription_id and current.is_active:
                return
            next_billing = (resource.get("billing_info") or {}).get("next_billing_time")
            await self.activate_subscription(
                account,
                plan=plan,
                billing_cycle=plan.cycle_for_paypal_plan_id(plan_id),
                provider=PaymentProvider.PAYPAL,
                subscription_id=subscription_id,
                period_end=_parse_paypal_time(next_billing),
            )

    async def _on_paypal_sale_completed(self, resource: dict) -> None:
        subscription_id = resource.get("billing_agreement_id")
        if not subscription_id:
            return
        account = await self.repository.get_account_by_subscription_id(subscription_id)
        if account is None:
            logger.warning("paypal_sale_account_missing", subscription_id=subscription_id)
            return

        async with self._locks[account.user_id]:
            account = await self._get_account(account.user_id)
            sub = account.subscription
            now = self.now_provider()
            base = sub.end_date if sub.end_date and sub.end_date > now else now
            sub.end_date = _billing_period_end(base, sub.billing_cycle)
            sub.payment_failed = False
            sub.is_active = True
            account = await self._save_verified(account)

        amount = resource.get("amount") or {}
        payment = Payment(
            payment_key=str(resource.get("id")),
            user_id=account.user_id,
            provider=PaymentProvider.PAYPAL,
            payment_id=str(resource.get("id")),
            subscription_id=subscription_id,
            date=_parse_paypal_time(resource.get("create_time")) or self.now_provider(),
            amount=float(amount.get("total") or 0),
            currency=(amount.get("currency") or "USD").lower(),
            plan=account.subscription.plan,
            billing_cycle=account.subscription.billing_cycle,
            status=PaymentStatus.SUCCEEDED,
        )
        if await self.repository.record_payment(payment):
            await self._log(
                account,
                LogEventType.PAYMENT_SUCCEEDED,
                "PayPal subscription payment",
                payment_id=payment.payment_id,
                amount=payment.amount,
            )

    async def _on_paypal_payment_failed(self, resource: dict) -> None:
        subscription_id = resource.get("id")
        account = (
            await self.repository.get_account_by_subscription_id(subscription_id) if subscription_id else None
        )
        if account is None:
            logger.warning("paypal_failure_account_missing", subscription_id=subscription_id)
            return

        async with self._locks[account.user_id]:
            account = await self._get_account(account.user_id)
            account.subscription.payment_failed = True
            account = await self.repository.upsert_account(account)

        last_failed = (resource.get("billing_info") or {}).get("last_failed_payment") or {}
        amount = last_failed.get("amount") or {}
        failed_at = last_failed.get("time") or self.now_provider().isoformat()
        payment = Payment(
            payment_key=f"failed:{subscription_id}:{failed_at}",
            user_id=account.user_id,
            provider=PaymentProvider.PAYPAL,
            payment_id=subscription_id,
            subscription_id=subscription_id,
            date=self.now_provider(),
            amount=float(amount.get("value") or 0),
            currency=(amount.get("currency_code") or "USD").lower(),
            plan=account.subscription.plan,
            billing_cycle=account.subscription.billing_cycle,
            status=PaymentStatus.FAILED,
        )
        logger.warning("paypal_payment_failed", user_id=account.user_id, subscription_id=subscription_id)
        if await self.repository.record_payment(payment):
            await self._log(
                account,
                LogEventType.PAYMENT_FAILED,
                "PayPal subscription payment failed",
                payment_id=payment.payment_id,
                amount=payment.amount,
                successful=False,
            )

    async def _on_paypal_cancelled(self, resource: dict) -> None:
        await self._end_provider_subscription(
            resource.get("id"),
            event_type=LogEventType.SUBSCRIPTION_CANCELLED,
            description="Subscription cancelled in PayPal",
        )

    async def _on_paypal_expired(self, resource: dict) -> None:
        await self._end_provider_subscription(
            resource.get("id"),
            event_type=LogEventType.SUBSCRIPTION_EXPIRED,
            description="PayPal subscription expired",
        )

    # ------------------------------------------------------------------
    # Scheduled jobs
    # ------------------------------------------------------------------

    async def _reset_cycle(self, user_id: str, now: datetime) -> bool:
        async with self._locks[user_id]:
            account = await self._get_account(user_id)
            sub = account.subscription
            if sub.cycle_end_date is None or sub.cycle_end_date > now:
                return False

            window = timedelta(days=self.config.credit_cycle_days)
            start, end = sub.cycle_start_date or sub.cycle_end_date - window, sub.cycle_end_date
            while end <= now:
                start, end = end, end + window
            sub.cycle_start_date = start
            sub.cycle_end_date = end
            sub.credits_used = 0
            sub.last_reset_date = now

            applied = None
            pending = sub.pending_downgrade
            if pending and pending.scheduled_date <= now:
                plan = await self._get_plan(pending.plan)
                applied = (sub.plan, plan.name)
                sub.plan = plan.name
                sub.credits_total = plan.credits_total
                sub.price = plan.monthly_equivalent(sub.billing_cycle)
                sub.actual_price = plan.price_for(sub.billing_cycle)
                price_id = plan.price_id_for(sub.billing_cycle)
                if sub.stripe_subscription_id and price_id:
                    sub.price_id = price_id
                sub.pending_downgrade = None
            elif sub.plan == PlanName.FREE:
                sub.credits_total = self.config.free_plan_credits
                sub.is_active = True

            account = await self._save_verified(account)

        if applied:
            await self._log(
                account,
                LogEventType.PLAN_CHANGED,
                f"Scheduled downgrade from {applied[0].value} to {applied[1].value} applied",
            )
        await self._log(
            account,
            LogEventType.CYCLE_RESET,
            "Credit cycle reset",
            metadata={"cycle_end_date": end.isoformat(), "credits_total": account.subscription.credits_total},
        )
        return True

    async def reset_due_credit_cycles(self) -> int:
        """Reset credits for every account whose cycle ended. Returns the number reset."""
        now = self.now_provider()
        accounts = await self.repository.list_accounts_with_cycle_due(now)
        reset = 0
        for account in accounts:
            try:
                if await self._reset_cycle(account.user_id, now):
                    reset += 1
            except Exception as e:
                logger.exception("credit_cycle_reset_failed", user_id=account.user_id)
                await self._log(
                    account,
                    LogEventType.CYCLE_RESET_FAILED,
                    "Credit cycle reset failed",
                    successful=False,
                    error_message=str(e),
                )
        logger.info("credit_cycles_reset", due=len(accounts), reset=reset)
        return reset

    async def expire_due_subscriptions(self) -> int:
        """Revert lapsed paid subscriptions that no provider renews. Returns the number expired."""
        now = self.now_provider()
        accounts = await self.repository.list_accounts_with_subscription_due(now)
        expired = 0
        for candidate in accounts:
            sub = candidate.subscription
            if not sub.has_paid_plan or sub.provider_subscription_id:
                continue
            async with self._locks[candidate.user_id]:
                account = await self._get_account(candidate.user_id)
                sub = account.subscription
                if not sub.has_paid_plan or sub.provider_subscription_id or not sub.end_date or sub.end_date > now:
                    continue
                previous_plan = sub.plan
                self._revert_to_free(account, canceled=False)
                account = await self.repository.upsert_account(account)
            expired += 1
            await self._log(
                account,
                LogEventType.SUBSCRIPTION_EXPIRED,
                f"{previous_plan.value} subscription expired",
                plan_name=previous_plan,
            )
        logger.info("subscriptions_expired", due=len(accounts), expired=expired)
        return expired

    # ------------------------------------------------------------------
    # Admin
    # ------------------------------------------------------------------

    async def retry_payment(self, payment_key: str) -> RetryResult:
        payment = await self.repository.get_payment(payment_key)
        if payment is None:
            raise SubscriptionError("Payment not found", status_code=404)
        if payment.status != PaymentStatus.FAILED:
            raise SubscriptionError("Only failed payments can be retried")

        try:
            if payment.provider == PaymentProvider.STRIPE:
                result = await self._require_stripe().retry_payment_intent(payment.payment_id)
            elif payment.provider == PaymentProvider.PAYPAL:
                result = await self._require_paypal().retry_subscription_payment(
                    payment.subscription_id or payment.payment_id
                )
            else:
                raise SubscriptionError(f"Cannot retry {payment.provider.value} payments")
        except ProviderError as e:
            result = RetryResult(success=False, error=e.message)

        if result.success:
            await self.repository.update_payment_status(payment_key, PaymentStatus.SUCCEEDED)
            async with self._locks[payment.user_id]:
                account = await self.repository.get_account(payment.user_id)
                if account is not None:
                    account.subscription.payment_failed = False
                    await self.repository.upsert_account(account)

        logger.info("payment_retry", payment_key=payment_key, success=result.success, status=result.status)
        await self._log(
            payment.user_id,
            LogEventType.PAYMENT_RETRY_SUCCESS if result.success else LogEventType.PAYMENT_RETRY_FAILED,
            "Payment retry succeeded" if result.success else "Payment retry failed",
            plan_name=payment.plan,
            billing_cycle=payment.billing_cycle,
            payment_provider=payment.provider,
            subscription_id=payment.subscription_id,
            payment_id=payment.payment_id,
            amount=payment.amount,
            successful=result.success,
            error_message=result.error,
        )
        return result

    async def list_logs(self, **filters: Any) -> list[SubscriptionLog]:
        return await self.repository.list_logs(**filters)

    async def list_payments(self, **filters: Any) -> list[Payment]:
        return await self.repository.list_payments(**filters)

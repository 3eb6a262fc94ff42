"""
Shared test fixtures for the StoryScene subscription test suite.
"""

import asyncio
import json
from collections.abc import Iterator
from datetime import UTC, datetime, timedelta

import pytest
import structlog
from fastapi.testclient import TestClient

from storyscene.config import BillingConfig
from storyscene.errors import ProviderError
from storyscene.models.subscription import (
    DEFAULT_PLANS,
    BillingCycle,
    PaymentMethodSummary,
    PaymentProvider,
    Plan,
    PlanName,
    RetryResult,
    UserAccount,
)
from storyscene.services.repository import InMemorySubscriptionRepository
from storyscene.services.subscription_service import SubscriptionService

START = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


@pytest.fixture(autouse=True)
def _set_test_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Set environment variables so Settings are deterministic in tests."""
    monkeypatch.setenv("SUPABASE_URL", "")
    monkeypatch.setenv("SUPABASE_SERVICE_ROLE_KEY", "")
    monkeypatch.setenv("BILLING__ADMIN_USER_IDS", '["admin-1"]')
    monkeypatch.setenv("SCHEDULER__ENABLED", "false")


@pytest.fixture(autouse=True)
def _configure_structlog_for_tests():
    """Configure structlog for tests using a simple, deterministic setup."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(0),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )


@pytest.fixture
def client() -> Iterator[TestClient]:
    """FastAPI TestClient wrapping the main application."""
    # Clear the lru_cache so settings pick up test env vars
    from storyscene.config import get_settings

    get_settings.cache_clear()

    from storyscene.main import app

    test_client = TestClient(app)
    yield test_client
    app.dependency_overrides.clear()


class MutableClock:
    """Deterministic clock helper for tests."""

    def __init__(self, now: datetime):
        self._now = now

    def now(self) -> datetime:
        return self._now

    def advance(self, delta: timedelta) -> None:
        self._now += delta


class FakeStripeService:
    """In-process stand-in for StripeService recording every call."""

    def __init__(self):
        self.customer_id = "cus_test"
        self.checkout_calls: list[dict] = []
        self.portal_calls: list[dict] = []
        self.price_updates: list[tuple[str, str, float]] = []
        self.scheduled_changes: list[tuple[str, str]] = []
        self.cancelled: list[str] = []
        self.subscriptions: dict[str, dict] = {}
        self.sessions: dict[str, dict] = {}
        self.intent_status = "succeeded"
        self.create_error: Exception | None = None
        self.update_error: Exception | None = None
        self.cancel_error: Exception | None = None
        self.retrieve_error: Exception | None = None
        self.retry_result = RetryResult(success=True, status="succeeded")
        self.period_end = START + timedelta(days=30)
        # set to hold plan-change calls open until the test releases them
        self.gate: asyncio.Event | None = None
        self.entered = asyncio.Event()

    async def _hold(self):
        if self.gate is not None:
            self.entered.set()
            await self.gate.wait()

    async def get_or_create_customer(self, *, user_id, email, name=None, customer_id=None):
        return customer_id or self.customer_id

    async def create_checkout_session(self, **kwargs):
        self.checkout_calls.append(kwargs)
        return {"id": "cs_test", "url": "https://checkout.test/session"}

    async def create_portal_session(self, **kwargs):
        self.portal_calls.append(kwargs)
        return {"id": "bps_test", "url": "https://billing.test/portal"}

    async def create_subscription(self, *, customer_id, price_id, payment_method_id, metadata=None):
        if self.create_error is not None:
            raise self.create_error
        status = "active" if self.intent_status == "succeeded" else "incomplete"
        subscription = {
            "id": "sub_pi",
            "customer": customer_id,
            "status": status,
            "items": {"data": [{"id": "si_1", "price": {"id": price_id}}]},
            "current_period_end": int(self.period_end.timestamp()),
            "latest_invoice": {
                "id": "in_pi",
                "amount_paid": 1900 if status == "active" else 0,
                "currency": "usd",
                "number": "INV-PI",
                "payment_intent": {
                    "id": "pi_1",
                    "status": self.intent_status,
                    "client_secret": "pi_1_secret",
                },
            },
        }
        card = PaymentMethodSummary(id=payment_method_id, brand="visa", last4="4242")
        return subscription, card

    async def retrieve_subscription(self, subscription_id):
        if self.retrieve_error is not None:
            raise self.retrieve_error
        return self.subscriptions[subscription_id]

    async def retrieve_checkout_session(self, session_id):
        return self.sessions[session_id]

    async def update_subscription_price(self, subscription_id, price_id, prorated_amount):
        await self._hold()
        if self.update_error is not None:
            raise self.update_error
        self.price_updates.append((subscription_id, price_id, prorated_amount))
        return {"id": subscription_id, "status": "active"}

    async def schedule_price_change(self, subscription_id, price_id):
        await self._hold()
        self.scheduled_changes.append((subscription_id, price_id))
        return self.period_end

    async def cancel_subscription(self, subscription_id):
        await self._hold()
        if self.cancel_error is not None:
            raise self.cancel_error
        self.cancelled.append(subscription_id)
        return {"id": subscription_id, "status": "canceled"}

    async def invoice_receipt(self, invoice):
        return None, f"https://receipt.test/{invoice.get('id')}"

    async def retry_payment_intent(self, payment_intent_id):
        return self.retry_result

    def verify_webhook_event(self, payload, signature):
        if not signature:
            raise ValueError("Missing Stripe-Signature header")
        if signature == "bad":
            raise ValueError("Invalid signature")
        return json.loads(payload)


class FakePayPalService:
    """In-process stand-in for PayPalService."""

    def __init__(self):
        self.subscriptions: dict[str, dict] = {}
        self.revised: list[tuple[str, str]] = []
        self.cancelled: list[tuple[str, str]] = []
        self.cancel_error: Exception | None = None
        self.retry_result = RetryResult(success=True, status="COMPLETED")
        self.verified = True

    async def get_subscription(self, subscription_id):
        if subscription_id not in self.subscriptions:
            raise ProviderError("paypal", "PayPal error: Resource not found")
        return self.subscriptions[subscription_id]

    async def cancel_subscription(self, subscription_id, reason="Cancelled by user"):
        if self.cancel_error is not None:
            raise self.cancel_error
        self.cancelled.append((subscription_id, reason))

    async def revise_subscription(self, subscription_id, plan_id):
        self.revised.append((subscription_id, plan_id))
        return {"plan_id": plan_id}

    async def retry_subscription_payment(self, subscription_id):
        return self.retry_result

    async def verify_webhook_signature(self, headers, event):
        return self.verified

    async def close(self):
        return None


def priced_plans() -> list[Plan]:
    """Default catalog with Stripe prices and PayPal plans filled in."""
    plans = []
    for plan in DEFAULT_PLANS:
        name = plan.name.value
        plans.append(
            plan.model_copy(
                update={
                    "monthly_price_id": f"price_{name}_monthly",
                    "yearly_price_id": f"price_{name}_yearly",
                    "paypal_monthly_plan_id": f"P-{name.upper()}-M",
                    "paypal_yearly_plan_id": f"P-{name.upper()}-Y",
                }
            )
        )
    return plans


@pytest.fixture
def fake_stripe() -> FakeStripeService:
    return FakeStripeService()


@pytest.fixture
def fake_paypal() -> FakePayPalService:
    return FakePayPalService()


@pytest.fixture
def make_service(fake_stripe, fake_paypal):
    """Factory for a SubscriptionService over an in-memory repository and fake providers."""

    def _make(
        *,
        config: BillingConfig | None = None,
        clock: MutableClock | None = None,
        with_providers: bool = True,
    ) -> tuple[SubscriptionService, InMemorySubscriptionRepository, MutableClock]:
        active_clock = clock or MutableClock(START)
        repo = InMemorySubscriptionRepository(priced_plans())
        service = SubscriptionService(
            repo,
            config or BillingConfig(),
            stripe_service=fake_stripe if with_providers else None,
            paypal_service=fake_paypal if with_providers else None,
            now_provider=active_clock.now,
            client_url="https://app.test",
        )
        return service, repo, active_clock

    return _make


@pytest.fixture
def subscribe():
    """Put a user on a paid monthly plan, optionally with credits already used."""

    async def _subscribe(
        service: SubscriptionService,
        user_id: str = "user-1",
        plan: PlanName = PlanName.STARTER,
        *,
        provider: PaymentProvider = PaymentProvider.STRIPE,
        subscription_id: str | None = "sub_1",
        credits_used: int = 0,
        customer_id: str = "cus_1",
    ) -> UserAccount:
        repo = service.repository
        account = await service.get_or_create_account(user_id, f"{user_id}@example.com")
        account.stripe_customer_id = customer_id
        plan_obj = await repo.get_plan(plan)
        account = await service.activate_subscription(
            account,
            plan=plan_obj,
            billing_cycle=BillingCycle.MONTHLY,
            provider=provider,
            subscription_id=subscription_id if provider != PaymentProvider.MANUAL else None,
            price_id=plan_obj.monthly_price_id if provider == PaymentProvider.STRIPE else None,
        )
        if credits_used:
            account.subscription.credits_used = credits_used
            account = await repo.upsert_account(account)
        return account

    return _subscribe

"""Fixtures wiring in-memory services into the FastAPI app state."""

from datetime import UTC, datetime, timedelta

import pytest

from storyscene.auth import AuthenticatedUser, get_current_user
from storyscene.config import SchedulerConfig
from storyscene.models.subscription import (
    BillingCycle,
    PlanName,
    SubscriptionState,
    UserAccount,
)
from storyscene.scheduler import SubscriptionScheduler

START = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


@pytest.fixture
def api(client, make_service, fake_stripe, fake_paypal):
    """App with in-memory subscription services; returns (client, service, repo, clock)."""
    service, repo, clock = make_service()
    state = client.app.state
    state.subscription_service = service
    state.repository = repo
    state.stripe_service = fake_stripe
    state.paypal_service = fake_paypal
    state.scheduler = SubscriptionScheduler(service, SchedulerConfig())
    return client, service, repo, clock


@pytest.fixture
def as_user(client):
    """Authenticate every request as the given user."""

    def _as_user(user_id: str = "user-1", email: str = "user@example.com") -> None:
        async def _fake_user() -> AuthenticatedUser:
            return AuthenticatedUser(id=user_id, email=email)

        client.app.dependency_overrides[get_current_user] = _fake_user

    return _as_user


@pytest.fixture
def seed_subscriber():
    """Store a user on an active monthly Stripe subscription."""

    def _seed(
        repo,
        user_id: str = "user-1",
        *,
        plan: PlanName = PlanName.STARTER,
        credits_used: int = 0,
        subscription_id: str = "sub_1",
        customer_id: str = "cus_1",
    ) -> UserAccount:
        stored_plan = repo.plans[plan]
        account = UserAccount(
            user_id=user_id,
            email=f"{user_id}@example.com",
            stripe_customer_id=customer_id,
            subscription=SubscriptionState(
                plan=plan,
                credits_total=stored_plan.credits_total,
                credits_used=credits_used,
                is_active=True,
                billing_cycle=BillingCycle.MONTHLY,
                start_date=START,
                end_date=START + timedelta(days=31),
                cycle_start_date=START,
                cycle_end_date=START + timedelta(days=30),
                stripe_subscription_id=subscription_id,
                price_id=stored_plan.monthly_price_id,
                price=stored_plan.monthly_price,
                actual_price=stored_plan.monthly_price,
            ),
        )
        repo.accounts[user_id] = account
        repo.customer_to_user[customer_id] = user_id
        return account

    return _seed

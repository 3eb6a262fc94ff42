"""Subscription, plan, payment ledger and audit log models."""

from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field, computed_field


class PlanName(str, Enum):
    """Subscription tiers."""

    FREE = "free"
    STARTER = "starter"
    GROWTH = "growth"
    SCALE = "scale"


PAID_PLANS = {PlanName.STARTER, PlanName.GROWTH, PlanName.SCALE}


class BillingCycle(str, Enum):
    """Invoice cadence set by the payment provider."""

    MONTHLY = "monthly"
    YEARLY = "yearly"
    NONE = "none"


class PaymentProvider(str, Enum):
    STRIPE = "stripe"
    PAYPAL = "paypal"
    MANUAL = "manual"


class PaymentStatus(str, Enum):
    SUCCEEDED = "succeeded"
    PENDING = "pending"
    FAILED = "failed"


class LogEventType(str, Enum):
    """Lifecycle events recorded in the audit trail."""

    SUBSCRIPTION_CREATED = "subscription_created"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_CANCELLED = "subscription_cancelled"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_RETRY_SUCCESS = "payment_retry_success"
    PAYMENT_RETRY_FAILED = "payment_retry_failed"
    CYCLE_RESET = "cycle_reset"
    CYCLE_RESET_FAILED = "cycle_reset_failed"
    RENEWAL_NOTICE_SENT = "renewal_notice_sent"
    SUBSCRIPTION_EXPIRED = "subscription_expired"
    PLAN_CHANGED = "plan_changed"
    CREDITS_UPDATED = "credits_updated"


class PendingDowngrade(BaseModel):
    """Plan change deferred to the next credit-cycle boundary."""

    plan: PlanName
    scheduled_date: datetime


class PaymentMethodSummary(BaseModel):
    """Card details safe to store and display."""

    id: str
    brand: str | None = None
    last4: str | None = None
    exp_month: str | None = None
    exp_year: str | None = None
    name_on_card: str | None = None
    created_at: datetime | None = None


class SubscriptionState(BaseModel):
    """Subscription and credit counters embedded in the user account."""

    plan: PlanName = PlanName.FREE
    credits_total: int = Field(default=0, ge=0)
    credits_used: int = Field(default=0, ge=0)
    is_active: bool = False
    billing_cycle: BillingCycle = BillingCycle.NONE

    # Billing (invoice) period
    start_date: datetime | None = None
    end_date: datetime | None = None
    # Credit window
    cycle_start_date: datetime | None = None
    cycle_end_date: datetime | None = None
    last_reset_date: datetime | None = None

    stripe_subscription_id: str | None = None
    paypal_subscription_id: str | None = None
    price_id: str | None = None
    price: float | None = None  # monthly equivalent
    actual_price: float | None = None  # amount charged per billing cycle

    canceled_at: datetime | None = None
    cancel_at_period_end: bool = False
    is_canceled: bool = False
    payment_failed: bool = False
    pending_downgrade: PendingDowngrade | None = None

    @computed_field
    @property
    def credits_remaining(self) -> int:
        return max(0, self.credits_total - self.credits_used)

    @property
    def payment_provider(self) -> PaymentProvider | None:
        if self.stripe_subscription_id:
            return PaymentProvider.STRIPE
        if self.paypal_subscription_id:
            return PaymentProvider.PAYPAL
        return None

    @property
    def provider_subscription_id(self) -> str | None:
        return self.stripe_subscription_id or self.paypal_subscription_id

    @property
    def has_paid_plan(self) -> bool:
        return self.is_active and self.plan in PAID_PLANS


class UserAccount(BaseModel):
    """Persisted user record with its embedded subscription."""

    user_id: str
    email: str | None = None
    name: str | None = None
    role: Literal["user", "admin"] = "user"
    stripe_customer_id: str | None = None
    payment_method: PaymentMethodSummary | None = None
    payment_methods: list[PaymentMethodSummary] = Field(default_factory=list)
    subscription: SubscriptionState = Field(default_factory=SubscriptionState)
    created_at: datetime | None = None
    updated_at: datetime | None = None


class Plan(BaseModel):
    """Reference data for a paid tier."""

    name: PlanName
    description: str = ""
    features: list[str] = Field(default_factory=list)
    monthly_price: float
    yearly_price: float
    monthly_price_id: str = ""
    yearly_price_id: str = ""
    paypal_monthly_plan_id: str = ""
    paypal_yearly_plan_id: str = ""
    credits_total: int
    active: bool = True

    def price_for(self, cycle: BillingCycle) -> float:
        return self.yearly_price if cycle == BillingCycle.YEARLY else self.monthly_price

    def monthly_equivalent(self, cycle: BillingCycle) -> float:
        if cycle == BillingCycle.YEARLY:
            return round(self.yearly_price / 12, 2)
        return self.monthly_price

    def price_id_for(self, cycle: BillingCycle) -> str:
        return self.yearly_price_id if cycle == BillingCycle.YEARLY else self.monthly_price_id

    def paypal_plan_id_for(self, cycle: BillingCycle) -> str:
        if cycle == BillingCycle.YEARLY:
            return self.paypal_yearly_plan_id
        return self.paypal_monthly_plan_id

    def cycle_for_price_id(self, price_id: str) -> BillingCycle:
        return BillingCycle.YEARLY if price_id == self.yearly_price_id else BillingCycle.MONTHLY

    def cycle_for_paypal_plan_id(self, plan_id: str) -> BillingCycle:
        if plan_id == self.paypal_yearly_plan_id:
            return BillingCycle.YEARLY
        return BillingCycle.MONTHLY

    @computed_field
    @property
    def savings_amount(self) -> float:
        return round(self.monthly_price * 12 - self.yearly_price, 2)

    @computed_field
    @property
    def savings_percentage(self) -> int:
        monthly_total = self.monthly_price * 12
        if monthly_total <= 0:
            return 0
        return round(self.savings_amount / monthly_total * 100)


DEFAULT_PLANS: list[Plan] = [
    Plan(
        name=PlanName.STARTER,
        description="Perfect for beginners and casual creators",
        features=[
            "10 videos per month",
            "All 200+ UGC avatars",
            "Generate unlimited viral hooks",
        ],
        monthly_price=19,
        yearly_price=190,
        credits_total=10,
    ),
    Plan(
        name=PlanName.GROWTH,
        description="Ideal for growing creators and small businesses",
        features=[
            "50 videos per month",
            "All 200+ UGC avatars",
            "Publish to TikTok",
            "Schedule/automate videos",
        ],
        monthly_price=49,
        yearly_price=490,
        credits_total=50,
    ),
    Plan(
        name=PlanName.SCALE,
        description="For professional creators and businesses",
        features=[
            "150 videos per month",
            "All 200+ UGC avatars",
            "Publish to TikTok",
            "Schedule/automate videos",
        ],
        monthly_price=95,
        yearly_price=950,
        credits_total=150,
    ),
]


class Payment(BaseModel):
    """Ledger row for a provider charge."""

    payment_key: str
    user_id: str
    provider: PaymentProvider
    payment_id: str
    invoice_id: str | None = None
    subscription_id: str | None = None
    customer_id: str | None = None
    date: datetime
    amount: float
    currency: str = "usd"
    plan: PlanName
    billing_cycle: BillingCycle
    status: PaymentStatus = PaymentStatus.PENDING
    receipt_url: str | None = None
    receipt_number: str | None = None
    payment_method: PaymentMethodSummary | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class SubscriptionLog(BaseModel):
    """Audit trail entry."""

    user_id: str
    event_type: LogEventType
    description: str
    plan_name: PlanName | None = None
    billing_cycle: BillingCycle | None = None
    payment_provider: PaymentProvider | None = None
    subscription_id: str | None = None
    payment_id: str | None = None
    amount: float | None = None
    successful: bool = True
    error_message: str | None = None
    created_at: datetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class ProrationQuote(BaseModel):
    """Price and credit adjustment for a mid-cycle upgrade."""

    current_plan: PlanName
    target_plan: PlanName
    billing_cycle: BillingCycle
    days_elapsed: int
    days_remaining: int
    price_difference: float
    prorated_amount: float
    additional_credits: int


class UsageSummary(BaseModel):
    """Credit usage for the current cycle."""

    credits_used: int
    credits_total: int
    credits_remaining: int
    plan: PlanName
    is_active: bool
    billing_cycle: BillingCycle
    cycle_end_date: datetime | None = None
    days_until_reset: int | None = None
    pending_downgrade: PendingDowngrade | None = None


class SubscriptionStatus(BaseModel):
    """Subscription document plus the plan it points at."""

    subscription: SubscriptionState
    plan_details: Plan | None = None


class RetryResult(BaseModel):
    """Outcome of a manual payment retry."""

    success: bool
    status: str | None = None
    requires_action: bool = False
    client_secret: str | None = None
    error: str | None = None

"""Storage contract and repositories for subscription state."""

import asyncio
from datetime import UTC, datetime
from typing import Any, Protocol

import structlog

from storyscene.config import BillingConfig
from storyscene.models.subscription import (
    DEFAULT_PLANS,
    LogEventType,
    Payment,
    PaymentStatus,
    Plan,
    PlanName,
    SubscriptionLog,
    UserAccount,
)

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class SubscriptionRepository(Protocol):
    """Storage contract for accounts, plans, the payment ledger and audit log."""

    async def get_account(self, user_id: str) -> UserAccount | None:
        """Fetch a user account."""

    async def get_account_by_customer_id(self, customer_id: str) -> UserAccount | None:
        """Fetch account by Stripe customer ID."""

    async def get_account_by_subscription_id(self, subscription_id: str) -> UserAccount | None:
        """Fetch account by Stripe or PayPal subscription ID."""

    async def upsert_account(self, account: UserAccount) -> UserAccount:
        """Persist account state."""

    async def consume_credits(self, user_id: str, amount: int) -> UserAccount | None:
        """Atomically add ``amount`` to credits_used if it stays within credits_total.

        Returns the updated account, or None when the condition failed
        (nothing is written in that case).
        """

    async def list_accounts_with_cycle_due(self, now: datetime) -> list[UserAccount]:
        """Accounts whose credit cycle ended at or before ``now``."""

    async def list_accounts_with_subscription_due(self, now: datetime) -> list[UserAccount]:
        """Active accounts whose billing period ended at or before ``now``."""

    async def list_plans(self, active_only: bool = True) -> list[Plan]:
        """Plans sorted by monthly price."""

    async def get_plan(self, name: PlanName) -> Plan | None:
        """Fetch a plan by name."""

    async def get_plan_by_price_id(self, price_id: str) -> Plan | None:
        """Fetch the plan owning a monthly or yearly Stripe price."""

    async def get_plan_by_paypal_plan_id(self, plan_id: str) -> Plan | None:
        """Fetch the plan owning a PayPal billing plan."""

    async def record_payment(self, payment: Payment) -> bool:
        """Insert a ledger row keyed by payment_key.

        Returns False when the key already exists.
        """

    async def get_payment(self, payment_key: str) -> Payment | None:
        """Fetch a ledger row."""

    async def update_payment_status(self, payment_key: str, status: PaymentStatus) -> None:
        """Change the status of a ledger row."""

    async def list_payments(
        self,
        *,
        user_id: str | None = None,
        status: PaymentStatus | None = None,
        limit: int = 50,
    ) -> list[Payment]:
        """Ledger rows, newest first."""

    async def append_log(self, log: SubscriptionLog) -> None:
        """Append an audit trail entry."""

    async def list_logs(
        self,
        *,
        user_id: str | None = None,
        event_type: LogEventType | None = None,
        successful: bool | None = None,
        limit: int = 100,
    ) -> list[SubscriptionLog]:
        """Audit entries, newest first."""

    async def mark_webhook_processed(self, event_id: str) -> bool:
        """Record webhook idempotency key.

        Returns True when the event is new; False if already seen.
        """

    async def release_webhook_event(self, event_id: str) -> None:
        """Forget an idempotency key so a provider retry is processed again."""


class InMemorySubscriptionRepository:
    """In-memory repository used for tests and local fallback."""

    def __init__(self, plans: list[Plan] | None = None) -> None:
        self.accounts: dict[str, UserAccount] = {}
        self.customer_to_user: dict[str, str] = {}
        self.plans: dict[PlanName, Plan] = {
            plan.name: plan.model_copy(deep=True) for plan in (plans or DEFAULT_PLANS)
        }
        self.payments: dict[str, Payment] = {}
        self.logs: list[SubscriptionLog] = []
        self.processed_events: set[str] = set()
        self._lock = asyncio.Lock()

    async def get_account(self, user_id: str) -> UserAccount | None:
        account = self.accounts.get(user_id)
        return account.model_copy(deep=True) if account else None

    async def get_account_by_customer_id(self, customer_id: str) -> UserAccount | None:
        user_id = self.customer_to_user.get(customer_id)
        if not user_id:
            return None
        return await self.get_account(user_id)

    async def get_account_by_subscription_id(self, subscription_id: str) -> UserAccount | None:
        for account in self.accounts.values():
            sub = account.subscription
            if subscription_id in (sub.stripe_subscription_id, sub.paypal_subscription_id):
                return account.model_copy(deep=True)
        return None

    async def upsert_account(self, account: UserAccount) -> UserAccount:
        stored = account.model_copy(deep=True)
        stored.updated_at = _utcnow()
        if stored.created_at is None:
            stored.created_at = stored.updated_at
        self.accounts[stored.user_id] = stored
        if stored.stripe_customer_id:
            self.customer_to_user[stored.stripe_customer_id] = stored.user_id
        return stored.model_copy(deep=True)

    async def consume_credits(self, user_id: str, amount: int) -> UserAccount | None:
        async with self._lock:
            account = self.accounts.get(user_id)
            if account is None:
                return None
            sub = account.subscription
            if sub.credits_used + amount > sub.credits_total:
                return None
            sub.credits_used += amount
            account.updated_at = _utcnow()
            return account.model_copy(deep=True)

    async def list_accounts_with_cycle_due(self, now: datetime) -> list[UserAccount]:
        return [
            account.model_copy(deep=True)
            for account in self.accounts.values()
            if account.subscription.cycle_end_date and account.subscription.cycle_end_date <= now
        ]

    async def list_accounts_with_subscription_due(self, now: datetime) -> list[UserAccount]:
        return [
            account.model_copy(deep=True)
            for account in self.accounts.values()
            if account.subscription.is_active
            and account.subscription.end_date
            and account.subscription.end_date <= now
        ]

    async def list_plans(self, active_only: bool = True) -> list[Plan]:
        plans = [p for p in self.plans.values() if p.active or not active_only]
        return [p.model_copy(deep=True) for p in sorted(plans, key=lambda p: p.monthly_price)]

    async def get_plan(self, name: PlanName) -> Plan | None:
        plan = self.plans.get(name)
        return plan.model_copy(deep=True) if plan else None

    async def get_plan_by_price_id(self, price_id: str) -> Plan | None:
        if not price_id:
            return None
        for plan in self.plans.values():
            if price_id in (plan.monthly_price_id, plan.yearly_price_id):
                return plan.model_copy(deep=True)
        return None

    async def get_plan_by_paypal_plan_id(self, plan_id: str) -> Plan | None:
        if not plan_id:
            return None
        for plan in self.plans.values():
            if plan_id in (plan.paypal_monthly_plan_id, plan.paypal_yearly_plan_id):
                return plan.model_copy(deep=True)
        return None

    async def record_payment(self, payment: Payment) -> bool:
        if payment.payment_key in self.payments:
            return False
        self.payments[payment.payment_key] = payment.model_copy(deep=True)
        return True

    async def get_payment(self, payment_key: str) -> Payment | None:
        payment = self.payments.get(payment_key)
        return payment.model_copy(deep=True) if payment else None

    async def update_payment_status(self, payment_key: str, status: PaymentStatus) -> None:
        payment = self.payments.get(payment_key)
        if payment is not None:
            payment.status = status

    async def list_payments(
        self,
        *,
        user_id: str | None = None,
        status: PaymentStatus | None = None,
        limit: int = 50,
    ) -> list[Payment]:
        rows = [
            p
            for p in self.payments.values()
            if (user_id is None or p.user_id == user_id) and (status is None or p.status == status)
        ]
        rows.sort(key=lambda p: p.date, reverse=True)
        return [p.model_copy(deep=True) for p in rows[:limit]]

    async def append_log(self, log: SubscriptionLog) -> None:
        entry = log.model_copy(deep=True)
        if entry.created_at is None:
            entry.created_at = _utcnow()
        self.logs.append(entry)

    async def list_logs(
        self,
        *,
        user_id: str | None = None,
        event_type: LogEventType | None = None,
        successful: bool | None = None,
        limit: int = 100,
    ) -> list[SubscriptionLog]:
        rows = [
            log
            for log in reversed(self.logs)
            if (user_id is None or log.user_id == user_id)
            and (event_type is None or log.event_type == event_type)
            and (successful is None or log.successful == successful)
        ]
        return [log.model_copy(deep=True) for log in rows[:limit]]

    async def mark_webhook_processed(self, event_id: str) -> bool:
        if event_id in self.processed_events:
            return False
        self.processed_events.add(event_id)
        return True

    async def release_webhook_event(self, event_id: str) -> None:
        self.processed_events.discard(event_id)


def _account_to_row(account: UserAccount) -> dict[str, Any]:
    """Flatten the lookup/scan fields next to the jsonb subscription document."""
    payload = account.model_dump(mode="json", exclude={"created_at"})
    sub = account.subscription
    payload.update(
        {
            "plan": sub.plan.value,
            "is_active": sub.is_active,
            "stripe_subscription_id": sub.stripe_subscription_id,
            "paypal_subscription_id": sub.paypal_subscription_id,
            "cycle_end_date": sub.cycle_end_date.isoformat() if sub.cycle_end_date else None,
            "end_date": sub.end_date.isoformat() if sub.end_date else None,
            "updated_at": _utcnow().isoformat(),
        }
    )
    return payload


def _row_to_account(row: dict[str, Any]) -> UserAccount:
    return UserAccount.model_validate(row)


class SupabaseSubscriptionRepository:
    """Supabase-backed repository.

    The credit counter update runs in the ``consume_credits`` Postgres
    function so the check and the increment happen in one statement.
    """

    def __init__(self, client, config: BillingConfig):
        self.client = client
        self.config = config

    async def _first_account(self, column: str, value: str) -> UserAccount | None:
        response = (
            await self.client.table(self.config.accounts_table)
            .select("*")
            .eq(column, value)
            .limit(1)
            .execute()
        )
        rows = response.data or []
        if not rows:
            return None
        return _row_to_account(rows[0])

    async def get_account(self, user_id: str) -> UserAccount | None:
        return await self._first_account("user_id", user_id)

    async def get_account_by_customer_id(self, customer_id: str) -> UserAccount | None:
        return await self._first_account("stripe_customer_id", customer_id)

    async def get_account_by_subscription_id(self, subscription_id: str) -> UserAccount | None:
        response = (
            await self.client.table(self.config.accounts_table)
            .select("*")
            .or_(
                f"stripe_subscription_id.eq.{subscription_id},"
                f"paypal_subscription_id.eq.{subscription_id}"
            )
            .limit(1)
            .execute()
        )
        rows = response.data or []
        return _row_to_account(rows[0]) if rows else None

    async def upsert_account(self, account: UserAccount) -> UserAccount:
        payload = _account_to_row(account)
        response = (
            await self.client.table(self.config.accounts_table)
            .upsert(payload, on_conflict="user_id")
            .execute()
        )
        rows = response.data or []
        if not rows:
            # Some Supabase responses return no data unless `returning=representation`.
            return account
        return _row_to_account(rows[0])

    async def consume_credits(self, user_id: str, amount: int) -> UserAccount | None:
        response = await self.client.rpc(
            "consume_credits", {"p_user_id": user_id, "p_amount": amount}
        ).execute()
        rows = response.data or []
        if not rows:
            return None
        return _row_to_account(rows[0])

    async def list_accounts_with_cycle_due(self, now: datetime) -> list[UserAccount]:
        response = (
            await self.client.table(self.config.accounts_table)
            .select("*")
            .lte("cycle_end_date", now.isoformat())
            .execute()
        )
        return [_row_to_account(row) for row in response.data or []]

    async def list_accounts_with_subscription_due(self, now: datetime) -> list[UserAccount]:
        response = (
            await self.client.table(self.config.accounts_table)
            .select("*")
            .eq("is_active", True)
            .lte("end_date", now.isoformat())
            .execute()
        )
        return [_row_to_account(row) for row in response.data or []]

    async def list_plans(self, active_only: bool = True) -> list[Plan]:
        query = self.client.table(self.config.plans_table).select("*")
        if active_only:
            query = query.eq("active", True)
        response = await query.order("monthly_price").execute()
        return [Plan.model_validate(row) for row in response.data or []]

    async def get_plan(self, name: PlanName) -> Plan | None:
        response = (
            await self.client.table(self.config.plans_table)
            .select("*")
            .eq("name", name.value)
            .limit(1)
            .execute()
        )
        rows = response.data or []
        return Plan.model_validate(rows[0]) if rows else None

    async def get_plan_by_price_id(self, price_id: str) -> Plan | None:
        response = (
            await self.client.table(self.config.plans_table)
            .select("*")
            .or_(f"monthly_price_id.eq.{price_id},yearly_price_id.eq.{price_id}")
            .limit(1)
            .execute()
        )
        rows = response.data or []
        return Plan.model_validate(rows[0]) if rows else None

    async def get_plan_by_paypal_plan_id(self, plan_id: str) -> Plan | None:
        response = (
            await self.client.table(self.config.plans_table)
            .select("*")
            .or_(f"paypal_monthly_plan_id.eq.{plan_id},paypal_yearly_plan_id.eq.{plan_id}")
            .limit(1)
            .execute()
        )
        rows = response.data or []
        return Plan.model_validate(rows[0]) if rows else None

    async def record_payment(self, payment: Payment) -> bool:
        response = (
            await self.client.table(self.config.payments_table)
            .upsert(
                payment.model_dump(mode="json"),
                on_conflict="payment_key",
                ignore_duplicates=True,
            )
            .execute()
        )
        return bool(response.data)

    async def get_payment(self, payment_key: str) -> Payment | None:
        response = (
            await self.client.table(self.config.payments_table)
            .select("*")
            .eq("payment_key", payment_key)
            .limit(1)
            .execute()
        )
        rows = response.data or []
        return Payment.model_validate(rows[0]) if rows else None

    async def update_payment_status(self, payment_key: str, status: PaymentStatus) -> None:
        await (
            self.client.table(self.config.payments_table)
            .update({"status": status.value})
            .eq("payment_key", payment_key)
            .execute()
        )

    async def list_payments(
        self,
        *,
        user_id: str | None = None,
        status: PaymentStatus | None = None,
        limit: int = 50,
    ) -> list[Payment]:
        query = self.client.table(self.config.payments_table).select("*")
        if user_id:
            query = query.eq("user_id", user_id)
        if status:
            query = query.eq("status", status.value)
        response = await query.order("date", desc=True).limit(limit).execute()
        return [Payment.model_validate(row) for row in response.data or []]

    async def append_log(self, log: SubscriptionLog) -> None:
        payload = log.model_dump(mode="json", exclude_none=True)
        payload.setdefault("created_at", _utcnow().isoformat())
        await self.client.table(self.config.logs_table).insert(payload).execute()

    async def list_logs(
        self,
        *,
        user_id: str | None = None,
        event_type: LogEventType | None = None,
        successful: bool | None = None,
        limit: int = 100,
    ) -> list[SubscriptionLog]:
        query = self.client.table(self.config.logs_table).select("*")
        if user_id:
            query = query.eq("user_id", user_id)
        if event_type:
            query = query.eq("event_type", event_type.value)
        if successful is not None:
            query = query.eq("successful", successful)
        response = await query.order("created_at", desc=True).limit(limit).execute()
        return [SubscriptionLog.model_validate(row) for row in response.data or []]

    async def mark_webhook_processed(self, event_id: str) -> bool:
        response = (
            await self.client.table(self.config.webhook_events_table)
            .upsert(
                {"event_id": event_id, "processed_at": _utcnow().isoformat()},
                on_conflict="event_id",
                ignore_duplicates=True,
            )
            .execute()
        )
        return bool(response.data)

    async def release_webhook_event(self, event_id: str) -> None:
        await (
            self.client.table(self.config.webhook_events_table)
            .delete()
            .eq("event_id", event_id)
            .execute()
        )

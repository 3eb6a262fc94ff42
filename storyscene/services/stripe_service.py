"""Stripe API wrapper."""

import asyncio
import json
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

import stripe
import structlog

from storyscene.config import StripeConfig
from storyscene.errors import PaymentMethodError, ProviderError
from storyscene.models.subscription import PaymentMethodSummary, RetryResult

logger = structlog.get_logger(__name__)

RETRIABLE_INTENT_STATUSES = {"requires_payment_method", "requires_action", "canceled"}


def _to_datetime(timestamp: int | None) -> datetime | None:
    if not timestamp:
        return None
    return datetime.fromtimestamp(timestamp, tz=UTC)


def _as_dict(obj: Any) -> dict:
    if obj is None:
        return {}
    if isinstance(obj, dict):
        return obj
    # Older SDKs only convert nested objects with to_dict_recursive
    if hasattr(obj, "to_dict_recursive"):
        return obj.to_dict_recursive()
    return obj.to_dict()


def _object_id(value: Any) -> str | None:
    """Stripe fields hold either an ID or the expanded object."""
    if isinstance(value, dict):
        return value.get("id")
    return value or None


# Payload readers. Newer API versions moved some invoice and subscription
# fields; each reader checks the current location and then the older one.


def invoice_subscription_id(invoice: dict) -> str | None:
    subscription = invoice.get("subscription")
    if not subscription:
        details = (invoice.get("parent") or {}).get("subscription_details") or {}
        subscription = details.get("subscription")
    return _object_id(subscription)


def _invoice_line(invoice: dict) -> dict:
    lines = (invoice.get("lines") or {}).get("data") or []
    return lines[0] if lines else {}


def invoice_price_id(invoice: dict) -> str | None:
    line = _invoice_line(invoice)
    if line.get("price"):
        return _object_id(line["price"])
    pricing = line.get("pricing") or {}
    return (pricing.get("price_details") or {}).get("price")


def invoice_period_end(invoice: dict) -> datetime | None:
    period = _invoice_line(invoice).get("period") or {}
    return _to_datetime(period.get("end") or invoice.get("period_end"))


def invoice_payment_key(invoice: dict) -> str:
    """Ledger key shared by the payment-intent flow and the invoice webhook."""
    return _object_id(invoice.get("payment_intent")) or str(invoice.get("id", ""))


def subscription_price_id(subscription: dict) -> str | None:
    items = (subscription.get("items") or {}).get("data") or []
    if not items:
        return None
    return _object_id(items[0].get("price"))


def subscription_period_end(subscription: dict) -> datetime | None:
    period_end = subscription.get("current_period_end")
    if not period_end:
        items = (subscription.get("items") or {}).get("data") or []
        period_end = items[0].get("current_period_end") if items else None
    return _to_datetime(period_end)


def card_summary(payment_method: dict | Any) -> PaymentMethodSummary | None:
    """Extract the displayable card fields from a PaymentMethod or charge details."""
    data = _as_dict(payment_method)
    card = data.get("card") or {}
    pm_id = data.get("id") or data.get("payment_method")
    if not pm_id:
        return None
    return PaymentMethodSummary(
        id=str(pm_id),
        brand=card.get("brand"),
        last4=card.get("last4"),
        exp_month=str(card["exp_month"]) if card.get("exp_month") else None,
        exp_year=str(card["exp_year"]) if card.get("exp_year") else None,
        created_at=datetime.now(UTC),
    )


class StripeService:
    """Encapsulates Stripe SDK calls used by the subscription service."""

    provider = "stripe"

    def __init__(self, config: StripeConfig) -> None:
        if not config.secret_key:
            raise ValueError("Stripe secret key is required")

        self.config = config
        stripe.api_key = config.secret_key

    async def _call(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Run a blocking SDK call off the event loop, normalizing SDK errors."""
        try:
            return await asyncio.to_thread(func, *args, **kwargs)
        except stripe.StripeError as e:
            logger.warning("stripe_call_failed", call=getattr(func, "__qualname__", str(func)), error=str(e))
            message = getattr(e, "user_message", None) or str(e)
            raise ProviderError(self.provider, f"Stripe error: {message}") from e

    async def get_or_create_customer(
        self,
        *,
        user_id: str,
        email: str | None,
        name: str | None = None,
        customer_id: str | None = None,
    ) -> str:
        """Return a live customer ID, creating the customer when missing or deleted."""
        if customer_id:
            customer = _as_dict(await self._call(stripe.Customer.retrieve, customer_id))
            if not customer.get("deleted"):
                return customer_id

        params: dict[str, Any] = {"metadata": {"user_id": user_id}}
        if email:
            params["email"] = email
        if name:
            params["name"] = name
        customer = _as_dict(await self._call(stripe.Customer.create, **params))
        logger.info("stripe_customer_created", user_id=user_id, customer_id=customer.get("id"))
        return str(customer["id"])

    async def create_checkout_session(
        self,
        *,
        customer_id: str,
        user_id: str,
        price_id: str,
        metadata: dict[str, str] | None = None,
        success_url: str | None = None,
        cancel_url: str | None = None,
    ) -> dict[str, str]:
        sub_metadata = {"user_id": user_id, **(metadata or {})}
        session = await self._call(
            stripe.checkout.Session.create,
            mode="subscription",
            customer=customer_id,
            line_items=[{"price": price_id, "quantity": 1}],
            allow_promotion_codes=True,
            client_reference_id=user_id,
            metadata=sub_metadata,
            subscription_data={"metadata": sub_metadata},
            success_url=success_url or self.config.checkout_success_url,
            cancel_url=cancel_url or self.config.checkout_cancel_url,
        )
        return {"id": session.id, "url": session.url}

    async def create_portal_session(
        self, *, customer_id: str, return_url: str | None = None
    ) -> dict[str, str]:
        session = await self._call(
            stripe.billing_portal.Session.create,
            customer=customer_id,
            return_url=return_url or self.config.portal_return_url,
        )
        return {"id": session.id, "url": session.url}

    async def create_subscription(
        self,
        *,
        customer_id: str,
        price_id: str,
        payment_method_id: str,
        metadata: dict[str, str] | None = None,
    ) -> tuple[dict, PaymentMethodSummary | None]:
        """
        Attach a payment method and subscribe the customer to a price.

        Returns the subscription (with ``latest_invoice.payment_intent``
        expanded) and the card summary of the attached method.

        Raises:
            PaymentMethodError: The payment method does not exist.
            ProviderError: Any other Stripe failure.
        """
        try:
            existing = _as_dict(
                await asyncio.to_thread(stripe.PaymentMethod.retrieve, payment_method_id)
            )
            if existing.get("id") != payment_method_id:
                raise PaymentMethodError(f"Invalid payment method: {payment_method_id}")
            attached = await asyncio.to_thread(
                stripe.PaymentMethod.attach, payment_method_id, customer=customer_id
            )
        except stripe.InvalidRequestError as e:
            if "No such PaymentMethod" in str(e):
                raise PaymentMethodError(f"Invalid payment method: {payment_method_id}") from e
            raise ProviderError(self.provider, f"Stripe error: {e}") from e
        except stripe.StripeError as e:
            raise ProviderError(self.provider, f"Stripe error: {e}") from e

        await self._call(
            stripe.Customer.modify,
            customer_id,
            invoice_settings={"default_payment_method": payment_method_id},
        )
        subscription = await self._call(
            stripe.Subscription.create,
            customer=customer_id,
            items=[{"price": price_id}],
            default_payment_method=payment_method_id,
            expand=["latest_invoice.payment_intent"],
            metadata=metadata or {},
        )
        return _as_dict(subscription), card_summary(attached)

    async def retrieve_subscription(self, subscription_id: str) -> dict:
        return _as_dict(await self._call(stripe.Subscription.retrieve, subscription_id))

    async def retrieve_checkout_session(self, session_id: str) -> dict:
        session = await self._call(
            stripe.checkout.Session.retrieve, session_id, expand=["subscription"]
        )
        return _as_dict(session)

    async def update_subscription_price(
        self, subscription_id: str, price_id: str, prorated_amount: float
    ) -> dict:
        """Swap the subscription's price now, letting Stripe invoice the proration."""
        subscription = await self.retrieve_subscription(subscription_id)
        items = subscription.get("items", {}).get("data", [])
        if not items:
            raise ProviderError(self.provider, "Stripe subscription has no items")

        updated = await self._call(
            stripe.Subscription.modify,
            subscription_id,
            proration_behavior="create_prorations",
            items=[{"id": items[0]["id"], "price": price_id}],
            metadata={
                "prorated_amount": f"{prorated_amount:.2f}",
                "upgrade_date": datetime.now(UTC).isoformat(),
            },
        )
        updated = _as_dict(updated)
        logger.info(
            "stripe_subscription_price_updated",
            subscription_id=subscription_id,
            price_id=price_id,
            status=updated.get("status"),
        )
        return updated

    async def schedule_price_change(self, subscription_id: str, price_id: str) -> datetime | None:
        """Keep the current price until period end, then switch to ``price_id``.

        A subscription that already has a schedule (an earlier downgrade)
        gets its phases rewritten instead of a second schedule.

        Returns the date the new price takes effect.
        """
        subscription = await self.retrieve_subscription(subscription_id)
        items = subscription.get("items", {}).get("data", [])
        if not items:
            raise ProviderError(self.provider, "Stripe subscription has no items")

        period_end_at = subscription_period_end(subscription)
        if period_end_at is None:
            raise ProviderError(self.provider, "Stripe subscription has no current period end")
        period_end = int(period_end_at.timestamp())
        current_price = subscription_price_id(subscription)

        existing = _object_id(subscription.get("schedule"))
        if existing:
            schedule = _as_dict(await self._call(stripe.SubscriptionSchedule.retrieve, existing))
        else:
            schedule = _as_dict(
                await self._call(stripe.SubscriptionSchedule.create, from_subscription=subscription_id)
            )
        await self._call(
            stripe.SubscriptionSchedule.modify,
            schedule["id"],
            end_behavior="release",
            phases=[
                {
                    "items": [{"price": current_price, "quantity": 1}],
                    "start_date": (schedule.get("current_phase") or {}).get("start_date", "now"),
                    "end_date": period_end,
                },
                {
                    "items": [{"price": price_id, "quantity": 1}],
                    "start_date": period_end,
                    "iterations": 1,
                },
            ],
        )
        logger.info(
            "stripe_price_change_scheduled",
            subscription_id=subscription_id,
            schedule_id=schedule["id"],
            price_id=price_id,
        )
        return period_end_at

    async def cancel_subscription(self, subscription_id: str) -> dict:
        return _as_dict(await self._call(stripe.Subscription.cancel, subscription_id))

    async def invoice_receipt(self, invoice: dict) -> tuple[PaymentMethodSummary | None, str | None]:
        """Card summary and receipt URL of the charge that paid an invoice."""
        charge_id = _object_id(invoice.get("charge"))
        if not charge_id:
            return None, invoice.get("hosted_invoice_url")
        charge = _as_dict(await self._call(stripe.Charge.retrieve, charge_id))
        details = charge.get("payment_method_details") or {}
        summary = card_summary({"id": charge.get("payment_method"), "card": details.get("card") or {}})
        return summary, charge.get("receipt_url") or invoice.get("hosted_invoice_url")

    async def retry_payment_intent(self, payment_intent_id: str) -> RetryResult:
        """Confirm a failed payment intent again with the customer's default method."""
        intent = _as_dict(await self._call(stripe.PaymentIntent.retrieve, payment_intent_id))
        status = intent.get("status")
        if status not in RETRIABLE_INTENT_STATUSES:
            return RetryResult(
                success=False,
                status=status,
                error=f"Payment in status {status} cannot be retried",
            )

        customer_id = intent.get("customer")
        if not customer_id:
            return RetryResult(success=False, status=status, error="No customer associated with this payment")

        customer = _as_dict(
            await self._call(
                stripe.Customer.retrieve,
                customer_id,
                expand=["invoice_settings.default_payment_method"],
            )
        )
        default_method = (customer.get("invoice_settings") or {}).get("default_payment_method")
        if isinstance(default_method, dict):
            default_method = default_method.get("id")
        if not default_method:
            return RetryResult(
                success=False, status=status, error="No default payment method found for customer"
            )

        confirmed = _as_dict(
            await self._call(
                stripe.PaymentIntent.confirm, payment_intent_id, payment_method=default_method
            )
        )
        confirmed_status = confirmed.get("status")
        if confirmed_status == "succeeded":
            return RetryResult(success=True, status=confirmed_status)
        if confirmed_status == "requires_action":
            return RetryResult(
                success=False,
                status=confirmed_status,
                requires_action=True,
                client_secret=confirmed.get("client_secret"),
                error="Payment requires additional customer action",
            )
        return RetryResult(
            success=False,
            status=confirmed_status,
            error=f"Payment retry failed with status: {confirmed_status}",
        )

    def verify_webhook_event(self, payload: bytes, signature: str | None) -> dict:
        """Check the Stripe-Signature header and return the event as plain JSON."""
        if not self.config.webhook_secret:
            raise ValueError("Stripe webhook secret is not configured")
        if not signature:
            raise ValueError("Missing Stripe-Signature header")

        stripe.Webhook.construct_event(
            payload=payload,
            sig_header=signature,
            secret=self.config.webhook_secret,
        )
        return json.loads(payload)

"""Subscription, credit and provider webhook endpoints."""

import json

import stripe
import structlog
from fastapi import APIRouter, Header, HTTPException, Query, Request
from pydantic import BaseModel, Field

from storyscene.api.dependencies import get_paypal_service, get_stripe_service, get_subscription_service
from storyscene.auth import CurrentUser
from storyscene.constants import STRIPE_SIGNATURE_HEADER
from storyscene.models.subscription import (
    BillingCycle,
    Plan,
    PlanName,
    ProrationQuote,
    SubscriptionState,
    UsageSummary,
)

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])


class CheckoutRequest(BaseModel):
    """Checkout session request."""

    price_id: str = Field(min_length=1, description="Stripe price of the chosen plan and cycle")


class CheckoutResponse(BaseModel):
    success: bool = True
    url: str
    session_id: str


class PaymentIntentRequest(BaseModel):
    """Subscribe with a card collected by Stripe Elements."""

    price_id: str = Field(min_length=1)
    payment_method_id: str = Field(min_length=1)


class PaymentIntentResponse(BaseModel):
    success: bool = True
    subscription_id: str | None = None
    status: str | None = None
    requires_action: bool = False
    client_secret: str | None = None
    subscription: SubscriptionState | None = None


class UpgradeRequest(BaseModel):
    plan: PlanName
    billing_cycle: BillingCycle | None = None


class UpgradeResponse(BaseModel):
    success: bool = True
    message: str
    subscription: SubscriptionState
    proration: ProrationQuote


class DowngradeRequest(BaseModel):
    plan: PlanName


class CancelRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


class UseCreditRequest(BaseModel):
    amount: int = Field(default=1, ge=1, description="Credits to consume, one per generated scene")


class PayPalActivationRequest(BaseModel):
    subscription_id: str = Field(min_length=1)


class PortalRequest(BaseModel):
    return_url: str | None = None


class PortalResponse(BaseModel):
    success: bool = True
    url: str


class PlansResponse(BaseModel):
    success: bool = True
    plans: list[Plan]


class SubscriptionResponse(BaseModel):
    success: bool = True
    message: str | None = None
    subscription: SubscriptionState
    plan_details: Plan | None = None


class UsageResponse(UsageSummary):
    success: bool = True


class WebhookResponse(BaseModel):
    """Webhook processing response."""

    received: bool
    processed: bool


@router.get("/plans", response_model=PlansResponse)
async def list_plans(request: Request) -> PlansResponse:
    """List active plans with yearly savings. Public."""
    service = get_subscription_service(request)
    return PlansResponse(plans=await service.list_plans())


@router.get("/status", response_model=SubscriptionResponse)
async def subscription_status(request: Request, user: CurrentUser) -> SubscriptionResponse:
    service = get_subscription_service(request)
    await service.get_or_create_account(user.id, user.email, user.name)
    status = await service.get_status(user.id)
    return SubscriptionResponse(subscription=status.subscription, plan_details=status.plan_details)


@router.get("/usage", response_model=UsageResponse)
async def subscription_usage(request: Request, user: CurrentUser) -> UsageResponse:
    service = get_subscription_service(request)
    usage = await service.get_usage(user.id)
    return UsageResponse(**usage.model_dump())


@router.post("/checkout-session", response_model=CheckoutResponse)
async def create_checkout_session(
    body: CheckoutRequest,
    request: Request,
    user: CurrentUser,
) -> CheckoutResponse:
    """Create a Stripe Checkout session for a plan price."""
    service = get_subscription_service(request)
    session = await service.create_checkout_session(user.id, user.email, body.price_id)
    return CheckoutResponse(url=session["url"], session_id=session["id"])


@router.post("/payment-intent", response_model=PaymentIntentResponse)
async def create_payment_intent(
    body: PaymentIntentRequest,
    request: Request,
    user: CurrentUser,
) -> PaymentIntentResponse:
    """Subscribe with a payment method. May return a client secret for 3-D Secure."""
    service = get_subscription_service(request)
    result = await service.subscribe_with_payment_method(
        user.id, user.email, body.price_id, body.payment_method_id
    )
    return PaymentIntentResponse(**result)


@router.get("/verify-session", response_model=SubscriptionResponse)
async def verify_session(
    request: Request,
    user: CurrentUser,
    session_id: str = Query(min_length=1),
) -> SubscriptionResponse:
    """Activate the subscription behind a completed checkout session."""
    service = get_subscription_service(request)
    account = await service.verify_checkout_session(user.id, session_id)
    return SubscriptionResponse(message="Subscription verified", subscription=account.subscription)


@router.post("/upgrade", response_model=UpgradeResponse)
async def upgrade_subscription(
    body: UpgradeRequest,
    request: Request,
    user: CurrentUser,
) -> UpgradeResponse:
    service = get_subscription_service(request)
    quote, account = await service.upgrade(user.id, body.plan, body.billing_cycle)
    return UpgradeResponse(
        message=f"Upgraded to {body.plan.value}",
        subscription=account.subscription,
        proration=quote,
    )


@router.post("/downgrade", response_model=SubscriptionResponse)
async def downgrade_subscription(
    body: DowngradeRequest,
    request: Request,
    user: CurrentUser,
) -> SubscriptionResponse:
    service = get_subscription_service(request)
    account = await service.downgrade(user.id, body.plan)
    pending = account.subscription.pending_downgrade
    return SubscriptionResponse(
        message=f"Downgrade to {body.plan.value} scheduled for {pending.scheduled_date.date().isoformat()}",
        subscription=account.subscription,
    )


@router.post("/cancel", response_model=SubscriptionResponse)
async def cancel_subscription(
    request: Request,
    user: CurrentUser,
    body: CancelRequest | None = None,
) -> SubscriptionResponse:
    service = get_subscription_service(request)
    account = await service.cancel(user.id, body.reason if body else None)
    return SubscriptionResponse(message="Subscription cancelled", subscription=account.subscription)


@router.post("/use-credit", response_model=UsageResponse)
async def use_credit(
    request: Request,
    user: CurrentUser,
    body: UseCreditRequest | None = None,
) -> UsageResponse:
    """Consume credits for a generation. 400 when the cycle allotment is used up."""
    service = get_subscription_service(request)
    usage = await service.use_credits(user.id, body.amount if body else 1)
    return UsageResponse(**usage.model_dump())


@router.post("/billing-portal", response_model=PortalResponse)
async def create_billing_portal(
    request: Request,
    user: CurrentUser,
    body: PortalRequest | None = None,
) -> PortalResponse:
    service = get_subscription_service(request)
    portal = await service.create_billing_portal_session(
        user.id, user.email, body.return_url if body else None
    )
    return PortalResponse(url=portal["url"])


@router.post("/paypal", response_model=SubscriptionResponse)
async def activate_paypal_subscription(
    body: PayPalActivationRequest,
    request: Request,
    user: CurrentUser,
) -> SubscriptionResponse:
    """Activate a subscription the user approved in the PayPal popup."""
    service = get_subscription_service(request)
    account = await service.activate_paypal_subscription(user.id, user.email, body.subscription_id)
    return SubscriptionResponse(message="PayPal subscription activated", subscription=account.subscription)


@router.post("/webhook", response_model=WebhookResponse)
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None, alias=STRIPE_SIGNATURE_HEADER),
) -> WebhookResponse:
    """Verify and apply a Stripe event."""
    service = get_subscription_service(request)
    stripe_service = get_stripe_service(request)
    payload = await request.body()

    try:
        event = stripe_service.verify_webhook_event(payload, stripe_signature)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except stripe.SignatureVerificationError:
        logger.warning("stripe_webhook_signature_invalid")
        raise HTTPException(status_code=400, detail="Invalid webhook signature")

    if not event.get("id"):
        raise HTTPException(status_code=400, detail="Stripe event has no ID")

    processed = await service.handle_stripe_event(event)
    logger.info("stripe_webhook_processed", event_id=event["id"], event_type=event.get("type"), processed=processed)
    return WebhookResponse(received=True, processed=processed)


@router.post("/paypal/webhook", response_model=WebhookResponse)
async def paypal_webhook(request: Request) -> WebhookResponse:
    """Verify and apply a PayPal event."""
    service = get_subscription_service(request)
    paypal_service = get_paypal_service(request)

    try:
        event = json.loads(await request.body())
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid webhook payload")

    try:
        verified = await paypal_service.verify_webhook_signature(request.headers, event)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if not verified:
        logger.warning("paypal_webhook_signature_invalid", event_id=event.get("id"))
        raise HTTPException(status_code=400, detail="Invalid webhook signature")

    if not event.get("id"):
        raise HTTPException(status_code=400, detail="PayPal event has no ID")

    processed = await service.handle_paypal_event(event)
    logger.info(
        "paypal_webhook_processed",
        event_id=event["id"],
        event_type=event.get("event_type"),
        processed=processed,
    )
    return WebhookResponse(received=True, processed=processed)

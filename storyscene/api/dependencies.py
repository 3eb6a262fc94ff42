"""Accessors for services created by the application lifespan."""

from fastapi import HTTPException, Request

from storyscene.scheduler import SubscriptionScheduler
from storyscene.services.paypal_service import PayPalService
from storyscene.services.stripe_service import StripeService
from storyscene.services.subscription_service import SubscriptionService


def get_subscription_service(request: Request) -> SubscriptionService:
    service = getattr(request.app.state, "subscription_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Subscription service unavailable")
    return service


def get_stripe_service(request: Request) -> StripeService:
    service = getattr(request.app.state, "stripe_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Stripe is not configured")
    return service


def get_paypal_service(request: Request) -> PayPalService:
    service = getattr(request.app.state, "paypal_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="PayPal is not configured")
    return service


def get_scheduler(request: Request) -> SubscriptionScheduler:
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        raise HTTPException(status_code=503, detail="Scheduler unavailable")
    return scheduler

"""Service wiring shared by the API lifespan and the standalone scheduler."""

from dataclasses import dataclass

import structlog
from supabase import acreate_client
from supabase._async.client import AsyncClient as AsyncSupabaseClient

from storyscene.config import Settings
from storyscene.scheduler import SubscriptionScheduler
from storyscene.services.paypal_service import PayPalService
from storyscene.services.repository import (
    InMemorySubscriptionRepository,
    SubscriptionRepository,
    SupabaseSubscriptionRepository,
)
from storyscene.services.stripe_service import StripeService
from storyscene.services.subscription_service import SubscriptionService

logger = structlog.get_logger(__name__)


@dataclass
class Services:
    supabase: AsyncSupabaseClient | None
    repository: SubscriptionRepository
    stripe_service: StripeService | None
    paypal_service: PayPalService | None
    subscription_service: SubscriptionService
    scheduler: SubscriptionScheduler

    async def close(self) -> None:
        self.scheduler.stop()
        if self.paypal_service is not None:
            await self.paypal_service.close()


async def create_supabase_client(settings: Settings) -> AsyncSupabaseClient | None:
    if not (settings.supabase_url and settings.supabase_service_role_key):
        logger.warning("supabase_not_configured", detail="Auth endpoints will return 503")
        return None
    try:
        client = await acreate_client(settings.supabase_url, settings.supabase_service_role_key)
    except Exception as e:
        logger.warning("supabase_init_failed", error=str(e))
        return None
    logger.info("supabase_configured")
    return client


async def build_services(settings: Settings) -> Services:
    """Create the repository, provider adapters, service and scheduler once."""
    supabase_client = await create_supabase_client(settings)

    if supabase_client is not None:
        repository = SupabaseSubscriptionRepository(supabase_client, settings.billing)
    else:
        logger.warning("subscription_repository_in_memory", detail="State is lost on restart")
        repository = InMemorySubscriptionRepository()

    stripe_service = None
    if settings.stripe.secret_key:
        stripe_service = StripeService(settings.stripe)
        logger.info("stripe_configured")
    else:
        logger.warning("stripe_not_configured", detail="Stripe endpoints will return 503")

    paypal_service = None
    if settings.paypal.client_id and settings.paypal.client_secret:
        paypal_service = PayPalService(settings.paypal)
        logger.info("paypal_configured", live=settings.paypal.live)
    else:
        logger.warning("paypal_not_configured", detail="PayPal endpoints will return 503")

    subscription_service = SubscriptionService(
        repository,
        settings.billing,
        stripe_service=stripe_service,
        paypal_service=paypal_service,
        client_url=settings.client_url,
    )
    scheduler = SubscriptionScheduler(subscription_service, settings.scheduler)

    return Services(
        supabase=supabase_client,
        repository=repository,
        stripe_service=stripe_service,
        paypal_service=paypal_service,
        subscription_service=subscription_service,
        scheduler=scheduler,
    )

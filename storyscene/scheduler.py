"""
Background jobs for credit-cycle resets and subscription expiry.

Both jobs run on an APScheduler ``AsyncIOScheduler`` that shares the event
loop with the API (or with ``storyscene.scheduler_main`` when run alone).
"""

from datetime import UTC, datetime

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from storyscene.config import SchedulerConfig
from storyscene.services.subscription_service import SubscriptionService

logger = structlog.get_logger(__name__)

CYCLE_RESET_JOB_ID = "credit_cycle_reset"
EXPIRY_JOB_ID = "subscription_expiry"


class SubscriptionScheduler:
    """Owns the APScheduler instance running the subscription jobs."""

    def __init__(
        self,
        service: SubscriptionService,
        config: SchedulerConfig,
        scheduler: AsyncIOScheduler | None = None,
    ):
        self.service = service
        self.config = config
        self._scheduler = scheduler or AsyncIOScheduler(timezone=UTC)

    @property
    def running(self) -> bool:
        return self._scheduler.running

    async def reset_credit_cycles(self) -> int | None:
        try:
            return await self.service.reset_due_credit_cycles()
        except Exception:
            logger.exception("credit_cycle_job_failed")
            return None

    async def expire_subscriptions(self) -> int | None:
        try:
            return await self.service.expire_due_subscriptions()
        except Exception:
            logger.exception("subscription_expiry_job_failed")
            return None

    def start(self) -> None:
        if self._scheduler.running:
            return

        first_run = {"next_run_time": datetime.now(UTC)} if self.config.run_on_startup else {}
        self._scheduler.add_job(
            self.reset_credit_cycles,
            trigger=IntervalTrigger(minutes=self.config.cycle_reset_interval_minutes),
            id=CYCLE_RESET_JOB_ID,
            name="Credit cycle reset",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            **first_run,
        )
        self._scheduler.add_job(
            self.expire_subscriptions,
            trigger=CronTrigger(hour=self.config.expiry_check_hour, minute=0, timezone=UTC),
            id=EXPIRY_JOB_ID,
            name="Subscription expiry",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            **first_run,
        )
        self._scheduler.start()
        logger.info(
            "subscription_scheduler_started",
            cycle_reset_interval_minutes=self.config.cycle_reset_interval_minutes,
            expiry_check_hour=self.config.expiry_check_hour,
            run_on_startup=self.config.run_on_startup,
        )

    def stop(self) -> None:
        if not self._scheduler.running:
            return
        self._scheduler.shutdown(wait=False)
        logger.info("subscription_scheduler_stopped")

    async def run_now(self) -> dict[str, int | None]:
        """Run both jobs immediately, outside the schedule."""
        return {
            "cycles_reset": await self.reset_credit_cycles(),
            "subscriptions_expired": await self.expire_subscriptions(),
        }

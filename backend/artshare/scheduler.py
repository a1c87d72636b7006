"""Scheduled billing jobs (APScheduler, started from the app lifespan)."""

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from artshare.services.usage_service import UsageService

logger = structlog.get_logger(__name__)

DAILY_RESET_JOB_ID = "daily_ai_credit_reset"


def build_scheduler(usage_service: UsageService, *, hour: int = 0) -> AsyncIOScheduler:
    """Scheduler with the daily credit reset registered but not yet started."""
    scheduler = AsyncIOScheduler(timezone="UTC")
    scheduler.add_job(
        usage_service.reset_daily_quotas,
        trigger=CronTrigger(hour=hour, minute=0, timezone="UTC"),
        id=DAILY_RESET_JOB_ID,
        name="Open today's AI credit counters",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    logger.info("billing_scheduler_configured", job_id=DAILY_RESET_JOB_ID, hour_utc=hour)
    return scheduler

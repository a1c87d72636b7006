"""Unit tests for the scheduled billing jobs."""

from apscheduler.triggers.cron import CronTrigger

from artshare.scheduler import DAILY_RESET_JOB_ID, build_scheduler
from artshare.services.entitlement_store import InMemoryEntitlementStore
from artshare.services.usage_service import UsageService


class TestBuildScheduler:
    def test_registers_daily_reset_job(self):
        usage_service = UsageService(InMemoryEntitlementStore())

        scheduler = build_scheduler(usage_service, hour=2)

        job = scheduler.get_job(DAILY_RESET_JOB_ID)
        assert job is not None
        assert job.func == usage_service.reset_daily_quotas
        assert isinstance(job.trigger, CronTrigger)
        fields = {field.name: str(field) for field in job.trigger.fields}
        assert fields["hour"] == "2"
        assert fields["minute"] == "0"
        assert scheduler.running is False

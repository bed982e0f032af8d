"""
Unit tests for ordersync/scheduler.py
"""
import pytest

from ordersync.config import SyncConfig
from ordersync.models import SyncRequest
from ordersync.scheduler import PERIODIC_JOB_ID, SyncScheduler, continuation_job_id


class TestSyncScheduler:

    def test_continuation_needs_running_scheduler(self):
        scheduler = SyncScheduler(settings=SyncConfig(interval_minutes=0))
        assert not scheduler.is_running
        assert not scheduler.schedule_continuation(SyncRequest(user_id="u1"))

    @pytest.mark.asyncio
    async def test_schedules_one_continuation_per_user(self):
        scheduler = SyncScheduler(settings=SyncConfig(interval_minutes=0))
        await scheduler.start()
        try:
            assert scheduler.schedule_continuation(SyncRequest(user_id="u1"), delay=60)
            assert scheduler.schedule_continuation(SyncRequest(user_id="u1", quick_mode=True), delay=60)

            jobs = scheduler.get_jobs()
            assert [j["id"] for j in jobs] == [continuation_job_id("u1")]
            assert jobs[0]["pending"] is True
            assert jobs[0]["next_run"] is not None
        finally:
            scheduler.shutdown()

        assert not scheduler.is_running

    @pytest.mark.asyncio
    async def test_periodic_job_registered_when_configured(self):
        settings = SyncConfig(interval_minutes=15, scheduled_user_ids=["u1", "u2"])
        scheduler = SyncScheduler(settings=settings)
        await scheduler.start()
        try:
            jobs = {j["id"]: j for j in scheduler.get_jobs()}
            assert PERIODIC_JOB_ID in jobs
            assert "2 users" in jobs[PERIODIC_JOB_ID]["description"]
        finally:
            scheduler.shutdown()

    @pytest.mark.asyncio
    async def test_no_periodic_job_without_users(self):
        scheduler = SyncScheduler(settings=SyncConfig(interval_minutes=15, scheduled_user_ids=[]))
        await scheduler.start()
        try:
            assert scheduler.get_jobs() == []
        finally:
            scheduler.shutdown()

    def test_history_is_empty_for_unknown_job(self):
        assert SyncScheduler().get_job_history("missing") == []

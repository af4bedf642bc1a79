"""
Unit tests for the auto-reload scheduler tick.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from freezegun import freeze_time

from tablesync.base.models import ReloadMode, ScheduleConfig
from tablesync.scheduling.scheduler import TICK_JOB_ID, AutoReloadScheduler
from tablesync.scheduling.triggers import is_due
from tests.support.fakes import remote_table

pytestmark = pytest.mark.unit


@pytest.fixture
def scheduler(harness):
    harness.add_tables(remote_table("orders"))
    return AutoReloadScheduler(
        harness.orchestrator,
        harness.schedule,
        tick_seconds=10,
        clock=harness.clock.now,
    )


class TestTick:
    """Tests for AutoReloadScheduler.tick()."""

    @pytest.mark.asyncio
    async def test_disabled_schedule(self, scheduler, harness):
        """Test disabled schedule."""
        assert await scheduler.tick() is None
        assert harness.unit.calls == []

    @pytest.mark.asyncio
    async def test_due_interval_starts_automatic_full_reload(self, scheduler, harness):
        """Test due interval starts automatic full reload."""
        harness.schedule.interval_minutes = 15
        harness.schedule.last_reload_at = harness.clock.now() - timedelta(minutes=15)

        task = await scheduler.tick()
        run = await task

        assert run.mode == ReloadMode.MANUAL_ALL
        assert run.is_automatic
        assert harness.schedule.last_reload_at == harness.clock.now()
        assert harness.unit.calls == ["bq:conn_1:sales:orders"]

    @pytest.mark.asyncio
    async def test_interval_not_yet_due(self, scheduler, harness):
        """Test interval not yet due."""
        harness.schedule.interval_minutes = 15
        harness.schedule.last_reload_at = harness.clock.now() - timedelta(minutes=14, seconds=59)

        assert await scheduler.tick() is None

    @pytest.mark.asyncio
    async def test_cron_fires_once_per_minute(self, scheduler, harness):
        """Test cron fires once per minute."""
        harness.schedule.cron_expression = "* * * * *"

        first = await scheduler.tick()
        await first
        harness.clock.advance(timedelta(seconds=10))
        second = await scheduler.tick()

        assert first is not None
        assert second is None

    @pytest.mark.asyncio
    async def test_malformed_cron_never_fires(self, scheduler, harness):
        """Test malformed cron never fires."""
        harness.schedule.cron_expression = "every day at noon"

        assert await scheduler.tick() is None

    @pytest.mark.asyncio
    async def test_auth_failure_does_not_refire_every_tick(self, scheduler, harness):
        """Test auth failure does not refire every tick."""
        harness.schedule.interval_minutes = 5
        harness.schedule.last_reload_at = harness.clock.now() - timedelta(minutes=5)
        harness.broker.tokens["conn_1"] = None

        run = await (await scheduler.tick())
        harness.clock.advance(timedelta(seconds=10))

        assert run.aborted == "auth"
        assert await scheduler.tick() is None

    @pytest.mark.asyncio
    async def test_reload_failure_is_contained(self):
        """Test reload failure is contained."""
        orchestrator = MagicMock()
        orchestrator.reload = AsyncMock(side_effect=RuntimeError("boom"))
        schedule = ScheduleConfig(absolute_times={"09:00"})
        scheduler = AutoReloadScheduler(orchestrator, schedule, clock=lambda: datetime(2026, 1, 1, 9, 0, 15, tzinfo=timezone.utc))

        task = await scheduler.tick()
        with pytest.raises(RuntimeError):
            await task

        orchestrator.reload.assert_awaited_once_with(ReloadMode.MANUAL_ALL, is_automatic=True)


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_and_shutdown(self, scheduler):
        """Test start and shutdown."""
        scheduler.start()
        scheduler.start()

        assert scheduler.running
        job = scheduler._scheduler.get_job(TICK_JOB_ID)
        assert job is not None
        assert job.max_instances == 1
        assert job.coalesce is True

        await scheduler.shutdown()
        assert not scheduler.running

    @pytest.mark.asyncio
    async def test_restart_after_shutdown_keeps_ticking(self, scheduler):
        """Test a start right after shutdown is not undone by the stop."""
        scheduler.start()
        await scheduler.shutdown()
        scheduler.start()
        await asyncio.sleep(0.01)

        try:
            assert scheduler.running
            assert scheduler._scheduler.get_job(TICK_JOB_ID) is not None
        finally:
            await scheduler.shutdown()


class TestWorkspaceClock:
    @freeze_time("2026-01-01 08:00:30")
    def test_default_clock_uses_workspace_timezone(self, harness):
        """Test default clock uses workspace timezone."""
        harness.schedule.absolute_times = {"09:00"}
        scheduler = AutoReloadScheduler(harness.orchestrator, harness.schedule, local_tz="Europe/Paris")

        now = scheduler._clock()

        assert (now.hour, now.minute) == (9, 0)
        assert is_due(now, harness.schedule)

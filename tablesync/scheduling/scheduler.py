"""
Auto-Reload Scheduler

Runs a short APScheduler interval tick that asks the trigger evaluator
whether the configured schedule is due, and starts an automatic full reload
when it is.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Callable

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from tablesync.base.models import ReloadMode, ScheduleConfig
from tablesync.kernel.time import local_now
from tablesync.scheduling.orchestrator import ReloadOrchestrator, SyncRun
from tablesync.scheduling.triggers import is_due

logger = structlog.get_logger()

TICK_JOB_ID = "auto_reload_tick"


class AutoReloadScheduler:
    """
    Drives automatic reloads.

    Example usage:
        scheduler = AutoReloadScheduler(orchestrator, schedule, local_tz="Europe/Paris")
        scheduler.start()
        ...
        await scheduler.shutdown()
    """

    def __init__(
        self,
        orchestrator: ReloadOrchestrator,
        schedule: ScheduleConfig,
        *,
        tick_seconds: float = 10,
        local_tz: str = "UTC",
        clock: Callable[[], datetime] | None = None,
    ):
        self.orchestrator = orchestrator
        self.schedule = schedule
        self.tick_seconds = tick_seconds
        self.local_tz = local_tz
        self._clock = clock or (lambda: local_now(self.local_tz))
        self._scheduler = AsyncIOScheduler()
        self._reload_task: asyncio.Task[SyncRun] | None = None

    @property
    def running(self) -> bool:
        return self._scheduler.running

    def start(self) -> None:
        """Start ticking. Must be called from a running event loop."""
        if self._scheduler.running:
            return
        self._scheduler.add_job(
            self.tick,
            trigger=IntervalTrigger(seconds=self.tick_seconds),
            id=TICK_JOB_ID,
            name="Auto-reload tick",
            replace_existing=True,
            coalesce=True,  # Skip missed ticks
            max_instances=1,  # Don't overlap
        )
        self._scheduler.start()
        logger.info("Auto-reload scheduler started", tick_seconds=self.tick_seconds, local_tz=self.local_tz)

    async def shutdown(self) -> None:
        """Stop ticking and wait for an in-progress automatic reload."""
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            # AsyncIOScheduler may defer the stop to the next loop pass
            while self._scheduler.running:
                await asyncio.sleep(0)
            logger.info("Auto-reload scheduler shutdown")
        task = self._reload_task
        self._reload_task = None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def tick(self) -> asyncio.Task[SyncRun] | None:
        """
        Evaluate the schedule once.

        Returns:
            The automatic reload task if one was started
        """
        if not self.schedule.is_enabled:
            return None

        now = self._clock()
        try:
            due = is_due(now, self.schedule)
        except Exception as e:
            logger.error("Schedule evaluation failed", error=str(e))
            return None
        if not due:
            return None

        logger.info("Automatic reload due", now=now.isoformat())
        task = asyncio.create_task(
            self.orchestrator.reload(ReloadMode.MANUAL_ALL, is_automatic=True)
        )
        task.add_done_callback(self._on_reload_done)
        self._reload_task = task
        return task

    def _on_reload_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Automatic reload failed", error=str(error))

"""
Sync Service

Wires the scheduler components together from Settings and exposes the
public API: reloads, stops, view-change notifications, status and events.
"""

from __future__ import annotations

from typing import Any, AsyncIterator

import structlog

from tablesync.auth.broker import CredentialBroker, CredentialGate
from tablesync.base.contracts import ActiveViewProvider, Registry, SyncUnit
from tablesync.base.models import DataSource, ReloadMode, ScheduleConfig
from tablesync.config import Settings, get_settings
from tablesync.kernel.time import isoformat_z
from tablesync.monitoring.logging import configure_logging
from tablesync.monitoring.metrics import Metrics, get_metrics
from tablesync.scheduling.dispatcher import SyncDispatcher
from tablesync.scheduling.orchestrator import ReloadOrchestrator, SyncRun
from tablesync.scheduling.retry import RetryController, Sleeper
from tablesync.scheduling.scheduler import AutoReloadScheduler
from tablesync.scheduling.triggers import next_interval_due
from tablesync.state.store import ActivityEntry, SyncStateStore
from tablesync.sync_events import SyncEvent, SyncEventBroadcaster, get_broadcaster

logger = structlog.get_logger()


class SyncService:
    """
    Facade over the sync scheduler.

    Example usage:
        service = build_sync_service(sync_unit, registry, broker, view=view)
        await service.start()

        await service.reload()                 # full manual reload
        service.notify_view_changed()          # debounced scoped reload
        service.stop_one("bq:conn:sales:orders")

        await service.shutdown()
    """

    def __init__(
        self,
        *,
        settings: Settings,
        store: SyncStateStore,
        orchestrator: ReloadOrchestrator,
        scheduler: AutoReloadScheduler,
        broadcaster: SyncEventBroadcaster,
        metrics: Metrics,
    ):
        self.settings = settings
        self.store = store
        self.orchestrator = orchestrator
        self.scheduler = scheduler
        self.broadcaster = broadcaster
        self.metrics = metrics

    @property
    def schedule(self) -> ScheduleConfig:
        return self.orchestrator.schedule

    async def start(self) -> None:
        """Reconcile the registry and start the auto-reload tick."""
        await self.orchestrator.refresh_registry()
        self.scheduler.start()
        logger.info("Sync service started", tables=len(self.store.list()))

    async def shutdown(self) -> None:
        await self.scheduler.shutdown()
        await self.orchestrator.close()
        self.store.remove_listener(self.broadcaster.on_status_change)
        logger.info("Sync service shutdown")

    # Reloads

    async def reload(
        self,
        mode: ReloadMode = ReloadMode.MANUAL_ALL,
        *,
        is_automatic: bool = False,
    ) -> SyncRun:
        return await self.orchestrator.reload(mode, is_automatic=is_automatic)

    async def reload_one(self, data_source_id: str) -> SyncRun:
        return await self.orchestrator.reload_one(data_source_id)

    def stop_one(self, data_source_id: str) -> bool:
        return self.orchestrator.stop_one(data_source_id)

    def stop_all(self) -> int:
        return self.orchestrator.stop_all()

    def notify_view_changed(self):
        return self.orchestrator.notify_view_changed()

    # Schedule

    def update_schedule(
        self,
        *,
        interval_minutes: float | None = None,
        cron_expression: str | None = None,
        absolute_times: set[str] | None = None,
    ) -> ScheduleConfig:
        """Replace the trigger settings. The last reload time is kept."""
        self.schedule.interval_minutes = interval_minutes
        self.schedule.cron_expression = cron_expression
        self.schedule.absolute_times = set(absolute_times or ())
        logger.info(
            "Schedule updated",
            interval_minutes=interval_minutes,
            cron_expression=cron_expression,
            absolute_times=sorted(self.schedule.absolute_times),
        )
        return self.schedule

    # Status

    def tables(self) -> list[DataSource]:
        return self.store.list()

    def activity(self) -> list[ActivityEntry]:
        return self.store.activity()

    def status(self) -> dict[str, Any]:
        next_due = next_interval_due(self.schedule)
        last = self.schedule.last_reload_at
        active = self.orchestrator.active_run
        return {
            "auth_required": self.store.auth_required,
            "active_run_id": active.run_id if active else None,
            "in_flight": self.store.in_flight_ids(),
            "last_reload_at": isoformat_z(last) if last else None,
            "next_interval_reload_at": isoformat_z(next_due) if next_due else None,
        }

    async def subscribe(self) -> AsyncIterator[SyncEvent]:
        async for event in self.broadcaster.subscribe():
            yield event


def build_sync_service(
    sync_unit: SyncUnit,
    registry: Registry,
    broker: CredentialBroker,
    *,
    view: ActiveViewProvider | None = None,
    schedule: ScheduleConfig | None = None,
    settings: Settings | None = None,
    metrics: Metrics | None = None,
    broadcaster: SyncEventBroadcaster | None = None,
    sleep: Sleeper | None = None,
    setup_logging: bool = False,
) -> SyncService:
    """
    Build a SyncService from Settings.

    Args:
        sync_unit: Fetches one table
        registry: Lists tables and resolves connections
        broker: Resolves access tokens
        view: Supplies the tables on screen for scoped reloads
        schedule: Auto-reload schedule (empty schedule if omitted)
        settings: Defaults to get_settings()
        metrics: Defaults to the global Metrics
        broadcaster: Defaults to the global SyncEventBroadcaster
        sleep: Backoff sleeper override
        setup_logging: Configure structlog from settings

    Returns:
        Wired SyncService (not started)
    """
    settings = settings or get_settings()
    if setup_logging:
        configure_logging(settings)

    metrics = metrics or get_metrics()
    broadcaster = broadcaster or get_broadcaster()
    schedule = schedule or ScheduleConfig()

    store = SyncStateStore(activity_log_size=settings.activity_log_size)
    store.add_listener(broadcaster.on_status_change)

    credentials = CredentialGate(broker, store)
    retry = RetryController(
        sync_unit,
        max_attempts=settings.sync_max_attempts,
        base_backoff=settings.sync_backoff_base_seconds,
        max_backoff=settings.sync_backoff_max_seconds,
        sleep=sleep,
        metrics=metrics,
    )
    dispatcher = SyncDispatcher(
        store,
        retry,
        credentials,
        registry,
        concurrency=settings.sync_concurrency,
        metrics=metrics,
    )
    orchestrator = ReloadOrchestrator(
        store,
        dispatcher,
        registry,
        credentials,
        schedule,
        view=view,
        debounce_seconds=settings.view_reload_debounce_seconds,
        metrics=metrics,
    )
    scheduler = AutoReloadScheduler(
        orchestrator,
        schedule,
        tick_seconds=settings.reload_tick_seconds,
        local_tz=settings.local_tz,
    )
    return SyncService(
        settings=settings,
        store=store,
        orchestrator=orchestrator,
        scheduler=scheduler,
        broadcaster=broadcaster,
        metrics=metrics,
    )

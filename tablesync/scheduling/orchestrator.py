"""
Reload Orchestrator

Turns reload requests into sync runs: computes the target tables, runs the
credential pre-flight, supersedes the previous run and hands the targets to
the dispatcher. Also owns stop-one / stop-all and the debounced reload that
follows view changes.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

import structlog

from tablesync.auth.broker import CredentialGate
from tablesync.base.contracts import ActiveViewProvider, Registry
from tablesync.base.models import Connection, DataSourceKind, ReloadMode, ScheduleConfig
from tablesync.kernel.cancellation import CancelScope
from tablesync.kernel.errors import NotFoundError, SyncCancelledError
from tablesync.kernel.ids import MonotonicCounter
from tablesync.kernel.time import utc_now
from tablesync.monitoring.metrics import Metrics
from tablesync.scheduling.dispatcher import DispatchReport, SyncDispatcher
from tablesync.state.store import RegistryDiff, SyncStateStore

logger = structlog.get_logger()


@dataclass(eq=False)
class SyncRun:
    """One reload, from target selection to the last worker exiting."""

    # Identity
    run_id: int
    mode: ReloadMode
    is_automatic: bool
    scope: CancelScope

    # Targets and outcome
    started_at: datetime
    target_ids: list[str] = field(default_factory=list)
    report: DispatchReport | None = None
    aborted: str | None = None  # auth, superseded, stopped, in_flight

    _done: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @property
    def finished(self) -> bool:
        return self._done.is_set()

    @property
    def outcomes(self) -> dict[str, str]:
        return dict(self.report.outcomes) if self.report else {}

    async def wait(self) -> None:
        await self._done.wait()

    def _finish(self) -> None:
        self._done.set()


class ReloadOrchestrator:
    """
    Coordinates reload runs.

    At most one full or view-scoped run is active; starting another cancels
    it. Single-table reloads run beside the active run under their own scope.
    """

    def __init__(
        self,
        store: SyncStateStore,
        dispatcher: SyncDispatcher,
        registry: Registry,
        credentials: CredentialGate,
        schedule: ScheduleConfig,
        *,
        view: ActiveViewProvider | None = None,
        debounce_seconds: float = 0.5,
        metrics: Metrics | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.registry = registry
        self.credentials = credentials
        self.schedule = schedule
        self.view = view
        self.debounce_seconds = debounce_seconds
        self._metrics = metrics
        self._clock = clock

        self._run_ids = MonotonicCounter()
        self._active: SyncRun | None = None
        self._single_runs: set[SyncRun] = set()
        self._connections: dict[str, Connection | None] = {}
        self._debounce_task: asyncio.Task | None = None

    @property
    def active_run(self) -> SyncRun | None:
        return self._active

    def _new_run(self, mode: ReloadMode, is_automatic: bool) -> SyncRun:
        run_id = self._run_ids.next()
        return SyncRun(
            run_id=run_id,
            mode=mode,
            is_automatic=is_automatic,
            scope=CancelScope(name=f"run-{run_id}"),
            started_at=self._clock(),
        )

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    async def refresh_registry(self) -> RegistryDiff:
        """Register new tables, prune removed ones, refresh connection flags."""
        refs = await self.registry.list_active_tables()
        connections: dict[str, Connection | None] = {}
        for connection_id in dict.fromkeys(ref.connection_id for ref in refs):
            connections[connection_id] = await self.registry.resolve_connection(connection_id)
        self._connections = connections
        return self.store.sync_registry(refs, connections)

    def _connections_of(self, ids: list[str]) -> list[Connection]:
        connections = []
        for ds_id in ids:
            ds = self.store.get(ds_id)
            connection = self._connections.get(ds.connection_id) if ds else None
            if connection is not None and connection.enabled:
                connections.append(connection)
        return connections

    def _remote_ids(self) -> list[str]:
        return [ds.id for ds in self.store.list(kind=DataSourceKind.REMOTE_QUERYABLE)]

    def _view_ids(self) -> list[str]:
        if self.view is None:
            return []
        known = {ds.id for ds in self.store.list()}
        return [ds_id for ds_id in dict.fromkeys(self.view.visible_source_ids()) if ds_id in known]

    # ------------------------------------------------------------------
    # Reloads
    # ------------------------------------------------------------------

    async def reload(
        self,
        mode: ReloadMode = ReloadMode.MANUAL_ALL,
        *,
        is_automatic: bool = False,
    ) -> SyncRun:
        """
        Start a full or view-scoped reload and wait for it to finish.

        Supersedes the active run. `ManualAll` stamps the schedule's last
        reload time at initiation, whether or not the run gets past the
        credential pre-flight.

        Args:
            mode: ManualAll or ScopedToActiveView
            is_automatic: Triggered by the schedule rather than the user

        Returns:
            The finished SyncRun
        """
        if mode == ReloadMode.MANUAL_SINGLE:
            raise ValueError("Single-table reloads go through reload_one()")

        run = self._new_run(mode, is_automatic)
        previous = self._active
        self._active = run
        if previous is not None and not previous.finished:
            self._supersede(previous)

        logger.info(
            "Reload started",
            run_id=run.run_id,
            mode=mode.value,
            is_automatic=is_automatic,
        )
        if mode == ReloadMode.MANUAL_ALL:
            self.schedule.last_reload_at = run.started_at

        try:
            await run.scope.run(self.refresh_registry())

            if mode == ReloadMode.MANUAL_ALL:
                run.target_ids = self._remote_ids()
            else:
                # Nothing on screen means everything is in view
                run.target_ids = self._view_ids() or self._remote_ids()

            ok = await run.scope.run(
                self.credentials.preflight(self._connections_of(run.target_ids), is_automatic=is_automatic)
            )
            if not ok:
                run.aborted = "auth"
                return run

            if previous is not None:
                await run.scope.run(previous.wait())

            fresh_since = None
            if mode == ReloadMode.MANUAL_ALL:
                fresh_since = run.started_at
                if not is_automatic:
                    for ds_id in run.target_ids:
                        status = self.store.get_status(ds_id)
                        if status is not None and not status.in_flight:
                            self.store.clear_rows(ds_id)

            run.report = await self.dispatcher.dispatch(
                run.target_ids,
                run.scope,
                run_id=run.run_id,
                fresh_since=fresh_since,
            )
        except SyncCancelledError:
            run.aborted = run.scope.reason or "cancelled"
        finally:
            if run.scope.cancelled and run.aborted is None:
                run.aborted = run.scope.reason or "cancelled"
            run._finish()
            if self._active is run:
                self._active = None
            self._track(run)

        return run

    async def reload_one(self, data_source_id: str) -> SyncRun:
        """
        Clear one table and fetch it again, regardless of freshness.

        A no-op when the table is already queued or syncing.

        Raises:
            NotFoundError: If the table is not registered
        """
        ds = self.store.get(data_source_id)
        if ds is None:
            raise NotFoundError(
                message=f"Unknown data source: {data_source_id}",
                meta={"data_source_id": data_source_id},
            )

        run = self._new_run(ReloadMode.MANUAL_SINGLE, is_automatic=False)
        run.target_ids = [data_source_id]
        self._single_runs.add(run)
        logger.info("Single table reload started", run_id=run.run_id, data_source_id=data_source_id)

        try:
            # Checked before the pre-flight so a busy table never prompts for sign-in
            if ds.sync_status.in_flight:
                run.aborted = "in_flight"
                return run

            connection = self._connections.get(ds.connection_id)
            if connection is None:
                connection = await run.scope.run(self.registry.resolve_connection(ds.connection_id))
            if connection is not None:
                ok = await run.scope.run(self.credentials.preflight([connection], is_automatic=False))
                if not ok:
                    run.aborted = "auth"
                    return run

            status = self.store.get_status(data_source_id)
            if status is None or status.in_flight:
                run.aborted = "in_flight"
                return run

            # No await between the check, the clear and the claim
            self.store.clear_rows(data_source_id)
            run.report = await self.dispatcher.dispatch(
                [data_source_id],
                run.scope,
                run_id=run.run_id,
                force=True,
            )
        except SyncCancelledError:
            run.aborted = run.scope.reason or "cancelled"
        finally:
            if run.scope.cancelled and run.aborted is None:
                run.aborted = run.scope.reason or "cancelled"
            run._finish()
            self._single_runs.discard(run)
            self._track(run)

        return run

    def _supersede(self, previous: SyncRun) -> None:
        previous.scope.cancel("superseded")
        released = self.store.release_queued(previous.run_id)
        logger.info(
            "Superseded previous reload",
            run_id=previous.run_id,
            released=len(released),
        )

    def _track(self, run: SyncRun) -> None:
        if run.aborted:
            result = run.aborted
        elif run.report and any(v in ("exhausted", "auth-required", "error") for v in run.report.outcomes.values()):
            result = "partial"
        else:
            result = "completed"
        logger.info(
            "Reload finished",
            run_id=run.run_id,
            mode=run.mode.value,
            result=result,
            targets=len(run.target_ids),
        )
        if self._metrics is not None:
            self._metrics.track_run(run.mode.value, run.is_automatic, result)

    # ------------------------------------------------------------------
    # Stops
    # ------------------------------------------------------------------

    def stop_one(self, data_source_id: str) -> bool:
        """
        Stop one table's sync. Its rows are kept; status returns to ready
        (rows held) or idle (no rows). Other tables keep syncing.
        """
        cancelled = self.dispatcher.cancel_table(data_source_id, reason="stopped")
        reset = self.store.reset_to_resumable(data_source_id)
        if cancelled or reset:
            logger.info("Table sync stopped", data_source_id=data_source_id)
            ds = self.store.get(data_source_id)
            self.store.log_activity("warning", "Sync stopped", target=ds.name if ds else data_source_id)
        return cancelled or reset

    def stop_all(self) -> int:
        """
        Stop every run and table sync. No table is left queued or syncing,
        and none is marked error.

        Returns:
            Number of tables that were reset
        """
        runs = [r for r in (self._active, *self._single_runs) if r is not None]
        for run in runs:
            run.scope.cancel("stopped")
        self.dispatcher.cancel_all(reason="stopped")

        reset = 0
        for ds_id in self.store.in_flight_ids():
            if self.store.reset_to_resumable(ds_id):
                reset += 1

        logger.info("All syncs stopped", runs=len(runs), tables=reset)
        if reset:
            self.store.log_activity("warning", f"Stopped {reset} syncs")
        return reset

    # ------------------------------------------------------------------
    # View changes
    # ------------------------------------------------------------------

    def notify_view_changed(self) -> asyncio.Task:
        """
        Schedule a view-scoped reload after the debounce delay. Calls that
        arrive within the delay collapse into one reload.
        """
        if self._debounce_task is not None and not self._debounce_task.done():
            self._debounce_task.cancel()
        self._debounce_task = asyncio.create_task(self._debounced_reload())
        return self._debounce_task

    async def _debounced_reload(self) -> SyncRun:
        await asyncio.sleep(self.debounce_seconds)
        return await self.reload(ReloadMode.SCOPED_TO_ACTIVE_VIEW)

    async def close(self) -> None:
        """Cancel a pending debounced reload and stop all syncs."""
        task = self._debounce_task
        self._debounce_task = None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self.stop_all()

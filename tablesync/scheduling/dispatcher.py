"""
Sync Dispatcher

Drains a set of table ids through a bounded pool of asyncio workers. Each
worker claims one table at a time, runs it through the Retry Controller and
writes the outcome back to the state store.
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime

import structlog

from tablesync.auth.broker import CredentialGate
from tablesync.base.contracts import Registry
from tablesync.base.models import DataSource
from tablesync.kernel.cancellation import CancelScope
from tablesync.kernel.errors import SyncCancelledError
from tablesync.monitoring.metrics import Metrics
from tablesync.scheduling.retry import RetryController, RetryOutcome
from tablesync.state.store import SyncStateStore

logger = structlog.get_logger()

DEFAULT_CONCURRENCY = 2


@dataclass
class DispatchReport:
    """What one dispatch did with each id it was given."""

    run_id: int
    enqueued: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    released: list[str] = field(default_factory=list)
    outcomes: dict[str, str] = field(default_factory=dict)

    def count(self, outcome: str) -> int:
        return sum(1 for value in self.outcomes.values() if value == outcome)


class SyncDispatcher:
    """
    Concurrency-bounded dispatcher.

    Owns the live per-table cancellation scopes so a single table can be
    stopped without touching the rest of its run.
    """

    def __init__(
        self,
        store: SyncStateStore,
        retry: RetryController,
        credentials: CredentialGate,
        registry: Registry,
        *,
        concurrency: int = DEFAULT_CONCURRENCY,
        metrics: Metrics | None = None,
    ):
        self.store = store
        self.retry = retry
        self.credentials = credentials
        self.registry = registry
        self.concurrency = concurrency
        self._metrics = metrics
        self._table_scopes: dict[str, CancelScope] = {}

    @property
    def live_table_ids(self) -> list[str]:
        return list(self._table_scopes)

    async def dispatch(
        self,
        ids: Iterable[str],
        scope: CancelScope,
        *,
        run_id: int,
        concurrency: int | None = None,
        fresh_since: datetime | None = None,
        force: bool = False,
    ) -> DispatchReport:
        """
        Sync every id that needs it, at most `concurrency` at a time.

        Ids already queued/syncing elsewhere, or not needing sync, are
        skipped. Returns once every worker has exited.

        Args:
            ids: Candidate table ids
            scope: The run's cancellation scope
            run_id: Owner recorded on every status this dispatch sets
            concurrency: Worker ceiling (defaults to the dispatcher's)
            fresh_since: Tables synced before this instant count as stale
            force: Skip the needs-sync checks (single-table reloads)
        """
        report = DispatchReport(run_id=run_id)
        queue: deque[str] = deque()

        for ds_id in dict.fromkeys(ids):
            if scope.cancelled:
                break
            if self.store.try_enqueue(ds_id, run_id, fresh_since=fresh_since, force=force):
                queue.append(ds_id)
                report.enqueued.append(ds_id)
            else:
                report.skipped.append(ds_id)

        if not queue:
            return report

        workers = min(len(queue), concurrency or self.concurrency)
        logger.info(
            "Dispatching table syncs",
            run_id=run_id,
            tables=len(queue),
            workers=workers,
        )
        try:
            # The group joins every worker, even when one of them fails
            async with asyncio.TaskGroup() as group:
                for _ in range(workers):
                    group.create_task(self._worker(queue, scope, run_id, fresh_since, force, report))
        finally:
            while queue:
                ds_id = queue.popleft()
                if self.store.reset_to_resumable(ds_id, run_id):
                    report.released.append(ds_id)
        return report

    async def _worker(
        self,
        queue: deque[str],
        scope: CancelScope,
        run_id: int,
        fresh_since: datetime | None,
        force: bool,
        report: DispatchReport,
    ) -> None:
        while queue and not scope.cancelled:
            ds_id = queue.popleft()
            if not self.store.try_start(ds_id, run_id, fresh_since=fresh_since, force=force):
                report.outcomes[ds_id] = "skipped"
                continue
            report.outcomes[ds_id] = await self._sync_one(ds_id, scope, run_id)

    async def _sync_one(self, ds_id: str, scope: CancelScope, run_id: int) -> str:
        """Sync one claimed table. Whatever happens, it leaves `syncing`."""
        ds = self.store.get(ds_id)
        if ds is None:
            return "skipped"

        table_scope = scope.child(ds_id)
        self._table_scopes[ds_id] = table_scope
        try:
            return await self._sync_table(ds, table_scope, run_id)
        except asyncio.CancelledError:
            self.store.reset_to_resumable(ds_id, run_id)
            raise
        except Exception as e:
            logger.error(
                "Table sync crashed",
                data_source_id=ds_id,
                run_id=run_id,
                error=str(e),
            )
            self.store.mark_error(ds_id, run_id, str(e) or type(e).__name__)
            self.store.log_activity("error", f"Sync failed: {e}", target=ds.name)
            return "error"
        finally:
            table_scope.detach()
            if self._table_scopes.get(ds_id) is table_scope:
                del self._table_scopes[ds_id]

    async def _sync_table(self, ds: DataSource, table_scope: CancelScope, run_id: int) -> str:
        ds_id = ds.id
        try:
            connection = await table_scope.run(self.registry.resolve_connection(ds.connection_id))
        except SyncCancelledError:
            self.store.reset_to_resumable(ds_id, run_id)
            logger.info("Table sync cancelled", data_source_id=ds_id, run_id=run_id, reason=table_scope.reason)
            return RetryOutcome.CANCELLED.value
        except Exception as e:
            logger.warning(
                "Connection lookup failed",
                data_source_id=ds_id,
                connection_id=ds.connection_id,
                error=str(e),
            )
            self.store.mark_error(ds_id, run_id, f"Connection lookup failed: {e}")
            self.store.log_activity("error", "Sync failed: connection lookup failed", target=ds.name)
            return "error"

        if connection is None:
            self.store.mark_error(ds_id, run_id, "Connection no longer exists")
            self.store.log_activity("error", "Sync failed: connection no longer exists", target=ds.name)
            return "error"

        if self._metrics is not None:
            self._metrics.sync_started()
        started = time.monotonic()

        logger.info("Table sync started", data_source_id=ds_id, run_id=run_id)
        try:
            result = await self.retry.run(
                ds_id,
                lambda: self.credentials.token_for(connection),
                table_scope,
                on_progress=lambda rows, total: self.store.record_progress(ds_id, run_id, rows, total),
            )
        finally:
            if self._metrics is not None:
                self._metrics.sync_finished()

        duration = time.monotonic() - started
        rows = 0
        outcome = result.outcome.value

        if result.outcome == RetryOutcome.SUCCESS and result.result is not None:
            if not self.store.mark_ready(ds_id, run_id, result.result):
                # Stopped or released while the fetch was finishing
                outcome = "discarded"
            else:
                rows = result.result.rows_loaded
                logger.info(
                    "Table sync completed",
                    data_source_id=ds_id,
                    run_id=run_id,
                    rows=rows,
                    attempts=result.attempts,
                )
                self.store.log_activity("success", f"Synced {rows} rows", target=ds.name)
        elif result.outcome == RetryOutcome.CANCELLED:
            self.store.reset_to_resumable(ds_id, run_id)
            logger.info("Table sync cancelled", data_source_id=ds_id, run_id=run_id, reason=table_scope.reason)
        elif result.outcome == RetryOutcome.AUTH_REQUIRED:
            self.store.mark_error(ds_id, run_id, result.error_message or "Re-authentication required")
            self.store.raise_auth_required(connection.id)
            self.store.log_activity("error", "Sync failed: credentials expired, sign in again", target=ds.name)
        else:
            error = result.exhausted_error()
            self.store.mark_error(ds_id, run_id, result.error_message or error.message)
            self.store.log_activity("error", error.message, target=ds.name)

        if self._metrics is not None:
            self._metrics.track_table_sync(ds.kind.value, outcome, duration, rows)
        return outcome

    def cancel_table(self, data_source_id: str, reason: str = "stopped") -> bool:
        """Cancel the live sync of one table, if any."""
        table_scope = self._table_scopes.get(data_source_id)
        if table_scope is None:
            return False
        table_scope.cancel(reason)
        return True

    def cancel_all(self, reason: str = "stopped") -> int:
        """Cancel every live table sync, whichever run owns it."""
        scopes = list(self._table_scopes.values())
        for table_scope in scopes:
            table_scope.cancel(reason)
        return len(scopes)

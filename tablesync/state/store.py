"""
Sync State Store

Holds per-table sync status and progress in memory. Every read-modify-write
on a table happens under one lock, so check-and-set operations such as
`try_enqueue` and `try_start` have exactly one winner per table.

In-flight statuses (`queued`, `syncing`) carry the id of the run that owns
them; outcome writes from any other run are ignored.
"""

from __future__ import annotations

import threading
from collections import deque
from collections.abc import Iterable
from datetime import datetime
from typing import Callable

import structlog
from pydantic import BaseModel, Field

from tablesync.base.models import (
    Connection,
    DataSource,
    DataSourceKind,
    FetchResult,
    SyncStatus,
    TableRef,
)
from tablesync.kernel.errors import InvalidTransitionError, NotFoundError
from tablesync.kernel.time import utc_now

logger = structlog.get_logger()

StatusListener = Callable[[DataSource], None]

# Allowed status transitions
TRANSITIONS: dict[SyncStatus, frozenset[SyncStatus]] = {
    SyncStatus.IDLE: frozenset({SyncStatus.QUEUED}),
    SyncStatus.READY: frozenset({SyncStatus.QUEUED, SyncStatus.IDLE}),
    SyncStatus.ERROR: frozenset({SyncStatus.QUEUED, SyncStatus.IDLE}),
    SyncStatus.QUEUED: frozenset({SyncStatus.SYNCING, SyncStatus.IDLE, SyncStatus.READY}),
    SyncStatus.SYNCING: frozenset({SyncStatus.READY, SyncStatus.ERROR, SyncStatus.IDLE}),
}


class ActivityEntry(BaseModel):
    """One line of the user-facing activity log."""

    level: str  # info, success, warning, error
    message: str
    target: str | None = None
    timestamp: datetime = Field(default_factory=utc_now)


class RegistryDiff(BaseModel):
    """Result of reconciling the store with the registry."""

    added: list[str] = Field(default_factory=list)
    pruned: list[str] = Field(default_factory=list)


class SyncStateStore:
    """In-memory table registry and status machine."""

    def __init__(
        self,
        activity_log_size: int = 100,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._lock = threading.RLock()
        self._clock = clock
        self._sources: dict[str, DataSource] = {}
        self._connections_active: dict[str, bool] = {}
        self._auth_required: set[str] = set()
        self._listeners: list[StatusListener] = []
        self._activity: deque[ActivityEntry] = deque(maxlen=activity_log_size)

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def register(self, ref: TableRef, name: str | None = None) -> DataSource:
        """Register a table. Idempotent: re-registering keeps id and status."""
        ds_id = ref.data_source_id()
        with self._lock:
            existing = self._sources.get(ds_id)
            if existing is not None:
                existing.active = ref.active
                return existing.model_copy()

            ds = DataSource(
                id=ds_id,
                connection_id=ref.connection_id,
                kind=ref.kind,
                dataset=ref.dataset,
                table=ref.table,
                name=name or (f"{ref.dataset}.{ref.table}" if ref.dataset else ref.table or ds_id),
                active=ref.active,
            )
            self._sources[ds_id] = ds
            snapshot = ds.model_copy()

        logger.debug("Registered data source", data_source_id=ds_id, kind=ref.kind.value)
        return snapshot

    def sync_registry(
        self,
        refs: Iterable[TableRef],
        connections: dict[str, Connection | None],
    ) -> RegistryDiff:
        """
        Reconcile local state with the registry.

        Registers new tables, prunes tables no longer listed, and refreshes
        connection enabled flags. A connection that no longer resolves is
        treated as inactive.
        """
        diff = RegistryDiff()
        listed: set[str] = set()
        for ref in refs:
            ds_id = ref.data_source_id()
            if ds_id in listed:
                continue
            listed.add(ds_id)
            with self._lock:
                is_new = ds_id not in self._sources
            self.register(ref)
            if is_new:
                diff.added.append(ds_id)

        with self._lock:
            for connection_id, connection in connections.items():
                self._connections_active[connection_id] = bool(connection and connection.enabled)
            for ds_id in [i for i in self._sources if i not in listed]:
                del self._sources[ds_id]
                diff.pruned.append(ds_id)

        if diff.pruned:
            logger.info("Pruned orphaned data sources", count=len(diff.pruned), data_source_ids=diff.pruned)
        return diff

    def set_connection_active(self, connection_id: str, active: bool) -> None:
        with self._lock:
            self._connections_active[connection_id] = active

    def is_connection_active(self, connection_id: str) -> bool:
        with self._lock:
            return self._connections_active.get(connection_id, False)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, data_source_id: str) -> DataSource | None:
        with self._lock:
            ds = self._sources.get(data_source_id)
            return ds.model_copy() if ds else None

    def get_status(self, data_source_id: str) -> SyncStatus | None:
        with self._lock:
            ds = self._sources.get(data_source_id)
            return ds.sync_status if ds else None

    def list(self, kind: DataSourceKind | None = None) -> list[DataSource]:
        with self._lock:
            return [
                ds.model_copy()
                for ds in self._sources.values()
                if kind is None or ds.kind == kind
            ]

    def in_flight_ids(self) -> list[str]:
        with self._lock:
            return [ds.id for ds in self._sources.values() if ds.sync_status.in_flight]

    def needs_sync(self, data_source_id: str, fresh_since: datetime | None = None) -> bool:
        """
        True when a table should be fetched by a run started at `fresh_since`.

        A table needs sync when it is remote-queryable, active, its connection
        is enabled, nothing is already queued/syncing it, and it is stale:
        never fully loaded, in error, or last synced before `fresh_since`.
        """
        with self._lock:
            ds = self._sources.get(data_source_id)
            if ds is None or ds.sync_status.in_flight:
                return False
            return self._is_due(ds, fresh_since)

    def _is_due(self, ds: DataSource, fresh_since: datetime | None) -> bool:
        if ds.kind != DataSourceKind.REMOTE_QUERYABLE or not ds.active:
            return False
        if not self._connections_active.get(ds.connection_id, False):
            return False
        if not ds.is_loaded or ds.sync_status == SyncStatus.ERROR:
            return True
        if fresh_since is not None:
            return ds.last_synced_at is None or ds.last_synced_at < fresh_since
        return False

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def set_status(self, data_source_id: str, status: SyncStatus, error: str | None = None) -> DataSource:
        """Move a table to `status`, enforcing the transition table."""
        with self._lock:
            ds = self._require(data_source_id)
            if status != ds.sync_status and status not in TRANSITIONS[ds.sync_status]:
                raise InvalidTransitionError(
                    data_source_id=data_source_id,
                    current=ds.sync_status.value,
                    target=status.value,
                )
            ds.sync_status = status
            ds.sync_error = error if status == SyncStatus.ERROR else None
            if not status.in_flight:
                ds.queued_by_run = None
                ds.progress_rows = 0
            snapshot = ds.model_copy()
        self._notify(snapshot)
        return snapshot

    def try_enqueue(
        self,
        data_source_id: str,
        run_id: int,
        *,
        fresh_since: datetime | None = None,
        force: bool = False,
    ) -> bool:
        """
        Atomically claim a table for `run_id` (idle/ready/error -> queued).

        Fails when the table is already queued/syncing, or, unless `force`,
        when it does not need sync.
        """
        with self._lock:
            ds = self._sources.get(data_source_id)
            if ds is None or ds.sync_status.in_flight:
                return False
            if not force and not self._is_due(ds, fresh_since):
                return False
            ds.sync_status = SyncStatus.QUEUED
            ds.queued_by_run = run_id
            ds.sync_error = None
            snapshot = ds.model_copy()
        self._notify(snapshot)
        return True

    def try_start(
        self,
        data_source_id: str,
        run_id: int,
        *,
        fresh_since: datetime | None = None,
        force: bool = False,
    ) -> bool:
        """
        Atomically move a table queued by `run_id` to syncing.

        The need for a sync is re-checked here, at pop time: if it went away
        since the table was queued, the table is released and False returned.
        """
        with self._lock:
            ds = self._sources.get(data_source_id)
            if ds is None or ds.sync_status != SyncStatus.QUEUED or ds.queued_by_run != run_id:
                return False
            if not force and not self._is_due(ds, fresh_since):
                self._make_resumable(ds)
                snapshot = ds.model_copy()
                started = False
            else:
                ds.sync_status = SyncStatus.SYNCING
                ds.progress_rows = 0
                snapshot = ds.model_copy()
                started = True
        self._notify(snapshot)
        return started

    def record_progress(self, data_source_id: str, run_id: int, rows: int, total_rows: int | None) -> None:
        with self._lock:
            ds = self._owned(data_source_id, run_id, SyncStatus.SYNCING)
            if ds is None:
                return
            ds.progress_rows = max(0, rows)
            if total_rows:
                ds.total_rows = total_rows
            snapshot = ds.model_copy()
        self._notify(snapshot)

    def mark_ready(self, data_source_id: str, run_id: int, result: FetchResult) -> bool:
        """syncing -> ready; commits the fetched rows in place."""
        with self._lock:
            ds = self._owned(data_source_id, run_id, SyncStatus.SYNCING)
            if ds is None:
                return False
            ds.loaded_rows = result.rows_loaded
            ds.total_rows = result.total_rows if result.total_rows is not None else result.rows_loaded
            ds.progress_rows = 0
            ds.is_loaded = True
            ds.last_synced_at = self._clock()
            ds.sync_status = SyncStatus.READY
            ds.sync_error = None
            ds.queued_by_run = None
            snapshot = ds.model_copy()
        self._notify(snapshot)
        return True

    def mark_error(self, data_source_id: str, run_id: int, error: str) -> bool:
        """syncing -> error. Previously loaded rows are kept."""
        with self._lock:
            ds = self._owned(data_source_id, run_id, SyncStatus.SYNCING)
            if ds is None:
                return False
            ds.sync_status = SyncStatus.ERROR
            ds.sync_error = error
            ds.progress_rows = 0
            ds.queued_by_run = None
            snapshot = ds.model_copy()
        self._notify(snapshot)
        return True

    def reset_to_resumable(self, data_source_id: str, run_id: int | None = None) -> bool:
        """
        queued/syncing -> ready (rows held) or idle (no rows).

        Used for cancellations and user stops; never produces `error`.
        With `run_id`, only a status owned by that run is reset.
        """
        with self._lock:
            ds = self._sources.get(data_source_id)
            if ds is None or not ds.sync_status.in_flight:
                return False
            if run_id is not None and ds.queued_by_run != run_id:
                return False
            self._make_resumable(ds)
            snapshot = ds.model_copy()
        self._notify(snapshot)
        return True

    def release_queued(self, run_id: int) -> list[str]:
        """Reset every table still queued (not yet syncing) by `run_id`."""
        released: list[DataSource] = []
        with self._lock:
            for ds in self._sources.values():
                if ds.sync_status == SyncStatus.QUEUED and ds.queued_by_run == run_id:
                    self._make_resumable(ds)
                    released.append(ds.model_copy())
        for snapshot in released:
            self._notify(snapshot)
        return [ds.id for ds in released]

    def clear_rows(self, data_source_id: str) -> None:
        """Drop a table's loaded rows so the next sync is a full refresh."""
        with self._lock:
            ds = self._require(data_source_id)
            ds.loaded_rows = 0
            ds.total_rows = None
            ds.progress_rows = 0
            ds.is_loaded = False
            if not ds.sync_status.in_flight:
                ds.sync_status = SyncStatus.IDLE
                ds.sync_error = None
            snapshot = ds.model_copy()
        self._notify(snapshot)

    def _make_resumable(self, ds: DataSource) -> None:
        ds.sync_status = SyncStatus.READY if ds.has_data else SyncStatus.IDLE
        ds.queued_by_run = None
        ds.progress_rows = 0

    def _owned(self, data_source_id: str, run_id: int, status: SyncStatus) -> DataSource | None:
        ds = self._sources.get(data_source_id)
        if ds is None or ds.sync_status != status or ds.queued_by_run != run_id:
            return None
        return ds

    def _require(self, data_source_id: str) -> DataSource:
        ds = self._sources.get(data_source_id)
        if ds is None:
            raise NotFoundError(
                message=f"Unknown data source: {data_source_id}",
                meta={"data_source_id": data_source_id},
            )
        return ds

    # ------------------------------------------------------------------
    # Re-authentication banner
    # ------------------------------------------------------------------

    @property
    def auth_required(self) -> bool:
        with self._lock:
            return bool(self._auth_required)

    def auth_required_connections(self) -> set[str]:
        with self._lock:
            return set(self._auth_required)

    def raise_auth_required(self, connection_id: str) -> None:
        with self._lock:
            is_new = connection_id not in self._auth_required
            self._auth_required.add(connection_id)
        if is_new:
            logger.warning("Re-authentication required", connection_id=connection_id)

    def clear_auth_required(self, connection_id: str) -> None:
        with self._lock:
            self._auth_required.discard(connection_id)

    # ------------------------------------------------------------------
    # Listeners & activity log
    # ------------------------------------------------------------------

    def add_listener(self, listener: StatusListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: StatusListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self, snapshot: DataSource) -> None:
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as e:
                logger.warning(
                    "Status listener failed",
                    data_source_id=snapshot.id,
                    error=str(e),
                )

    def log_activity(self, level: str, message: str, target: str | None = None) -> None:
        """Append to the bounded activity log (newest entries kept)."""
        with self._lock:
            self._activity.append(ActivityEntry(level=level, message=message, target=target))

    def activity(self) -> list[ActivityEntry]:
        """Activity entries, newest first."""
        with self._lock:
            return list(reversed(self._activity))

"""
Prometheus Metrics

Defines and exports metrics for the sync scheduler.
"""

from __future__ import annotations

import time

import structlog
from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest

logger = structlog.get_logger()

# Singleton metrics instance
_metrics: "Metrics | None" = None


class Metrics:
    """
    Prometheus metrics for the sync scheduler.

    Tracks:
    - Per-table sync outcomes and durations
    - Retry attempts
    - Tables currently in flight
    - Sync runs by mode and how they ended
    """

    def __init__(self, enabled: bool = True, registry: CollectorRegistry | None = None):
        self._enabled = enabled
        self.registry = registry or CollectorRegistry()

        self.table_syncs_total = Counter(
            "tablesync_table_syncs_total",
            "Per-table sync outcomes",
            ["kind", "outcome"],
            registry=self.registry,
        )
        self.table_sync_duration_seconds = Histogram(
            "tablesync_table_sync_duration_seconds",
            "Wall time spent on one table dispatch, retries included",
            ["kind"],
            buckets=[0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 300.0, 900.0],
            registry=self.registry,
        )
        self.rows_synced_total = Counter(
            "tablesync_rows_synced_total",
            "Rows committed by successful syncs",
            ["kind"],
            registry=self.registry,
        )
        self.sync_retries_total = Counter(
            "tablesync_sync_retries_total",
            "Failed attempts that were followed by a retry",
            ["reason"],
            registry=self.registry,
        )
        self.syncs_in_flight = Gauge(
            "tablesync_syncs_in_flight",
            "Sync Units currently running",
            registry=self.registry,
        )
        self.sync_runs_total = Counter(
            "tablesync_sync_runs_total",
            "Sync runs by mode and result",
            ["mode", "trigger", "result"],
            registry=self.registry,
        )
        self.last_success_timestamp_seconds = Gauge(
            "tablesync_last_success_timestamp_seconds",
            "Unix time of the most recent successful table sync",
            registry=self.registry,
        )

    @property
    def enabled(self) -> bool:
        return self._enabled

    def track_table_sync(
        self,
        kind: str,
        outcome: str,
        duration: float,
        rows_synced: int = 0,
    ) -> None:
        """Track one table dispatch."""
        if not self._enabled:
            return
        try:
            self.table_syncs_total.labels(kind=kind, outcome=outcome).inc()
            self.table_sync_duration_seconds.labels(kind=kind).observe(max(duration, 0.0))
            if rows_synced > 0:
                self.rows_synced_total.labels(kind=kind).inc(rows_synced)
            if outcome == "success":
                self.last_success_timestamp_seconds.set(time.time())
        except Exception as e:
            # Never allow metrics to affect sync execution.
            logger.debug("Failed to record table sync metrics", error=str(e))

    def track_retry(self, reason: str) -> None:
        if not self._enabled:
            return
        try:
            self.sync_retries_total.labels(reason=reason).inc()
        except Exception as e:
            logger.debug("Failed to record retry metric", error=str(e))

    def sync_started(self) -> None:
        if self._enabled:
            self.syncs_in_flight.inc()

    def sync_finished(self) -> None:
        if self._enabled:
            self.syncs_in_flight.dec()

    def track_run(self, mode: str, is_automatic: bool, result: str) -> None:
        if not self._enabled:
            return
        try:
            self.sync_runs_total.labels(
                mode=mode,
                trigger="automatic" if is_automatic else "manual",
                result=result,
            ).inc()
        except Exception as e:
            logger.debug("Failed to record run metric", error=str(e))

    def export(self) -> bytes:
        """Prometheus text exposition of this registry."""
        return generate_latest(self.registry)


def get_metrics() -> Metrics:
    """Get the global metrics instance."""
    global _metrics
    if _metrics is None:
        from tablesync.config import get_settings

        _metrics = Metrics(enabled=get_settings().metrics_enabled)
    return _metrics

"""Logging and metrics for the sync scheduler."""

from tablesync.monitoring.logging import configure_logging
from tablesync.monitoring.metrics import Metrics, get_metrics

__all__ = ["configure_logging", "Metrics", "get_metrics"]

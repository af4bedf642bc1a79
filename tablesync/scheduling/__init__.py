"""
Sync Scheduling

Trigger evaluation, retries, bounded dispatch and reload orchestration.
"""

from tablesync.scheduling.dispatcher import DispatchReport, SyncDispatcher
from tablesync.scheduling.orchestrator import ReloadOrchestrator, SyncRun
from tablesync.scheduling.retry import RetryController, RetryOutcome, RetryResult, backoff_delay
from tablesync.scheduling.scheduler import AutoReloadScheduler
from tablesync.scheduling.triggers import is_due, next_interval_due, parse_cron

__all__ = [
    "AutoReloadScheduler",
    "DispatchReport",
    "ReloadOrchestrator",
    "RetryController",
    "RetryOutcome",
    "RetryResult",
    "SyncDispatcher",
    "SyncRun",
    "backoff_delay",
    "is_due",
    "next_interval_due",
    "parse_cron",
]

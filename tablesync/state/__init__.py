"""
Sync State

In-memory per-table status machine and activity log.
"""

from tablesync.state.store import (
    TRANSITIONS,
    ActivityEntry,
    RegistryDiff,
    StatusListener,
    SyncStateStore,
)

__all__ = [
    "TRANSITIONS",
    "ActivityEntry",
    "RegistryDiff",
    "StatusListener",
    "SyncStateStore",
]

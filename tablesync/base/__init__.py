"""
Base Sync Framework

Data model and collaborator contracts shared by the scheduler.
"""

from tablesync.base.contracts import ActiveViewProvider, ProgressCallback, Registry, SyncUnit
from tablesync.base.models import (
    AuthType,
    Connection,
    DataSource,
    DataSourceKind,
    FetchResult,
    ReloadMode,
    ScheduleConfig,
    SyncStatus,
    TableRef,
)

__all__ = [
    "ActiveViewProvider",
    "ProgressCallback",
    "Registry",
    "SyncUnit",
    "AuthType",
    "Connection",
    "DataSource",
    "DataSourceKind",
    "FetchResult",
    "ReloadMode",
    "ScheduleConfig",
    "SyncStatus",
    "TableRef",
]

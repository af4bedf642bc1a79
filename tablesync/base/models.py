"""
Sync Data Model

Defines the tables, connections and schedule the scheduler works on.
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from tablesync.kernel.ids import bulk_import_id, remote_table_id
from tablesync.kernel.time import utc_now


class DataSourceKind(str, Enum):
    """How a table is fetched."""

    REMOTE_QUERYABLE = "remote-queryable"  # Warehouse table, partial/incremental fetch
    BULK_IMPORT = "bulk-import"            # Spreadsheet, fetched whole


class SyncStatus(str, Enum):
    """Per-table sync status."""

    IDLE = "idle"
    QUEUED = "queued"
    SYNCING = "syncing"
    READY = "ready"
    ERROR = "error"

    @property
    def in_flight(self) -> bool:
        return self in (SyncStatus.QUEUED, SyncStatus.SYNCING)


class AuthType(str, Enum):
    """How a connection authenticates."""

    INTERACTIVE = "interactive"          # User OAuth, may need a re-auth prompt
    SERVICE_ACCOUNT = "service_account"  # Machine credential, minted fresh on demand


class ReloadMode(str, Enum):
    """Which tables a reload targets."""

    MANUAL_ALL = "manual_all"
    MANUAL_SINGLE = "manual_single"
    SCOPED_TO_ACTIVE_VIEW = "scoped_to_active_view"


class Connection(BaseModel):
    """An external connection / credential set owning tables."""

    id: str
    name: str = ""
    auth_type: AuthType = AuthType.INTERACTIVE
    enabled: bool = True

    @property
    def is_interactive(self) -> bool:
        return self.auth_type == AuthType.INTERACTIVE


class TableRef(BaseModel):
    """A table as listed by the registry."""

    connection_id: str
    dataset: str = ""
    table: str = ""
    kind: DataSourceKind = DataSourceKind.REMOTE_QUERYABLE
    active: bool = True

    # Bulk imports are keyed by their registry entry, not by dataset/table
    table_key: str | None = None

    def data_source_id(self) -> str:
        if self.kind == DataSourceKind.BULK_IMPORT:
            return bulk_import_id(self.table_key or f"{self.connection_id}.{self.dataset}.{self.table}")
        return remote_table_id(self.connection_id, self.dataset, self.table)


class DataSource(BaseModel):
    """One synchronizable table held in local memory."""

    model_config = ConfigDict(validate_assignment=True)

    # Identity
    id: str
    connection_id: str
    kind: DataSourceKind = DataSourceKind.REMOTE_QUERYABLE
    dataset: str = ""
    table: str = ""
    name: str = ""

    # Registry state
    active: bool = True

    # Sync status
    sync_status: SyncStatus = SyncStatus.IDLE
    sync_error: str | None = None
    queued_by_run: int | None = None  # Owner of an in-flight status

    # Progress
    loaded_rows: int = 0
    total_rows: int | None = None  # Unknown until the first metadata fetch
    progress_rows: int = 0         # Received by the in-flight sync, not yet committed
    is_loaded: bool = False

    # Timestamps
    last_synced_at: datetime | None = None
    created_at: datetime = Field(default_factory=utc_now)

    @property
    def has_data(self) -> bool:
        return self.loaded_rows > 0


class FetchResult(BaseModel):
    """What a Sync Unit reports after fetching one table."""

    rows_loaded: int = 0
    total_rows: int | None = None


class ScheduleConfig(BaseModel):
    """Process-wide auto-reload schedule."""

    model_config = ConfigDict(validate_assignment=True)

    interval_minutes: float | None = None
    cron_expression: str | None = None
    absolute_times: set[str] = Field(default_factory=set)  # "HH:MM"

    # Last time any reload (manual or scheduled) was initiated
    last_reload_at: datetime | None = None

    @property
    def is_enabled(self) -> bool:
        return bool(
            (self.interval_minutes and self.interval_minutes > 0)
            or (self.cron_expression and self.cron_expression.strip())
            or self.absolute_times
        )

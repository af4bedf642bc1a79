from __future__ import annotations

import re
from typing import Any


_ERROR_CODE_RE = re.compile(r"^[a-z][a-z0-9_]*(\.[a-z][a-z0-9_]*)*$")


class TableSyncError(Exception):
    """Base typed error for tablesync.

    Goals:
    - Stable `code` for programmatic handling (badges, banners, retries).
    - Human-readable `message` for the activity log.
    - Optional `meta` payload for debugging (table id, attempt, ...).
    """

    retryable: bool = False

    def __init__(
        self,
        *,
        code: str,
        message: str,
        meta: dict[str, Any] | None = None,
    ) -> None:
        if not _ERROR_CODE_RE.fullmatch(code):
            raise ValueError(
                "Invalid error code. Expected dot-separated lowercase tokens, "
                f"got: {code!r}"
            )
        super().__init__(message)
        self.code = code
        self.message = message
        self.meta = dict(meta or {})


class NotFoundError(TableSyncError):
    def __init__(self, *, message: str = "Not found", code: str = "resource.not_found", meta: dict[str, Any] | None = None):
        super().__init__(code=code, message=message, meta=meta)


class UnauthorizedError(TableSyncError):
    """The remote source rejected the access token."""

    def __init__(
        self,
        *,
        message: str = "Access token rejected",
        code: str = "auth.unauthorized",
        meta: dict[str, Any] | None = None,
    ):
        super().__init__(code=code, message=message, meta=meta)


class ReauthenticationFailedError(TableSyncError):
    def __init__(
        self,
        *,
        message: str = "Interactive re-authentication failed",
        code: str = "auth.reauthentication_failed",
        meta: dict[str, Any] | None = None,
    ):
        super().__init__(code=code, message=message, meta=meta)


class TransientSyncError(TableSyncError):
    """Network, rate-limit or server error. Retried with backoff."""

    retryable = True

    def __init__(
        self,
        *,
        message: str = "Transient sync failure",
        code: str = "sync.transient",
        meta: dict[str, Any] | None = None,
    ):
        super().__init__(code=code, message=message, meta=meta)


class IncompleteSyncError(TransientSyncError):
    def __init__(self, *, rows_loaded: int, total_rows: int):
        super().__init__(
            message=f"Data verification failed: loaded {rows_loaded} rows but expected {total_rows}",
            code="sync.incomplete",
            meta={"rows_loaded": rows_loaded, "total_rows": total_rows},
        )


class SyncCancelledError(TableSyncError):
    """User- or supersession-triggered stop. Not a failure."""

    def __init__(
        self,
        *,
        message: str = "Sync cancelled",
        code: str = "sync.cancelled",
        meta: dict[str, Any] | None = None,
    ):
        super().__init__(code=code, message=message, meta=meta)


class SyncExhaustedError(TableSyncError):
    def __init__(
        self,
        *,
        message: str = "All sync attempts failed",
        code: str = "sync.exhausted",
        meta: dict[str, Any] | None = None,
    ):
        super().__init__(code=code, message=message, meta=meta)


class ScheduleMalformedError(TableSyncError):
    def __init__(
        self,
        *,
        message: str = "Malformed schedule",
        code: str = "schedule.malformed",
        meta: dict[str, Any] | None = None,
    ):
        super().__init__(code=code, message=message, meta=meta)


class InvalidTransitionError(TableSyncError):
    def __init__(self, *, data_source_id: str, current: str, target: str):
        super().__init__(
            code="state.invalid_transition",
            message=f"Cannot move {data_source_id} from {current} to {target}",
            meta={"data_source_id": data_source_id, "from": current, "to": target},
        )

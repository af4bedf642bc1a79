from __future__ import annotations

import itertools
import re
import threading

_SEGMENT_RE = re.compile(r"^[^:\s][^:]*$")


def remote_table_id(connection_id: str, dataset: str, table: str) -> str:
    """Deterministic id for a remote-queryable table.

    Format: `bq:{connection_id}:{dataset}:{table}`. Registering the same
    (connection, dataset, table) twice always yields the same id.
    """
    for name, part in (("connection_id", connection_id), ("dataset", dataset), ("table", table)):
        if not _SEGMENT_RE.fullmatch(part or ""):
            raise ValueError(f"Invalid {name} for a table id: {part!r}")
    return f"bq:{connection_id}:{dataset}:{table}"


def bulk_import_id(table_key: str) -> str:
    """Deterministic id for a bulk-import (spreadsheet) table."""
    if not table_key or not table_key.strip():
        raise ValueError("Bulk import tables need a non-empty key")
    return f"import:{table_key.strip()}"


class MonotonicCounter:
    """Thread-safe, strictly increasing integer ids (sync run ids)."""

    def __init__(self, start: int = 1):
        self._counter = itertools.count(start)
        self._lock = threading.Lock()

    def next(self) -> int:
        with self._lock:
            return next(self._counter)

"""
Collaborator Contracts

Interfaces the scheduler consumes but does not implement: the Sync Unit that
fetches a table, the registry of tables/connections, and the view that decides
which tables are on screen.
"""

from abc import ABC, abstractmethod
from collections.abc import Iterable
from typing import Callable

from tablesync.base.models import Connection, FetchResult, TableRef
from tablesync.kernel.cancellation import CancelScope

ProgressCallback = Callable[[int, int | None], None]


class SyncUnit(ABC):
    """
    Performs the actual fetch for one table.

    Implementations must:
    - raise UnauthorizedError when the remote source rejects the token
    - raise any other exception for transient failures
    - honor `cancel` promptly (check `cancel.cancelled` or await `cancel.wait()`)
    - report progress through `on_progress(rows_received, total_rows)`
    """

    @abstractmethod
    async def fetch(
        self,
        data_source_id: str,
        token: str,
        cancel: CancelScope,
        on_progress: ProgressCallback | None = None,
    ) -> FetchResult:
        """
        Fetch one table.

        Args:
            data_source_id: Table to fetch
            token: Valid access token for the table's connection
            cancel: Attempt-level cancellation scope
            on_progress: Optional progress callback

        Returns:
            FetchResult with rows loaded and the table's total row count
        """
        pass


class Registry(ABC):
    """Source of truth for registered tables and their connections."""

    @abstractmethod
    async def list_active_tables(self) -> list[TableRef]:
        """List every table currently registered (active or not)."""
        pass

    @abstractmethod
    async def resolve_connection(self, connection_id: str) -> Connection | None:
        """Look up a connection; None when it was removed."""
        pass


class ActiveViewProvider(ABC):
    """Knows which tables the visible dashboard/page/selection references."""

    @abstractmethod
    def visible_source_ids(self) -> Iterable[str]:
        """
        Table ids bound to what is on screen.

        Includes the dashboard's own source, the active page's source, the
        current selection and each visible widget's source.
        """
        pass

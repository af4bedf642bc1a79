"""
Retry Controller

Runs one table's fetch with bounded exponential backoff. Cancellation and
rejected credentials end the loop at once; every other failure consumes an
attempt.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable

import structlog

from tablesync.base.contracts import ProgressCallback, SyncUnit
from tablesync.base.models import FetchResult
from tablesync.kernel.cancellation import CancelScope
from tablesync.kernel.errors import (
    IncompleteSyncError,
    SyncCancelledError,
    SyncExhaustedError,
    TableSyncError,
    UnauthorizedError,
)
from tablesync.monitoring.metrics import Metrics

logger = structlog.get_logger()

TokenProvider = Callable[[], Awaitable[str | None]]
Sleeper = Callable[[float, CancelScope], Awaitable[bool]]


class RetryOutcome(str, Enum):
    SUCCESS = "success"
    EXHAUSTED = "exhausted"
    CANCELLED = "cancelled"
    AUTH_REQUIRED = "auth-required"


@dataclass
class RetryResult:
    """Terminal state of one retry loop."""

    outcome: RetryOutcome
    attempts: int = 0
    result: FetchResult | None = None
    failures: list[BaseException] = field(default_factory=list)

    @property
    def last_error(self) -> BaseException | None:
        return self.failures[-1] if self.failures else None

    @property
    def error_message(self) -> str | None:
        error = self.last_error
        if error is None:
            return None
        if isinstance(error, TableSyncError):
            return error.message
        return str(error) or type(error).__name__

    def exhausted_error(self) -> SyncExhaustedError:
        return SyncExhaustedError(
            message=f"Sync failed after {self.attempts} attempts: {self.error_message}",
            meta={"attempts": self.attempts, "last_error": _retry_reason(self.last_error)},
        )


def backoff_delay(attempt: int, base: float = 1.0, maximum: float = 10.0) -> float:
    """Delay after failed attempt `attempt` (1-based): base * 2^attempt, capped."""
    return min(base * (2 ** attempt), maximum)


async def _scope_sleep(delay: float, scope: CancelScope) -> bool:
    return await scope.sleep(delay)


def _retry_reason(error: BaseException | None) -> str:
    if isinstance(error, TableSyncError):
        return error.code
    return "error"


class RetryController:
    """
    Fetches a table, retrying transient failures.

    Every attempt resolves a fresh token and runs under its own child of the
    table scope, so cancelling the table interrupts the fetch even when the
    Sync Unit never checks its scope.
    """

    def __init__(
        self,
        sync_unit: SyncUnit,
        *,
        max_attempts: int = 5,
        base_backoff: float = 1.0,
        max_backoff: float = 10.0,
        sleep: Sleeper | None = None,
        metrics: Metrics | None = None,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.sync_unit = sync_unit
        self.max_attempts = max_attempts
        self.base_backoff = base_backoff
        self.max_backoff = max_backoff
        self._sleep = sleep or _scope_sleep
        self._metrics = metrics

    async def run(
        self,
        data_source_id: str,
        token_provider: TokenProvider,
        scope: CancelScope,
        on_progress: ProgressCallback | None = None,
    ) -> RetryResult:
        """
        Fetch `data_source_id` until it succeeds, is cancelled, needs
        re-authentication, or runs out of attempts.

        Args:
            data_source_id: Table to fetch
            token_provider: Called before every attempt; None means re-auth needed
            scope: The table's cancellation scope
            on_progress: Forwarded to the Sync Unit

        Returns:
            RetryResult with the terminal outcome
        """
        failures: list[BaseException] = []
        attempt = 0

        while attempt < self.max_attempts:
            if scope.cancelled:
                return RetryResult(RetryOutcome.CANCELLED, attempt, failures=failures)

            attempt += 1
            attempt_scope = scope.child(f"{data_source_id}#attempt-{attempt}")
            try:
                token = await attempt_scope.run(token_provider())
                if not token:
                    failures.append(UnauthorizedError(message="No valid access token"))
                    return RetryResult(RetryOutcome.AUTH_REQUIRED, attempt, failures=failures)

                result = await attempt_scope.run(
                    self.sync_unit.fetch(data_source_id, token, attempt_scope, on_progress)
                )
                if result.total_rows and result.rows_loaded < result.total_rows:
                    raise IncompleteSyncError(
                        rows_loaded=result.rows_loaded,
                        total_rows=result.total_rows,
                    )
                return RetryResult(RetryOutcome.SUCCESS, attempt, result=result, failures=failures)

            except SyncCancelledError:
                return RetryResult(RetryOutcome.CANCELLED, attempt, failures=failures)

            except UnauthorizedError as e:
                failures.append(e)
                logger.warning(
                    "Sync rejected, credentials expired",
                    data_source_id=data_source_id,
                    attempt=attempt,
                )
                return RetryResult(RetryOutcome.AUTH_REQUIRED, attempt, failures=failures)

            except Exception as e:
                failures.append(e)
                if scope.cancelled:
                    return RetryResult(RetryOutcome.CANCELLED, attempt, failures=failures)
                if attempt >= self.max_attempts:
                    break

                delay = backoff_delay(attempt, self.base_backoff, self.max_backoff)
                if self._metrics is not None:
                    self._metrics.track_retry(_retry_reason(e))
                logger.warning(
                    "Retrying sync after failure",
                    data_source_id=data_source_id,
                    attempt=attempt,
                    max_attempts=self.max_attempts,
                    delay=delay,
                    error=str(e),
                )
                if not await self._sleep(delay, scope):
                    return RetryResult(RetryOutcome.CANCELLED, attempt, failures=failures)

            finally:
                attempt_scope.detach()

        logger.error(
            "Sync failed after all attempts",
            data_source_id=data_source_id,
            attempts=attempt,
            error=str(failures[-1]) if failures else None,
        )
        return RetryResult(RetryOutcome.EXHAUSTED, attempt, failures=failures)

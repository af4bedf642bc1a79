"""
Cancellation Scopes

Structured cancellation for sync work: a scope per sync run, a child scope per
in-flight table, and a grandchild per attempt. Cancelling a scope cancels all
of its live descendants; cancelling a child never touches its parent or its
siblings.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, TypeVar

from tablesync.kernel.errors import SyncCancelledError

T = TypeVar("T")


class CancelScope:
    """A node in the cancellation tree."""

    def __init__(self, name: str = "scope", parent: "CancelScope | None" = None):
        self.name = name
        self.reason: str | None = None
        self._parent = parent
        self._children: set[CancelScope] = set()
        self._event = asyncio.Event()
        if parent is not None:
            parent._children.add(self)
            if parent.cancelled:
                self.cancel(parent.reason)

    def __repr__(self) -> str:
        state = f"cancelled={self.reason!r}" if self.cancelled else "live"
        return f"<CancelScope {self.name} {state}>"

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def children(self) -> frozenset["CancelScope"]:
        return frozenset(self._children)

    def child(self, name: str) -> "CancelScope":
        return CancelScope(name=name, parent=self)

    def cancel(self, reason: str = "cancelled") -> None:
        """Cancel this scope and every live descendant. Idempotent."""
        if self.cancelled:
            return
        self.reason = reason
        self._event.set()
        for child in list(self._children):
            child.cancel(reason)

    def detach(self) -> None:
        """Drop this scope from its parent once its work is finished."""
        if self._parent is not None:
            self._parent._children.discard(self)
            self._parent = None

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise SyncCancelledError(meta={"scope": self.name, "reason": self.reason})

    async def wait(self) -> None:
        await self._event.wait()

    async def sleep(self, delay: float) -> bool:
        """Sleep up to `delay` seconds.

        Returns True when the full delay elapsed, False when the scope was
        cancelled first (the caller wakes early and should stop).
        """
        if self.cancelled:
            return False
        try:
            await asyncio.wait_for(self._event.wait(), timeout=max(0.0, delay))
        except asyncio.TimeoutError:
            return True
        return False

    async def run(self, awaitable: Awaitable[T]) -> T:
        """Run `awaitable`, interrupting it as soon as this scope is cancelled.

        Raises SyncCancelledError if the scope wins the race.
        """
        if self.cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            self.raise_if_cancelled()
        task: asyncio.Future[Any] = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()

        if not self.cancelled:
            return task.result()

        # A cancel wins even over work that finished in the same loop pass
        task.cancel()
        try:
            await task
        except (asyncio.CancelledError, Exception):
            pass
        raise SyncCancelledError(meta={"scope": self.name, "reason": self.reason})

"""
Sync Event Broadcasting

In-process pub/sub for real-time table status updates. The state store
reports every status change; subscribers (status badges, progress bars)
receive them through bounded queues.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator

import structlog
from pydantic import BaseModel

from tablesync.base.models import DataSource, SyncStatus
from tablesync.kernel.time import isoformat_z, utc_now

logger = structlog.get_logger()

_EVENT_TYPES = {
    SyncStatus.IDLE: "idle",
    SyncStatus.QUEUED: "queued",
    SyncStatus.SYNCING: "started",
    SyncStatus.READY: "completed",
    SyncStatus.ERROR: "failed",
}


class SyncEvent(BaseModel):
    """Table status event."""

    event_type: str  # "queued", "started", "progress", "completed", "failed", "idle"
    data_source_id: str
    connection_id: str
    status: SyncStatus
    loaded_rows: int = 0
    total_rows: int | None = None
    progress: float | None = None  # 0.0 to 1.0
    error: str | None = None
    timestamp: datetime | None = None

    def model_post_init(self, __context):
        if self.timestamp is None:
            self.timestamp = utc_now()

    @classmethod
    def from_data_source(cls, ds: DataSource) -> "SyncEvent":
        event_type = _EVENT_TYPES[ds.sync_status]
        rows = ds.loaded_rows
        if ds.sync_status == SyncStatus.SYNCING and ds.progress_rows > 0:
            event_type = "progress"
            rows = ds.progress_rows

        progress = None
        if ds.total_rows and ds.total_rows > 0:
            progress = min(rows / ds.total_rows, 1.0)

        return cls(
            event_type=event_type,
            data_source_id=ds.id,
            connection_id=ds.connection_id,
            status=ds.sync_status,
            loaded_rows=rows,
            total_rows=ds.total_rows,
            progress=progress,
            error=ds.sync_error,
        )

    def to_wire(self) -> dict:
        payload = self.model_dump(mode="json")
        if self.timestamp is not None:
            payload["timestamp"] = isoformat_z(self.timestamp)
        return payload


class SyncEventBroadcaster:
    """Fans sync events out to subscriber queues without ever blocking."""

    def __init__(self, queue_size: int = 1000):
        self.queue_size = queue_size
        self._subscribers: set[asyncio.Queue[SyncEvent]] = set()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, event: SyncEvent) -> None:
        """Publish a sync event. Full subscriber queues drop it."""
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(
                    "Dropping sync event, subscriber queue full",
                    event_type=event.event_type,
                    data_source_id=event.data_source_id,
                )
        logger.debug(
            "Published sync event",
            event_type=event.event_type,
            data_source_id=event.data_source_id,
        )

    def on_status_change(self, ds: DataSource) -> None:
        """State store listener."""
        self.publish(SyncEvent.from_data_source(ds))

    @asynccontextmanager
    async def subscription(self) -> AsyncIterator[asyncio.Queue[SyncEvent]]:
        queue: asyncio.Queue[SyncEvent] = asyncio.Queue(maxsize=self.queue_size)
        self._subscribers.add(queue)
        try:
            yield queue
        finally:
            self._subscribers.discard(queue)

    async def subscribe(self) -> AsyncIterator[SyncEvent]:
        """Subscribe to sync events until the consumer stops iterating."""
        async with self.subscription() as queue:
            logger.info("Subscribed to sync events")
            while True:
                yield await queue.get()


# Convenience functions
_broadcaster: SyncEventBroadcaster | None = None


def get_broadcaster() -> SyncEventBroadcaster:
    global _broadcaster
    if _broadcaster is None:
        from tablesync.config import get_settings

        _broadcaster = SyncEventBroadcaster(queue_size=get_settings().event_queue_size)
    return _broadcaster

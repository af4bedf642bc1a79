"""
Unit tests for sync event broadcasting.
"""

import asyncio

import pytest

from tablesync.base.models import DataSource, SyncStatus
from tablesync.state.store import SyncStateStore
from tablesync.sync_events import SyncEvent, SyncEventBroadcaster
from tests.support.fakes import remote_table

pytestmark = pytest.mark.unit


def _source(**kwargs) -> DataSource:
    defaults = {"id": "bq:conn_1:sales:orders", "connection_id": "conn_1"}
    defaults.update(kwargs)
    return DataSource(**defaults)


class TestSyncEvent:
    """Tests for SyncEvent.from_data_source()."""

    def test_completed(self):
        """Test completed event from a ready table."""
        event = SyncEvent.from_data_source(
            _source(sync_status=SyncStatus.READY, loaded_rows=50, total_rows=50)
        )

        assert event.event_type == "completed"
        assert event.progress == 1.0
        assert event.timestamp is not None

    def test_progress_uses_in_flight_rows(self):
        """Test progress uses in flight rows."""
        event = SyncEvent.from_data_source(
            _source(sync_status=SyncStatus.SYNCING, loaded_rows=10, progress_rows=25, total_rows=100)
        )

        assert event.event_type == "progress"
        assert event.loaded_rows == 25
        assert event.progress == 0.25

    def test_failed_carries_error(self):
        """Test failed carries error."""
        event = SyncEvent.from_data_source(_source(sync_status=SyncStatus.ERROR, sync_error="boom"))

        assert event.event_type == "failed"
        assert event.error == "boom"
        assert event.progress is None

    def test_wire_format(self):
        """Test wire payload format."""
        payload = SyncEvent.from_data_source(_source()).to_wire()

        assert payload["status"] == "idle"
        assert payload["timestamp"].endswith("Z")


class TestBroadcaster:
    """Tests for SyncEventBroadcaster."""

    @pytest.mark.asyncio
    async def test_publish_reaches_subscribers(self):
        """Test publish reaches subscribers."""
        broadcaster = SyncEventBroadcaster()

        async with broadcaster.subscription() as queue:
            broadcaster.publish(SyncEvent.from_data_source(_source()))
            event = queue.get_nowait()

        assert event.data_source_id == "bq:conn_1:sales:orders"
        assert broadcaster.subscriber_count == 0

    @pytest.mark.asyncio
    async def test_full_queue_drops_without_blocking(self):
        """Test full queue drops without blocking."""
        broadcaster = SyncEventBroadcaster(queue_size=1)

        async with broadcaster.subscription() as queue:
            for _ in range(3):
                broadcaster.publish(SyncEvent.from_data_source(_source()))

            assert queue.qsize() == 1

    def test_publish_without_subscribers(self):
        """Test publish without subscribers."""
        SyncEventBroadcaster().publish(SyncEvent.from_data_source(_source()))

    @pytest.mark.asyncio
    async def test_store_changes_are_published(self, fake_clock):
        """Test store changes are published."""
        broadcaster = SyncEventBroadcaster()
        store = SyncStateStore(clock=fake_clock.now)
        store.add_listener(broadcaster.on_status_change)
        ds = store.register(remote_table("orders"))
        store.set_connection_active("conn_1", True)

        async def first_event():
            async for event in broadcaster.subscribe():
                return event

        consumer = asyncio.create_task(first_event())
        while broadcaster.subscriber_count == 0:
            await asyncio.sleep(0)
        store.try_enqueue(ds.id, run_id=1)
        event = await asyncio.wait_for(consumer, timeout=1)

        assert event.event_type == "queued"
        assert event.status == SyncStatus.QUEUED

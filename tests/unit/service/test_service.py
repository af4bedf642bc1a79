"""
Unit tests for the SyncService facade.
"""

import asyncio

import pytest

from tablesync.base.models import ReloadMode, SyncStatus
from tablesync.config import Settings
from tablesync.monitoring.metrics import Metrics
from tablesync.service import build_sync_service
from tablesync.sync_events import SyncEventBroadcaster
from tests.support.fakes import (
    FakeCredentialBroker,
    FakeRegistry,
    FakeSyncUnit,
    FakeViewProvider,
    RecordingSleeper,
    interactive,
    remote_table,
)

pytestmark = pytest.mark.unit

ORDERS = "bq:conn_1:sales:orders"
CUSTOMERS = "bq:conn_1:sales:customers"


@pytest.fixture
def unit():
    return FakeSyncUnit()


@pytest.fixture
def service(unit):
    registry = FakeRegistry(
        tables=[remote_table("orders"), remote_table("customers")],
        connections=[interactive("conn_1")],
    )
    return build_sync_service(
        unit,
        registry,
        FakeCredentialBroker({"conn_1": "token-1"}),
        view=FakeViewProvider([ORDERS]),
        settings=Settings(_env_file=None, sync_concurrency=1, view_reload_debounce_seconds=0.01),
        metrics=Metrics(enabled=True),
        broadcaster=SyncEventBroadcaster(),
        sleep=RecordingSleeper(),
    )


class TestSyncService:
    @pytest.mark.asyncio
    async def test_start_registers_tables(self, service):
        """Test start registers tables."""
        await service.start()
        try:
            assert sorted(ds.id for ds in service.tables()) == [CUSTOMERS, ORDERS]
            assert service.scheduler.running
        finally:
            await service.shutdown()

        assert not service.scheduler.running

    @pytest.mark.asyncio
    async def test_reload_publishes_events(self, service):
        """Test reload publishes events."""
        async with service.broadcaster.subscription() as queue:
            run = await service.reload()

            events = []
            while not queue.empty():
                events.append(queue.get_nowait())

        assert run.report.count("success") == 2
        completed = {e.data_source_id for e in events if e.event_type == "completed"}
        assert completed == {ORDERS, CUSTOMERS}
        assert service.status()["last_reload_at"].endswith("Z")

    @pytest.mark.asyncio
    async def test_view_change_reloads_visible_tables(self, service, unit):
        """Test view change reloads visible tables."""
        await service.orchestrator.refresh_registry()

        run = await service.notify_view_changed()

        assert run.mode == ReloadMode.SCOPED_TO_ACTIVE_VIEW
        assert unit.calls == [ORDERS]

    @pytest.mark.asyncio
    async def test_reload_one_and_stop_all(self, service, unit):
        """Test reload_one and stop_all."""
        await service.orchestrator.refresh_registry()
        unit.gate = asyncio.Event()

        task = asyncio.create_task(service.reload_one(ORDERS))
        while unit.in_flight == 0:
            await asyncio.sleep(0)
        assert service.status()["in_flight"] == [ORDERS]

        assert service.stop_all() == 1
        run = await asyncio.wait_for(task, timeout=2)

        assert run.aborted == "stopped"
        assert service.tables()[0].sync_status == SyncStatus.IDLE
        assert not service.stop_one(ORDERS)

    def test_update_schedule_keeps_last_reload(self, service):
        """Test update_schedule keeps the last reload time."""
        service.update_schedule(interval_minutes=30)
        service.update_schedule(cron_expression="0 9 * * 1-5", absolute_times={"12:00"})

        assert service.schedule.interval_minutes is None
        assert service.schedule.cron_expression == "0 9 * * 1-5"
        assert service.schedule.absolute_times == {"12:00"}
        assert service.status()["next_interval_reload_at"] is None

    def test_activity_starts_empty(self, service):
        """Test activity starts empty."""
        assert service.activity() == []
        assert service.status()["auth_required"] is False

"""
Unit tests for the concurrency-bounded dispatcher.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from tablesync.base.models import SyncStatus
from tablesync.kernel.cancellation import CancelScope
from tablesync.kernel.errors import TransientSyncError, UnauthorizedError
from tests.support.fakes import eventually, remote_table

pytestmark = pytest.mark.unit


def _tables(harness, count):
    return harness.add_tables(*(remote_table(f"t{i}") for i in range(count)))


class TestDispatch:
    """Tests for SyncDispatcher.dispatch()."""

    @pytest.mark.asyncio
    async def test_concurrency_ceiling(self, harness):
        """Test concurrency ceiling."""
        ids = _tables(harness, 10)
        harness.unit.delay = 0.01

        report = await harness.dispatcher.dispatch(ids, CancelScope(), run_id=1, concurrency=2)

        assert harness.unit.max_in_flight == 2
        assert sorted(harness.unit.calls) == sorted(ids)
        assert report.count("success") == 10
        assert all(harness.store.get_status(i) == SyncStatus.READY for i in ids)

    @pytest.mark.asyncio
    async def test_fewer_tables_than_workers(self, harness):
        """Test fewer tables than workers."""
        ids = _tables(harness, 1)

        report = await harness.dispatcher.dispatch(ids, CancelScope(), run_id=1, concurrency=4)

        assert report.outcomes == {ids[0]: "success"}

    @pytest.mark.asyncio
    async def test_skips_tables_that_do_not_need_sync(self, harness):
        """Test skips tables that do not need sync."""
        ids = _tables(harness, 2)
        await harness.dispatcher.dispatch(ids[:1], CancelScope(), run_id=1)
        harness.unit.calls.clear()

        report = await harness.dispatcher.dispatch(ids, CancelScope(), run_id=2)

        assert report.skipped == [ids[0]]
        assert harness.unit.calls == [ids[1]]

    @pytest.mark.asyncio
    async def test_no_double_dispatch_for_overlapping_requests(self, harness):
        """Test no double dispatch for overlapping requests."""
        ids = _tables(harness, 3)
        harness.unit.gate = asyncio.Event()

        first = asyncio.create_task(harness.dispatcher.dispatch(ids, CancelScope(), run_id=1))
        second = asyncio.create_task(harness.dispatcher.dispatch(ids, CancelScope(), run_id=2))
        await eventually(lambda: harness.unit.in_flight == 2)
        harness.unit.gate.set()
        first_report, second_report = await asyncio.gather(first, second)

        assert sorted(harness.unit.calls) == sorted(ids)
        assert second_report.skipped == ids
        assert first_report.count("success") == 3

    @pytest.mark.asyncio
    async def test_failures_are_isolated(self, harness):
        """Test failures are isolated."""
        ids = _tables(harness, 3)
        harness.unit.queue(ids[1], *[TransientSyncError() for _ in range(5)])

        report = await harness.dispatcher.dispatch(ids, CancelScope(), run_id=1)

        assert report.outcomes[ids[1]] == "exhausted"
        assert harness.store.get_status(ids[1]) == SyncStatus.ERROR
        assert harness.store.get_status(ids[0]) == SyncStatus.READY
        assert harness.store.get_status(ids[2]) == SyncStatus.READY
        assert harness.store.activity()[0].level in ("success", "error")

    @pytest.mark.asyncio
    async def test_unauthorized_marks_error_and_raises_banner(self, harness):
        """Test unauthorized marks error and raises banner."""
        ids = _tables(harness, 1)
        harness.unit.queue(ids[0], UnauthorizedError())

        report = await harness.dispatcher.dispatch(ids, CancelScope(), run_id=1)

        assert report.outcomes[ids[0]] == "auth-required"
        assert harness.store.get_status(ids[0]) == SyncStatus.ERROR
        assert harness.store.auth_required
        assert harness.sleeper.delays == []

    @pytest.mark.asyncio
    async def test_removed_connection_marks_error(self, harness):
        """Test removed connection marks error."""
        ids = _tables(harness, 1)
        del harness.registry.connections["conn_1"]

        report = await harness.dispatcher.dispatch(ids, CancelScope(), run_id=1)

        assert report.outcomes[ids[0]] == "error"
        assert harness.unit.calls == []

    @pytest.mark.asyncio
    async def test_progress_is_recorded_and_committed(self, harness):
        """Test progress is recorded and committed."""
        ids = _tables(harness, 1)
        seen = []
        harness.store.add_listener(lambda ds: seen.append((ds.sync_status, ds.progress_rows)))

        await harness.dispatcher.dispatch(ids, CancelScope(), run_id=1)

        assert (SyncStatus.SYNCING, 100) in seen
        assert harness.store.get(ids[0]).loaded_rows == 100

    @pytest.mark.asyncio
    async def test_metrics_recorded(self, harness):
        """Test per-table metrics are recorded."""
        ids = _tables(harness, 2)

        await harness.dispatcher.dispatch(ids, CancelScope(), run_id=1)

        registry = harness.metrics.registry
        assert registry.get_sample_value(
            "tablesync_table_syncs_total", {"kind": "remote-queryable", "outcome": "success"}
        ) == 2
        assert registry.get_sample_value("tablesync_syncs_in_flight") == 0


class TestCancellation:
    """Tests for table- and run-level cancellation."""

    @pytest.mark.asyncio
    async def test_cancel_table_leaves_siblings_running(self, harness):
        """Test cancel table leaves siblings running."""
        ids = _tables(harness, 2)
        harness.unit.gate = asyncio.Event()

        task = asyncio.create_task(harness.dispatcher.dispatch(ids, CancelScope(), run_id=1))
        await eventually(lambda: harness.unit.in_flight == 2)
        assert harness.dispatcher.cancel_table(ids[0])
        await eventually(lambda: harness.unit.in_flight == 1)
        harness.unit.gate.set()
        report = await task

        assert report.outcomes == {ids[0]: "cancelled", ids[1]: "success"}
        assert harness.store.get_status(ids[0]) == SyncStatus.IDLE
        assert harness.store.get_status(ids[1]) == SyncStatus.READY

    @pytest.mark.asyncio
    async def test_cancel_run_releases_everything(self, harness):
        """Test cancel run releases everything."""
        ids = _tables(harness, 5)
        harness.unit.gate = asyncio.Event()
        scope = CancelScope("run-1")

        task = asyncio.create_task(harness.dispatcher.dispatch(ids, scope, run_id=1))
        await eventually(lambda: harness.unit.in_flight == 2)
        scope.cancel("superseded")
        report = await asyncio.wait_for(task, timeout=2)

        assert len(harness.unit.calls) == 2
        assert sorted(report.released) == sorted(ids[2:])
        assert harness.store.in_flight_ids() == []
        assert harness.dispatcher.live_table_ids == []

    def test_cancel_unknown_table(self, harness):
        """Test cancel unknown table."""
        assert not harness.dispatcher.cancel_table("bq:conn_1:sales:nope")


class TestRegistryFailures:
    """Tests for connection lookups that fail or hang."""

    @pytest.mark.asyncio
    async def test_lookup_error_is_isolated(self, harness):
        """Test a raising lookup errors one table and the rest still sync."""
        ids = _tables(harness, 4)
        harness.registry.lookup_errors[3] = ConnectionError("registry unreachable")

        report = await harness.dispatcher.dispatch(ids, CancelScope(), run_id=1)

        failed = [ds_id for ds_id, outcome in report.outcomes.items() if outcome == "error"]
        assert len(failed) == 1
        assert report.count("success") == 3
        assert failed[0] not in harness.unit.calls
        assert harness.store.get_status(failed[0]) == SyncStatus.ERROR
        assert harness.store.get(failed[0]).sync_error.startswith("Connection lookup failed")
        assert harness.store.in_flight_ids() == []
        assert harness.dispatcher.live_table_ids == []

    @pytest.mark.asyncio
    async def test_reload_survives_lookup_error(self, harness):
        """Test a full reload returns normally with every worker joined."""
        ids = _tables(harness, 4)
        harness.unit.delay = 0.01
        # The first lookup belongs to the registry refresh
        harness.registry.lookup_errors[4] = ConnectionError("registry unreachable")

        run = await harness.orchestrator.reload()

        assert run.aborted is None
        assert run.report.count("error") == 1
        assert run.report.count("success") == 3
        assert harness.store.in_flight_ids() == []
        assert sorted(harness.unit.calls) == sorted(
            ds_id for ds_id in ids if run.outcomes[ds_id] == "success"
        )

    @pytest.mark.asyncio
    async def test_unexpected_crash_leaves_table_in_error(self, harness, monkeypatch):
        """Test a crash outside the retry loop never strands a table in syncing."""
        ids = _tables(harness, 2)
        monkeypatch.setattr(harness.retry, "run", AsyncMock(side_effect=RuntimeError("boom")))

        report = await harness.dispatcher.dispatch(ids, CancelScope(), run_id=1)

        assert report.outcomes == {ids[0]: "error", ids[1]: "error"}
        assert all(harness.store.get_status(i) == SyncStatus.ERROR for i in ids)
        assert harness.dispatcher.live_table_ids == []
        assert harness.metrics.registry.get_sample_value("tablesync_syncs_in_flight") == 0

    @pytest.mark.asyncio
    async def test_stop_during_slow_lookup(self, harness):
        """Test stopping a table interrupts its connection lookup."""
        ids = _tables(harness, 1)
        harness.registry.lookup_gate = asyncio.Event()

        task = asyncio.create_task(harness.dispatcher.dispatch(ids, CancelScope(), run_id=1))
        await eventually(lambda: harness.registry.lookups == 1)
        assert harness.dispatcher.cancel_table(ids[0])
        report = await asyncio.wait_for(task, timeout=2)

        assert report.outcomes == {ids[0]: "cancelled"}
        assert harness.store.get_status(ids[0]) == SyncStatus.IDLE
        assert harness.unit.calls == []

    @pytest.mark.asyncio
    async def test_run_cancel_during_slow_lookup(self, harness):
        """Test cancelling the run does not wait out hung lookups."""
        ids = _tables(harness, 3)
        harness.registry.lookup_gate = asyncio.Event()
        scope = CancelScope("run-1")

        task = asyncio.create_task(harness.dispatcher.dispatch(ids, scope, run_id=1))
        await eventually(lambda: harness.registry.lookups == 2)
        scope.cancel("stopped")
        report = await asyncio.wait_for(task, timeout=2)

        assert report.count("cancelled") == 2
        assert report.released == [ids[2]]
        assert harness.store.in_flight_ids() == []

"""
Test Configuration and Fixtures

Shared fixtures for the tablesync test suite.
"""

import os

import pytest

# Keep settings deterministic regardless of the developer's .env
os.environ.setdefault("TABLESYNC_LOG_LEVEL", "WARNING")
os.environ.setdefault("TABLESYNC_METRICS_ENABLED", "false")


# =============================================================================
# PYTEST CONFIGURATION
# =============================================================================


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests (fast, isolated)")
    config.addinivalue_line("markers", "slow: Slow tests (>1s)")


def pytest_collection_modifyitems(config, items):
    """Everything under tests/unit is a unit test unless marked otherwise."""
    for item in items:
        if item.get_closest_marker("unit") or item.get_closest_marker("slow"):
            continue
        item.add_marker(pytest.mark.unit)


@pytest.fixture
def fake_clock():
    """Deterministic clock for tests."""
    from tests.support.clock import FakeClock

    return FakeClock.fixed()


@pytest.fixture
def harness(fake_clock):
    """Fully wired scheduler stack on fakes."""
    from tests.support.harness import SyncHarness

    return SyncHarness(clock=fake_clock)

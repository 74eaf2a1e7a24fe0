import pytest

from web_access_mcp.utils.activity import ActivityKind, ActivityMonitor
from web_access_mcp.utils.rate_limit import RateLimitStatus


@pytest.fixture
def monitor() -> ActivityMonitor:
    return ActivityMonitor(history=3)


def test_complete(monitor: ActivityMonitor):
    activity_id = monitor.log_start(ActivityKind.FETCH, "https://example.com")
    monitor.log_complete(activity_id, status=200)

    entry = monitor.entries[0]
    assert entry.kind is ActivityKind.FETCH
    assert entry.target == "https://example.com"
    assert entry.status == 200
    assert entry.error is None
    assert entry.is_finished
    assert entry.duration is not None


def test_error(monitor: ActivityMonitor):
    activity_id = monitor.log_start(ActivityKind.SEARCH, "python")
    monitor.log_error(activity_id, "boom")

    entry = monitor.entries[0]
    assert entry.error == "boom"
    assert entry.status is None


def test_second_outcome_is_ignored(monitor: ActivityMonitor):
    activity_id = monitor.log_start(ActivityKind.SEARCH, "python")
    monitor.log_complete(activity_id, status=200)
    monitor.log_error(activity_id, "late failure")
    monitor.log_complete(activity_id, status=500)

    entry = monitor.entries[0]
    assert entry.status == 200
    assert entry.error is None


def test_unfinished_entry(monitor: ActivityMonitor):
    _ = monitor.log_start(ActivityKind.FETCH, "https://example.com")

    entry = monitor.entries[0]
    assert not entry.is_finished
    assert entry.duration is None


def test_history_is_bounded(monitor: ActivityMonitor):
    ids = [monitor.log_start(ActivityKind.FETCH, f"https://example.com/{i}") for i in range(5)]

    assert [entry.id for entry in monitor.entries] == ids[-3:]

    monitor.log_complete(ids[0], status=200)

    assert all(not entry.is_finished for entry in monitor.entries)


def test_rate_limit_snapshot(monitor: ActivityMonitor):
    assert monitor.rate_limit is None

    status = RateLimitStatus(used=1, max=10, oldest_timestamp=5.0, window_seconds=60)
    monitor.update_rate_limit(status)

    assert monitor.rate_limit == status

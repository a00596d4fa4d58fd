from datetime import datetime, timezone

import pytest

from sandboxguard.security.models import SecurityEvent
from sandboxguard.security.quarantine import QuarantineManager


@pytest.fixture
def event():
    return SecurityEvent(
        id="evt-1",
        event_type="suspicious_behavior",
        severity="critical",
        timestamp=datetime(2024, 1, 1, tzinfo=timezone.utc),
        sandbox_id="sb-1",
        provider="custom",
        message="bad things",
        details={},
    )


def test_quarantine_creates_active_record(event):
    manager = QuarantineManager()
    record = manager.quarantine("sb-1", "critical event", event)
    assert record.sandbox_id == "sb-1"
    assert record.reason == "critical event"
    assert record.triggered_by == event
    assert record.end_time is None
    assert record.auto_release is False
    assert manager.is_quarantined("sb-1")
    assert not manager.is_quarantined("sb-2")
    assert [r.id for r in manager.list_active()] == [record.id]


def test_each_quarantine_gets_a_unique_id(event):
    manager = QuarantineManager()
    first = manager.quarantine("sb-1", "r", event)
    second = manager.quarantine("sb-1", "r", event)
    assert first.id != second.id
    assert len(manager.list_active()) == 2


def test_release_ends_quarantine(event):
    manager = QuarantineManager()
    record = manager.quarantine("sb-1", "r", event)
    manager.release(record.id)
    assert not manager.is_quarantined("sb-1")
    assert manager.list_active() == []
    stored = manager.get_record(record.id)
    assert stored.end_time is not None
    assert stored.end_time >= stored.start_time


def test_release_unknown_id_is_ignored(event):
    manager = QuarantineManager()
    manager.quarantine("sb-1", "r", event)
    manager.release("missing")
    assert manager.is_quarantined("sb-1")


def test_get_record_unknown_returns_none():
    assert QuarantineManager().get_record("missing") is None


def test_returned_records_are_copies(event):
    manager = QuarantineManager()
    record = manager.quarantine("sb-1", "r", event)
    record.reason = "changed"
    assert manager.get_record(record.id).reason == "r"


def test_cleanup_removes_only_expired_released_records(event):
    manager = QuarantineManager()
    released = manager.quarantine("sb-1", "r", event)
    active = manager.quarantine("sb-2", "r", event)
    manager.release(released.id)

    assert manager.cleanup_old_records(1) == 0
    assert manager.get_record(released.id) is not None

    assert manager.cleanup_old_records(-1) == 1
    assert manager.get_record(released.id) is None
    assert manager.get_record(active.id) == active
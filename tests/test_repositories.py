"""
Tests for the SQLAlchemy repositories and the SQL-backed delay queue.
"""

import pytest

from conftest import make_snapshot
from pnr_tracker.models.schemas import NotificationKind, QueuedNotification, QueueState
from pnr_tracker.repositories import (
    DuplicateTrackingError,
    InvalidReferenceCodeError,
    RecordNotFoundError,
    SQLDelayQueue,
)


class TestTrackedRecordRepository:
    @pytest.mark.parametrize("code", ["123", "12345678901", "ABCDEFGHIJ", "", "12345 6789"])
    def test_invalid_codes_rejected(self, record_repo, code):
        with pytest.raises(InvalidReferenceCodeError):
            record_repo.create("alice@example.com", code)

    def test_create_and_get(self, record_repo):
        record = record_repo.create("alice@example.com", " 1234567890 ", make_snapshot("1234567890"))

        fetched = record_repo.get(record.id)
        assert fetched.reference_code == "1234567890"
        assert fetched.is_active is True
        assert fetched.current_snapshot["status"] == "CNF/B1/23"

    def test_duplicate_active_rejected(self, record_repo):
        record_repo.create("alice@example.com", "1234567890")

        with pytest.raises(DuplicateTrackingError):
            record_repo.create("alice@example.com", "1234567890")

    def test_same_code_different_owner_allowed(self, record_repo):
        record_repo.create("alice@example.com", "1234567890")
        record_repo.create("bob@example.com", "1234567890")

        assert record_repo.count_active() == 2

    def test_retracking_after_deactivation(self, record_repo):
        first = record_repo.create("alice@example.com", "1234567890")
        assert record_repo.deactivate(first.id) is True

        second = record_repo.create("alice@example.com", "1234567890")

        assert second.id != first.id
        assert record_repo.count_active() == 1

    def test_deactivate_is_idempotent(self, record_repo):
        record = record_repo.create("alice@example.com", "1234567890")

        assert record_repo.deactivate(record.id) is True
        assert record_repo.deactivate(record.id) is False

    def test_deactivate_missing(self, record_repo):
        with pytest.raises(RecordNotFoundError):
            record_repo.deactivate(42)

    def test_update_snapshot_missing(self, record_repo):
        with pytest.raises(RecordNotFoundError):
            record_repo.update_snapshot(42, make_snapshot())

    def test_list_active_excludes_inactive(self, record_repo):
        keep = record_repo.create("alice@example.com", "1111111111")
        drop = record_repo.create("alice@example.com", "2222222222")
        record_repo.deactivate(drop.id)

        assert [r.id for r in record_repo.list_active()] == [keep.id]
        assert len(record_repo.list_by_owner("alice@example.com", active_only=False)) == 2


class TestStatusHistoryRepository:
    def test_newest_first(self, record_repo, history_repo):
        record = record_repo.create("alice@example.com", "1111111111")
        history_repo.append(record.id, make_snapshot(status="WL/5"), changed=True)
        history_repo.append(record.id, make_snapshot(status="WL/3"), changed=True)

        entries = history_repo.list_by_record(record.id)

        assert [e.snapshot["status"] for e in entries] == ["WL/3", "WL/5"]
        assert history_repo.count_by_record(record.id) == 2


def make_notification(notification_id="notif_1_abc"):
    return QueuedNotification(
        id=notification_id,
        kind=NotificationKind.SYSTEM,
        owner_id="alice@example.com",
        payload={"title": "hello"},
    )


class TestSQLDelayQueue:
    @pytest.fixture
    def store(self, session_factory):
        return SQLDelayQueue(session_factory)

    def test_claim_is_exclusive(self, session_factory, store):
        store.insert(make_notification(), QueueState.PENDING, 100)
        other = SQLDelayQueue(session_factory)

        first = store.pop_ready(10)
        second = other.pop_ready(10)

        assert [n.id for n in first] == ["notif_1_abc"]
        assert second == []
        assert store.counts()["processing"] == 1

    def test_acknowledge_only_from_processing(self, store):
        store.insert(make_notification(), QueueState.PENDING, 100)

        assert store.acknowledge("notif_1_abc") is False

        store.pop_ready(1)
        assert store.acknowledge("notif_1_abc") is True
        assert sum(store.counts().values()) == 0

    def test_promote_ready_respects_score(self, store):
        store.insert(make_notification("notif_1_a"), QueueState.DELAYED, 1000)
        store.insert(make_notification("notif_1_b"), QueueState.DELAYED, 5000)

        assert store.promote_ready(2000) == 1

        counts = store.counts()
        assert counts["pending"] == 1
        assert counts["delayed"] == 1

    def test_pop_orders_by_score(self, store):
        store.insert(make_notification("notif_late"), QueueState.PENDING, 300)
        store.insert(make_notification("notif_early"), QueueState.PENDING, 100)

        assert [n.id for n in store.pop_ready(1)] == ["notif_early"]

    def test_cannot_insert_into_processing(self, store):
        with pytest.raises(ValueError):
            store.insert(make_notification(), QueueState.PROCESSING, 100)

    def test_restore_failed_resets_attempts(self, store):
        notification = make_notification()
        store.insert(notification, QueueState.PENDING, 100)
        claimed = store.pop_ready(1)[0]
        claimed.attempts = 3
        claimed.last_error = "smtp down"
        store.move_to_failed(claimed, 200)

        restored = store.restore_failed("notif_1_abc", 300)

        assert restored.attempts == 0
        assert restored.last_error is None
        assert store.counts()["pending"] == 1
        assert store.restore_failed("notif_1_abc", 400) is None

"""
Status change detection
Compares each new snapshot with the stored one, records history and queues notifications
"""
import re
from typing import List, Optional
import logging

from pnr_tracker.models.schemas import ChangeEvent, ChangeStats, StatusSnapshot
from pnr_tracker.repositories.tracking_repository import (
    RecordNotFoundError, StatusHistoryRepository, TrackedRecordRepository
)

logger = logging.getLogger(__name__)

WAITLIST_PATTERN = re.compile(r"(?:WL|Waitlist)[\s/]*(\d+)", re.IGNORECASE)

CONFIRMED_KEYWORDS = ("confirm", "cnf", "confirmed")
CANCELLED_KEYWORDS = ("cancel", "cancelled", "can")
CHART_PREPARED_KEYWORDS = ("chart prepared", "chart", "cp")


def _contains_any(status: Optional[str], keywords) -> bool:
    if not status:
        return False
    lowered = status.lower()
    return any(keyword in lowered for keyword in keywords)


def extract_waitlist_position(status: Optional[str]) -> int:
    """Waitlist position from e.g. "WL/5" or "Waitlist 12"; 0 when absent"""
    if not status:
        return 0
    match = WAITLIST_PATTERN.search(status)
    return int(match.group(1)) if match else 0


def is_confirmed_status(status: Optional[str]) -> bool:
    return _contains_any(status, CONFIRMED_KEYWORDS)


def is_cancelled_status(status: Optional[str]) -> bool:
    return _contains_any(status, CANCELLED_KEYWORDS)


def is_chart_prepared_status(status: Optional[str]) -> bool:
    return _contains_any(status, CHART_PREPARED_KEYWORDS)


def has_significant_change(old: Optional[StatusSnapshot], new: StatusSnapshot) -> bool:
    """
    Decide whether the transition old -> new deserves a notification

    Any of: different status text, waitlist movement, confirmed/cancelled/chart
    flags flipping, or the record becoming retired.
    """
    if old is None:
        return bool(new.status and new.status.strip())

    if old.status != new.status:
        return True

    if extract_waitlist_position(old.status) != extract_waitlist_position(new.status):
        return True

    if is_confirmed_status(old.status) != is_confirmed_status(new.status):
        return True

    if is_cancelled_status(old.status) != is_cancelled_status(new.status):
        return True

    if is_chart_prepared_status(old.status) != is_chart_prepared_status(new.status):
        return True

    if not old.retired and new.retired:
        return True

    return False


class StatusChangeDetector:
    """
    Applies one check result to a tracked record

    Every call appends exactly one history entry. Storage errors propagate.
    """

    def __init__(
        self,
        record_store: TrackedRecordRepository,
        history_store: StatusHistoryRepository,
        notification_queue=None
    ):
        self.record_store = record_store
        self.history_store = history_store
        self.notification_queue = notification_queue

    def check(self, tracked_record_id: int, new_snapshot: StatusSnapshot) -> Optional[ChangeEvent]:
        """
        Record a new snapshot for a tracked record

        Args:
            tracked_record_id: Record being checked
            new_snapshot: Fresh result from the batch processor

        Returns:
            ChangeEvent when the change is significant, else None

        Raises:
            RecordNotFoundError: unknown record id
        """
        record = self.record_store.get(tracked_record_id)
        if record is None:
            raise RecordNotFoundError(f"Tracked record not found: {tracked_record_id}")

        old_snapshot = StatusSnapshot.from_storage(record.current_snapshot)
        changed = has_significant_change(old_snapshot, new_snapshot)
        old_status = old_snapshot.status if old_snapshot else ""

        self.history_store.append(
            tracked_record_id,
            new_snapshot,
            changed,
            checked_at=new_snapshot.fetched_at,
            old_status=old_status if changed else None
        )
        self.record_store.update_snapshot(tracked_record_id, new_snapshot)

        if not changed:
            return None

        logger.info(
            f"Status change for {record.reference_code} ({record.owner_id}): "
            f"'{old_status}' -> '{new_snapshot.status}'"
        )

        event = ChangeEvent(
            tracked_record_id=tracked_record_id,
            owner_id=record.owner_id,
            reference_code=record.reference_code,
            old_status=old_status,
            new_status=new_snapshot.status,
            snapshot=new_snapshot
        )

        if self.notification_queue is not None:
            event.notification_id = self.notification_queue.queue_status_change(
                owner_id=record.owner_id,
                tracked_record_id=tracked_record_id,
                reference_code=record.reference_code,
                old_status=old_status,
                new_status=new_snapshot.status
            )

        return event

    def record_failed_check(self, tracked_record_id: int, snapshot: StatusSnapshot) -> None:
        """History entry for a check that produced no usable status; current snapshot is kept"""
        self.history_store.append(tracked_record_id, snapshot, False, checked_at=snapshot.fetched_at)

    def get_history(self, tracked_record_id: int, limit: int = 50, offset: int = 0):
        return self.history_store.list_by_record(tracked_record_id, limit=limit, offset=offset)

    def get_recent_changes(self, owner_id: str, limit: int = 20) -> List[ChangeEvent]:
        """Most recent significant changes across an owner's records, newest first"""
        events = []
        for record in self.record_store.list_by_owner(owner_id, active_only=False):
            for entry in self.history_store.list_changes_by_record(record.id, limit=limit):
                snapshot = StatusSnapshot.model_validate(entry.snapshot)
                events.append(ChangeEvent(
                    tracked_record_id=record.id,
                    owner_id=record.owner_id,
                    reference_code=record.reference_code,
                    old_status=entry.old_status or "",
                    new_status=snapshot.status,
                    snapshot=snapshot,
                    timestamp=entry.checked_at
                ))

        events.sort(key=lambda event: event.timestamp, reverse=True)
        return events[:limit]

    def get_change_stats(self, owner_id: str) -> ChangeStats:
        stats = ChangeStats()
        for event in self.get_recent_changes(owner_id, limit=1000):
            stats.total_changes += 1
            if is_confirmed_status(event.new_status) and not is_confirmed_status(event.old_status):
                stats.confirmations += 1
            if is_cancelled_status(event.new_status) and not is_cancelled_status(event.old_status):
                stats.cancellations += 1
            if extract_waitlist_position(event.old_status) != extract_waitlist_position(event.new_status):
                stats.waitlist_movements += 1
            if is_chart_prepared_status(event.new_status) and not is_chart_prepared_status(event.old_status):
                stats.chart_preparations += 1
        return stats

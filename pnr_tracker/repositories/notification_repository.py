"""
Repository for the shared notification queue table
Implements the DelayQueue capability on top of SQLAlchemy

Every state transition is one conditional UPDATE (WHERE id = :id AND state = :expected)
committed in its own transaction. The row count tells the caller whether it won the
transition, so several processors can share one database without double delivery.
"""
from sqlalchemy import update, delete, func
from sqlalchemy.orm import sessionmaker
from typing import Dict, List, Optional
import logging

from pnr_tracker.models.database import QueuedNotificationRecord
from pnr_tracker.models.schemas import QueuedNotification, QueueState
from pnr_tracker.utils.database import session_scope

logger = logging.getLogger(__name__)


def _to_schema(row: QueuedNotificationRecord) -> QueuedNotification:
    return QueuedNotification(
        id=row.id,
        kind=row.kind,
        owner_id=row.owner_id,
        payload=row.payload or {},
        attempts=row.attempts,
        max_attempts=row.max_attempts,
        created_at=row.created_at,
        scheduled_at=row.scheduled_at,
        last_attempt_at=row.last_attempt_at,
        last_error=row.last_error
    )


class SQLDelayQueue:
    """
    Notification store backed by the notification_queue table
    """

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def _transition(self, notification_id: str, expected: QueueState, values: Dict) -> bool:
        with session_scope(self.session_factory) as db:
            result = db.execute(
                update(QueuedNotificationRecord)
                .where(
                    QueuedNotificationRecord.id == notification_id,
                    QueuedNotificationRecord.state == expected.value
                )
                .values(**values)
            )
            return result.rowcount == 1

    def insert(self, notification: QueuedNotification, state: QueueState, score: int) -> None:
        if state == QueueState.PROCESSING:
            raise ValueError("Cannot insert directly into processing")

        with session_scope(self.session_factory) as db:
            db.add(QueuedNotificationRecord(
                id=notification.id,
                kind=notification.kind.value,
                owner_id=notification.owner_id,
                payload=notification.payload,
                attempts=notification.attempts,
                max_attempts=notification.max_attempts,
                last_error=notification.last_error,
                state=state.value,
                score=score,
                created_at=notification.created_at,
                scheduled_at=notification.scheduled_at,
                last_attempt_at=notification.last_attempt_at
            ))

    def promote_ready(self, now_ms: int) -> int:
        """Move every delayed row with score <= now to pending in one statement"""
        with session_scope(self.session_factory) as db:
            result = db.execute(
                update(QueuedNotificationRecord)
                .where(
                    QueuedNotificationRecord.state == QueueState.DELAYED.value,
                    QueuedNotificationRecord.score <= now_ms
                )
                .values(state=QueueState.PENDING.value, score=now_ms, scheduled_at=None)
            )
            return result.rowcount or 0

    def pop_ready(self, max_items: int) -> List[QueuedNotification]:
        """Claim up to max_items pending rows, lowest score first"""
        with session_scope(self.session_factory) as db:
            candidate_ids = [
                row_id for (row_id,) in db.query(QueuedNotificationRecord.id)
                .filter(QueuedNotificationRecord.state == QueueState.PENDING.value)
                .order_by(QueuedNotificationRecord.score.asc(), QueuedNotificationRecord.created_at.asc())
                .limit(max_items)
                .all()
            ]

        claimed = []
        for notification_id in candidate_ids:
            if not self._transition(notification_id, QueueState.PENDING, {"state": QueueState.PROCESSING.value}):
                logger.debug(f"Notification {notification_id} claimed elsewhere, skipping")
                continue
            with session_scope(self.session_factory) as db:
                row = db.get(QueuedNotificationRecord, notification_id)
                if row is not None:
                    claimed.append(_to_schema(row))
        return claimed

    def acknowledge(self, notification_id: str) -> bool:
        with session_scope(self.session_factory) as db:
            result = db.execute(
                delete(QueuedNotificationRecord).where(
                    QueuedNotificationRecord.id == notification_id,
                    QueuedNotificationRecord.state == QueueState.PROCESSING.value
                )
            )
            return result.rowcount == 1

    def reschedule(self, notification: QueuedNotification, score: int) -> None:
        moved = self._transition(notification.id, QueueState.PROCESSING, {
            "state": QueueState.DELAYED.value,
            "score": score,
            "attempts": notification.attempts,
            "last_error": notification.last_error,
            "last_attempt_at": notification.last_attempt_at,
            "scheduled_at": notification.scheduled_at,
        })
        if not moved:
            logger.warning(f"Notification {notification.id} was not in processing; retry not scheduled")

    def move_to_failed(self, notification: QueuedNotification, score: int) -> None:
        moved = self._transition(notification.id, QueueState.PROCESSING, {
            "state": QueueState.FAILED.value,
            "score": score,
            "attempts": notification.attempts,
            "last_error": notification.last_error,
            "last_attempt_at": notification.last_attempt_at,
            "scheduled_at": None,
        })
        if not moved:
            logger.warning(f"Notification {notification.id} was not in processing; not moved to failed")

    def restore_failed(self, notification_id: str, score: int) -> Optional[QueuedNotification]:
        moved = self._transition(notification_id, QueueState.FAILED, {
            "state": QueueState.PENDING.value,
            "score": score,
            "attempts": 0,
            "last_error": None,
            "last_attempt_at": None,
            "scheduled_at": None,
        })
        if not moved:
            return None
        with session_scope(self.session_factory) as db:
            row = db.get(QueuedNotificationRecord, notification_id)
            return _to_schema(row) if row is not None else None

    def list_failed(self, limit: int = 50) -> List[QueuedNotification]:
        """Most recently failed first"""
        with session_scope(self.session_factory) as db:
            rows = db.query(QueuedNotificationRecord).filter(
                QueuedNotificationRecord.state == QueueState.FAILED.value
            ).order_by(QueuedNotificationRecord.score.desc()).limit(limit).all()
            return [_to_schema(row) for row in rows]

    def clear_failed(self) -> int:
        with session_scope(self.session_factory) as db:
            result = db.execute(
                delete(QueuedNotificationRecord).where(
                    QueuedNotificationRecord.state == QueueState.FAILED.value
                )
            )
            return result.rowcount or 0

    def counts(self) -> Dict[str, int]:
        counts = {state.value: 0 for state in QueueState}
        with session_scope(self.session_factory) as db:
            rows = db.query(
                QueuedNotificationRecord.state, func.count(QueuedNotificationRecord.id)
            ).group_by(QueuedNotificationRecord.state).all()
        for state, count in rows:
            counts[state] = count
        return counts

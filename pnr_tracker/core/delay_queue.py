"""Time-ordered notification store used by the notification queue.

The queue keeps four logical collections, each ordered by an epoch-millis
score: ``delayed``, ``pending``, ``processing`` (claimed, delivery in flight)
and ``failed``. Every transition moves one entry from exactly one collection
to another under a single lock (or, for the SQL store, a single conditional
UPDATE), so a claimed entry can never be handed to two processors.
"""

import heapq
import logging
import threading
from typing import Dict, List, Optional, Protocol, Tuple

from pnr_tracker.models.schemas import QueuedNotification, QueueState

logger = logging.getLogger(__name__)


class DelayQueue(Protocol):
    """Capability the notification queue needs from its backing store."""

    def insert(self, notification: QueuedNotification, state: QueueState, score: int) -> None: ...

    def promote_ready(self, now_ms: int) -> int: ...

    def pop_ready(self, max_items: int) -> List[QueuedNotification]: ...

    def acknowledge(self, notification_id: str) -> bool: ...

    def reschedule(self, notification: QueuedNotification, score: int) -> None: ...

    def move_to_failed(self, notification: QueuedNotification, score: int) -> None: ...

    def restore_failed(self, notification_id: str, score: int) -> Optional[QueuedNotification]: ...

    def list_failed(self, limit: int = 50) -> List[QueuedNotification]: ...

    def clear_failed(self) -> int: ...

    def counts(self) -> Dict[str, int]: ...


class InMemoryDelayQueue:
    """Min-heap delay queue guarded by a lock.

    Suitable for a single process. Contents are lost on restart; use
    ``SQLDelayQueue`` when several processes share one store.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._seq = 0
        self._delayed: List[Tuple[int, int, str]] = []
        self._pending: List[Tuple[int, int, str]] = []
        self._processing: Dict[str, QueuedNotification] = {}
        self._failed: Dict[str, Tuple[int, QueuedNotification]] = {}
        self._items: Dict[str, QueuedNotification] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._delayed) + len(self._pending) + len(self._processing) + len(self._failed)

    def _push(self, heap: List[Tuple[int, int, str]], score: int, notification: QueuedNotification) -> None:
        self._seq += 1
        self._items[notification.id] = notification
        heapq.heappush(heap, (score, self._seq, notification.id))

    def insert(self, notification: QueuedNotification, state: QueueState, score: int) -> None:
        with self._lock:
            if state == QueueState.DELAYED:
                self._push(self._delayed, score, notification)
            elif state == QueueState.PENDING:
                self._push(self._pending, score, notification)
            elif state == QueueState.FAILED:
                self._failed[notification.id] = (score, notification)
            else:
                raise ValueError(f"Cannot insert directly into {state.value}")

    def promote_ready(self, now_ms: int) -> int:
        """Move every delayed entry with score <= now to pending."""
        moved = 0
        with self._lock:
            while self._delayed and self._delayed[0][0] <= now_ms:
                _, _, notification_id = heapq.heappop(self._delayed)
                notification = self._items[notification_id]
                notification.scheduled_at = None
                self._push(self._pending, now_ms, notification)
                moved += 1
        return moved

    def pop_ready(self, max_items: int) -> List[QueuedNotification]:
        """Claim up to max_items pending entries, oldest score first."""
        claimed = []
        with self._lock:
            while self._pending and len(claimed) < max_items:
                _, _, notification_id = heapq.heappop(self._pending)
                notification = self._items.pop(notification_id)
                self._processing[notification_id] = notification
                claimed.append(notification)
        return claimed

    def acknowledge(self, notification_id: str) -> bool:
        with self._lock:
            return self._processing.pop(notification_id, None) is not None

    def reschedule(self, notification: QueuedNotification, score: int) -> None:
        with self._lock:
            self._processing.pop(notification.id, None)
            self._push(self._delayed, score, notification)

    def move_to_failed(self, notification: QueuedNotification, score: int) -> None:
        with self._lock:
            self._processing.pop(notification.id, None)
            self._failed[notification.id] = (score, notification)

    def restore_failed(self, notification_id: str, score: int) -> Optional[QueuedNotification]:
        with self._lock:
            entry = self._failed.pop(notification_id, None)
            if entry is None:
                return None
            _, notification = entry
            notification.attempts = 0
            notification.last_error = None
            notification.last_attempt_at = None
            notification.scheduled_at = None
            self._push(self._pending, score, notification)
            return notification

    def list_failed(self, limit: int = 50) -> List[QueuedNotification]:
        """Most recently failed first."""
        with self._lock:
            entries = sorted(self._failed.values(), key=lambda entry: entry[0], reverse=True)
            return [notification for _, notification in entries[:limit]]

    def clear_failed(self) -> int:
        with self._lock:
            count = len(self._failed)
            self._failed.clear()
            return count

    def counts(self) -> Dict[str, int]:
        with self._lock:
            return {
                QueueState.PENDING.value: len(self._pending),
                QueueState.DELAYED.value: len(self._delayed),
                QueueState.PROCESSING.value: len(self._processing),
                QueueState.FAILED.value: len(self._failed),
            }

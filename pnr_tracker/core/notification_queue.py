"""
Reliable notification queue
At-least-once delivery with retry and backoff on top of a DelayQueue store
"""
import random
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from pnr_tracker.core.delay_queue import DelayQueue
from pnr_tracker.core.notification_dispatch import NotificationDispatch
from pnr_tracker.models.schemas import NotificationKind, QueuedNotification, QueueState, QueueStats
from pnr_tracker.utils.config import settings

logger = logging.getLogger(__name__)

PROCESS_JOB_ID = "notification_queue_processor"
DEFAULT_BATCH_SIZE = 10


def _now_ms() -> int:
    return int(time.time() * 1000)


def generate_notification_id(now_ms: int) -> str:
    """notif_<millis>_<random suffix>"""
    suffix = "".join(random.choices("abcdefghijklmnopqrstuvwxyz0123456789", k=9))
    return f"notif_{now_ms}_{suffix}"


class NotificationQueue:
    """
    Notification queue
    Features:
    - Delayed delivery (delay_ms)
    - Retries with 2^attempts second backoff until max_attempts
    - Failed notifications kept for inspection, manual retry and clearing
    """

    def __init__(
        self,
        store: DelayQueue,
        dispatch: NotificationDispatch,
        clock: Optional[Callable[[], int]] = None,
        max_attempts: Optional[int] = None,
        batch_size: int = DEFAULT_BATCH_SIZE
    ):
        self.store = store
        self.dispatch = dispatch
        self.clock = clock or _now_ms
        self.max_attempts = max_attempts or settings.NOTIFICATION_MAX_ATTEMPTS
        self.batch_size = batch_size
        self.scheduler: Optional[AsyncIOScheduler] = None

    # ------------------------------------------------------------------
    # Producers
    # ------------------------------------------------------------------

    def enqueue(
        self,
        kind: str,
        owner_id: str,
        payload: Dict[str, Any],
        delay_ms: int = 0,
        max_attempts: Optional[int] = None
    ) -> str:
        """
        Add a notification to the queue

        Args:
            kind: status_change, system or test
            owner_id: Recipient owner
            payload: Kind-specific data
            delay_ms: Hold back delivery for this long
            max_attempts: Override the default attempt limit

        Returns:
            Notification id

        Raises:
            ValueError: unknown kind or negative delay
        """
        try:
            notification_kind = NotificationKind(kind)
        except ValueError:
            raise ValueError(f"Unknown notification kind: {kind}")
        if delay_ms < 0:
            raise ValueError("delay_ms must not be negative")

        now_ms = self.clock()
        notification = QueuedNotification(
            id=generate_notification_id(now_ms),
            kind=notification_kind,
            owner_id=owner_id,
            payload=dict(payload or {}),
            max_attempts=max_attempts or self.max_attempts,
            created_at=datetime.utcnow()
        )

        if delay_ms > 0:
            notification.scheduled_at = datetime.utcfromtimestamp((now_ms + delay_ms) / 1000)
            self.store.insert(notification, QueueState.DELAYED, now_ms + delay_ms)
        else:
            self.store.insert(notification, QueueState.PENDING, now_ms)

        logger.debug(f"Queued {notification_kind.value} notification {notification.id} for {owner_id}")
        return notification.id

    def queue_status_change(
        self,
        owner_id: str,
        tracked_record_id: int,
        reference_code: str,
        old_status: str,
        new_status: str
    ) -> str:
        return self.enqueue(NotificationKind.STATUS_CHANGE.value, owner_id, {
            "tracked_record_id": tracked_record_id,
            "reference_code": reference_code,
            "old_status": old_status,
            "new_status": new_status,
        })

    def queue_system_notification(
        self,
        owner_id: str,
        title: str,
        message: str,
        data: Optional[Dict[str, Any]] = None
    ) -> str:
        return self.enqueue(NotificationKind.SYSTEM.value, owner_id, {
            "title": title,
            "message": message,
            "data": data or {},
        })

    def queue_test_notification(self, owner_id: str, message: str = "Test notification") -> str:
        return self.enqueue(NotificationKind.TEST.value, owner_id, {
            "title": "Test notification",
            "message": message,
        })

    # ------------------------------------------------------------------
    # Processing loop
    # ------------------------------------------------------------------

    def start_processing(self, interval_ms: Optional[int] = None) -> None:
        """Start the periodic processing job; no-op if already running"""
        if self.is_processing():
            return

        interval_ms = interval_ms or settings.NOTIFICATION_PROCESS_INTERVAL
        self.scheduler = AsyncIOScheduler(timezone=settings.TZ)
        self.scheduler.add_job(
            self.process_once,
            'interval',
            seconds=interval_ms / 1000,
            id=PROCESS_JOB_ID,
            name=PROCESS_JOB_ID,
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )
        self.scheduler.start()
        logger.info(f"--> Notification queue processing every {interval_ms}ms")

    def stop_processing(self) -> None:
        """Stop the periodic job; a tick already running is allowed to finish"""
        if self.scheduler is None:
            return
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        self.scheduler = None
        logger.info("[X]--> Notification queue processing stopped")

    def is_processing(self) -> bool:
        return self.scheduler is not None and self.scheduler.running

    async def process_once(self) -> int:
        """
        One processing tick: promote due delayed entries, then deliver a batch

        Returns:
            Number of notifications delivered successfully
        """
        try:
            now_ms = self.clock()
            promoted = self.store.promote_ready(now_ms)
            if promoted:
                logger.debug(f"Promoted {promoted} delayed notifications")

            batch = self.store.pop_ready(self.batch_size)
        except Exception as e:
            logger.error(f"Notification queue tick failed: {e}")
            return 0

        delivered = 0
        for notification in batch:
            try:
                if await self._deliver(notification):
                    delivered += 1
            except Exception as e:
                logger.error(f"Error updating notification {notification.id}: {e}")

        if batch:
            logger.info(f"Notification tick: {delivered}/{len(batch)} delivered")
        return delivered

    async def _deliver(self, notification: QueuedNotification) -> bool:
        try:
            await self.dispatch.deliver(notification.kind.value, notification.owner_id, notification.payload)
        except Exception as e:
            self._handle_failure(notification, str(e) or type(e).__name__)
            return False

        self.store.acknowledge(notification.id)
        return True

    def _handle_failure(self, notification: QueuedNotification, error: str) -> None:
        now_ms = self.clock()
        notification.attempts += 1
        notification.last_error = error
        notification.last_attempt_at = datetime.utcnow()

        if notification.attempts >= notification.max_attempts:
            notification.scheduled_at = None
            self.store.move_to_failed(notification, now_ms)
            logger.error(
                f"Notification {notification.id} failed permanently after "
                f"{notification.attempts} attempts: {error}"
            )
            return

        retry_at = now_ms + (2 ** notification.attempts) * 1000
        notification.scheduled_at = datetime.utcfromtimestamp(retry_at / 1000)
        self.store.reschedule(notification, retry_at)
        logger.warning(
            f"Notification {notification.id} attempt {notification.attempts}/"
            f"{notification.max_attempts} failed, retrying in {2 ** notification.attempts}s: {error}"
        )

    # ------------------------------------------------------------------
    # Admin
    # ------------------------------------------------------------------

    def stats(self) -> QueueStats:
        counts = self.store.counts()
        return QueueStats(
            pending=counts.get(QueueState.PENDING.value, 0),
            delayed=counts.get(QueueState.DELAYED.value, 0),
            processing=counts.get(QueueState.PROCESSING.value, 0),
            failed=counts.get(QueueState.FAILED.value, 0)
        )

    def retry_failed(self, notification_id: str) -> bool:
        """Move one failed notification back to pending with a fresh attempt count"""
        restored = self.store.restore_failed(notification_id, self.clock())
        if restored is None:
            return False
        logger.info(f"Notification {notification_id} re-queued for delivery")
        return True

    def clear_failed(self) -> int:
        count = self.store.clear_failed()
        logger.info(f"Cleared {count} failed notifications")
        return count

    def list_failed(self, limit: int = 50) -> List[QueuedNotification]:
        return self.store.list_failed(limit)

"""
Dependency injection utilities
Wires the status-tracking pipeline and exposes it to FastAPI endpoints
"""
from typing import Optional

from fastapi import HTTPException, Request
from sqlalchemy.orm import sessionmaker

from pnr_tracker.automation.scheduler import StatusCheckScheduler
from pnr_tracker.core.archiver import PNRArchiver
from pnr_tracker.core.batch_processor import BatchProcessor
from pnr_tracker.core.delay_queue import DelayQueue, InMemoryDelayQueue
from pnr_tracker.core.notification_dispatch import EmailNotificationDispatch, NotificationDispatch
from pnr_tracker.core.notification_queue import NotificationQueue
from pnr_tracker.core.status_change_detector import StatusChangeDetector
from pnr_tracker.core.status_source import HTTPStatusSource, StatusSource
from pnr_tracker.repositories import (
    SQLDelayQueue, StatusHistoryRepository, TrackedRecordRepository
)
from pnr_tracker.utils.config import settings
from pnr_tracker.utils.database import SessionLocal


def build_notification_store(session_factory: sessionmaker) -> DelayQueue:
    """Store selected by NOTIFICATION_STORE"""
    if settings.NOTIFICATION_STORE == "memory":
        return InMemoryDelayQueue()
    return SQLDelayQueue(session_factory)


def build_scheduler(
    session_factory: Optional[sessionmaker] = None,
    status_source: Optional[StatusSource] = None,
    dispatch: Optional[NotificationDispatch] = None,
    store: Optional[DelayQueue] = None
) -> StatusCheckScheduler:
    """
    Build the full pipeline: repositories, queue, detector, archiver and scheduler
    Collaborators can be swapped for tests or alternative transports
    """
    session_factory = session_factory or SessionLocal

    record_store = TrackedRecordRepository(session_factory)
    history_store = StatusHistoryRepository(session_factory)

    notification_queue = NotificationQueue(
        store or build_notification_store(session_factory),
        dispatch or EmailNotificationDispatch()
    )
    detector = StatusChangeDetector(record_store, history_store, notification_queue)
    batch_processor = BatchProcessor(status_source or HTTPStatusSource())
    archiver = PNRArchiver(record_store)

    return StatusCheckScheduler(
        record_store=record_store,
        batch_processor=batch_processor,
        detector=detector,
        notification_queue=notification_queue,
        archiver=archiver
    )


# FastAPI dependencies
def get_scheduler(request: Request) -> StatusCheckScheduler:
    """Scheduler created during application startup"""
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        raise HTTPException(status_code=503, detail="Scheduler not initialised")
    return scheduler

"""
Repository package
Exports all repository classes for easy importing
"""
from pnr_tracker.repositories.tracking_repository import (
    TrackedRecordRepository,
    StatusHistoryRepository,
    RecordNotFoundError,
    DuplicateTrackingError,
    InvalidReferenceCodeError,
)
from pnr_tracker.repositories.notification_repository import SQLDelayQueue


__all__ = [
    'TrackedRecordRepository',
    'StatusHistoryRepository',
    'SQLDelayQueue',
    'RecordNotFoundError',
    'DuplicateTrackingError',
    'InvalidReferenceCodeError',
]

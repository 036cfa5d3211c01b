"""
Repository pattern for tracked records and their status history
Separates data access logic from business logic
"""
from sqlalchemy.orm import sessionmaker
from typing import List, Optional
from datetime import datetime

from pnr_tracker.models.database import TrackedRecord, StatusHistory
from pnr_tracker.models.schemas import StatusSnapshot, is_valid_reference_code
from pnr_tracker.utils.database import session_scope


class RecordNotFoundError(Exception):
    """Raised when a tracked record id does not exist"""
    pass


class DuplicateTrackingError(Exception):
    """Raised when an owner already tracks the code actively"""
    pass


class InvalidReferenceCodeError(ValueError):
    """Raised for codes that are not exactly ten digits"""
    pass


class TrackedRecordRepository:
    """
    Repository for TrackedRecord operations
    Opens one short session per call so long-lived services never hold a stale session
    """

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def create(
        self,
        owner_id: str,
        reference_code: str,
        current_snapshot: Optional[StatusSnapshot] = None
    ) -> TrackedRecord:
        """Create a new active tracked record"""
        reference_code = (reference_code or "").strip()
        if not is_valid_reference_code(reference_code):
            raise InvalidReferenceCodeError(f"Reference code must be exactly 10 digits: {reference_code!r}")

        with session_scope(self.session_factory) as db:
            exists = db.query(TrackedRecord.id).filter(
                TrackedRecord.owner_id == owner_id,
                TrackedRecord.reference_code == reference_code,
                TrackedRecord.is_active.is_(True)
            ).first()
            if exists:
                raise DuplicateTrackingError(f"{owner_id} already tracks {reference_code}")

            record = TrackedRecord(
                owner_id=owner_id,
                reference_code=reference_code,
                current_snapshot=current_snapshot.to_storage() if current_snapshot else None,
                is_active=True
            )
            db.add(record)
            db.flush()
            db.refresh(record)
            return record

    def get(self, record_id: int) -> Optional[TrackedRecord]:
        with session_scope(self.session_factory) as db:
            return db.get(TrackedRecord, record_id)

    def list_active(self) -> List[TrackedRecord]:
        """All active records, least recently updated first"""
        with session_scope(self.session_factory) as db:
            return db.query(TrackedRecord).filter(
                TrackedRecord.is_active.is_(True)
            ).order_by(TrackedRecord.updated_at.asc(), TrackedRecord.id.asc()).all()

    def list_by_owner(self, owner_id: str, active_only: bool = True) -> List[TrackedRecord]:
        with session_scope(self.session_factory) as db:
            query = db.query(TrackedRecord).filter(TrackedRecord.owner_id == owner_id)
            if active_only:
                query = query.filter(TrackedRecord.is_active.is_(True))
            return query.order_by(TrackedRecord.created_at.desc()).all()

    def update_snapshot(self, record_id: int, snapshot: StatusSnapshot) -> TrackedRecord:
        with session_scope(self.session_factory) as db:
            record = db.get(TrackedRecord, record_id)
            if record is None:
                raise RecordNotFoundError(f"Tracked record not found: {record_id}")
            record.current_snapshot = snapshot.to_storage()
            record.updated_at = datetime.utcnow()
            db.flush()
            db.refresh(record)
            return record

    def deactivate(self, record_id: int) -> bool:
        """Soft-retire a record. Returns False if it was already inactive"""
        with session_scope(self.session_factory) as db:
            record = db.get(TrackedRecord, record_id)
            if record is None:
                raise RecordNotFoundError(f"Tracked record not found: {record_id}")
            if not record.is_active:
                return False
            record.is_active = False
            record.updated_at = datetime.utcnow()
            return True

    def count_active(self) -> int:
        with session_scope(self.session_factory) as db:
            return db.query(TrackedRecord).filter(TrackedRecord.is_active.is_(True)).count()


class StatusHistoryRepository:
    """
    Repository for the append-only status history
    """

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def append(
        self,
        tracked_record_id: int,
        snapshot: StatusSnapshot,
        changed: bool,
        checked_at: Optional[datetime] = None,
        old_status: Optional[str] = None
    ) -> StatusHistory:
        with session_scope(self.session_factory) as db:
            entry = StatusHistory(
                tracked_record_id=tracked_record_id,
                snapshot=snapshot.to_storage(),
                changed=changed,
                old_status=old_status,
                checked_at=checked_at or datetime.utcnow()
            )
            db.add(entry)
            db.flush()
            db.refresh(entry)
            return entry

    def list_by_record(self, tracked_record_id: int, limit: int = 50, offset: int = 0) -> List[StatusHistory]:
        """Newest first"""
        with session_scope(self.session_factory) as db:
            return db.query(StatusHistory).filter(
                StatusHistory.tracked_record_id == tracked_record_id
            ).order_by(
                StatusHistory.checked_at.desc(), StatusHistory.id.desc()
            ).offset(offset).limit(limit).all()

    def list_changes_by_record(self, tracked_record_id: int, limit: int = 20) -> List[StatusHistory]:
        """Significant changes only, newest first"""
        with session_scope(self.session_factory) as db:
            return db.query(StatusHistory).filter(
                StatusHistory.tracked_record_id == tracked_record_id,
                StatusHistory.changed.is_(True)
            ).order_by(
                StatusHistory.checked_at.desc(), StatusHistory.id.desc()
            ).limit(limit).all()

    def count_by_record(self, tracked_record_id: int) -> int:
        with session_scope(self.session_factory) as db:
            return db.query(StatusHistory).filter(
                StatusHistory.tracked_record_id == tracked_record_id
            ).count()

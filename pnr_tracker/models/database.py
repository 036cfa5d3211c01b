"""
Database models using SQLAlchemy ORM
Follows declarative base pattern
"""
from sqlalchemy import Column, Integer, BigInteger, String, DateTime, JSON, Boolean, ForeignKey, Index, text
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func

Base = declarative_base()


class TrackedRecord(Base):
    """
    A user's subscription to one reference code (PNR)
    """
    __tablename__ = "tracked_records"

    id = Column(Integer, primary_key=True, index=True)
    owner_id = Column(String(100), nullable=False, index=True)
    reference_code = Column(String(10), nullable=False, index=True)

    # Last known StatusSnapshot, stored as JSON
    current_snapshot = Column(JSON, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    history = relationship(
        "StatusHistory",
        back_populates="tracked_record",
        cascade="all, delete-orphan",
        order_by="StatusHistory.checked_at",
    )

    __table_args__ = (
        # At most one active subscription per owner and code
        Index(
            "uq_tracked_records_active_owner_code",
            "owner_id",
            "reference_code",
            unique=True,
            sqlite_where=text("is_active = 1"),
            postgresql_where=text("is_active"),
        ),
    )

    def __repr__(self):
        return f"<TrackedRecord(reference_code={self.reference_code}, owner_id={self.owner_id}, active={self.is_active})>"


class StatusHistory(Base):
    """
    Append-only audit trail, one row per check attempt
    """
    __tablename__ = "status_history"

    id = Column(Integer, primary_key=True, index=True)
    tracked_record_id = Column(Integer, ForeignKey("tracked_records.id"), nullable=False, index=True)
    snapshot = Column(JSON, nullable=False)
    changed = Column(Boolean, nullable=False, default=False)
    # status before this check, set only on significant changes
    old_status = Column(String(255), nullable=True)
    checked_at = Column(DateTime(timezone=True), nullable=False, index=True)

    tracked_record = relationship("TrackedRecord", back_populates="history")

    def __repr__(self):
        return f"<StatusHistory(tracked_record_id={self.tracked_record_id}, changed={self.changed})>"


class QueuedNotificationRecord(Base):
    """
    Shared, time-ordered notification store
    state is one of: delayed, pending, processing, failed
    """
    __tablename__ = "notification_queue"

    id = Column(String(64), primary_key=True)
    kind = Column(String(20), nullable=False)
    owner_id = Column(String(100), nullable=False, index=True)
    payload = Column(JSON, nullable=False)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    last_error = Column(String(1000), nullable=True)

    state = Column(String(20), nullable=False, index=True)
    score = Column(BigInteger, nullable=False, index=True)  # epoch millis

    created_at = Column(DateTime(timezone=True), nullable=False)
    scheduled_at = Column(DateTime(timezone=True), nullable=True)
    last_attempt_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_notification_queue_state_score", "state", "score"),
    )

    def __repr__(self):
        return f"<QueuedNotificationRecord(id={self.id}, kind={self.kind}, state={self.state})>"

"""
Pydantic schemas for the status-tracking pipeline
Value objects passed between services plus request/response validation
"""
import re
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from pnr_tracker.utils.config import settings

REFERENCE_CODE_PATTERN = re.compile(r"^\d{10}$")


def is_valid_reference_code(code: str) -> bool:
    """A reference code is exactly ten digits"""
    return bool(code) and bool(REFERENCE_CODE_PATTERN.match(code.strip()))


class StatusSnapshot(BaseModel):
    """Immutable result of one status check"""
    model_config = ConfigDict(frozen=True)

    reference_code: str
    origin: str = ""
    destination: str = ""
    travel_date: str = ""
    status: str = ""
    retired: bool = False
    fetched_at: datetime = Field(default_factory=datetime.utcnow)
    error: Optional[str] = None

    @classmethod
    def failed(cls, reference_code: str, error: str) -> "StatusSnapshot":
        """Synthetic snapshot used when every attempt failed"""
        return cls(reference_code=reference_code, status="Error", error=error)

    @classmethod
    def from_storage(cls, data: Optional[Dict[str, Any]]) -> Optional["StatusSnapshot"]:
        if not data:
            return None
        return cls.model_validate(data)

    def to_storage(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


class ChangeEvent(BaseModel):
    """Emitted by the detector when a transition is notification-worthy"""
    tracked_record_id: int
    owner_id: str
    reference_code: str
    old_status: str
    new_status: str
    snapshot: StatusSnapshot
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    notification_id: Optional[str] = None


class ChangeStats(BaseModel):
    total_changes: int = 0
    confirmations: int = 0
    cancellations: int = 0
    waitlist_movements: int = 0
    chart_preparations: int = 0


# ---------------------------------------------------------------------------
# Notification queue
# ---------------------------------------------------------------------------

class NotificationKind(str, Enum):
    """Notification kinds handled by the queue"""
    STATUS_CHANGE = "status_change"
    SYSTEM = "system"
    TEST = "test"


class QueueState(str, Enum):
    DELAYED = "delayed"
    PENDING = "pending"
    PROCESSING = "processing"
    FAILED = "failed"


class QueuedNotification(BaseModel):
    """One pending delivery obligation"""
    id: str
    kind: NotificationKind
    owner_id: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    attempts: int = 0
    max_attempts: int = 3
    created_at: datetime = Field(default_factory=datetime.utcnow)
    scheduled_at: Optional[datetime] = None
    last_attempt_at: Optional[datetime] = None
    last_error: Optional[str] = None


class QueueStats(BaseModel):
    pending: int = 0
    delayed: int = 0
    processing: int = 0
    failed: int = 0


# ---------------------------------------------------------------------------
# Batch processing
# ---------------------------------------------------------------------------

class BatchOptions(BaseModel):
    """Per-run options for the batch processor (milliseconds)"""
    request_delay_ms: int = Field(1000, ge=0)
    max_retries: int = Field(3, ge=0)
    retry_delay_ms: int = Field(2000, ge=0)


class BatchProcessingError(BaseModel):
    reference_code: str
    error: str
    retries: int


class BatchProcessingResult(BaseModel):
    results: List[StatusSnapshot] = Field(default_factory=list)
    retired_codes: List[str] = Field(default_factory=list)
    errors: List[BatchProcessingError] = Field(default_factory=list)
    total_processed: int = 0
    total_successful: int = 0
    total_failed: int = 0
    processing_time_ms: int = 0


# ---------------------------------------------------------------------------
# Archiver
# ---------------------------------------------------------------------------

class ArchiveReason(str, Enum):
    DATE_COMPLETED = "date_completed"
    JOURNEY_COMPLETED = "journey_completed"


class ArchiverConfig(BaseModel):
    enabled: bool = Field(default_factory=lambda: settings.ARCHIVER_ENABLED)
    days_after_travel: int = Field(default_factory=lambda: settings.ARCHIVER_DAYS_AFTER_TRAVEL, ge=0)
    batch_size: int = Field(default_factory=lambda: settings.ARCHIVER_BATCH_SIZE, ge=1)


class ArchivingStats(BaseModel):
    total_processed: int = 0
    archived_count: int = 0
    errors: List[str] = Field(default_factory=list)
    processing_time_ms: int = 0


class EligibleRecord(BaseModel):
    reference_code: str
    owner_id: str
    travel_date: str
    status: str
    reason: ArchiveReason


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------

class SchedulerConfig(BaseModel):
    enabled: bool = Field(default_factory=lambda: settings.SCHEDULER_ENABLED)
    cron_expression: str = Field(default_factory=lambda: settings.SCHEDULER_CRON)
    batch_size: int = Field(default_factory=lambda: settings.SCHEDULER_BATCH_SIZE, ge=1)
    request_delay: int = Field(default_factory=lambda: settings.SCHEDULER_REQUEST_DELAY, ge=0)
    max_retries: int = Field(default_factory=lambda: settings.SCHEDULER_MAX_RETRIES, ge=0)
    batch_pause: int = Field(default_factory=lambda: settings.SCHEDULER_BATCH_PAUSE, ge=0)
    archiving_enabled: bool = Field(default_factory=lambda: settings.ARCHIVER_ENABLED)
    auto_deactivate_retired: bool = Field(default_factory=lambda: settings.AUTO_DEACTIVATE_RETIRED)
    initial_check: bool = Field(default_factory=lambda: settings.SCHEDULER_INITIAL_CHECK)


class RunStats(BaseModel):
    total_records: int = 0
    successful_checks: int = 0
    failed_checks: int = 0
    status_changes: int = 0
    retired_records: int = 0
    processing_time_ms: int = 0


class ArchivingRunStats(BaseModel):
    total_processed: int = 0
    archived_count: int = 0
    errors: int = 0
    processing_time_ms: int = 0


class SchedulerRunStats(BaseModel):
    is_running: bool = False
    check_in_progress: bool = False
    last_run_time: Optional[datetime] = None
    next_run_time: Optional[datetime] = None
    total_runs: int = 0
    successful_runs: int = 0
    failed_runs: int = 0
    last_run_stats: Optional[RunStats] = None
    last_archiving_stats: Optional[ArchivingRunStats] = None


class SchedulerStatusResponse(BaseModel):
    """Everything the admin dashboard shows in one call"""
    stats: SchedulerRunStats
    config: SchedulerConfig
    notification_queue: QueueStats
    archiver_config: ArchiverConfig


# ---------------------------------------------------------------------------
# Admin requests / responses
# ---------------------------------------------------------------------------

class SchedulerConfigUpdate(BaseModel):
    """Partial scheduler configuration update"""
    enabled: Optional[bool] = None
    cron_expression: Optional[str] = None
    batch_size: Optional[int] = Field(None, ge=1, le=1000)
    request_delay: Optional[int] = Field(None, ge=0, le=60000)
    max_retries: Optional[int] = Field(None, ge=0, le=10)
    archiving_enabled: Optional[bool] = None
    auto_deactivate_retired: Optional[bool] = None

    @field_validator("cron_expression")
    @classmethod
    def validate_cron_expression(cls, v):
        if v is None:
            return v
        v = v.strip()
        if len(v.split()) not in (5, 6):
            raise ValueError("Cron expression must have 5 or 6 fields")
        return v

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "cron_expression": "*/15 * * * *",
                "batch_size": 25,
                "request_delay": 3000,
            }
        }
    )


class ArchiverConfigUpdate(BaseModel):
    """Partial archiver configuration update"""
    enabled: Optional[bool] = None
    days_after_travel: Optional[int] = Field(None, ge=0, le=365)
    batch_size: Optional[int] = Field(None, ge=1, le=1000)

    model_config = ConfigDict(
        json_schema_extra={
            "example": {"enabled": True, "days_after_travel": 3}
        }
    )


class HistoryEntryResponse(BaseModel):
    id: int
    tracked_record_id: int
    snapshot: StatusSnapshot
    changed: bool
    old_status: Optional[str] = None
    checked_at: datetime

    model_config = ConfigDict(from_attributes=True)


class HealthCheckResponse(BaseModel):
    """Health check response"""
    status: str
    timestamp: datetime
    version: str
    database_connected: bool
    scheduler_running: bool

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "status": "healthy",
                "timestamp": "2024-01-15T10:30:00",
                "version": "1.0.0",
                "database_connected": True,
                "scheduler_running": True,
            }
        }
    )

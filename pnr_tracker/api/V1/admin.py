"""
Admin endpoints for the status-check pipeline
Scheduler control, archiver control, failed notifications, record history and owner change reports
"""
from fastapi import APIRouter, Depends, HTTPException, Query, Path
from typing import List
import logging

from pnr_tracker.automation.scheduler import (
    ArchivingDisabledError, CheckInProgressError, StatusCheckScheduler
)
from pnr_tracker.models.schemas import (
    ArchiverConfig, ArchiverConfigUpdate, ArchivingRunStats, ChangeEvent, ChangeStats, EligibleRecord,
    HistoryEntryResponse, QueuedNotification, SchedulerConfig, SchedulerConfigUpdate,
    SchedulerRunStats, SchedulerStatusResponse
)
from pnr_tracker.utils.dependencies import get_scheduler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["Admin"])


# ----------------------------------------------------------------------
# Scheduler
# ----------------------------------------------------------------------

@router.get("/scheduler/status", response_model=SchedulerStatusResponse, summary="Scheduler Status")
async def get_scheduler_status(scheduler: StatusCheckScheduler = Depends(get_scheduler)):
    """Run statistics, configuration, queue counts and archiver configuration"""
    return scheduler.get_status()


@router.post("/scheduler/trigger", response_model=SchedulerRunStats, summary="Run Status Check Now")
async def trigger_status_check(scheduler: StatusCheckScheduler = Depends(get_scheduler)):
    """
    Run one status check immediately and wait for it to finish

    Returns **409** if a check is already running.
    """
    try:
        return await scheduler.trigger_manual_check()
    except CheckInProgressError as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.put("/scheduler/config", response_model=SchedulerConfig, summary="Update Scheduler Config")
async def update_scheduler_config(
    update: SchedulerConfigUpdate,
    scheduler: StatusCheckScheduler = Depends(get_scheduler)
):
    changes = update.model_dump(exclude_none=True)
    if not changes:
        raise HTTPException(status_code=400, detail="No configuration changes supplied")

    try:
        return scheduler.update_config(**changes)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


# ----------------------------------------------------------------------
# Archiver
# ----------------------------------------------------------------------

@router.post("/archiver/trigger", response_model=ArchivingRunStats, summary="Run Archiver Now")
async def trigger_archiving(scheduler: StatusCheckScheduler = Depends(get_scheduler)):
    try:
        return await scheduler.trigger_manual_archiving()
    except ArchivingDisabledError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/archiver/eligible", response_model=List[EligibleRecord], summary="Preview Archiving")
async def preview_archiving(scheduler: StatusCheckScheduler = Depends(get_scheduler)):
    """Records the next archiver run would retire"""
    return scheduler.preview_archiving()


@router.get("/archiver/config", response_model=ArchiverConfig)
async def get_archiver_config(scheduler: StatusCheckScheduler = Depends(get_scheduler)):
    return scheduler.get_archiver_config()


@router.put("/archiver/config", response_model=ArchiverConfig)
async def update_archiver_config(
    update: ArchiverConfigUpdate,
    scheduler: StatusCheckScheduler = Depends(get_scheduler)
):
    changes = update.model_dump(exclude_none=True)
    if not changes:
        raise HTTPException(status_code=400, detail="No configuration changes supplied")

    try:
        return scheduler.update_archiver_config(**changes)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


# ----------------------------------------------------------------------
# Notifications
# ----------------------------------------------------------------------

@router.get("/notifications/failed", response_model=List[QueuedNotification])
async def list_failed_notifications(
    limit: int = Query(50, ge=1, le=500),
    scheduler: StatusCheckScheduler = Depends(get_scheduler)
):
    return scheduler.notification_queue.list_failed(limit)


@router.post("/notifications/{notification_id}/retry", summary="Retry Failed Notification")
async def retry_failed_notification(
    notification_id: str = Path(..., description="Notification id, e.g. notif_1705312200000_ab12cd34e"),
    scheduler: StatusCheckScheduler = Depends(get_scheduler)
):
    if not scheduler.notification_queue.retry_failed(notification_id):
        raise HTTPException(status_code=404, detail=f"Failed notification not found: {notification_id}")

    return {"message": "Notification re-queued", "notification_id": notification_id}


@router.delete("/notifications/failed", summary="Clear Failed Notifications")
async def clear_failed_notifications(scheduler: StatusCheckScheduler = Depends(get_scheduler)):
    cleared = scheduler.notification_queue.clear_failed()
    return {"message": f"Cleared {cleared} failed notifications", "cleared": cleared}


# ----------------------------------------------------------------------
# History
# ----------------------------------------------------------------------

@router.get("/records/{record_id}/history", response_model=List[HistoryEntryResponse])
async def get_record_history(
    record_id: int = Path(..., ge=1),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    scheduler: StatusCheckScheduler = Depends(get_scheduler)
):
    """Check history for one tracked record, newest first"""
    if scheduler.record_store.get(record_id) is None:
        raise HTTPException(status_code=404, detail=f"Tracked record not found: {record_id}")

    return scheduler.detector.get_history(record_id, limit=limit, offset=offset)


@router.get("/owners/{owner_id}/changes", response_model=List[ChangeEvent], summary="Recent Status Changes")
async def get_owner_changes(
    owner_id: str = Path(..., min_length=1),
    limit: int = Query(20, ge=1, le=200),
    scheduler: StatusCheckScheduler = Depends(get_scheduler)
):
    """Significant changes across all of an owner's records, newest first"""
    return scheduler.detector.get_recent_changes(owner_id, limit=limit)


@router.get("/owners/{owner_id}/change-stats", response_model=ChangeStats, summary="Status Change Counts")
async def get_owner_change_stats(
    owner_id: str = Path(..., min_length=1),
    scheduler: StatusCheckScheduler = Depends(get_scheduler)
):
    return scheduler.detector.get_change_stats(owner_id)

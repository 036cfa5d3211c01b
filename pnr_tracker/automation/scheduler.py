"""
Scheduler Module
Runs the periodic status check: fetch, detect changes, notify, archive
"""
import asyncio
import threading
import time
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, List, Optional
import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from pnr_tracker.core.archiver import PNRArchiver
from pnr_tracker.core.batch_processor import BatchProcessor
from pnr_tracker.core.notification_dispatch import SYSTEM_OWNER_ID
from pnr_tracker.core.notification_queue import NotificationQueue
from pnr_tracker.core.status_change_detector import StatusChangeDetector
from pnr_tracker.models.schemas import (
    ArchiverConfig, ArchivingRunStats, BatchOptions, EligibleRecord, RunStats,
    SchedulerConfig, SchedulerRunStats, SchedulerStatusResponse, StatusSnapshot
)
from pnr_tracker.repositories.tracking_repository import TrackedRecordRepository
from pnr_tracker.utils.config import settings

logger = logging.getLogger(__name__)

CHECK_JOB_ID = "pnr_status_check"
INITIAL_CHECK_JOB_ID = "pnr_initial_check"
INITIAL_CHECK_DELAY_SECONDS = 5


class CheckInProgressError(Exception):
    """Raised when a check is requested while another is running"""
    pass


class ArchivingDisabledError(Exception):
    """Raised when manual archiving is requested with archiving turned off"""
    pass


class RunState(Enum):
    IDLE = "idle"
    RUNNING = "running"


def build_cron_trigger(expression: str, timezone: Optional[str] = None) -> CronTrigger:
    """
    Cron trigger from a 5-field crontab or a 6-field expression with leading seconds

    Raises:
        ValueError: wrong field count or invalid field values
    """
    fields = expression.split()
    timezone = timezone or settings.TZ

    if len(fields) == 5:
        return CronTrigger.from_crontab(expression, timezone=timezone)

    if len(fields) == 6:
        second, minute, hour, day, month, day_of_week = fields
        return CronTrigger(
            second=second,
            minute=minute,
            hour=hour,
            day=day,
            month=month,
            day_of_week=day_of_week,
            timezone=timezone
        )

    raise ValueError(f"Cron expression must have 5 or 6 fields: {expression!r}")


class StatusCheckScheduler:
    """
    Periodic status checker
    Only one run at a time; manual triggers are rejected while a run is active.
    Default schedule: every 30 minutes
    """

    def __init__(
        self,
        record_store: TrackedRecordRepository,
        batch_processor: BatchProcessor,
        detector: StatusChangeDetector,
        notification_queue: NotificationQueue,
        archiver: PNRArchiver,
        config: Optional[SchedulerConfig] = None
    ):
        self.record_store = record_store
        self.batch_processor = batch_processor
        self.detector = detector
        self.notification_queue = notification_queue
        self.archiver = archiver
        self.config = config or SchedulerConfig()

        # validate early so a bad expression fails at construction time
        build_cron_trigger(self.config.cron_expression)

        self.scheduler: Optional[AsyncIOScheduler] = None
        self.stats = SchedulerRunStats()

        self._state = RunState.IDLE
        self._state_lock = threading.Lock()

        logger.info("Status check scheduler initialized")

    # ------------------------------------------------------------------
    # Run guard
    # ------------------------------------------------------------------

    def _try_acquire(self) -> bool:
        with self._state_lock:
            if self._state is RunState.RUNNING:
                return False
            self._state = RunState.RUNNING
            self.stats.check_in_progress = True
            return True

    def _release(self) -> None:
        with self._state_lock:
            self._state = RunState.IDLE
            self.stats.check_in_progress = False

    def is_check_in_progress(self) -> bool:
        return self._state is RunState.RUNNING

    # ------------------------------------------------------------------
    # Timer
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Arm the cron job and start notification processing"""
        if not self.config.enabled:
            logger.info("Scheduler disabled (SCHEDULER_ENABLED=false), not starting")
            return
        if self.stats.is_running:
            return

        self.scheduler = AsyncIOScheduler(timezone=settings.TZ)
        self.scheduler.add_job(
            self._scheduled_check,
            trigger=build_cron_trigger(self.config.cron_expression),
            id=CHECK_JOB_ID,
            name=CHECK_JOB_ID,
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )

        if self.config.initial_check:
            self.scheduler.add_job(
                self._scheduled_check,
                'date',
                run_date=datetime.now(self.scheduler.timezone) + timedelta(seconds=INITIAL_CHECK_DELAY_SECONDS),
                id=INITIAL_CHECK_JOB_ID,
                name=INITIAL_CHECK_JOB_ID,
                replace_existing=True
            )

        self.scheduler.start()
        self.notification_queue.start_processing()
        self.stats.is_running = True
        self._refresh_next_run_time()

        logger.info(f"--> Scheduler started ({self.config.cron_expression})")
        for job in self.scheduler.get_jobs():
            logger.info(f"Next run for '{job.name}': {job.next_run_time}")

    def stop(self) -> None:
        """Disarm the timer; a run already in flight finishes on its own"""
        if not self.stats.is_running:
            return

        if self.scheduler is not None and self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        self.scheduler = None
        self.notification_queue.stop_processing()

        self.stats.is_running = False
        self.stats.next_run_time = None
        logger.info("[X]--> Scheduler stopped")

    def _refresh_next_run_time(self) -> None:
        if self.scheduler is None:
            self.stats.next_run_time = None
            return
        job = self.scheduler.get_job(CHECK_JOB_ID)
        self.stats.next_run_time = job.next_run_time if job else None

    async def _scheduled_check(self) -> None:
        """Timer entry point; never raises"""
        if not self._try_acquire():
            logger.warning("Previous status check still running, skipping this run")
            return
        try:
            await self._run_check()
        finally:
            self._release()
            self._refresh_next_run_time()

    async def trigger_manual_check(self) -> SchedulerRunStats:
        """
        Run one check now

        Raises:
            CheckInProgressError: a run is already active
        """
        if not self._try_acquire():
            raise CheckInProgressError("Status check already in progress")

        logger.info("Manual status check triggered")
        try:
            await self._run_check()
        finally:
            self._release()
            self._refresh_next_run_time()

        return self.get_stats()

    # ------------------------------------------------------------------
    # Run routine
    # ------------------------------------------------------------------

    async def _run_check(self) -> None:
        start_time = time.monotonic()
        run_stats = RunStats()

        logger.info("=" * 60)
        logger.info(f"STATUS CHECK STARTED at {datetime.utcnow().isoformat()}")
        logger.info("=" * 60)

        try:
            records = self.record_store.list_active()
            run_stats.total_records = len(records)

            if not records:
                logger.info("No active records to check")
            else:
                batch_size = self.config.batch_size
                batches = [records[i:i + batch_size] for i in range(0, len(records), batch_size)]

                for index, batch in enumerate(batches):
                    logger.info(f"Processing batch {index + 1}/{len(batches)} ({len(batch)} records)")
                    await self._process_batch(batch, run_stats)

                    if index < len(batches) - 1:
                        await asyncio.sleep(self.config.batch_pause / 1000)

            if self.config.archiving_enabled:
                self.stats.last_archiving_stats = await self._run_archiver()

            run_stats.processing_time_ms = int((time.monotonic() - start_time) * 1000)
            self.stats.last_run_stats = run_stats
            self.stats.successful_runs += 1

            logger.info("=" * 60)
            logger.info(
                f"STATUS CHECK COMPLETE: {run_stats.successful_checks}/{run_stats.total_records} checked, "
                f"{run_stats.failed_checks} failed, {run_stats.status_changes} changes, "
                f"{run_stats.retired_records} retired, {run_stats.processing_time_ms}ms"
            )
            logger.info("=" * 60)

        except Exception as e:
            self.stats.failed_runs += 1
            logger.error(f"Status check run failed: {e}", exc_info=True)
            self._notify_run_failure(e)

        finally:
            self.stats.total_runs += 1
            self.stats.last_run_time = datetime.utcnow()

    async def _process_batch(self, batch: List, run_stats: RunStats) -> None:
        codes = [record.reference_code for record in batch]
        options = BatchOptions(
            request_delay_ms=self.config.request_delay,
            max_retries=self.config.max_retries
        )
        result = await self.batch_processor.process(codes, options)

        retired = set(result.retired_codes)

        # results come back in input order, one per code
        for record, snapshot in zip(batch, result.results):
            if snapshot.error:
                run_stats.failed_checks += 1
                self._record_failed_check(record, snapshot)
                continue

            try:
                event = self.detector.check(record.id, snapshot)
            except Exception as e:
                run_stats.failed_checks += 1
                logger.error(f"Error applying result for {record.reference_code}: {e}")
                continue

            run_stats.successful_checks += 1
            if event is not None:
                run_stats.status_changes += 1

            if record.reference_code in retired:
                run_stats.retired_records += 1
                self._handle_retired(record)

    def _record_failed_check(self, record, snapshot: StatusSnapshot) -> None:
        try:
            self.detector.record_failed_check(record.id, snapshot)
        except Exception as e:
            logger.error(f"Could not record failed check for {record.reference_code}: {e}")

    def _handle_retired(self, record) -> None:
        logger.info(f"{record.reference_code} has been retired upstream")
        try:
            self.notification_queue.queue_system_notification(
                owner_id=record.owner_id,
                title=f"PNR {record.reference_code} Expired",
                message=(
                    f"PNR {record.reference_code} is no longer available upstream "
                    f"and will not be checked further."
                ),
                data={"reference_code": record.reference_code, "tracked_record_id": record.id}
            )
        except Exception as e:
            logger.error(f"Could not queue retirement notice for {record.reference_code}: {e}")

        if self.config.auto_deactivate_retired:
            try:
                self.record_store.deactivate(record.id)
                logger.info(f"Deactivated retired record {record.reference_code}")
            except Exception as e:
                logger.error(f"Could not deactivate {record.reference_code}: {e}")

    async def _run_archiver(self) -> ArchivingRunStats:
        try:
            archiving = await self.archiver.run()
        except Exception as e:
            logger.error(f"Archiver failed: {e}")
            return ArchivingRunStats(errors=1)

        return ArchivingRunStats(
            total_processed=archiving.total_processed,
            archived_count=archiving.archived_count,
            errors=len(archiving.errors),
            processing_time_ms=archiving.processing_time_ms
        )

    def _notify_run_failure(self, error: Exception) -> None:
        try:
            self.notification_queue.queue_system_notification(
                owner_id=SYSTEM_OWNER_ID,
                title="Scheduler Error",
                message=f"Status check run failed: {error}",
                data={"error": str(error), "timestamp": datetime.utcnow().isoformat()}
            )
        except Exception as e:
            logger.error(f"Could not queue scheduler error notification: {e}")

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def update_config(self, **changes: Any) -> SchedulerConfig:
        """
        Apply a partial configuration update

        Raises:
            ValueError: unknown keys or an invalid cron expression
        """
        unknown = set(changes) - set(SchedulerConfig.model_fields)
        if unknown:
            raise ValueError(f"Unknown scheduler config keys: {', '.join(sorted(unknown))}")

        new_config = SchedulerConfig.model_validate({**self.config.model_dump(), **changes})
        cron_changed = new_config.cron_expression != self.config.cron_expression
        if cron_changed:
            build_cron_trigger(new_config.cron_expression)

        self.config = new_config

        if "archiving_enabled" in changes:
            self.archiver.update_config(enabled=new_config.archiving_enabled)

        if cron_changed and self.stats.is_running:
            logger.info(f"Cron changed to '{new_config.cron_expression}', restarting timer")
            self.stop()
            self.start()

        logger.info(f"Scheduler config updated: {changes}")
        return self.get_config()

    def get_config(self) -> SchedulerConfig:
        return self.config.model_copy()

    def get_stats(self) -> SchedulerRunStats:
        return self.stats.model_copy(deep=True)

    def get_status(self) -> SchedulerStatusResponse:
        return SchedulerStatusResponse(
            stats=self.get_stats(),
            config=self.get_config(),
            notification_queue=self.notification_queue.stats(),
            archiver_config=self.archiver.get_config()
        )

    # ------------------------------------------------------------------
    # Archiver passthrough
    # ------------------------------------------------------------------

    async def trigger_manual_archiving(self) -> ArchivingRunStats:
        """
        Run the archiver now

        Raises:
            ArchivingDisabledError: archiving is turned off
        """
        if not self.config.archiving_enabled or not self.archiver.get_config().enabled:
            raise ArchivingDisabledError("Archiving is disabled")

        logger.info("Manual archiving triggered")
        archiving = await self._run_archiver()
        self.stats.last_archiving_stats = archiving
        return archiving

    def preview_archiving(self) -> List[EligibleRecord]:
        return self.archiver.preview_eligible()

    def update_archiver_config(self, **changes: Any) -> ArchiverConfig:
        config = self.archiver.update_config(**changes)
        if "enabled" in changes:
            self.config = self.config.model_copy(update={"archiving_enabled": config.enabled})
        return config

    def get_archiver_config(self) -> ArchiverConfig:
        return self.archiver.get_config()

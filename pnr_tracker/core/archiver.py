"""
PNR archiver
Retires tracked records whose journey is over, either by status or by travel date
"""
import asyncio
import time
from datetime import datetime, timedelta
from typing import List, Optional
import logging

from pnr_tracker.models.schemas import (
    ArchiveReason, ArchiverConfig, ArchivingStats, EligibleRecord, StatusSnapshot
)
from pnr_tracker.repositories.tracking_repository import TrackedRecordRepository
from pnr_tracker.utils.date_parser import parse_travel_date

logger = logging.getLogger(__name__)

JOURNEY_COMPLETED_KEYWORDS = (
    "chart prepared",
    "chart prep",
    "cp",
    "journey completed",
    "completed",
    "travelled",
)

BATCH_PAUSE_SECONDS = 0.1


def is_journey_completed(status: Optional[str]) -> bool:
    if not status:
        return False
    lowered = status.lower()
    return any(keyword in lowered for keyword in JOURNEY_COMPLETED_KEYWORDS)


class PNRArchiver:
    """
    Deactivates records that no longer need checking
    Runs after each scheduler pass when archiving is enabled
    """

    def __init__(self, record_store: TrackedRecordRepository, config: Optional[ArchiverConfig] = None):
        self.record_store = record_store
        self.config = config or ArchiverConfig()

    def evaluate(self, snapshot: StatusSnapshot, now: datetime) -> Optional[ArchiveReason]:
        """
        Why a snapshot makes its record eligible for archiving, if it does

        Status keywords win over the travel date. An unparseable date never qualifies.
        """
        if is_journey_completed(snapshot.status):
            return ArchiveReason.JOURNEY_COMPLETED

        travel_date = parse_travel_date(snapshot.travel_date)
        if travel_date is None:
            return None

        cutoff = travel_date + timedelta(days=self.config.days_after_travel)
        if now > cutoff:
            return ArchiveReason.DATE_COMPLETED
        return None

    async def run(self, now: Optional[datetime] = None) -> ArchivingStats:
        """
        Archive every eligible active record

        Returns:
            ArchivingStats; per-record failures are listed in errors
        """
        stats = ArchivingStats()
        if not self.config.enabled:
            logger.debug("Archiver disabled, skipping")
            return stats

        start_time = time.monotonic()
        now = now or datetime.utcnow()

        try:
            records = self.record_store.list_active()
        except Exception as e:
            logger.error(f"Archiver could not list active records: {e}")
            stats.errors.append(f"Failed to list active records: {e}")
            stats.processing_time_ms = int((time.monotonic() - start_time) * 1000)
            return stats

        batch_size = self.config.batch_size
        for offset in range(0, len(records), batch_size):
            if offset > 0:
                await asyncio.sleep(BATCH_PAUSE_SECONDS)

            for record in records[offset:offset + batch_size]:
                stats.total_processed += 1
                snapshot = StatusSnapshot.from_storage(record.current_snapshot)
                if snapshot is None:
                    continue

                reason = self.evaluate(snapshot, now)
                if reason is None:
                    continue

                try:
                    if self.record_store.deactivate(record.id):
                        stats.archived_count += 1
                        logger.info(f"Archived {record.reference_code} for {record.owner_id} ({reason.value})")
                except Exception as e:
                    logger.error(f"Error archiving {record.reference_code}: {e}")
                    stats.errors.append(f"{record.reference_code}: {e}")

        stats.processing_time_ms = int((time.monotonic() - start_time) * 1000)

        logger.info("=" * 60)
        logger.info(
            f"Archiving complete: {stats.archived_count}/{stats.total_processed} archived, "
            f"{len(stats.errors)} errors, {stats.processing_time_ms}ms"
        )
        logger.info("=" * 60)
        return stats

    def preview_eligible(self, now: Optional[datetime] = None) -> List[EligibleRecord]:
        """Records the next run would archive, without touching them"""
        now = now or datetime.utcnow()
        eligible = []
        for record in self.record_store.list_active():
            snapshot = StatusSnapshot.from_storage(record.current_snapshot)
            if snapshot is None:
                continue
            reason = self.evaluate(snapshot, now)
            if reason is not None:
                eligible.append(EligibleRecord(
                    reference_code=record.reference_code,
                    owner_id=record.owner_id,
                    travel_date=snapshot.travel_date,
                    status=snapshot.status,
                    reason=reason
                ))
        return eligible

    def update_config(self, **changes) -> ArchiverConfig:
        unknown = set(changes) - set(ArchiverConfig.model_fields)
        if unknown:
            raise ValueError(f"Unknown archiver config keys: {', '.join(sorted(unknown))}")

        self.config = ArchiverConfig.model_validate({**self.config.model_dump(), **changes})
        logger.info(f"Archiver config updated: {changes}")
        return self.config

    def get_config(self) -> ArchiverConfig:
        return self.config.model_copy()

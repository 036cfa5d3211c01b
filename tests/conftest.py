"""
pytest configuration for the PNR status tracker tests.

Sets the test environment before any application module is imported and
provides in-memory SQLite stores, a scripted status source and a fake clock.
"""

import os
import time

# Set test environment variables BEFORE any imports
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("ARCHIVER_ENABLED", "false")
os.environ.setdefault("NOTIFICATION_STORE", "memory")
os.environ.setdefault("SYSTEM_ALERT_EMAILS", "ops@example.com")
os.environ.setdefault("TZ", "UTC")

from datetime import datetime
from unittest.mock import AsyncMock

import pytest

from pnr_tracker.automation.scheduler import StatusCheckScheduler
from pnr_tracker.core.archiver import PNRArchiver
from pnr_tracker.core.batch_processor import BatchProcessor
from pnr_tracker.core.delay_queue import InMemoryDelayQueue
from pnr_tracker.core.notification_queue import NotificationQueue
from pnr_tracker.core.status_change_detector import StatusChangeDetector
from pnr_tracker.models.schemas import ArchiverConfig, SchedulerConfig, StatusSnapshot
from pnr_tracker.repositories import (
    SQLDelayQueue,
    StatusHistoryRepository,
    TrackedRecordRepository,
)
from pnr_tracker.utils.database import create_session_factory, get_engine, init_db


def make_snapshot(code="1111111111", status="CNF/B1/23", travel_date="15-01-2099", **kwargs):
    """Create a StatusSnapshot with sensible defaults."""
    return StatusSnapshot(
        reference_code=code,
        origin=kwargs.pop("origin", "NDLS"),
        destination=kwargs.pop("destination", "BCT"),
        travel_date=travel_date,
        status=status,
        **kwargs,
    )


class FakeStatusSource:
    """Scripted status source.

    ``responses`` maps a code to a list of snapshots or exceptions, consumed in
    order; the last entry repeats. Unknown codes get a confirmed snapshot.
    """

    def __init__(self, responses=None):
        self.responses = {code: list(items) for code, items in (responses or {}).items()}
        self.calls = []
        self.call_times = []

    async def fetch(self, reference_code):
        self.calls.append(reference_code)
        self.call_times.append(time.monotonic())

        scripted = self.responses.get(reference_code)
        if not scripted:
            return make_snapshot(reference_code)

        response = scripted.pop(0) if len(scripted) > 1 else scripted[0]
        if isinstance(response, Exception):
            raise response
        return response


class FakeClock:
    """Epoch-millis clock advanced by hand."""

    def __init__(self, start_ms=1_700_000_000_000):
        self.now_ms = start_ms

    def __call__(self):
        return self.now_ms

    def advance(self, ms):
        self.now_ms += ms


@pytest.fixture
def session_factory():
    engine = get_engine("sqlite:///:memory:")
    init_db(engine)
    yield create_session_factory(engine)
    engine.dispose()


@pytest.fixture
def record_repo(session_factory):
    return TrackedRecordRepository(session_factory)


@pytest.fixture
def history_repo(session_factory):
    return StatusHistoryRepository(session_factory)


@pytest.fixture
def memory_store():
    return InMemoryDelayQueue()


@pytest.fixture(params=["memory", "database"])
def delay_store(request, session_factory):
    """Both notification stores, so queue behaviour is checked against each."""
    if request.param == "memory":
        return InMemoryDelayQueue()
    return SQLDelayQueue(session_factory)


@pytest.fixture
def dispatch():
    mock = AsyncMock()
    mock.deliver = AsyncMock(return_value=None)
    return mock


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def notification_queue(memory_store, dispatch, clock):
    return NotificationQueue(memory_store, dispatch, clock=clock, max_attempts=3)


@pytest.fixture
def detector(record_repo, history_repo, notification_queue):
    return StatusChangeDetector(record_repo, history_repo, notification_queue)


@pytest.fixture
def status_source():
    return FakeStatusSource()


@pytest.fixture
def scheduler_config():
    return SchedulerConfig(
        enabled=False,
        cron_expression="*/30 * * * *",
        batch_size=50,
        request_delay=0,
        max_retries=0,
        batch_pause=0,
        archiving_enabled=False,
        auto_deactivate_retired=False,
        initial_check=False,
    )


@pytest.fixture
def archiver(record_repo):
    return PNRArchiver(record_repo, ArchiverConfig(enabled=False, days_after_travel=7, batch_size=100))


@pytest.fixture
def scheduler(record_repo, detector, notification_queue, archiver, status_source, scheduler_config):
    return StatusCheckScheduler(
        record_store=record_repo,
        batch_processor=BatchProcessor(status_source),
        detector=detector,
        notification_queue=notification_queue,
        archiver=archiver,
        config=scheduler_config,
    )


@pytest.fixture
def fixed_now():
    return datetime(2024, 3, 1, 12, 0, 0)

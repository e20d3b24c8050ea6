"""
Shared fixtures for the job engine tests.

Each test gets its own file-backed SQLite database (sessions are opened from
several worker threads), a fake clock that only moves when a test advances
it, and a registry of recording handlers in place of the real collaborators.
"""

import threading
import time
from datetime import datetime, timedelta

import pytest

from vaultjobs.db import create_db_engine, create_session_factory, create_tables, drop_tables
from vaultjobs.executor import Executor
from vaultjobs.registry import JobType, TaskHandler, TaskRegistry
from vaultjobs.schedule import ScheduleCalculator
from vaultjobs.scheduler import Scheduler
from vaultjobs.service import JobService
from vaultjobs.store import JobStore


START = datetime(2025, 1, 6, 12, 0, 0)  # a Monday


class FakeClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime = START):
        self._now = start
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def advance(self, **kwargs) -> datetime:
        with self._lock:
            self._now += timedelta(**kwargs)
            return self._now

    def set(self, when: datetime) -> None:
        with self._lock:
            self._now = when


class RecordingTask(TaskHandler):
    """
    Handler that records its calls.

    ``gate`` makes it block until the test sets the event; ``error`` makes it
    raise after the gate opens. ``max_active`` tracks overlapping calls.
    """

    def __init__(self, error=None, gate=None, timeout=None):
        self.error = error
        self.gate = gate
        self.timeout = timeout
        self.calls = []
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def execute(self, config):
        with self._lock:
            self.calls.append(dict(config))
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if self.gate is not None:
                self.gate.wait(timeout=10)
            if self.error is not None:
                raise self.error
            return f"handled {sorted(config)}"
        finally:
            with self._lock:
                self.active -= 1


def wait_until(predicate, timeout: float = 5.0) -> bool:
    """Poll ``predicate`` until it is true or the timeout expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def engine(tmp_path):
    engine = create_db_engine(f"sqlite:///{tmp_path / 'test.db'}")
    create_tables(engine)
    yield engine
    drop_tables(engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def handlers():
    return {job_type: RecordingTask() for job_type in JobType}


@pytest.fixture
def registry(handlers):
    registry = TaskRegistry()
    for job_type, handler in handlers.items():
        registry.register(job_type, handler)
    return registry


@pytest.fixture
def calculator():
    return ScheduleCalculator(timezone="UTC", horizon_years=5)


@pytest.fixture
def store(session_factory, registry, calculator, clock):
    return JobStore(session_factory, registry, calculator=calculator, clock=clock)


@pytest.fixture
def executor(store, registry, clock):
    executor = Executor(store, registry, clock=clock, default_timeout=5, max_workers=4)
    yield executor
    executor.shutdown(wait=False)


@pytest.fixture
def scheduler(store, executor, calculator, clock):
    scheduler = Scheduler(store, executor, calculator=calculator, clock=clock, tick_seconds=0.05, max_workers=4)
    yield scheduler
    scheduler.stop(wait=False)


@pytest.fixture
def service(store, scheduler):
    return JobService(store, scheduler)

"""Assembly of the engine's components from settings."""

from dataclasses import dataclass
from typing import Optional
import logging

from sqlalchemy.engine import Engine

from .clock import SystemClock
from .collaborators import ClamdScanner, HttpWebhookSender, LocalMirrorStorage, SqlFileService
from .db import create_db_engine, create_session_factory, create_tables
from .executor import Executor
from .registry import TaskRegistry
from .schedule import ScheduleCalculator
from .scheduler import Scheduler
from .service import JobService
from .settings import Settings, settings as default_settings
from .store import JobStore
from .tasks import build_default_registry

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    engine: Engine
    store: JobStore
    registry: TaskRegistry
    executor: Executor
    scheduler: Scheduler
    service: JobService
    webhook_sender: Optional[HttpWebhookSender] = None

    def start(self) -> None:
        """Create tables, arm every scheduled job and start the dispatch loop."""
        create_tables(self.engine)
        self.scheduler.load()
        self.scheduler.start()

    def stop(self, wait: bool = True) -> None:
        self.scheduler.stop(wait=wait)
        self.executor.shutdown(wait=wait)
        if self.webhook_sender is not None:
            self.webhook_sender.close()


def build_runtime(
    app_settings: Optional[Settings] = None,
    engine: Optional[Engine] = None,
    clock=None,
    registry: Optional[TaskRegistry] = None,
) -> Runtime:
    """
    Wire engine, store, registry, executor, scheduler and service together.

    ``registry`` replaces the built-in handlers, e.g. in tests.
    """
    app_settings = app_settings or default_settings
    engine = engine or create_db_engine(app_settings=app_settings)
    clock = clock or SystemClock()
    session_factory = create_session_factory(engine)

    webhook_sender = None
    if registry is None:
        files = SqlFileService(session_factory)
        webhook_sender = HttpWebhookSender(timeout=app_settings.webhook_timeout)
        registry = build_default_registry(
            files=files,
            index=files,
            storage=LocalMirrorStorage(app_settings.backup_root),
            scanner=ClamdScanner(app_settings.virus_scan_command, timeout=app_settings.virus_scan_timeout),
            sender=webhook_sender,
            cleanup_retention_days=app_settings.cleanup_retention_days,
            virus_scan_timeout=app_settings.virus_scan_timeout,
            now=clock.now,
        )

    calculator = ScheduleCalculator(
        timezone=app_settings.scheduler_timezone,
        horizon_years=app_settings.schedule_horizon_years,
    )
    store = JobStore(session_factory, registry, calculator=calculator, clock=clock)
    executor = Executor(
        store,
        registry,
        clock=clock,
        default_timeout=app_settings.job_timeout,
        max_workers=app_settings.handler_max_workers,
    )
    scheduler = Scheduler(
        store,
        executor,
        calculator=calculator,
        clock=clock,
        tick_seconds=app_settings.scheduler_tick_seconds,
        max_workers=app_settings.scheduler_max_workers,
    )
    service = JobService(store, scheduler)

    logger.info(f"Job engine assembled with handlers: {', '.join(registry.types())}")
    return Runtime(
        engine=engine,
        store=store,
        registry=registry,
        executor=executor,
        scheduler=scheduler,
        service=service,
        webhook_sender=webhook_sender,
    )

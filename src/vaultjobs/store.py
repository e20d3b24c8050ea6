"""
Job store: persistence of job definitions and their execution log.

The store is the single source of truth. It validates definitions on the way
in but never talks to the scheduler or runs handlers; the job service
combines store mutations with rescheduling.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
import logging
import uuid

from sqlalchemy import case, func, select, update
from sqlalchemy.orm import sessionmaker

from .clock import SystemClock
from .errors import InvalidJobError, JobNotFoundError, UnknownJobTypeError
from .models import Job, JobLog
from .registry import TaskRegistry
from .schedule import ScheduleCalculator

logger = logging.getLogger(__name__)

MUTABLE_FIELDS = frozenset({"name", "schedule_expr", "config", "is_active"})

JOB_STATUSES = ("active", "paused", "completed", "failed")
LOG_STATUSES = ("started", "completed", "failed")


def new_run_id() -> str:
    return uuid.uuid4().hex


class JobStore:
    """SQLAlchemy-backed store for ``Job`` and ``JobLog`` rows."""

    def __init__(
        self,
        session_factory: sessionmaker,
        registry: TaskRegistry,
        calculator: Optional[ScheduleCalculator] = None,
        clock=None,
    ):
        self._session_factory = session_factory
        self.registry = registry
        self.calculator = calculator or ScheduleCalculator()
        self.clock = clock or SystemClock()

    # -- validation ---------------------------------------------------------

    def _validate_name(self, name: Any) -> str:
        if not isinstance(name, str) or not name.strip():
            raise InvalidJobError("Job name must be a non-empty string")
        if len(name) > 255:
            raise InvalidJobError("Job name must be at most 255 characters")
        return name

    def _validate_schedule(self, schedule_expr: Optional[str]) -> Optional[str]:
        if schedule_expr is None:
            return None
        # Raises InvalidExpressionError / NoUpcomingOccurrenceError
        self.calculator.validate(schedule_expr, self.clock.now())
        return schedule_expr.strip()

    def _validate_config(self, config: Any) -> Dict[str, Any]:
        if config is None:
            return {}
        if not isinstance(config, dict):
            raise InvalidJobError("Job config must be an object")
        return dict(config)

    # -- jobs ---------------------------------------------------------------

    def create(
        self,
        name: str,
        job_type: str,
        owner_id: Optional[str] = None,
        schedule_expr: Optional[str] = None,
        config: Optional[Dict[str, Any]] = None,
        is_active: bool = True,
    ) -> Job:
        """Validate and persist a new job, returning the stored record."""
        if job_type not in self.registry:
            raise UnknownJobTypeError(f"Unknown job type: {job_type}")

        job = Job(
            owner_id=owner_id,
            name=self._validate_name(name),
            type=str(getattr(job_type, "value", job_type)),
            schedule_expr=self._validate_schedule(schedule_expr),
            config=self._validate_config(config),
            is_active=bool(is_active),
            status="active" if is_active else "paused",
        )

        with self._session_factory() as session:
            session.add(job)
            session.commit()
            session.refresh(job)

        logger.info(f"Created job {job.id}: {job.name} ({job.type})")
        return job

    def find(self, job_id: int) -> Optional[Job]:
        with self._session_factory() as session:
            return session.get(Job, job_id)

    def get(self, job_id: int) -> Job:
        job = self.find(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def list(
        self,
        page: int = 1,
        size: int = 10,
        status: Optional[str] = None,
        owner_id: Optional[str] = None,
        job_type: Optional[str] = None,
        is_active: Optional[bool] = None,
    ) -> Tuple[List[Job], int]:
        """List jobs with pagination and filtering, newest first."""
        query = select(Job)
        count_query = select(func.count(Job.id))

        filters = []
        if status:
            filters.append(Job.status == status)
        if owner_id:
            filters.append(Job.owner_id == owner_id)
        if job_type:
            filters.append(Job.type == job_type)
        if is_active is not None:
            filters.append(Job.is_active.is_(is_active))

        if filters:
            query = query.where(*filters)
            count_query = count_query.where(*filters)

        offset = (page - 1) * size
        query = query.order_by(Job.created_at.desc(), Job.id.desc()).offset(offset).limit(size)

        with self._session_factory() as session:
            jobs = session.execute(query).scalars().all()
            total = session.execute(count_query).scalar()

        return list(jobs), total

    def list_schedulable(self) -> List[Job]:
        """Active jobs that carry a schedule expression."""
        with self._session_factory() as session:
            jobs = session.execute(
                select(Job)
                .where(Job.is_active.is_(True), Job.schedule_expr.is_not(None))
                .order_by(Job.id)
            ).scalars().all()
        return list(jobs)

    def update(self, job_id: int, patch: Dict[str, Any]) -> Job:
        """
        Apply a partial update restricted to name, schedule_expr, config and is_active.

        Toggling ``is_active`` moves the status between ``active`` and
        ``paused``; statuses written by executions are otherwise preserved
        until the next run.
        """
        unknown = set(patch) - MUTABLE_FIELDS
        if unknown:
            raise InvalidJobError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")

        values: Dict[str, Any] = {}
        if "name" in patch:
            values["name"] = self._validate_name(patch["name"])
        if "schedule_expr" in patch:
            values["schedule_expr"] = self._validate_schedule(patch["schedule_expr"])
        if "config" in patch:
            if patch["config"] is None:
                raise InvalidJobError("Job config must be an object")
            values["config"] = self._validate_config(patch["config"])
        if "is_active" in patch:
            if not isinstance(patch["is_active"], bool):
                raise InvalidJobError("is_active must be a boolean")
            values["is_active"] = patch["is_active"]

        with self._session_factory() as session:
            job = session.get(Job, job_id)
            if job is None:
                raise JobNotFoundError(job_id)

            for field, value in values.items():
                setattr(job, field, value)

            if "is_active" in values:
                if not values["is_active"]:
                    job.status = "paused"
                elif job.status == "paused":
                    job.status = "active"

            session.commit()
            session.refresh(job)

        logger.info(f"Updated job {job.id}: {sorted(values)}")
        return job

    def delete(self, job_id: int) -> None:
        """Delete a job. Its execution log is kept for postmortem."""
        with self._session_factory() as session:
            job = session.get(Job, job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            session.delete(job)
            session.commit()

        logger.info(f"Deleted job {job_id}")

    # -- bookkeeping written by the scheduler and executor ------------------

    def _update_job(self, job_id: int, **values) -> bool:
        # Single UPDATE statement: concurrent runs of other jobs never clobber each other
        with self._session_factory() as session:
            result = session.execute(
                update(Job)
                .where(Job.id == job_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            session.commit()
            return bool(result.rowcount)

    def record_run(self, job_id: int, status: str, last_run: datetime) -> bool:
        """
        Store the outcome of a run. Returns False if the job no longer exists.

        A successful on-demand run of a paused job leaves it ``paused``.
        """
        if status == "active":
            status = case((Job.is_active.is_(False), "paused"), else_="active")
        return self._update_job(job_id, status=status, last_run=last_run)

    def set_next_run(self, job_id: int, next_run: Optional[datetime]) -> bool:
        return self._update_job(job_id, next_run=next_run)

    def set_status(self, job_id: int, status: str) -> bool:
        if status not in JOB_STATUSES:
            raise InvalidJobError(f"Invalid job status: {status}")
        return self._update_job(job_id, status=status)

    # -- execution log -------------------------------------------------------

    def append_log(
        self,
        job_id: int,
        status: str,
        message: Optional[str] = None,
        run_id: Optional[str] = None,
        started_at: Optional[datetime] = None,
        completed_at: Optional[datetime] = None,
        error_kind: Optional[str] = None,
    ) -> JobLog:
        """Append one immutable execution log row."""
        if status not in LOG_STATUSES:
            raise InvalidJobError(f"Invalid log status: {status}")

        entry = JobLog(
            job_id=job_id,
            run_id=run_id or new_run_id(),
            status=status,
            message=message,
            error_kind=getattr(error_kind, "value", error_kind),
            started_at=started_at or self.clock.now(),
            completed_at=completed_at,
        )
        with self._session_factory() as session:
            session.add(entry)
            session.commit()
            session.refresh(entry)
        return entry

    def list_logs(self, job_id: int, page: int = 1, size: int = 50) -> Tuple[List[JobLog], int]:
        """Execution history of a job in append order."""
        query = (
            select(JobLog)
            .where(JobLog.job_id == job_id)
            .order_by(JobLog.id)
            .offset((page - 1) * size)
            .limit(size)
        )
        count_query = select(func.count(JobLog.id)).where(JobLog.job_id == job_id)

        with self._session_factory() as session:
            logs = session.execute(query).scalars().all()
            total = session.execute(count_query).scalar()
        return list(logs), total

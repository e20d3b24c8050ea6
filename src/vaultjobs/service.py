"""
Job service: the entry point external callers use to manage jobs.

Each mutation touching ``schedule_expr`` or ``is_active`` runs together with
the matching disarm/arm under the scheduler's per-job lock, and deletion
disarms before the row is removed, so no run can start after ``delete_job``
returns.
"""

from concurrent.futures import Future
from typing import Any, Dict, List, Optional, Tuple
import logging

from .executor import Execution
from .models import Job, JobLog
from .scheduler import Scheduler
from .store import JobStore

logger = logging.getLogger(__name__)

RESCHEDULE_FIELDS = frozenset({"schedule_expr", "is_active"})


class JobService:
    """Service layer combining the job store with the scheduler core."""

    def __init__(self, store: JobStore, scheduler: Scheduler):
        self.store = store
        self.scheduler = scheduler

    def create_job(
        self,
        name: str,
        job_type: str,
        owner_id: Optional[str] = None,
        schedule_expr: Optional[str] = None,
        config: Optional[Dict[str, Any]] = None,
        is_active: bool = True,
    ) -> Job:
        """Create a job and arm it when it is active and scheduled."""
        job = self.store.create(
            name=name,
            job_type=job_type,
            owner_id=owner_id,
            schedule_expr=schedule_expr,
            config=config,
            is_active=is_active,
        )
        if job.schedule_expr and job.is_active:
            self.scheduler.reschedule(job)
            job = self.store.get(job.id)
        return job

    def get_job(self, job_id: int) -> Job:
        return self.store.get(job_id)

    def list_jobs(
        self,
        page: int = 1,
        size: int = 10,
        status: Optional[str] = None,
        owner_id: Optional[str] = None,
        job_type: Optional[str] = None,
        is_active: Optional[bool] = None,
    ) -> Tuple[List[Job], int]:
        return self.store.list(page, size, status=status, owner_id=owner_id, job_type=job_type, is_active=is_active)

    def update_job(self, job_id: int, patch: Dict[str, Any]) -> Job:
        """Update a job; schedule or activity changes re-arm it in the same critical section."""
        with self.scheduler.locked(job_id):
            job = self.store.update(job_id, patch)
            if RESCHEDULE_FIELDS & set(patch):
                self.scheduler.reschedule(job)
                job = self.store.get(job_id)
        return job

    def delete_job(self, job_id: int) -> None:
        with self.scheduler.locked(job_id):
            self.store.get(job_id)
            self.scheduler.disarm(job_id)
            self.store.delete(job_id)
        self.scheduler.forget_lock(job_id)

    def get_job_logs(self, job_id: int, page: int = 1, size: int = 50) -> Tuple[List[JobLog], int]:
        """Execution history; available for deleted jobs too."""
        return self.store.list_logs(job_id, page, size)

    def run_job_now(self, job_id: int) -> Tuple[Execution, Future]:
        """Start an on-demand run. Raises ``AlreadyRunningError`` if one is in flight."""
        return self.scheduler.run_now(job_id)

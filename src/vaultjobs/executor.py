"""
Job executor.

Runs one job's handler with single-flight protection per job id, enforces a
timeout, writes the execution log and stores the outcome on the job. Nothing
raised by a handler (or by the bookkeeping around it) escapes ``finish``, so
the scheduler keeps running whatever a handler does.
"""

from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Set
import logging
import threading

from .clock import SystemClock
from .errors import AlreadyRunningError, ErrorKind, TaskTimeoutError, UnregisteredHandlerError
from .registry import TaskRegistry
from .store import JobStore, new_run_id

logger = logging.getLogger(__name__)


class ExecutionStatus(str, Enum):
    """Terminal status of one run."""
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class Execution:
    """A claimed run whose ``started`` entry has been written."""

    job_id: int
    job_name: str
    job_type: str
    config: Dict[str, Any]
    run_id: str
    started_at: datetime


@dataclass
class ExecutionOutcome:
    """
    Result of a run.

    Attributes:
        job_id: Job identifier
        run_id: Shared by the run's log entries
        status: completed or failed
        message: Handler result message or failure description
        error_kind: Failure kind, None on success
        started_at: Attempt time, stored as the job's last_run
        completed_at: When the terminal entry was written
    """

    job_id: int
    run_id: str
    status: ExecutionStatus
    message: str = ""
    error_kind: Optional[ErrorKind] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def success(self) -> bool:
        return self.status == ExecutionStatus.COMPLETED


class Executor:
    """
    Single-flight job runner.

    Handlers run on a dedicated thread pool so the calling thread can stop
    waiting after the timeout. A timed-out handler thread cannot be killed;
    its job stays claimed until that thread returns, so a stuck handler never
    overlaps with its own next run.
    """

    def __init__(
        self,
        store: JobStore,
        registry: TaskRegistry,
        clock=None,
        default_timeout: Optional[float] = 1800,
        max_workers: int = 10,
    ):
        self.store = store
        self.registry = registry
        self.clock = clock or SystemClock()
        self.default_timeout = default_timeout

        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="job-handler")
        self._in_flight: Set[int] = set()
        self._lock = threading.Lock()

    def is_running(self, job_id: int) -> bool:
        with self._lock:
            return job_id in self._in_flight

    def running_jobs(self) -> Set[int]:
        with self._lock:
            return set(self._in_flight)

    def _claim(self, job_id: int) -> None:
        with self._lock:
            if job_id in self._in_flight:
                raise AlreadyRunningError(job_id)
            self._in_flight.add(job_id)

    def _release(self, job_id: int) -> None:
        with self._lock:
            self._in_flight.discard(job_id)

    def start(self, job_id: int) -> Execution:
        """
        Claim the job and append its ``started`` entry.

        Raises:
            AlreadyRunningError: A run of this job is in flight; nothing is logged
            JobNotFoundError: The job no longer exists
        """
        self._claim(job_id)
        try:
            job = self.store.get(job_id)
            started_at = self.clock.now()
            run_id = new_run_id()
            self.store.append_log(
                job_id,
                "started",
                message=f"Job {job.name} started",
                run_id=run_id,
                started_at=started_at,
            )
        except Exception:
            self._release(job_id)
            raise

        logger.info(f"Executing job_id={job_id} ({job.type}), run_id={run_id}")
        return Execution(
            job_id=job.id,
            job_name=job.name,
            job_type=job.type,
            config=dict(job.config or {}),
            run_id=run_id,
            started_at=started_at,
        )

    def finish(self, execution: Execution) -> ExecutionOutcome:
        """Run the handler of a started execution and record the outcome. Never raises."""
        handler_future = None
        try:
            try:
                handler = self.registry.get(execution.job_type)
            except UnregisteredHandlerError as e:
                logger.error(f"Job {execution.job_id} cannot run: {e}")
                return self._record(execution, ExecutionStatus.FAILED, str(e), ErrorKind.UNREGISTERED_HANDLER)

            timeout = handler.timeout if handler.timeout is not None else self.default_timeout
            try:
                handler_future = self._pool.submit(handler.execute, dict(execution.config))
                result = handler_future.result(timeout=timeout)
            except FutureTimeoutError:
                if handler_future.cancel():
                    # Still queued behind other handlers; it will never run
                    message = f"Job {execution.job_name} timed out after {timeout} seconds waiting for a handler thread"
                else:
                    message = f"Job {execution.job_name} timed out after {timeout} seconds"
                error = TaskTimeoutError(message)
                logger.error(f"Job {execution.job_id} (run {execution.run_id}): {error}")
                return self._record(execution, ExecutionStatus.FAILED, str(error), ErrorKind.TIMED_OUT)
            except Exception as e:
                logger.error(f"Job {execution.job_id} (run {execution.run_id}) failed: {e}", exc_info=True)
                return self._record(
                    execution,
                    ExecutionStatus.FAILED,
                    f"Job {execution.job_name} failed: {e}",
                    ErrorKind.HANDLER_ERROR,
                )

            message = result if isinstance(result, str) and result else f"Job {execution.job_name} completed successfully"
            logger.info(f"Job {execution.job_id} (run {execution.run_id}) completed successfully.")
            return self._record(execution, ExecutionStatus.COMPLETED, message, None)
        finally:
            if handler_future is None:
                self._release(execution.job_id)
            else:
                # Fires immediately when the handler already returned
                handler_future.add_done_callback(lambda _: self._release(execution.job_id))

    def run(self, job_id: int) -> ExecutionOutcome:
        """Run a job to completion on the calling thread."""
        return self.finish(self.start(job_id))

    def _record(
        self,
        execution: Execution,
        status: ExecutionStatus,
        message: str,
        error_kind: Optional[ErrorKind],
    ) -> ExecutionOutcome:
        completed_at = self.clock.now()
        outcome = ExecutionOutcome(
            job_id=execution.job_id,
            run_id=execution.run_id,
            status=status,
            message=message,
            error_kind=error_kind,
            started_at=execution.started_at,
            completed_at=completed_at,
        )

        try:
            self.store.append_log(
                execution.job_id,
                status.value,
                message=message,
                run_id=execution.run_id,
                started_at=execution.started_at,
                completed_at=completed_at,
                error_kind=error_kind,
            )
            job_status = "active" if status == ExecutionStatus.COMPLETED else "failed"
            if not self.store.record_run(execution.job_id, job_status, execution.started_at):
                logger.info(f"Job {execution.job_id} was deleted during run {execution.run_id}")
        except Exception as e:
            logger.error(f"Error recording outcome of job {execution.job_id} (run {execution.run_id}): {e}", exc_info=True)

        return outcome

    def shutdown(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait)

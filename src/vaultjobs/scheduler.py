"""
Scheduler core: one armed timer per active, schedule-bearing job.

Timers live in an in-memory map (job id -> timer) backed by a heap ordered by
fire time. A dispatch loop pops due timers and hands each firing to a worker
pool, so a slow handler never delays another job's fire time. When a firing
finishes, the job is re-armed from its original expression unless it was
disarmed (paused, rescheduled or deleted) in the meantime.

The timer map is a cache: ``load()`` rebuilds it from the job store.

Locking: every disarm/arm of one job runs under that job's re-entrant lock
(``locked(job_id)``); the map and heap are guarded by the scheduler lock.
Locks are always taken in that order.
"""

from concurrent.futures import Future, ThreadPoolExecutor, wait as wait_futures
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Dict, Iterator, List, Optional, Set, Tuple
import heapq
import itertools
import logging
import threading
import time

from .clock import SystemClock
from .errors import (
    AlreadyRunningError, ErrorKind, InvalidExpressionError, JobNotFoundError,
    NoUpcomingOccurrenceError,
)
from .executor import Execution, Executor, ExecutionOutcome
from .models import Job
from .schedule import ScheduleCalculator
from .store import JobStore

logger = logging.getLogger(__name__)


class TimerState(str, Enum):
    """Per-job scheduling state."""
    UNARMED = "unarmed"
    ARMED = "armed"
    FIRING = "firing"


@dataclass
class ArmedTimer:
    """A pending fire of one job. ``token`` identifies this particular arming."""

    job_id: int
    fire_at: datetime
    schedule_expr: str
    token: int


class Scheduler:
    """
    Recurring job scheduler.

    Features:
    - One timer per active job with a schedule expression
    - Concurrent firings on a worker pool
    - Disarm-then-arm as a single critical section per job
    - Re-arm after each firing from the original expression
    - Injectable clock; ``run_pending`` can be driven directly in tests
    """

    HEAP_SLACK = 64

    def __init__(
        self,
        store: JobStore,
        executor: Executor,
        calculator: Optional[ScheduleCalculator] = None,
        clock=None,
        tick_seconds: float = 1.0,
        max_workers: int = 10,
        name: str = "scheduler",
    ):
        self.store = store
        self.executor = executor
        self.calculator = calculator or store.calculator
        self.clock = clock or SystemClock()
        self.tick_seconds = tick_seconds
        self.name = name

        self._timers: Dict[int, ArmedTimer] = {}
        self._firing: Dict[int, ArmedTimer] = {}
        self._heap: List[Tuple[datetime, int, int]] = []
        self._job_locks: Dict[int, threading.RLock] = {}
        self._tokens = itertools.count(1)
        self._lock = threading.RLock()

        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="job-fire")
        self._futures: Set[Future] = set()

        self._running = False
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._wakeup = threading.Event()

    # -- locking -------------------------------------------------------------

    @contextmanager
    def locked(self, job_id: int) -> Iterator[None]:
        """Hold the per-job lock. Re-entrant, so callers may nest arm/disarm inside."""
        with self._lock:
            job_lock = self._job_locks.setdefault(job_id, threading.RLock())
        with job_lock:
            yield

    def forget_lock(self, job_id: int) -> None:
        """Drop the per-job lock of a job that no longer exists."""
        with self._lock:
            self._job_locks.pop(job_id, None)

    # -- arming --------------------------------------------------------------

    def load(self) -> int:
        """Arm every active job that has a schedule. Returns the number armed."""
        jobs = self.store.list_schedulable()
        armed = sum(1 for job in jobs if self.reschedule(job) is not None)
        logger.info(f"Loaded {len(jobs)} scheduled jobs, {armed} armed")
        return armed

    def reschedule(self, job: Job) -> Optional[datetime]:
        """
        Disarm the job's timer and arm a new one if the job is active and scheduled.

        Returns:
            The new fire time, or None when the job is left unarmed
        """
        with self.locked(job.id):
            self._disarm_locked(job.id)
            if not job.is_active or not job.schedule_expr:
                self._persist_next_run(job.id, None)
                logger.info(f"Job {job.id} is not schedulable (active={job.is_active}), left unarmed")
                return None
            return self._arm_locked(job.id, job.schedule_expr, job.last_run)

    arm = reschedule

    def disarm(self, job_id: int) -> bool:
        """
        Remove the job's timer. A firing in progress is not cancelled, only
        prevented from re-arming. Returns True if anything was disarmed.
        """
        with self.locked(job_id):
            disarmed = self._disarm_locked(job_id)
            if disarmed:
                self._persist_next_run(job_id, None)
            return disarmed

    def _disarm_locked(self, job_id: int) -> bool:
        with self._lock:
            timer = self._timers.pop(job_id, None)
            firing = self._firing.pop(job_id, None)
        if timer is not None:
            logger.info(f"Job {job_id} unscheduled")
        if firing is not None:
            logger.info(f"Job {job_id} disarmed while firing; it will not be re-armed")
        return timer is not None or firing is not None

    def _compact_heap_locked(self) -> None:
        # Disarmed and rescheduled timers leave stale entries behind until they come due
        if len(self._heap) <= 2 * len(self._timers) + self.HEAP_SLACK:
            return
        self._heap = [(t.fire_at, t.token, t.job_id) for t in self._timers.values()]
        heapq.heapify(self._heap)

    def _arm_locked(self, job_id: int, schedule_expr: str, last_run: Optional[datetime]) -> Optional[datetime]:
        now = self.clock.now()
        base = max(now, last_run) if last_run else now

        try:
            fire_at = self.calculator.next_fire_time(schedule_expr, base)
        except InvalidExpressionError as e:
            logger.error(f"Failed to schedule job {job_id}: {e}")
            self._record_schedule_error(job_id, str(e))
            return None
        except NoUpcomingOccurrenceError as e:
            logger.warning(f"Job {job_id} has no future runs, marking as 'completed': {e}")
            self._persist_next_run(job_id, None)
            self._persist_status(job_id, "completed")
            return None

        timer = ArmedTimer(job_id=job_id, fire_at=fire_at, schedule_expr=schedule_expr, token=next(self._tokens))
        with self._lock:
            self._timers[job_id] = timer
            heapq.heappush(self._heap, (fire_at, timer.token, job_id))
            self._compact_heap_locked()

        self._persist_next_run(job_id, fire_at)
        self._wakeup.set()
        logger.info(f"Job {job_id} scheduled with pattern '{schedule_expr}', next run at {fire_at.isoformat()}")
        return fire_at

    def _record_schedule_error(self, job_id: int, message: str) -> None:
        # Left unarmed until the job is explicitly updated again
        now = self.clock.now()
        try:
            self.store.set_next_run(job_id, None)
            self.store.set_status(job_id, "failed")
            self.store.append_log(
                job_id,
                "failed",
                message=f"Schedule error: {message}",
                started_at=now,
                completed_at=now,
                error_kind=ErrorKind.INVALID_EXPRESSION,
            )
        except Exception as e:
            logger.error(f"Error recording schedule failure of job {job_id}: {e}", exc_info=True)

    def _persist_next_run(self, job_id: int, next_run: Optional[datetime]) -> None:
        try:
            self.store.set_next_run(job_id, next_run)
        except Exception as e:
            logger.error(f"Error storing next_run of job {job_id}: {e}", exc_info=True)

    def _persist_status(self, job_id: int, status: str) -> None:
        try:
            self.store.set_status(job_id, status)
        except Exception as e:
            logger.error(f"Error storing status of job {job_id}: {e}", exc_info=True)

    # -- firing --------------------------------------------------------------

    def run_pending(self, now: Optional[datetime] = None) -> List[Future]:
        """Fire every timer due at ``now`` (default: the clock). Never blocks on handlers."""
        now = now or self.clock.now()
        due: List[ArmedTimer] = []

        with self._lock:
            while self._heap and self._heap[0][0] <= now:
                _, token, job_id = heapq.heappop(self._heap)
                timer = self._timers.get(job_id)
                if timer is None or timer.token != token:
                    continue  # stale
                del self._timers[job_id]
                self._firing[job_id] = timer
                due.append(timer)

        futures = []
        for timer in due:
            logger.debug(f"Firing job {timer.job_id} due at {timer.fire_at.isoformat()}")
            futures.append(self._submit(self._fire, timer))
        return futures

    def _fire(self, timer: ArmedTimer) -> Optional[ExecutionOutcome]:
        outcome = None
        try:
            with self.locked(timer.job_id):
                with self._lock:
                    current = self._firing.get(timer.job_id)
                if current is not timer:
                    logger.info(f"Job {timer.job_id} was disarmed before it started, skipping")
                    return None

                try:
                    execution = self.executor.start(timer.job_id)
                except AlreadyRunningError:
                    logger.warning(f"Job {timer.job_id} is still running, skipping run due at {timer.fire_at.isoformat()}")
                    execution = None
                except JobNotFoundError:
                    logger.warning(f"Job {timer.job_id} no longer exists, skipping")
                    execution = None

            if execution is not None:
                outcome = self.executor.finish(execution)
        except Exception as e:
            logger.error(f"Scheduled job {timer.job_id} execution failed: {e}", exc_info=True)
        finally:
            self._rearm_after_fire(timer)
        return outcome

    def _rearm_after_fire(self, timer: ArmedTimer) -> None:
        deleted = False
        try:
            with self.locked(timer.job_id):
                with self._lock:
                    current = self._firing.get(timer.job_id) is timer
                    if current:
                        del self._firing[timer.job_id]
                if not current:
                    deleted = self.store.find(timer.job_id) is None
                    return

                # Still the current firing, so the job is still active with this expression
                try:
                    job = self.store.find(timer.job_id)
                except Exception as e:
                    logger.error(f"Error loading job {timer.job_id} for re-arm: {e}", exc_info=True)
                    self._arm_locked(timer.job_id, timer.schedule_expr, None)
                    return

                if job is None:
                    logger.info(f"Job {timer.job_id} was deleted, not re-arming")
                    deleted = True
                    return
                self._arm_locked(job.id, timer.schedule_expr, job.last_run)
        except Exception as e:
            logger.error(f"Error re-arming job {timer.job_id}: {e}", exc_info=True)
        finally:
            if deleted:
                self.forget_lock(timer.job_id)

    def run_now(self, job_id: int) -> Tuple[Execution, Future]:
        """
        Run a job immediately, outside its schedule.

        The run is claimed synchronously, so ``AlreadyRunningError`` and
        ``JobNotFoundError`` reach the caller; the handler runs on the pool and
        the returned future resolves to its ``ExecutionOutcome``.
        """
        try:
            with self.locked(job_id):
                execution = self.executor.start(job_id)
        except JobNotFoundError:
            self.forget_lock(job_id)
            raise
        logger.info(f"Queued job {job_id} for immediate execution (run {execution.run_id})")
        return execution, self._submit(self.executor.finish, execution)

    def _submit(self, fn, *args) -> Future:
        future = self._pool.submit(fn, *args)
        with self._lock:
            self._futures.add(future)
        future.add_done_callback(self._forget)
        return future

    def _forget(self, future: Future) -> None:
        with self._lock:
            self._futures.discard(future)

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until no firing or on-demand run is in progress."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            with self._lock:
                pending = [f for f in self._futures if not f.done()]
            if not pending:
                return True
            remaining = None if deadline is None else deadline - time.monotonic()
            if remaining is not None and remaining <= 0:
                return False
            wait_futures(pending, timeout=remaining)

    # -- introspection -------------------------------------------------------

    def state(self, job_id: int) -> TimerState:
        with self._lock:
            if job_id in self._firing:
                return TimerState.FIRING
            if job_id in self._timers:
                return TimerState.ARMED
        return TimerState.UNARMED

    def armed_jobs(self) -> Dict[int, datetime]:
        """Job id -> next fire time for every armed timer."""
        with self._lock:
            return {job_id: timer.fire_at for job_id, timer in self._timers.items()}

    def next_fire(self, job_id: int) -> Optional[datetime]:
        with self._lock:
            timer = self._timers.get(job_id)
            return timer.fire_at if timer else None

    def stats(self) -> Dict[str, object]:
        with self._lock:
            return {
                "running": self._running,
                "armed_jobs": len(self._timers),
                "firing_jobs": len(self._firing),
                "in_flight_jobs": len(self.executor.running_jobs()),
            }

    # -- dispatch loop -------------------------------------------------------

    def start(self) -> None:
        """Start the dispatch loop thread."""
        if self._running:
            return

        self._running = True
        self._stop_event.clear()

        self._thread = threading.Thread(
            target=self._scheduler_loop,
            daemon=True,
            name=f"Scheduler-{self.name}",
        )
        self._thread.start()
        logger.info(f"Scheduler {self.name} started")

    def stop(self, wait: bool = True) -> None:
        """Stop the loop. In-flight firings finish when ``wait`` is set."""
        self._running = False
        self._stop_event.set()
        self._wakeup.set()

        if wait and self._thread:
            self._thread.join(timeout=5.0)

        self._pool.shutdown(wait=wait)
        logger.info(f"Scheduler {self.name} stopped")

    def _scheduler_loop(self) -> None:
        while self._running and not self._stop_event.is_set():
            self._wakeup.clear()
            try:
                self.run_pending()
            except Exception as e:
                logger.error(f"Scheduler error: {e}", exc_info=True)
            self._wakeup.wait(timeout=self._seconds_until_next_fire())

    def _seconds_until_next_fire(self) -> float:
        with self._lock:
            if not self._heap:
                return self.tick_seconds
            fire_at = self._heap[0][0]
        delay = (fire_at - self.clock.now()).total_seconds()
        return max(0.0, min(delay, self.tick_seconds))

    def __enter__(self) -> "Scheduler":
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.stop()

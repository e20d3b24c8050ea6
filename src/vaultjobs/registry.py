"""
Task registry: the closed mapping from job type to task handler.

Handlers only see their job's ``config``. They know nothing about scheduling,
logging of executions or other job types, so a defect in one handler cannot
leak into another type's runs.
"""

from enum import Enum
from typing import Any, Dict, List, Optional, Union
import logging
import threading

from .errors import UnknownJobTypeError, UnregisteredHandlerError

logger = logging.getLogger(__name__)


class JobType(str, Enum):
    """Job types understood by the engine."""
    BACKUP = "backup"
    CLEANUP = "cleanup"
    VIRUS_SCAN = "virus_scan"
    DUPLICATE_DETECTION = "duplicate_detection"
    WEBHOOK = "webhook"


class TaskHandler:
    """
    Base class for task handlers.

    ``execute`` returns a short result message on success and raises on
    failure. ``timeout`` (seconds) overrides the executor's default when set.
    """

    timeout: Optional[float] = None

    def execute(self, config: Dict[str, Any]) -> Optional[str]:
        raise NotImplementedError


def coerce_job_type(job_type: Union[JobType, str]) -> JobType:
    """Map a type tag onto ``JobType``, raising ``UnknownJobTypeError`` otherwise."""
    try:
        return JobType(job_type)
    except ValueError:
        raise UnknownJobTypeError(f"Unknown job type: {job_type}")


class TaskRegistry:
    """Thread-safe registry of one handler per job type."""

    def __init__(self):
        self._handlers: Dict[JobType, TaskHandler] = {}
        self._lock = threading.Lock()

    def register(self, job_type: Union[JobType, str], handler: TaskHandler) -> None:
        job_type = coerce_job_type(job_type)
        with self._lock:
            self._handlers[job_type] = handler
        logger.debug(f"Registered {type(handler).__name__} for job type '{job_type.value}'")

    def unregister(self, job_type: Union[JobType, str]) -> None:
        job_type = coerce_job_type(job_type)
        with self._lock:
            self._handlers.pop(job_type, None)

    def get(self, job_type: Union[JobType, str]) -> TaskHandler:
        """Resolve the handler for a type, raising ``UnregisteredHandlerError`` if none."""
        try:
            key = JobType(job_type)
        except ValueError:
            raise UnregisteredHandlerError(f"No handler registered for job type '{job_type}'")

        with self._lock:
            handler = self._handlers.get(key)
        if handler is None:
            raise UnregisteredHandlerError(f"No handler registered for job type '{key.value}'")
        return handler

    def types(self) -> List[str]:
        with self._lock:
            return sorted(job_type.value for job_type in self._handlers)

    def __contains__(self, job_type: object) -> bool:
        try:
            key = JobType(job_type)
        except ValueError:
            return False
        with self._lock:
            return key in self._handlers

"""
Exception hierarchy for the job engine.

Creation/update errors are raised to the caller; execution errors are caught
at the executor boundary and stored on the log entry as an ``ErrorKind``.
"""

from enum import Enum


class ErrorKind(str, Enum):
    """Failure kinds recorded on failed execution log entries."""
    INVALID_EXPRESSION = "invalid_expression"
    UNREGISTERED_HANDLER = "unregistered_handler"
    TIMED_OUT = "timed_out"
    HANDLER_ERROR = "handler_error"


class SchedulerError(Exception):
    """Base exception for job engine errors."""


class InvalidExpressionError(SchedulerError):
    """Raised when a schedule expression cannot be parsed."""


class NoUpcomingOccurrenceError(SchedulerError):
    """Raised when an expression has no match inside the search horizon."""


class UnknownJobTypeError(SchedulerError):
    """Raised when a job is created with a type that has no registered handler."""


class UnregisteredHandlerError(SchedulerError):
    """Raised when no handler is registered for a job type at execution time."""


class AlreadyRunningError(SchedulerError):
    """Raised when a job is triggered while a previous run is still in flight."""

    def __init__(self, job_id: int):
        super().__init__(f"Job {job_id} is already running")
        self.job_id = job_id


class TaskTimeoutError(SchedulerError):
    """Raised when a handler exceeds its timeout."""


class HandlerError(SchedulerError):
    """Raised by task handlers to report a failed run with a message."""


class JobNotFoundError(SchedulerError):
    """Raised when a job id does not exist."""

    def __init__(self, job_id: int):
        super().__init__(f"Job with id {job_id} not found")
        self.job_id = job_id


class InvalidJobError(SchedulerError):
    """Raised when a job definition or update payload is rejected."""

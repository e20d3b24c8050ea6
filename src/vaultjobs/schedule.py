"""
Schedule expression parsing.

Expressions are cron-style with five fields (minute, hour, day of month,
month, day of week) or six fields with a leading seconds field. Evaluation is
delegated to croniter; this module normalises the field layout, converts
between UTC storage time and the scheduling timezone, and maps croniter's
errors onto the engine's exception types.
"""

from datetime import datetime, timedelta
from typing import List, Optional
import logging

from croniter import croniter, CroniterBadDateError
import pytz

from .errors import InvalidExpressionError, NoUpcomingOccurrenceError

logger = logging.getLogger(__name__)

DEFAULT_HORIZON_YEARS = 5


def split_fields(schedule_expr: str) -> List[str]:
    """Split an expression into its fields, rejecting unsupported field counts."""
    if not isinstance(schedule_expr, str) or not schedule_expr.strip():
        raise InvalidExpressionError("Schedule expression must be a non-empty string")

    parts = schedule_expr.strip().split()
    if len(parts) not in (5, 6):
        raise InvalidExpressionError(
            f"Invalid schedule expression '{schedule_expr}': expected 5 or 6 fields, got {len(parts)}"
        )
    return parts


def to_croniter_expression(schedule_expr: str) -> str:
    """
    Rewrite an expression into croniter's layout.

    croniter reads a sixth field as seconds at the end; expressions here carry
    seconds first, so the leading field is moved to the back.
    """
    parts = split_fields(schedule_expr)
    if len(parts) == 6:
        parts = parts[1:] + parts[:1]
    return " ".join(parts)


def next_fire_time(
    schedule_expr: str,
    after: datetime,
    timezone: str = "UTC",
    horizon_years: int = DEFAULT_HORIZON_YEARS,
) -> datetime:
    """
    Earliest time strictly after ``after`` that matches ``schedule_expr``.

    Args:
        schedule_expr: Five or six field cron expression
        after: Naive UTC datetime to search from
        timezone: Timezone the expression is evaluated in
        horizon_years: Give up after this many years without a match

    Returns:
        The next fire time as a timezone-naive UTC datetime

    Raises:
        InvalidExpressionError: The expression (or timezone) cannot be parsed
        NoUpcomingOccurrenceError: No match within the horizon
    """
    expression = to_croniter_expression(schedule_expr)

    try:
        tz = pytz.timezone(timezone)
    except pytz.UnknownTimeZoneError:
        raise InvalidExpressionError(f"Unknown timezone: {timezone}")

    start = pytz.UTC.localize(after).astimezone(tz)

    try:
        cron = croniter(expression, start, max_years_between_matches=horizon_years)
    except (ValueError, TypeError, KeyError) as e:
        raise InvalidExpressionError(f"Invalid schedule expression '{schedule_expr}': {e}")

    try:
        next_run = cron.get_next(datetime)
    except CroniterBadDateError:
        raise NoUpcomingOccurrenceError(
            f"No occurrence of '{schedule_expr}' within {horizon_years} years after {after.isoformat()}"
        )
    except (ValueError, TypeError, KeyError) as e:
        raise InvalidExpressionError(f"Invalid schedule expression '{schedule_expr}': {e}")

    if next_run.tzinfo is None:
        next_run = tz.localize(next_run)

    # Convert to UTC and make timezone-naive for database storage
    next_run_utc = next_run.astimezone(pytz.UTC).replace(tzinfo=None)

    if next_run_utc - after > timedelta(days=366 * horizon_years):
        raise NoUpcomingOccurrenceError(
            f"No occurrence of '{schedule_expr}' within {horizon_years} years after {after.isoformat()}"
        )
    return next_run_utc


class ScheduleCalculator:
    """
    Schedule evaluation bound to a timezone and search horizon.

    The scheduler and the job store share one instance so validation at
    creation time and arming at run time agree on every expression.
    """

    def __init__(self, timezone: str = "UTC", horizon_years: int = DEFAULT_HORIZON_YEARS):
        self.timezone = timezone
        self.horizon_years = horizon_years

    def next_fire_time(self, schedule_expr: str, after: datetime) -> datetime:
        return next_fire_time(schedule_expr, after, self.timezone, self.horizon_years)

    def validate(self, schedule_expr: str, now: datetime) -> datetime:
        """
        Validate an expression by computing its first fire time.

        Raises the same errors as ``next_fire_time`` so create/update calls can
        reject the mutation.
        """
        return self.next_fire_time(schedule_expr, now)

    def is_valid(self, schedule_expr: Optional[str], now: datetime) -> bool:
        try:
            self.validate(schedule_expr, now)
            return True
        except (InvalidExpressionError, NoUpcomingOccurrenceError):
            return False

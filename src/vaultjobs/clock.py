"""Time source for the engine. All timestamps are naive UTC datetimes."""

from datetime import datetime

import pytz


def utcnow() -> datetime:
    """Current time as a timezone-naive UTC datetime, as stored in the database."""
    return datetime.now(pytz.UTC).replace(tzinfo=None)


class SystemClock:
    """Wall-clock time source."""

    def now(self) -> datetime:
        return utcnow()

"""Fixed-offset time helpers.

All engine timestamps live in ``settings.engine_tz``. Databases that drop
tz info on round-trip (SQLite) hand back naive values; those are read as
engine-local.
"""

from datetime import date, datetime, time, timedelta

from grade_engine.config import settings


def now() -> datetime:
    return datetime.now(settings.engine_tz)


def to_engine_tz(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=settings.engine_tz)
    return value.astimezone(settings.engine_tz)


def today() -> date:
    return now().date()


def end_of_day(day: date) -> datetime:
    """First instant *after* ``day`` in the engine offset (exclusive bound)."""
    return datetime.combine(day + timedelta(days=1), time.min, tzinfo=settings.engine_tz)

"""
Clinic clock helpers.

Appointments store a clinic-local wall clock (date + start/end time). These
helpers turn that into timezone-aware datetimes so policy windows can be
compared against ``now`` regardless of where the server runs.
"""

from datetime import UTC, date, datetime, time
from functools import lru_cache
from zoneinfo import ZoneInfo

from shared.config import get_settings


@lru_cache
def clinic_tz() -> ZoneInfo:
    """Timezone the clinic schedules in (settings.TIMEZONE)."""
    return ZoneInfo(get_settings().TIMEZONE)


def now_local() -> datetime:
    return datetime.now(clinic_tz())


def today_local() -> date:
    return now_local().date()


def ensure_aware(value: datetime) -> datetime:
    """
    Attach UTC to naive datetimes.

    TIMESTAMP WITH TIME ZONE columns come back naive on SQLite; they were
    written as UTC.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def combine_local(day: date, at: time) -> datetime:
    """Clinic-local wall clock -> aware datetime."""
    return datetime.combine(day, at, tzinfo=clinic_tz())


def appointment_start(appointment) -> datetime:
    return combine_local(appointment.date, appointment.start_time)


def appointment_end(appointment) -> datetime:
    return combine_local(appointment.date, appointment.end_time)

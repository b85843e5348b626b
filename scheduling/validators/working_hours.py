"""
Doctor working-hours rules.

A doctor's week is a list of WorkingHoursDay entries (0=Monday ... 6=Sunday).
validate_working_hours() enforces the clinic's schedule rules before a
schedule change is previewed or applied; falls_outside() tells whether an
existing appointment no longer fits a proposed week.

Reasons are returned in Spanish since they are shown to clinic staff as-is.
"""

from collections.abc import Iterable
from datetime import time

from pydantic import BaseModel, ConfigDict, Field

from scheduling.errors import WorkingHoursValidationError

DAY_NAMES_ES = ["lunes", "martes", "miércoles", "jueves", "viernes", "sábado", "domingo"]

OPENING_TIME = time(9, 0)
CLOSING_TIME = time(22, 0)
LUNCH_START = time(13, 0)
LUNCH_END = time(15, 0)
MIN_SPAN_MINUTES = 120


class WorkingHoursDay(BaseModel):
    """One weekday of a doctor's schedule."""

    model_config = ConfigDict(populate_by_name=True)

    day_of_week: int = Field(..., ge=0, le=6, alias="dia_semana")
    start_time: time | None = Field(None, alias="hora_inicio")
    end_time: time | None = Field(None, alias="hora_fin")
    is_enabled: bool = Field(True, alias="habilitado")


def _minutes(value: time) -> int:
    return value.hour * 60 + value.minute


def _check_day(day: WorkingHoursDay) -> None:
    name = DAY_NAMES_ES[day.day_of_week]

    def fail(reason: str) -> WorkingHoursValidationError:
        return WorkingHoursValidationError(f"{name}: {reason}", day_of_week=day.day_of_week)

    if day.start_time is None or day.end_time is None:
        raise fail("hora de inicio y hora de fin son obligatorias")

    start, end = day.start_time, day.end_time

    if start < OPENING_TIME:
        raise fail("la hora de inicio no puede ser antes de las 09:00")
    if end > CLOSING_TIME:
        raise fail("la hora de fin no puede ser después de las 22:00")
    if LUNCH_START <= start < LUNCH_END:
        raise fail("la hora de inicio no puede estar entre 13:00 y 15:00")
    if LUNCH_START < end <= LUNCH_END:
        raise fail("la hora de fin no puede estar entre 13:00 y 15:00")
    if not start < end:
        raise fail("la hora de inicio debe ser anterior a la hora de fin")
    if _minutes(end) - _minutes(start) < MIN_SPAN_MINUTES:
        raise fail("el horario debe cubrir al menos 2 horas")


def validate_working_hours(days: Iterable[WorkingHoursDay]) -> list[WorkingHoursDay]:
    """
    Validate a proposed weekly schedule.

    Args:
        days: Proposed entries; weekdays not listed count as disabled

    Returns:
        The entries sorted by day_of_week

    Raises:
        WorkingHoursValidationError: On the first violated rule
    """
    days = sorted(days, key=lambda d: d.day_of_week)

    seen: set[int] = set()
    for day in days:
        if day.day_of_week in seen:
            raise WorkingHoursValidationError(
                f"{DAY_NAMES_ES[day.day_of_week]} aparece más de una vez",
                day_of_week=day.day_of_week,
            )
        seen.add(day.day_of_week)

    enabled = [day for day in days if day.is_enabled]
    if not enabled:
        raise WorkingHoursValidationError("debe haber al menos un día habilitado")

    for day in enabled:
        _check_day(day)

    return days


def falls_outside(appointment, days: Iterable[WorkingHoursDay]) -> bool:
    """
    True when ``appointment`` does not fit inside ``days``.

    That is the case when its weekday is missing or disabled, or its
    [start_time, end_time] is not contained in that day's window.
    """
    weekday = appointment.date.weekday()
    for day in days:
        if day.day_of_week != weekday:
            continue
        if not day.is_enabled or day.start_time is None or day.end_time is None:
            return True
        return not (
            day.start_time <= appointment.start_time and appointment.end_time <= day.end_time
        )
    return True

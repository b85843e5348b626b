"""
Utility functions for the scheduling core.

- clock: clinic timezone and wall-clock to datetime conversion
"""

from scheduling.utils.clock import (
    appointment_end,
    appointment_start,
    clinic_tz,
    combine_local,
    ensure_aware,
    now_local,
    today_local,
)

__all__ = [
    "appointment_end",
    "appointment_start",
    "clinic_tz",
    "combine_local",
    "ensure_aware",
    "now_local",
    "today_local",
]

"""
Reschedule Policy Validator - timing and cap guards derived from the policy.

Pure functions over (appointment, PolicySnapshot, now). Nothing here reads
the database or mutates state; callers load the data and act on the result.
The AppointmentStateMachine consumes these guards before each transition.

Usage:
    validator = ReschedulePolicyValidator(await policy_service.get())

    opens_at, closes_at = validator.confirmation_window(appointment)
    validator.can_reschedule(appointment).raise_for_failure()
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Iterable, Protocol

from database.models import TERMINAL_STATUSES, AppointmentStatus, CancellationReason
from scheduling.errors import GuardReason, GuardViolation
from scheduling.utils.clock import combine_local, ensure_aware
from shared.policy_service import PolicySnapshot

logger = logging.getLogger(__name__)

# Cancellations that start the patient's cooldown period
PENALIZING_REASONS = frozenset({CancellationReason.PATIENT, CancellationReason.NO_SHOW})


class ScheduledItem(Protocol):
    """Anything with a clinic-local slot (Appointment rows, ProposedSlot)."""

    date: date
    start_time: time
    end_time: time


@dataclass(frozen=True)
class ProposedSlot:
    """A slot a patient wants to book (or move to)."""

    date: date
    start_time: time
    end_time: time

    @property
    def is_well_formed(self) -> bool:
        return self.end_time > self.start_time


@dataclass(frozen=True)
class GuardResult:
    """Outcome of a guard check."""

    ok: bool
    reason: GuardReason | None = None
    detail: str | None = None

    @classmethod
    def passed(cls) -> "GuardResult":
        return cls(ok=True)

    @classmethod
    def failed(cls, reason: GuardReason, detail: str | None = None) -> "GuardResult":
        return cls(ok=False, reason=reason, detail=detail)

    def __bool__(self) -> bool:
        return self.ok

    def raise_for_failure(self) -> None:
        if not self.ok:
            raise GuardViolation(self.reason, self.detail)


class ReschedulePolicyValidator:
    """Advisory guards for booking, confirmation and rescheduling."""

    def __init__(self, policy: PolicySnapshot) -> None:
        self.policy = policy

    # ------------------------------------------------------------------
    # Confirmation window
    # ------------------------------------------------------------------

    def confirmation_window(self, appointment: ScheduledItem) -> tuple[datetime, datetime]:
        """
        Return (opens_at, closes_at) for confirming ``appointment``.

        opens_at  = start - confirm_window_open_hours
        closes_at = start - confirm_window_close_hours
        """
        start = combine_local(appointment.date, appointment.start_time)
        return (
            start - timedelta(hours=self.policy.confirm_window_open_hours),
            start - timedelta(hours=self.policy.confirm_window_close_hours),
        )

    def is_within_confirmation_window(self, appointment: ScheduledItem, now: datetime) -> bool:
        opens_at, closes_at = self.confirmation_window(appointment)
        return opens_at <= ensure_aware(now) <= closes_at

    def can_confirm(self, appointment: ScheduledItem, now: datetime) -> GuardResult:
        if self.is_within_confirmation_window(appointment, now):
            return GuardResult.passed()
        opens_at, closes_at = self.confirmation_window(appointment)
        return GuardResult.failed(
            GuardReason.OUTSIDE_CONFIRMATION_WINDOW,
            f"Confirmation is only possible between {opens_at.isoformat()} "
            f"and {closes_at.isoformat()}",
        )

    def is_auto_confirm_eligible(self, appointment: ScheduledItem, booked_at: datetime) -> bool:
        """True when booked with less lead time than auto_confirm_threshold_hours."""
        start = combine_local(appointment.date, appointment.start_time)
        lead = start - ensure_aware(booked_at)
        return lead < timedelta(hours=self.policy.auto_confirm_threshold_hours)

    # ------------------------------------------------------------------
    # Booking
    # ------------------------------------------------------------------

    def cooldown_ends_at(self, patient_appointments: Iterable) -> datetime | None:
        """
        End of the patient's active cooldown, based on their latest
        penalizing cancellation. None when no cooldown applies.
        """
        if self.policy.cooldown_days <= 0:
            return None

        latest: datetime | None = None
        for appt in patient_appointments:
            if appt.status != AppointmentStatus.CANCELLED or appt.cancelled_at is None:
                continue
            if appt.cancellation_reason not in PENALIZING_REASONS:
                continue
            cancelled_at = ensure_aware(appt.cancelled_at)
            if latest is None or cancelled_at > latest:
                latest = cancelled_at

        if latest is None:
            return None
        return latest + timedelta(days=self.policy.cooldown_days)

    def can_book(
        self,
        patient_appointments: Iterable,
        slot: ScheduledItem,
        now: datetime,
    ) -> GuardResult:
        """
        Check whether a patient may book ``slot``.

        Checks, in order:
        1. slot_start - now >= min_lead_time_hours          (LeadTimeTooShort)
        2. same-day appointments < max per day              (DailyCapExceeded)
        3. non-terminal appointments < max active           (ActiveCapExceeded)
        4. no active cooldown from a prior cancellation     (PatientInCooldown)

        Args:
            patient_appointments: Every appointment of the patient (any state)
            slot: Proposed date/start/end
            now: Current instant (timezone-aware)
        """
        appointments = list(patient_appointments)
        now = ensure_aware(now)

        lead = combine_local(slot.date, slot.start_time) - now
        min_lead = timedelta(hours=self.policy.min_lead_time_hours)
        if lead < min_lead:
            return GuardResult.failed(
                GuardReason.LEAD_TIME_TOO_SHORT,
                f"Appointments must be booked at least "
                f"{self.policy.min_lead_time_hours}h in advance",
            )

        same_day = sum(
            1
            for appt in appointments
            if appt.date == slot.date and appt.status != AppointmentStatus.CANCELLED
        )
        if same_day >= self.policy.max_appointments_per_patient_per_day:
            return GuardResult.failed(
                GuardReason.DAILY_CAP_EXCEEDED,
                f"Patient already has {same_day} appointment(s) on {slot.date.isoformat()}",
            )

        active = sum(1 for appt in appointments if appt.status not in TERMINAL_STATUSES)
        if active >= self.policy.max_active_appointments_per_patient:
            return GuardResult.failed(
                GuardReason.ACTIVE_CAP_EXCEEDED,
                f"Patient already has {active} active appointment(s)",
            )

        cooldown_end = self.cooldown_ends_at(appointments)
        if cooldown_end is not None and now < cooldown_end:
            return GuardResult.failed(
                GuardReason.PATIENT_IN_COOLDOWN,
                f"Patient cannot book until {cooldown_end.isoformat()}",
            )

        return GuardResult.passed()

    # ------------------------------------------------------------------
    # Rescheduling
    # ------------------------------------------------------------------

    def can_reschedule(self, appointment) -> GuardResult:
        if appointment.reschedule_count < self.policy.max_reschedules_per_appointment:
            return GuardResult.passed()
        return GuardResult.failed(
            GuardReason.RESCHEDULE_LIMIT_REACHED,
            f"Appointment was already rescheduled {appointment.reschedule_count} time(s); "
            f"the limit is {self.policy.max_reschedules_per_appointment}",
        )

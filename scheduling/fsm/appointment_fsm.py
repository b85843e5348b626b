"""
AppointmentStateMachine - lifecycle controller for a single appointment.

Owns the valid state transitions of an appointment and runs the policy
guards (ReschedulePolicyValidator) before each one. The machine mutates the
Appointment it is handed; persisting the change is the caller's job.

Key responsibilities:
- Validate (state, trigger) against TRANSITIONS
- Compare the caller's expected_version with the stored version
- Reserve maintenance transitions for the orchestrator (OrchestratorToken)
- Log every accepted transition

The version bump itself happens on flush: Appointment.version is the
mapper's version_id_col, so a concurrent commit between load and flush
surfaces as StaleDataError, which callers translate to StaleVersion.
"""

import logging
from datetime import UTC, datetime
from typing import ClassVar
from uuid import UUID

from database.models import Appointment, AppointmentStatus, CancellationReason
from scheduling.errors import GuardReason, GuardViolation, StaleVersion
from scheduling.fsm.models import OrchestratorToken, TransitionResult, Trigger
from scheduling.utils.clock import appointment_start, ensure_aware
from scheduling.validators.policy_validator import ProposedSlot, ReschedulePolicyValidator
from shared.policy_service import PolicySnapshot

logger = logging.getLogger(__name__)


class AppointmentStateMachine:
    """
    Finite state machine for appointment lifecycles.

    Example:
        >>> fsm = AppointmentStateMachine(policy)
        >>> fsm.confirm(appointment, expected_version=appointment.version, now=now)
        >>> appointment.status
        AppointmentStatus.CONFIRMED
    """

    # Valid transitions: from_state -> {trigger: to_state}
    TRANSITIONS: ClassVar[dict[AppointmentStatus, dict[Trigger, AppointmentStatus]]] = {
        AppointmentStatus.PENDING: {
            Trigger.CONFIRM: AppointmentStatus.CONFIRMED,
            Trigger.CANCEL: AppointmentStatus.CANCELLED,
            Trigger.START_RESCHEDULE: AppointmentStatus.RESCHEDULING,
            Trigger.HOLD_FOR_MAINTENANCE: AppointmentStatus.MAINTENANCE,
        },
        AppointmentStatus.CONFIRMED: {
            Trigger.CANCEL: AppointmentStatus.CANCELLED,
            Trigger.COMPLETE: AppointmentStatus.COMPLETED,
            Trigger.START_RESCHEDULE: AppointmentStatus.RESCHEDULING,
            Trigger.HOLD_FOR_MAINTENANCE: AppointmentStatus.MAINTENANCE,
        },
        AppointmentStatus.RESCHEDULING: {
            Trigger.ASSIGN_SLOT: AppointmentStatus.PENDING,
            Trigger.HOLD_FOR_MAINTENANCE: AppointmentStatus.MAINTENANCE,
        },
        AppointmentStatus.MAINTENANCE: {
            Trigger.RELEASE_FROM_MAINTENANCE: AppointmentStatus.PENDING,
            Trigger.TRANSFER_HOLD: AppointmentStatus.MAINTENANCE,
        },
        # Terminal
        AppointmentStatus.CANCELLED: {},
        AppointmentStatus.COMPLETED: {},
    }

    ORCHESTRATOR_TRIGGERS: ClassVar[frozenset[Trigger]] = frozenset(
        {
            Trigger.HOLD_FOR_MAINTENANCE,
            Trigger.RELEASE_FROM_MAINTENANCE,
            Trigger.TRANSFER_HOLD,
        }
    )

    def __init__(self, policy: PolicySnapshot) -> None:
        self.policy = policy
        self.validator = ReschedulePolicyValidator(policy)

    @classmethod
    def can_transition(cls, state: AppointmentStatus, trigger: Trigger) -> bool:
        """True if ``trigger`` is allowed from ``state`` (ignores guards)."""
        return trigger in cls.TRANSITIONS.get(state, {})

    def initial_status(self, slot, booked_at: datetime) -> AppointmentStatus:
        """pending, or confirmed when booked inside the auto-confirm threshold."""
        if self.validator.is_auto_confirm_eligible(slot, booked_at):
            return AppointmentStatus.CONFIRMED
        return AppointmentStatus.PENDING

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _check(
        self,
        appointment: Appointment,
        trigger: Trigger,
        expected_version: int,
        token: OrchestratorToken | None = None,
    ) -> AppointmentStatus:
        """Run the checks shared by every trigger; return the target state."""
        if appointment.version != expected_version:
            raise StaleVersion(appointment.id, expected=expected_version, actual=appointment.version)

        if trigger in self.ORCHESTRATOR_TRIGGERS and not isinstance(token, OrchestratorToken):
            raise GuardViolation(
                GuardReason.ORCHESTRATOR_ONLY,
                f"{trigger.value} can only be performed by the maintenance orchestrator",
            )

        if not self.can_transition(appointment.status, trigger):
            raise GuardViolation(
                GuardReason.INVALID_TRANSITION,
                f"Cannot {trigger.value} an appointment in state {appointment.status.value}",
            )

        return self.TRANSITIONS[appointment.status][trigger]

    def _commit(
        self,
        appointment: Appointment,
        trigger: Trigger,
        to_state: AppointmentStatus,
    ) -> TransitionResult:
        from_state = appointment.status
        appointment.status = to_state

        logger.info(
            f"Appointment {appointment.id}: {from_state.value} -> {to_state.value} ({trigger.value})",
            extra={"appointment_id": str(appointment.id)},
        )
        return TransitionResult(
            appointment_id=appointment.id,
            trigger=trigger,
            from_state=from_state,
            to_state=to_state,
        )

    # ------------------------------------------------------------------
    # Patient / staff transitions
    # ------------------------------------------------------------------

    def confirm(
        self,
        appointment: Appointment,
        *,
        expected_version: int,
        now: datetime | None = None,
    ) -> TransitionResult:
        now = ensure_aware(now or datetime.now(UTC))
        to_state = self._check(appointment, Trigger.CONFIRM, expected_version)

        self.validator.can_confirm(appointment, now).raise_for_failure()

        appointment.confirmed_at = now
        return self._commit(appointment, Trigger.CONFIRM, to_state)

    def cancel(
        self,
        appointment: Appointment,
        *,
        expected_version: int,
        reason: CancellationReason = CancellationReason.PATIENT,
        now: datetime | None = None,
    ) -> TransitionResult:
        """Cancel. reschedule_count is left as is."""
        now = ensure_aware(now or datetime.now(UTC))
        to_state = self._check(appointment, Trigger.CANCEL, expected_version)

        appointment.cancelled_at = now
        appointment.cancellation_reason = reason
        return self._commit(appointment, Trigger.CANCEL, to_state)

    def complete(
        self,
        appointment: Appointment,
        *,
        expected_version: int,
        attendance_recorded: bool,
        now: datetime | None = None,
    ) -> TransitionResult:
        """
        Mark a confirmed appointment as completed.

        Args:
            attendance_recorded: Whether an AttendanceRecord exists; it is
                written outside the lifecycle (record_attendance)
        """
        now = ensure_aware(now or datetime.now(UTC))
        to_state = self._check(appointment, Trigger.COMPLETE, expected_version)

        if now < appointment_start(appointment):
            raise GuardViolation(
                GuardReason.APPOINTMENT_NOT_ELAPSED,
                "The appointment has not started yet",
            )
        if not attendance_recorded:
            raise GuardViolation(
                GuardReason.ATTENDANCE_MISSING,
                "Attendance must be recorded before completing the appointment",
            )

        appointment.completed_at = now
        return self._commit(appointment, Trigger.COMPLETE, to_state)

    def start_reschedule(
        self,
        appointment: Appointment,
        *,
        expected_version: int,
    ) -> TransitionResult:
        to_state = self._check(appointment, Trigger.START_RESCHEDULE, expected_version)

        self.validator.can_reschedule(appointment).raise_for_failure()

        appointment.reschedule_count += 1
        return self._commit(appointment, Trigger.START_RESCHEDULE, to_state)

    def assign_slot(
        self,
        appointment: Appointment,
        *,
        expected_version: int,
        slot: ProposedSlot,
    ) -> TransitionResult:
        """Move a rescheduling appointment to ``slot``; it goes back to pending."""
        to_state = self._check(appointment, Trigger.ASSIGN_SLOT, expected_version)

        if not slot.is_well_formed:
            raise GuardViolation(GuardReason.INVALID_SLOT, "end_time must be after start_time")

        appointment.date = slot.date
        appointment.start_time = slot.start_time
        appointment.end_time = slot.end_time
        appointment.confirmed_at = None
        return self._commit(appointment, Trigger.ASSIGN_SLOT, to_state)

    # ------------------------------------------------------------------
    # Maintenance transitions (orchestrator only)
    # ------------------------------------------------------------------

    def hold_for_maintenance(
        self,
        appointment: Appointment,
        *,
        expected_version: int,
        batch_id: UUID,
        token: OrchestratorToken | None,
    ) -> TransitionResult:
        to_state = self._check(appointment, Trigger.HOLD_FOR_MAINTENANCE, expected_version, token)

        appointment.maintenance_batch_id = batch_id
        return self._commit(appointment, Trigger.HOLD_FOR_MAINTENANCE, to_state)

    def release_from_maintenance(
        self,
        appointment: Appointment,
        *,
        expected_version: int,
        token: OrchestratorToken | None,
    ) -> TransitionResult:
        """Back to pending. maintenance_batch_id stays for audit."""
        to_state = self._check(appointment, Trigger.RELEASE_FROM_MAINTENANCE, expected_version, token)

        appointment.confirmed_at = None
        return self._commit(appointment, Trigger.RELEASE_FROM_MAINTENANCE, to_state)

    def transfer_hold(
        self,
        appointment: Appointment,
        *,
        expected_version: int,
        batch_id: UUID,
        token: OrchestratorToken | None,
    ) -> TransitionResult:
        """Keep the appointment in maintenance under another batch."""
        to_state = self._check(appointment, Trigger.TRANSFER_HOLD, expected_version, token)

        appointment.maintenance_batch_id = batch_id
        return self._commit(appointment, Trigger.TRANSFER_HOLD, to_state)

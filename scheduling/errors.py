"""
Error taxonomy for the appointment lifecycle and maintenance core.

Every error carries a stable ``code`` (used by the API layer for the response
body) and a ``retryable`` flag. Concurrency conflicts are retryable by the
caller after re-reading state; the core never retries them itself.
"""

from enum import Enum
from typing import Any


class SchedulingError(Exception):
    """Base exception for the scheduling core."""

    code = "scheduling_error"
    retryable = False

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.code,
            "detail": self.message,
            "retryable": self.retryable,
        }


class PolicyValidationError(SchedulingError):
    """Raised when a policy (or working-hours) update is rejected."""

    code = "policy_validation_error"

    def __init__(self, field: str, reason: str) -> None:
        super().__init__(f"{field}: {reason}")
        self.field = field
        self.reason = reason

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data.update({"field": self.field, "reason": self.reason})
        return data


class WorkingHoursValidationError(PolicyValidationError):
    """Raised when a proposed weekly schedule breaks the clinic's rules."""

    code = "working_hours_validation_error"

    def __init__(self, reason: str, day_of_week: int | None = None) -> None:
        super().__init__("working_hours", reason)
        self.day_of_week = day_of_week

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["day_of_week"] = self.day_of_week
        return data


class GuardReason(str, Enum):
    """Why a transition guard refused."""

    # Booking policy
    LEAD_TIME_TOO_SHORT = "LeadTimeTooShort"
    DAILY_CAP_EXCEEDED = "DailyCapExceeded"
    ACTIVE_CAP_EXCEEDED = "ActiveCapExceeded"
    PATIENT_IN_COOLDOWN = "PatientInCooldown"
    RESOURCE_INACTIVE = "ResourceInactive"

    # Lifecycle
    RESCHEDULE_LIMIT_REACHED = "RescheduleLimitReached"
    OUTSIDE_CONFIRMATION_WINDOW = "OutsideConfirmationWindow"
    APPOINTMENT_NOT_ELAPSED = "AppointmentNotElapsed"
    ATTENDANCE_MISSING = "AttendanceMissing"
    INVALID_SLOT = "InvalidSlot"
    INVALID_TRANSITION = "InvalidTransition"
    ORCHESTRATOR_ONLY = "OrchestratorOnly"


class GuardViolation(SchedulingError):
    """Raised when a transition is blocked by policy or by the state table."""

    code = "guard_violation"

    def __init__(self, reason: GuardReason | str, detail: str | None = None) -> None:
        reason = reason.value if isinstance(reason, GuardReason) else reason
        super().__init__(detail or reason)
        self.reason = reason
        self.detail = detail

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["reason"] = self.reason
        return data


class StaleVersion(SchedulingError):
    """Optimistic concurrency conflict on an appointment."""

    code = "stale_version"
    retryable = True

    def __init__(
        self,
        appointment_id: Any,
        expected: int | None = None,
        actual: int | None = None,
    ) -> None:
        super().__init__(
            f"Appointment {appointment_id} was modified concurrently "
            f"(expected version {expected}, found {actual})"
        )
        self.appointment_id = appointment_id
        self.expected = expected
        self.actual = actual

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data.update({
            "appointment_id": str(self.appointment_id),
            "expected_version": self.expected,
            "actual_version": self.actual,
        })
        return data


class ResourceBusy(SchedulingError):
    """Another maintenance apply holds the resource lock."""

    code = "resource_busy"
    retryable = True

    def __init__(self, resource_type: str, resource_id: Any) -> None:
        super().__init__(
            f"{resource_type} {resource_id} is being processed by another operation"
        )
        self.resource_type = resource_type
        self.resource_id = resource_id


class ApplyAborted(SchedulingError):
    """A maintenance apply was rolled back; nothing was changed."""

    code = "apply_aborted"
    retryable = True

    def __init__(self, cause: str) -> None:
        super().__init__(f"Apply aborted: {cause}")
        self.cause = cause

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["cause"] = self.cause
        return data


class NotFound(SchedulingError):
    """Referenced entity does not exist."""

    code = "not_found"

    def __init__(self, entity: str, entity_id: Any) -> None:
        super().__init__(f"{entity} {entity_id} not found")
        self.entity = entity
        self.entity_id = entity_id


class NotAuthorized(SchedulingError):
    """Operator is not allowed to act on the target resource."""

    code = "not_authorized"

"""
Appointment FSM data models.

- Trigger: named transitions of an appointment
- OrchestratorToken: capability required by maintenance transitions
- TransitionResult: what an accepted transition did
"""

from dataclasses import dataclass
from enum import Enum
from uuid import UUID

from database.models import AppointmentStatus


class Trigger(str, Enum):
    """Transitions an appointment can go through."""

    CONFIRM = "confirm"
    CANCEL = "cancel"
    COMPLETE = "complete"
    START_RESCHEDULE = "start_reschedule"
    ASSIGN_SLOT = "assign_slot"

    # Maintenance (orchestrator only)
    HOLD_FOR_MAINTENANCE = "hold_for_maintenance"
    RELEASE_FROM_MAINTENANCE = "release_from_maintenance"
    TRANSFER_HOLD = "transfer_hold"


@dataclass(frozen=True)
class OrchestratorToken:
    """
    Proof that the caller is the maintenance orchestrator.

    Only scheduling.services.maintenance_orchestrator creates these, one per
    apply call.
    """

    batch_id: UUID


@dataclass(frozen=True)
class TransitionResult:
    """An accepted transition."""

    appointment_id: UUID
    trigger: Trigger
    from_state: AppointmentStatus
    to_state: AppointmentStatus

from scheduling.fsm.appointment_fsm import AppointmentStateMachine
from scheduling.fsm.models import OrchestratorToken, TransitionResult, Trigger

__all__ = [
    "AppointmentStateMachine",
    "OrchestratorToken",
    "TransitionResult",
    "Trigger",
]

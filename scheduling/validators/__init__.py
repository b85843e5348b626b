from scheduling.validators.policy_validator import (
    GuardResult,
    ProposedSlot,
    ReschedulePolicyValidator,
)
from scheduling.validators.working_hours import (
    WorkingHoursDay,
    falls_outside,
    validate_working_hours,
)

__all__ = [
    "GuardResult",
    "ProposedSlot",
    "ReschedulePolicyValidator",
    "WorkingHoursDay",
    "falls_outside",
    "validate_working_hours",
]

"""
Operator authorization context.

Every orchestrator and policy call receives an explicit OperatorContext
instead of reading a global "is admin" flag. Admins may act on any resource;
a doctor operator may only manage their own doctor resource.
"""

from dataclasses import dataclass
from enum import Enum
from uuid import UUID

from database.models import CancellationReason, ResourceType
from scheduling.errors import NotAuthorized


class OperatorRole(str, Enum):
    ADMIN = "admin"
    DOCTOR = "doctor"
    PATIENT = "patient"


@dataclass(frozen=True)
class OperatorContext:
    """Authenticated caller, as decoded from the bearer token."""

    operator_id: str
    role: OperatorRole
    doctor_id: UUID | None = None
    patient_id: UUID | None = None

    @property
    def is_admin(self) -> bool:
        return self.role is OperatorRole.ADMIN


def ensure_admin(operator: OperatorContext) -> None:
    if not operator.is_admin:
        raise NotAuthorized(f"Operator {operator.operator_id} is not an administrator")


def ensure_can_manage_resource(
    operator: OperatorContext,
    resource_type: ResourceType,
    resource_id: UUID,
) -> None:
    """
    Raise NotAuthorized unless ``operator`` may change ``resource_id``.

    Rooms are shared clinic infrastructure and are admin-only.
    """
    if operator.is_admin:
        return
    if (
        operator.role is OperatorRole.DOCTOR
        and resource_type is ResourceType.DOCTOR
        and operator.doctor_id == resource_id
    ):
        return
    raise NotAuthorized(
        f"Operator {operator.operator_id} cannot manage {resource_type.value} {resource_id}"
    )


def ensure_can_act_on_appointment(
    operator: OperatorContext,
    appointment,
    *,
    staff_only: bool = False,
) -> None:
    """
    Raise NotAuthorized unless ``operator`` may act on ``appointment``.

    Doctors act on their own appointments, patients on the ones they booked.
    ``staff_only`` excludes patients (completion, attendance).
    """
    if operator.is_admin:
        return
    if operator.role is OperatorRole.DOCTOR and operator.doctor_id == appointment.doctor_id:
        return
    if (
        not staff_only
        and operator.role is OperatorRole.PATIENT
        and operator.patient_id == appointment.patient_id
    ):
        return
    raise NotAuthorized(
        f"Operator {operator.operator_id} cannot act on appointment {appointment.id}"
    )


def ensure_can_cancel_with_reason(operator: OperatorContext, reason: CancellationReason) -> None:
    """
    Patients may only cancel as themselves.

    Clinic and no-show cancellations are recorded by staff. A patient giving
    the clinic reason would skip their own cooldown.
    """
    if operator.role is OperatorRole.PATIENT and reason is not CancellationReason.PATIENT:
        raise NotAuthorized(
            f"Operator {operator.operator_id} cannot cancel with reason {reason.value}"
        )

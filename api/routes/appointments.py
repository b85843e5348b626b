"""
Appointment lifecycle API endpoints.

Every transition takes the version the client last read; a 409 with
retryable=true means the appointment changed in the meantime and the client
should GET it again before retrying.
"""

import logging
from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status

from api.dependencies import CurrentOperator, get_appointment_service
from api.schemas import (
    AppointmentResponse,
    AssignSlotRequest,
    AttendanceRequest,
    AttendanceResponse,
    BookAppointmentRequest,
    CancelRequest,
    VersionedRequest,
)
from scheduling.authorization import (
    OperatorRole,
    ensure_can_act_on_appointment,
    ensure_can_cancel_with_reason,
)
from scheduling.services.appointment_service import AppointmentService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/citas", tags=["citas"])

Service = Annotated[AppointmentService, Depends(get_appointment_service)]


async def _authorized(
    service: AppointmentService,
    operator,
    appointment_id: UUID,
    *,
    staff_only: bool = False,
) -> None:
    appointment = await service.get(appointment_id)
    ensure_can_act_on_appointment(operator, appointment, staff_only=staff_only)


@router.post("", response_model=AppointmentResponse, status_code=status.HTTP_201_CREATED)
async def book_appointment(
    request: BookAppointmentRequest,
    operator: CurrentOperator,
    service: Service,
) -> AppointmentResponse:
    """Book a slot. Patients always book for themselves."""
    if operator.role is OperatorRole.PATIENT:
        patient_id = operator.patient_id
    else:
        patient_id = request.patient_id
    if patient_id is None:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="patient_id is required",
        )

    appointment = await service.book(
        patient_id,
        request.doctor_id,
        request.room_id,
        request.date,
        request.start_time,
        request.end_time,
    )
    return AppointmentResponse.model_validate(appointment)


@router.get("/{appointment_id}", response_model=AppointmentResponse)
async def get_appointment(
    appointment_id: UUID,
    operator: CurrentOperator,
    service: Service,
) -> AppointmentResponse:
    appointment = await service.get(appointment_id)
    ensure_can_act_on_appointment(operator, appointment)
    return AppointmentResponse.model_validate(appointment)


@router.post("/{appointment_id}/confirm", response_model=AppointmentResponse)
async def confirm_appointment(
    appointment_id: UUID,
    request: VersionedRequest,
    operator: CurrentOperator,
    service: Service,
) -> AppointmentResponse:
    await _authorized(service, operator, appointment_id)
    appointment = await service.confirm(appointment_id, expected_version=request.version)
    return AppointmentResponse.model_validate(appointment)


@router.post("/{appointment_id}/cancel", response_model=AppointmentResponse)
async def cancel_appointment(
    appointment_id: UUID,
    request: CancelRequest,
    operator: CurrentOperator,
    service: Service,
) -> AppointmentResponse:
    """Cancel. Patients can only give the patient reason."""
    ensure_can_cancel_with_reason(operator, request.reason)
    await _authorized(service, operator, appointment_id)
    appointment = await service.cancel(
        appointment_id,
        expected_version=request.version,
        reason=request.reason,
    )
    return AppointmentResponse.model_validate(appointment)


@router.post("/{appointment_id}/reschedule", response_model=AppointmentResponse)
async def start_reschedule(
    appointment_id: UUID,
    request: VersionedRequest,
    operator: CurrentOperator,
    service: Service,
) -> AppointmentResponse:
    await _authorized(service, operator, appointment_id)
    appointment = await service.start_reschedule(appointment_id, expected_version=request.version)
    return AppointmentResponse.model_validate(appointment)


@router.post("/{appointment_id}/assign-slot", response_model=AppointmentResponse)
async def assign_slot(
    appointment_id: UUID,
    request: AssignSlotRequest,
    operator: CurrentOperator,
    service: Service,
) -> AppointmentResponse:
    await _authorized(service, operator, appointment_id)
    appointment = await service.assign_new_slot(
        appointment_id,
        expected_version=request.version,
        day=request.date,
        start_time=request.start_time,
        end_time=request.end_time,
    )
    return AppointmentResponse.model_validate(appointment)


@router.post("/{appointment_id}/attendance", response_model=AttendanceResponse)
async def record_attendance(
    appointment_id: UUID,
    request: AttendanceRequest,
    operator: CurrentOperator,
    service: Service,
) -> AttendanceResponse:
    await _authorized(service, operator, appointment_id, staff_only=True)
    record = await service.record_attendance(appointment_id, notes=request.notes)
    return AttendanceResponse.model_validate(record)


@router.post("/{appointment_id}/complete", response_model=AppointmentResponse)
async def complete_appointment(
    appointment_id: UUID,
    request: VersionedRequest,
    operator: CurrentOperator,
    service: Service,
) -> AppointmentResponse:
    await _authorized(service, operator, appointment_id, staff_only=True)
    appointment = await service.complete(appointment_id, expected_version=request.version)
    return AppointmentResponse.model_validate(appointment)

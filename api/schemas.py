"""
Request/response models for the scheduling API.

Field names of the maintenance responses (total_afectadas, por_estado, ...)
are the ones the admin panel already consumes.
"""

import datetime as dt
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from database.models import AppointmentStatus, CancellationReason
from scheduling.validators.working_hours import WorkingHoursDay


# =============================================================================
# Maintenance
# =============================================================================


class ManifestItem(BaseModel):
    """One affected appointment, as listed in previews and manifests."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    date: str
    time: str
    patient_first_name: str = ""
    patient_last_name: str = ""
    patient_phone: str = ""
    doctor_first_name: str = ""
    doctor_last_name: str = ""


class ResourceStateResponse(BaseModel):
    id: UUID
    active: bool


class MaintenancePreviewResponse(BaseModel):
    total_afectadas: int
    por_estado: dict[str, int]
    items: list[ManifestItem]


class ApplyMaintenanceRequest(BaseModel):
    confirm: bool = False
    set_inactive: bool = True


class ApplyMaintenanceResponse(BaseModel):
    batch_id: UUID | None = None
    total_mantenimiento: int
    items: list[ManifestItem]
    resource: ResourceStateResponse


class ReactivatePreviewResponse(BaseModel):
    total_pendientes: int
    total_retenidas: int = 0
    items: list[ManifestItem] = Field(default_factory=list)


class ApplyReactivateRequest(BaseModel):
    set_active: bool = True


class ApplyReactivateResponse(BaseModel):
    batch_id: UUID | None = None
    total_pendientes: int
    total_retenidas: int = 0
    resource: ResourceStateResponse


class ScheduleChangeRequest(BaseModel):
    horarios: list[WorkingHoursDay]


class ApplyScheduleChangeRequest(ScheduleChangeRequest):
    confirm: bool = False


class ScheduleChangePreviewResponse(BaseModel):
    total_afectadas: int
    items: list[ManifestItem]


class ApplyScheduleChangeResponse(BaseModel):
    batch_id: UUID | None = None
    total_mantenimiento: int
    items: list[ManifestItem]


# =============================================================================
# Policy
# =============================================================================


class PolicyResponse(BaseModel):
    max_active_appointments_per_patient: int
    confirm_window_open_hours: int
    confirm_window_close_hours: int
    auto_confirm_threshold_hours: int
    max_appointments_per_patient_per_day: int
    cooldown_days: int
    max_reschedules_per_appointment: int
    min_lead_time_hours: int
    contact_phone: str
    version: int
    updated_at: str | None = None
    updated_by: str | None = None


class PolicyUpdateRequest(BaseModel):
    """Partial update; only the fields sent are changed."""

    max_active_appointments_per_patient: int | None = None
    confirm_window_open_hours: int | None = None
    confirm_window_close_hours: int | None = None
    auto_confirm_threshold_hours: int | None = None
    max_appointments_per_patient_per_day: int | None = None
    cooldown_days: int | None = None
    max_reschedules_per_appointment: int | None = None
    min_lead_time_hours: int | None = None
    contact_phone: str | None = None
    reason: str | None = Field(None, description="Optional reason for the change")


class PolicyHistoryEntry(BaseModel):
    id: str
    policy_version: int
    previous_values: dict[str, Any] | None
    new_values: dict[str, Any]
    changed_by: str
    change_reason: str | None = None
    changed_at: str | None = None


class PolicyHistoryResponse(BaseModel):
    entries: list[PolicyHistoryEntry]
    total: int


# =============================================================================
# Appointments
# =============================================================================


class AppointmentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    patient_id: UUID
    doctor_id: UUID
    room_id: UUID
    date: dt.date
    start_time: dt.time
    end_time: dt.time
    status: AppointmentStatus
    reschedule_count: int
    maintenance_batch_id: UUID | None = None
    version: int
    booked_at: dt.datetime | None = None
    confirmed_at: dt.datetime | None = None
    cancelled_at: dt.datetime | None = None
    completed_at: dt.datetime | None = None
    cancellation_reason: CancellationReason | None = None


class BookAppointmentRequest(BaseModel):
    patient_id: UUID | None = Field(None, description="Required for staff; patients book for themselves")
    doctor_id: UUID
    room_id: UUID
    date: dt.date
    start_time: dt.time
    end_time: dt.time


class VersionedRequest(BaseModel):
    version: int = Field(..., description="Version of the appointment the caller last read")


class CancelRequest(VersionedRequest):
    reason: CancellationReason = CancellationReason.PATIENT


class AssignSlotRequest(VersionedRequest):
    date: dt.date
    start_time: dt.time
    end_time: dt.time


class AttendanceRequest(BaseModel):
    notes: str | None = None


class AttendanceResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    appointment_id: UUID
    notes: str | None = None
    recorded_at: dt.datetime | None = None

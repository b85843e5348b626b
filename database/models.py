"""
SQLAlchemy ORM models for the clinic scheduling core.

This module defines the tables:
- patients: Clinic patients (identity lives in the external user service)
- doctors / doctor_working_hours: Odontólogos and their weekly schedule
- rooms: Consultorios (treatment rooms)
- appointments: Citas with lifecycle state and optimistic version token
- maintenance_batches: Groups of appointments moved together by one apply
- attendance_records: Clinical attention records gating completion
- scheduling_policy / scheduling_policy_history: Tunable timing policy

All models use:
- UUID primary keys (auto-generated), except the singleton policy row
- TIMESTAMP WITH TIME ZONE for audit datetime fields
- JSON columns (JSONB on PostgreSQL) for batch manifests and audit payloads
"""

import datetime as dt
from enum import Enum as PyEnum
from typing import Any, Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    TIMESTAMP,
    Boolean,
    CheckConstraint,
    Date,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Time,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy import (
    Enum as SQLEnum,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite test database)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.UTC)


# ============================================================================
# Base Class
# ============================================================================


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


# ============================================================================
# Enums
# ============================================================================


class AppointmentStatus(str, PyEnum):
    """Appointment lifecycle status."""

    PENDING = "pending"              # Agendada, esperando confirmación
    CONFIRMED = "confirmed"          # Paciente confirmó asistencia
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    RESCHEDULING = "rescheduling"    # Esperando nuevo horario
    MAINTENANCE = "maintenance"      # Recurso fuera de servicio

    def __str__(self):
        return self.value


TERMINAL_STATUSES = frozenset({AppointmentStatus.CANCELLED, AppointmentStatus.COMPLETED})


class ResourceType(str, PyEnum):
    """Schedulable resource kinds that can be taken offline."""

    DOCTOR = "doctor"
    ROOM = "room"


class MaintenanceKind(str, PyEnum):
    """Kind of apply operation that produced a maintenance batch."""

    DEACTIVATE = "deactivate"
    REACTIVATE = "reactivate"
    SCHEDULE_CHANGE = "schedule-change"


class CancellationReason(str, PyEnum):
    """Why an appointment was cancelled (drives the patient cooldown)."""

    PATIENT = "patient"      # Paciente canceló
    NO_SHOW = "no_show"      # Paciente no asistió
    CLINIC = "clinic"        # Cancelada por la clínica


def _enum_values(enum_cls: type[PyEnum]) -> list[str]:
    return [e.value for e in enum_cls]


# ============================================================================
# Core Models
# ============================================================================


class Patient(Base):
    """
    Patient model - read-only projection of the identity service.

    Only the fields needed for cap/cooldown checks and the maintenance
    manifest are stored here.
    """

    __tablename__ = "patients"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(20), nullable=True)

    created_at: Mapped[dt.datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=_utcnow, nullable=False
    )

    appointments: Mapped[list["Appointment"]] = relationship(
        "Appointment", back_populates="patient"
    )

    def __repr__(self) -> str:
        return f"<Patient(id={self.id}, name='{self.first_name} {self.last_name}')>"


class Doctor(Base):
    """
    Doctor model - Odontólogos with a weekly working schedule.

    ``is_active`` is only flipped by the maintenance orchestrator.
    """

    __tablename__ = "doctors"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(20), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    created_at: Mapped[dt.datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=_utcnow, nullable=False
    )
    updated_at: Mapped[dt.datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    working_hours: Mapped[list["DoctorWorkingHours"]] = relationship(
        "DoctorWorkingHours",
        back_populates="doctor",
        cascade="all, delete-orphan",
        order_by="DoctorWorkingHours.day_of_week",
    )
    appointments: Mapped[list["Appointment"]] = relationship(
        "Appointment", back_populates="doctor"
    )

    def __repr__(self) -> str:
        return f"<Doctor(id={self.id}, name='{self.first_name} {self.last_name}', active={self.is_active})>"


class DoctorWorkingHours(Base):
    """
    Weekly working window of a doctor.

    Day of week: 0=Monday, 1=Tuesday, ..., 6=Sunday
    """

    __tablename__ = "doctor_working_hours"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    doctor_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("doctors.id", ondelete="CASCADE"), nullable=False, index=True
    )
    day_of_week: Mapped[int] = mapped_column(
        Integer,
        CheckConstraint("day_of_week >= 0 AND day_of_week <= 6", name="valid_working_day"),
        nullable=False,
    )
    start_time: Mapped[dt.time | None] = mapped_column(Time, nullable=True)
    end_time: Mapped[dt.time | None] = mapped_column(Time, nullable=True)
    is_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    doctor: Mapped["Doctor"] = relationship("Doctor", back_populates="working_hours")

    __table_args__ = (
        UniqueConstraint("doctor_id", "day_of_week", name="uq_working_hours_doctor_day"),
    )

    def __repr__(self) -> str:
        if not self.is_enabled:
            return f"<DoctorWorkingHours(day={self.day_of_week}, OFF)>"
        return f"<DoctorWorkingHours(day={self.day_of_week}, {self.start_time}-{self.end_time})>"


class Room(Base):
    """Room model - Consultorios where appointments take place."""

    __tablename__ = "rooms"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    number: Mapped[str] = mapped_column(String(20), unique=True, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    created_at: Mapped[dt.datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=_utcnow, nullable=False
    )
    updated_at: Mapped[dt.datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    appointments: Mapped[list["Appointment"]] = relationship(
        "Appointment", back_populates="room"
    )

    def __repr__(self) -> str:
        return f"<Room(id={self.id}, number='{self.number}', active={self.is_active})>"


# ============================================================================
# Transactional Models
# ============================================================================


class MaintenanceBatch(Base):
    """
    MaintenanceBatch model - appointments moved together by one apply call.

    Immutable once created. Appointments placed in maintenance reference the
    batch that moved them, which is how reactivation finds them again.
    """

    __tablename__ = "maintenance_batches"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    resource_type: Mapped[ResourceType] = mapped_column(
        SQLEnum(ResourceType, name="resource_type", values_callable=_enum_values),
        nullable=False,
    )
    resource_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    kind: Mapped[MaintenanceKind] = mapped_column(
        SQLEnum(MaintenanceKind, name="maintenance_kind", values_callable=_enum_values),
        nullable=False,
    )

    affected_appointment_ids: Mapped[list[str]] = mapped_column(
        JSONType, default=list, nullable=False
    )
    counts_by_prior_state: Mapped[dict[str, int]] = mapped_column(
        JSONType, default=dict, nullable=False
    )

    created_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=_utcnow, nullable=False
    )

    __table_args__ = (
        Index("idx_maintenance_batches_resource", "resource_type", "resource_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<MaintenanceBatch(id={self.id}, {self.resource_type.value}={self.resource_id}, "
            f"kind='{self.kind.value}', affected={len(self.affected_appointment_ids or [])})>"
        )


class Appointment(Base):
    """
    Appointment model - Citas with state management.

    Mutated only through the AppointmentStateMachine. ``version`` is the
    optimistic concurrency token: SQLAlchemy adds it to every UPDATE's WHERE
    clause and increments it, so a concurrent writer surfaces as StaleDataError.
    Rows are never deleted; cancelled/completed are kept for history.
    """

    __tablename__ = "appointments"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    # Foreign keys
    patient_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("patients.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    doctor_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("doctors.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    room_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("rooms.id", ondelete="RESTRICT"), nullable=False, index=True
    )

    # Scheduling (clinic-local wall clock)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False, index=True)
    start_time: Mapped[dt.time] = mapped_column(Time, nullable=False)
    end_time: Mapped[dt.time] = mapped_column(Time, nullable=False)

    status: Mapped[AppointmentStatus] = mapped_column(
        SQLEnum(
            AppointmentStatus,
            name="appointment_status",
            values_callable=_enum_values,
        ),
        default=AppointmentStatus.PENDING,
        nullable=False,
        index=True,
    )
    reschedule_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    maintenance_batch_id: Mapped[UUID | None] = mapped_column(
        Uuid,
        ForeignKey("maintenance_batches.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    # Lifecycle timestamps
    booked_at: Mapped[dt.datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=_utcnow, nullable=False
    )
    confirmed_at: Mapped[dt.datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    cancelled_at: Mapped[dt.datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    completed_at: Mapped[dt.datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    cancellation_reason: Mapped[CancellationReason | None] = mapped_column(
        SQLEnum(
            CancellationReason,
            name="cancellation_reason",
            values_callable=_enum_values,
        ),
        nullable=True,
    )

    created_at: Mapped[dt.datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=_utcnow, nullable=False
    )
    updated_at: Mapped[dt.datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    # Relationships
    patient: Mapped["Patient"] = relationship("Patient", back_populates="appointments")
    doctor: Mapped["Doctor"] = relationship("Doctor", back_populates="appointments")
    room: Mapped["Room"] = relationship("Room", back_populates="appointments")
    maintenance_batch: Mapped[Optional["MaintenanceBatch"]] = relationship("MaintenanceBatch")
    attendance: Mapped[Optional["AttendanceRecord"]] = relationship(
        "AttendanceRecord", back_populates="appointment", uselist=False
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint("end_time > start_time", name="check_appointment_end_after_start"),
        CheckConstraint("reschedule_count >= 0", name="check_reschedule_count_positive"),
        # Selection predicates of the maintenance orchestrator
        Index("idx_appointments_room_date_status", "room_id", "date", "status"),
        Index("idx_appointments_doctor_date_status", "doctor_id", "date", "status"),
    )

    def __repr__(self) -> str:
        return f"<Appointment(id={self.id}, date={self.date}, status='{self.status.value}', v={self.version})>"


class AttendanceRecord(Base):
    """
    Clinical attention record written when the patient is seen.

    Its existence is the external precondition for confirmed -> completed.
    """

    __tablename__ = "attendance_records"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    appointment_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("appointments.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
    )
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    recorded_at: Mapped[dt.datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=_utcnow, nullable=False
    )

    appointment: Mapped["Appointment"] = relationship("Appointment", back_populates="attendance")

    def __repr__(self) -> str:
        return f"<AttendanceRecord(appointment_id={self.appointment_id})>"


# ============================================================================
# Scheduling Policy Models
# ============================================================================


SCHEDULING_POLICY_ID = 1


class SchedulingPolicy(Base):
    """
    Singleton row holding the tunable scheduling policy.

    Derived windows (confirmation window, lead time) are computed on read,
    so changing the policy never migrates in-flight appointments.
    """

    __tablename__ = "scheduling_policy"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, default=SCHEDULING_POLICY_ID)

    max_active_appointments_per_patient: Mapped[int] = mapped_column(Integer, nullable=False)
    confirm_window_open_hours: Mapped[int] = mapped_column(Integer, nullable=False)
    confirm_window_close_hours: Mapped[int] = mapped_column(Integer, nullable=False)
    auto_confirm_threshold_hours: Mapped[int] = mapped_column(Integer, nullable=False)
    max_appointments_per_patient_per_day: Mapped[int] = mapped_column(Integer, nullable=False)
    cooldown_days: Mapped[int] = mapped_column(Integer, nullable=False)
    max_reschedules_per_appointment: Mapped[int] = mapped_column(Integer, nullable=False)
    min_lead_time_hours: Mapped[int] = mapped_column(Integer, nullable=False)
    contact_phone: Mapped[str] = mapped_column(String(20), nullable=False)

    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    updated_at: Mapped[dt.datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )
    updated_by: Mapped[str | None] = mapped_column(String(100), nullable=True)

    __table_args__ = (
        CheckConstraint(f"id = {SCHEDULING_POLICY_ID}", name="check_policy_singleton"),
        CheckConstraint(
            "confirm_window_close_hours < auto_confirm_threshold_hours "
            "AND auto_confirm_threshold_hours <= confirm_window_open_hours "
            "AND min_lead_time_hours < confirm_window_open_hours",
            name="check_policy_windows",
        ),
    )

    def __repr__(self) -> str:
        return f"<SchedulingPolicy(version={self.version})>"


class SchedulingPolicyHistory(Base):
    """
    Audit trail for scheduling policy changes.

    Records the full previous and new field values of every accepted update.
    """

    __tablename__ = "scheduling_policy_history"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    policy_version: Mapped[int] = mapped_column(Integer, nullable=False)
    previous_values: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    new_values: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False)
    changed_by: Mapped[str] = mapped_column(String(100), nullable=False)
    change_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    changed_at: Mapped[dt.datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=_utcnow, nullable=False
    )

    __table_args__ = (
        Index("idx_policy_history_changed_at", "changed_at"),
    )

    def __repr__(self) -> str:
        return f"<SchedulingPolicyHistory(version={self.policy_version}, changed_by='{self.changed_by}')>"

"""
Appointment service - persistence wrapper around AppointmentStateMachine.

Each operation loads the appointment, drives one FSM transition with the
caller's expected_version and commits. Concurrency is optimistic: no lock is
taken, and a commit that loses the race against another writer (patient,
staff or a maintenance apply) surfaces as StaleVersion.

Usage:
    service = AppointmentService()
    appointment = await service.book(patient_id, doctor_id, room_id, day, start, end)
    await service.confirm(appointment.id, expected_version=appointment.version)
"""

import logging
from collections.abc import Callable
from datetime import UTC, date, datetime, time
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload
from sqlalchemy.orm.exc import StaleDataError

from database.models import (
    Appointment,
    AppointmentStatus,
    AttendanceRecord,
    CancellationReason,
    Doctor,
    Patient,
    Room,
)
from scheduling.errors import GuardReason, GuardViolation, NotFound, StaleVersion
from scheduling.fsm.appointment_fsm import AppointmentStateMachine
from scheduling.utils.clock import ensure_aware
from scheduling.validators.policy_validator import ProposedSlot
from shared.policy_service import PolicyService

logger = logging.getLogger(__name__)


class AppointmentService:
    """Booking and lifecycle operations on single appointments."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        policy_service: PolicyService | None = None,
    ):
        if session_factory is None:
            from database.connection import AsyncSessionLocal

            session_factory = AsyncSessionLocal
        self._session_factory = session_factory
        self._policy_service = policy_service or PolicyService(session_factory)

    async def _state_machine(self) -> AppointmentStateMachine:
        return AppointmentStateMachine(await self._policy_service.get())

    @staticmethod
    async def _load(session: AsyncSession, appointment_id: UUID) -> Appointment:
        result = await session.execute(
            select(Appointment)
            .options(selectinload(Appointment.attendance))
            .where(Appointment.id == appointment_id)
        )
        appointment = result.scalar_one_or_none()
        if appointment is None:
            raise NotFound("Appointment", appointment_id)
        return appointment

    async def _transition(
        self,
        appointment_id: UUID,
        expected_version: int,
        action: Callable[[AppointmentStateMachine, Appointment], object],
    ) -> Appointment:
        """Load, apply ``action`` and commit; StaleDataError -> StaleVersion."""
        fsm = await self._state_machine()
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    appointment = await self._load(session, appointment_id)
                    action(fsm, appointment)
                return appointment
        except StaleDataError as e:
            logger.warning(
                f"Appointment {appointment_id} changed while committing (expected v{expected_version})",
                extra={"appointment_id": str(appointment_id)},
            )
            raise StaleVersion(appointment_id, expected=expected_version) from e

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get(self, appointment_id: UUID) -> Appointment:
        """Current snapshot including ``version`` for the next transition."""
        async with self._session_factory() as session:
            return await self._load(session, appointment_id)

    # ------------------------------------------------------------------
    # Booking
    # ------------------------------------------------------------------

    async def book(
        self,
        patient_id: UUID,
        doctor_id: UUID,
        room_id: UUID,
        day: date,
        start_time: time,
        end_time: time,
        *,
        now: datetime | None = None,
    ) -> Appointment:
        """
        Create an appointment after the booking guards pass.

        The appointment starts confirmed when booked with less lead time than
        auto_confirm_threshold_hours, pending otherwise.

        Raises:
            NotFound: Unknown patient, doctor or room
            GuardViolation: ResourceInactive, InvalidSlot or a can_book reason
        """
        now = ensure_aware(now or datetime.now(UTC))
        slot = ProposedSlot(date=day, start_time=start_time, end_time=end_time)
        if not slot.is_well_formed:
            raise GuardViolation(GuardReason.INVALID_SLOT, "end_time must be after start_time")

        fsm = await self._state_machine()

        async with self._session_factory() as session:
            async with session.begin():
                patient = await session.get(Patient, patient_id)
                if patient is None:
                    raise NotFound("Patient", patient_id)
                doctor = await session.get(Doctor, doctor_id)
                if doctor is None:
                    raise NotFound("Doctor", doctor_id)
                room = await session.get(Room, room_id)
                if room is None:
                    raise NotFound("Room", room_id)

                if not doctor.is_active:
                    raise GuardViolation(GuardReason.RESOURCE_INACTIVE, f"Doctor {doctor_id} is inactive")
                if not room.is_active:
                    raise GuardViolation(GuardReason.RESOURCE_INACTIVE, f"Room {room_id} is inactive")

                result = await session.execute(
                    select(Appointment).where(Appointment.patient_id == patient_id)
                )
                existing = result.scalars().all()

                fsm.validator.can_book(existing, slot, now).raise_for_failure()

                status = fsm.initial_status(slot, now)
                appointment = Appointment(
                    patient_id=patient_id,
                    doctor_id=doctor_id,
                    room_id=room_id,
                    date=day,
                    start_time=start_time,
                    end_time=end_time,
                    status=status,
                    reschedule_count=0,
                    booked_at=now,
                    confirmed_at=now if status == AppointmentStatus.CONFIRMED else None,
                )
                session.add(appointment)

        logger.info(
            f"Appointment {appointment.id} booked for patient {patient_id} "
            f"on {day.isoformat()} {start_time.strftime('%H:%M')} ({status.value})",
            extra={"appointment_id": str(appointment.id)},
        )
        return appointment

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def confirm(
        self,
        appointment_id: UUID,
        *,
        expected_version: int,
        now: datetime | None = None,
    ) -> Appointment:
        return await self._transition(
            appointment_id,
            expected_version,
            lambda fsm, appt: fsm.confirm(appt, expected_version=expected_version, now=now),
        )

    async def cancel(
        self,
        appointment_id: UUID,
        *,
        expected_version: int,
        reason: CancellationReason = CancellationReason.PATIENT,
        now: datetime | None = None,
    ) -> Appointment:
        return await self._transition(
            appointment_id,
            expected_version,
            lambda fsm, appt: fsm.cancel(
                appt, expected_version=expected_version, reason=reason, now=now
            ),
        )

    async def start_reschedule(self, appointment_id: UUID, *, expected_version: int) -> Appointment:
        return await self._transition(
            appointment_id,
            expected_version,
            lambda fsm, appt: fsm.start_reschedule(appt, expected_version=expected_version),
        )

    async def assign_new_slot(
        self,
        appointment_id: UUID,
        *,
        expected_version: int,
        day: date,
        start_time: time,
        end_time: time,
    ) -> Appointment:
        slot = ProposedSlot(date=day, start_time=start_time, end_time=end_time)
        return await self._transition(
            appointment_id,
            expected_version,
            lambda fsm, appt: fsm.assign_slot(appt, expected_version=expected_version, slot=slot),
        )

    async def complete(
        self,
        appointment_id: UUID,
        *,
        expected_version: int,
        now: datetime | None = None,
    ) -> Appointment:
        return await self._transition(
            appointment_id,
            expected_version,
            lambda fsm, appt: fsm.complete(
                appt,
                expected_version=expected_version,
                attendance_recorded=appt.attendance is not None,
                now=now,
            ),
        )

    async def record_attendance(
        self,
        appointment_id: UUID,
        *,
        notes: str | None = None,
    ) -> AttendanceRecord:
        """
        Record that the patient attended. Idempotent: an existing record is
        returned unchanged. Does not touch the appointment's version.
        """
        async with self._session_factory() as session:
            async with session.begin():
                appointment = await self._load(session, appointment_id)
                if appointment.attendance is not None:
                    return appointment.attendance

                record = AttendanceRecord(appointment_id=appointment_id, notes=notes)
                session.add(record)

        logger.info(
            f"Attendance recorded for appointment {appointment_id}",
            extra={"appointment_id": str(appointment_id)},
        )
        return record

"""
Integration tests for ResourceMaintenanceOrchestrator (SQLite in-memory).

Covers the preview/apply protocol end to end:
- Room deactivation with mixed states, batch recording, resource flag
- No-op deactivation and idempotence on an inactive resource
- Reactivation round trip, including several batches
- Appointments stay held while their other resource is inactive
- Confirmation requirement
- All-or-nothing rollback on a version conflict, including a commit from a
  second connection (file-backed SQLite)
- Lock contention
- Working-hours change
- Authorization and unknown resources
"""

from datetime import time, timedelta
from uuid import uuid4

import pytest
from conftest import Factory, doctor_operator_for, future_day
from sqlalchemy import func, select

from database.connection import build_engine, build_session_factory
from database.models import (
    Appointment,
    AppointmentStatus,
    Base,
    Doctor,
    DoctorWorkingHours,
    MaintenanceBatch,
    MaintenanceKind,
    ResourceType,
    Room,
)
from database.seeds.scheduling_policy import seed_scheduling_policy
from scheduling.errors import (
    ApplyAborted,
    NotAuthorized,
    NotFound,
    ResourceBusy,
    StaleVersion,
    WorkingHoursValidationError,
)
from scheduling.fsm.appointment_fsm import AppointmentStateMachine
from scheduling.services.maintenance_orchestrator import ResourceMaintenanceOrchestrator
from scheduling.utils.clock import today_local
from scheduling.validators.working_hours import WorkingHoursDay
from shared.policy_service import PolicyService
from shared.resource_lock import LocalResourceLock


async def statuses(session_factory, ids) -> dict:
    async with session_factory() as session:
        result = await session.execute(select(Appointment).where(Appointment.id.in_(ids)))
        return {appt.id: appt.status for appt in result.scalars()}


async def reload(session_factory, model, entity_id):
    async with session_factory() as session:
        return await session.get(model, entity_id)


async def batch_count(session_factory) -> int:
    async with session_factory() as session:
        return (await session.execute(select(func.count(MaintenanceBatch.id)))).scalar_one()


@pytest.fixture
async def room_with_three(factory):
    """Room R with 2 pending and 1 confirmed upcoming appointments."""
    doctor = await factory.doctor()
    room = await factory.room(number="R-101")
    appointments = [
        await factory.appointment(doctor=doctor, room=room, day=future_day(5), start=time(9, 0), end=time(10, 0)),
        await factory.appointment(doctor=doctor, room=room, day=future_day(6), start=time(15, 0), end=time(16, 0)),
        await factory.appointment(
            doctor=doctor,
            room=room,
            day=future_day(5),
            start=time(11, 0),
            end=time(12, 0),
            status=AppointmentStatus.CONFIRMED,
        ),
    ]
    return room, doctor, appointments


class TestDeactivation:
    @pytest.mark.asyncio
    async def test_preview_counts_by_state(self, orchestrator, admin_operator, room_with_three, factory):
        room, doctor, appointments = room_with_three
        # Not selected: terminal, already past
        await factory.appointment(
            doctor=doctor, room=room, status=AppointmentStatus.CANCELLED
        )
        await factory.appointment(
            doctor=doctor, room=room, day=today_local() - timedelta(days=1)
        )

        preview = await orchestrator.preview_deactivation(admin_operator, ResourceType.ROOM, room.id)

        assert preview.total_affected == 3
        assert preview.counts_by_state == {"pending": 2, "confirmed": 1}
        # Ordered by date, start time
        assert [row.id for row in preview.items] == [
            str(appointments[0].id),
            str(appointments[2].id),
            str(appointments[1].id),
        ]
        assert preview.items[0].time == "09:00"

    @pytest.mark.asyncio
    async def test_preview_is_read_only(self, orchestrator, admin_operator, room_with_three, session_factory):
        room, _, appointments = room_with_three

        await orchestrator.preview_deactivation(admin_operator, ResourceType.ROOM, room.id)
        await orchestrator.preview_deactivation(admin_operator, ResourceType.ROOM, room.id)

        assert (await reload(session_factory, Room, room.id)).is_active is True
        assert set((await statuses(session_factory, [a.id for a in appointments])).values()) == {
            AppointmentStatus.PENDING,
            AppointmentStatus.CONFIRMED,
        }

    @pytest.mark.asyncio
    async def test_apply_moves_all_and_deactivates(
        self, orchestrator, admin_operator, room_with_three, session_factory
    ):
        room, _, appointments = room_with_three

        result = await orchestrator.apply_deactivation(
            admin_operator, ResourceType.ROOM, room.id, confirm=True
        )

        assert result.total_moved == 3
        assert result.batch_id is not None
        assert result.resource.active is False
        assert len(result.items) == 3

        async with session_factory() as session:
            stored = (
                await session.execute(select(Appointment).where(Appointment.room_id == room.id))
            ).scalars().all()
            batch = await session.get(MaintenanceBatch, result.batch_id)

        assert all(a.status is AppointmentStatus.MAINTENANCE for a in stored)
        assert all(a.maintenance_batch_id == result.batch_id for a in stored)
        assert all(a.version == 2 for a in stored)

        assert batch.kind is MaintenanceKind.DEACTIVATE
        assert batch.resource_type is ResourceType.ROOM
        assert batch.created_by == admin_operator.operator_id
        assert batch.counts_by_prior_state == {"pending": 2, "confirmed": 1}
        assert batch.affected_appointment_ids == [row.id for row in result.items]
        assert (await reload(session_factory, Room, room.id)).is_active is False

    @pytest.mark.asyncio
    async def test_apply_without_confirm_changes_nothing(
        self, orchestrator, admin_operator, room_with_three, session_factory
    ):
        room, _, appointments = room_with_three

        with pytest.raises(ApplyAborted) as exc_info:
            await orchestrator.apply_deactivation(
                admin_operator, ResourceType.ROOM, room.id, confirm=False
            )

        assert exc_info.value.cause == "confirmation required"
        assert (await reload(session_factory, Room, room.id)).is_active is True
        assert await batch_count(session_factory) == 0
        assert AppointmentStatus.MAINTENANCE not in (
            await statuses(session_factory, [a.id for a in appointments])
        ).values()

    @pytest.mark.asyncio
    async def test_empty_room_needs_no_confirm(self, orchestrator, admin_operator, factory, session_factory):
        room = await factory.room(number="S-1")

        result = await orchestrator.apply_deactivation(
            admin_operator, ResourceType.ROOM, room.id, confirm=False
        )

        assert result.total_moved == 0
        assert result.batch_id is None
        assert result.resource.active is False
        assert await batch_count(session_factory) == 0

    @pytest.mark.asyncio
    async def test_deactivating_inactive_resource_is_noop(
        self, orchestrator, admin_operator, room_with_three, session_factory
    ):
        room, _, _ = room_with_three
        await orchestrator.apply_deactivation(admin_operator, ResourceType.ROOM, room.id, confirm=True)

        again = await orchestrator.apply_deactivation(
            admin_operator, ResourceType.ROOM, room.id, confirm=True
        )

        assert again.total_moved == 0
        assert again.batch_id is None
        assert again.resource.active is False
        assert await batch_count(session_factory) == 1

    @pytest.mark.asyncio
    async def test_set_inactive_false_keeps_flag(self, orchestrator, admin_operator, room_with_three, session_factory):
        room, _, _ = room_with_three

        result = await orchestrator.apply_deactivation(
            admin_operator, ResourceType.ROOM, room.id, confirm=True, set_inactive=False
        )

        assert result.total_moved == 3
        assert result.resource.active is True

    @pytest.mark.asyncio
    async def test_rescheduling_appointments_are_held(self, orchestrator, admin_operator, factory):
        doctor = await factory.doctor()
        room = await factory.room()
        await factory.appointment(doctor=doctor, room=room, status=AppointmentStatus.RESCHEDULING)

        result = await orchestrator.apply_deactivation(
            admin_operator, ResourceType.DOCTOR, doctor.id, confirm=True
        )

        assert result.total_moved == 1

    @pytest.mark.asyncio
    async def test_all_or_nothing_on_version_conflict(
        self, orchestrator, admin_operator, room_with_three, session_factory, monkeypatch
    ):
        room, _, appointments = room_with_three
        original = AppointmentStateMachine.hold_for_maintenance
        calls = {"n": 0}

        def flaky_hold(self, appointment, **kwargs):
            calls["n"] += 1
            if calls["n"] == 2:
                raise StaleVersion(appointment.id, expected=kwargs["expected_version"], actual=99)
            return original(self, appointment, **kwargs)

        monkeypatch.setattr(AppointmentStateMachine, "hold_for_maintenance", flaky_hold)

        with pytest.raises(ApplyAborted):
            await orchestrator.apply_deactivation(
                admin_operator, ResourceType.ROOM, room.id, confirm=True
            )

        stored = await statuses(session_factory, [a.id for a in appointments])
        assert AppointmentStatus.MAINTENANCE not in stored.values()
        assert (await reload(session_factory, Room, room.id)).is_active is True
        assert await batch_count(session_factory) == 0

    @pytest.mark.asyncio
    async def test_lock_contention(self, orchestrator, admin_operator, room_with_three, resource_lock):
        room, _, _ = room_with_three

        async with resource_lock.hold(ResourceType.ROOM, room.id):
            with pytest.raises(ResourceBusy):
                await orchestrator.apply_deactivation(
                    admin_operator, ResourceType.ROOM, room.id, confirm=True
                )


class TestReactivation:
    @pytest.mark.asyncio
    async def test_round_trip(self, orchestrator, admin_operator, room_with_three, session_factory):
        room, _, appointments = room_with_three
        deactivation = await orchestrator.apply_deactivation(
            admin_operator, ResourceType.ROOM, room.id, confirm=True
        )

        preview = await orchestrator.preview_reactivation(admin_operator, ResourceType.ROOM, room.id)
        result = await orchestrator.apply_reactivation(admin_operator, ResourceType.ROOM, room.id)

        assert preview.total_pending_return == 3
        assert result.total_moved == 3
        assert result.resource.active is True
        assert result.batch_id is not None

        async with session_factory() as session:
            stored = (
                await session.execute(
                    select(Appointment).where(Appointment.id.in_([a.id for a in appointments]))
                )
            ).scalars().all()
            batch = await session.get(MaintenanceBatch, result.batch_id)

        assert all(a.status is AppointmentStatus.PENDING for a in stored)
        # Confirmed appointments must confirm again
        assert all(a.confirmed_at is None for a in stored)
        # Original batch id kept for audit
        assert all(a.maintenance_batch_id == deactivation.batch_id for a in stored)
        assert batch.kind is MaintenanceKind.REACTIVATE
        assert batch.counts_by_prior_state == {"maintenance": 3}

    @pytest.mark.asyncio
    async def test_reactivating_active_resource_is_noop(self, orchestrator, admin_operator, factory, session_factory):
        room = await factory.room()

        result = await orchestrator.apply_reactivation(admin_operator, ResourceType.ROOM, room.id)

        assert result.total_moved == 0
        assert result.batch_id is None
        assert result.resource.active is True
        assert await batch_count(session_factory) == 0

    @pytest.mark.asyncio
    async def test_collects_every_batch_of_the_resource(
        self, orchestrator, admin_operator, factory, session_factory
    ):
        doctor = await factory.doctor()
        room = await factory.room()
        monday = future_day(7, weekday=0)
        tuesday = future_day(7, weekday=1)
        late = await factory.appointment(
            doctor=doctor, room=room, day=monday, start=time(19, 0), end=time(20, 0)
        )

        # Schedule change holds the late Monday appointment
        await orchestrator.apply_schedule_change(
            admin_operator,
            doctor.id,
            [WorkingHoursDay(day_of_week=0, start_time=time(9, 0), end_time=time(13, 0))],
            confirm=True,
        )
        # A later appointment is then caught by a deactivation
        other = await factory.appointment(doctor=doctor, room=room, day=tuesday)
        await orchestrator.apply_deactivation(
            admin_operator, ResourceType.DOCTOR, doctor.id, confirm=True
        )

        result = await orchestrator.apply_reactivation(admin_operator, ResourceType.DOCTOR, doctor.id)

        assert result.total_moved == 2
        stored = await statuses(session_factory, [late.id, other.id])
        assert set(stored.values()) == {AppointmentStatus.PENDING}

    @pytest.mark.asyncio
    async def test_other_resource_batches_untouched(self, orchestrator, admin_operator, factory, session_factory):
        doctor = await factory.doctor()
        room_a = await factory.room()
        room_b = await factory.room()
        in_a = await factory.appointment(doctor=doctor, room=room_a)
        in_b = await factory.appointment(doctor=doctor, room=room_b, day=future_day(11))

        await orchestrator.apply_deactivation(admin_operator, ResourceType.ROOM, room_a.id, confirm=True)
        await orchestrator.apply_deactivation(admin_operator, ResourceType.ROOM, room_b.id, confirm=True)
        result = await orchestrator.apply_reactivation(admin_operator, ResourceType.ROOM, room_a.id)

        assert result.total_moved == 1
        stored = await statuses(session_factory, [in_a.id, in_b.id])
        assert stored[in_a.id] is AppointmentStatus.PENDING
        assert stored[in_b.id] is AppointmentStatus.MAINTENANCE

    @pytest.mark.asyncio
    async def test_stays_held_while_doctor_is_inactive(
        self, orchestrator, admin_operator, factory, session_factory
    ):
        doctor = await factory.doctor()
        room = await factory.room()
        appointment = await factory.appointment(doctor=doctor, room=room)

        room_hold = await orchestrator.apply_deactivation(
            admin_operator, ResourceType.ROOM, room.id, confirm=True
        )
        doctor_hold = await orchestrator.apply_deactivation(
            admin_operator, ResourceType.DOCTOR, doctor.id, confirm=True
        )
        preview = await orchestrator.preview_reactivation(admin_operator, ResourceType.ROOM, room.id)
        result = await orchestrator.apply_reactivation(admin_operator, ResourceType.ROOM, room.id)

        assert doctor_hold.total_moved == 0
        assert preview.total_pending_return == 0
        assert preview.total_still_held == 1
        assert result.total_moved == 0
        assert result.total_still_held == 1
        assert result.resource.active is True

        stored = await reload(session_factory, Appointment, appointment.id)
        assert stored.status is AppointmentStatus.MAINTENANCE
        assert stored.maintenance_batch_id != room_hold.batch_id
        transfer = await reload(session_factory, MaintenanceBatch, stored.maintenance_batch_id)
        assert transfer.resource_type is ResourceType.DOCTOR
        assert transfer.resource_id == doctor.id
        assert transfer.affected_appointment_ids == [str(appointment.id)]

        # Bringing the doctor back releases it
        doctor_result = await orchestrator.apply_reactivation(
            admin_operator, ResourceType.DOCTOR, doctor.id
        )

        assert doctor_result.total_moved == 1
        assert doctor_result.total_still_held == 0
        assert (await reload(session_factory, Appointment, appointment.id)).status is AppointmentStatus.PENDING

    @pytest.mark.asyncio
    async def test_only_blocked_appointments_stay_held(
        self, orchestrator, admin_operator, factory, session_factory
    ):
        room = await factory.room()
        away = await factory.doctor()
        present = await factory.doctor()
        blocked = await factory.appointment(doctor=away, room=room)
        free = await factory.appointment(doctor=present, room=room, day=future_day(11))

        await orchestrator.apply_deactivation(admin_operator, ResourceType.ROOM, room.id, confirm=True)
        await orchestrator.apply_deactivation(admin_operator, ResourceType.DOCTOR, away.id, confirm=True)
        result = await orchestrator.apply_reactivation(admin_operator, ResourceType.ROOM, room.id)

        assert result.total_moved == 1
        assert result.total_still_held == 1
        stored = await statuses(session_factory, [blocked.id, free.id])
        assert stored[blocked.id] is AppointmentStatus.MAINTENANCE
        assert stored[free.id] is AppointmentStatus.PENDING


class TestScheduleChange:
    @pytest.mark.asyncio
    async def test_moves_only_out_of_hours(self, orchestrator, admin_operator, factory, session_factory):
        doctor = await factory.doctor()
        room = await factory.room()
        monday = future_day(7, weekday=0)
        wednesday = future_day(7, weekday=2)
        await factory.working_hours(doctor.id, 0, time(9, 0), time(20, 0))
        inside = await factory.appointment(
            doctor=doctor, room=room, day=monday, start=time(10, 0), end=time(11, 0)
        )
        evening = await factory.appointment(
            doctor=doctor, room=room, day=monday, start=time(18, 0), end=time(19, 0)
        )
        day_off = await factory.appointment(doctor=doctor, room=room, day=wednesday)

        new_hours = [
            WorkingHoursDay(day_of_week=0, start_time=time(9, 0), end_time=time(13, 0)),
            WorkingHoursDay(day_of_week=2, start_time=None, end_time=None, is_enabled=False),
        ]

        preview = await orchestrator.preview_schedule_change(admin_operator, doctor.id, new_hours)
        result = await orchestrator.apply_schedule_change(
            admin_operator, doctor.id, new_hours, confirm=True
        )

        assert preview.total_affected == 2
        assert result.total_moved == 2
        assert {row.id for row in result.items} == {str(evening.id), str(day_off.id)}

        stored = await statuses(session_factory, [inside.id, evening.id, day_off.id])
        assert stored[inside.id] is AppointmentStatus.PENDING
        assert stored[evening.id] is AppointmentStatus.MAINTENANCE
        assert stored[day_off.id] is AppointmentStatus.MAINTENANCE

        async with session_factory() as session:
            batch = await session.get(MaintenanceBatch, result.batch_id)
            hours = (
                await session.execute(
                    select(DoctorWorkingHours)
                    .where(DoctorWorkingHours.doctor_id == doctor.id)
                    .order_by(DoctorWorkingHours.day_of_week)
                )
            ).scalars().all()

        assert batch.kind is MaintenanceKind.SCHEDULE_CHANGE
        assert [(h.day_of_week, h.end_time, h.is_enabled) for h in hours] == [
            (0, time(13, 0), True),
            (2, None, False),
        ]
        # Schedule changes never flip the active flag
        assert (await reload(session_factory, Doctor, doctor.id)).is_active is True

    @pytest.mark.asyncio
    async def test_invalid_hours_rejected_before_anything(self, orchestrator, admin_operator, factory, session_factory):
        doctor = await factory.doctor()
        await factory.appointment(doctor=doctor, room=await factory.room())

        with pytest.raises(WorkingHoursValidationError):
            await orchestrator.apply_schedule_change(
                admin_operator,
                doctor.id,
                [WorkingHoursDay(day_of_week=0, start_time=time(7, 0), end_time=time(12, 0))],
                confirm=True,
            )

        assert await batch_count(session_factory) == 0

    @pytest.mark.asyncio
    async def test_requires_confirm_when_affected(self, orchestrator, admin_operator, factory):
        doctor = await factory.doctor()
        await factory.appointment(doctor=doctor, room=await factory.room(), day=future_day(7, weekday=3))

        with pytest.raises(ApplyAborted):
            await orchestrator.apply_schedule_change(
                admin_operator,
                doctor.id,
                [WorkingHoursDay(day_of_week=0, start_time=time(9, 0), end_time=time(13, 0))],
                confirm=False,
            )


class TestAccess:
    @pytest.mark.asyncio
    async def test_doctor_may_manage_self(self, orchestrator, factory):
        doctor = await factory.doctor()

        result = await orchestrator.apply_deactivation(
            doctor_operator_for(doctor.id), ResourceType.DOCTOR, doctor.id, confirm=True
        )

        assert result.resource.active is False

    @pytest.mark.asyncio
    async def test_doctor_cannot_manage_other(self, orchestrator, factory, session_factory):
        doctor = await factory.doctor()
        other = await factory.doctor()

        with pytest.raises(NotAuthorized):
            await orchestrator.apply_deactivation(
                doctor_operator_for(other.id), ResourceType.DOCTOR, doctor.id, confirm=True
            )

        assert (await reload(session_factory, Doctor, doctor.id)).is_active is True

    @pytest.mark.asyncio
    async def test_unknown_resource(self, orchestrator, admin_operator):
        with pytest.raises(NotFound):
            await orchestrator.preview_deactivation(admin_operator, ResourceType.ROOM, uuid4())

        with pytest.raises(NotFound):
            await orchestrator.apply_reactivation(admin_operator, ResourceType.DOCTOR, uuid4())


class TestManifest:
    @pytest.mark.asyncio
    async def test_batch_manifest_rows(self, orchestrator, admin_operator, room_with_three):
        room, doctor, _ = room_with_three
        result = await orchestrator.apply_deactivation(
            admin_operator, ResourceType.ROOM, room.id, confirm=True
        )

        batch, rows = await orchestrator.get_batch_manifest(admin_operator, result.batch_id)

        assert batch.id == result.batch_id
        assert [row.id for row in rows] == [row.id for row in result.items]
        assert rows[0].doctor_first_name == doctor.first_name

    @pytest.mark.asyncio
    async def test_unknown_batch(self, orchestrator, admin_operator):
        with pytest.raises(NotFound):
            await orchestrator.get_batch_manifest(admin_operator, uuid4())


class TestConcurrentWriter:
    """A second connection commits between the apply's selection and its flush."""

    @pytest.fixture
    async def two_connections(self, tmp_path):
        url = f"sqlite+aiosqlite:///{tmp_path / 'clinica.db'}"
        main = build_engine(url)
        other = build_engine(url)
        async with main.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        yield build_session_factory(main), build_session_factory(other)
        await other.dispose()
        await main.dispose()

    @pytest.mark.asyncio
    async def test_version_bump_from_other_writer_aborts_apply(
        self, two_connections, admin_operator, monkeypatch
    ):
        session_factory, other_session_factory = two_connections
        await seed_scheduling_policy(session_factory)
        orchestrator = ResourceMaintenanceOrchestrator(
            session_factory=session_factory,
            policy_service=PolicyService(session_factory, cache_ttl_seconds=0),
            lock=LocalResourceLock(timeout_seconds=0.2),
        )
        factory = Factory(session_factory)
        doctor = await factory.doctor()
        room = await factory.room()
        appointments = [
            await factory.appointment(doctor=doctor, room=room, day=future_day(5)),
            await factory.appointment(doctor=doctor, room=room, day=future_day(6)),
            await factory.appointment(doctor=doctor, room=room, day=future_day(7)),
        ]
        target = appointments[1]
        original_select = ResourceMaintenanceOrchestrator._select_for_deactivation

        async def select_then_other_writer_commits(self, session, resource_type, resource_id):
            selected = await original_select(self, session, resource_type, resource_id)
            async with other_session_factory() as other_session:
                async with other_session.begin():
                    row = await other_session.get(Appointment, target.id)
                    row.reschedule_count += 1
            return selected

        monkeypatch.setattr(
            ResourceMaintenanceOrchestrator,
            "_select_for_deactivation",
            select_then_other_writer_commits,
        )

        with pytest.raises(ApplyAborted) as exc_info:
            await orchestrator.apply_deactivation(
                admin_operator, ResourceType.ROOM, room.id, confirm=True
            )

        assert exc_info.value.retryable is True
        stored = await statuses(session_factory, [a.id for a in appointments])
        assert AppointmentStatus.MAINTENANCE not in stored.values()
        assert (await reload(session_factory, Room, room.id)).is_active is True
        assert await batch_count(session_factory) == 0
        # The other writer's commit survives
        assert (await reload(session_factory, Appointment, target.id)).version == 2

"""
Test configuration and fixtures.

This module sets up test environment and provides shared fixtures for all tests.
"""

import os

# Must be set BEFORE any imports of database.connection or shared.config
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["LOCK_BACKEND"] = "local"
os.environ["LOCK_TIMEOUT_SECONDS"] = "0.2"
os.environ["POLICY_CACHE_TTL_SECONDS"] = "0"
os.environ["JWT_SECRET_KEY"] = "test-secret-key-with-at-least-32-characters"
os.environ["TIMEZONE"] = "America/Guayaquil"

from datetime import date, time, timedelta  # noqa: E402
from itertools import count  # noqa: E402
from uuid import uuid4  # noqa: E402

import pytest  # noqa: E402

from database.connection import build_engine, build_session_factory  # noqa: E402
from database.models import (  # noqa: E402
    Appointment,
    AppointmentStatus,
    Base,
    Doctor,
    DoctorWorkingHours,
    Patient,
    Room,
)
from database.seeds.scheduling_policy import seed_scheduling_policy  # noqa: E402
from scheduling.authorization import OperatorContext, OperatorRole  # noqa: E402
from scheduling.services.appointment_service import AppointmentService  # noqa: E402
from scheduling.services.maintenance_orchestrator import (  # noqa: E402
    ResourceMaintenanceOrchestrator,
)
from scheduling.utils.clock import today_local  # noqa: E402
from shared.policy_service import PolicyService  # noqa: E402
from shared.resource_lock import LocalResourceLock  # noqa: E402


# ============================================================================
# Database
# ============================================================================


@pytest.fixture
async def engine():
    """Fresh in-memory SQLite database per test."""
    engine = build_engine("sqlite+aiosqlite://")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


# ============================================================================
# Services
# ============================================================================


@pytest.fixture
async def policy_service(session_factory):
    """PolicyService over the seeded default policy, without caching."""
    await seed_scheduling_policy(session_factory)
    return PolicyService(session_factory, cache_ttl_seconds=0)


@pytest.fixture
def resource_lock():
    return LocalResourceLock(timeout_seconds=0.2)


@pytest.fixture
def orchestrator(session_factory, policy_service, resource_lock):
    return ResourceMaintenanceOrchestrator(
        session_factory=session_factory,
        policy_service=policy_service,
        lock=resource_lock,
    )


@pytest.fixture
def appointment_service(session_factory, policy_service):
    return AppointmentService(session_factory=session_factory, policy_service=policy_service)


@pytest.fixture(autouse=True)
def reset_singletons():
    """Drop the process-wide PolicyService between tests."""
    yield
    PolicyService.reset_instance()


# ============================================================================
# Operators
# ============================================================================


@pytest.fixture
def admin_operator():
    return OperatorContext(operator_id="admin-1", role=OperatorRole.ADMIN)


@pytest.fixture
def patient_operator():
    return OperatorContext(
        operator_id="patient-1",
        role=OperatorRole.PATIENT,
        patient_id=uuid4(),
    )


def doctor_operator_for(doctor_id) -> OperatorContext:
    return OperatorContext(
        operator_id=f"doctor-{doctor_id}",
        role=OperatorRole.DOCTOR,
        doctor_id=doctor_id,
    )


# ============================================================================
# Data factory
# ============================================================================


class Factory:
    """Inserts rows directly, bypassing services and guards."""

    def __init__(self, session_factory):
        self._session_factory = session_factory
        self._seq = count(1)

    async def _add(self, obj):
        async with self._session_factory() as session:
            async with session.begin():
                session.add(obj)
        return obj

    async def patient(self, **kwargs) -> Patient:
        n = next(self._seq)
        kwargs.setdefault("first_name", f"Paciente{n}")
        kwargs.setdefault("last_name", "Prueba")
        kwargs.setdefault("phone", f"+5939{n:08d}")
        return await self._add(Patient(**kwargs))

    async def doctor(self, **kwargs) -> Doctor:
        n = next(self._seq)
        kwargs.setdefault("first_name", f"Doctor{n}")
        kwargs.setdefault("last_name", "Molar")
        kwargs.setdefault("is_active", True)
        return await self._add(Doctor(**kwargs))

    async def room(self, **kwargs) -> Room:
        n = next(self._seq)
        kwargs.setdefault("number", f"C-{n}")
        kwargs.setdefault("is_active", True)
        return await self._add(Room(**kwargs))

    async def working_hours(self, doctor_id, day_of_week, start, end, is_enabled=True):
        return await self._add(
            DoctorWorkingHours(
                doctor_id=doctor_id,
                day_of_week=day_of_week,
                start_time=start,
                end_time=end,
                is_enabled=is_enabled,
            )
        )

    async def appointment(
        self,
        *,
        doctor: Doctor,
        room: Room,
        patient: Patient | None = None,
        day: date | None = None,
        start: time = time(10, 0),
        end: time = time(11, 0),
        status: AppointmentStatus = AppointmentStatus.PENDING,
        **kwargs,
    ) -> Appointment:
        if patient is None:
            patient = await self.patient()
        return await self._add(
            Appointment(
                patient_id=patient.id,
                doctor_id=doctor.id,
                room_id=room.id,
                date=day or future_day(10),
                start_time=start,
                end_time=end,
                status=status,
                **kwargs,
            )
        )


@pytest.fixture
def factory(session_factory):
    return Factory(session_factory)


def future_day(days_ahead: int, weekday: int | None = None) -> date:
    """A clinic-local date ``days_ahead`` from today, optionally moved forward to ``weekday``."""
    day = today_local() + timedelta(days=days_ahead)
    if weekday is not None:
        day += timedelta(days=(weekday - day.weekday()) % 7)
    return day

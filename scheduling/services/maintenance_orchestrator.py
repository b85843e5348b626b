"""
Resource Maintenance Orchestrator - two-phase preview/apply for resources.

Deactivating a doctor or room, reactivating it, or narrowing a doctor's
working hours can orphan booked appointments. Each of these follows the same
protocol:

1. preview_*: read-only scan, no lock. Safe to call repeatedly; the result may
   be slightly stale.
2. apply_*: takes the per-resource lock, re-runs the selection inside one
   database transaction, then moves every selected appointment through the
   state machine and updates the resource. Either every appointment moves and
   the resource changes, or nothing does (ApplyAborted).

Every apply that moves at least one appointment records a MaintenanceBatch
(affected ids + counts by prior state). Appointments keep the batch id of the
deactivation that held them, which is what reactivation looks up. A held
appointment whose other resource is still inactive when this one comes back
is re-tagged to a batch of that resource instead of being released.

Usage:
    orchestrator = ResourceMaintenanceOrchestrator()

    preview = await orchestrator.preview_deactivation(operator, ResourceType.ROOM, room_id)
    result = await orchestrator.apply_deactivation(
        operator, ResourceType.ROOM, room_id, confirm=True
    )
"""

import logging
from collections import Counter, defaultdict
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import date
from uuid import UUID, uuid4

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload
from sqlalchemy.orm.exc import StaleDataError

from database.models import (
    Appointment,
    AppointmentStatus,
    Doctor,
    DoctorWorkingHours,
    MaintenanceBatch,
    MaintenanceKind,
    ResourceType,
    Room,
)
from scheduling.authorization import OperatorContext, ensure_can_manage_resource
from scheduling.errors import ApplyAborted, GuardViolation, NotFound, StaleVersion
from scheduling.fsm.appointment_fsm import AppointmentStateMachine
from scheduling.fsm.models import OrchestratorToken
from scheduling.services.manifest_exporter import ManifestRow, build_rows
from scheduling.utils.clock import today_local
from scheduling.validators.working_hours import (
    WorkingHoursDay,
    falls_outside,
    validate_working_hours,
)
from shared.policy_service import PolicyService
from shared.resource_lock import ResourceLock, get_resource_lock

logger = logging.getLogger(__name__)

# States that can be held for maintenance
HOLDABLE_STATUSES = (
    AppointmentStatus.PENDING,
    AppointmentStatus.CONFIRMED,
    AppointmentStatus.RESCHEDULING,
)

RESOURCE_MODELS: dict[ResourceType, type[Doctor] | type[Room]] = {
    ResourceType.DOCTOR: Doctor,
    ResourceType.ROOM: Room,
}

# The other resource an appointment needs, and the column that points at it
COUNTERPARTS = {ResourceType.DOCTOR: ResourceType.ROOM, ResourceType.ROOM: ResourceType.DOCTOR}
COUNTERPART_COLUMNS = {ResourceType.DOCTOR: "doctor_id", ResourceType.ROOM: "room_id"}


@dataclass(frozen=True)
class ResourceState:
    id: UUID
    active: bool


@dataclass
class DeactivationPreview:
    total_affected: int
    counts_by_state: dict[str, int]
    items: list[ManifestRow] = field(default_factory=list)


@dataclass
class DeactivationResult:
    batch_id: UUID | None
    total_moved: int
    items: list[ManifestRow]
    resource: ResourceState


@dataclass
class ReactivationPreview:
    total_pending_return: int
    items: list[ManifestRow] = field(default_factory=list)
    total_still_held: int = 0


@dataclass
class ReactivationResult:
    batch_id: UUID | None
    total_moved: int
    resource: ResourceState
    total_still_held: int = 0


@dataclass
class ScheduleChangePreview:
    total_affected: int
    items: list[ManifestRow] = field(default_factory=list)


@dataclass
class ScheduleChangeResult:
    batch_id: UUID | None
    total_moved: int
    items: list[ManifestRow]


def _counts_by_state(appointments: Iterable[Appointment]) -> dict[str, int]:
    return dict(Counter(appt.status.value for appt in appointments))


class ResourceMaintenanceOrchestrator:
    """
    Preview/apply deactivation, reactivation and working-hours changes.

    Only this class issues OrchestratorToken, so it is the only path into and
    out of the maintenance state.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        policy_service: PolicyService | None = None,
        lock: ResourceLock | None = None,
    ):
        if session_factory is None:
            from database.connection import AsyncSessionLocal

            session_factory = AsyncSessionLocal
        self._session_factory = session_factory
        self._policy_service = policy_service or PolicyService(session_factory)
        self._lock = lock or get_resource_lock()

    # ------------------------------------------------------------------
    # Loading and selection
    # ------------------------------------------------------------------

    @staticmethod
    async def _load_resource(
        session: AsyncSession,
        resource_type: ResourceType,
        resource_id: UUID,
        *,
        for_update: bool = False,
    ) -> Doctor | Room:
        model = RESOURCE_MODELS[resource_type]
        query = select(model).where(model.id == resource_id)
        if for_update:
            query = query.with_for_update()
        resource = (await session.execute(query)).scalar_one_or_none()
        if resource is None:
            raise NotFound(resource_type.value.capitalize(), resource_id)
        return resource

    @staticmethod
    def _upcoming_query(resource_type: ResourceType, resource_id: UUID, today: date):
        """Future appointments of a resource that can still be held."""
        column = Appointment.doctor_id if resource_type is ResourceType.DOCTOR else Appointment.room_id
        return (
            select(Appointment)
            .options(selectinload(Appointment.patient), selectinload(Appointment.doctor))
            .where(
                column == resource_id,
                Appointment.date >= today,
                Appointment.status.in_(HOLDABLE_STATUSES),
            )
            .order_by(Appointment.date, Appointment.start_time, Appointment.id)
        )

    async def _select_for_deactivation(
        self,
        session: AsyncSession,
        resource_type: ResourceType,
        resource_id: UUID,
    ) -> list[Appointment]:
        query = self._upcoming_query(resource_type, resource_id, today_local())
        return list((await session.execute(query)).scalars().all())

    async def _select_for_reactivation(
        self,
        session: AsyncSession,
        resource_type: ResourceType,
        resource_id: UUID,
    ) -> list[Appointment]:
        """Appointments held by any batch ever recorded against the resource."""
        query = (
            select(Appointment)
            .join(MaintenanceBatch, Appointment.maintenance_batch_id == MaintenanceBatch.id)
            .options(selectinload(Appointment.patient), selectinload(Appointment.doctor))
            .where(
                Appointment.status == AppointmentStatus.MAINTENANCE,
                MaintenanceBatch.resource_type == resource_type,
                MaintenanceBatch.resource_id == resource_id,
            )
            .order_by(Appointment.date, Appointment.start_time, Appointment.id)
        )
        return list((await session.execute(query)).scalars().all())

    @staticmethod
    async def _split_by_counterpart(
        session: AsyncSession,
        resource_type: ResourceType,
        appointments: list[Appointment],
        *,
        for_update: bool = False,
    ) -> tuple[list[Appointment], dict[UUID, list[Appointment]]]:
        """
        Split held appointments into (releasable, blocked by counterpart id).

        The counterpart is the other resource an appointment needs: the doctor
        for a room, the room for a doctor. An appointment stays blocked while
        its counterpart is inactive.
        """
        counterpart_type = COUNTERPARTS[resource_type]
        column = COUNTERPART_COLUMNS[counterpart_type]
        counterpart_ids = {getattr(appt, column) for appt in appointments}
        if not counterpart_ids:
            return appointments, {}

        model = RESOURCE_MODELS[counterpart_type]
        query = select(model.id, model.is_active).where(model.id.in_(counterpart_ids))
        if for_update:
            query = query.with_for_update()
        active = dict((await session.execute(query)).all())

        releasable: list[Appointment] = []
        blocked: dict[UUID, list[Appointment]] = defaultdict(list)
        for appt in appointments:
            counterpart_id = getattr(appt, column)
            if active.get(counterpart_id, True):
                releasable.append(appt)
            else:
                blocked[counterpart_id].append(appt)
        return releasable, dict(blocked)

    async def _select_for_schedule_change(
        self,
        session: AsyncSession,
        doctor_id: UUID,
        new_hours: Sequence[WorkingHoursDay],
    ) -> list[Appointment]:
        candidates = await self._select_for_deactivation(session, ResourceType.DOCTOR, doctor_id)
        return [appt for appt in candidates if falls_outside(appt, new_hours)]

    # ------------------------------------------------------------------
    # Batch helpers
    # ------------------------------------------------------------------

    async def _hold_batch(
        self,
        session: AsyncSession,
        fsm: AppointmentStateMachine,
        operator: OperatorContext,
        resource_type: ResourceType,
        resource_id: UUID,
        kind: MaintenanceKind,
        appointments: list[Appointment],
    ) -> MaintenanceBatch:
        """Record a batch and move every appointment into maintenance."""
        batch = MaintenanceBatch(
            id=uuid4(),
            resource_type=resource_type,
            resource_id=resource_id,
            kind=kind,
            affected_appointment_ids=[str(appt.id) for appt in appointments],
            counts_by_prior_state=_counts_by_state(appointments),
            created_by=operator.operator_id,
        )
        session.add(batch)
        await session.flush()

        token = OrchestratorToken(batch_id=batch.id)
        for appt in appointments:
            fsm.hold_for_maintenance(
                appt,
                expected_version=appt.version,
                batch_id=batch.id,
                token=token,
            )
        return batch

    async def _release_batch(
        self,
        session: AsyncSession,
        fsm: AppointmentStateMachine,
        operator: OperatorContext,
        resource_type: ResourceType,
        resource_id: UUID,
        appointments: list[Appointment],
    ) -> MaintenanceBatch:
        """Record a reactivate batch and return every appointment to pending."""
        batch = MaintenanceBatch(
            id=uuid4(),
            resource_type=resource_type,
            resource_id=resource_id,
            kind=MaintenanceKind.REACTIVATE,
            affected_appointment_ids=[str(appt.id) for appt in appointments],
            counts_by_prior_state=_counts_by_state(appointments),
            created_by=operator.operator_id,
        )
        session.add(batch)

        token = OrchestratorToken(batch_id=batch.id)
        for appt in appointments:
            fsm.release_from_maintenance(appt, expected_version=appt.version, token=token)
        return batch

    async def _transfer_batch(
        self,
        session: AsyncSession,
        fsm: AppointmentStateMachine,
        operator: OperatorContext,
        resource_type: ResourceType,
        resource_id: UUID,
        appointments: list[Appointment],
    ) -> MaintenanceBatch:
        """Re-tag held appointments to a deactivate batch of ``resource_id``."""
        batch = MaintenanceBatch(
            id=uuid4(),
            resource_type=resource_type,
            resource_id=resource_id,
            kind=MaintenanceKind.DEACTIVATE,
            affected_appointment_ids=[str(appt.id) for appt in appointments],
            counts_by_prior_state=_counts_by_state(appointments),
            created_by=operator.operator_id,
        )
        session.add(batch)
        await session.flush()

        token = OrchestratorToken(batch_id=batch.id)
        for appt in appointments:
            fsm.transfer_hold(
                appt,
                expected_version=appt.version,
                batch_id=batch.id,
                token=token,
            )
        return batch

    def _log_extra(
        self,
        operator: OperatorContext,
        resource_type: ResourceType,
        resource_id: UUID,
        batch_id: UUID | None = None,
    ) -> dict[str, str]:
        extra = {
            "operator_id": operator.operator_id,
            "resource_type": resource_type.value,
            "resource_id": str(resource_id),
        }
        if batch_id is not None:
            extra["batch_id"] = str(batch_id)
        return extra

    # ------------------------------------------------------------------
    # Deactivation
    # ------------------------------------------------------------------

    async def preview_deactivation(
        self,
        operator: OperatorContext,
        resource_type: ResourceType,
        resource_id: UUID,
    ) -> DeactivationPreview:
        """List the appointments a deactivation would hold right now."""
        ensure_can_manage_resource(operator, resource_type, resource_id)

        async with self._session_factory() as session:
            await self._load_resource(session, resource_type, resource_id)
            appointments = await self._select_for_deactivation(session, resource_type, resource_id)

            return DeactivationPreview(
                total_affected=len(appointments),
                counts_by_state=_counts_by_state(appointments),
                items=build_rows(appointments),
            )

    async def apply_deactivation(
        self,
        operator: OperatorContext,
        resource_type: ResourceType,
        resource_id: UUID,
        *,
        confirm: bool,
        set_inactive: bool = True,
    ) -> DeactivationResult:
        """
        Hold every upcoming appointment of the resource and deactivate it.

        Args:
            operator: Caller; must be allowed to manage the resource
            resource_type: doctor or room
            resource_id: Resource UUID
            confirm: Must be True when at least one appointment is affected
            set_inactive: Flip the resource's active flag (default True)

        Returns:
            DeactivationResult; batch_id is None when nothing had to move

        Raises:
            NotAuthorized: Operator may not manage the resource
            NotFound: Unknown resource
            ResourceBusy: Another apply holds the resource lock
            ApplyAborted: Confirmation missing, or a concurrent change to one
                of the appointments; nothing was changed
        """
        ensure_can_manage_resource(operator, resource_type, resource_id)
        fsm = AppointmentStateMachine(await self._policy_service.get())
        extra = self._log_extra(operator, resource_type, resource_id)

        async with self._lock.hold(resource_type, resource_id):
            logger.info(
                f"Deactivation apply started for {resource_type.value} {resource_id}",
                extra=extra,
            )
            try:
                async with self._session_factory() as session:
                    async with session.begin():
                        resource = await self._load_resource(
                            session, resource_type, resource_id, for_update=True
                        )
                        appointments = await self._select_for_deactivation(
                            session, resource_type, resource_id
                        )

                        batch_id = None
                        if appointments:
                            if not confirm:
                                raise ApplyAborted("confirmation required")
                            batch = await self._hold_batch(
                                session,
                                fsm,
                                operator,
                                resource_type,
                                resource_id,
                                MaintenanceKind.DEACTIVATE,
                                appointments,
                            )
                            batch_id = batch.id

                        if set_inactive:
                            resource.is_active = False
                        resource_state = ResourceState(id=resource.id, active=resource.is_active)

            except (StaleVersion, GuardViolation) as e:
                logger.warning(f"Deactivation apply aborted: {e}", extra=extra)
                raise ApplyAborted(str(e)) from e
            except StaleDataError as e:
                logger.warning(f"Deactivation apply aborted: {e}", extra=extra)
                raise ApplyAborted("an appointment was modified concurrently") from e

        logger.info(
            f"Deactivation apply finished for {resource_type.value} {resource_id}: "
            f"{len(appointments)} appointment(s) moved to maintenance",
            extra=self._log_extra(operator, resource_type, resource_id, batch_id),
        )
        return DeactivationResult(
            batch_id=batch_id,
            total_moved=len(appointments),
            items=build_rows(appointments),
            resource=resource_state,
        )

    # ------------------------------------------------------------------
    # Reactivation
    # ------------------------------------------------------------------

    async def preview_reactivation(
        self,
        operator: OperatorContext,
        resource_type: ResourceType,
        resource_id: UUID,
    ) -> ReactivationPreview:
        ensure_can_manage_resource(operator, resource_type, resource_id)

        async with self._session_factory() as session:
            await self._load_resource(session, resource_type, resource_id)
            held = await self._select_for_reactivation(session, resource_type, resource_id)
            appointments, blocked = await self._split_by_counterpart(session, resource_type, held)

            return ReactivationPreview(
                total_pending_return=len(appointments),
                items=build_rows(appointments),
                total_still_held=sum(len(group) for group in blocked.values()),
            )

    async def apply_reactivation(
        self,
        operator: OperatorContext,
        resource_type: ResourceType,
        resource_id: UUID,
        *,
        set_active: bool = True,
    ) -> ReactivationResult:
        """
        Return every held appointment of the resource to pending and reactivate it.

        Appointments always go back to pending, whatever state they had before
        maintenance; they need to be confirmed again.

        An appointment whose other resource (the doctor of a room, the room
        of a doctor) is still inactive stays in maintenance. It is moved to a
        deactivate batch of that resource, so reactivating it later releases
        the appointment.
        """
        ensure_can_manage_resource(operator, resource_type, resource_id)
        fsm = AppointmentStateMachine(await self._policy_service.get())
        extra = self._log_extra(operator, resource_type, resource_id)

        async with self._lock.hold(resource_type, resource_id):
            logger.info(
                f"Reactivation apply started for {resource_type.value} {resource_id}",
                extra=extra,
            )
            try:
                async with self._session_factory() as session:
                    async with session.begin():
                        resource = await self._load_resource(
                            session, resource_type, resource_id, for_update=True
                        )
                        held = await self._select_for_reactivation(
                            session, resource_type, resource_id
                        )
                        appointments, blocked = await self._split_by_counterpart(
                            session, resource_type, held, for_update=True
                        )

                        batch_id = None
                        if appointments:
                            batch = await self._release_batch(
                                session, fsm, operator, resource_type, resource_id, appointments
                            )
                            batch_id = batch.id

                        counterpart_type = COUNTERPARTS[resource_type]
                        for counterpart_id, group in blocked.items():
                            await self._transfer_batch(
                                session, fsm, operator, counterpart_type, counterpart_id, group
                            )
                        still_held = sum(len(group) for group in blocked.values())

                        if set_active:
                            resource.is_active = True
                        resource_state = ResourceState(id=resource.id, active=resource.is_active)

            except (StaleVersion, GuardViolation) as e:
                logger.warning(f"Reactivation apply aborted: {e}", extra=extra)
                raise ApplyAborted(str(e)) from e
            except StaleDataError as e:
                logger.warning(f"Reactivation apply aborted: {e}", extra=extra)
                raise ApplyAborted("an appointment was modified concurrently") from e

        logger.info(
            f"Reactivation apply finished for {resource_type.value} {resource_id}: "
            f"{len(appointments)} appointment(s) returned to pending, "
            f"{still_held} still held by an inactive counterpart",
            extra=self._log_extra(operator, resource_type, resource_id, batch_id),
        )
        return ReactivationResult(
            batch_id=batch_id,
            total_moved=len(appointments),
            resource=resource_state,
            total_still_held=still_held,
        )

    # ------------------------------------------------------------------
    # Working-hours change
    # ------------------------------------------------------------------

    async def preview_schedule_change(
        self,
        operator: OperatorContext,
        doctor_id: UUID,
        new_hours: Sequence[WorkingHoursDay],
    ) -> ScheduleChangePreview:
        ensure_can_manage_resource(operator, ResourceType.DOCTOR, doctor_id)
        new_hours = validate_working_hours(new_hours)

        async with self._session_factory() as session:
            await self._load_resource(session, ResourceType.DOCTOR, doctor_id)
            appointments = await self._select_for_schedule_change(session, doctor_id, new_hours)

            return ScheduleChangePreview(
                total_affected=len(appointments),
                items=build_rows(appointments),
            )

    async def apply_schedule_change(
        self,
        operator: OperatorContext,
        doctor_id: UUID,
        new_hours: Sequence[WorkingHoursDay],
        *,
        confirm: bool,
    ) -> ScheduleChangeResult:
        """
        Replace a doctor's working hours, holding appointments that no longer fit.

        The doctor's active flag is not touched.

        Raises:
            WorkingHoursValidationError: The proposed week breaks a rule
            NotAuthorized, NotFound, ResourceBusy, ApplyAborted: as for
                apply_deactivation
        """
        ensure_can_manage_resource(operator, ResourceType.DOCTOR, doctor_id)
        new_hours = validate_working_hours(new_hours)
        fsm = AppointmentStateMachine(await self._policy_service.get())
        extra = self._log_extra(operator, ResourceType.DOCTOR, doctor_id)

        async with self._lock.hold(ResourceType.DOCTOR, doctor_id):
            logger.info(f"Schedule change apply started for doctor {doctor_id}", extra=extra)
            try:
                async with self._session_factory() as session:
                    async with session.begin():
                        await self._load_resource(
                            session, ResourceType.DOCTOR, doctor_id, for_update=True
                        )
                        appointments = await self._select_for_schedule_change(
                            session, doctor_id, new_hours
                        )

                        batch_id = None
                        if appointments:
                            if not confirm:
                                raise ApplyAborted("confirmation required")
                            batch = await self._hold_batch(
                                session,
                                fsm,
                                operator,
                                ResourceType.DOCTOR,
                                doctor_id,
                                MaintenanceKind.SCHEDULE_CHANGE,
                                appointments,
                            )
                            batch_id = batch.id

                        await session.execute(
                            delete(DoctorWorkingHours).where(DoctorWorkingHours.doctor_id == doctor_id)
                        )
                        session.add_all(
                            DoctorWorkingHours(
                                doctor_id=doctor_id,
                                day_of_week=day.day_of_week,
                                start_time=day.start_time,
                                end_time=day.end_time,
                                is_enabled=day.is_enabled,
                            )
                            for day in new_hours
                        )

            except (StaleVersion, GuardViolation) as e:
                logger.warning(f"Schedule change apply aborted: {e}", extra=extra)
                raise ApplyAborted(str(e)) from e
            except StaleDataError as e:
                logger.warning(f"Schedule change apply aborted: {e}", extra=extra)
                raise ApplyAborted("an appointment was modified concurrently") from e

        logger.info(
            f"Schedule change apply finished for doctor {doctor_id}: "
            f"{len(appointments)} appointment(s) moved to maintenance",
            extra=self._log_extra(operator, ResourceType.DOCTOR, doctor_id, batch_id),
        )
        return ScheduleChangeResult(
            batch_id=batch_id,
            total_moved=len(appointments),
            items=build_rows(appointments),
        )

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------

    async def get_batch_manifest(
        self,
        operator: OperatorContext,
        batch_id: UUID,
    ) -> tuple[MaintenanceBatch, list[ManifestRow]]:
        """Batch plus manifest rows of the appointments it moved."""
        async with self._session_factory() as session:
            batch = await session.get(MaintenanceBatch, batch_id)
            if batch is None:
                raise NotFound("MaintenanceBatch", batch_id)
            ensure_can_manage_resource(operator, batch.resource_type, batch.resource_id)

            ids = [UUID(value) for value in batch.affected_appointment_ids]
            result = await session.execute(
                select(Appointment)
                .options(selectinload(Appointment.patient), selectinload(Appointment.doctor))
                .where(Appointment.id.in_(ids))
                .order_by(Appointment.date, Appointment.start_time, Appointment.id)
            )
            return batch, build_rows(result.scalars().all())

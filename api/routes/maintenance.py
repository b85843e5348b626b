"""
Resource maintenance API endpoints.

Provides the two-phase preview/apply protocol for the admin panel:
- POST /api/{rooms|doctors}/{id}/preview-mantenimiento
- POST /api/{rooms|doctors}/{id}/apply-mantenimiento
- POST /api/{rooms|doctors}/{id}/preview-reactivate
- POST /api/{rooms|doctors}/{id}/apply-reactivate
- POST /api/doctors/{id}/preview-horario-change
- POST /api/doctors/{id}/apply-horario-change
- GET  /api/maintenance-batches/{batch_id}/manifest.csv

Scheduling errors raised by the orchestrator are turned into responses by
the handler registered in api.main.
"""

import logging
from enum import Enum
from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse

from api.dependencies import CurrentOperator, get_orchestrator
from api.schemas import (
    ApplyMaintenanceRequest,
    ApplyMaintenanceResponse,
    ApplyReactivateRequest,
    ApplyReactivateResponse,
    ApplyScheduleChangeRequest,
    ApplyScheduleChangeResponse,
    MaintenancePreviewResponse,
    ManifestItem,
    ReactivatePreviewResponse,
    ResourceStateResponse,
    ScheduleChangePreviewResponse,
    ScheduleChangeRequest,
)
from database.models import ResourceType
from scheduling.services.maintenance_orchestrator import ResourceMaintenanceOrchestrator
from scheduling.services.manifest_exporter import manifest_filename, to_csv

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["maintenance"])

Orchestrator = Annotated[ResourceMaintenanceOrchestrator, Depends(get_orchestrator)]


class ResourcePath(str, Enum):
    """Resource collections as they appear in the URL."""

    ROOMS = "rooms"
    DOCTORS = "doctors"

    @property
    def resource_type(self) -> ResourceType:
        return ResourceType.ROOM if self is ResourcePath.ROOMS else ResourceType.DOCTOR


def _items(rows) -> list[ManifestItem]:
    return [ManifestItem.model_validate(row) for row in rows]


# =============================================================================
# Deactivation
# =============================================================================


@router.post("/{resource}/{resource_id}/preview-mantenimiento", response_model=MaintenancePreviewResponse)
async def preview_maintenance(
    resource: ResourcePath,
    resource_id: UUID,
    operator: CurrentOperator,
    orchestrator: Orchestrator,
) -> MaintenancePreviewResponse:
    """
    List the upcoming appointments a deactivation would put on hold.

    Read-only; call as often as needed.
    """
    preview = await orchestrator.preview_deactivation(operator, resource.resource_type, resource_id)

    return MaintenancePreviewResponse(
        total_afectadas=preview.total_affected,
        por_estado=preview.counts_by_state,
        items=_items(preview.items),
    )


@router.post("/{resource}/{resource_id}/apply-mantenimiento", response_model=ApplyMaintenanceResponse)
async def apply_maintenance(
    resource: ResourcePath,
    resource_id: UUID,
    request: ApplyMaintenanceRequest,
    operator: CurrentOperator,
    orchestrator: Orchestrator,
) -> ApplyMaintenanceResponse:
    """
    Deactivate the resource, holding its upcoming appointments in maintenance.

    Requires confirm=true whenever at least one appointment is affected.
    """
    result = await orchestrator.apply_deactivation(
        operator,
        resource.resource_type,
        resource_id,
        confirm=request.confirm,
        set_inactive=request.set_inactive,
    )

    return ApplyMaintenanceResponse(
        batch_id=result.batch_id,
        total_mantenimiento=result.total_moved,
        items=_items(result.items),
        resource=ResourceStateResponse(id=result.resource.id, active=result.resource.active),
    )


# =============================================================================
# Reactivation
# =============================================================================


@router.post("/{resource}/{resource_id}/preview-reactivate", response_model=ReactivatePreviewResponse)
async def preview_reactivate(
    resource: ResourcePath,
    resource_id: UUID,
    operator: CurrentOperator,
    orchestrator: Orchestrator,
) -> ReactivatePreviewResponse:
    preview = await orchestrator.preview_reactivation(operator, resource.resource_type, resource_id)

    return ReactivatePreviewResponse(
        total_pendientes=preview.total_pending_return,
        total_retenidas=preview.total_still_held,
        items=_items(preview.items),
    )


@router.post("/{resource}/{resource_id}/apply-reactivate", response_model=ApplyReactivateResponse)
async def apply_reactivate(
    resource: ResourcePath,
    resource_id: UUID,
    request: ApplyReactivateRequest,
    operator: CurrentOperator,
    orchestrator: Orchestrator,
) -> ApplyReactivateResponse:
    """Reactivate the resource; held appointments go back to pending."""
    result = await orchestrator.apply_reactivation(
        operator,
        resource.resource_type,
        resource_id,
        set_active=request.set_active,
    )

    return ApplyReactivateResponse(
        batch_id=result.batch_id,
        total_pendientes=result.total_moved,
        total_retenidas=result.total_still_held,
        resource=ResourceStateResponse(id=result.resource.id, active=result.resource.active),
    )


# =============================================================================
# Working hours
# =============================================================================


@router.post("/doctors/{doctor_id}/preview-horario-change", response_model=ScheduleChangePreviewResponse)
async def preview_schedule_change(
    doctor_id: UUID,
    request: ScheduleChangeRequest,
    operator: CurrentOperator,
    orchestrator: Orchestrator,
) -> ScheduleChangePreviewResponse:
    preview = await orchestrator.preview_schedule_change(operator, doctor_id, request.horarios)

    return ScheduleChangePreviewResponse(
        total_afectadas=preview.total_affected,
        items=_items(preview.items),
    )


@router.post("/doctors/{doctor_id}/apply-horario-change", response_model=ApplyScheduleChangeResponse)
async def apply_schedule_change(
    doctor_id: UUID,
    request: ApplyScheduleChangeRequest,
    operator: CurrentOperator,
    orchestrator: Orchestrator,
) -> ApplyScheduleChangeResponse:
    """Replace the doctor's working hours; appointments outside them are held."""
    result = await orchestrator.apply_schedule_change(
        operator,
        doctor_id,
        request.horarios,
        confirm=request.confirm,
    )

    return ApplyScheduleChangeResponse(
        batch_id=result.batch_id,
        total_mantenimiento=result.total_moved,
        items=_items(result.items),
    )


# =============================================================================
# Manifest export
# =============================================================================


@router.get("/maintenance-batches/{batch_id}/manifest.csv")
async def export_batch_manifest(
    batch_id: UUID,
    operator: CurrentOperator,
    orchestrator: Orchestrator,
) -> StreamingResponse:
    """Download the affected appointments of a batch as CSV."""
    batch, rows = await orchestrator.get_batch_manifest(operator, batch_id)

    return StreamingResponse(
        iter([to_csv(rows)]),
        media_type="text/csv; charset=utf-8",
        headers={
            "Content-Disposition": f"attachment; filename={manifest_filename(batch.id)}"
        },
    )

"""
Scheduling policy API endpoints for the admin panel.

Provides REST endpoints for:
- GET   /api/configuracion - Current policy
- PATCH /api/configuracion - Partial update (validated as a whole)
- GET   /api/configuracion/history - Change history
"""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends

from api.dependencies import CurrentOperator, get_policy_service
from api.schemas import (
    PolicyHistoryEntry,
    PolicyHistoryResponse,
    PolicyResponse,
    PolicyUpdateRequest,
)
from scheduling.authorization import ensure_admin
from shared.policy_service import PolicyService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/configuracion", tags=["configuracion"])


@router.get("", response_model=PolicyResponse)
async def get_policy(
    operator: CurrentOperator,
    service: Annotated[PolicyService, Depends(get_policy_service)],
) -> PolicyResponse:
    """Current scheduling policy. Readable by any authenticated operator."""
    snapshot = await service.get()
    return PolicyResponse(**snapshot.as_dict())


@router.get("/history", response_model=PolicyHistoryResponse)
async def get_policy_history(
    operator: CurrentOperator,
    service: Annotated[PolicyService, Depends(get_policy_service)],
    limit: int = 50,
    offset: int = 0,
) -> PolicyHistoryResponse:
    """Policy change history, newest first. Admin only."""
    ensure_admin(operator)
    entries = await service.get_history(limit=limit, offset=offset)

    return PolicyHistoryResponse(
        entries=[PolicyHistoryEntry(**e) for e in entries],
        total=len(entries),
    )


@router.patch("", response_model=PolicyResponse)
async def update_policy(
    request: PolicyUpdateRequest,
    operator: CurrentOperator,
    service: Annotated[PolicyService, Depends(get_policy_service)],
) -> PolicyResponse:
    """
    Update some policy fields.

    The merged policy is validated before anything is written; a rejected
    update changes nothing and answers 422 with the offending field.
    """
    changes = request.model_dump(exclude_unset=True, exclude={"reason"})

    snapshot = await service.update(changes, operator=operator, change_reason=request.reason)
    return PolicyResponse(**snapshot.as_dict())

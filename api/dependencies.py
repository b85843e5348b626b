"""
Shared FastAPI dependencies: operator authentication and service providers.

Operators authenticate with a bearer JWT issued by the clinic's identity
service. Claims:
    sub:        operator id
    role:       admin | doctor | patient
    doctor_id:  doctor UUID (doctor operators)
    patient_id: patient UUID (patient operators)
"""

import logging
from datetime import UTC, datetime, timedelta
from typing import Annotated, Any
from uuid import UUID

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from scheduling.authorization import OperatorContext, OperatorRole
from scheduling.services.appointment_service import AppointmentService
from scheduling.services.maintenance_orchestrator import ResourceMaintenanceOrchestrator
from shared.config import get_settings
from shared.policy_service import PolicyService

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)

JWT_EXPIRATION_HOURS = 12


def create_operator_token(
    operator_id: str,
    role: OperatorRole,
    *,
    doctor_id: UUID | None = None,
    patient_id: UUID | None = None,
    expires_in: timedelta = timedelta(hours=JWT_EXPIRATION_HOURS),
) -> str:
    """Issue a signed operator token (used by the identity service and tests)."""
    settings = get_settings()
    payload: dict[str, Any] = {
        "sub": operator_id,
        "role": role.value,
        "exp": datetime.now(UTC) + expires_in,
    }
    if doctor_id is not None:
        payload["doctor_id"] = str(doctor_id)
    if patient_id is not None:
        payload["patient_id"] = str(patient_id)
    return jwt.encode(payload, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def verify_token(token: str) -> dict[str, Any]:
    """Verify the JWT signature and expiry and return its payload."""
    settings = get_settings()
    try:
        return jwt.decode(token, settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    except JWTError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid token: {str(e)}",
        )


def _optional_uuid(value: Any) -> UUID | None:
    return UUID(str(value)) if value else None


async def get_current_operator(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)] = None,
) -> OperatorContext:
    """Dependency that turns the bearer token into an OperatorContext."""
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    payload = verify_token(credentials.credentials)

    try:
        operator = OperatorContext(
            operator_id=str(payload["sub"]),
            role=OperatorRole(payload.get("role")),
            doctor_id=_optional_uuid(payload.get("doctor_id")),
            patient_id=_optional_uuid(payload.get("patient_id")),
        )
    except (KeyError, ValueError) as e:
        logger.warning(f"Rejected token with malformed claims: {e}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token claims",
        )

    return operator


CurrentOperator = Annotated[OperatorContext, Depends(get_current_operator)]


# =============================================================================
# Service providers (overridden in tests via app.dependency_overrides)
# =============================================================================


async def get_policy_service() -> PolicyService:
    return await PolicyService.get_instance()


async def get_orchestrator(
    policy_service: Annotated[PolicyService, Depends(get_policy_service)],
) -> ResourceMaintenanceOrchestrator:
    return ResourceMaintenanceOrchestrator(policy_service=policy_service)


async def get_appointment_service(
    policy_service: Annotated[PolicyService, Depends(get_policy_service)],
) -> AppointmentService:
    return AppointmentService(policy_service=policy_service)

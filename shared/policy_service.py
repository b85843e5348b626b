"""
Scheduling Policy Service with TTL caching.

Provides access to the singleton scheduling_policy row with:
- TTL cache for performance (POLICY_CACHE_TTL_SECONDS, default 60s)
- Type and range validation per field
- Cross-field window invariant, validated on the merged candidate so an
  update is accepted or rejected as a whole
- Version bump and audit trail on every accepted update

Usage:
    from shared.policy_service import get_policy_service

    service = await get_policy_service()

    policy = await service.get()
    policy.confirm_window_open_hours

    await service.update({"cooldown_days": 3}, operator=operator)
"""

import asyncio
import logging
import re
from collections.abc import Iterable
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

import phonenumbers
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database.models import SCHEDULING_POLICY_ID, SchedulingPolicy, SchedulingPolicyHistory
from scheduling.authorization import OperatorContext, ensure_admin
from scheduling.errors import PolicyValidationError
from shared.config import get_settings

logger = logging.getLogger(__name__)

# Integer fields and their lower bounds
INT_FIELD_MINIMUMS: dict[str, int] = {
    "max_active_appointments_per_patient": 1,
    "confirm_window_open_hours": 1,
    "confirm_window_close_hours": 0,
    "auto_confirm_threshold_hours": 0,
    "max_appointments_per_patient_per_day": 0,
    "cooldown_days": 0,
    "max_reschedules_per_appointment": 0,
    "min_lead_time_hours": 0,
}

POLICY_FIELDS: tuple[str, ...] = (*INT_FIELD_MINIMUMS, "contact_phone")

DEFAULT_POLICY: dict[str, Any] = {
    "max_active_appointments_per_patient": 3,
    "confirm_window_open_hours": 48,
    "confirm_window_close_hours": 12,
    "auto_confirm_threshold_hours": 24,
    "max_appointments_per_patient_per_day": 1,
    "cooldown_days": 7,
    "max_reschedules_per_appointment": 2,
    "min_lead_time_hours": 2,
    "contact_phone": "+593999999999",
}

# Ecuador mobile numbers, E.164
PHONE_PATTERN = re.compile(r"^\+5939\d{8}$")
PHONE_REGION = "EC"


@dataclass(frozen=True)
class PolicySnapshot:
    """Immutable view of the scheduling policy at one version."""

    max_active_appointments_per_patient: int
    confirm_window_open_hours: int
    confirm_window_close_hours: int
    auto_confirm_threshold_hours: int
    max_appointments_per_patient_per_day: int
    cooldown_days: int
    max_reschedules_per_appointment: int
    min_lead_time_hours: int
    contact_phone: str
    version: int = 0
    updated_at: datetime | None = None
    updated_by: str | None = None

    def values(self) -> dict[str, Any]:
        """Policy fields only (no version/audit metadata)."""
        return {field: getattr(self, field) for field in POLICY_FIELDS}

    def as_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["updated_at"] = self.updated_at.isoformat() if self.updated_at else None
        return data


def normalize_phone(value: str) -> str:
    """
    Convert a phone number to E.164, defaulting to Ecuador for local numbers.

    Examples:
        "0991234567" -> "+593991234567"
        "099 123 4567" -> "+593991234567"

    Values that cannot be parsed are returned stripped and left for
    validate_policy to reject.
    """
    value = value.strip()
    try:
        parsed = phonenumbers.parse(value, PHONE_REGION)
    except phonenumbers.NumberParseException as e:
        logger.warning(f"Failed to parse phone number '{value}': {e}")
        return value
    return phonenumbers.format_number(parsed, phonenumbers.PhoneNumberFormat.E164)


def _blame(candidates: tuple[str, ...], changed: set[str]) -> str:
    """Pick the field to report: the first candidate the caller touched."""
    for field in candidates:
        if field in changed:
            return field
    return candidates[0]


def validate_policy(values: dict[str, Any], changed: Iterable[str] = ()) -> None:
    """
    Validate a complete set of policy values.

    Args:
        values: Every field of POLICY_FIELDS
        changed: Fields the caller is changing; used to decide which field a
            cross-field violation is reported against

    Raises:
        PolicyValidationError: On the first violated rule
    """
    changed_set = set(changed)

    for field, minimum in INT_FIELD_MINIMUMS.items():
        value = values.get(field)
        if not isinstance(value, int) or isinstance(value, bool):
            raise PolicyValidationError(field, "must be an integer")
        if value < minimum:
            raise PolicyValidationError(field, f"must be >= {minimum}")

    phone = values.get("contact_phone")
    if not isinstance(phone, str) or not PHONE_PATTERN.match(phone):
        raise PolicyValidationError(
            "contact_phone", "must be a mobile number starting with 09 and 10 digits long"
        )

    open_hours = values["confirm_window_open_hours"]
    close_hours = values["confirm_window_close_hours"]
    auto_hours = values["auto_confirm_threshold_hours"]
    lead_hours = values["min_lead_time_hours"]

    if not close_hours < open_hours:
        raise PolicyValidationError(
            _blame(("confirm_window_close_hours", "confirm_window_open_hours"), changed_set),
            "confirm_window_close_hours must be less than confirm_window_open_hours",
        )
    if not close_hours < auto_hours:
        raise PolicyValidationError(
            _blame(("confirm_window_close_hours", "auto_confirm_threshold_hours"), changed_set),
            "confirm_window_close_hours must be less than auto_confirm_threshold_hours",
        )
    if not auto_hours <= open_hours:
        raise PolicyValidationError(
            _blame(("auto_confirm_threshold_hours", "confirm_window_open_hours"), changed_set),
            "auto_confirm_threshold_hours must be less than or equal to confirm_window_open_hours",
        )
    if not lead_hours < open_hours:
        raise PolicyValidationError(
            _blame(("min_lead_time_hours", "confirm_window_open_hours"), changed_set),
            "min_lead_time_hours must be less than confirm_window_open_hours",
        )


def _snapshot_from_row(row: SchedulingPolicy) -> PolicySnapshot:
    return PolicySnapshot(
        **{field: getattr(row, field) for field in POLICY_FIELDS},
        version=row.version,
        updated_at=row.updated_at,
        updated_by=row.updated_by,
    )


class PolicyService:
    """
    Singleton service for reading and updating the scheduling policy.

    Uses a TTL-based cache to minimize database queries while ensuring
    the policy is reasonably fresh.
    """

    _instance: "PolicyService | None" = None
    _lock: asyncio.Lock = asyncio.Lock()

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        cache_ttl_seconds: int | None = None,
    ):
        if session_factory is None:
            from database.connection import AsyncSessionLocal

            session_factory = AsyncSessionLocal
        if cache_ttl_seconds is None:
            cache_ttl_seconds = get_settings().POLICY_CACHE_TTL_SECONDS

        self._session_factory = session_factory
        self._cache_ttl = timedelta(seconds=cache_ttl_seconds)
        self._cached: PolicySnapshot | None = None
        self._expires_at: datetime | None = None
        self._cache_lock = asyncio.Lock()

    @classmethod
    async def get_instance(cls) -> "PolicyService":
        """Get or create the singleton instance."""
        if cls._instance is None:
            async with cls._lock:
                if cls._instance is None:
                    cls._instance = cls()
                    logger.info("PolicyService initialized")
        return cls._instance

    def _is_cache_valid(self) -> bool:
        if self._cached is None or self._expires_at is None:
            return False
        return datetime.now(timezone.utc) < self._expires_at

    async def get(self) -> PolicySnapshot:
        """
        Get the current policy snapshot.

        Falls back to DEFAULT_POLICY (version 0) if the row was never seeded.
        """
        async with self._cache_lock:
            if self._is_cache_valid():
                return self._cached

        async with self._session_factory() as session:
            row = await session.get(SchedulingPolicy, SCHEDULING_POLICY_ID)
            if row is None:
                logger.warning("Scheduling policy not seeded, using defaults")
                snapshot = PolicySnapshot(**DEFAULT_POLICY)
            else:
                snapshot = _snapshot_from_row(row)

        async with self._cache_lock:
            self._cached = snapshot
            self._expires_at = datetime.now(timezone.utc) + self._cache_ttl

        return snapshot

    async def update(
        self,
        changes: dict[str, Any],
        *,
        operator: OperatorContext,
        change_reason: str | None = None,
    ) -> PolicySnapshot:
        """
        Apply a partial update atomically.

        Args:
            changes: Subset of POLICY_FIELDS with their new values
            operator: Caller; must be an administrator
            change_reason: Optional reason stored in the audit trail

        Returns:
            The new snapshot (version incremented)

        Raises:
            NotAuthorized: If operator is not an admin
            PolicyValidationError: If any field or cross-field rule fails;
                nothing is written in that case
        """
        ensure_admin(operator)

        for field in changes:
            if field not in POLICY_FIELDS:
                raise PolicyValidationError(field, "unknown field")

        changes = dict(changes)
        if isinstance(changes.get("contact_phone"), str):
            changes["contact_phone"] = normalize_phone(changes["contact_phone"])

        if not changes:
            return await self.get()

        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    select(SchedulingPolicy)
                    .where(SchedulingPolicy.id == SCHEDULING_POLICY_ID)
                    .with_for_update()
                )
                row = result.scalar_one_or_none()

                previous = (
                    {field: getattr(row, field) for field in POLICY_FIELDS}
                    if row is not None
                    else None
                )
                candidate = {**(previous or DEFAULT_POLICY), **changes}

                validate_policy(candidate, changed=changes.keys())

                if row is None:
                    row = SchedulingPolicy(id=SCHEDULING_POLICY_ID, version=1, **candidate)
                    session.add(row)
                else:
                    for field, value in changes.items():
                        setattr(row, field, value)
                    row.version += 1
                row.updated_by = operator.operator_id
                row.updated_at = datetime.now(timezone.utc)

                session.add(
                    SchedulingPolicyHistory(
                        policy_version=row.version,
                        previous_values=previous,
                        new_values=candidate,
                        changed_by=operator.operator_id,
                        change_reason=change_reason,
                    )
                )

            snapshot = _snapshot_from_row(row)

        async with self._cache_lock:
            self._cached = snapshot
            self._expires_at = datetime.now(timezone.utc) + self._cache_ttl

        logger.info(
            f"Scheduling policy updated to v{snapshot.version}: {sorted(changes)} "
            f"(by {operator.operator_id})",
            extra={"operator_id": operator.operator_id},
        )
        return snapshot

    async def get_history(self, limit: int = 50, offset: int = 0) -> list[dict]:
        """
        Get policy change history, newest first.

        Args:
            limit: Maximum number of records (default 50)
            offset: Pagination offset
        """
        async with self._session_factory() as session:
            result = await session.execute(
                select(SchedulingPolicyHistory)
                .order_by(SchedulingPolicyHistory.policy_version.desc())
                .limit(limit)
                .offset(offset)
            )
            entries = result.scalars().all()

            return [
                {
                    "id": str(entry.id),
                    "policy_version": entry.policy_version,
                    "previous_values": entry.previous_values,
                    "new_values": entry.new_values,
                    "changed_by": entry.changed_by,
                    "change_reason": entry.change_reason,
                    "changed_at": entry.changed_at.isoformat() if entry.changed_at else None,
                }
                for entry in entries
            ]

    def clear_cache(self) -> None:
        """Clear the cache. Useful for testing."""
        self._cached = None
        self._expires_at = None
        logger.debug("Policy cache cleared")

    @classmethod
    def reset_instance(cls) -> None:
        """Reset the singleton instance. Useful for testing."""
        cls._instance = None


async def get_policy_service() -> PolicyService:
    """
    Get the PolicyService singleton instance.

    Usage:
        service = await get_policy_service()
        policy = await service.get()
    """
    return await PolicyService.get_instance()

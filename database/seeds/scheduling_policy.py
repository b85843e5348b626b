"""
Seed data for the scheduling_policy singleton row.

Idempotent: an existing row is left untouched so tuned values survive a
re-seed.

Usage:
    DATABASE_URL="postgresql+asyncpg://..." python -m database.seeds.scheduling_policy
"""

import asyncio
import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database.models import SCHEDULING_POLICY_ID, SchedulingPolicy
from shared.policy_service import DEFAULT_POLICY, validate_policy

logger = logging.getLogger(__name__)


async def seed_scheduling_policy(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> bool:
    """
    Insert the default policy if the row does not exist yet.

    Returns:
        True if the row was created, False if it already existed
    """
    if session_factory is None:
        from database.connection import AsyncSessionLocal

        session_factory = AsyncSessionLocal

    validate_policy(DEFAULT_POLICY)

    async with session_factory() as session:
        async with session.begin():
            existing = await session.get(SchedulingPolicy, SCHEDULING_POLICY_ID)
            if existing is not None:
                logger.info(f"Scheduling policy already present (v{existing.version}), skipping")
                return False

            session.add(
                SchedulingPolicy(
                    id=SCHEDULING_POLICY_ID,
                    version=1,
                    updated_by="seed",
                    **DEFAULT_POLICY,
                )
            )

    logger.info("Scheduling policy seeded with defaults")
    return True


if __name__ == "__main__":
    asyncio.run(seed_scheduling_policy())

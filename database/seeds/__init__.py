"""
Seed data orchestration module.

Provides seed_all() function to execute all seed scripts in dependency order.
Can be run standalone: python -m database.seeds
"""

import asyncio

from database.seeds.scheduling_policy import seed_scheduling_policy
from shared.logging_config import configure_logging


async def seed_all() -> None:
    """
    Execute all seed scripts in dependency order.

    Order:
    1. scheduling_policy - independent
    """
    await seed_scheduling_policy()


if __name__ == "__main__":
    configure_logging()
    asyncio.run(seed_all())

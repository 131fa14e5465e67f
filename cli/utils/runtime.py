"""Helpers for running async queue operations from CLI commands"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

from jobqueue.config.settings import Settings
from jobqueue.infra.database import Database

T = TypeVar("T")


def run_with_database(
    operation: Callable[[Settings, Database], Awaitable[T]],
) -> T:
    """Build settings and a database from the environment, run, then dispose."""
    settings = Settings()

    async def runner() -> T:
        database = Database(settings)
        try:
            return await operation(settings, database)
        finally:
            await database.close()

    return asyncio.run(runner())

"""CLI runtime context — bridges sync commands to the async world."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, TypeVar

from agentworld.config import WorldSettings
from agentworld.world import World, open_world

T = TypeVar("T")


def run_async(coro: Awaitable[T]) -> T:
    """Run an async coroutine from sync CLI code."""
    return asyncio.run(coro)


def configure_logging(settings: WorldSettings) -> None:
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def with_world(fn: Callable[[World], Awaitable[T]]) -> T:
    """Open the configured world, run `fn` against it, close it."""
    settings = WorldSettings()
    configure_logging(settings)

    async def _run() -> Any:
        world = await open_world(settings)
        try:
            return await fn(world)
        finally:
            await world.close()

    return run_async(_run())

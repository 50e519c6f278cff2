"""Bounded retry with exponential backoff for transient failures.

Only dependency outages and unconfirmed external effects are retried.
Retrying an unconfirmed transfer is safe because settlement re-checks
the recorded submission instead of sending a new one.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, TypeVar

import structlog

from agentworld.exceptions import DependencyUnavailableError, UnconfirmedExternalEffectError

T = TypeVar("T")

RETRYABLE = (DependencyUnavailableError, UnconfirmedExternalEffectError)

logger = structlog.get_logger()


async def with_retries(
    operation: Callable[[], Awaitable[T]],
    /,
    attempts: int = 3,
    base_delay: float = 0.5,
    max_delay: float = 30.0,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    **context,
) -> T:
    """Run `operation` up to `attempts` times; re-raise the last retryable error."""
    attempt = 1
    while True:
        try:
            return await operation()
        except RETRYABLE as e:
            if attempt >= attempts:
                raise
            delay = min(max_delay, base_delay * 2 ** (attempt - 1))
            logger.warning(
                "operation_retry",
                attempt=attempt,
                delay=delay,
                error_kind=e.kind,
                error=str(e),
                **context,
            )
            await sleep(delay)
            attempt += 1

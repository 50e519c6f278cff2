"""Fixed-window rate limiting on the shared store.

The counter for `prefix:identifier` is incremented atomically and
expires with the window, so every handler instance shares one budget
per caller. Mutating operations fail closed when the store is down.
"""

from __future__ import annotations

import logging

from pydantic import BaseModel

from agentworld.exceptions import DependencyUnavailableError, RateLimitedError
from agentworld.store import keys
from agentworld.store.base import KeyValueStore

_logger = logging.getLogger(__name__)


class RateLimitConfig(BaseModel):
    prefix: str
    window_seconds: int
    max_requests: int


class RateLimitDecision(BaseModel):
    allowed: bool
    remaining: int
    reset_in_seconds: int


RATE_LIMIT_PRESETS: dict[str, RateLimitConfig] = {
    "general": RateLimitConfig(prefix="general", window_seconds=60, max_requests=60),
    "upload": RateLimitConfig(prefix="upload", window_seconds=3600, max_requests=10),
    "ai": RateLimitConfig(prefix="ai", window_seconds=60, max_requests=30),
    "admin": RateLimitConfig(prefix="admin", window_seconds=60, max_requests=5),
}


def bucket_identifier(ip: str, user: str | None = None) -> str:
    """IP alone, or IP plus a case-folded user identifier."""
    return f"{ip}:{user.lower()}" if user else ip


class RateLimiter:
    """Window counters keyed per bucket."""

    def __init__(self, store: KeyValueStore) -> None:
        self._store = store

    async def allow(
        self,
        bucket_key: str,
        window_seconds: int,
        max_requests: int,
        fail_open: bool = False,
    ) -> RateLimitDecision:
        """Count one request against `bucket_key`.

        When the store is unreachable the request is rejected unless
        `fail_open` is set, which only read paths should use.
        """
        key = keys.rate_limit(bucket_key)
        try:
            count = await self._store.incr(key, 1, ttl=window_seconds)
            ttl = await self._store.ttl(key)
        except DependencyUnavailableError as e:
            _logger.warning("Rate limiter store unavailable for %s: %s", bucket_key, e)
            return RateLimitDecision(
                allowed=fail_open,
                remaining=max_requests if fail_open else 0,
                reset_in_seconds=window_seconds,
            )

        return RateLimitDecision(
            allowed=count <= max_requests,
            remaining=max(0, max_requests - count),
            reset_in_seconds=ttl if ttl > 0 else window_seconds,
        )

    async def check(
        self, config: RateLimitConfig, identifier: str, fail_open: bool = False,
    ) -> RateLimitDecision:
        return await self.allow(
            f"{config.prefix}:{identifier}",
            config.window_seconds,
            config.max_requests,
            fail_open=fail_open,
        )

    async def enforce(self, config: RateLimitConfig, identifier: str) -> RateLimitDecision:
        """Like `check`, but raises `RateLimitedError` when over budget."""
        decision = await self.check(config, identifier)
        if not decision.allowed:
            raise RateLimitedError(
                f"Rate limit exceeded for {config.prefix}; retry in {decision.reset_in_seconds}s",
                retry_after=decision.reset_in_seconds,
            )
        return decision

"""Redis-backed KeyValueStore for multi-instance deployments.

Conditional writes (`hcas`, `apply`) use WATCH/MULTI/EXEC: the check
runs against watched keys and the transaction aborts if any of them
changed, in which case the attempt is repeated.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Awaitable, Callable, TypeVar

import redis.asyncio as aioredis
from redis.exceptions import RedisError, WatchError

from agentworld.exceptions import DependencyUnavailableError
from agentworld.store.base import (
    ApplyResult,
    Guard,
    HIncrBy,
    HIncrDecimal,
    HSet,
    KeyValueStore,
    LPush,
    Op,
    SAdd,
    SetValue,
    ZAdd,
    ZIncrBy,
    decimal_keys,
)
from agentworld.types import add_amounts, format_amount

T = TypeVar("T")
Attempt = Callable[[Any], Awaitable[tuple[bool, T]]]


class RedisStore(KeyValueStore):
    """Store on a Redis 7+ server (EXPIRE NX is used for window counters)."""

    def __init__(self, url: str = "", client: aioredis.Redis | None = None, max_attempts: int = 16) -> None:
        self._client = client or aioredis.from_url(url, decode_responses=True)
        self._max_attempts = max_attempts

    async def _call(self, awaitable: Awaitable[T]) -> T:
        try:
            return await awaitable
        except RedisError as e:
            raise DependencyUnavailableError(f"Redis error: {e}") from e

    async def initialize(self) -> None:
        await self._call(self._client.ping())

    async def close(self) -> None:
        await self._client.aclose()

    async def _optimistic(self, keys: list[str], attempt: Attempt) -> T:
        """Run `attempt` under WATCH until its MULTI/EXEC goes through."""
        for _ in range(self._max_attempts):
            try:
                async with self._client.pipeline(transaction=True) as pipe:
                    if keys:
                        await pipe.watch(*keys)
                    execute, result = await attempt(pipe)
                    if execute:
                        await pipe.execute()
                    else:
                        await pipe.unwatch()
                    return result
            except WatchError:
                continue
            except RedisError as e:
                raise DependencyUnavailableError(f"Redis error: {e}") from e
        raise DependencyUnavailableError(f"Gave up after {self._max_attempts} contended attempts on {keys}")

    # ── strings ──────────────────────────────────────────────────

    async def get(self, key: str) -> str | None:
        return await self._call(self._client.get(key))

    async def set(self, key: str, value: str, ttl: int | None = None) -> None:
        await self._call(self._client.set(key, value, ex=ttl))

    async def set_if_absent(self, key: str, value: str, ttl: int | None = None) -> bool:
        return bool(await self._call(self._client.set(key, value, ex=ttl, nx=True)))

    async def delete(self, key: str) -> bool:
        return bool(await self._call(self._client.delete(key)))

    async def exists(self, key: str) -> bool:
        return bool(await self._call(self._client.exists(key)))

    async def incr(self, key: str, amount: int = 1, ttl: int | None = None) -> int:
        pipe = self._client.pipeline(transaction=True)
        pipe.incrby(key, amount)
        if ttl:
            pipe.expire(key, ttl, nx=True)
        results = await self._call(pipe.execute())
        return int(results[0])

    async def ttl(self, key: str) -> int:
        return int(await self._call(self._client.ttl(key)))

    # ── hashes ───────────────────────────────────────────────────

    async def hset(self, key: str, mapping: dict[str, str]) -> None:
        await self._call(self._client.hset(key, mapping=mapping))

    async def hget(self, key: str, field: str) -> str | None:
        return await self._call(self._client.hget(key, field))

    async def hgetall(self, key: str) -> dict[str, str]:
        return await self._call(self._client.hgetall(key))

    async def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        return int(await self._call(self._client.hincrby(key, field, amount)))

    async def hcas(
        self,
        key: str,
        field: str,
        expected: str | None,
        new: str,
        also: dict[str, str] | None = None,
    ) -> bool:
        async def attempt(pipe) -> tuple[bool, bool]:
            if await pipe.hget(key, field) != expected:
                return False, False
            pipe.multi()
            pipe.hset(key, mapping={field: new, **(also or {})})
            return True, True

        return await self._optimistic([key], attempt)

    # ── sets ─────────────────────────────────────────────────────

    async def sadd(self, key: str, *members: str) -> int:
        return int(await self._call(self._client.sadd(key, *members)))

    async def smembers(self, key: str) -> set[str]:
        return set(await self._call(self._client.smembers(key)))

    async def sismember(self, key: str, member: str) -> bool:
        return bool(await self._call(self._client.sismember(key, member)))

    # ── sorted sets ──────────────────────────────────────────────

    async def zadd(self, key: str, member: str, score: float, nx: bool = False) -> bool:
        return bool(await self._call(self._client.zadd(key, {member: score}, nx=nx)))

    async def zincrby(self, key: str, member: str, amount: float) -> float:
        return float(await self._call(self._client.zincrby(key, amount, member)))

    async def zrange(
        self, key: str, start: int = 0, stop: int = -1, desc: bool = False,
    ) -> list[tuple[str, float]]:
        rows = await self._call(
            self._client.zrange(key, start, stop, desc=desc, withscores=True)
        )
        return [(member, float(score)) for member, score in rows]

    async def zscore(self, key: str, member: str) -> float | None:
        score = await self._call(self._client.zscore(key, member))
        return None if score is None else float(score)

    async def zcard(self, key: str) -> int:
        return int(await self._call(self._client.zcard(key)))

    # ── lists ────────────────────────────────────────────────────

    async def lpush(self, key: str, value: str, max_len: int | None = None) -> int:
        pipe = self._client.pipeline(transaction=True)
        pipe.lpush(key, value)
        if max_len is not None:
            pipe.ltrim(key, 0, max_len - 1)
        pipe.llen(key)
        results = await self._call(pipe.execute())
        return int(results[-1])

    async def lrange(self, key: str, start: int = 0, stop: int = -1) -> list[str]:
        return await self._call(self._client.lrange(key, start, stop))

    # ── batches ──────────────────────────────────────────────────

    async def apply(
        self,
        ops: list[Op],
        once_key: str | None = None,
        once_ttl: int | None = None,
        guard: Guard | None = None,
    ) -> ApplyResult:
        watched = [k for k in (once_key, guard.key if guard else None) if k]
        watched += decimal_keys(ops)

        async def attempt(pipe) -> tuple[bool, ApplyResult]:
            if once_key is not None and await pipe.exists(once_key):
                return False, ApplyResult.DUPLICATE
            if guard is not None and await pipe.hget(guard.key, guard.field) not in guard.allowed:
                return False, ApplyResult.REJECTED

            totals: dict[tuple[str, str], Decimal] = {}
            for op in ops:
                if isinstance(op, HIncrDecimal):
                    slot = (op.key, op.field)
                    if slot not in totals:
                        totals[slot] = Decimal(await pipe.hget(op.key, op.field) or "0")
                    totals[slot] = add_amounts(totals[slot], op.amount)

            pipe.multi()
            written: set[tuple[str, str]] = set()
            for op in ops:
                if isinstance(op, HSet):
                    pipe.hset(op.key, mapping=op.mapping)
                elif isinstance(op, HIncrBy):
                    pipe.hincrby(op.key, op.field, op.amount)
                elif isinstance(op, HIncrDecimal):
                    slot = (op.key, op.field)
                    if slot not in written:
                        pipe.hset(op.key, op.field, format_amount(totals[slot]))
                        written.add(slot)
                elif isinstance(op, ZAdd):
                    pipe.zadd(op.key, {op.member: op.score}, nx=op.nx)
                elif isinstance(op, ZIncrBy):
                    pipe.zincrby(op.key, op.amount, op.member)
                elif isinstance(op, SAdd):
                    pipe.sadd(op.key, op.member)
                elif isinstance(op, LPush):
                    pipe.lpush(op.key, op.value)
                    if op.max_len is not None:
                        pipe.ltrim(op.key, 0, op.max_len - 1)
                elif isinstance(op, SetValue):
                    pipe.set(op.key, op.value, ex=op.ttl)
                else:
                    raise TypeError(f"Unknown store op: {op!r}")
            if once_key is not None:
                pipe.set(once_key, "1", ex=once_ttl)
            return True, ApplyResult.APPLIED

        return await self._optimistic(watched, attempt)

    def __repr__(self) -> str:
        return "RedisStore()"

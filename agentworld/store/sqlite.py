"""SQLite-backed KeyValueStore.

Every mutation runs inside `BEGIN IMMEDIATE`, which takes SQLite's
write lock up front. Two handler processes sharing the same database
file therefore serialize their read-check-write batches the way Redis
serializes a MULTI/EXEC.
"""

from __future__ import annotations

import asyncio
import math
import time
from contextlib import asynccontextmanager
from decimal import Decimal
from pathlib import Path
from typing import AsyncIterator

import aiosqlite

from agentworld.exceptions import DependencyUnavailableError
from agentworld.migrations.runner import apply_migrations
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
)
from agentworld.types import Clock, add_amounts, format_amount


class SQLiteStore(KeyValueStore):
    """Durable store in a single SQLite file."""

    def __init__(self, db_path: str | Path, clock: Clock = time.time, busy_timeout: float = 5.0) -> None:
        self._db_path = str(db_path)
        self._clock = clock
        self._busy_timeout = busy_timeout
        self._db: aiosqlite.Connection | None = None
        # One transaction at a time on the shared connection.
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        try:
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
            await apply_migrations(self._db_path)
            self._db = await aiosqlite.connect(
                self._db_path, timeout=self._busy_timeout, isolation_level=None,
            )
        except (aiosqlite.Error, OSError) as e:
            raise DependencyUnavailableError(f"Cannot open store at {self._db_path}: {e}") from e

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    def _conn(self) -> aiosqlite.Connection:
        if self._db is None:
            raise DependencyUnavailableError("Store is not initialized")
        return self._db

    @asynccontextmanager
    async def _tx(self) -> AsyncIterator[aiosqlite.Connection]:
        db = self._conn()
        async with self._lock:
            try:
                await db.execute("BEGIN IMMEDIATE")
                try:
                    yield db
                except BaseException:
                    await db.execute("ROLLBACK")
                    raise
                else:
                    await db.execute("COMMIT")
            except aiosqlite.Error as e:
                raise DependencyUnavailableError(f"Store transaction failed: {e}") from e

    # ── helpers (inside a transaction) ───────────────────────────

    async def _kv_get(self, db: aiosqlite.Connection, key: str) -> str | None:
        cursor = await db.execute(
            "SELECT value FROM kv WHERE key = ? AND (expires_at IS NULL OR expires_at > ?)",
            (key, self._clock()),
        )
        row = await cursor.fetchone()
        return row[0] if row else None

    async def _kv_put(self, db: aiosqlite.Connection, key: str, value: str, ttl: int | None) -> None:
        expires_at = self._clock() + ttl if ttl else None
        await db.execute(
            "INSERT INTO kv (key, value, expires_at) VALUES (?, ?, ?) "
            "ON CONFLICT(key) DO UPDATE SET value = excluded.value, expires_at = excluded.expires_at",
            (key, value, expires_at),
        )

    async def _hget(self, db: aiosqlite.Connection, key: str, field: str) -> str | None:
        cursor = await db.execute(
            "SELECT value FROM hashes WHERE key = ? AND field = ?", (key, field),
        )
        row = await cursor.fetchone()
        return row[0] if row else None

    async def _hput(self, db: aiosqlite.Connection, key: str, mapping: dict[str, str]) -> None:
        await db.executemany(
            "INSERT INTO hashes (key, field, value) VALUES (?, ?, ?) "
            "ON CONFLICT(key, field) DO UPDATE SET value = excluded.value",
            [(key, f, str(v)) for f, v in mapping.items()],
        )

    async def _zscore(self, db: aiosqlite.Connection, key: str, member: str) -> float | None:
        cursor = await db.execute(
            "SELECT score FROM zsets WHERE key = ? AND member = ?", (key, member),
        )
        row = await cursor.fetchone()
        return row[0] if row else None

    async def _apply_op(self, db: aiosqlite.Connection, op: Op) -> None:
        if isinstance(op, HSet):
            await self._hput(db, op.key, op.mapping)
        elif isinstance(op, HIncrBy):
            current = await self._hget(db, op.key, op.field)
            await self._hput(db, op.key, {op.field: str(int(current or 0) + op.amount)})
        elif isinstance(op, HIncrDecimal):
            current = Decimal(await self._hget(db, op.key, op.field) or "0")
            await self._hput(db, op.key, {op.field: format_amount(add_amounts(current, op.amount))})
        elif isinstance(op, ZAdd):
            if op.nx and await self._zscore(db, op.key, op.member) is not None:
                return
            await db.execute(
                "INSERT INTO zsets (key, member, score) VALUES (?, ?, ?) "
                "ON CONFLICT(key, member) DO UPDATE SET score = excluded.score",
                (op.key, op.member, op.score),
            )
        elif isinstance(op, ZIncrBy):
            current = await self._zscore(db, op.key, op.member) or 0.0
            await db.execute(
                "INSERT INTO zsets (key, member, score) VALUES (?, ?, ?) "
                "ON CONFLICT(key, member) DO UPDATE SET score = excluded.score",
                (op.key, op.member, current + op.amount),
            )
        elif isinstance(op, SAdd):
            await db.execute(
                "INSERT OR IGNORE INTO sets (key, member) VALUES (?, ?)", (op.key, op.member),
            )
        elif isinstance(op, LPush):
            await db.execute("INSERT INTO lists (key, value) VALUES (?, ?)", (op.key, op.value))
            if op.max_len is not None:
                await db.execute(
                    "DELETE FROM lists WHERE key = ? AND seq NOT IN "
                    "(SELECT seq FROM lists WHERE key = ? ORDER BY seq DESC LIMIT ?)",
                    (op.key, op.key, op.max_len),
                )
        elif isinstance(op, SetValue):
            await self._kv_put(db, op.key, op.value, op.ttl)
        else:
            raise TypeError(f"Unknown store op: {op!r}")

    # ── strings ──────────────────────────────────────────────────

    async def get(self, key: str) -> str | None:
        async with self._tx() as db:
            return await self._kv_get(db, key)

    async def set(self, key: str, value: str, ttl: int | None = None) -> None:
        async with self._tx() as db:
            await self._kv_put(db, key, value, ttl)

    async def set_if_absent(self, key: str, value: str, ttl: int | None = None) -> bool:
        async with self._tx() as db:
            if await self._kv_get(db, key) is not None:
                return False
            await self._kv_put(db, key, value, ttl)
            return True

    async def delete(self, key: str) -> bool:
        removed = 0
        async with self._tx() as db:
            for table in ("kv", "hashes", "sets", "zsets", "lists"):
                cursor = await db.execute(f"DELETE FROM {table} WHERE key = ?", (key,))
                removed += cursor.rowcount
        return removed > 0

    async def exists(self, key: str) -> bool:
        async with self._tx() as db:
            if await self._kv_get(db, key) is not None:
                return True
            for table in ("hashes", "sets", "zsets", "lists"):
                cursor = await db.execute(f"SELECT 1 FROM {table} WHERE key = ? LIMIT 1", (key,))
                if await cursor.fetchone():
                    return True
        return False

    async def incr(self, key: str, amount: int = 1, ttl: int | None = None) -> int:
        async with self._tx() as db:
            current = await self._kv_get(db, key)
            if current is None:
                await self._kv_put(db, key, str(amount), ttl)
                return amount
            value = int(current) + amount
            await db.execute("UPDATE kv SET value = ? WHERE key = ?", (str(value), key))
            return value

    async def ttl(self, key: str) -> int:
        async with self._tx() as db:
            now = self._clock()
            cursor = await db.execute(
                "SELECT expires_at FROM kv WHERE key = ? AND (expires_at IS NULL OR expires_at > ?)",
                (key, now),
            )
            row = await cursor.fetchone()
        if row is None:
            return -2
        if row[0] is None:
            return -1
        return max(0, math.ceil(row[0] - now))

    # ── hashes ───────────────────────────────────────────────────

    async def hset(self, key: str, mapping: dict[str, str]) -> None:
        async with self._tx() as db:
            await self._hput(db, key, mapping)

    async def hget(self, key: str, field: str) -> str | None:
        async with self._tx() as db:
            return await self._hget(db, key, field)

    async def hgetall(self, key: str) -> dict[str, str]:
        async with self._tx() as db:
            cursor = await db.execute("SELECT field, value FROM hashes WHERE key = ?", (key,))
            rows = await cursor.fetchall()
        return {row[0]: row[1] for row in rows}

    async def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        async with self._tx() as db:
            current = await self._hget(db, key, field)
            value = int(current or 0) + amount
            await self._hput(db, key, {field: str(value)})
            return value

    async def hcas(
        self,
        key: str,
        field: str,
        expected: str | None,
        new: str,
        also: dict[str, str] | None = None,
    ) -> bool:
        async with self._tx() as db:
            if await self._hget(db, key, field) != expected:
                return False
            await self._hput(db, key, {field: new, **(also or {})})
            return True

    # ── sets ─────────────────────────────────────────────────────

    async def sadd(self, key: str, *members: str) -> int:
        added = 0
        async with self._tx() as db:
            for member in members:
                cursor = await db.execute(
                    "INSERT OR IGNORE INTO sets (key, member) VALUES (?, ?)", (key, member),
                )
                added += cursor.rowcount
        return added

    async def smembers(self, key: str) -> set[str]:
        async with self._tx() as db:
            cursor = await db.execute("SELECT member FROM sets WHERE key = ?", (key,))
            rows = await cursor.fetchall()
        return {row[0] for row in rows}

    async def sismember(self, key: str, member: str) -> bool:
        async with self._tx() as db:
            cursor = await db.execute(
                "SELECT 1 FROM sets WHERE key = ? AND member = ?", (key, member),
            )
            return await cursor.fetchone() is not None

    # ── sorted sets ──────────────────────────────────────────────

    async def zadd(self, key: str, member: str, score: float, nx: bool = False) -> bool:
        async with self._tx() as db:
            existed = await self._zscore(db, key, member) is not None
            await self._apply_op(db, ZAdd(key, member, score, nx))
        return not existed

    async def zincrby(self, key: str, member: str, amount: float) -> float:
        async with self._tx() as db:
            await self._apply_op(db, ZIncrBy(key, member, amount))
            return await self._zscore(db, key, member) or 0.0

    async def zrange(
        self, key: str, start: int = 0, stop: int = -1, desc: bool = False,
    ) -> list[tuple[str, float]]:
        order = "DESC" if desc else "ASC"
        limit = -1 if stop < 0 else max(0, stop - start + 1)
        async with self._tx() as db:
            cursor = await db.execute(
                f"SELECT member, score FROM zsets WHERE key = ? "
                f"ORDER BY score {order}, member {order} LIMIT ? OFFSET ?",
                (key, limit, start),
            )
            rows = await cursor.fetchall()
        return [(row[0], row[1]) for row in rows]

    async def zscore(self, key: str, member: str) -> float | None:
        async with self._tx() as db:
            return await self._zscore(db, key, member)

    async def zcard(self, key: str) -> int:
        async with self._tx() as db:
            cursor = await db.execute("SELECT COUNT(*) FROM zsets WHERE key = ?", (key,))
            row = await cursor.fetchone()
        return row[0]

    # ── lists ────────────────────────────────────────────────────

    async def lpush(self, key: str, value: str, max_len: int | None = None) -> int:
        async with self._tx() as db:
            await self._apply_op(db, LPush(key, value, max_len))
            cursor = await db.execute("SELECT COUNT(*) FROM lists WHERE key = ?", (key,))
            row = await cursor.fetchone()
        return row[0]

    async def lrange(self, key: str, start: int = 0, stop: int = -1) -> list[str]:
        limit = -1 if stop < 0 else max(0, stop - start + 1)
        async with self._tx() as db:
            cursor = await db.execute(
                "SELECT value FROM lists WHERE key = ? ORDER BY seq DESC LIMIT ? OFFSET ?",
                (key, limit, start),
            )
            rows = await cursor.fetchall()
        return [row[0] for row in rows]

    # ── batches ──────────────────────────────────────────────────

    async def apply(
        self,
        ops: list[Op],
        once_key: str | None = None,
        once_ttl: int | None = None,
        guard: Guard | None = None,
    ) -> ApplyResult:
        async with self._tx() as db:
            if once_key is not None and await self._kv_get(db, once_key) is not None:
                return ApplyResult.DUPLICATE
            if guard is not None:
                if await self._hget(db, guard.key, guard.field) not in guard.allowed:
                    return ApplyResult.REJECTED
            for op in ops:
                await self._apply_op(db, op)
            if once_key is not None:
                await self._kv_put(db, once_key, "1", once_ttl)
        return ApplyResult.APPLIED

    def __repr__(self) -> str:
        return f"SQLiteStore({self._db_path!r})"

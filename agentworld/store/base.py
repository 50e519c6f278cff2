"""KeyValueStore — the shared, durable state every engine coordinates through.

Handlers may run in separate processes, so every read-then-write that
matters goes through one of the store's atomic primitives: `incr`,
`set_if_absent`, `hcas`, or an `apply` batch. Engines never hold
in-memory locks around domain state.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum


# ── Batch mutations ──────────────────────────────────────────────────────────


@dataclass(frozen=True)
class HSet:
    key: str
    mapping: dict[str, str]


@dataclass(frozen=True)
class HIncrBy:
    key: str
    field: str
    amount: int


@dataclass(frozen=True)
class HIncrDecimal:
    """Exact decimal add on a hash field holding a decimal string."""

    key: str
    field: str
    amount: Decimal


@dataclass(frozen=True)
class ZAdd:
    key: str
    member: str
    score: float
    nx: bool = False  # only add when the member is absent


@dataclass(frozen=True)
class ZIncrBy:
    key: str
    member: str
    amount: float


@dataclass(frozen=True)
class SAdd:
    key: str
    member: str


@dataclass(frozen=True)
class LPush:
    key: str
    value: str
    max_len: int | None = None


@dataclass(frozen=True)
class SetValue:
    key: str
    value: str
    ttl: int | None = None


Op = HSet | HIncrBy | HIncrDecimal | ZAdd | ZIncrBy | SAdd | LPush | SetValue


@dataclass(frozen=True)
class Guard:
    """Batch precondition: hash field must hold one of `allowed` (None = absent)."""

    key: str
    field: str
    allowed: tuple[str | None, ...] = field(default_factory=tuple)


class ApplyResult(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"  # once_key already present
    REJECTED = "rejected"    # guard did not hold


def decimal_keys(ops: list[Op]) -> list[str]:
    return [op.key for op in ops if isinstance(op, HIncrDecimal)]


# ── Store interface ──────────────────────────────────────────────────────────


class KeyValueStore(ABC):
    """Redis-shaped async store.

    Implementations raise `DependencyUnavailableError` when the backend
    cannot be reached.
    """

    async def initialize(self) -> None:
        """Prepare connections and schema."""

    async def close(self) -> None:
        """Release connections."""

    # Strings

    @abstractmethod
    async def get(self, key: str) -> str | None: ...

    @abstractmethod
    async def set(self, key: str, value: str, ttl: int | None = None) -> None: ...

    @abstractmethod
    async def set_if_absent(self, key: str, value: str, ttl: int | None = None) -> bool: ...

    @abstractmethod
    async def delete(self, key: str) -> bool: ...

    @abstractmethod
    async def exists(self, key: str) -> bool: ...

    @abstractmethod
    async def incr(self, key: str, amount: int = 1, ttl: int | None = None) -> int:
        """Increment a counter. `ttl` is applied only when the key is created."""

    @abstractmethod
    async def ttl(self, key: str) -> int:
        """Seconds until expiry; -1 when persistent, -2 when missing."""

    # Hashes

    @abstractmethod
    async def hset(self, key: str, mapping: dict[str, str]) -> None: ...

    @abstractmethod
    async def hget(self, key: str, field: str) -> str | None: ...

    @abstractmethod
    async def hgetall(self, key: str) -> dict[str, str]: ...

    @abstractmethod
    async def hincrby(self, key: str, field: str, amount: int = 1) -> int: ...

    @abstractmethod
    async def hcas(
        self,
        key: str,
        field: str,
        expected: str | None,
        new: str,
        also: dict[str, str] | None = None,
    ) -> bool:
        """Set `field` to `new` (plus `also`) only if it currently equals `expected`."""

    # Sets

    @abstractmethod
    async def sadd(self, key: str, *members: str) -> int: ...

    @abstractmethod
    async def smembers(self, key: str) -> set[str]: ...

    @abstractmethod
    async def sismember(self, key: str, member: str) -> bool: ...

    # Sorted sets

    @abstractmethod
    async def zadd(self, key: str, member: str, score: float, nx: bool = False) -> bool: ...

    @abstractmethod
    async def zincrby(self, key: str, member: str, amount: float) -> float: ...

    @abstractmethod
    async def zrange(
        self, key: str, start: int = 0, stop: int = -1, desc: bool = False,
    ) -> list[tuple[str, float]]:
        """Members with scores; ties break on member, like Redis."""

    @abstractmethod
    async def zscore(self, key: str, member: str) -> float | None: ...

    @abstractmethod
    async def zcard(self, key: str) -> int: ...

    # Lists

    @abstractmethod
    async def lpush(self, key: str, value: str, max_len: int | None = None) -> int: ...

    @abstractmethod
    async def lrange(self, key: str, start: int = 0, stop: int = -1) -> list[str]: ...

    # Batches

    @abstractmethod
    async def apply(
        self,
        ops: list[Op],
        once_key: str | None = None,
        once_ttl: int | None = None,
        guard: Guard | None = None,
    ) -> ApplyResult:
        """Apply `ops` atomically.

        With `once_key`, the batch applies at most once: the marker is
        written in the same transaction as the mutations. With `guard`,
        nothing is written unless the guarded hash field holds an allowed
        value.
        """

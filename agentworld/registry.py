"""Agent Registry — who is in the world and what they have done.

An agent enters once (after its entry fee is verified) and is never
removed. Activity counters change through atomic store increments, so
concurrent actions by the same agent never lose updates.
"""

from __future__ import annotations

import time
from decimal import Decimal

from agentworld import codec
from agentworld.events.bus import EventBus
from agentworld.exceptions import (
    AgentNotFoundError,
    AlreadyRegisteredError,
    DependencyUnavailableError,
    InvalidInputError,
)
from agentworld.ledger import RewardLedger
from agentworld.store import keys
from agentworld.store.base import (
    ApplyResult,
    HIncrBy,
    HSet,
    KeyValueStore,
    SAdd,
    ZAdd,
)
from agentworld.types import (
    Agent,
    Clock,
    LeaderboardEntry,
    canonical_address,
    short_address,
)

MAX_NAME_LENGTH = 64
MAX_DESCRIPTION_LENGTH = 500

_agent_codec = codec.RecordCodec(Agent)


class AgentRegistry:
    """Registry of agents plus the materialized leaderboard."""

    def __init__(
        self,
        store: KeyValueStore,
        bus: EventBus,
        ledger: RewardLedger | None = None,
        action_marker_ttl: int | None = 7 * 24 * 3600,
        clock: Clock = time.time,
    ) -> None:
        self._store = store
        self._bus = bus
        self._ledger = ledger
        self._action_marker_ttl = action_marker_ttl
        self._clock = clock

    async def register(
        self,
        address: str,
        name: str,
        description: str = "",
        entry_tx_hash: str = "",
    ) -> Agent:
        addr = canonical_address(address)
        name = (name or "").strip()
        if not name or len(name) > MAX_NAME_LENGTH:
            raise InvalidInputError(f"Agent name must be 1-{MAX_NAME_LENGTH} characters")
        if len(description) > MAX_DESCRIPTION_LENGTH:
            raise InvalidInputError(f"Description exceeds {MAX_DESCRIPTION_LENGTH} characters")

        agent = Agent(
            address=addr,
            name=name,
            description=description,
            entry_tx_hash=entry_tx_hash,
            registered_at=self._clock(),
        )
        result = await self._store.apply(
            [
                HSet(keys.agent(addr), _agent_codec.encode(agent)),
                SAdd(keys.AGENT_SET, addr),
                ZAdd(keys.LEADERBOARD, addr, 0.0, nx=True),
            ],
            once_key=keys.registered(addr),
        )
        if result is ApplyResult.DUPLICATE:
            raise AlreadyRegisteredError(f"Agent {addr} is already registered")

        await self._bus.emit(
            "agent.entered",
            agent=addr,
            description=f"{name} entered the world",
            tx_hash=entry_tx_hash,
            source="registry",
        )
        return agent

    async def get(self, address: str) -> Agent:
        addr = canonical_address(address)
        agent = _agent_codec.decode_optional(await self._store.hgetall(keys.agent(addr)))
        if agent is None:
            raise AgentNotFoundError(f"Agent {addr} is not registered")
        return agent

    async def is_registered(self, address: str) -> bool:
        return await self._store.sismember(keys.AGENT_SET, canonical_address(address))

    async def record_action(
        self,
        address: str,
        action: str = "action",
        reward_amount: Decimal | str | None = None,
        idempotency_key: str | None = None,
        tx_hash: str | None = None,
    ) -> Agent:
        """Count an action; credit a reward through the ledger when one is given."""
        addr = canonical_address(address)
        if not await self._store.sismember(keys.AGENT_SET, addr):
            raise AgentNotFoundError(f"Agent {addr} is not registered")
        if reward_amount is not None:
            if not idempotency_key:
                raise InvalidInputError("Rewarded actions require an idempotency key")
            if self._ledger is None:
                raise DependencyUnavailableError("No reward ledger configured")

        result = await self._store.apply(
            [
                HIncrBy(keys.agent(addr), "total_actions", 1),
                HSet(keys.agent(addr), {"last_action_at": str(self._clock())}),
            ],
            once_key=keys.action_marker(idempotency_key) if idempotency_key else None,
            once_ttl=self._action_marker_ttl,
        )
        if result is ApplyResult.APPLIED:
            await self._bus.emit(
                "agent.action",
                {"action": action},
                agent=addr,
                description=f"{short_address(addr)} performed {action}",
                source="registry",
            )

        if reward_amount is not None:
            await self._ledger.distribute(addr, action, reward_amount, idempotency_key, tx_hash=tx_hash)
        return await self.get(addr)

    async def list_all(self, offset: int = 0, limit: int = 50) -> list[Agent]:
        """Agents, most recently registered first."""
        agents = []
        for addr in await self._store.smembers(keys.AGENT_SET):
            agent = _agent_codec.decode_optional(await self._store.hgetall(keys.agent(addr)))
            if agent is not None:
                agents.append(agent)
        agents.sort(key=lambda a: a.registered_at, reverse=True)
        return agents[offset:offset + limit]

    async def count(self) -> int:
        return len(await self._store.smembers(keys.AGENT_SET))

    async def active_since(self, seconds: float) -> list[Agent]:
        """Agents whose last action falls within the past `seconds`."""
        cutoff = self._clock() - seconds
        return [a for a in await self.list_all(limit=10_000) if a.last_action_at >= cutoff]

    async def leaderboard(self, limit: int = 20, offset: int = 0) -> list[LeaderboardEntry]:
        """Agents by cumulative reward, highest first.

        Ranking comes from the sorted set; the reported score is the
        exact decimal total from the agent record.
        """
        rows = await self._store.zrange(keys.LEADERBOARD, offset, offset + limit - 1, desc=True)
        entries = []
        for i, (addr, score) in enumerate(rows):
            exact = await self._store.hget(keys.agent(addr), "rewards_earned")
            entries.append(LeaderboardEntry(
                rank=offset + i + 1,
                address=addr,
                score=Decimal(exact) if exact is not None else Decimal(str(score)),
            ))
        return entries

"""Reward Ledger — exact, at-most-once reward accounting.

A distribution credits the agent only after the on-chain transfer has
a successful receipt. The "already applied" marker, the agent's new
total, the leaderboard score and the immutable RewardEvent are written
in one store batch, so a replayed idempotency key is a no-op.
"""

from __future__ import annotations

import logging
import time
from decimal import Decimal

from pydantic import BaseModel

from agentworld import codec
from agentworld.chain import Settlement
from agentworld.events.bus import EventBus
from agentworld.exceptions import AgentNotFoundError, CorruptRecordError, InvalidInputError
from agentworld.store import keys
from agentworld.store.base import (
    ApplyResult,
    HIncrDecimal,
    KeyValueStore,
    LPush,
    ZIncrBy,
)
from agentworld.types import (
    Address,
    Clock,
    RewardEvent,
    add_amounts,
    canonical_address,
    format_amount,
    parse_amount,
    short_address,
)

_logger = logging.getLogger(__name__)


class DistributionResult(BaseModel):
    applied: bool
    event: RewardEvent | None = None
    tx_hash: str = ""


class RewardLedger:
    """Credits rewards to registered agents."""

    def __init__(
        self,
        store: KeyValueStore,
        bus: EventBus,
        settlement: Settlement | None = None,
        reward_amounts: dict[str, Decimal] | None = None,
        marker_ttl: int | None = 7 * 24 * 3600,
        clock: Clock = time.time,
    ) -> None:
        self._store = store
        self._bus = bus
        self._settlement = settlement
        self._rewards = dict(reward_amounts or {})
        self._marker_ttl = marker_ttl
        self._clock = clock

    def reward_for(self, action: str) -> Decimal:
        """Configured reward for an action kind; 0 when not rewardable."""
        return self._rewards.get(action, Decimal("0"))

    def is_rewardable(self, action: str) -> bool:
        return action in self._rewards

    async def distribute(
        self,
        agent: str,
        action_kind: str,
        amount: Decimal | str | int,
        idempotency_key: str,
        tx_hash: str | None = None,
    ) -> DistributionResult:
        """Credit `amount` to `agent` once per `idempotency_key`.

        With `tx_hash`, the transfer already happened elsewhere and only
        its receipt is confirmed. Otherwise, when a settlement is
        configured, the transfer is made first. Either way the ledger is
        written only after a successful receipt.
        """
        address = canonical_address(agent)
        value = parse_amount(amount)
        if not idempotency_key:
            raise InvalidInputError("Reward distributions require an idempotency key")

        marker = keys.reward_applied(idempotency_key)
        if await self._store.exists(marker):
            return DistributionResult(applied=False)
        if not await self._store.sismember(keys.AGENT_SET, address):
            raise AgentNotFoundError(f"Agent {address} is not registered")

        if self._settlement is not None:
            if tx_hash:
                await self._settlement.confirm(tx_hash, reference="")
            else:
                receipt = await self._settlement.transfer(
                    address, value, reference=f"reward:{idempotency_key}",
                )
                tx_hash = receipt.tx_hash

        return await self._credit(address, action_kind, value, idempotency_key, tx_hash or "")

    async def apply_correction(
        self,
        agent: str,
        delta: Decimal | str | int,
        reason: str,
        idempotency_key: str,
    ) -> DistributionResult:
        """Explicit corrective entry; the only way a total may go down."""
        address = canonical_address(agent)
        value = parse_amount(delta, allow_negative=True)
        if not idempotency_key:
            raise InvalidInputError("Corrections require an idempotency key")
        if not await self._store.sismember(keys.AGENT_SET, address):
            raise AgentNotFoundError(f"Agent {address} is not registered")
        result = await self._credit(address, f"correction:{reason}", value, idempotency_key, "")
        if result.applied:
            _logger.warning("Applied correction of %s to %s: %s", value, address, reason)
        return result

    async def _credit(
        self, address: Address, action: str, amount: Decimal, idempotency_key: str, tx_hash: str,
    ) -> DistributionResult:
        event = RewardEvent(
            agent=address,
            action=action,
            amount=amount,
            idempotency_key=idempotency_key,
            tx_hash=tx_hash,
            timestamp=self._clock(),
        )
        result = await self._store.apply(
            [
                HIncrDecimal(keys.agent(address), "rewards_earned", amount),
                ZIncrBy(keys.LEADERBOARD, address, float(amount)),
                LPush(keys.reward_history(address), codec.dumps(event)),
            ],
            once_key=keys.reward_applied(idempotency_key),
            once_ttl=self._marker_ttl,
        )
        if result is ApplyResult.DUPLICATE:
            return DistributionResult(applied=False)

        await self._bus.emit(
            "reward.distributed",
            {"action": action, "amount": format_amount(amount), "idempotency_key": idempotency_key},
            agent=address,
            description=f"{short_address(address)} earned {format_amount(amount)} for {action}",
            tx_hash=tx_hash,
            source="ledger",
        )
        return DistributionResult(applied=True, event=event, tx_hash=tx_hash)

    async def total(self, agent: str) -> Decimal:
        address = canonical_address(agent)
        raw = await self._store.hget(keys.agent(address), "rewards_earned")
        return Decimal(raw or "0")

    async def history(self, agent: str, limit: int = 50) -> list[RewardEvent]:
        """Most recent reward events for an agent, newest first."""
        address = canonical_address(agent)
        raw = await self._store.lrange(keys.reward_history(address), 0, limit - 1)
        return [codec.loads(RewardEvent, entry) for entry in raw]

    async def replay_total(self, agent: str) -> Decimal:
        """Re-derive an agent's total from its RewardEvents."""
        address = canonical_address(agent)
        total = Decimal("0")
        for entry in await self._store.lrange(keys.reward_history(address)):
            try:
                total = add_amounts(total, codec.loads(RewardEvent, entry).amount)
            except CorruptRecordError as e:
                _logger.error("Unreadable reward event for %s: %s", address, e)
                raise
        return total

    async def rebuild_leaderboard(self) -> int:
        """Reset every leaderboard score from the replayed event history."""
        members = await self._store.smembers(keys.AGENT_SET)
        for address in members:
            total = await self.replay_total(address)
            await self._store.zadd(keys.LEADERBOARD, address, float(total))
        _logger.info("Rebuilt leaderboard for %d agents", len(members))
        return len(members)

"""World wiring — build every engine from one WorldSettings.

    world = await open_world(settings, chain=my_chain, tiers=my_tiers)
    result = await world.gateway.enter_world(address, "Ada", tx_hash)
    await world.close()

Nothing here is a module global: each `World` owns its store handle,
bus and engines, and several can coexist in one process.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal

from pydantic import BaseModel

from agentworld.audit import AuditTrail
from agentworld.breeding import BreedingEligibility
from agentworld.chain import ChainClient, Settlement
from agentworld.config import WorldSettings
from agentworld.decision.base import DecisionContext, DecisionFunction
from agentworld.decision.llm import LLMDecisionFunction
from agentworld.events.bus import EventBus
from agentworld.exceptions import InvalidInputError, RateLimitedError, WorldError
from agentworld.gateway import ActionGateway
from agentworld.governance.engine import GovernanceEngine
from agentworld.governance.tiers import StaticTierLookup, TierLookup
from agentworld.ledger import RewardLedger
from agentworld.llm.anthropic import AnthropicProvider
from agentworld.lottery.engine import LotteryEngine
from agentworld.lottery.randomness import RandomnessOracle, SecureRandomOracle
from agentworld.notify import LogSink, Notifier, WebhookSink
from agentworld.ratelimit import RateLimitConfig, RateLimiter
from agentworld.registry import AgentRegistry
from agentworld.store.base import KeyValueStore
from agentworld.types import (
    ActionResult,
    Clock,
    ProposalStatus,
    canonical_address,
    format_amount,
    prefixed_id,
)

_logger = logging.getLogger(__name__)


class WorldStatus(BaseModel):
    agents: int
    proposals: int
    lottery_round: int
    lottery_pool: Decimal
    lottery_tickets: int
    unpaid_rounds: int
    unresolved_failures: int


def build_store(settings: WorldSettings, clock: Clock = time.time) -> KeyValueStore:
    if settings.store_backend == "sqlite":
        from agentworld.store.sqlite import SQLiteStore
        return SQLiteStore(settings.db_path, clock=clock)
    if settings.store_backend == "redis":
        from agentworld.store.redis_store import RedisStore
        return RedisStore(settings.redis_url)
    raise InvalidInputError(f"Unknown store backend: {settings.store_backend}")


@dataclass
class World:
    settings: WorldSettings
    store: KeyValueStore
    bus: EventBus
    registry: AgentRegistry
    ledger: RewardLedger
    governance: GovernanceEngine
    lottery: LotteryEngine
    breeding: BreedingEligibility
    gateway: ActionGateway
    notifier: Notifier
    audit: AuditTrail | None = None
    settlement: Settlement | None = None
    decider: DecisionFunction | None = None
    rate_limiter: RateLimiter | None = None
    read_limit: RateLimitConfig | None = None
    clock: Clock = field(default=time.time)

    async def status(self) -> WorldStatus:
        current = await self.lottery.current_round()
        unresolved = len(await self.audit.unresolved()) if self.audit else 0
        return WorldStatus(
            agents=await self.registry.count(),
            proposals=len(await self.governance.list_proposals(limit=10_000)),
            lottery_round=current.id,
            lottery_pool=current.prize_pool,
            lottery_tickets=current.tickets_sold,
            unpaid_rounds=len(await self.lottery.unpaid_rounds()),
            unresolved_failures=unresolved,
        )

    async def close(self) -> None:
        if self.audit is not None:
            await self.audit.close()
        await self.store.close()

    async def observe(self, agent: str) -> dict:
        """The facts an agent sees before deciding."""
        addr = canonical_address(agent)
        if self.rate_limiter is not None and self.read_limit is not None:
            decision = await self.rate_limiter.check(self.read_limit, addr, fail_open=True)
            if not decision.allowed:
                raise RateLimitedError(
                    f"Observation limit exceeded; retry in {decision.reset_in_seconds}s",
                    retry_after=decision.reset_in_seconds,
                )
        current = await self.lottery.current_round()
        open_proposals = await self.governance.list_proposals(status=ProposalStatus.ACTIVE, limit=5)
        return {
            "lottery_round": current.id,
            "lottery_pool": format_amount(current.prize_pool),
            "ticket_price": format_amount(current.ticket_price),
            "tickets_sold": current.tickets_sold,
            "your_tickets": await self.lottery.tickets_of(addr, current.id),
            "round_ends_in_seconds": max(0, int(current.ends_at - self.clock())),
            "open_proposals": [
                {"id": p.id, "title": p.title, "voted": await self.governance.has_voted(p.id, addr)}
                for p in open_proposals
            ],
        }

    async def take_turn(self, agent: str, persona: str = "", idempotency_key: str = "") -> ActionResult:
        """Let the agent's decision function pick an action, then carry it out."""
        if self.decider is None:
            return ActionResult(
                success=False, message="No decision function configured", error="dependency_unavailable",
            )
        try:
            facts = await self.observe(agent)
        except WorldError as e:
            return ActionResult(
                success=False, message=str(e), error=e.kind, retry_after=getattr(e, "retry_after", None),
            )
        context = DecisionContext(agent=agent, persona=persona, facts=facts)
        decision = await self.decider.decide(context)
        return await self.gateway.act(agent, decision, idempotency_key or prefixed_id("turn"))


async def open_world(
    settings: WorldSettings | None = None,
    *,
    store: KeyValueStore | None = None,
    chain: ChainClient | None = None,
    tiers: TierLookup | None = None,
    oracle: RandomnessOracle | None = None,
    notifier: Notifier | None = None,
    audit: AuditTrail | None = None,
    decider: DecisionFunction | None = None,
    clock: Clock = time.time,
) -> World:
    """Open the store, build the engines and wire the gateway."""
    settings = settings or WorldSettings()
    store = store or build_store(settings, clock)
    await store.initialize()

    if audit is None and settings.audit_db_path:
        audit = AuditTrail(settings.audit_db_path)
    if audit is not None:
        await audit.initialize()

    bus = EventBus(store=store, max_events=settings.max_events)
    oracle = oracle or SecureRandomOracle()
    tiers = tiers or StaticTierLookup({}, settings.governance_tiers)
    settlement = (
        Settlement(
            store,
            chain,
            receipt_timeout=settings.receipt_timeout_seconds,
            claim_ttl=settings.idempotency_ttl_seconds,
        )
        if chain is not None
        else None
    )
    if settlement is None:
        _logger.warning("No chain client configured; transfers are recorded without settlement")

    if decider is None and settings.anthropic_api_key:
        decider = LLMDecisionFunction(
            AnthropicProvider(settings.anthropic_api_key, model=settings.default_model),
            min_tickets=settings.min_tickets_per_decision,
            max_tickets=settings.max_tickets_per_decision,
        )

    if notifier is None:
        notifier = Notifier([WebhookSink(settings.notify_webhook_url)] if settings.notify_webhook_url else [LogSink()])
    notifier.attach(bus)

    ledger = RewardLedger(
        store,
        bus,
        settlement=settlement,
        reward_amounts=settings.reward_amounts,
        marker_ttl=settings.idempotency_ttl_seconds,
        clock=clock,
    )
    registry = AgentRegistry(
        store, bus, ledger=ledger,
        action_marker_ttl=settings.idempotency_ttl_seconds,
        clock=clock,
    )
    governance = GovernanceEngine(
        store,
        bus,
        tiers,
        proposal_duration=settings.proposal_duration_seconds,
        min_proposer_multiplier=settings.min_proposer_multiplier,
        clock=clock,
    )
    lottery = LotteryEngine(
        store,
        bus,
        oracle,
        ticket_price=settings.ticket_price,
        round_duration=settings.round_duration_seconds,
        min_entries=settings.min_entries,
        min_entries_basis=settings.min_entries_basis,
        payout_percent=settings.payout_percent,
        bonus_range=(settings.winner_bonus_low, settings.winner_bonus_high),
        claim_timeout=settings.draw_claim_timeout_seconds,
        clock=clock,
    )
    breeding = BreedingEligibility(store, bus, threshold=settings.breeding_threshold, clock=clock)
    rate_limiter = RateLimiter(store)
    gateway = ActionGateway(
        registry=registry,
        ledger=ledger,
        governance=governance,
        lottery=lottery,
        breeding=breeding,
        rate_limiter=rate_limiter,
        action_limit=RateLimitConfig(
            prefix="action",
            window_seconds=settings.action_window_seconds,
            max_requests=settings.action_max_requests,
        ),
        oracle=oracle,
        settlement=settlement,
        audit=audit,
        trigger_reward_range=(settings.trigger_reward_low, settings.trigger_reward_high),
        retry_attempts=settings.retry_attempts,
        retry_base_delay=settings.retry_base_delay,
    )
    return World(
        settings=settings,
        store=store,
        bus=bus,
        registry=registry,
        ledger=ledger,
        governance=governance,
        lottery=lottery,
        breeding=breeding,
        gateway=gateway,
        notifier=notifier,
        audit=audit,
        settlement=settlement,
        decider=decider,
        rate_limiter=rate_limiter,
        read_limit=RateLimitConfig(
            prefix="read",
            window_seconds=settings.read_window_seconds,
            max_requests=settings.read_max_requests,
        ),
        clock=clock,
    )

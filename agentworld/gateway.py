"""Action Gateway — the single entry point for externally triggered actions.

Every action is rate limited per agent and answered with an
`ActionResult`. Only keyed steps (payment checks, keyed purchases,
rewards and payouts) are retried with backoff; a handler is never
re-run as a whole, so a step that already landed is not repeated. Raw
exceptions never escape: each maps to its stable `kind` string.
Operations that still fail after their retries, or whose on-chain
effect is unconfirmed, are written to the audit trail for manual
reconciliation.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable

import structlog

from agentworld.audit import AuditTrail
from agentworld.breeding import BreedingEligibility
from agentworld.chain import Settlement
from agentworld.decision import base as decisions
from agentworld.decision.base import Decision
from agentworld.exceptions import (
    AgentNotFoundError,
    AlreadyRegisteredError,
    AlreadyVotedError,
    DependencyUnavailableError,
    ExternalEffectFailedError,
    InvalidInputError,
    RateLimitedError,
    UnconfirmedExternalEffectError,
    WorldError,
)
from agentworld.governance.engine import GovernanceEngine
from agentworld.ledger import RewardLedger
from agentworld.lottery.engine import LotteryEngine
from agentworld.lottery.randomness import RandomnessOracle
from agentworld.ratelimit import RateLimitConfig, RateLimiter
from agentworld.registry import AgentRegistry
from agentworld.retry import with_retries
from agentworld.types import (
    ActionResult,
    RoundId,
    RoundStatus,
    canonical_address,
    format_amount,
)

logger = structlog.get_logger()

Outcome = tuple[str, dict[str, Any]]

_RECONCILE = (
    DependencyUnavailableError,
    UnconfirmedExternalEffectError,
    ExternalEffectFailedError,
)


def _failure(e: WorldError) -> ActionResult:
    data: dict[str, Any] = {}
    if isinstance(e, UnconfirmedExternalEffectError):
        data = {"reference": e.reference, "tx_hash": e.tx_hash}
    elif isinstance(e, ExternalEffectFailedError):
        data = {"tx_hash": e.tx_hash}
    return ActionResult(
        success=False,
        message=str(e),
        error=e.kind,
        retry_after=e.retry_after if isinstance(e, RateLimitedError) else None,
        data=data,
    )


class ActionGateway:
    """Routes agent actions to the engines."""

    def __init__(
        self,
        *,
        registry: AgentRegistry,
        ledger: RewardLedger,
        governance: GovernanceEngine,
        lottery: LotteryEngine,
        breeding: BreedingEligibility,
        rate_limiter: RateLimiter,
        action_limit: RateLimitConfig,
        oracle: RandomnessOracle,
        settlement: Settlement | None = None,
        audit: AuditTrail | None = None,
        trigger_reward_range: tuple[int, int] = (1, 10),
        retry_attempts: int = 3,
        retry_base_delay: float = 0.5,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.registry = registry
        self.ledger = ledger
        self.governance = governance
        self.lottery = lottery
        self.breeding = breeding
        self._limiter = rate_limiter
        self._action_limit = action_limit
        self._oracle = oracle
        self._settlement = settlement
        self._audit = audit
        self._trigger_reward_range = trigger_reward_range
        self._retry_attempts = retry_attempts
        self._retry_base_delay = retry_base_delay
        self._sleep = sleep

    # ── Plumbing ────────────────────────────────────────────────

    async def _retry(self, fn: Callable[[], Awaitable[Any]], **context) -> Any:
        return await with_retries(
            fn,
            attempts=self._retry_attempts,
            base_delay=self._retry_base_delay,
            sleep=self._sleep,
            **context,
        )

    async def _run(
        self,
        operation: str,
        agent: str,
        fn: Callable[[], Awaitable[Outcome]],
        idempotency_key: str = "",
        rate_limited: bool = True,
    ) -> ActionResult:
        log = logger.bind(agent=agent, operation=operation, idempotency_key=idempotency_key)
        try:
            if rate_limited:
                await self._limiter.enforce(self._action_limit, canonical_address(agent))
            message, data = await fn()
        except _RECONCILE as e:
            log.error("operation_failed", error_kind=e.kind, error=str(e))
            await self._reconcile_later(agent, operation, idempotency_key, e)
            return _failure(e)
        except WorldError as e:
            log.info("operation_rejected", error_kind=e.kind, error=str(e))
            return _failure(e)
        except Exception as e:
            log.exception("operation_crashed", error=str(e))
            await self._reconcile_later(agent, operation, idempotency_key, e)
            return ActionResult(success=False, message="Internal error", error="internal")

        log.info("operation_succeeded")
        return ActionResult(success=True, message=message, data=data)

    async def _reconcile_later(
        self, agent: str, operation: str, idempotency_key: str, error: Exception,
    ) -> None:
        if self._audit is None:
            return
        context: dict[str, Any] = {}
        if isinstance(error, UnconfirmedExternalEffectError):
            context = {"reference": error.reference, "tx_hash": error.tx_hash}
        elif isinstance(error, ExternalEffectFailedError):
            context = {"tx_hash": error.tx_hash}
        try:
            await self._audit.log_failure(
                agent=agent,
                operation=operation,
                idempotency_key=idempotency_key,
                error_kind=getattr(error, "kind", "internal"),
                detail=str(error),
                context=context,
            )
        except Exception as e:
            logger.error(
                "audit_write_failed",
                agent=agent, operation=operation, idempotency_key=idempotency_key, error=str(e),
            )

    async def _confirm_payment(self, agent: str, operation: str, tx_hash: str | None) -> None:
        if tx_hash and self._settlement is not None:
            await self._retry(
                lambda: self._settlement.confirm(tx_hash),
                agent=agent, operation=operation, idempotency_key=tx_hash,
            )

    # ── World ───────────────────────────────────────────────────

    async def enter_world(
        self, address: str, name: str, entry_tx_hash: str, description: str = "",
    ) -> ActionResult:
        """Register an agent once its entry fee transaction is confirmed."""
        async def run() -> Outcome:
            if not entry_tx_hash:
                raise InvalidInputError("Entry fee transaction hash is required")
            await self._confirm_payment(address, "enter_world", entry_tx_hash)
            try:
                agent = await self.registry.register(address, name, description, entry_tx_hash)
            except AlreadyRegisteredError:
                # Replaying the same entry payment answers with the stored agent.
                agent = await self.registry.get(address)
                if agent.entry_tx_hash != entry_tx_hash:
                    raise
            return f"{agent.name} entered the world", agent.model_dump(mode="json")

        return await self._run("enter_world", address, run, idempotency_key=entry_tx_hash)

    async def claim_reward(
        self, agent: str, action: str, idempotency_key: str, tx_hash: str | None = None,
    ) -> ActionResult:
        """Log an action and credit its table reward once per idempotency key."""
        async def run() -> Outcome:
            if not self.ledger.is_rewardable(action):
                raise InvalidInputError(f"Action {action!r} is not rewardable")
            amount = self.ledger.reward_for(action)
            updated = await self._retry(
                lambda: self.registry.record_action(
                    agent, action, reward_amount=amount,
                    idempotency_key=idempotency_key, tx_hash=tx_hash,
                ),
                agent=agent, operation="claim_reward", idempotency_key=idempotency_key,
            )
            return (
                f"Rewarded {format_amount(amount)} for {action}",
                {"amount": format_amount(amount), "rewards_earned": format_amount(updated.rewards_earned)},
            )

        return await self._run("claim_reward", agent, run, idempotency_key=idempotency_key)

    # ── Lottery ─────────────────────────────────────────────────

    async def buy_tickets(
        self,
        agent: str,
        count: int,
        idempotency_key: str,
        payment_tx_hash: str | None = None,
    ) -> ActionResult:
        async def run() -> Outcome:
            if not idempotency_key:
                raise InvalidInputError("Ticket purchases require an idempotency key")
            if not await self.registry.is_registered(agent):
                raise AgentNotFoundError(f"Agent {agent} is not registered")
            await self._confirm_payment(agent, "buy_tickets", payment_tx_hash)
            purchase = await self._retry(
                lambda: self.lottery.buy_tickets(agent, count, idempotency_key=idempotency_key),
                agent=agent, operation="buy_tickets", idempotency_key=idempotency_key,
            )
            # Keyed, so a replayed purchase still gets its action counted exactly once.
            action_key = f"tickets:{idempotency_key}"
            await self._retry(
                lambda: self.registry.record_action(agent, "buy_tickets", idempotency_key=action_key),
                agent=agent, operation="buy_tickets", idempotency_key=action_key,
            )
            message = (
                f"Bought {purchase.count} tickets in round {purchase.round_id}"
                if purchase.applied
                else f"Purchase {idempotency_key} was already applied"
            )
            return message, purchase.model_dump(mode="json")

        return await self._run("buy_tickets", agent, run, idempotency_key=idempotency_key)

    async def trigger_draw(self, agent: str, round_id: RoundId | None = None) -> ActionResult:
        """Close the round. The agent that actually performed the draw earns a small reward."""
        async def run() -> Outcome:
            result = await self.lottery.draw(round_id)
            data = result.model_dump(mode="json")
            if result.status is RoundStatus.COMPLETED:
                data["settlement"] = await self._settle(result.round_id)
            if not result.already_drawn and await self.registry.is_registered(agent):
                data["trigger_reward"] = await self._reward_trigger(agent, result.round_id)

            if result.status is RoundStatus.ROLLED_OVER:
                message = (
                    f"Round {result.round_id} rolled over; "
                    f"{format_amount(result.carried_over)} carried to round {result.next_round_id}"
                )
            else:
                message = f"Round {result.round_id} won by {result.winner}"
            return message, data

        return await self._run("trigger_draw", agent, run)

    async def settle_lottery(self, round_id: RoundId) -> ActionResult:
        """Retry the payout and winner bonus for a completed round."""
        async def run() -> Outcome:
            settlement = await self._settle(round_id)
            ok = settlement.get("payout") == "confirmed"
            return (f"Round {round_id} settled" if ok else f"Round {round_id} payout pending"), settlement

        return await self._run(
            "settle_lottery", "", run, idempotency_key=f"lottery:{round_id}", rate_limited=False,
        )

    async def _settle(self, round_id: RoundId) -> dict[str, Any]:
        """Pay the winner, credit the bonus. Failures are recorded, never raised."""
        lottery_round = await self.lottery.get_round(round_id)
        if lottery_round.status is not RoundStatus.COMPLETED or not lottery_round.winner:
            return {"payout": "not_applicable"}
        winner = lottery_round.winner
        outcome: dict[str, Any] = {}
        log = logger.bind(agent=winner, operation="lottery_payout", round_id=round_id)

        if lottery_round.payout_tx_hash:
            outcome["payout"] = "confirmed"
            outcome["payout_tx_hash"] = lottery_round.payout_tx_hash
        elif self._settlement is None:
            outcome["payout"] = "pending"
        else:
            reference = f"lottery:{round_id}:payout"
            try:
                receipt = await self._retry(
                    lambda: self._settlement.transfer(winner, lottery_round.winning_amount, reference),
                    agent=winner, operation="lottery_payout", idempotency_key=reference,
                )
                await self.lottery.record_payout(round_id, receipt.tx_hash)
                outcome["payout"] = "confirmed"
                outcome["payout_tx_hash"] = receipt.tx_hash
            except _RECONCILE as e:
                log.error("payout_failed", error_kind=e.kind, error=str(e))
                await self.lottery.record_payout_failure(round_id, f"{e.kind}: {e}")
                await self._reconcile_later(winner, "lottery_payout", reference, e)
                outcome["payout"] = "failed"
                outcome["payout_error"] = e.kind

        if lottery_round.bonus_tokens and await self.registry.is_registered(winner):
            key = f"lottery:{round_id}:bonus"
            try:
                await self._retry(
                    lambda: self.ledger.distribute(winner, "lottery_win", lottery_round.bonus_tokens, key),
                    agent=winner, operation="lottery_bonus", idempotency_key=key,
                )
                outcome["bonus"] = "credited"
            except _RECONCILE as e:
                log.error("bonus_failed", error_kind=e.kind, error=str(e))
                await self._reconcile_later(winner, "lottery_bonus", key, e)
                outcome["bonus"] = "failed"
        return outcome

    async def _reward_trigger(self, agent: str, round_id: RoundId) -> str:
        key = f"lottery:{round_id}:trigger"
        amount = await self._oracle.random_in_range(*self._trigger_reward_range)
        try:
            await self._retry(
                lambda: self.ledger.distribute(agent, "lottery_trigger", amount, key),
                agent=agent, operation="lottery_trigger", idempotency_key=key,
            )
        except _RECONCILE as e:
            logger.error(
                "trigger_reward_failed",
                agent=agent, idempotency_key=key, error_kind=e.kind, error=str(e),
            )
            await self._reconcile_later(agent, "lottery_trigger", key, e)
            return "failed"
        return str(amount)

    # ── Governance ──────────────────────────────────────────────

    async def create_proposal(self, agent: str, title: str, description: str = "") -> ActionResult:
        async def run() -> Outcome:
            proposal = await self.governance.create_proposal(agent, title, description)
            return f"Created proposal {proposal.id}", proposal.model_dump(mode="json")

        return await self._run("create_proposal", agent, run)

    async def vote(self, agent: str, proposal_id: str, support: bool) -> ActionResult:
        """Cast a vote; registered voters also earn the voting reward."""
        async def run() -> Outcome:
            try:
                vote = await self.governance.cast_vote(proposal_id, agent, support)
            except AlreadyVotedError:
                # The ballot landed on an earlier call; its reward may not have.
                await self._reward_vote(agent, proposal_id)
                raise
            await self._reward_vote(agent, proposal_id)
            message = f"Voted {'for' if support else 'against'} with weight {vote.weight}"
            return message, vote.model_dump(mode="json")

        return await self._run("vote", agent, run, idempotency_key=f"dao:{proposal_id}:{agent}")

    async def _reward_vote(self, agent: str, proposal_id: str) -> None:
        if not self.ledger.is_rewardable("dao_vote_proposal"):
            return
        if not await self.registry.is_registered(agent):
            return
        key = f"dao:{proposal_id}:{canonical_address(agent)}"
        await self._retry(
            lambda: self.registry.record_action(
                agent, "dao_vote_proposal",
                reward_amount=self.ledger.reward_for("dao_vote_proposal"),
                idempotency_key=key,
            ),
            agent=agent, operation="vote_reward", idempotency_key=key,
        )

    # ── Breeding ────────────────────────────────────────────────

    async def breed(
        self, parent1: str, parent2: str, child_id: str, tx_hash: str = "",
    ) -> ActionResult:
        async def run() -> Outcome:
            await self._confirm_payment(parent1, "breed", tx_hash or None)
            record = await self.breeding.record_breeding(parent1, parent2, child_id, tx_hash)
            return f"Bred {record.child_id}", record.model_dump(mode="json")

        return await self._run(
            "breed", parent1, run, idempotency_key=child_id, rate_limited=False,
        )

    # ── Autonomous decisions ────────────────────────────────────

    async def act(self, agent: str, decision: Decision, idempotency_key: str) -> ActionResult:
        """Carry out a normalized decision and record its reasoning."""
        if self._audit is not None:
            try:
                await self._audit.log_decision(agent, decision)
            except Exception as e:
                logger.error("audit_write_failed", agent=agent, operation="decision", error=str(e))

        params = decision.params
        if decision.action == decisions.SKIP:
            return ActionResult(success=True, message="Skipped", data={"reasoning": decision.reasoning})
        if decision.action == decisions.BUY_TICKETS:
            return await self.buy_tickets(
                agent, decision.ticket_count, idempotency_key,
                payment_tx_hash=params.get("payment_tx_hash"),
            )
        if decision.action == decisions.VOTE:
            return await self.vote(
                agent, str(params.get("proposal_id", "")), bool(params.get("support", False)),
            )
        if decision.action == decisions.CREATE_PROPOSAL:
            return await self.create_proposal(
                agent, str(params.get("title", "")), str(params.get("description", "")),
            )
        if decision.action == decisions.TRIGGER_DRAW:
            return await self.trigger_draw(agent)
        return ActionResult(
            success=False, message=f"Unsupported action {decision.action!r}", error="validation",
        )

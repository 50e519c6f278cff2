"""LotteryEngine — sequential rounds on the shared store.

Round lifecycle: open -> drawing -> completed | rolled_over.

A draw is claimed with a compare-and-swap on the round status and
committed in one guarded batch that also opens the next round and
moves the current-round pointer. A claim left behind by a crashed
handler can be taken over once it is older than the claim timeout;
the commit guard on the claim token keeps the older handler from
writing a second result.

A round with fewer than `min_entries` at close rolls its pool over.
Entries are counted as distinct participants by default, so one agent
buying `min_entries` tickets alone still rolls over; the rule that
compares tickets sold instead is `min_entries_basis="tickets"`.
"""

from __future__ import annotations

import logging
import time
import uuid
from decimal import Decimal

from pydantic import BaseModel

from agentworld import codec
from agentworld.events.bus import EventBus
from agentworld.exceptions import (
    AlreadyDrawnError,
    DrawInProgressError,
    InvalidCountError,
    InvalidInputError,
    PayoutConflictError,
    RoundClosedError,
    RoundNotFoundError,
    RoundStillOpenError,
)
from agentworld.lottery.draw import build_ticket_ranges, pick_winner, split_payout
from agentworld.lottery.randomness import RandomnessOracle
from agentworld.store import keys
from agentworld.store.base import (
    ApplyResult,
    Guard,
    HIncrBy,
    HIncrDecimal,
    HSet,
    KeyValueStore,
    LPush,
    SetValue,
    ZAdd,
)
from agentworld.types import (
    MONEY_CONTEXT,
    Clock,
    DrawResult,
    LotteryRound,
    RoundId,
    RoundStatus,
    TicketPurchase,
    canonical_address,
    format_amount,
    short_address,
)

_logger = logging.getLogger(__name__)

_round_codec = codec.RecordCodec(LotteryRound)

_FINAL = (RoundStatus.COMPLETED, RoundStatus.ROLLED_OVER)


class WinnerRecord(BaseModel):
    round_id: RoundId
    winner: str
    amount: Decimal
    bonus_tokens: int
    total_tickets: int
    participants: int
    draw_proof: str
    timestamp: float
    payout_tx_hash: str | None = None


class LotteryStats(BaseModel):
    current_round: RoundId
    current_pool: Decimal
    current_tickets: int
    total_drawings: int
    total_paid_out: Decimal
    unpaid_rounds: list[RoundId]


class LotteryEngine:
    """Sells tickets, draws winners, tracks payouts."""

    def __init__(
        self,
        store: KeyValueStore,
        bus: EventBus,
        oracle: RandomnessOracle,
        ticket_price: Decimal = Decimal("2"),
        round_duration: int = 24 * 3600,
        min_entries: int = 5,
        min_entries_basis: str = "participants",
        payout_percent: Decimal = Decimal("90"),
        bonus_range: tuple[int, int] = (50, 150),
        claim_timeout: int = 300,
        clock: Clock = time.time,
    ) -> None:
        if min_entries_basis not in ("participants", "tickets"):
            raise InvalidInputError(f"Unknown min_entries basis: {min_entries_basis}")
        self._store = store
        self._bus = bus
        self._oracle = oracle
        self._ticket_price = ticket_price
        self._duration = round_duration
        self._min_entries = min_entries
        self._basis = min_entries_basis
        self._payout_percent = payout_percent
        self._bonus_range = bonus_range
        self._claim_timeout = claim_timeout
        self._clock = clock

    # ── Rounds ──────────────────────────────────────────────────

    def _new_round(self, round_id: RoundId, carried_over: Decimal) -> LotteryRound:
        now = self._clock()
        return LotteryRound(
            id=round_id,
            started_at=now,
            ends_at=now + self._duration,
            ticket_price=self._ticket_price,
            min_entries=self._min_entries,
            prize_pool=carried_over,
            carried_over=carried_over,
        )

    async def current_round(self) -> LotteryRound:
        """The round currently selling tickets. Opens round 1 on first use."""
        current = await self._store.get(keys.LOTTERY_CURRENT)
        if current is None:
            first = self._new_round(1, Decimal("0"))
            result = await self._store.apply(
                [
                    HSet(keys.lottery_round(1), _round_codec.encode(first)),
                    SetValue(keys.LOTTERY_CURRENT, "1"),
                ],
                once_key=keys.round_opened(1),
            )
            if result is ApplyResult.APPLIED:
                _logger.info("Opened lottery round 1")
                return first
            current = await self._store.get(keys.LOTTERY_CURRENT) or "1"
        return await self.get_round(int(current))

    async def get_round(self, round_id: RoundId) -> LotteryRound:
        lottery_round = _round_codec.decode_optional(
            await self._store.hgetall(keys.lottery_round(round_id))
        )
        if lottery_round is None:
            raise RoundNotFoundError(f"Lottery round {round_id} not found")
        return lottery_round

    # ── Tickets ─────────────────────────────────────────────────

    async def buy_tickets(
        self,
        agent: str,
        count: int,
        idempotency_key: str | None = None,
        round_id: RoundId | None = None,
    ) -> TicketPurchase:
        """Add `count` tickets for `agent` to an open round.

        With an idempotency key (normally the payment tx hash), a replayed
        purchase changes nothing and reports `applied=False`.
        """
        if isinstance(count, bool) or not isinstance(count, int) or count <= 0:
            raise InvalidCountError(f"Ticket count must be a positive integer, got {count!r}")
        addr = canonical_address(agent)
        lottery_round = await (self.get_round(round_id) if round_id else self.current_round())
        if lottery_round.status is not RoundStatus.OPEN or self._clock() >= lottery_round.ends_at:
            raise RoundClosedError(f"Lottery round {lottery_round.id} is closed")

        cost = MONEY_CONTEXT.multiply(lottery_round.ticket_price, Decimal(count))
        round_key = keys.lottery_round(lottery_round.id)
        result = await self._store.apply(
            [
                HIncrBy(round_key, "tickets_sold", count),
                HIncrDecimal(round_key, "prize_pool", cost),
                HIncrBy(keys.tickets(lottery_round.id), addr, count),
                ZAdd(keys.entrants(lottery_round.id), addr, self._clock(), nx=True),
            ],
            once_key=keys.purchase(idempotency_key) if idempotency_key else None,
            guard=Guard(round_key, "status", (RoundStatus.OPEN.value,)),
        )
        if result is ApplyResult.REJECTED:
            raise RoundClosedError(f"Lottery round {lottery_round.id} is closed")

        held = await self.tickets_of(addr, lottery_round.id)
        if result is ApplyResult.APPLIED:
            await self._bus.emit(
                "lottery.tickets_bought",
                {"round_id": lottery_round.id, "count": count, "cost": format_amount(cost)},
                agent=addr,
                description=f"{short_address(addr)} bought {count} lottery tickets",
                tx_hash=idempotency_key or "",
                source="lottery",
            )
        return TicketPurchase(
            round_id=lottery_round.id,
            agent=addr,
            count=count,
            cost=cost,
            tickets_held=held,
            applied=result is ApplyResult.APPLIED,
        )

    async def tickets_of(self, agent: str, round_id: RoundId | None = None) -> int:
        if round_id is None:
            round_id = (await self.current_round()).id
        raw = await self._store.hget(keys.tickets(round_id), canonical_address(agent))
        return int(raw or 0)

    async def entrants(self, round_id: RoundId) -> list[tuple[str, int]]:
        """(agent, tickets) in first-purchase order."""
        ordered = await self._store.zrange(keys.entrants(round_id))
        counts = await self._store.hgetall(keys.tickets(round_id))
        return [(addr, int(counts.get(addr, 0))) for addr, _ in ordered]

    # ── Draw ────────────────────────────────────────────────────

    async def draw(self, round_id: RoundId | None = None, strict: bool = False) -> DrawResult:
        """Close a round: draw a winner, or roll the pool over.

        Repeated calls on a finished round return the stored result with
        `already_drawn=True`; with `strict`, they raise AlreadyDrawnError.
        """
        if round_id is None:
            round_id = (await self.current_round()).id
        lottery_round = await self.get_round(round_id)

        if lottery_round.status in _FINAL:
            return await self._stored_result(lottery_round, strict)
        if self._clock() < lottery_round.ends_at:
            raise RoundStillOpenError(f"Lottery round {round_id} is still open")

        token = await self._claim(lottery_round)
        if token is None:
            lottery_round = await self.get_round(round_id)
            if lottery_round.status in _FINAL:
                return await self._stored_result(lottery_round, strict)
            raise DrawInProgressError(f"Lottery round {round_id} is being drawn")

        return await self._close(await self.get_round(round_id), token, strict)

    async def _claim(self, lottery_round: LotteryRound) -> str | None:
        token = uuid.uuid4().hex
        now = self._clock()
        claim = {"draw_token": token, "draw_claimed_at": str(now)}
        key = keys.lottery_round(lottery_round.id)

        if lottery_round.status is RoundStatus.OPEN:
            won = await self._store.hcas(
                key, "status", RoundStatus.OPEN.value, RoundStatus.DRAWING.value, also=claim,
            )
            return token if won else None

        claimed_at = lottery_round.draw_claimed_at or 0.0
        if now - claimed_at < self._claim_timeout:
            return None
        _logger.warning(
            "Taking over stale draw claim on round %d (claimed %.0fs ago)",
            lottery_round.id, now - claimed_at,
        )
        won = await self._store.hcas(
            key, "draw_token", lottery_round.draw_token, token,
            also={"draw_claimed_at": str(now)},
        )
        return token if won else None

    async def _close(self, lottery_round: LotteryRound, token: str, strict: bool) -> DrawResult:
        round_id = lottery_round.id
        holdings = await self.entrants(round_id)
        ranges = build_ticket_ranges(holdings)
        total = ranges[-1].end if ranges else 0
        participants = len(ranges)
        if total != lottery_round.tickets_sold:
            _logger.error(
                "Round %d ticket mismatch: %d held vs %d sold",
                round_id, total, lottery_round.tickets_sold,
            )

        measured = participants if self._basis == "participants" else total
        rolls_over = total == 0 or measured < lottery_round.min_entries
        now = self._clock()
        round_key = keys.lottery_round(round_id)

        if rolls_over:
            next_round = self._new_round(round_id + 1, lottery_round.prize_pool)
            ops = [
                HSet(round_key, {
                    "status": RoundStatus.ROLLED_OVER.value,
                    "total_tickets": str(total),
                    "completed_at": str(now),
                }),
            ]
            result = DrawResult(
                round_id=round_id,
                status=RoundStatus.ROLLED_OVER,
                total_tickets=total,
                participants=participants,
                carried_over=lottery_round.prize_pool,
                next_round_id=next_round.id,
            )
        else:
            proof = await self._oracle.draw_with_proof(
                total, context=f"round:{round_id}|tickets:{total}|participants:{participants}",
            )
            winner = pick_winner(ranges, proof.value)
            winning_amount, house_amount = split_payout(lottery_round.prize_pool, self._payout_percent)
            bonus = await self._oracle.random_in_range(*self._bonus_range)
            next_round = self._new_round(round_id + 1, Decimal("0"))
            record = WinnerRecord(
                round_id=round_id,
                winner=winner,
                amount=winning_amount,
                bonus_tokens=bonus,
                total_tickets=total,
                participants=participants,
                draw_proof=proof.proof,
                timestamp=now,
            )
            ops = [
                HSet(round_key, {
                    "status": RoundStatus.COMPLETED.value,
                    "winner": winner,
                    "winning_index": str(proof.value),
                    "total_tickets": str(total),
                    "winning_amount": format_amount(winning_amount),
                    "house_amount": format_amount(house_amount),
                    "bonus_tokens": str(bonus),
                    "draw_seed": proof.seed,
                    "draw_proof": proof.proof,
                    "completed_at": str(now),
                }),
                LPush(keys.LOTTERY_WINNERS, codec.dumps(record)),
            ]
            result = DrawResult(
                round_id=round_id,
                status=RoundStatus.COMPLETED,
                winner=winner,
                winning_index=proof.value,
                total_tickets=total,
                participants=participants,
                winning_amount=winning_amount,
                bonus_tokens=bonus,
                next_round_id=next_round.id,
                draw_proof=proof.proof,
            )

        ops += [
            HSet(keys.lottery_round(next_round.id), _round_codec.encode(next_round)),
            SetValue(keys.LOTTERY_CURRENT, str(next_round.id)),
        ]
        applied = await self._store.apply(
            ops,
            once_key=keys.round_closed(round_id),
            guard=Guard(round_key, "draw_token", (token,)),
        )
        if applied is not ApplyResult.APPLIED:
            # Our claim was taken over by another handler.
            lottery_round = await self.get_round(round_id)
            if lottery_round.status not in _FINAL:
                raise DrawInProgressError(f"Lottery round {round_id} is being drawn")
            return await self._stored_result(lottery_round, strict=False)

        if result.status is RoundStatus.ROLLED_OVER:
            _logger.info(
                "Round %d rolled over: %d participants, pool %s carried to round %d",
                round_id, participants, lottery_round.prize_pool, next_round.id,
            )
            await self._bus.emit(
                "lottery.rolled_over",
                {"round_id": round_id, "carried_over": format_amount(lottery_round.prize_pool)},
                description=(
                    f"Lottery round {round_id} rolled over with "
                    f"{format_amount(lottery_round.prize_pool)} in the pool"
                ),
                source="lottery",
            )
        else:
            _logger.info(
                "Round %d drawn: index %d of %d, winner %s",
                round_id, result.winning_index, total, result.winner,
            )
            await self._bus.emit(
                "lottery.winner_drawn",
                {
                    "round_id": round_id,
                    "winning_amount": format_amount(result.winning_amount),
                    "bonus_tokens": result.bonus_tokens,
                    "total_tickets": total,
                },
                agent=result.winner,
                description=(
                    f"{short_address(result.winner)} won lottery round {round_id}: "
                    f"{format_amount(result.winning_amount)}"
                ),
                source="lottery",
            )
        return result

    async def _stored_result(self, lottery_round: LotteryRound, strict: bool) -> DrawResult:
        if strict:
            raise AlreadyDrawnError(f"Lottery round {lottery_round.id} was already drawn")
        completed = lottery_round.status is RoundStatus.COMPLETED
        return DrawResult(
            round_id=lottery_round.id,
            status=lottery_round.status,
            winner=lottery_round.winner,
            winning_index=lottery_round.winning_index,
            total_tickets=lottery_round.total_tickets or 0,
            participants=await self._store.zcard(keys.entrants(lottery_round.id)),
            winning_amount=lottery_round.winning_amount,
            bonus_tokens=lottery_round.bonus_tokens,
            carried_over=Decimal("0") if completed else lottery_round.prize_pool,
            next_round_id=lottery_round.id + 1,
            draw_proof=lottery_round.draw_proof,
            already_drawn=True,
        )

    # ── Payouts ─────────────────────────────────────────────────

    async def record_payout(self, round_id: RoundId, tx_hash: str) -> LotteryRound:
        """Attach the settlement tx to a completed round. Re-recording the same tx is a no-op."""
        if not tx_hash:
            raise InvalidInputError("Payout transaction hash is required")
        lottery_round = await self.get_round(round_id)
        if lottery_round.status is not RoundStatus.COMPLETED:
            raise PayoutConflictError(f"Lottery round {round_id} has no winner to pay")

        attached = await self._store.hcas(
            keys.lottery_round(round_id), "payout_tx_hash", None, tx_hash,
            also={"payout_error": ""},
        )
        if not attached:
            current = await self._store.hget(keys.lottery_round(round_id), "payout_tx_hash")
            if current != tx_hash:
                raise PayoutConflictError(
                    f"Lottery round {round_id} already paid by {current}"
                )
            return lottery_round

        await self._bus.emit(
            "lottery.payout_recorded",
            {"round_id": round_id, "amount": format_amount(lottery_round.winning_amount)},
            agent=lottery_round.winner,
            description=f"Lottery round {round_id} paid out",
            tx_hash=tx_hash,
            source="lottery",
        )
        return await self.get_round(round_id)

    async def record_payout_failure(self, round_id: RoundId, error: str) -> LotteryRound:
        """Note a failed or unconfirmed payout. The draw result is untouched."""
        round_key = keys.lottery_round(round_id)
        result = await self._store.apply(
            [
                HIncrBy(round_key, "payout_attempts", 1),
                HSet(round_key, {"payout_error": error[:500]}),
            ],
            guard=Guard(round_key, "status", (RoundStatus.COMPLETED.value,)),
        )
        if result is ApplyResult.REJECTED:
            raise PayoutConflictError(f"Lottery round {round_id} has no winner to pay")
        lottery_round = await self.get_round(round_id)
        _logger.warning(
            "Payout for round %d failed (attempt %d): %s",
            round_id, lottery_round.payout_attempts, error,
        )
        return lottery_round

    # ── History ─────────────────────────────────────────────────

    async def winners(self, limit: int = 30) -> list[WinnerRecord]:
        """Most recent winners first, with payout status from the round record."""
        records = []
        for raw in await self._store.lrange(keys.LOTTERY_WINNERS, 0, limit - 1):
            record = codec.loads(WinnerRecord, raw)
            record.payout_tx_hash = await self._store.hget(
                keys.lottery_round(record.round_id), "payout_tx_hash"
            )
            records.append(record)
        return records

    async def unpaid_rounds(self) -> list[RoundId]:
        return [w.round_id for w in await self.winners(limit=10_000) if not w.payout_tx_hash]

    async def stats(self) -> LotteryStats:
        current = await self.current_round()
        winners = await self.winners(limit=10_000)
        paid = Decimal("0")
        for record in winners:
            if record.payout_tx_hash:
                paid = MONEY_CONTEXT.add(paid, record.amount)
        return LotteryStats(
            current_round=current.id,
            current_pool=current.prize_pool,
            current_tickets=current.tickets_sold,
            total_drawings=len(winners),
            total_paid_out=paid,
            unpaid_rounds=[w.round_id for w in winners if not w.payout_tx_hash],
        )

"""Core types shared across all agentworld subsystems."""

from __future__ import annotations

import re
import secrets
import time
import uuid
from decimal import Context, Decimal, InvalidOperation
from enum import Enum
from typing import Any, Callable, TypeAlias

from pydantic import BaseModel, Field

from agentworld.exceptions import InvalidAddressError, InvalidAmountError

# ── ID Types ──────────────────────────────────────────────────────────────────

Address: TypeAlias = str
ProposalId: TypeAlias = str
RoundId: TypeAlias = int
Clock: TypeAlias = Callable[[], float]

_ADDRESS_RE = re.compile(r"^0x[0-9a-f]{40}$")

# Wide enough that reward totals never round.
MONEY_CONTEXT = Context(prec=80)


def new_id() -> str:
    return uuid.uuid4().hex[:12]


def prefixed_id(prefix: str, clock: Clock = time.time) -> str:
    return f"{prefix}_{int(clock() * 1000)}_{secrets.token_hex(3)}"


def canonical_address(address: str) -> Address:
    """Lowercase and validate a chain address."""
    addr = (address or "").strip().lower()
    if not _ADDRESS_RE.match(addr):
        raise InvalidAddressError(f"Invalid address: {address!r}")
    return addr


def short_address(address: str) -> str:
    return address[:8] + "..."


def parse_amount(value: Any, allow_zero: bool = False, allow_negative: bool = False) -> Decimal:
    """Parse a decimal amount. Floats are rejected so totals stay exact."""
    if isinstance(value, float):
        raise InvalidAmountError("Amounts must be decimal strings, not floats")
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise InvalidAmountError(f"Invalid amount: {value!r}") from None
    if not amount.is_finite():
        raise InvalidAmountError(f"Invalid amount: {value!r}")
    if amount < 0 and not allow_negative:
        raise InvalidAmountError(f"Amount must not be negative: {value!r}")
    if amount == 0 and not allow_zero:
        raise InvalidAmountError("Amount must be non-zero")
    return amount


def format_amount(amount: Decimal) -> str:
    """Plain (non-exponent) decimal text."""
    if amount == 0:
        return "0"
    return format(amount.normalize(MONEY_CONTEXT), "f")


def add_amounts(a: Decimal, b: Decimal) -> Decimal:
    return MONEY_CONTEXT.add(a, b)


# ── Statuses ──────────────────────────────────────────────────────────────────


class ProposalStatus(str, Enum):
    ACTIVE = "active"
    PASSED = "passed"
    REJECTED = "rejected"
    EXECUTED = "executed"
    EXPIRED = "expired"


class RoundStatus(str, Enum):
    OPEN = "open"
    DRAWING = "drawing"
    COMPLETED = "completed"
    ROLLED_OVER = "rolled_over"


# ── Records ───────────────────────────────────────────────────────────────────


class Tier(BaseModel):
    """A governance tier. Thresholds are token balances in base units."""

    name: str = ""
    threshold: int
    multiplier: Decimal


class Agent(BaseModel):
    """A registered participant. Never deleted."""

    address: Address
    name: str
    description: str = ""
    entry_tx_hash: str = ""
    registered_at: float
    last_action_at: float = 0.0
    total_actions: int = 0
    rewards_earned: Decimal = Decimal("0")


class RewardEvent(BaseModel):
    """Immutable record of one reward distribution."""

    id: str = Field(default_factory=new_id)
    agent: Address
    action: str
    amount: Decimal
    idempotency_key: str
    tx_hash: str = ""
    timestamp: float


class LeaderboardEntry(BaseModel):
    rank: int
    address: Address
    score: Decimal


class Proposal(BaseModel):
    id: ProposalId
    title: str
    description: str = ""
    proposer: Address
    created_at: float
    ends_at: float
    status: ProposalStatus = ProposalStatus.ACTIVE
    votes_for: int = 0
    votes_against: int = 0
    voter_count: int = 0
    closed_at: float | None = None
    finalized_at: float | None = None
    executed_at: float | None = None


class Vote(BaseModel):
    """A single ballot. Weight is frozen at cast time."""

    proposal_id: ProposalId
    voter: Address
    support: bool
    weight: int
    multiplier: Decimal
    timestamp: float


class LotteryRound(BaseModel):
    id: RoundId
    started_at: float
    ends_at: float
    ticket_price: Decimal
    min_entries: int
    tickets_sold: int = 0
    prize_pool: Decimal = Decimal("0")
    carried_over: Decimal = Decimal("0")
    status: RoundStatus = RoundStatus.OPEN
    winner: Address | None = None
    winning_index: int | None = None
    total_tickets: int | None = None
    winning_amount: Decimal | None = None
    house_amount: Decimal | None = None
    bonus_tokens: int | None = None
    draw_seed: str | None = None
    draw_proof: str | None = None
    draw_token: str | None = None
    draw_claimed_at: float | None = None
    completed_at: float | None = None
    payout_tx_hash: str | None = None
    payout_error: str | None = None
    payout_attempts: int = 0


class TicketPurchase(BaseModel):
    round_id: RoundId
    agent: Address
    count: int
    cost: Decimal
    tickets_held: int
    applied: bool


class DrawResult(BaseModel):
    round_id: RoundId
    status: RoundStatus
    winner: Address | None = None
    winning_index: int | None = None
    total_tickets: int = 0
    participants: int = 0
    winning_amount: Decimal | None = None
    bonus_tokens: int | None = None
    carried_over: Decimal = Decimal("0")
    next_round_id: RoundId | None = None
    draw_proof: str | None = None
    already_drawn: bool = False


class ActionResult(BaseModel):
    """What every externally triggered action returns."""

    success: bool
    message: str
    error: str | None = None
    retry_after: int | None = None
    data: dict[str, Any] = Field(default_factory=dict)

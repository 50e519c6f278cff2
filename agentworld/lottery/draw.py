"""Pure draw arithmetic: ticket ranges, winner lookup, payout split."""

from __future__ import annotations

import bisect
from dataclasses import dataclass
from decimal import Decimal

from agentworld.exceptions import InvalidInputError
from agentworld.types import MONEY_CONTEXT


@dataclass(frozen=True)
class TicketRange:
    """Agent owns ticket indices [start, end)."""

    agent: str
    start: int
    end: int


def build_ticket_ranges(holdings: list[tuple[str, int]]) -> list[TicketRange]:
    """Contiguous ranges in the given order (first purchase first). Zero holdings are skipped."""
    ranges = []
    cursor = 0
    for agent, count in holdings:
        if count <= 0:
            continue
        ranges.append(TicketRange(agent, cursor, cursor + count))
        cursor += count
    return ranges


def pick_winner(ranges: list[TicketRange], index: int) -> str:
    if not ranges or not 0 <= index < ranges[-1].end:
        raise InvalidInputError(f"Ticket index {index} is outside the sold range")
    ends = [r.end for r in ranges]
    return ranges[bisect.bisect_right(ends, index)].agent


def split_payout(pool: Decimal, percent: Decimal) -> tuple[Decimal, Decimal]:
    """(winner share, house share). The two always sum to the pool."""
    winner = MONEY_CONTEXT.divide(MONEY_CONTEXT.multiply(pool, percent), Decimal(100))
    return winner, MONEY_CONTEXT.subtract(pool, winner)

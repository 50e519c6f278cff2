"""Tests for ticket ranges, winner lookup and payout split."""

from decimal import Decimal

import pytest

from agentworld.exceptions import InvalidInputError
from agentworld.lottery.draw import TicketRange, build_ticket_ranges, pick_winner, split_payout
from agentworld.types import MONEY_CONTEXT


def test_ranges_are_contiguous():
    ranges = build_ticket_ranges([("a", 3), ("b", 0), ("c", 2)])
    assert ranges == [TicketRange("a", 0, 3), TicketRange("c", 3, 5)]


def test_pick_winner_boundaries():
    ranges = build_ticket_ranges([("a", 3), ("b", 1), ("c", 2)])
    assert [pick_winner(ranges, i) for i in range(6)] == ["a", "a", "a", "b", "c", "c"]


def test_pick_winner_out_of_range():
    ranges = build_ticket_ranges([("a", 1)])
    with pytest.raises(InvalidInputError):
        pick_winner(ranges, 1)
    with pytest.raises(InvalidInputError):
        pick_winner(ranges, -1)
    with pytest.raises(InvalidInputError):
        pick_winner([], 0)


def test_split_payout_sums_to_pool():
    winner, house = split_payout(Decimal("10.01"), Decimal("90"))
    assert winner == Decimal("9.009")
    assert winner + house == Decimal("10.01")


def test_split_payout_large_pool_exact():
    pool = Decimal("123456789012345678901234567890.123456789")
    winner, house = split_payout(pool, Decimal("90"))
    assert MONEY_CONTEXT.add(winner, house) == pool

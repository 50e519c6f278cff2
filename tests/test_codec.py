"""Tests for the record codec."""

from decimal import Decimal
from enum import Enum

import pytest

from agentworld import codec
from agentworld.exceptions import CorruptRecordError
from agentworld.types import Agent, LotteryRound, RoundStatus


class _Color(Enum):
    RED = "red"


def test_encode_value():
    assert codec.encode_value(True) == "1"
    assert codec.encode_value(False) == "0"
    assert codec.encode_value(Decimal("1E+3")) == "1000"
    assert codec.encode_value(Decimal("0.10")) == "0.1"
    assert codec.encode_value(_Color.RED) == "red"
    assert codec.encode_value({"a": 1}) == '{"a":1}'
    assert codec.encode_value(7) == "7"


def test_none_fields_are_omitted():
    r = LotteryRound(id=1, started_at=1.0, ends_at=2.0, ticket_price=Decimal("2"), min_entries=5)
    encoded = codec.RecordCodec(LotteryRound).encode(r)
    assert "winner" not in encoded
    assert encoded["status"] == "open"
    assert encoded["prize_pool"] == "0"


def test_decode_from_flat_strings():
    raw = {
        "address": "0x" + "a" * 40,
        "name": "Ada",
        "registered_at": "1700000000.5",
        "total_actions": "3",
        "rewards_earned": "12.5",
    }
    agent = codec.RecordCodec(Agent).decode(raw)
    assert agent.total_actions == 3
    assert agent.rewards_earned == Decimal("12.5")


def test_decode_after_in_place_increments():
    raw = {
        "id": "4", "started_at": "1", "ends_at": "2", "ticket_price": "2",
        "min_entries": "5", "tickets_sold": "10", "prize_pool": "20", "status": "completed",
    }
    r = codec.RecordCodec(LotteryRound).decode(raw)
    assert r.status is RoundStatus.COMPLETED
    assert r.prize_pool == Decimal("20")


def test_corrupt_record():
    with pytest.raises(CorruptRecordError):
        codec.RecordCodec(Agent).decode({"address": "x", "registered_at": "soon"})


def test_decode_optional_empty():
    assert codec.RecordCodec(Agent).decode_optional({}) is None


def test_document_codec():
    agent = Agent(address="0x" + "b" * 40, name="Bo", registered_at=5.0, rewards_earned=Decimal("0.3"))
    back = codec.loads(Agent, codec.dumps(agent))
    assert back.rewards_earned == Decimal("0.3")
    with pytest.raises(CorruptRecordError):
        codec.loads(Agent, "{not json")

"""Tests for world wiring."""

from decimal import Decimal

import pytest

from agentworld.config import WorldSettings
from agentworld.exceptions import InvalidInputError, RateLimitedError
from agentworld.notify import Notifier
from agentworld.store.redis_store import RedisStore
from agentworld.world import build_store, open_world

from agentworld.decision.llm import LLMDecisionFunction
from agentworld.llm.base import LLMResponse

from tests.conftest import ALICE, BOB, FakeChain, FakeClock, MockLLMProvider


def _settings(tmp_path, **overrides):
    return WorldSettings(
        db_path=tmp_path / "world.db",
        audit_db_path=tmp_path / "audit.db",
        **overrides,
    )


def test_build_store_backends(tmp_path):
    assert isinstance(build_store(_settings(tmp_path, store_backend="redis")), RedisStore)
    with pytest.raises(InvalidInputError):
        build_store(_settings(tmp_path, store_backend="etcd"))


def test_settings_from_environment(monkeypatch):
    monkeypatch.setenv("AGENTWORLD_TICKET_PRICE", "3.5")
    monkeypatch.setenv("AGENTWORLD_MIN_ENTRIES_BASIS", "tickets")
    settings = WorldSettings()
    assert settings.ticket_price == Decimal("3.5")
    assert settings.min_entries_basis == "tickets"


@pytest.mark.asyncio
async def test_open_world_end_to_end(tmp_path):
    clock = FakeClock()
    chain = FakeChain()
    world = await open_world(_settings(tmp_path, min_entries=1), chain=chain, clock=clock)
    try:
        assert world.settlement is not None
        assert (await world.gateway.enter_world(ALICE, "Ada", "0xabc")).success
        assert (await world.gateway.buy_tickets(ALICE, 2, "0xpay")).success

        status = await world.status()
        assert status.agents == 1
        assert status.lottery_round == 1
        assert status.lottery_tickets == 2
        assert status.lottery_pool == Decimal("4")
        assert status.unresolved_failures == 0

        events = await world.bus.recent(10)
        assert [e.topic for e in events][:2] == ["agent.action", "lottery.tickets_bought"]
    finally:
        await world.close()


@pytest.mark.asyncio
async def test_worlds_are_independent(tmp_path):
    a = await open_world(_settings(tmp_path / "a"), notifier=Notifier())
    b = await open_world(_settings(tmp_path / "b"), notifier=Notifier())
    try:
        await a.registry.register(ALICE, "Ada")
        await b.registry.register(BOB, "Bo")
        assert await a.registry.count() == 1
        assert not await b.registry.is_registered(ALICE)
        assert a.settlement is None
    finally:
        await a.close()
        await b.close()


@pytest.mark.asyncio
async def test_take_turn_buys_tickets(tmp_path):
    llm = MockLLMProvider([LLMResponse(
        content='{"action": "buy_tickets", "ticket_count": 3, "reasoning": "Pool looks good", "confidence": 70}',
    )])
    world = await open_world(
        _settings(tmp_path),
        notifier=Notifier(),
        decider=LLMDecisionFunction(llm),
        clock=FakeClock(),
    )
    try:
        await world.registry.register(ALICE, "Ada")
        result = await world.take_turn(ALICE, persona="A gambler", idempotency_key="turn-1")
        assert result.success, result.message
        assert await world.lottery.tickets_of(ALICE) == 3

        prompt = llm.calls[0]["messages"][0].content
        assert "- lottery_round: 1" in prompt
        assert "- round_ends_in_seconds: 86400" in prompt
        decisions = await world.audit.query(kind="decision")
        assert decisions[0].detail == "Pool looks good"
    finally:
        await world.close()


@pytest.mark.asyncio
async def test_take_turn_without_decider(tmp_path):
    world = await open_world(_settings(tmp_path), notifier=Notifier())
    try:
        result = await world.take_turn(ALICE)
        assert not result.success
        assert result.error == "dependency_unavailable"
    finally:
        await world.close()


@pytest.mark.asyncio
async def test_take_turn_bad_address(tmp_path):
    world = await open_world(_settings(tmp_path), notifier=Notifier(), decider=LLMDecisionFunction(MockLLMProvider()))
    try:
        assert (await world.take_turn("nobody")).error == "validation"
    finally:
        await world.close()


@pytest.mark.asyncio
async def test_observation_is_rate_limited(tmp_path):
    world = await open_world(
        _settings(tmp_path, read_max_requests=1),
        notifier=Notifier(),
        decider=LLMDecisionFunction(MockLLMProvider()),
        clock=FakeClock(),
    )
    try:
        facts = await world.observe(ALICE)
        assert facts["your_tickets"] == 0
        with pytest.raises(RateLimitedError):
            await world.observe(ALICE)

        result = await world.take_turn(ALICE)
        assert result.error == "rate_limited"
        assert result.retry_after and result.retry_after > 0
        # Budgets are per agent
        assert (await world.observe(BOB))["lottery_round"] == 1
    finally:
        await world.close()

"""Tests for agent registration, activity and the leaderboard."""

import asyncio
from decimal import Decimal

import pytest

from agentworld.exceptions import (
    AgentNotFoundError,
    AlreadyRegisteredError,
    DependencyUnavailableError,
    InvalidAddressError,
    InvalidInputError,
)
from agentworld.registry import AgentRegistry

from tests.conftest import ALICE, BOB, CAROL


@pytest.mark.asyncio
async def test_register_and_get(registry, bus, clock):
    agent = await registry.register(ALICE.upper().replace("0X", "0x"), "  Ada  ", "poet", "0xentry")
    assert agent.address == ALICE
    assert agent.name == "Ada"
    assert agent.registered_at == clock.now

    loaded = await registry.get(ALICE)
    assert loaded == agent
    assert await registry.is_registered(ALICE)
    events = bus.history(topic_filter="agent.entered")
    assert events[0].description == "Ada entered the world"
    assert events[0].tx_hash == "0xentry"


@pytest.mark.asyncio
async def test_register_twice(registry):
    await registry.register(ALICE, "Ada")
    with pytest.raises(AlreadyRegisteredError):
        await registry.register(ALICE, "Imposter")
    assert (await registry.get(ALICE)).name == "Ada"


@pytest.mark.asyncio
async def test_concurrent_register_one_wins(registry):
    results = await asyncio.gather(
        *(registry.register(ALICE, f"Ada {i}") for i in range(4)), return_exceptions=True,
    )
    assert sum(1 for r in results if not isinstance(r, Exception)) == 1
    assert all(isinstance(r, AlreadyRegisteredError) for r in results if isinstance(r, Exception))
    assert await registry.count() == 1


@pytest.mark.asyncio
async def test_register_validation(registry):
    with pytest.raises(InvalidAddressError):
        await registry.register("0x1234", "Short")
    with pytest.raises(InvalidInputError):
        await registry.register(ALICE, "")
    with pytest.raises(InvalidInputError):
        await registry.register(ALICE, "n" * 65)
    with pytest.raises(InvalidInputError):
        await registry.register(ALICE, "Ada", "d" * 501)
    assert not await registry.is_registered(ALICE)


@pytest.mark.asyncio
async def test_get_unknown(registry):
    with pytest.raises(AgentNotFoundError):
        await registry.get(BOB)


@pytest.mark.asyncio
async def test_record_action_counts(registry, clock):
    await registry.register(ALICE, "Ada")
    clock.advance(30)
    agent = await registry.record_action(ALICE, "radio_queue_song")
    assert agent.total_actions == 1
    assert agent.last_action_at == clock.now
    assert agent.rewards_earned == Decimal("0")


@pytest.mark.asyncio
async def test_concurrent_actions_lose_nothing(registry):
    await registry.register(ALICE, "Ada")
    await asyncio.gather(*(registry.record_action(ALICE) for _ in range(20)))
    assert (await registry.get(ALICE)).total_actions == 20


@pytest.mark.asyncio
async def test_record_action_unknown_agent(registry):
    with pytest.raises(AgentNotFoundError):
        await registry.record_action(BOB)


@pytest.mark.asyncio
async def test_rewarded_action(registry, chain):
    await registry.register(ALICE, "Ada")
    agent = await registry.record_action(ALICE, "mint_passport", Decimal("10"), idempotency_key="k1")
    assert agent.total_actions == 1
    assert agent.rewards_earned == Decimal("10")
    assert chain.submitted == [(ALICE, Decimal("10"), "reward:k1")]

    # replay changes nothing
    agent = await registry.record_action(ALICE, "mint_passport", Decimal("10"), idempotency_key="k1")
    assert agent.total_actions == 1
    assert agent.rewards_earned == Decimal("10")
    assert len(chain.submitted) == 1


@pytest.mark.asyncio
async def test_rewarded_action_needs_key(registry):
    await registry.register(ALICE, "Ada")
    with pytest.raises(InvalidInputError):
        await registry.record_action(ALICE, "mint_passport", Decimal("10"))
    assert (await registry.get(ALICE)).total_actions == 0


@pytest.mark.asyncio
async def test_list_all_newest_first(registry, clock):
    for addr, name in ((ALICE, "Ada"), (BOB, "Bo"), (CAROL, "Cy")):
        await registry.register(addr, name)
        clock.advance(1)
    assert [a.name for a in await registry.list_all()] == ["Cy", "Bo", "Ada"]
    assert [a.name for a in await registry.list_all(offset=1, limit=1)] == ["Bo"]
    assert await registry.count() == 3


@pytest.mark.asyncio
async def test_active_since(registry, clock):
    await registry.register(ALICE, "Ada")
    await registry.register(BOB, "Bo")
    await registry.record_action(ALICE)
    clock.advance(3600)
    await registry.record_action(BOB)
    clock.advance(10)
    assert [a.address for a in await registry.active_since(60)] == [BOB]


@pytest.mark.asyncio
async def test_leaderboard_exact_scores(registry, ledger):
    for addr, name in ((ALICE, "Ada"), (BOB, "Bo"), (CAROL, "Cy")):
        await registry.register(addr, name)
    await ledger.distribute(BOB, "tip_artist", "0.1", "t1")
    await ledger.distribute(BOB, "tip_artist", "0.2", "t2")
    await ledger.distribute(CAROL, "mint_passport", "10", "m1")

    board = await registry.leaderboard()
    assert [(e.rank, e.address) for e in board] == [(1, CAROL), (2, BOB), (3, ALICE)]
    assert board[1].score == Decimal("0.3")
    assert board[2].score == Decimal("0")

    page = await registry.leaderboard(limit=1, offset=1)
    assert page[0].rank == 2
    assert page[0].address == BOB


@pytest.mark.asyncio
async def test_registry_without_ledger(store, bus, clock):
    registry = AgentRegistry(store, bus, clock=clock)
    await registry.register(ALICE, "Ada")
    with pytest.raises(DependencyUnavailableError):
        await registry.record_action(ALICE, "mint_passport", "10", idempotency_key="k")

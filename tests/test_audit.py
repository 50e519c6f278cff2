"""Tests for the audit trail."""

import pytest

from agentworld.audit import AuditTrail
from agentworld.decision.base import Decision
from agentworld.exceptions import DependencyUnavailableError

from tests.conftest import ALICE, BOB


@pytest.mark.asyncio
async def test_log_decision(audit):
    decision = Decision(action="buy_tickets", ticket_count=3, reasoning="Pool is big", confidence=70)
    entry = await audit.log_decision(ALICE, decision)
    assert entry.kind == "decision"

    stored = await audit.query(agent=ALICE)
    assert len(stored) == 1
    assert stored[0].operation == "buy_tickets"
    assert stored[0].detail == "Pool is big"
    assert stored[0].context["ticket_count"] == 3
    assert not stored[0].needs_reconciliation


@pytest.mark.asyncio
async def test_log_failure_kinds(audit):
    unconfirmed = await audit.log_failure(
        ALICE, "claim_reward", "k1", "unconfirmed_external_effect", "no receipt", {"tx_hash": "0x1"},
    )
    failed = await audit.log_failure(BOB, "settle_lottery", "k2", "external_effect_failed", "reverted")
    assert unconfirmed.kind == "unconfirmed"
    assert failed.kind == "failure"
    assert await audit.count() == 2
    assert [e.kind for e in await audit.query(kind="failure")] == ["failure"]


@pytest.mark.asyncio
async def test_unresolved_oldest_first_and_resolve(audit):
    first = await audit.log_failure(ALICE, "op", "k1", "dependency_unavailable", "down")
    second = await audit.log_failure(BOB, "op", "k2", "dependency_unavailable", "down")
    await audit.log_decision(ALICE, Decision(action="skip"))

    assert [e.id for e in await audit.unresolved()] == [first.id, second.id]
    assert await audit.mark_resolved(first.id, "re-sent manually")
    assert not await audit.mark_resolved(first.id, "again")
    assert [e.id for e in await audit.unresolved()] == [second.id]

    resolved = [e for e in await audit.query(agent=ALICE) if e.id == first.id][0]
    assert resolved.resolved
    assert resolved.resolution == "re-sent manually"


@pytest.mark.asyncio
async def test_query_limit_newest_first(audit):
    for i in range(5):
        await audit.log_failure(ALICE, f"op{i}", f"k{i}", "dependency_unavailable", "down")
    entries = await audit.query(limit=2)
    assert [e.operation for e in entries] == ["op4", "op3"]


@pytest.mark.asyncio
async def test_uninitialized_trail(tmp_path):
    trail = AuditTrail(tmp_path / "nested" / "audit.db")
    with pytest.raises(DependencyUnavailableError):
        await trail.count()
    await trail.initialize()
    assert await trail.count() == 0
    await trail.close()

"""Tests for the LLM-backed decision function."""

import pytest

from agentworld.decision.base import BUY_TICKETS, SKIP, DecisionContext
from agentworld.decision.llm import LLMDecisionFunction
from agentworld.llm.base import LLMResponse

from tests.conftest import ALICE, MockLLMProvider


def _context():
    return DecisionContext(
        agent=ALICE,
        persona="A cautious collector",
        facts={"lottery_pool": "40", "tickets_held": 0},
    )


@pytest.mark.asyncio
async def test_parses_json_decision(mock_llm_with_responses):
    llm = mock_llm_with_responses([LLMResponse(
        content='{"action": "buy_tickets", "ticket_count": 3, "reasoning": "Big pool", "confidence": 80}',
    )])
    decision = await LLMDecisionFunction(llm).decide(_context())
    assert decision.action == BUY_TICKETS
    assert decision.ticket_count == 3
    assert decision.confidence == 80


@pytest.mark.asyncio
async def test_json_inside_prose(mock_llm_with_responses):
    llm = mock_llm_with_responses([LLMResponse(
        content='Sure! Here is my decision:\n```json\n{"action": "skip", "reasoning": "Too risky"}\n```',
    )])
    decision = await LLMDecisionFunction(llm).decide(_context())
    assert decision.is_skip
    assert decision.reasoning == "Too risky"


@pytest.mark.asyncio
async def test_prompt_carries_persona_and_facts(mock_llm):
    await LLMDecisionFunction(mock_llm, min_tickets=2, max_tickets=4).decide(_context())
    call = mock_llm.calls[0]
    prompt = call["messages"][0].content
    assert ALICE in prompt
    assert "A cautious collector" in prompt
    assert "- lottery_pool: 40" in prompt
    assert "2-4" in call["system"]
    assert "buy_tickets" in call["system"]


@pytest.mark.asyncio
async def test_clamps_ticket_count(mock_llm_with_responses):
    llm = mock_llm_with_responses([LLMResponse(content='{"action": "buy_tickets", "ticket_count": 99}')])
    decision = await LLMDecisionFunction(llm, max_tickets=5).decide(_context())
    assert decision.ticket_count == 5


@pytest.mark.asyncio
async def test_garbage_becomes_skip(mock_llm_with_responses):
    llm = mock_llm_with_responses([LLMResponse(content="I think I'll buy some tickets")])
    decision = await LLMDecisionFunction(llm).decide(_context())
    assert decision.action == SKIP
    assert decision.reasoning.startswith("Unparseable decision")


@pytest.mark.asyncio
async def test_broken_json_becomes_skip(mock_llm_with_responses):
    llm = mock_llm_with_responses([LLMResponse(content='{"action": "buy_tickets", ticket_count: }')])
    decision = await LLMDecisionFunction(llm).decide(_context())
    assert decision.is_skip


@pytest.mark.asyncio
async def test_empty_response_becomes_skip(mock_llm_with_responses):
    llm = mock_llm_with_responses([LLMResponse(content="")])
    decision = await LLMDecisionFunction(llm).decide(_context())
    assert decision.is_skip


@pytest.mark.asyncio
async def test_provider_error_becomes_skip():
    llm = MockLLMProvider(error=RuntimeError("overloaded"))
    decision = await LLMDecisionFunction(llm).decide(_context())
    assert decision.is_skip
    assert "Decision system error: overloaded" in decision.reasoning

"""LLM-backed decision function.

The model sees the agent's persona and the facts in its context and
answers with a JSON decision. Anything unusable becomes a skip with the
failure recorded in the reasoning.
"""

from __future__ import annotations

import logging
import re

import orjson

from agentworld.decision.base import (
    ALLOWED_ACTIONS,
    SKIP,
    Decision,
    DecisionContext,
    DecisionFunction,
    normalize_decision,
)
from agentworld.llm.base import BaseLLMProvider, LLMMessage

_logger = logging.getLogger(__name__)

_JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)

DECISION_SYSTEM_PROMPT = """\
You are an autonomous agent living in an on-chain world. You earn rewards,
play the lottery and vote on proposals.

Given your persona and the current state, decide what to do next.
Respond with EXACTLY this JSON format:
{
    "action": "<one of: %(actions)s>",
    "ticket_count": <tickets to buy, %(min)d-%(max)d, or 0 when skipping>,
    "reasoning": "<your thinking in 1-2 sentences>",
    "confidence": <0-100>,
    "params": {}
}

For "vote" put {"proposal_id": "...", "support": true|false} in params.
For "create_proposal" put {"title": "...", "description": "..."} in params.

Respond with ONLY the JSON. No markdown, no explanation."""


class LLMDecisionFunction(DecisionFunction):
    def __init__(
        self,
        llm: BaseLLMProvider,
        allowed: frozenset[str] = ALLOWED_ACTIONS,
        min_tickets: int = 1,
        max_tickets: int = 10,
    ) -> None:
        self._llm = llm
        self._allowed = allowed
        self._min_tickets = min_tickets
        self._max_tickets = max_tickets

    def _system_prompt(self) -> str:
        return DECISION_SYSTEM_PROMPT % {
            "actions": ", ".join(sorted(self._allowed)),
            "min": self._min_tickets,
            "max": self._max_tickets,
        }

    def _prompt(self, context: DecisionContext) -> str:
        lines = [f"You are agent {context.agent}."]
        if context.persona:
            lines.append(f"Persona: {context.persona}")
        lines.append("")
        lines.append("Current state:")
        for name, value in sorted(context.facts.items()):
            lines.append(f"- {name}: {value}")
        return "\n".join(lines)

    async def decide(self, context: DecisionContext) -> Decision:
        try:
            response = await self._llm.complete(
                messages=[LLMMessage(role="user", content=self._prompt(context))],
                system=self._system_prompt(),
                max_tokens=500,
            )
        except Exception as e:
            _logger.warning("Decision call failed for %s: %s", context.agent, e)
            return Decision(
                action=SKIP,
                reasoning=f"Decision system error: {e}. Sitting out this round.",
            )

        if not response.content:
            return Decision(action=SKIP, reasoning="Empty decision. Sitting out this round.")
        return self._parse(response.content)

    def _parse(self, raw: str) -> Decision:
        match = _JSON_OBJECT.search(raw)
        if match is None:
            return Decision(action=SKIP, reasoning=f"Unparseable decision: {raw[:200]}")
        try:
            data = orjson.loads(match.group(0))
        except orjson.JSONDecodeError:
            return Decision(action=SKIP, reasoning=f"Unparseable decision: {raw[:200]}")
        if not isinstance(data, dict):
            return Decision(action=SKIP, reasoning="Decision was not a JSON object")
        return normalize_decision(
            data,
            allowed=self._allowed,
            min_tickets=self._min_tickets,
            max_tickets=self._max_tickets,
        )

"""Decision model, normalization and the decision-function contract."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from pydantic import BaseModel, Field

SKIP = "skip"
BUY_TICKETS = "buy_tickets"
VOTE = "vote"
CREATE_PROPOSAL = "create_proposal"
TRIGGER_DRAW = "trigger_draw"

ALLOWED_ACTIONS = frozenset({SKIP, BUY_TICKETS, VOTE, CREATE_PROPOSAL, TRIGGER_DRAW})

_ALIASES = {
    "buy": BUY_TICKETS,
    "pass": SKIP,
    "draw": TRIGGER_DRAW,
    "propose": CREATE_PROPOSAL,
}


class DecisionContext(BaseModel):
    """What the agent is shown before deciding."""

    agent: str
    persona: str = ""
    facts: dict[str, Any] = Field(default_factory=dict)


class Decision(BaseModel):
    action: str = SKIP
    ticket_count: int = 0
    reasoning: str = ""
    confidence: int = 0
    params: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_skip(self) -> bool:
        return self.action == SKIP


class DecisionFunction(ABC):
    """decide(context) -> Decision. Implementations may call out to an LLM."""

    @abstractmethod
    async def decide(self, context: DecisionContext) -> Decision: ...


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def normalize_decision(
    raw: dict[str, Any],
    allowed: frozenset[str] = ALLOWED_ACTIONS,
    min_tickets: int = 1,
    max_tickets: int = 10,
) -> Decision:
    """Coerce raw decision-function output into a safe Decision.

    Unknown actions become skips. For ticket purchases an explicit 0
    means skip; anything else is clamped to [min_tickets, max_tickets].
    """
    reasoning = str(raw.get("reasoning") or "")[:2000]
    confidence = _as_int(raw.get("confidence"))
    confidence = max(0, min(100, confidence)) if confidence is not None else 0

    action = str(raw.get("action") or SKIP).strip().lower()
    action = _ALIASES.get(action, action)
    if action not in allowed:
        return Decision(
            action=SKIP,
            reasoning=f"Unsupported action {action!r}. {reasoning}".strip(),
            confidence=confidence,
        )

    ticket_count = 0
    if action == BUY_TICKETS:
        requested = _as_int(raw.get("ticket_count", raw.get("ticketCount")))
        if requested == 0:
            return Decision(action=SKIP, reasoning=reasoning, confidence=confidence)
        ticket_count = max(min_tickets, min(max_tickets, requested or min_tickets))

    params = raw.get("params")
    return Decision(
        action=action,
        ticket_count=ticket_count,
        reasoning=reasoning,
        confidence=confidence,
        params=params if isinstance(params, dict) else {},
    )

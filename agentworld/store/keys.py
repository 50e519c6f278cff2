"""Logical key layout. Addresses are canonical (lowercase) before they get here."""

from __future__ import annotations

# World / registry
AGENT_SET = "world:agents"
LEADERBOARD = "world:leaderboard"
EVENTS = "world:events"


def agent(address: str) -> str:
    return f"world:agent:{address}"


def registered(address: str) -> str:
    return f"world:registered:{address}"


def action_marker(idempotency_key: str) -> str:
    return f"world:action:{idempotency_key}"


def rate_limit(bucket: str) -> str:
    return f"ratelimit:{bucket}"


# Rewards


def reward_applied(idempotency_key: str) -> str:
    return f"reward:applied:{idempotency_key}"


def reward_history(address: str) -> str:
    return f"reward:events:{address}"


def settlement(reference: str) -> str:
    return f"chain:submission:{reference}"


# Governance
PROPOSAL_SET = "dao:proposals"


def proposal(proposal_id: str) -> str:
    return f"dao:proposal:{proposal_id}"


def vote_marker(proposal_id: str, voter: str) -> str:
    return f"dao:vote:{proposal_id}:{voter}"


def ballot(proposal_id: str, voter: str) -> str:
    return f"dao:ballot:{proposal_id}:{voter}"


def voters(proposal_id: str) -> str:
    return f"dao:voters:{proposal_id}"


# Lottery
LOTTERY_CURRENT = "lottery:current"
LOTTERY_WINNERS = "lottery:winners"


def lottery_round(round_id: int) -> str:
    return f"lottery:round:{round_id}"


def round_opened(round_id: int) -> str:
    return f"lottery:opened:{round_id}"


def round_closed(round_id: int) -> str:
    return f"lottery:closed:{round_id}"


def tickets(round_id: int) -> str:
    return f"lottery:tickets:{round_id}"


def entrants(round_id: int) -> str:
    return f"lottery:entrants:{round_id}"


def purchase(idempotency_key: str) -> str:
    return f"lottery:purchase:{idempotency_key}"


# Breeding
BREEDING_FEED = "breeding:feed"


def appreciation(observer: str) -> str:
    return f"agent:{observer}:appreciation"
BREEDING_COUNTS = "breeding:counts"


def breeding_event(child_id: str) -> str:
    return f"breeding:event:{child_id}"

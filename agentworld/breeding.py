"""Breeding eligibility from mutual appreciation.

Each agent keeps its own directional appreciation scores (0-100) for
the agents it has listened to. A pair may breed only when both
directions independently exceed the threshold; the average is reported
either way so "developing" pairs can be ranked.
"""

from __future__ import annotations

import itertools
import time

from pydantic import BaseModel, Field

from agentworld import codec
from agentworld.events.bus import EventBus
from agentworld.exceptions import BreedingNotEligibleError, ConflictError, InvalidInputError
from agentworld.store import keys
from agentworld.store.base import ApplyResult, HIncrBy, KeyValueStore, LPush
from agentworld.types import Clock, new_id

MIN_SCORE = 0
MAX_SCORE = 100
FEED_LIMIT = 100


def eligible(score_a_to_b: int, score_b_to_a: int, threshold: int) -> bool:
    return score_a_to_b > threshold and score_b_to_a > threshold


def average_score(score_a_to_b: int, score_b_to_a: int) -> float:
    return (score_a_to_b + score_b_to_a) / 2


class PairEligibility(BaseModel):
    agent_a: str
    agent_b: str
    score_a_to_b: int
    score_b_to_a: int
    avg_score: float
    eligible: bool
    threshold: int


def evaluate(
    agent_a: str, agent_b: str, score_a_to_b: int, score_b_to_a: int, threshold: int,
) -> PairEligibility:
    return PairEligibility(
        agent_a=agent_a,
        agent_b=agent_b,
        score_a_to_b=score_a_to_b,
        score_b_to_a=score_b_to_a,
        avg_score=average_score(score_a_to_b, score_b_to_a),
        eligible=eligible(score_a_to_b, score_b_to_a, threshold),
        threshold=threshold,
    )


class BreedingRecord(BaseModel):
    id: str = Field(default_factory=new_id)
    parent1: str
    parent2: str
    child_id: str
    mutual_appreciation: float
    tx_hash: str = ""
    timestamp: float


def _agent_id(value: str) -> str:
    agent_id = (value or "").strip().lower()
    if not agent_id:
        raise InvalidInputError("Agent id is required")
    return agent_id


class BreedingEligibility:
    """Appreciation scores, pair checks and the breeding feed."""

    def __init__(
        self,
        store: KeyValueStore,
        bus: EventBus,
        threshold: int = 70,
        clock: Clock = time.time,
    ) -> None:
        self._store = store
        self._bus = bus
        self._threshold = threshold
        self._clock = clock

    @property
    def threshold(self) -> int:
        return self._threshold

    async def record_appreciation(self, observer: str, subject: str, score: int) -> int:
        """Store observer's score for subject, clamped to 0-100."""
        observer, subject = _agent_id(observer), _agent_id(subject)
        if observer == subject:
            raise InvalidInputError("An agent cannot appreciate itself")
        clamped = max(MIN_SCORE, min(MAX_SCORE, int(score)))
        await self._store.hset(keys.appreciation(observer), {subject: str(clamped)})
        return clamped

    async def get_appreciation(self, observer: str, subject: str) -> int:
        raw = await self._store.hget(keys.appreciation(_agent_id(observer)), _agent_id(subject))
        return int(raw or 0)

    async def check_pair(self, agent_a: str, agent_b: str) -> PairEligibility:
        agent_a, agent_b = _agent_id(agent_a), _agent_id(agent_b)
        if agent_a == agent_b:
            raise InvalidInputError("Cannot breed an agent with itself")
        return evaluate(
            agent_a,
            agent_b,
            await self.get_appreciation(agent_a, agent_b),
            await self.get_appreciation(agent_b, agent_a),
            self._threshold,
        )

    async def eligible_pairs(
        self, agents: list[str], include_developing: bool = False,
    ) -> list[PairEligibility]:
        """Pairs among `agents`, best average first.

        Developing pairs (not yet eligible but with some appreciation) are
        included when asked for.
        """
        ids = sorted({_agent_id(a) for a in agents})
        pairs = []
        for a, b in itertools.combinations(ids, 2):
            pair = await self.check_pair(a, b)
            if pair.eligible or (include_developing and pair.avg_score > 0):
                pairs.append(pair)
        pairs.sort(key=lambda p: p.avg_score, reverse=True)
        return pairs

    async def record_breeding(
        self, parent1: str, parent2: str, child_id: str, tx_hash: str = "",
    ) -> BreedingRecord:
        """Log a completed breeding. Re-recording the same child is a conflict."""
        pair = await self.check_pair(parent1, parent2)
        if not pair.eligible:
            raise BreedingNotEligibleError(
                f"Mutual appreciation too low for breeding "
                f"({pair.score_a_to_b}/{pair.score_b_to_a}, threshold {self._threshold})"
            )
        child_id = _agent_id(child_id)
        record = BreedingRecord(
            parent1=pair.agent_a,
            parent2=pair.agent_b,
            child_id=child_id,
            mutual_appreciation=pair.avg_score,
            tx_hash=tx_hash,
            timestamp=self._clock(),
        )
        result = await self._store.apply(
            [
                LPush(keys.BREEDING_FEED, codec.dumps(record), max_len=FEED_LIMIT),
                HIncrBy(keys.BREEDING_COUNTS, pair.agent_a, 1),
                HIncrBy(keys.BREEDING_COUNTS, pair.agent_b, 1),
            ],
            once_key=keys.breeding_event(child_id),
        )
        if result is ApplyResult.DUPLICATE:
            raise ConflictError(f"Breeding of {child_id} was already recorded")

        await self._bus.emit(
            "breeding.completed",
            {"parent1": pair.agent_a, "parent2": pair.agent_b, "child_id": child_id},
            description=(
                f"{pair.agent_a} and {pair.agent_b} bred {child_id} "
                f"(mutual appreciation {pair.avg_score:.1f}%)"
            ),
            tx_hash=tx_hash,
            source="breeding",
        )
        return record

    async def recent_breedings(self, limit: int = 20) -> list[BreedingRecord]:
        raw = await self._store.lrange(keys.BREEDING_FEED, 0, limit - 1)
        return [codec.loads(BreedingRecord, entry) for entry in raw]

    async def breeding_count(self, agent: str) -> int:
        return int(await self._store.hget(keys.BREEDING_COUNTS, _agent_id(agent)) or 0)

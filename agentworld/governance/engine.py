"""GovernanceEngine — proposal lifecycle and tier-weighted voting.

Status moves forward only: active -> passed | rejected -> executed.
Finalization is lazy: the first read after the deadline stamps
`closed_at`, which every vote batch is guarded on, then derives the
outcome from the now frozen tallies and persists it with a
compare-and-swap, so exactly one reader logs the "finalized" event.
"""

from __future__ import annotations

import logging
import time
from decimal import Decimal

from agentworld import codec
from agentworld.events.bus import EventBus
from agentworld.exceptions import (
    AlreadyVotedError,
    InsufficientStakeError,
    InvalidInputError,
    ProposalNotFoundError,
    ProposalStateError,
    VotingClosedError,
)
from agentworld.governance.tiers import TierLookup, voting_weight
from agentworld.store import keys
from agentworld.store.base import (
    ApplyResult,
    Guard,
    HIncrBy,
    HSet,
    KeyValueStore,
    SAdd,
    ZAdd,
)
from agentworld.types import (
    Clock,
    Proposal,
    ProposalId,
    ProposalStatus,
    Vote,
    canonical_address,
    prefixed_id,
)

_logger = logging.getLogger(__name__)

MAX_TITLE_LENGTH = 200
MAX_DESCRIPTION_LENGTH = 5000

_proposal_codec = codec.RecordCodec(Proposal)
_vote_codec = codec.RecordCodec(Vote)


class GovernanceEngine:
    """Creates proposals, records votes, finalizes outcomes."""

    def __init__(
        self,
        store: KeyValueStore,
        bus: EventBus,
        tiers: TierLookup,
        proposal_duration: int = 7 * 24 * 3600,
        min_proposer_multiplier: Decimal = Decimal("1.5"),
        clock: Clock = time.time,
    ) -> None:
        self._store = store
        self._bus = bus
        self._tiers = tiers
        self._duration = proposal_duration
        self._min_proposer_multiplier = min_proposer_multiplier
        self._clock = clock

    async def create_proposal(
        self,
        proposer: str,
        title: str,
        description: str = "",
        min_proposer_multiplier: Decimal | None = None,
    ) -> Proposal:
        addr = canonical_address(proposer)
        title = (title or "").strip()
        if not title or len(title) > MAX_TITLE_LENGTH:
            raise InvalidInputError(f"Title must be 1-{MAX_TITLE_LENGTH} characters")
        if len(description) > MAX_DESCRIPTION_LENGTH:
            raise InvalidInputError(f"Description exceeds {MAX_DESCRIPTION_LENGTH} characters")

        required = min_proposer_multiplier or self._min_proposer_multiplier
        multiplier = await self._tiers.multiplier_for(addr)
        if multiplier < required:
            raise InsufficientStakeError(
                f"Proposer tier multiplier {multiplier} is below the required {required}"
            )

        now = self._clock()
        proposal = Proposal(
            id=prefixed_id("prop", self._clock),
            title=title,
            description=description,
            proposer=addr,
            created_at=now,
            ends_at=now + self._duration,
        )
        await self._store.apply([
            HSet(keys.proposal(proposal.id), _proposal_codec.encode(proposal)),
            ZAdd(keys.PROPOSAL_SET, proposal.id, now),
        ])
        await self._bus.emit(
            "dao.proposal_created",
            {"proposal_id": proposal.id, "title": title},
            agent=addr,
            description=f"Created proposal: {title}",
            source="governance",
        )
        return proposal

    async def cast_vote(self, proposal_id: ProposalId, voter: str, support: bool) -> Vote:
        """Record one vote; weight comes from the voter's tier right now and never changes."""
        addr = canonical_address(voter)
        proposal = await self.get_proposal(proposal_id)
        if proposal.status is not ProposalStatus.ACTIVE or self._clock() > proposal.ends_at:
            raise VotingClosedError(f"Voting on {proposal_id} has ended")
        if await self._store.exists(keys.vote_marker(proposal_id, addr)):
            raise AlreadyVotedError(f"{addr} already voted on {proposal_id}")

        multiplier = await self._tiers.multiplier_for(addr)
        vote = Vote(
            proposal_id=proposal_id,
            voter=addr,
            support=support,
            weight=voting_weight(multiplier),
            multiplier=multiplier,
            timestamp=self._clock(),
        )
        proposal_key = keys.proposal(proposal_id)
        result = await self._store.apply(
            [
                HSet(keys.ballot(proposal_id, addr), _vote_codec.encode(vote)),
                SAdd(keys.voters(proposal_id), addr),
                HIncrBy(proposal_key, "votes_for" if support else "votes_against", vote.weight),
                HIncrBy(proposal_key, "voter_count", 1),
            ],
            once_key=keys.vote_marker(proposal_id, addr),
            guard=Guard(proposal_key, "closed_at", (None,)),
        )
        if result is ApplyResult.DUPLICATE:
            raise AlreadyVotedError(f"{addr} already voted on {proposal_id}")
        if result is ApplyResult.REJECTED:
            raise VotingClosedError(f"Voting on {proposal_id} has ended")

        await self._bus.emit(
            "dao.vote_cast",
            {"proposal_id": proposal_id, "support": support, "weight": vote.weight},
            agent=addr,
            description=f"Voted {'FOR' if support else 'AGAINST'} proposal: {proposal.title}",
            source="governance",
        )
        return vote

    async def get_proposal(self, proposal_id: ProposalId) -> Proposal:
        proposal = await self._load(proposal_id)
        if proposal.status is ProposalStatus.ACTIVE and self._clock() > proposal.ends_at:
            return await self._finalize(proposal)
        return proposal

    async def _load(self, proposal_id: ProposalId) -> Proposal:
        proposal = _proposal_codec.decode_optional(
            await self._store.hgetall(keys.proposal(proposal_id))
        )
        if proposal is None:
            raise ProposalNotFoundError(f"Proposal {proposal_id} not found")
        return proposal

    async def _finalize(self, proposal: Proposal) -> Proposal:
        now = self._clock()
        # Whoever loses this race still finishes the job below.
        await self._store.hcas(keys.proposal(proposal.id), "closed_at", None, str(now))
        proposal = await self._load(proposal.id)
        if proposal.status is not ProposalStatus.ACTIVE:
            return proposal
        outcome = (
            ProposalStatus.PASSED
            if proposal.votes_for > proposal.votes_against
            else ProposalStatus.REJECTED
        )
        won = await self._store.hcas(
            keys.proposal(proposal.id),
            "status",
            ProposalStatus.ACTIVE.value,
            outcome.value,
            also={"finalized_at": str(now)},
        )
        if won:
            _logger.info(
                "Proposal %s finalized as %s (%d for, %d against)",
                proposal.id, outcome.value, proposal.votes_for, proposal.votes_against,
            )
            await self._bus.emit(
                "dao.proposal_finalized",
                {
                    "proposal_id": proposal.id,
                    "status": outcome.value,
                    "votes_for": proposal.votes_for,
                    "votes_against": proposal.votes_against,
                },
                agent=proposal.proposer,
                description=f"Proposal {outcome.value}: {proposal.title}",
                source="governance",
            )
        return await self._load(proposal.id)

    async def list_proposals(
        self, status: ProposalStatus | None = None, limit: int = 50, offset: int = 0,
    ) -> list[Proposal]:
        """Newest first; expired proposals are finalized as they are read."""
        ids = await self._store.zrange(keys.PROPOSAL_SET, desc=True)
        proposals = []
        for proposal_id, _ in ids:
            proposal = await self.get_proposal(proposal_id)
            if status is None or proposal.status is status:
                proposals.append(proposal)
        return proposals[offset:offset + limit]

    async def get_votes(self, proposal_id: ProposalId) -> list[Vote]:
        """All ballots on a proposal, most recent first."""
        await self._load(proposal_id)
        votes = []
        for voter in await self._store.smembers(keys.voters(proposal_id)):
            vote = _vote_codec.decode_optional(
                await self._store.hgetall(keys.ballot(proposal_id, voter))
            )
            if vote is not None:
                votes.append(vote)
        votes.sort(key=lambda v: v.timestamp, reverse=True)
        return votes

    async def has_voted(self, proposal_id: ProposalId, voter: str) -> bool:
        return await self._store.exists(keys.vote_marker(proposal_id, canonical_address(voter)))

    async def mark_executed(self, proposal_id: ProposalId) -> Proposal:
        """passed -> executed. Execution side effects happen elsewhere."""
        proposal = await self.get_proposal(proposal_id)
        if proposal.status is not ProposalStatus.PASSED:
            raise ProposalStateError(
                f"Proposal {proposal_id} is {proposal.status.value}, not passed"
            )
        won = await self._store.hcas(
            keys.proposal(proposal_id),
            "status",
            ProposalStatus.PASSED.value,
            ProposalStatus.EXECUTED.value,
            also={"executed_at": str(self._clock())},
        )
        if not won:
            raise ProposalStateError(f"Proposal {proposal_id} was already executed")

        await self._bus.emit(
            "dao.proposal_executed",
            {"proposal_id": proposal_id},
            agent=proposal.proposer,
            description=f"Executed proposal: {proposal.title}",
            source="governance",
        )
        return await self._load(proposal_id)

"""Exception hierarchy for agentworld.

Every class carries a stable `kind` string. The gateway reports that
string to callers instead of the raw exception.
"""

from __future__ import annotations


class WorldError(Exception):
    """Base for all agent-world errors."""

    kind = "internal"


# ── Validation ───────────────────────────────────────────────────────────────


class InvalidInputError(WorldError):
    """Malformed input. Rejected before any state change."""

    kind = "validation"


class InvalidAddressError(InvalidInputError):
    """Not a 0x-prefixed 20-byte hex address."""


class InvalidAmountError(InvalidInputError):
    """Amount is not a finite, positive decimal."""


class InvalidCountError(InvalidInputError):
    """Ticket count must be a positive integer."""


# ── Not found ────────────────────────────────────────────────────────────────


class NotFoundError(WorldError):
    kind = "not_found"


class AgentNotFoundError(NotFoundError):
    """No agent with the given address is registered."""


class ProposalNotFoundError(NotFoundError):
    """No proposal with the given ID exists."""


class RoundNotFoundError(NotFoundError):
    """No lottery round with the given ID exists."""


# ── Conflicts ────────────────────────────────────────────────────────────────


class ConflictError(WorldError):
    kind = "conflict"


class AlreadyRegisteredError(ConflictError):
    """Address already entered the world."""


class AlreadyVotedError(ConflictError):
    """Voter already has a recorded vote on this proposal."""


class VotingClosedError(ConflictError):
    """Proposal deadline has passed or it is no longer active."""


class ProposalStateError(ConflictError):
    """Invalid proposal status transition."""


class RoundClosedError(ConflictError):
    """Ticket sales for the round have ended."""


class RoundStillOpenError(ConflictError):
    """Round deadline has not been reached yet."""


class AlreadyDrawnError(ConflictError):
    """Round already has a final draw result."""


class DrawInProgressError(ConflictError):
    """Another handler holds the draw claim for this round."""


class PayoutConflictError(ConflictError):
    """A different payout transaction is already attached to the round."""


class BreedingNotEligibleError(ConflictError):
    """Mutual appreciation is below the breeding threshold."""


# ── Policy ───────────────────────────────────────────────────────────────────


class InsufficientStakeError(WorldError):
    """Token tier is below the minimum required for the operation."""

    kind = "insufficient_stake"


class RateLimitedError(WorldError):
    """Caller exceeded its request window."""

    kind = "rate_limited"

    def __init__(self, message: str, retry_after: int) -> None:
        super().__init__(message)
        self.retry_after = retry_after


# ── Dependencies ─────────────────────────────────────────────────────────────


class DependencyUnavailableError(WorldError):
    """Store or external collaborator unreachable. Value-moving work fails closed."""

    kind = "dependency_unavailable"


class CorruptRecordError(WorldError):
    """A stored record failed schema validation."""

    kind = "corrupt_record"


class UnconfirmedExternalEffectError(WorldError):
    """Submission sent, outcome not yet known. Re-check status, never resubmit blindly."""

    kind = "unconfirmed_external_effect"

    def __init__(self, message: str, reference: str = "", tx_hash: str | None = None) -> None:
        super().__init__(message)
        self.reference = reference
        self.tx_hash = tx_hash


class ExternalEffectFailedError(WorldError):
    """The chain reported the transaction as failed."""

    kind = "external_effect_failed"

    def __init__(self, message: str, tx_hash: str = "") -> None:
        super().__init__(message)
        self.tx_hash = tx_hash

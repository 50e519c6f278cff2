"""Randomness oracle.

Draws are verifiable after the fact: the oracle publishes the seed it
derived the index from and a SHA-256 proof binding that seed to the
range size. Anyone holding the seed can recompute both.
"""

from __future__ import annotations

import hashlib
import secrets
from abc import ABC, abstractmethod

from pydantic import BaseModel

from agentworld.exceptions import InvalidInputError


class DrawProof(BaseModel):
    value: int
    seed: str
    proof: str


def _proof_for(seed: str, upper: int) -> str:
    return hashlib.sha256(f"{seed}|{upper}".encode()).hexdigest()


def _index_for(seed: str, upper: int) -> int:
    return int(seed, 16) % upper


def verify_draw(seed: str, upper: int, proof: str, value: int) -> bool:
    """True when `seed` produces both `proof` and `value` for a range of `upper`."""
    if upper <= 0:
        return False
    try:
        return _proof_for(seed, upper) == proof and _index_for(seed, upper) == value
    except ValueError:
        return False


class RandomnessOracle(ABC):
    """Uniform integers, unpredictable before the round closes."""

    @abstractmethod
    async def random_in_range(self, low: int, high: int) -> int:
        """Uniform integer in [low, high], both inclusive."""

    @abstractmethod
    async def draw_with_proof(self, upper: int, context: str) -> DrawProof:
        """Uniform integer in [0, upper) plus the material to verify it."""


class SecureRandomOracle(RandomnessOracle):
    """OS CSPRNG, mixed with the draw context and hashed into a seed."""

    async def random_in_range(self, low: int, high: int) -> int:
        if high < low:
            raise InvalidInputError(f"Empty range [{low}, {high}]")
        return low + secrets.randbelow(high - low + 1)

    async def draw_with_proof(self, upper: int, context: str) -> DrawProof:
        if upper <= 0:
            raise InvalidInputError("Cannot draw from an empty range")
        entropy = secrets.token_hex(32)
        seed = hashlib.sha256(f"{entropy}|{context}".encode()).hexdigest()
        return DrawProof(value=_index_for(seed, upper), seed=seed, proof=_proof_for(seed, upper))

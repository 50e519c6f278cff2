"""Tests for the randomness oracle and draw verification."""

import pytest

from agentworld.exceptions import InvalidInputError
from agentworld.lottery.randomness import SecureRandomOracle, verify_draw


@pytest.mark.asyncio
async def test_range_inclusive():
    oracle = SecureRandomOracle()
    seen = {await oracle.random_in_range(1, 3) for _ in range(200)}
    assert seen == {1, 2, 3}


@pytest.mark.asyncio
async def test_single_value_range():
    assert await SecureRandomOracle().random_in_range(7, 7) == 7


@pytest.mark.asyncio
async def test_empty_range_rejected():
    with pytest.raises(InvalidInputError):
        await SecureRandomOracle().random_in_range(5, 4)
    with pytest.raises(InvalidInputError):
        await SecureRandomOracle().draw_with_proof(0, "ctx")


@pytest.mark.asyncio
async def test_draw_is_verifiable():
    proof = await SecureRandomOracle().draw_with_proof(37, "round:1")
    assert 0 <= proof.value < 37
    assert verify_draw(proof.seed, 37, proof.proof, proof.value)
    assert not verify_draw(proof.seed, 38, proof.proof, proof.value)
    assert not verify_draw(proof.seed, 37, proof.proof, (proof.value + 1) % 37)


def test_verify_rejects_garbage():
    assert not verify_draw("not-hex", 10, "x", 0)
    assert not verify_draw("ab", 0, "x", 0)

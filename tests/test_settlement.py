"""Tests for at-most-once settlement transfers."""

import asyncio
from decimal import Decimal

import pytest

from agentworld.chain import Settlement
from agentworld.exceptions import (
    DependencyUnavailableError,
    ExternalEffectFailedError,
    NotFoundError,
    UnconfirmedExternalEffectError,
)
from agentworld.store import keys

from tests.conftest import ALICE

TX1 = f"0x{1:064x}"


@pytest.mark.asyncio
async def test_transfer_returns_receipt(settlement, chain, store):
    receipt = await settlement.transfer(ALICE, Decimal("5"), "ref:1")
    assert receipt.success
    assert receipt.tx_hash == TX1
    assert await store.get(keys.settlement("ref:1")) == TX1


@pytest.mark.asyncio
async def test_same_reference_not_resubmitted(settlement, chain):
    await settlement.transfer(ALICE, Decimal("5"), "ref:1")
    again = await settlement.transfer(ALICE, Decimal("5"), "ref:1")
    assert again.tx_hash == TX1
    assert len(chain.submitted) == 1


@pytest.mark.asyncio
async def test_concurrent_transfers_submit_once(settlement, chain):
    results = await asyncio.gather(
        *(settlement.transfer(ALICE, Decimal("5"), "ref:c") for _ in range(5)),
        return_exceptions=True,
    )
    assert len(chain.submitted) == 1
    for r in results:
        assert isinstance(r, UnconfirmedExternalEffectError) or r.tx_hash == TX1


@pytest.mark.asyncio
async def test_unavailable_releases_claim(settlement, chain, store):
    chain.unavailable = True
    with pytest.raises(DependencyUnavailableError):
        await settlement.transfer(ALICE, Decimal("5"), "ref:u")
    assert await store.get(keys.settlement("ref:u")) is None

    chain.unavailable = False
    assert (await settlement.transfer(ALICE, Decimal("5"), "ref:u")).success


@pytest.mark.asyncio
async def test_submission_timeout_keeps_claim(settlement, chain, store):
    chain.hang_submissions = True
    with pytest.raises(UnconfirmedExternalEffectError) as exc:
        await settlement.transfer(ALICE, Decimal("5"), "ref:t")
    assert exc.value.reference == "ref:t"

    chain.hang_submissions = False
    with pytest.raises(UnconfirmedExternalEffectError):
        await settlement.transfer(ALICE, Decimal("5"), "ref:t")
    assert chain.submitted == []


@pytest.mark.asyncio
async def test_receipt_timeout_is_unconfirmed(settlement, chain):
    chain.hanging.add(TX1)
    with pytest.raises(UnconfirmedExternalEffectError) as exc:
        await settlement.transfer(ALICE, Decimal("5"), "ref:r")
    assert exc.value.tx_hash == TX1

    chain.hanging.clear()
    receipt = await settlement.check("ref:r")
    assert receipt.tx_hash == TX1
    assert len(chain.submitted) == 1


@pytest.mark.asyncio
async def test_reverted_transfer_can_be_retried(settlement, chain, store):
    chain.fail_next = True
    with pytest.raises(ExternalEffectFailedError) as exc:
        await settlement.transfer(ALICE, Decimal("5"), "ref:f")
    assert exc.value.tx_hash == TX1
    assert await store.get(keys.settlement("ref:f")) is None

    receipt = await settlement.transfer(ALICE, Decimal("5"), "ref:f")
    assert receipt.tx_hash == f"0x{2:064x}"


@pytest.mark.asyncio
async def test_check_unknown_reference(settlement):
    with pytest.raises(NotFoundError):
        await settlement.check("never")


@pytest.mark.asyncio
async def test_confirm_external_tx(store, chain):
    settlement = Settlement(store, chain, receipt_timeout=0.2)
    chain.failed.add("0xbad")
    assert (await settlement.confirm("0xgood")).success
    with pytest.raises(ExternalEffectFailedError):
        await settlement.confirm("0xbad")

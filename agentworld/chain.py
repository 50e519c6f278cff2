"""On-chain settlement — the boundary to the transfer collaborator.

`ChainClient` is the opaque "submit transaction, await receipt"
capability. `Settlement` wraps it so that a transfer identified by a
reference is submitted at most once: the first caller claims the
reference in the store before submitting, later or concurrent callers
only re-check the recorded transaction.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from decimal import Decimal

from pydantic import BaseModel

from agentworld.exceptions import (
    DependencyUnavailableError,
    ExternalEffectFailedError,
    NotFoundError,
    UnconfirmedExternalEffectError,
)
from agentworld.store import keys
from agentworld.store.base import KeyValueStore

_logger = logging.getLogger(__name__)

_PENDING = "pending"


class Receipt(BaseModel):
    tx_hash: str
    success: bool
    block_ref: str = ""


class ChainClient(ABC):
    """Transfer collaborator. Implemented outside this package."""

    @abstractmethod
    async def submit_transfer(self, to: str, amount: Decimal, reference: str | None = None) -> str:
        """Send a transfer and return its transaction hash.

        Raise `DependencyUnavailableError` only when the transaction was
        definitely not sent.
        """

    @abstractmethod
    async def await_receipt(self, tx_hash: str) -> Receipt:
        """Wait for the transaction to be mined."""


class Settlement:
    """At-most-once transfers keyed by a caller-supplied reference."""

    def __init__(
        self,
        store: KeyValueStore,
        chain: ChainClient,
        receipt_timeout: float = 60.0,
        claim_ttl: int = 7 * 24 * 3600,
    ) -> None:
        self._store = store
        self._chain = chain
        self._receipt_timeout = receipt_timeout
        self._claim_ttl = claim_ttl

    async def transfer(self, to: str, amount: Decimal, reference: str) -> Receipt:
        """Transfer `amount` to `to` once per `reference`; return the success receipt."""
        claim_key = keys.settlement(reference)
        if not await self._store.set_if_absent(claim_key, _PENDING, ttl=self._claim_ttl):
            return await self.check(reference)

        try:
            tx_hash = await asyncio.wait_for(
                self._chain.submit_transfer(to, amount, reference),
                timeout=self._receipt_timeout,
            )
        except asyncio.TimeoutError:
            # The submission may or may not have reached the chain; keep the claim.
            raise UnconfirmedExternalEffectError(
                f"Submission for {reference} timed out; outcome unknown",
                reference=reference,
            ) from None
        except DependencyUnavailableError:
            await self._store.delete(claim_key)
            raise

        await self._store.set(claim_key, tx_hash, ttl=self._claim_ttl)
        _logger.info("Submitted transfer %s for %s: %s", amount, reference, tx_hash)
        return await self.confirm(tx_hash, reference=reference)

    async def check(self, reference: str) -> Receipt:
        """Re-check a previously claimed transfer without resubmitting."""
        recorded = await self._store.get(keys.settlement(reference))
        if recorded is None:
            raise NotFoundError(f"No submission recorded for {reference}")
        if recorded == _PENDING:
            raise UnconfirmedExternalEffectError(
                f"Transfer {reference} is in flight", reference=reference,
            )
        return await self.confirm(recorded, reference=reference)

    async def confirm(self, tx_hash: str, reference: str = "") -> Receipt:
        """Wait (bounded) for a receipt. Timeouts are unknown outcomes, not failures."""
        try:
            receipt = await asyncio.wait_for(
                self._chain.await_receipt(tx_hash), timeout=self._receipt_timeout,
            )
        except asyncio.TimeoutError:
            raise UnconfirmedExternalEffectError(
                f"No receipt for {tx_hash} within {self._receipt_timeout}s",
                reference=reference,
                tx_hash=tx_hash,
            ) from None

        if not receipt.success:
            if reference:
                # A mined failure is final, so the reference may be retried.
                await self._store.delete(keys.settlement(reference))
            raise ExternalEffectFailedError(f"Transaction {tx_hash} reverted", tx_hash=tx_hash)
        return receipt

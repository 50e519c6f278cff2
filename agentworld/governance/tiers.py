"""Token tiers and voting weight."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from decimal import ROUND_FLOOR, Decimal

from agentworld.exceptions import DependencyUnavailableError, WorldError
from agentworld.types import Tier, canonical_address

_logger = logging.getLogger(__name__)

BASE_WEIGHT = 100
_NO_TIER = Tier(name="none", threshold=0, multiplier=Decimal("1"))


def resolve_tier(balance: int, tiers: list[Tier]) -> Tier:
    """First tier, by descending threshold, whose threshold the balance meets."""
    for tier in sorted(tiers, key=lambda t: t.threshold, reverse=True):
        if balance >= tier.threshold:
            return tier
    return _NO_TIER


def voting_weight(multiplier: Decimal) -> int:
    return int((multiplier * BASE_WEIGHT).to_integral_value(rounding=ROUND_FLOOR))


class TierLookup(ABC):
    """Token-tier collaborator: address -> tier."""

    @abstractmethod
    async def tier_of(self, address: str) -> Tier: ...

    async def multiplier_for(self, address: str) -> Decimal:
        return (await self.tier_of(address)).multiplier


class BalanceSource(ABC):
    """Reads a token balance in base units."""

    @abstractmethod
    async def balance_of(self, address: str) -> int: ...


class BalanceTierLookup(TierLookup):
    """Resolves tiers from a live balance read."""

    def __init__(self, source: BalanceSource, tiers: list[Tier]) -> None:
        self._source = source
        self._tiers = tiers

    async def tier_of(self, address: str) -> Tier:
        addr = canonical_address(address)
        try:
            balance = await self._source.balance_of(addr)
        except WorldError:
            raise
        except Exception as e:
            _logger.warning("Balance lookup failed for %s: %s", addr, e)
            raise DependencyUnavailableError(f"Token balance lookup failed: {e}") from e
        return resolve_tier(balance, self._tiers)


class StaticTierLookup(TierLookup):
    """Fixed balances, for local worlds and tests. Unknown addresses hold 0."""

    def __init__(self, balances: dict[str, int], tiers: list[Tier]) -> None:
        self._balances = {canonical_address(a): b for a, b in balances.items()}
        self._tiers = tiers

    def set_balance(self, address: str, balance: int) -> None:
        self._balances[canonical_address(address)] = balance

    async def tier_of(self, address: str) -> Tier:
        return resolve_tier(self._balances.get(canonical_address(address), 0), self._tiers)

"""Lottery — ticket sales, weighted draws, payouts and rollovers.

- randomness: the oracle contract plus a verifiable CSPRNG implementation
- draw: ticket ranges, winner lookup, payout split (pure)
- engine: round lifecycle on the shared store
"""

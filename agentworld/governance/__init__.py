"""Governance — token-weighted proposals and votes.

- tiers: map a token balance to a voting multiplier
- engine: proposal lifecycle, one frozen-weight vote per voter
"""

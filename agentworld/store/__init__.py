"""Store backends and the key layout shared by every engine."""

from agentworld.store.base import (
    ApplyResult,
    Guard,
    HIncrBy,
    HIncrDecimal,
    HSet,
    KeyValueStore,
    LPush,
    SAdd,
    SetValue,
    ZAdd,
    ZIncrBy,
)

__all__ = [
    "ApplyResult",
    "Guard",
    "HIncrBy",
    "HIncrDecimal",
    "HSet",
    "KeyValueStore",
    "LPush",
    "SAdd",
    "SetValue",
    "ZAdd",
    "ZIncrBy",
]

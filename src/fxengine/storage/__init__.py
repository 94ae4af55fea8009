"""Persistence -- key-value backends and the typed engine state repository."""

from .kv import InMemoryKVStore, KeyValueStore, RedisKVStore
from .state import ForexStateStore, coerce_position_context

__all__ = [
    "ForexStateStore",
    "InMemoryKVStore",
    "KeyValueStore",
    "RedisKVStore",
    "coerce_position_context",
]

"""
Two-tier cache with a memory layer, an optional durable layer and lazy expiry.
"""
from .core import CacheEntry, CacheStats, StoredValue
from .keys import hash_key, make_key
from .ttl_policies import TTL_CONFIG, get_ttl_for_key
from .single_flight import PendingFill, SingleFlightGroup
from .store import PersistentStore, SQLAlchemyCacheStore
from .manager import TieredCache

__all__ = [
    # Core types
    "CacheEntry",
    "CacheStats",
    "StoredValue",
    # Keys and TTLs
    "hash_key",
    "make_key",
    "TTL_CONFIG",
    "get_ttl_for_key",
    # Single-flight
    "PendingFill",
    "SingleFlightGroup",
    # Persistence
    "PersistentStore",
    "SQLAlchemyCacheStore",
    # Cache
    "TieredCache",
]

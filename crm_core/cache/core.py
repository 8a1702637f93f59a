"""
Core cache data structures.
"""
from dataclasses import dataclass
from typing import Any, Dict, Optional


@dataclass
class CacheEntry:
    """
    A cached value held in the memory tier.

    expires_at is an absolute epoch timestamp; the entry is live only while
    expires_at is strictly in the future.
    """
    key: str
    value: Any
    expires_at: float

    def is_live(self, now: float) -> bool:
        """Check if the entry can still be served at time now."""
        return self.expires_at > now


@dataclass
class StoredValue:
    """A value read back from the persistent tier."""
    value: Any
    expires_at: float


@dataclass
class CacheStats:
    """Counters for cache accesses."""
    memory_hits: int = 0
    persistent_hits: int = 0
    misses: int = 0
    sets: int = 0
    invalidations: int = 0
    store_errors: int = 0
    swept: int = 0
    last_sweep_at: Optional[float] = None

    def to_dict(self, entries: int) -> Dict[str, Any]:
        """Convert to dictionary for JSON response."""
        total_hits = self.memory_hits + self.persistent_hits
        total_requests = total_hits + self.misses
        hit_rate = (total_hits / total_requests * 100) if total_requests > 0 else 0
        return {
            "entries": entries,
            "memory_hits": self.memory_hits,
            "persistent_hits": self.persistent_hits,
            "misses": self.misses,
            "sets": self.sets,
            "invalidations": self.invalidations,
            "store_errors": self.store_errors,
            "swept": self.swept,
            "last_sweep_at": self.last_sweep_at,
            "hit_rate_percent": round(hit_rate, 1),
        }

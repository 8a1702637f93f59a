"""
Default TTL configuration by key namespace.
"""
from typing import Dict, Optional

from config.settings import settings


# TTL by namespace (first ":"-separated segment of the key), in seconds
TTL_CONFIG: Dict[str, int] = {
    "employees": 300,          # Staff lists change rarely during a day
    "branches": 3600,          # Branch metadata
    "organization": 3600,      # Organization settings
    "clients": 60,             # Client cards, edited often
    "call-stats": 120,         # Aggregated call statistics
    "schedule": 600,           # Lesson schedules
}


def get_namespace(key: str) -> str:
    """Return the namespace segment of a cache key."""
    return key.split(":", 1)[0]


def get_ttl_for_key(key: str, default: Optional[int] = None) -> int:
    """
    Get the default TTL for a cache key.

    Args:
        key: Cache key, e.g. "employees:list:abc"
        default: Fallback when the namespace has no entry
                 (settings.cache_default_ttl if omitted)

    Returns:
        TTL in seconds
    """
    ttl = TTL_CONFIG.get(get_namespace(key))
    if ttl is not None:
        return ttl
    return default if default is not None else settings.cache_default_ttl

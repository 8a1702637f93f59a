"""Cache key helpers."""
import hashlib
import json
from typing import Any, Dict, Optional


def hash_key(obj: Any) -> str:
    """
    Deterministic short digest of a JSON-serializable object.

    Dict ordering does not affect the result. Collisions are possible;
    callers are expected to namespace keys with make_key().
    """
    payload = json.dumps(obj, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.blake2b(payload.encode("utf-8"), digest_size=8).hexdigest()


def make_key(namespace: str, *parts: Any, params: Optional[Dict[str, Any]] = None) -> str:
    """
    Build a namespaced cache key.

    Example:
        make_key("employees", "list", params={"branch": 3})
        -> "employees:list:1f0c..."
    """
    segments = [namespace] + [str(p) for p in parts]
    if params:
        # None values are dropped, as with query strings
        segments.append(hash_key({k: v for k, v in params.items() if v is not None}))
    return ":".join(segments)

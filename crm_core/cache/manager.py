"""
Two-tier cache for server-side handlers: in-process memory backed by an
optional persistent store.
"""
import threading
import logging
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from typing import Dict, Optional, Callable, Any

from config.settings import settings
from .core import CacheEntry, CacheStats
from .single_flight import SingleFlightGroup
from .store import PersistentStore
from .ttl_policies import get_ttl_for_key

logger = logging.getLogger("cache.manager")


class TieredCache:
    """
    Read-through / write-through cache with:
    - Memory tier checked first, no I/O
    - Persistent tier consulted on memory miss, repopulating memory on hit
    - Persistent failures and timeouts logged and absorbed (memory-only fallback)
    - Lazy sweep of expired memory entries, piggy-backed on get/set
    - Optional per-key single-flight for get_or_set

    Memory is always written before the persistent tier, so a memory entry is
    never older than its persisted counterpart.
    """

    def __init__(
        self,
        store: Optional[PersistentStore] = None,
        default_ttl: Optional[int] = None,
        sweep_interval: Optional[float] = None,
        store_timeout: Optional[float] = None,
        single_flight: Optional[bool] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the cache.

        Args:
            store: Persistent tier; None for memory-only
            default_ttl: TTL used when neither caller nor namespace table gives one
            sweep_interval: Minimum seconds between expired-entry sweeps
            store_timeout: Max seconds to wait on any persistent-tier call
            single_flight: Share one factory call among concurrent cold-key callers
            clock: Time source (epoch seconds)
        """
        self._memory: Dict[str, CacheEntry] = {}
        self._lock = threading.RLock()
        self._store = store
        self._clock = clock
        self._default_ttl = default_ttl if default_ttl is not None else settings.cache_default_ttl
        self._sweep_interval = (
            sweep_interval if sweep_interval is not None else settings.cache_sweep_interval
        )
        self._store_timeout = (
            store_timeout if store_timeout is not None else settings.cache_store_timeout
        )
        if single_flight is None:
            single_flight = settings.cache_single_flight
        self._single_flight = SingleFlightGroup() if single_flight else None

        self._executor = (
            ThreadPoolExecutor(max_workers=2, thread_name_prefix="cache-store")
            if store is not None
            else None
        )
        self._last_sweep = clock()
        self._stats = CacheStats()

    # =========================================================================
    # Public API
    # =========================================================================

    def get(self, key: str, default: Any = None) -> Any:
        """Return the live cached value for key, or default."""
        entry = self._lookup(key)
        return entry.value if entry is not None else default

    def set(
        self,
        key: str,
        value: Any,
        ttl_seconds: Optional[float] = None,
        persist: bool = True,
    ) -> None:
        """
        Store value under key for ttl_seconds.

        The memory tier is always written. The persistent tier is written only
        when persist is True, and a failure there is logged, not raised.
        """
        if ttl_seconds is None:
            ttl_seconds = get_ttl_for_key(key, self._default_ttl)
        now = self._clock()
        self._maybe_sweep(now)

        expires_at = now + ttl_seconds
        with self._lock:
            self._memory[key] = CacheEntry(key=key, value=value, expires_at=expires_at)
            self._stats.sets += 1

        if persist and self._store is not None:
            self._call_store("upsert", self._store.upsert, key, value, expires_at)

    def get_or_set(
        self,
        key: str,
        factory: Callable[[], Any],
        ttl_seconds: Optional[float] = None,
        persist: bool = True,
    ) -> Any:
        """
        Return the cached value, or compute it with factory and cache it.

        Without single-flight, concurrent callers racing on a cold key may each
        run factory. Exceptions from factory propagate and nothing is cached.
        """
        entry = self._lookup(key)
        if entry is not None:
            return entry.value

        if self._single_flight is None:
            return self._fill(key, factory, ttl_seconds, persist)

        def fill_once():
            # A caller arriving just after the leader finished finds the value here
            with self._lock:
                current = self._memory.get(key)
                if current is not None and current.is_live(self._clock()):
                    return current.value
            return self._fill(key, factory, ttl_seconds, persist)

        return self._single_flight.fill(key, fill_once)

    def invalidate(self, key: str) -> bool:
        """
        Remove key from both tiers.

        Returns:
            True if the key was present in memory
        """
        with self._lock:
            removed = self._memory.pop(key, None) is not None
            self._stats.invalidations += 1
        if self._store is not None:
            self._call_store("delete", self._store.delete, key)
        logger.debug(f"Invalidated cache: {key}")
        return removed

    def invalidate_pattern(self, prefix: str) -> int:
        """
        Remove every key starting with prefix from both tiers.

        Returns:
            Number of memory entries removed
        """
        with self._lock:
            to_delete = [k for k in self._memory if k.startswith(prefix)]
            for key in to_delete:
                del self._memory[key]
            self._stats.invalidations += len(to_delete)
        if self._store is not None:
            self._call_store("delete_by_prefix", self._store.delete_by_prefix, prefix)
        logger.info(f"Invalidated {len(to_delete)} entries matching '{prefix}*'")
        return len(to_delete)

    def clear(self) -> int:
        """
        Empty the memory tier. The persistent tier is left alone.

        Returns:
            Number of entries cleared
        """
        with self._lock:
            count = len(self._memory)
            self._memory.clear()
        logger.info(f"Cleared {count} memory cache entries")
        return count

    def stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        with self._lock:
            result = self._stats.to_dict(entries=len(self._memory))
        result["persistent_tier"] = self._store is not None
        result["single_flight"] = self._single_flight is not None
        result["in_flight"] = self._single_flight.active if self._single_flight else 0
        return result

    def close(self) -> None:
        """Release the persistent-tier worker pool."""
        if self._executor is not None:
            self._executor.shutdown(wait=False)

    def __enter__(self) -> "TieredCache":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # =========================================================================
    # Internals
    # =========================================================================

    def _lookup(self, key: str) -> Optional[CacheEntry]:
        now = self._clock()
        self._maybe_sweep(now)

        with self._lock:
            entry = self._memory.get(key)
            if entry is not None:
                if entry.is_live(now):
                    self._stats.memory_hits += 1
                    logger.debug(f"CACHE HIT (memory): {key}")
                    return entry
                del self._memory[key]

        stored = None
        if self._store is not None:
            stored = self._call_store("get", self._store.get, key)

        if stored is not None and stored.expires_at > now:
            with self._lock:
                current = self._memory.get(key)
                if current is not None and current.is_live(now):
                    # A concurrent set landed while we were reading the store
                    self._stats.memory_hits += 1
                    return current
                entry = CacheEntry(key=key, value=stored.value, expires_at=stored.expires_at)
                self._memory[key] = entry
                self._stats.persistent_hits += 1
            logger.debug(f"CACHE HIT (persistent): {key}")
            return entry

        with self._lock:
            self._stats.misses += 1
        logger.debug(f"CACHE MISS: {key}")
        return None

    def _fill(
        self,
        key: str,
        factory: Callable[[], Any],
        ttl_seconds: Optional[float],
        persist: bool,
    ) -> Any:
        value = factory()
        self.set(key, value, ttl_seconds, persist=persist)
        return value

    def _call_store(self, operation: str, fn: Callable[..., Any], *args: Any) -> Any:
        """Run a persistent-tier call with a bounded wait. Returns None on failure."""
        try:
            future = self._executor.submit(fn, *args)
            return future.result(timeout=self._store_timeout)
        except FutureTimeout:
            logger.warning(
                f"Persistent {operation} timed out after {self._store_timeout}s "
                f"(args={args[:1]}); continuing memory-only"
            )
        except Exception as e:
            logger.warning(f"Persistent {operation} failed (args={args[:1]}): {e}")
        with self._lock:
            self._stats.store_errors += 1
        return None

    def _maybe_sweep(self, now: float) -> None:
        """Drop expired memory entries, at most once per sweep interval."""
        with self._lock:
            if now - self._last_sweep < self._sweep_interval:
                return
            self._last_sweep = now
            expired = [k for k, e in self._memory.items() if not e.is_live(now)]
            for key in expired:
                del self._memory[key]
            self._stats.swept += len(expired)
            self._stats.last_sweep_at = now
        if expired:
            logger.debug(f"Swept {len(expired)} expired memory entries")

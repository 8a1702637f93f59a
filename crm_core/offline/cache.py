"""
Paginated, persisted, offline-capable cache over an append-only list query.

Typical use is one instance per open call-history view:

    view = PagedOfflineCache("client:42", fetch, store, connectivity)
    with view:                      # mount: restore snapshot, subscribe, refresh
        view.fetch_next_page()      # infinite scroll
        view.items, view.is_offline_data, view.error
"""
import logging
import threading
from typing import Any, Callable, List, Optional, Tuple

from config.settings import settings
from crm_core.errors import FetchError, OfflineError, StorageQuotaExceeded
from crm_core.timers import Scheduler, ScopedTimer, ThreadingScheduler
from .connectivity import ConnectivityMonitor
from .models import Page, PersistedPageSnapshot
from .storage import KeyValueStore

logger = logging.getLogger("offline.cache")

FetchPage = Callable[[int], Any]


class PagedOfflineCache:
    """
    Page list for one owner, mirrored to a shared durable store.

    - Snapshot restored on mount when younger than the TTL (stale ones are purged)
    - Pages fetched only while online; offset 0 replaces the whole list
    - Full page list persisted after every successful fetch
    - Owner budget and quota eviction on write, oldest snapshots first
    - Reconnect triggers one debounced refetch; flapping reschedules it
    - Fetch errors are kept in `error` and never clear displayed pages
    """

    def __init__(
        self,
        owner_key: str,
        fetch: FetchPage,
        store: KeyValueStore,
        connectivity: ConnectivityMonitor,
        ttl_seconds: Optional[float] = None,
        max_owners: Optional[int] = None,
        reconnect_debounce: Optional[float] = None,
        key_prefix: Optional[str] = None,
        scheduler: Optional[Scheduler] = None,
        on_change: Optional[Callable[["PagedOfflineCache"], None]] = None,
    ):
        self.owner_key = owner_key
        self._fetch = fetch
        self._store = store
        self._connectivity = connectivity
        self._ttl = ttl_seconds if ttl_seconds is not None else settings.offline_ttl_seconds
        self._max_owners = max_owners if max_owners is not None else settings.offline_max_owners
        self._debounce = (
            reconnect_debounce
            if reconnect_debounce is not None
            else settings.offline_reconnect_debounce
        )
        self._prefix = key_prefix if key_prefix is not None else settings.offline_key_prefix
        self._scheduler = scheduler or ThreadingScheduler()
        self._reconnect_timer = ScopedTimer(self._scheduler, name=f"reconnect:{owner_key}")
        self._on_change = on_change

        self._lock = threading.RLock()
        self._pages: List[Page] = []
        self._is_offline_data = False
        self._error: Optional[Exception] = None
        self._last_error_at: Optional[float] = None
        self._fetching = False
        self._refresh_pending = False
        # Bumped by clear_all(); fetches started under an older value are discarded
        self._generation = 0
        self._unsubscribe: Optional[Callable[[], None]] = None

    # =========================================================================
    # View state
    # =========================================================================

    @property
    def storage_key(self) -> str:
        return f"{self._prefix}{self.owner_key}"

    @property
    def current_pages(self) -> List[Page]:
        with self._lock:
            return list(self._pages)

    @property
    def items(self) -> List[Any]:
        """All loaded items, in page order."""
        with self._lock:
            return [item for page in self._pages for item in page.items]

    @property
    def total(self) -> int:
        with self._lock:
            return self._pages[-1].total if self._pages else 0

    @property
    def has_next_page(self) -> bool:
        with self._lock:
            return not self._pages or self._pages[-1].next_offset is not None

    @property
    def is_offline_data(self) -> bool:
        """True while the rendered pages came from the persisted snapshot."""
        with self._lock:
            return self._is_offline_data

    @property
    def error(self) -> Optional[Exception]:
        with self._lock:
            return self._error

    @property
    def last_error_at(self) -> Optional[float]:
        with self._lock:
            return self._last_error_at

    @property
    def is_fetching(self) -> bool:
        with self._lock:
            return self._fetching

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def mount(self) -> "PagedOfflineCache":
        """Restore the snapshot, start listening for connectivity, refresh if online."""
        self.load()
        if self._unsubscribe is None:
            self._unsubscribe = self._connectivity.subscribe(self._on_connectivity)
        if self._connectivity.is_online:
            self.refresh()
        return self

    def unmount(self) -> None:
        """Stop listening and cancel any pending reconciliation."""
        with self._lock:
            self._refresh_pending = False
        try:
            if self._unsubscribe is not None:
                self._unsubscribe()
                self._unsubscribe = None
        finally:
            self._reconnect_timer.cancel()

    def __enter__(self) -> "PagedOfflineCache":
        return self.mount()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.unmount()

    # =========================================================================
    # Operations
    # =========================================================================

    def load(self) -> bool:
        """
        Pre-populate the view from the persisted snapshot.

        Returns:
            True if a snapshot within the TTL was restored
        """
        snapshot = self._read_snapshot()
        if snapshot is None:
            return False
        with self._lock:
            self._pages = snapshot.pages
            self._is_offline_data = True
        logger.info(
            f"Restored {len(snapshot.pages)} cached pages for {self.owner_key} "
            f"(age={snapshot.age_seconds(self._scheduler.now()):.0f}s)"
        )
        self._notify()
        return True

    def fetch_next_page(self) -> bool:
        """
        Fetch and append the next page.

        Returns:
            True if a page was fetched. False when offline, already fetching,
            exhausted, cleared while fetching, or the fetch failed (see `error`).
        """
        if not self._connectivity.is_online:
            logger.debug(f"Offline, not fetching next page for {self.owner_key}")
            return False

        with self._lock:
            if self._fetching:
                return False
            if self._pages:
                offset = self._pages[-1].next_offset
                if offset is None:
                    return False
            else:
                offset = 0
            self._fetching = True
            generation = self._generation

        try:
            return self._fetch_page_at(offset, generation)
        finally:
            self._run_pending_refresh()

    def _fetch_page_at(self, offset: int, generation: int) -> bool:
        try:
            page = Page.from_response(self._fetch(offset))
        except Exception as e:
            with self._lock:
                self._fetching = False
                stale = generation != self._generation
            if not stale:
                self._record_failure(e)
            return False

        with self._lock:
            self._fetching = False
            if generation != self._generation:
                logger.info(f"Discarding page at offset {offset} for {self.owner_key}: cache was cleared")
                return False
            if offset == 0:
                self._pages = [page]
                self._is_offline_data = False
            else:
                self._pages.append(page)
            self._error = None

        logger.debug(f"Fetched page at offset {offset} for {self.owner_key} ({len(page.items)} items)")
        self._persist(generation)
        self._notify()
        return True

    def refresh(self, defer_if_busy: bool = False) -> bool:
        """
        Invalidate and refetch from offset 0.

        Refetches as many pages as are currently loaded (at least one) and
        swaps the list in only once all of them succeeded.

        Args:
            defer_if_busy: If another fetch is running, run this refresh as
                soon as it finishes instead of dropping it

        Returns:
            True if the pages were refetched now
        """
        if not self._connectivity.is_online:
            return False

        with self._lock:
            if self._fetching:
                if defer_if_busy:
                    self._refresh_pending = True
                    logger.debug(f"Fetch in progress for {self.owner_key}, refresh deferred")
                return False
            self._fetching = True
            self._refresh_pending = False
            target = max(1, len(self._pages))
            generation = self._generation

        try:
            return self._refetch_pages(target, generation)
        finally:
            self._run_pending_refresh()

    def _refetch_pages(self, target: int, generation: int) -> bool:
        new_pages: List[Page] = []
        offset: Optional[int] = 0
        try:
            while offset is not None and len(new_pages) < target:
                page = Page.from_response(self._fetch(offset))
                new_pages.append(page)
                offset = page.next_offset
        except Exception as e:
            with self._lock:
                self._fetching = False
                stale = generation != self._generation
            if not stale:
                self._record_failure(e)
            return False

        with self._lock:
            self._fetching = False
            if generation != self._generation:
                logger.info(f"Discarding refresh for {self.owner_key}: cache was cleared")
                return False
            self._pages = new_pages
            self._is_offline_data = False
            self._error = None

        logger.info(f"Refreshed {len(new_pages)} pages for {self.owner_key}")
        self._persist(generation)
        self._notify()
        return True

    def invalidate(self) -> bool:
        """Drop freshness and refetch if online; offline, the next reconnect refetches."""
        return self.refresh(defer_if_busy=True)

    def sync_now(self) -> bool:
        """
        User-requested refetch.

        Returns:
            True if refetched now; False if it failed, or if a fetch was
            running, in which case the refetch follows right after it

        Raises:
            OfflineError: If the device is offline
        """
        if not self._connectivity.is_online:
            raise OfflineError(f"Cannot sync {self.owner_key} while offline")
        self._reconnect_timer.cancel()
        return self.refresh(defer_if_busy=True)

    def clear_all(self) -> int:
        """
        Delete every persisted snapshot under this cache's prefix (all owners)
        and reset this view.

        A pending reconnect refresh is cancelled, and a fetch already in
        flight is discarded when it returns.

        Returns:
            Number of snapshots deleted
        """
        self._reconnect_timer.cancel()
        with self._lock:
            self._generation += 1
            self._refresh_pending = False
            self._pages = []
            self._is_offline_data = False
            self._error = None
            keys = self._store.keys(self._prefix)
            for key in keys:
                self._store.delete(key)
        logger.info(f"Cleared {len(keys)} offline snapshots")
        self._notify()
        return len(keys)

    # =========================================================================
    # Internals
    # =========================================================================

    def _on_connectivity(self, online: bool) -> None:
        if online:
            self._reconnect_timer.schedule(self._debounce, self._reconcile)
        else:
            self._reconnect_timer.cancel()

    def _reconcile(self) -> None:
        logger.info(f"Reconnected, reconciling {self.owner_key}")
        self.refresh(defer_if_busy=True)

    def _run_pending_refresh(self) -> None:
        with self._lock:
            if not self._refresh_pending or self._fetching:
                return
            self._refresh_pending = False
        if self._connectivity.is_online:
            self.refresh(defer_if_busy=True)
        else:
            # The next online event schedules a reconcile
            logger.debug(f"Offline, dropping deferred refresh for {self.owner_key}")

    def _record_failure(self, error: Exception) -> None:
        logger.warning(f"Live fetch failed for {self.owner_key}: {error}")
        with self._lock:
            self._error = error
            self._last_error_at = self._scheduler.now()
            needs_fallback = not self._pages
        if needs_fallback:
            self.load()
        self._notify()

    def _read_snapshot(self) -> Optional[PersistedPageSnapshot]:
        key = self.storage_key
        try:
            raw = self._store.get(key)
        except Exception as e:
            logger.warning(f"Snapshot read failed for {self.owner_key}: {e}")
            return None
        if raw is None:
            return None

        try:
            snapshot = PersistedPageSnapshot.from_dict(raw)
        except (KeyError, TypeError, ValueError, FetchError) as e:
            logger.warning(f"Discarding unreadable snapshot for {self.owner_key}: {e}")
            self._safe_delete(key)
            return None

        if snapshot.age_seconds(self._scheduler.now()) > self._ttl:
            logger.info(f"Snapshot for {self.owner_key} older than TTL, purging")
            self._safe_delete(key)
            return None
        return snapshot

    def _persist(self, generation: int) -> None:
        # Held across the write so clear_all() cannot interleave with it
        with self._lock:
            if generation != self._generation or self._fetching or not self._pages:
                return
            captured_at = self._scheduler.now()
            snapshot = PersistedPageSnapshot(
                owner_key=self.owner_key,
                pages=list(self._pages),
                captured_at=captured_at,
            )
            data = snapshot.to_dict()

            try:
                self._evict_over_budget()
                self._store.put(self.storage_key, data, stamp=captured_at)
                return
            except StorageQuotaExceeded as e:
                logger.warning(f"{e}; evicting oldest half of offline snapshots")
            except Exception as e:
                logger.warning(f"Snapshot write failed for {self.owner_key}: {e}")
                return

            try:
                self._evict_oldest_half()
                self._store.put(self.storage_key, data, stamp=captured_at)
            except Exception as e:
                logger.warning(f"Dropping snapshot write for {self.owner_key} after eviction: {e}")

    def _snapshot_ages(self) -> List[Tuple[str, float]]:
        """(key, captured_at) of every other owner's snapshot, oldest first."""
        ages = [
            # Entries written without a stamp go first
            (key, stamp if stamp is not None else 0.0)
            for key, stamp in self._store.stamps(self._prefix).items()
            if key != self.storage_key
        ]
        ages.sort(key=lambda pair: pair[1])
        return ages

    def _evict_over_budget(self) -> None:
        others = self._snapshot_ages()
        excess = len(others) + 1 - self._max_owners
        if excess <= 0:
            return
        for key, _ in others[:excess]:
            self._store.delete(key)
        logger.info(f"Evicted {min(excess, len(others))} offline snapshots over owner budget")

    def _evict_oldest_half(self) -> None:
        others = self._snapshot_ages()
        if not others:
            return
        count = max(1, len(others) // 2)
        for key, _ in others[:count]:
            self._store.delete(key)
        logger.info(f"Evicted {count} oldest offline snapshots after quota failure")

    def _safe_delete(self, key: str) -> None:
        try:
            self._store.delete(key)
        except Exception as e:
            logger.warning(f"Snapshot delete failed for {key}: {e}")

    def _notify(self) -> None:
        if self._on_change is None:
            return
        try:
            self._on_change(self)
        except Exception as e:
            logger.warning(f"on_change callback failed for {self.owner_key}: {e}")

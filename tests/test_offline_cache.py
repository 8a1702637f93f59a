"""
Unit tests for the paginated offline cache, its stores and the
connectivity monitor.
"""
import sqlite3
import tempfile
from pathlib import Path
from unittest.mock import patch, MagicMock

import pytest
import requests

from config.settings import settings
from crm_core.errors import FetchError, OfflineError, StorageQuotaExceeded
from crm_core.offline import (
    ConnectivityMonitor,
    MemoryKeyValueStore,
    PagedOfflineCache,
    SQLiteKeyValueStore,
)

DAY = 24 * 60 * 60


# =============================================================================
# Test Fixtures (Mock Data)
# =============================================================================

class FakeCallHistory:
    """Paginated call-history backend."""

    def __init__(self, total: int = 45, page_size: int = 10):
        self.records = [
            {"id": f"call-{i}", "status": "answered", "duration_seconds": 30 + i}
            for i in range(total)
        ]
        self.page_size = page_size
        self.offsets = []
        self.fail = False
        # Called with the offset while the request is "on the wire"
        self.during_fetch = None

    def __call__(self, offset):
        self.offsets.append(offset)
        if self.during_fetch is not None:
            self.during_fetch(offset)
        if self.fail:
            raise ConnectionError("backend down")
        items = self.records[offset:offset + self.page_size]
        next_offset = offset + len(items)
        return {
            "items": items,
            "next_offset": next_offset if next_offset < len(self.records) else None,
            "total": len(self.records),
        }


class QuotaLimitedStore(MemoryKeyValueStore):
    """Memory store that rejects the next `fail_puts` writes."""

    def __init__(self):
        super().__init__()
        self.fail_puts = 0

    def put(self, key, value, stamp=None):
        if self.fail_puts > 0:
            self.fail_puts -= 1
            raise StorageQuotaExceeded(needed=10_000, limit=5_000)
        super().put(key, value, stamp=stamp)


@pytest.fixture
def history():
    return FakeCallHistory()


@pytest.fixture
def store():
    return MemoryKeyValueStore()


@pytest.fixture
def online():
    return ConnectivityMonitor(online=True)


def make_view(owner, fetch, store, connectivity, scheduler, **kwargs):
    kwargs.setdefault("reconnect_debounce", 2.0)
    kwargs.setdefault("key_prefix", "call-history:")
    return PagedOfflineCache(
        owner, fetch, store, connectivity, scheduler=scheduler, **kwargs
    )


# =============================================================================
# Pagination and persistence
# =============================================================================

class TestPagination:

    def test_pages_round_trip_through_snapshot(self, history, store, online, scheduler):
        view = make_view("client:1", history, store, online, scheduler)
        view.mount()
        assert view.fetch_next_page()
        assert view.fetch_next_page()
        assert history.offsets == [0, 10, 20]
        live_items = view.items
        view.unmount()

        offline = ConnectivityMonitor(online=False)
        restarted = make_view("client:1", history, store, offline, scheduler)
        restarted.mount()

        assert restarted.items == live_items
        assert [len(p.items) for p in restarted.current_pages] == [10, 10, 10]
        assert restarted.is_offline_data is True
        assert history.offsets == [0, 10, 20]

    def test_next_page_stops_when_exhausted(self, online, store, scheduler):
        history = FakeCallHistory(total=15)
        view = make_view("client:2", history, store, online, scheduler)
        view.mount()
        assert view.fetch_next_page()
        assert view.has_next_page is False
        assert view.fetch_next_page() is False
        assert view.total == 15
        assert len(view.items) == 15

    def test_refresh_replaces_whole_sequence(self, history, store, online, scheduler):
        view = make_view("client:3", history, store, online, scheduler)
        view.mount()
        view.fetch_next_page()
        history.records[0] = {"id": "call-new", "status": "answered", "duration_seconds": 99}

        assert view.sync_now()
        assert view.items[0]["id"] == "call-new"
        assert len(view.current_pages) == 2
        assert history.offsets == [0, 10, 0, 10]

    def test_snapshot_written_after_each_fetch(self, history, store, online, scheduler):
        view = make_view("client:4", history, store, online, scheduler)
        view.mount()
        assert len(store.get("call-history:client:4")["pages"]) == 1
        scheduler.advance(5)
        view.fetch_next_page()
        snapshot = store.get("call-history:client:4")
        assert len(snapshot["pages"]) == 2
        assert snapshot["captured_at"] == scheduler.now()

    def test_on_change_notified(self, history, store, online, scheduler):
        seen = []
        view = make_view("client:5", history, store, online, scheduler, on_change=lambda v: seen.append(len(v.items)))
        view.mount()
        view.fetch_next_page()
        assert seen == [10, 20]


class TestSnapshotTTL:

    def test_snapshot_within_ttl_is_loaded(self, history, store, online, scheduler):
        make_view("client:1", history, store, online, scheduler).mount()
        scheduler.advance(DAY)
        view = make_view("client:1", history, store, ConnectivityMonitor(online=False), scheduler)
        assert view.load() is True

    def test_stale_snapshot_is_purged(self, history, store, online, scheduler):
        make_view("client:1", history, store, online, scheduler).mount()
        scheduler.advance(DAY + 1)

        view = make_view("client:1", history, store, ConnectivityMonitor(online=False), scheduler)
        assert view.load() is False
        assert view.items == []
        assert store.get("call-history:client:1") is None

    def test_unreadable_snapshot_is_discarded(self, history, store, scheduler):
        store.put("call-history:client:1", {"garbage": True})
        view = make_view("client:1", history, store, ConnectivityMonitor(online=False), scheduler)
        assert view.load() is False
        assert store.get("call-history:client:1") is None


# =============================================================================
# Offline behaviour and errors
# =============================================================================

class TestOfflineAndErrors:

    def test_no_fetch_while_offline(self, history, store, scheduler):
        view = make_view("client:1", history, store, ConnectivityMonitor(online=False), scheduler)
        view.mount()
        assert view.fetch_next_page() is False
        assert history.offsets == []

    def test_sync_now_fails_fast_offline(self, history, store, scheduler):
        view = make_view("client:1", history, store, ConnectivityMonitor(online=False), scheduler)
        with pytest.raises(OfflineError):
            view.sync_now()
        assert history.offsets == []

    def test_error_keeps_displayed_pages(self, history, store, online, scheduler):
        view = make_view("client:1", history, store, online, scheduler)
        view.mount()
        history.fail = True

        assert view.fetch_next_page() is False
        assert isinstance(view.error, ConnectionError)
        assert view.last_error_at == scheduler.now()
        assert len(view.items) == 10
        assert view.is_offline_data is False

        history.fail = False
        assert view.fetch_next_page()
        assert view.error is None

    def test_unusable_response_is_a_fetch_error(self, store, online, scheduler):
        view = make_view("client:1", lambda offset: None, store, online, scheduler)
        assert view.fetch_next_page() is False
        assert isinstance(view.error, FetchError)
        assert view.items == []

    def test_failed_fetch_falls_back_to_snapshot(self, history, store, online, scheduler):
        make_view("client:1", history, store, online, scheduler).mount()
        history.fail = True

        view = make_view("client:1", history, store, online, scheduler)
        assert view.fetch_next_page() is False
        assert view.is_offline_data is True
        assert len(view.items) == 10
        assert view.error is not None

    def test_failed_refresh_keeps_snapshot_pages(self, history, store, online, scheduler):
        make_view("client:1", history, store, online, scheduler).mount()
        history.fail = True

        view = make_view("client:1", history, store, online, scheduler)
        view.mount()
        assert view.is_offline_data is True
        assert len(view.items) == 10
        assert view.sync_now() is False


# =============================================================================
# Reconnect reconciliation
# =============================================================================

class TestReconnect:

    def test_reconnect_triggers_single_debounced_refresh(self, history, store, scheduler):
        connectivity = ConnectivityMonitor(online=False)
        view = make_view("client:1", history, store, connectivity, scheduler)
        view.mount()

        connectivity.set_online(True)
        scheduler.advance(1.0)
        assert history.offsets == []
        scheduler.advance(1.0)
        assert history.offsets == [0]
        assert view.is_offline_data is False

    def test_flapping_coalesces(self, history, store, scheduler):
        connectivity = ConnectivityMonitor(online=False)
        view = make_view("client:1", history, store, connectivity, scheduler)
        view.mount()

        connectivity.set_online(True)
        scheduler.advance(1.0)
        connectivity.set_online(False)
        scheduler.advance(0.5)
        connectivity.set_online(True)
        scheduler.advance(1.5)
        connectivity.set_online(False)
        connectivity.set_online(True)
        scheduler.advance(10)

        assert history.offsets == [0]
        assert scheduler.pending == 0

    def test_unmount_cancels_pending_reconcile(self, history, store, scheduler):
        connectivity = ConnectivityMonitor(online=False)
        view = make_view("client:1", history, store, connectivity, scheduler)
        with view:
            connectivity.set_online(True)
        scheduler.advance(10)
        assert history.offsets == []

    def test_reconcile_during_fetch_runs_after_it(self, history, store, online, scheduler):
        view = make_view("client:1", history, store, online, scheduler)
        view.mount()
        seen_fetching = []

        def flap(offset):
            if offset == 10 and not seen_fetching:
                seen_fetching.append(view.is_fetching)
                online.set_online(False)
                online.set_online(True)
                scheduler.advance(2.0)

        history.during_fetch = flap
        assert view.fetch_next_page()
        history.during_fetch = None

        assert seen_fetching == [True]
        # The reconcile refetched both loaded pages from offset 0
        assert history.offsets == [0, 10, 0, 10]
        scheduler.advance(10)
        assert history.offsets == [0, 10, 0, 10]
        assert view.is_fetching is False

    def test_sync_now_during_fetch_is_deferred(self, history, store, online, scheduler):
        view = make_view("client:1", history, store, online, scheduler)
        view.mount()
        results = []

        def sync(offset):
            if offset == 10 and not results:
                results.append(view.sync_now())

        history.during_fetch = sync
        view.fetch_next_page()
        history.during_fetch = None

        assert results == [False]
        assert history.offsets == [0, 10, 0, 10]

    def test_deferred_refresh_dropped_when_offline(self, history, store, online, scheduler):
        view = make_view("client:1", history, store, online, scheduler)
        view.mount()

        def go_offline(offset):
            assert view.invalidate() is False
            online.set_online(False)

        history.during_fetch = go_offline
        view.fetch_next_page()
        history.during_fetch = None

        assert history.offsets == [0, 10]


# =============================================================================
# Storage budget
# =============================================================================

class TestEviction:

    def test_owner_budget_evicts_oldest(self, history, store, online, scheduler):
        for owner in ("a", "b", "c"):
            make_view(owner, history, store, online, scheduler, max_owners=2).mount()
            scheduler.advance(60)

        assert sorted(store.keys("call-history:")) == ["call-history:b", "call-history:c"]

    def test_quota_failure_evicts_oldest_half_and_retries(self, history, online, scheduler):
        store = QuotaLimitedStore()
        for owner in ("o1", "o2", "o3", "o4"):
            make_view(owner, history, store, online, scheduler).mount()
            scheduler.advance(60)

        store.fail_puts = 1
        make_view("o5", history, store, online, scheduler).mount()

        assert sorted(store.keys("call-history:")) == [
            "call-history:o3", "call-history:o4", "call-history:o5",
        ]

    def test_write_dropped_when_retry_fails(self, history, online, scheduler):
        store = QuotaLimitedStore()
        make_view("o1", history, store, online, scheduler).mount()
        scheduler.advance(60)

        store.fail_puts = 2
        view = make_view("o2", history, store, online, scheduler)
        view.mount()

        assert len(view.items) == 10
        assert store.get("call-history:o2") is None

    def test_clear_all_purges_every_owner(self, history, store, online, scheduler):
        store.put("settings:theme", "dark")
        views = [make_view(o, history, store, online, scheduler) for o in ("a", "b")]
        for view in views:
            view.mount()

        assert views[0].clear_all() == 2
        assert store.keys("call-history:") == []
        assert store.get("settings:theme") == "dark"
        assert views[0].items == []

    def test_clear_all_cancels_pending_reconcile(self, history, store, online, scheduler):
        view = make_view("client:1", history, store, online, scheduler)
        view.mount()
        online.set_online(False)
        online.set_online(True)

        assert view.clear_all() == 1
        scheduler.advance(2.0)

        assert store.keys("call-history:") == []
        assert history.offsets == [0]
        assert scheduler.pending == 0

    def test_fetch_in_flight_during_clear_is_discarded(self, history, store, online, scheduler):
        view = make_view("client:1", history, store, online, scheduler)
        view.mount()

        def logout(offset):
            if offset == 10:
                view.clear_all()

        history.during_fetch = logout
        assert view.fetch_next_page() is False
        history.during_fetch = None

        assert store.keys("call-history:") == []
        assert view.items == []

        assert view.fetch_next_page()
        assert history.offsets[-1] == 0
        assert store.keys("call-history:") == ["call-history:client:1"]

    def test_budget_uses_stamps_not_snapshot_bodies(self, history, online, scheduler):
        store = MemoryKeyValueStore()
        for owner in ("a", "b"):
            make_view(owner, history, store, online, scheduler, max_owners=2).mount()
            scheduler.advance(60)

        with patch.object(store, "get", wraps=store.get) as get:
            assert make_view("c", history, store, online, scheduler, max_owners=2).fetch_next_page()
        get.assert_not_called()

        assert sorted(store.keys("call-history:")) == ["call-history:b", "call-history:c"]

    def test_rewritten_snapshot_counts_as_newest(self, history, store, online, scheduler):
        for owner in ("a", "b", "a"):
            make_view(owner, history, store, online, scheduler, max_owners=2).mount()
            scheduler.advance(60)

        make_view("c", history, store, online, scheduler, max_owners=2).mount()

        assert sorted(store.keys("call-history:")) == ["call-history:a", "call-history:c"]


# =============================================================================
# Stores and connectivity
# =============================================================================

class TestKeyValueStores:

    @pytest.fixture(params=["memory", "sqlite"])
    def kv(self, request):
        if request.param == "memory":
            yield MemoryKeyValueStore(max_bytes=200)
        else:
            with tempfile.TemporaryDirectory() as tmpdir:
                yield SQLiteKeyValueStore(Path(tmpdir) / "offline.db", max_bytes=200)

    def test_put_get_delete(self, kv):
        kv.put("call-history:1", {"pages": [1, 2]})
        assert kv.get("call-history:1") == {"pages": [1, 2]}
        kv.delete("call-history:1")
        assert kv.get("call-history:1") is None

    def test_keys_by_prefix(self, kv):
        kv.put("call-history:1", 1)
        kv.put("call-history:2", 2)
        kv.put("other", 3)
        assert sorted(kv.keys("call-history:")) == ["call-history:1", "call-history:2"]
        assert len(kv.keys()) == 3

    def test_quota_rejects_oversized_write(self, kv):
        with pytest.raises(StorageQuotaExceeded):
            kv.put("big", "x" * 500)
        assert kv.get("big") is None

    def test_overwrite_does_not_double_count(self, kv):
        kv.put("k", "x" * 150)
        kv.put("k", "y" * 150)
        assert kv.get("k") == "y" * 150
        assert kv.usage() < 200

    def test_stamps_by_prefix(self, kv):
        kv.put("call-history:1", 1, stamp=100.0)
        kv.put("call-history:2", 2)
        kv.put("other", 3, stamp=5.0)
        assert kv.stamps("call-history:") == {"call-history:1": 100.0, "call-history:2": None}

        kv.put("call-history:1", 1, stamp=250.0)
        kv.delete("call-history:2")
        assert kv.stamps("call-history:") == {"call-history:1": 250.0}


class TestStoreDefaults:

    def test_memory_store_uses_configured_quota(self, monkeypatch):
        monkeypatch.setattr(settings, "offline_max_bytes", 200)
        kv = MemoryKeyValueStore()
        assert kv.max_bytes == 200
        with pytest.raises(StorageQuotaExceeded):
            kv.put("big", "x" * 500)

    def test_sqlite_store_uses_configured_path_and_quota(self, monkeypatch):
        with tempfile.TemporaryDirectory() as tmpdir:
            db_path = Path(tmpdir) / "nested" / "offline.db"
            monkeypatch.setattr(settings, "offline_db_path", db_path)
            monkeypatch.setattr(settings, "offline_max_bytes", 200)

            kv = SQLiteKeyValueStore()
            assert kv.db_path == db_path
            assert db_path.exists()
            with pytest.raises(StorageQuotaExceeded):
                kv.put("big", "x" * 500)

    def test_explicit_arguments_win(self, monkeypatch):
        monkeypatch.setattr(settings, "offline_max_bytes", 200)
        assert MemoryKeyValueStore(max_bytes=10_000).max_bytes == 10_000

    def test_sqlite_store_migrates_table_without_stamp(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            db_path = Path(tmpdir) / "offline.db"
            conn = sqlite3.connect(str(db_path))
            conn.execute(
                "CREATE TABLE kv_store (key TEXT PRIMARY KEY, value TEXT NOT NULL, "
                "size INTEGER NOT NULL, updated_at TEXT DEFAULT CURRENT_TIMESTAMP)"
            )
            conn.execute(
                "INSERT INTO kv_store (key, value, size) VALUES (?, ?, ?)",
                ("call-history:old", '{"pages":[]}', 12),
            )
            conn.commit()
            conn.close()

            kv = SQLiteKeyValueStore(db_path, max_bytes=None)
            kv.put("call-history:new", {"pages": []}, stamp=42.0)
            assert kv.stamps("call-history:") == {
                "call-history:new": 42.0,
                "call-history:old": None,
            }


class TestConnectivityMonitor:

    def test_listeners_fire_only_on_change(self):
        monitor = ConnectivityMonitor(online=True)
        events = []
        unsubscribe = monitor.subscribe(events.append)

        monitor.set_online(True)
        monitor.set_online(False)
        monitor.set_online(False)
        monitor.set_online(True)
        assert events == [False, True]

        unsubscribe()
        monitor.set_online(False)
        assert events == [False, True]

    def test_check_success_sets_online(self):
        monitor = ConnectivityMonitor(online=False)
        with patch("crm_core.offline.connectivity.requests.head", return_value=MagicMock(status_code=503)):
            assert monitor.check("http://crm.local/health") is True
        assert monitor.is_online is True

    def test_check_failure_sets_offline(self):
        monitor = ConnectivityMonitor(online=True)
        with patch(
            "crm_core.offline.connectivity.requests.head",
            side_effect=requests.ConnectionError("no route"),
        ):
            assert monitor.check("http://crm.local/health") is False
        assert monitor.is_online is False

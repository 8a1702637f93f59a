"""
Offline-capable paginated cache for list views such as call history.
"""
from .models import Page, PersistedPageSnapshot
from .storage import KeyValueStore, MemoryKeyValueStore, SQLiteKeyValueStore
from .connectivity import ConnectivityMonitor
from .cache import PagedOfflineCache

__all__ = [
    "Page",
    "PersistedPageSnapshot",
    "KeyValueStore",
    "MemoryKeyValueStore",
    "SQLiteKeyValueStore",
    "ConnectivityMonitor",
    "PagedOfflineCache",
]

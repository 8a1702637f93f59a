"""
Durable local key/value storage for offline snapshots.

Both stores enforce an optional byte quota and raise StorageQuotaExceeded
instead of writing past it, the way browser storage rejects writes. Each
key carries an optional numeric stamp (the snapshot's capture time) that
can be listed without decoding the stored values.
"""
import json
import sqlite3
import logging
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

from config.settings import settings
from crm_core.errors import StorageQuotaExceeded

logger = logging.getLogger("offline.storage")


class KeyValueStore(Protocol):
    """Point reads/writes/deletes plus prefix enumeration."""

    def get(self, key: str) -> Optional[Any]:
        ...

    def put(self, key: str, value: Any, stamp: Optional[float] = None) -> None:
        """Write value; raises StorageQuotaExceeded when the store is full."""
        ...

    def delete(self, key: str) -> None:
        ...

    def keys(self, prefix: str = "") -> List[str]:
        ...

    def stamps(self, prefix: str = "") -> Dict[str, Optional[float]]:
        """Stamp of every key under prefix (None where none was written)."""
        ...


def _encode(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), default=str)


class MemoryKeyValueStore:
    """In-process store, used when no on-disk location is configured."""

    def __init__(self, max_bytes: Optional[int] = None):
        """
        Args:
            max_bytes: Quota in bytes (defaults to settings.offline_max_bytes)
        """
        self.max_bytes = max_bytes if max_bytes is not None else settings.offline_max_bytes
        self._data: Dict[str, str] = {}
        self._stamps: Dict[str, Optional[float]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            raw = self._data.get(key)
        return json.loads(raw) if raw is not None else None

    def put(self, key: str, value: Any, stamp: Optional[float] = None) -> None:
        payload = _encode(value)
        with self._lock:
            if self.max_bytes is not None:
                used = sum(len(v.encode("utf-8")) for k, v in self._data.items() if k != key)
                needed = used + len(payload.encode("utf-8"))
                if needed > self.max_bytes:
                    raise StorageQuotaExceeded(needed, self.max_bytes)
            self._data[key] = payload
            self._stamps[key] = stamp

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)
            self._stamps.pop(key, None)

    def keys(self, prefix: str = "") -> List[str]:
        with self._lock:
            return [k for k in self._data if k.startswith(prefix)]

    def stamps(self, prefix: str = "") -> Dict[str, Optional[float]]:
        with self._lock:
            return {k: s for k, s in self._stamps.items() if k.startswith(prefix)}

    def usage(self) -> int:
        """Bytes currently stored."""
        with self._lock:
            return sum(len(v.encode("utf-8")) for v in self._data.values())


SCHEMA = """
CREATE TABLE IF NOT EXISTS kv_store (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    size INTEGER NOT NULL,
    stamp REAL,
    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
);
"""


class SQLiteKeyValueStore:
    """
    SQLite-backed store for offline snapshots.

    One row per key with the JSON payload, its byte size and its stamp, so
    the quota check and the eviction order are single queries.
    """

    def __init__(self, db_path: Optional[Path] = None, max_bytes: Optional[int] = None):
        """
        Args:
            db_path: Database file (defaults to settings.offline_db_path)
            max_bytes: Quota in bytes (defaults to settings.offline_max_bytes)
        """
        self.db_path = Path(db_path or settings.offline_db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.max_bytes = max_bytes if max_bytes is not None else settings.offline_max_bytes
        self._write_lock = threading.Lock()
        self._init_db()

    def _init_db(self):
        """Initialize database with schema."""
        with self._get_connection() as conn:
            conn.executescript(SCHEMA)
            # Run migrations for existing databases
            self._run_migrations(conn)
            conn.commit()

    def _run_migrations(self, conn: sqlite3.Connection):
        """Run any pending migrations."""
        cursor = conn.execute("PRAGMA table_info(kv_store)")
        columns = [row[1] for row in cursor.fetchall()]

        if "stamp" not in columns:
            try:
                conn.execute("ALTER TABLE kv_store ADD COLUMN stamp REAL")
                logger.info("Migrated kv_store table: added stamp column")
            except sqlite3.OperationalError:
                pass  # Column already exists

    @contextmanager
    def _get_connection(self):
        """Get a database connection."""
        conn = sqlite3.connect(str(self.db_path))
        try:
            yield conn
        finally:
            conn.close()

    def get(self, key: str) -> Optional[Any]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT value FROM kv_store WHERE key = ?", (key,)).fetchone()
        return json.loads(row[0]) if row else None

    def put(self, key: str, value: Any, stamp: Optional[float] = None) -> None:
        payload = _encode(value)
        size = len(payload.encode("utf-8"))
        with self._write_lock, self._get_connection() as conn:
            if self.max_bytes is not None:
                used = conn.execute(
                    "SELECT COALESCE(SUM(size), 0) FROM kv_store WHERE key != ?", (key,)
                ).fetchone()[0]
                if used + size > self.max_bytes:
                    raise StorageQuotaExceeded(used + size, self.max_bytes)
            conn.execute(
                """
                INSERT INTO kv_store (key, value, size, stamp, updated_at)
                VALUES (?, ?, ?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    size = excluded.size,
                    stamp = excluded.stamp,
                    updated_at = excluded.updated_at
                """,
                (key, payload, size, stamp),
            )
            conn.commit()

    def delete(self, key: str) -> None:
        with self._write_lock, self._get_connection() as conn:
            conn.execute("DELETE FROM kv_store WHERE key = ?", (key,))
            conn.commit()

    def keys(self, prefix: str = "") -> List[str]:
        return list(self.stamps(prefix))

    def stamps(self, prefix: str = "") -> Dict[str, Optional[float]]:
        with self._get_connection() as conn:
            rows = conn.execute("SELECT key, stamp FROM kv_store ORDER BY key").fetchall()
        # Prefix filtering in Python avoids LIKE wildcard escaping
        return {key: stamp for key, stamp in rows if key.startswith(prefix)}

    def usage(self) -> int:
        """Bytes currently stored."""
        with self._get_connection() as conn:
            return conn.execute("SELECT COALESCE(SUM(size), 0) FROM kv_store").fetchone()[0]

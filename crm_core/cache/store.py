"""
Persistent tier for TieredCache.

Any object implementing PersistentStore can back the cache; the default is
a SQLAlchemy table shared by all handler processes pointing at the same
database.
"""
import json
import logging
import time
from contextlib import contextmanager
from typing import Any, Callable, Iterator, Optional, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from crm_core.cache.core import StoredValue
from crm_core.errors import StoreUnavailable
from crm_core.db import init_db, make_engine, make_session_factory
from crm_core.models import CacheRecord

logger = logging.getLogger("cache.store")


class PersistentStore(Protocol):
    """Durable key/value store with per-key absolute expiry."""

    def get(self, key: str) -> Optional[StoredValue]:
        """Return the live value for key, or None if absent or expired."""
        ...

    def upsert(self, key: str, value: Any, expires_at: float) -> None:
        ...

    def delete(self, key: str) -> None:
        ...

    def delete_by_prefix(self, prefix: str) -> int:
        """Delete every key starting with prefix; returns rows removed."""
        ...


class SQLAlchemyCacheStore:
    """
    PersistentStore on the cache_entries table.

    Values must be JSON-serializable; anything json cannot encode natively
    is stored via str().
    """

    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        database_url: Optional[str] = None,
        clock: Callable[[], float] = time.time,
    ):
        if session_factory is None:
            engine = make_engine(database_url)
            init_db(engine)
            session_factory = make_session_factory(engine)
        self._session_factory = session_factory
        self._clock = clock

    @contextmanager
    def _session(self, operation: str) -> Iterator[Session]:
        """Session scope; database errors surface as StoreUnavailable."""
        db = self._session_factory()
        try:
            yield db
        except SQLAlchemyError as e:
            db.rollback()
            raise StoreUnavailable(f"cache_entries {operation} failed: {e}") from e
        finally:
            db.close()

    def get(self, key: str) -> Optional[StoredValue]:
        with self._session("get") as db:
            record = db.get(CacheRecord, key)
            if record is None:
                return None
            if record.expires_at <= self._clock():
                # Expired rows are removed on read
                db.delete(record)
                db.commit()
                logger.debug(f"Dropped expired row: {key}")
                return None
            return StoredValue(value=json.loads(record.value), expires_at=record.expires_at)

    def upsert(self, key: str, value: Any, expires_at: float) -> None:
        payload = json.dumps(value, default=str)
        with self._session("upsert") as db:
            db.merge(CacheRecord(key=key, value=payload, expires_at=expires_at))
            db.commit()

    def delete(self, key: str) -> None:
        with self._session("delete") as db:
            db.query(CacheRecord).filter(CacheRecord.key == key).delete(
                synchronize_session=False
            )
            db.commit()

    def delete_by_prefix(self, prefix: str) -> int:
        with self._session("delete_by_prefix") as db:
            count = (
                db.query(CacheRecord)
                .filter(CacheRecord.key.startswith(prefix, autoescape=True))
                .delete(synchronize_session=False)
            )
            db.commit()
            return count

    def purge_expired(self) -> int:
        """Delete all expired rows. Returns number removed."""
        with self._session("purge_expired") as db:
            count = (
                db.query(CacheRecord)
                .filter(CacheRecord.expires_at <= self._clock())
                .delete(synchronize_session=False)
            )
            db.commit()
        if count:
            logger.info(f"Purged {count} expired cache rows")
        return count

"""
Shared fixtures: a deterministic scheduler/clock and temporary stores.
"""
import tempfile
from pathlib import Path
from typing import Callable, List

import pytest

from crm_core.cache import SQLAlchemyCacheStore
from crm_core.db import init_db, make_engine, make_session_factory


class ManualHandle:
    """Timer handle for ManualScheduler."""

    def __init__(self, due: float, seq: int, fn: Callable[[], None]):
        self.due = due
        self.seq = seq
        self.fn = fn
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """
    Scheduler whose clock only moves when advance() is called.

    Callbacks due within the advanced window run in (due, schedule order),
    with the clock set to each callback's due time while it runs.
    """

    def __init__(self, start: float = 1_700_000_000.0):
        self._now = start
        self._seq = 0
        self._timers: List[ManualHandle] = []

    def now(self) -> float:
        return self._now

    def call_later(self, delay: float, fn: Callable[[], None]) -> ManualHandle:
        self._seq += 1
        handle = ManualHandle(self._now + max(0.0, delay), self._seq, fn)
        self._timers.append(handle)
        return handle

    def advance(self, seconds: float) -> None:
        target = self._now + seconds
        while True:
            due = [t for t in self._timers if not t.cancelled and t.due <= target]
            if not due:
                break
            handle = min(due, key=lambda t: (t.due, t.seq))
            self._timers.remove(handle)
            self._now = handle.due
            handle.fn()
        self._now = target

    @property
    def pending(self) -> int:
        return len([t for t in self._timers if not t.cancelled])


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def cache_store(scheduler):
    """SQLAlchemy cache store on a temporary SQLite file, sharing the manual clock."""
    with tempfile.TemporaryDirectory() as tmpdir:
        engine = make_engine(f"sqlite:///{Path(tmpdir) / 'test_cache.db'}")
        init_db(engine)
        yield SQLAlchemyCacheStore(make_session_factory(engine), clock=scheduler.now)
        engine.dispose()

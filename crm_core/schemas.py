"""
Pydantic schemas for the ops API request/response models
"""
from pydantic import BaseModel, model_validator
from typing import Any, List, Optional


# ===== CACHE SCHEMAS =====

class InvalidateRequest(BaseModel):
    """Invalidate one key or every key under a prefix"""
    key: Optional[str] = None
    prefix: Optional[str] = None

    @model_validator(mode="after")
    def exactly_one(self):
        if (self.key is None) == (self.prefix is None):
            raise ValueError("Provide exactly one of 'key' or 'prefix'")
        return self


class InvalidateResponse(BaseModel):
    """Number of memory entries removed"""
    removed: int


class CacheStatsResponse(BaseModel):
    """Cache counters"""
    entries: int
    memory_hits: int
    persistent_hits: int
    misses: int
    sets: int
    invalidations: int
    store_errors: int
    swept: int
    last_sweep_at: Optional[float] = None
    hit_rate_percent: float
    persistent_tier: bool
    single_flight: bool
    in_flight: int


# ===== WATCHDOG SCHEMAS =====

class WatchdogStatus(BaseModel):
    """Observable state of one poller"""
    name: str
    actor_id: Any
    state: str
    running: bool
    circuit_open: bool
    consecutive_errors: int
    open_until: Optional[float] = None
    watermark: str
    pending_id: Optional[Any] = None
    last_fired_id: Optional[Any] = None
    processed_count: int


class WatchdogList(BaseModel):
    """All registered pollers"""
    watchdogs: List[WatchdogStatus]


class TriggerResponse(BaseModel):
    """Result of a manual trigger"""
    entity_id: str
    fired: bool
    details: Optional[Any] = None

"""
Ops API for the caching and change-detection core.

Instances are created by the host and handed to create_app(); nothing here
is a module-level singleton. Run with:

    uvicorn crm_core.main:create_app --factory
"""
import logging
from typing import Dict, Optional

from fastapi import FastAPI, HTTPException, Request

from crm_core.cache import SQLAlchemyCacheStore, TieredCache
from crm_core.schemas import (
    CacheStatsResponse,
    InvalidateRequest,
    InvalidateResponse,
    TriggerResponse,
    WatchdogList,
    WatchdogStatus,
)
from crm_core.watchdog import WatchdogPoller

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("crm_core.api")

APP_VERSION = "0.1.0"
APP_NAME = "CRM Cache Core"


def create_app(
    cache: Optional[TieredCache] = None,
    pollers: Optional[Dict[str, WatchdogPoller]] = None,
) -> FastAPI:
    """
    Build the ops API around explicit cache and watchdog instances.

    With no cache given, a TieredCache over the configured database is created
    and closed on shutdown.
    """
    owns_cache = cache is None
    if cache is None:
        cache = TieredCache(store=SQLAlchemyCacheStore())

    app = FastAPI(
        title=APP_NAME,
        description="Cache statistics, invalidation and watchdog control",
        version=APP_VERSION,
    )
    app.state.cache = cache
    app.state.pollers = dict(pollers or {})

    @app.on_event("shutdown")
    def shutdown():
        logger.info(f"Shutting down: stopping {len(app.state.pollers)} watchdog(s)")
        for poller in app.state.pollers.values():
            poller.stop()
        if owns_cache:
            app.state.cache.close()

    @app.get("/health")
    def health():
        return {"status": "ok", "version": APP_VERSION}

    # ===== CACHE =====

    @app.get("/cache/stats", response_model=CacheStatsResponse)
    def cache_stats(request: Request):
        return request.app.state.cache.stats()

    @app.post("/cache/invalidate", response_model=InvalidateResponse)
    def cache_invalidate(body: InvalidateRequest, request: Request):
        cache: TieredCache = request.app.state.cache
        if body.key is not None:
            removed = 1 if cache.invalidate(body.key) else 0
        else:
            removed = cache.invalidate_pattern(body.prefix)
        logger.info(f"Invalidated {removed} entries (key={body.key!r}, prefix={body.prefix!r})")
        return InvalidateResponse(removed=removed)

    # ===== WATCHDOGS =====

    def _get_poller(request: Request, name: str) -> WatchdogPoller:
        poller = request.app.state.pollers.get(name)
        if poller is None:
            raise HTTPException(status_code=404, detail=f"Watchdog '{name}' not found")
        return poller

    @app.get("/watchdogs", response_model=WatchdogList)
    def list_watchdogs(request: Request):
        return WatchdogList(
            watchdogs=[WatchdogStatus(**p.status()) for p in request.app.state.pollers.values()]
        )

    @app.get("/watchdogs/{name}", response_model=WatchdogStatus)
    def get_watchdog(name: str, request: Request):
        return WatchdogStatus(**_get_poller(request, name).status())

    @app.post("/watchdogs/{name}/trigger/{entity_id}", response_model=TriggerResponse)
    def trigger_watchdog(name: str, entity_id: str, request: Request):
        poller = _get_poller(request, name)
        details = poller.trigger_manually(entity_id)
        return TriggerResponse(entity_id=entity_id, fired=details is not None, details=details)

    @app.post("/watchdogs/{name}/complete/{entity_id}")
    def complete_watchdog(name: str, entity_id: str, request: Request):
        _get_poller(request, name).complete(entity_id)
        return {"status": "ok", "entity_id": entity_id}

    return app

"""
Sleeper Cache - operations API for the adaptive caching subsystem.

Exposes health, metrics and manual maintenance actions over HTTP.
"""
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request

from sleeper_cache.cache import CacheError, CacheSystem, build_cache_system
from sleeper_cache.schemas import (
    ActionResult,
    CacheHealth,
    CacheMetrics,
    LeagueInvalidation,
    LeagueWarmRequest,
    WarmingOutcome,
    WarmRequest,
)
from config.settings import settings

logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))
logger = logging.getLogger("main")

# Version tracking
APP_VERSION = "v1.0.0"
APP_NAME = "Sleeper Cache"


def create_app(
    cache_system: Optional[CacheSystem] = None,
    start_background: bool = True,
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        cache_system: Pre-built cache components (built at startup if None)
        start_background: Start the periodic maintenance tasks on startup
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.cache_system is None:
            app.state.cache_system = build_cache_system(settings)
        if start_background:
            app.state.cache_system.start()
        try:
            yield
        finally:
            if start_background:
                app.state.cache_system.stop()

    application = FastAPI(
        title=APP_NAME,
        description="Adaptive tiered cache for Sleeper fantasy football data",
        version=APP_VERSION,
        lifespan=lifespan,
    )
    application.state.cache_system = cache_system
    _register_routes(application)
    return application


def get_cache_system(request: Request) -> CacheSystem:
    """FastAPI dependency: the running cache system."""
    cache_system = request.app.state.cache_system
    if cache_system is None:
        raise HTTPException(status_code=503, detail="Cache system not initialized")
    return cache_system


def _register_routes(app: FastAPI) -> None:

    @app.get("/health")
    def health_check(cache: CacheSystem = Depends(get_cache_system)):
        """Liveness plus the cache health verdict."""
        return {"status": "ok", "cache": cache.manager.get_health_status().status}

    @app.get("/version")
    def version_info():
        """Version information endpoint."""
        return {"name": APP_NAME, "version": APP_VERSION}

    @app.get("/cache/health", response_model=CacheHealth)
    def cache_health(cache: CacheSystem = Depends(get_cache_system)):
        """Detailed cache health with recommendations."""
        return cache.manager.get_health_status()

    @app.get("/cache/metrics", response_model=CacheMetrics)
    def cache_metrics(cache: CacheSystem = Depends(get_cache_system)):
        """Hit rate, compression, memory and key distribution."""
        return cache.manager.get_performance_metrics()

    @app.get("/cache/stats")
    def cache_stats(cache: CacheSystem = Depends(get_cache_system)) -> Dict[str, Any]:
        """Raw store statistics."""
        return cache.store.get_stats()

    @app.get("/cache/report")
    def cache_report(cache: CacheSystem = Depends(get_cache_system)) -> Dict[str, Any]:
        """Full usage report."""
        return cache.manager.generate_report()

    @app.post("/cache/invalidate/{trigger}", response_model=ActionResult)
    def trigger_invalidation(trigger: str, cache: CacheSystem = Depends(get_cache_system)):
        """Fire a named invalidation trigger."""
        result = cache.manager.trigger_invalidation(trigger)
        if not result["success"]:
            raise HTTPException(status_code=500, detail=result["message"])
        return result

    @app.post("/cache/leagues/{league_id}/invalidate", response_model=LeagueInvalidation)
    def invalidate_league(league_id: str, cache: CacheSystem = Depends(get_cache_system)):
        """Drop all cached data for one league."""
        try:
            removed = cache.manager.invalidate_league(league_id)
        except CacheError as e:
            raise HTTPException(status_code=500, detail=str(e))
        return LeagueInvalidation(league_id=league_id, removed=removed)

    @app.post("/cache/warm", response_model=ActionResult)
    def warm_cache(request: Optional[WarmRequest] = None, cache: CacheSystem = Depends(get_cache_system)):
        """Run a warming cycle now, optionally for some categories only."""
        categories = request.categories if request else None
        result = cache.manager.warm_now(categories)
        if not result["success"] and "in progress" in result["message"]:
            raise HTTPException(status_code=409, detail=result["message"])
        return result

    @app.post("/cache/leagues/warm", response_model=List[WarmingOutcome])
    def warm_leagues(request: LeagueWarmRequest, cache: CacheSystem = Depends(get_cache_system)):
        """Warm league, roster, user and matchup data for specific leagues."""
        return cache.warmer.warm_league_data(request.league_ids, request.week)

    @app.post("/cache/optimize")
    def optimize_cache(cache: CacheSystem = Depends(get_cache_system)) -> Dict[str, Any]:
        """Run the optimization playbook."""
        result = cache.manager.optimize_cache()
        if not result["success"]:
            raise HTTPException(status_code=500, detail="Cache optimization failed")
        return result

    @app.post("/cache/reset", response_model=ActionResult)
    def emergency_reset(cache: CacheSystem = Depends(get_cache_system)):
        """Flush everything and re-warm."""
        result = cache.manager.emergency_reset()
        if not result["success"]:
            raise HTTPException(status_code=500, detail=result["message"])
        return result


app = create_app()

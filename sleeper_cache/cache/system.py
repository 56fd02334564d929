"""
Construction of the cache components.

Everything is built once here and handed out explicitly; nothing in the
cache package keeps module-level instances.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from config.settings import Settings, settings as default_settings

from .compression import CompressionCodec
from .invalidation import CacheInvalidator
from .manager import CacheManager
from .scheduler import PeriodicTask
from .store import TieredCacheStore
from .tiers import BackingStore, LocalTier, RedisBackingStore
from .ttl_policies import LeaguePhaseFeed, TTLPolicyEngine
from .warming import CacheWarmer, SleeperWarmingPlan, WarmingPlan

logger = logging.getLogger("cache.system")


@dataclass
class CacheSystem:
    """Handles to every cache component."""
    codec: CompressionCodec
    ttl_engine: TTLPolicyEngine
    store: TieredCacheStore
    invalidator: CacheInvalidator
    warmer: CacheWarmer
    manager: CacheManager

    def start(self) -> None:
        self.manager.start()

    def stop(self) -> None:
        self.manager.stop()


def build_cache_system(
    config: Optional[Settings] = None,
    phase_feed: Optional[LeaguePhaseFeed] = None,
    backing_store: Optional[BackingStore] = None,
    plan: Optional[WarmingPlan] = None,
    local: Optional[LocalTier] = None,
) -> CacheSystem:
    """
    Build the cache subsystem.

    Args:
        config: Settings (defaults to the process settings)
        phase_feed: League state feed; defaults to a SleeperClient
        backing_store: Distributed tier; defaults to Redis when redis_url is set
        plan: Warming task builder; defaults to SleeperWarmingPlan
        local: Local tier (tests pass one with a fake clock)
    """
    config = config or default_settings

    client = None
    if phase_feed is None or plan is None:
        from sleeper_cache.sleeper_client import SleeperClient
        client = SleeperClient(
            base_url=config.sleeper_api_base_url,
            timeout=config.sleeper_api_timeout,
        )
    if phase_feed is None:
        phase_feed = client
    if plan is None:
        plan = SleeperWarmingPlan(client, config.warm_league_ids)

    if backing_store is None and config.redis_url:
        backing_store = RedisBackingStore.from_url(
            config.redis_url,
            socket_timeout=config.redis_socket_timeout,
        )

    codec = CompressionCodec(
        enabled=config.compression_enabled,
        threshold=config.compression_threshold,
        level=config.compression_level,
    )
    ttl_engine = TTLPolicyEngine(
        phase_feed=phase_feed,
        refresh_interval=config.league_state_refresh_seconds,
        league_timezone=config.league_timezone,
    )
    store = TieredCacheStore(
        codec=codec,
        ttl_engine=ttl_engine,
        backing_store=backing_store,
        local=local,
        enabled=config.cache_enabled,
        default_ttl=config.cache_default_ttl,
        memory_limit=config.cache_memory_limit_mb * 1024 * 1024,
    )
    if backing_store is not None:
        if store.check_backing_store():
            logger.info("Using Redis for caching")
        else:
            logger.warning("Redis not available, falling back to in-memory cache")

    invalidator = CacheInvalidator(
        store=store,
        ttl_engine=ttl_engine,
        scheduled_delay=config.scheduled_invalidation_delay,
    )
    warmer = CacheWarmer(
        store=store,
        ttl_engine=ttl_engine,
        plan=plan,
        concurrency=config.warming_concurrency,
        task_timeout=config.warming_task_timeout,
        active_interval=config.warming_interval_active,
        inactive_interval=config.warming_interval_inactive,
    )

    manager = CacheManager(
        store=store,
        warmer=warmer,
        invalidator=invalidator,
        warming_stale_after=config.warming_stale_after,
    )
    manager.tasks = [
        PeriodicTask(
            "invalidation-check",
            interval=config.invalidation_check_interval,
            fn=invalidator.check_schedule,
            timeout=config.invalidation_check_timeout,
        ),
        PeriodicTask(
            "warming-check",
            interval=config.warming_check_interval,
            fn=warmer.scheduled_check,
            timeout=config.warming_check_timeout,
        ),
        PeriodicTask(
            "health-monitor",
            interval=config.health_check_interval,
            fn=manager.run_health_check,
            timeout=config.health_check_timeout,
        ),
    ]

    return CacheSystem(
        codec=codec,
        ttl_engine=ttl_engine,
        store=store,
        invalidator=invalidator,
        warmer=warmer,
        manager=manager,
    )

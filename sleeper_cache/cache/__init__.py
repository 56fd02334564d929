"""
Adaptive tiered caching with calendar-aware TTLs, rule-based invalidation
and proactive warming.
"""
from .core import (
    CacheContext,
    CacheEntry,
    InvalidationRule,
    LeaguePhase,
    RulePriority,
    SeasonPhase,
    TaskPriority,
    TTLStrategy,
    WarmingResult,
    WarmingTask,
)
from .exceptions import CacheEntryCorruptError, CacheError, CacheSerializationError
from .compression import CompressionCodec, CompressionResult
from .ttl_policies import TTL_STRATEGIES, LeaguePhaseFeed, TTLPolicyEngine
from .coalescer import RequestCoalescer
from .tiers import BackingStore, LocalTier, RedisBackingStore
from .store import TieredCacheStore
from .invalidation import CacheInvalidator, default_rules
from .warming import CacheWarmer, SleeperWarmingPlan, WarmingPlan
from .scheduler import PeriodicTask
from .manager import CacheManager, HealthStatus, PerformanceMetrics
from .system import CacheSystem, build_cache_system

__all__ = [
    # Core types
    "CacheContext",
    "CacheEntry",
    "InvalidationRule",
    "LeaguePhase",
    "RulePriority",
    "SeasonPhase",
    "TaskPriority",
    "TTLStrategy",
    "WarmingResult",
    "WarmingTask",
    # Errors
    "CacheError",
    "CacheEntryCorruptError",
    "CacheSerializationError",
    # Components
    "CompressionCodec",
    "CompressionResult",
    "TTL_STRATEGIES",
    "LeaguePhaseFeed",
    "TTLPolicyEngine",
    "RequestCoalescer",
    "BackingStore",
    "LocalTier",
    "RedisBackingStore",
    "TieredCacheStore",
    "CacheInvalidator",
    "default_rules",
    "CacheWarmer",
    "SleeperWarmingPlan",
    "WarmingPlan",
    "PeriodicTask",
    "CacheManager",
    "HealthStatus",
    "PerformanceMetrics",
    # Wiring
    "CacheSystem",
    "build_cache_system",
]

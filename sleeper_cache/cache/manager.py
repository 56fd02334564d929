"""
Cache orchestration: health, performance metrics and remediation actions
over the store, warmer and invalidator.
"""
import logging
from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence

from .invalidation import CacheInvalidator
from .scheduler import PeriodicTask
from .store import TieredCacheStore
from .warming import CacheWarmer

logger = logging.getLogger("cache.manager")

MEMORY_CRITICAL_PERCENT = 90
MEMORY_HIGH_PERCENT = 70


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class HealthStatus:
    """Point-in-time health of the cache subsystem."""
    status: str  # "healthy", "degraded" or "unhealthy"
    details: Dict[str, str]
    recommendations: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class MemoryUsage:
    current: int
    peak: int
    limit: int
    percentage: float


@dataclass
class PerformanceMetrics:
    """Point-in-time cache performance figures. Rates are percentages."""
    hit_rate: float
    miss_rate: float
    compression_ratio: float
    memory_usage: MemoryUsage
    key_distribution: Dict[str, int]
    ttl_distribution: Dict[str, int]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def key_pattern(key: str) -> str:
    """Group a key by its first two colon-delimited segments."""
    parts = key.split(":")
    if len(parts) >= 2:
        return f"{parts[0]}:{parts[1]}:*"
    return key


class CacheManager:
    """
    Aggregates signals from the cache components and exposes operator
    actions. Owns the background tasks and their start/stop lifecycle.
    """

    def __init__(
        self,
        store: TieredCacheStore,
        warmer: CacheWarmer,
        invalidator: CacheInvalidator,
        warming_stale_after: int = 4 * 60 * 60,
        tasks: Optional[Sequence[PeriodicTask]] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.warmer = warmer
        self.invalidator = invalidator
        self.warming_stale_after = timedelta(seconds=warming_stale_after)
        self.tasks: List[PeriodicTask] = list(tasks or [])
        self._clock = clock
        self._performance_metrics: Optional[PerformanceMetrics] = None
        self._last_health: Optional[HealthStatus] = None

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def _memory_status(self, percentage: float) -> str:
        if percentage > MEMORY_CRITICAL_PERCENT:
            return "critical"
        if percentage > MEMORY_HIGH_PERCENT:
            return "high"
        return "ok"

    def _warming_status(self) -> str:
        if self.warmer.in_progress:
            return "active"
        if self.warmer.last_run is None:
            return "error"
        if self._clock() - self.warmer.last_run > self.warming_stale_after:
            return "stale"
        return "inactive"

    def get_health_status(self) -> HealthStatus:
        """
        Combine tier reachability, memory pressure, compression and
        maintenance recency into one status.

        Critical memory pressure is unhealthy; any other non-ideal signal
        is degraded.
        """
        recommendations: List[str] = []
        try:
            if not self.store.has_backing_store:
                redis_status = "not_configured"
                recommendations.append("Redis not configured - using memory cache only")
            elif self.store.remote_available:
                redis_status = "connected"
            else:
                redis_status = "disconnected"
                recommendations.append("Redis connection unavailable - using memory cache only")

            memory_status = self._memory_status(self.store.memory_percentage)
            if memory_status == "critical":
                recommendations.append(
                    "Memory usage critical - consider cache cleanup or increase limits"
                )
            elif memory_status == "high":
                recommendations.append("Memory usage high - monitor cache growth")

            compression_status = "enabled" if self.store.codec.enabled else "disabled"
            if compression_status == "disabled":
                recommendations.append(
                    "Cache compression disabled - enable for better memory efficiency"
                )

            warming_status = self._warming_status()
            if warming_status == "error":
                recommendations.append("Cache warming has never run - consider manual warming")
            elif warming_status == "stale":
                recommendations.append("Cache warming has not run recently - check the scheduler")

            invalidation_status = "active" if self.invalidator.last_run else "inactive"

            if memory_status == "critical":
                status = "unhealthy"
            elif (
                memory_status == "high"
                or redis_status != "connected"
                or compression_status == "disabled"
                or warming_status in ("error", "stale")
            ):
                status = "degraded"
            else:
                status = "healthy"

            health = HealthStatus(
                status=status,
                details={
                    "redis": redis_status,
                    "memory": memory_status,
                    "compression": compression_status,
                    "warming": warming_status,
                    "invalidation": invalidation_status,
                },
                recommendations=recommendations,
            )
        except Exception as e:
            logger.error(f"Error checking cache health: {e}")
            health = HealthStatus(
                status="unhealthy",
                details={
                    "redis": "error",
                    "memory": "critical",
                    "compression": "error",
                    "warming": "error",
                    "invalidation": "error",
                },
                recommendations=["Cache system error - check logs for details"],
            )

        self._last_health = health
        return health

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------

    def get_performance_metrics(self) -> PerformanceMetrics:
        stats = self.store.get_stats()
        total = stats["hits"] + stats["misses"]
        hit_rate = stats["hits"] / total * 100 if total else 0.0
        miss_rate = stats["misses"] / total * 100 if total else 0.0

        key_distribution: Dict[str, int] = {}
        ttl_distribution = {"short (< 1h)": 0, "medium (1h-24h)": 0, "long (> 24h)": 0}
        for key in self.store.keys():
            pattern = key_pattern(key)
            key_distribution[pattern] = key_distribution.get(pattern, 0) + 1

            remaining = self.store.local.ttl_remaining(key)
            if remaining is None:
                continue
            if remaining < 3600:
                ttl_distribution["short (< 1h)"] += 1
            elif remaining <= 86400:
                ttl_distribution["medium (1h-24h)"] += 1
            else:
                ttl_distribution["long (> 24h)"] += 1

        return PerformanceMetrics(
            hit_rate=round(hit_rate, 2),
            miss_rate=round(miss_rate, 2),
            compression_ratio=stats["compression"]["stats"]["compression_ratio"],
            memory_usage=MemoryUsage(
                current=self.store.local.memory_usage,
                peak=self.store.local.peak_memory,
                limit=self.store.memory_limit,
                percentage=round(self.store.memory_percentage, 2),
            ),
            key_distribution=key_distribution,
            ttl_distribution=ttl_distribution,
        )

    def get_cached_performance_metrics(self) -> Optional[PerformanceMetrics]:
        """Metrics from the last background health check."""
        return self._performance_metrics

    # ------------------------------------------------------------------
    # Remediation
    # ------------------------------------------------------------------

    def optimize_cache(self) -> Dict[str, Any]:
        """Run the remediation playbook and report before/after metrics."""
        actions: List[str] = []
        try:
            health = self.get_health_status()
            before = self.get_performance_metrics()

            if health.details["memory"] in ("critical", "high"):
                purged = self.invalidator.cleanup_expired_entries()
                actions.append(f"Cleaned up {purged} expired cache entries")

            if before.hit_rate < 50:
                self.warmer.warm_cache()
                actions.append("Re-warmed frequently accessed cache data")

            if health.details["compression"] == "disabled" and before.memory_usage.percentage > 50:
                self.store.codec.update_options(enabled=True)
                actions.append("Enabled cache compression")

            self.invalidator.invalidate_by_trigger("optimization")
            actions.append("Invalidated potentially stale cache data")

            after = self.get_performance_metrics()
        except Exception as e:
            logger.error(f"Cache optimization failed: {e}")
            return {"success": False, "actions": actions, "metrics": None}

        return {
            "success": True,
            "actions": actions,
            "metrics": {
                "before": before.to_dict(),
                "after": after.to_dict(),
                "improvement": {
                    "memory_reduction": before.memory_usage.current - after.memory_usage.current,
                    "hit_rate_change": round(after.hit_rate - before.hit_rate, 2),
                },
            },
        }

    def emergency_reset(self) -> Dict[str, Any]:
        """Flush both tiers, re-enable compression and re-warm at once."""
        logger.warning("Performing emergency cache reset")
        try:
            self.store.flush()
            self.store.codec.update_options(enabled=True)
            results = self.warmer.warm_cache(force=True)
        except Exception as e:
            logger.error(f"Emergency cache reset failed: {e}")
            return {"success": False, "message": f"Emergency reset failed: {e}"}

        if results is None:
            message = "Cache flushed; a warming cycle was already running"
        else:
            warmed = sum(1 for r in results if r.status == "success")
            message = f"Cache emergency reset completed, {warmed} entries re-warmed"
        logger.info(message)
        return {"success": True, "message": message}

    # ------------------------------------------------------------------
    # Manual actions
    # ------------------------------------------------------------------

    def trigger_invalidation(self, trigger: str) -> Dict[str, Any]:
        return self.invalidator.manual_trigger(trigger)

    def invalidate_league(self, league_id: str) -> int:
        return self.invalidator.invalidate_league(league_id)

    def warm_now(self, categories: Optional[Sequence[str]] = None) -> Dict[str, Any]:
        return self.warmer.manual_warm(categories)

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def generate_recommendations(
        self,
        health: HealthStatus,
        performance: PerformanceMetrics,
    ) -> List[str]:
        recommendations = list(health.recommendations)
        if performance.hit_rate < 60:
            recommendations.append(
                "Low cache hit rate - consider warming more data or adjusting TTL strategies"
            )
        if performance.compression_ratio < 20 and performance.memory_usage.percentage > 50:
            recommendations.append(
                "Low compression ratio with high memory usage - review cached data types"
            )
        if len(performance.key_distribution) > 10:
            recommendations.append(
                "High key pattern diversity - consider cache partitioning strategies"
            )
        # Preserve order, drop duplicates
        return list(dict.fromkeys(recommendations))

    def generate_report(self) -> Dict[str, Any]:
        health = self.get_health_status()
        performance = self.get_performance_metrics()
        return {
            "timestamp": self._clock().isoformat(),
            "health": health.to_dict(),
            "performance": performance.to_dict(),
            "configuration": {
                "compression": self.store.codec.get_stats(),
                "smart_ttl": self.store.ttl_engine.get_stats(),
            },
            "activities": {
                "warming": self.warmer.get_stats(),
                "invalidation": self.invalidator.get_stats(),
                "schedulers": [task.get_stats() for task in self.tasks],
            },
            "recommendations": self.generate_recommendations(health, performance),
        }

    # ------------------------------------------------------------------
    # Background monitoring
    # ------------------------------------------------------------------

    def run_health_check(self) -> HealthStatus:
        """One monitoring pass: ping Redis, log health, refresh metrics."""
        if self.store.has_backing_store:
            self.store.check_backing_store()

        health = self.get_health_status()
        if health.status == "unhealthy":
            logger.error(f"Cache health check failed: {health.details}")
        elif health.status == "degraded":
            logger.warning(f"Cache health degraded: {health.details}")

        self._performance_metrics = self.get_performance_metrics()
        return health

    def start(self) -> None:
        for task in self.tasks:
            task.start()
        logger.info(f"Cache maintenance started ({len(self.tasks)} tasks)")

    def stop(self) -> None:
        for task in self.tasks:
            task.stop()
        self.invalidator.flush_scheduled()
        logger.info("Cache maintenance stopped")

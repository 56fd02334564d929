"""
Tiered cache store: optional Redis tier in front of an always-present local
tier that mirrors every write.
"""
import json
import logging
import threading
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from .compression import CompressionCodec, CompressionResult
from .coalescer import RequestCoalescer
from .core import CacheContext, CacheEntry
from .exceptions import CacheEntryCorruptError, CacheSerializationError
from .tiers import BackingStore, LocalTier
from .ttl_policies import TTLPolicyEngine

logger = logging.getLogger("cache.store")

DEFAULT_TTL = 300
DEFAULT_MEMORY_LIMIT = 100 * 1024 * 1024  # 100MB


class TieredCacheStore:
    """
    Primary read/write surface of the cache.

    - Reads try Redis first while it is believed reachable; any Redis error
      marks it down and the local tier answers instead.
    - Writes go to Redis best-effort and always to the local tier.
    - Keys written or deleted while Redis is down are remembered and
      dropped from Redis before it is trusted again, so stale remote copies
      never shadow newer local state.
    - wrap/smart_wrap share one producer call among concurrent misses.
    - Only CacheEntryCorruptError and producer errors reach callers.
    """

    def __init__(
        self,
        codec: CompressionCodec,
        ttl_engine: TTLPolicyEngine,
        backing_store: Optional[BackingStore] = None,
        local: Optional[LocalTier] = None,
        enabled: bool = True,
        default_ttl: int = DEFAULT_TTL,
        memory_limit: int = DEFAULT_MEMORY_LIMIT,
        coalescer: Optional[RequestCoalescer] = None,
    ):
        self.codec = codec
        self.ttl_engine = ttl_engine
        self.local = local or LocalTier()
        self.enabled = enabled
        self.default_ttl = default_ttl
        self.memory_limit = memory_limit
        self._backing = backing_store
        self._remote_available = backing_store is not None
        self._coalescer = coalescer or RequestCoalescer()

        # Local changes Redis missed while it was unreachable
        self._sync_lock = threading.Lock()
        self._stale_remote_keys: Set[str] = set()
        self._flushed_while_down = False

        self._stats_lock = threading.Lock()
        self._stats = {
            "hits": 0,
            "misses": 0,
            "sets": 0,
            "deletes": 0,
            "errors": 0,
        }
        self._compression_stats = {
            "total_entries": 0,
            "compressed_entries": 0,
            "saved_bytes": 0,
        }

    # ------------------------------------------------------------------
    # Distributed tier bookkeeping
    # ------------------------------------------------------------------

    @property
    def remote_available(self) -> bool:
        return self._backing is not None and self._remote_available

    @property
    def has_backing_store(self) -> bool:
        return self._backing is not None

    def _mark_remote_down(self, operation: str, error: Exception) -> None:
        with self._stats_lock:
            self._stats["errors"] += 1
        if self._remote_available:
            logger.warning(f"Redis {operation} failed, falling back to memory cache: {error}")
        self._remote_available = False

    def check_backing_store(self) -> bool:
        """
        Ping the distributed tier and update its reachability flag.

        A tier coming back is only re-enabled once the changes it missed
        have been dropped from it.
        """
        if self._backing is None:
            return False
        try:
            reachable = bool(self._backing.ping())
        except Exception as e:
            logger.warning(f"Redis ping failed: {e}")
            reachable = False

        if not reachable:
            self._remote_available = False
            return False

        with self._sync_lock:
            if self._remote_available:
                return True
            if not self._resync_remote():
                return False
            self._remote_available = True
        logger.info("Redis reachable again, re-enabling distributed tier")
        return True

    def _resync_remote(self) -> bool:
        # Caller holds _sync_lock
        try:
            if self._flushed_while_down:
                self._backing.flush_all()
            else:
                for key in list(self._stale_remote_keys):
                    self._backing.delete(key)
        except Exception as e:
            logger.warning(f"Redis resync failed, staying on memory cache: {e}")
            return False
        if self._flushed_while_down or self._stale_remote_keys:
            logger.info(
                f"Resynced Redis after outage (flushed: {self._flushed_while_down}, "
                f"dropped keys: {len(self._stale_remote_keys)})"
            )
        self._flushed_while_down = False
        self._stale_remote_keys.clear()
        return True

    def _remote_mutate(self, operation: str, key: Optional[str], action: Callable[[], Any]) -> None:
        """
        Apply a write to Redis, or remember that Redis missed it.

        key None stands for a flush of the whole tier.
        """
        if self._backing is None:
            return
        if self.remote_available:
            try:
                action()
                return
            except Exception as e:
                self._mark_remote_down(operation, e)

        with self._sync_lock:
            if not self._remote_available:
                if key is None:
                    self._flushed_while_down = True
                    self._stale_remote_keys.clear()
                else:
                    self._stale_remote_keys.add(key)
                return

        # Redis was re-enabled while this write was in flight
        try:
            if key is None:
                self._backing.flush_all()
            else:
                self._backing.delete(key)
        except Exception as e:
            self._mark_remote_down(operation, e)
            self._remote_mutate(operation, key, action)

    def _count(self, stat: str) -> None:
        with self._stats_lock:
            self._stats[stat] += 1

    # ------------------------------------------------------------------
    # Data path
    # ------------------------------------------------------------------

    def _evict_corrupt(self, key: str) -> None:
        self.local.delete(key)
        self._remote_mutate("delete", key, lambda: self._backing.delete(key))

    def _read_remote(self, key: str) -> Optional[CacheEntry]:
        try:
            raw = self._backing.get(key)
        except Exception as e:
            self._mark_remote_down("get", e)
            return None
        if raw is None:
            return None
        try:
            return CacheEntry.from_envelope(json.loads(raw))
        except (ValueError, KeyError, TypeError) as e:
            logger.error(f"Unreadable Redis envelope for {key}: {e}")
            self._evict_corrupt(key)
            raise CacheEntryCorruptError(key, f"bad envelope: {e}") from e

    def _lookup(self, key: str) -> Tuple[bool, Any]:
        if not self.enabled:
            return False, None

        entry = None
        source = "memory"
        if self.remote_available:
            entry = self._read_remote(key)
            source = "redis"
        if entry is None:
            entry = self.local.get(key)
            source = "memory"

        if entry is None:
            logger.debug(f"CACHE MISS: {key}")
            self._count("misses")
            return False, None

        try:
            value = self.codec.decompress(entry.payload, entry.compressed, key=key)
        except CacheEntryCorruptError:
            self._evict_corrupt(key)
            raise
        logger.debug(f"CACHE HIT ({source}): {key}")
        self._count("hits")
        return True, value

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get a cached value.

        Returns:
            The value, or default on a miss

        Raises:
            CacheEntryCorruptError: If the stored entry cannot be decoded
        """
        found, value = self._lookup(key)
        return value if found else default

    def exists(self, key: str) -> bool:
        """True if key holds a readable value. Corrupt entries count as absent."""
        try:
            found, _ = self._lookup(key)
        except CacheEntryCorruptError:
            return False
        return found

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        """
        Store a value in both tiers.

        Returns:
            True if the value was cached
        """
        if not self.enabled:
            return False
        if ttl is None or ttl <= 0:
            ttl = self.default_ttl
        # Redis expiry has whole-second resolution
        ttl = max(1, int(ttl))

        try:
            result = self.codec.compress(value)
        except CacheSerializationError as e:
            logger.error(f"Cache set error for {key}: {e}")
            self._count("errors")
            return False

        entry = self.codec.create_entry(result)
        self._record_compression(result)

        envelope = json.dumps(entry.to_envelope())
        self._remote_mutate("set", key, lambda: self._backing.set(key, envelope, ttl))

        self.local.set(key, entry, ttl)
        self._count("sets")
        logger.debug(f"Cache set: {key} (TTL: {ttl}s, compressed: {result.compressed})")
        return True

    def _record_compression(self, result: CompressionResult) -> None:
        with self._stats_lock:
            self._compression_stats["total_entries"] += 1
            if result.compressed and result.compressed_size is not None:
                self._compression_stats["compressed_entries"] += 1
                self._compression_stats["saved_bytes"] += (
                    result.original_size - result.compressed_size
                )

    def delete(self, key: str) -> bool:
        """Remove a key from both tiers. Returns True if it was held locally."""
        self._remote_mutate("delete", key, lambda: self._backing.delete(key))
        removed = self.local.delete(key)
        self._count("deletes")
        logger.debug(f"Cache delete: {key}")
        return removed

    def flush(self) -> int:
        """
        Clear both tiers and reset compression statistics.

        Returns:
            Number of local entries cleared
        """
        self._remote_mutate("flush", None, lambda: self._backing.flush_all())
        count = self.local.flush()
        with self._stats_lock:
            for stat in self._compression_stats:
                self._compression_stats[stat] = 0
        logger.info(f"Cache flushed ({count} local entries)")
        return count

    def _wrap(
        self,
        key: str,
        producer: Callable[[], Any],
        ttl_fn: Callable[[], Optional[int]],
    ) -> Any:
        found, value = self._lookup(key)
        if found:
            return value

        def produce_and_store():
            try:
                result = producer()
            except Exception as e:
                logger.error(f"Error executing wrapped producer for {key}: {e}")
                raise
            self.set(key, result, ttl_fn())
            return result

        return self._coalescer.get_or_fetch(key, produce_and_store)

    def wrap(self, key: str, producer: Callable[[], Any], ttl: Optional[int] = None) -> Any:
        """
        Return the cached value for key, or call producer and cache its result.

        Producer errors propagate unchanged and nothing is cached.
        """
        return self._wrap(key, producer, lambda: ttl)

    def smart_wrap(
        self,
        key: str,
        producer: Callable[[], Any],
        data_category: str,
        context: Optional[CacheContext] = None,
    ) -> Any:
        """Like wrap, with the TTL chosen by the policy engine."""
        def ttl_fn():
            ttl = self.ttl_engine.get_contextual_ttl(data_category, context)
            logger.debug(f"Smart cache set: {key} (category: {data_category}, TTL: {ttl}s)")
            return ttl

        return self._wrap(key, producer, ttl_fn)

    def smart_set(
        self,
        key: str,
        value: Any,
        data_category: str,
        context: Optional[CacheContext] = None,
    ) -> bool:
        """Store a value with the TTL chosen by the policy engine."""
        ttl = self.ttl_engine.get_contextual_ttl(data_category, context)
        return self.set(key, value, ttl)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def keys(self) -> List[str]:
        """Keys known to the local tier."""
        return self.local.keys()

    @property
    def memory_percentage(self) -> float:
        if self.memory_limit <= 0:
            return 0.0
        return self.local.memory_usage / self.memory_limit * 100

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        with self._stats_lock:
            stats = dict(self._stats)
            compression = dict(self._compression_stats)

        total = compression["total_entries"]
        compression["compression_ratio"] = (
            round(compression["compressed_entries"] / total * 100, 1) if total else 0.0
        )
        compression["saved_mb"] = round(compression["saved_bytes"] / (1024 * 1024), 2)

        return {
            "enabled": self.enabled,
            "use_redis": self.remote_available,
            **stats,
            "memory": self.local.get_stats(),
            "memory_limit_bytes": self.memory_limit,
            "compression": {**self.codec.get_stats(), "stats": compression},
            "coalescer": self._coalescer.get_stats(),
        }

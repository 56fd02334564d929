"""
Storage tiers: the always-present in-process tier and the optional
distributed (Redis) tier.
"""
import logging
import threading
import time
from typing import Callable, Dict, List, Optional, Protocol, Tuple

import redis

from .core import CacheEntry

logger = logging.getLogger("cache.tiers")


class BackingStore(Protocol):
    """Distributed tier interface. Any method may raise on I/O failure."""

    def get(self, key: str) -> Optional[str]:
        ...

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        ...

    def delete(self, key: str) -> None:
        ...

    def flush_all(self) -> None:
        ...

    def ping(self) -> bool:
        ...


class RedisBackingStore:
    """BackingStore over a redis-py client."""

    def __init__(self, client: redis.Redis):
        self.client = client

    @classmethod
    def from_url(cls, url: str, socket_timeout: float = 2.0) -> "RedisBackingStore":
        client = redis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=socket_timeout,
            socket_timeout=socket_timeout,
        )
        return cls(client)

    def get(self, key: str) -> Optional[str]:
        return self.client.get(key)

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self.client.set(key, value, ex=ttl_seconds)

    def delete(self, key: str) -> None:
        self.client.delete(key)

    def flush_all(self) -> None:
        self.client.flushdb()

    def ping(self) -> bool:
        return bool(self.client.ping())

    def close(self) -> None:
        self.client.close()


class LocalTier:
    """
    Thread-safe in-process store of CacheEntry objects with per-key expiry.

    Expired entries are dropped lazily on read and in bulk by purge_expired.
    Tracks approximate memory use (key plus payload bytes).
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._data: Dict[str, Tuple[CacheEntry, float]] = {}
        self._lock = threading.RLock()
        self._clock = clock
        self._memory = 0
        self._peak_memory = 0
        self._stats = {"hits": 0, "misses": 0}

    @staticmethod
    def _footprint(key: str, entry: CacheEntry) -> int:
        return len(key.encode("utf-8")) + entry.size_bytes

    def _drop(self, key: str) -> bool:
        item = self._data.pop(key, None)
        if item is None:
            return False
        self._memory -= self._footprint(key, item[0])
        return True

    def get(self, key: str) -> Optional[CacheEntry]:
        with self._lock:
            item = self._data.get(key)
            if item is not None and item[1] <= self._clock():
                self._drop(key)
                item = None
            if item is None:
                self._stats["misses"] += 1
                return None
            self._stats["hits"] += 1
            return item[0]

    def set(self, key: str, entry: CacheEntry, ttl_seconds: int) -> None:
        with self._lock:
            self._drop(key)
            self._data[key] = (entry, self._clock() + ttl_seconds)
            self._memory += self._footprint(key, entry)
            self._peak_memory = max(self._peak_memory, self._memory)

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._drop(key)

    def flush(self) -> int:
        with self._lock:
            count = len(self._data)
            self._data.clear()
            self._memory = 0
            return count

    def keys(self) -> List[str]:
        """Keys of unexpired entries."""
        now = self._clock()
        with self._lock:
            return [k for k, (_, expires_at) in self._data.items() if expires_at > now]

    def ttl_remaining(self, key: str) -> Optional[float]:
        with self._lock:
            item = self._data.get(key)
            if item is None:
                return None
            return max(0.0, item[1] - self._clock())

    def purge_expired(self) -> int:
        """Remove all expired entries. Returns the number removed."""
        now = self._clock()
        with self._lock:
            expired = [k for k, (_, expires_at) in self._data.items() if expires_at <= now]
            for key in expired:
                self._drop(key)
        if expired:
            logger.debug(f"Purged {len(expired)} expired entries")
        return len(expired)

    @property
    def memory_usage(self) -> int:
        return self._memory

    @property
    def peak_memory(self) -> int:
        return self._peak_memory

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)

    def get_stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "keys": len(self._data),
                "hits": self._stats["hits"],
                "misses": self._stats["misses"],
                "memory_bytes": self._memory,
                "peak_memory_bytes": self._peak_memory,
            }

"""
Single-flight de-duplication of producer calls.

When several threads miss the same cache key at once, only the first runs
the producer; the rest block until it finishes and share its result or
its exception.
"""
import threading
import time
import logging
from typing import Any, Callable, Dict, Optional
from dataclasses import dataclass, field

logger = logging.getLogger("cache.coalescer")


@dataclass
class _Flight:
    """A producer call in progress for one key."""
    done: threading.Event = field(default_factory=threading.Event)
    result: Any = None
    error: Optional[BaseException] = None
    started_at: float = field(default_factory=time.monotonic)
    waiters: int = 0


class RequestCoalescer:
    """
    Shares one in-flight producer call among concurrent callers of a key.

    Usage:
        coalescer = RequestCoalescer()
        value = coalescer.get_or_fetch("rosters:123", lambda: fetch_rosters("123"))
    """

    def __init__(self, timeout: Optional[float] = 60.0):
        """
        Args:
            timeout: Max seconds a joining caller waits (None waits forever)
        """
        self._flights: Dict[str, _Flight] = {}
        self._lock = threading.Lock()
        self._timeout = timeout
        self._executed = 0
        self._shared = 0

    def get_or_fetch(self, key: str, fetch_fn: Callable[[], Any]) -> Any:
        """
        Run fetch_fn for key, or join the call already running for it.

        Raises:
            TimeoutError: If a joining caller gives up waiting
            Exception: Whatever fetch_fn raised, for every caller
        """
        with self._lock:
            flight = self._flights.get(key)
            leader = flight is None
            if leader:
                flight = _Flight()
                self._flights[key] = flight
                self._executed += 1
            else:
                flight.waiters += 1
                self._shared += 1

        if leader:
            return self._lead(key, flight, fetch_fn)

        logger.debug(f"Joining in-flight fetch for {key} (waiters: {flight.waiters})")
        if not flight.done.wait(timeout=self._timeout):
            logger.error(f"Timeout waiting for in-flight fetch: {key}")
            raise TimeoutError(f"Fetch for {key} did not finish within {self._timeout}s")
        if flight.error is not None:
            raise flight.error
        return flight.result

    def _lead(self, key: str, flight: _Flight, fetch_fn: Callable[[], Any]) -> Any:
        try:
            flight.result = fetch_fn()
        except BaseException as e:
            flight.error = e
            raise
        finally:
            with self._lock:
                self._flights.pop(key, None)
            flight.done.set()
        return flight.result

    @property
    def active_requests(self) -> int:
        with self._lock:
            return len(self._flights)

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "active_requests": len(self._flights),
                "active_keys": list(self._flights),
                "executed": self._executed,
                "shared": self._shared,
            }

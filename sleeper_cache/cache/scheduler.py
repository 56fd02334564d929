"""
Periodic background tasks with a hard per-run timeout.
"""
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FutureTimeout
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger("cache.scheduler")


class PeriodicTask:
    """
    Runs a callable every ``interval`` seconds on a daemon thread.

    Each run executes on a dedicated worker and is abandoned (logged, counted)
    if it exceeds ``timeout``, so a stalled dependency cannot stall the
    ticker. A run that is still going when the next tick arrives causes that
    tick to be skipped. Exceptions never escape the ticker thread.

    Tests call run_once() directly instead of start().
    """

    def __init__(
        self,
        name: str,
        interval: float,
        fn: Callable[[], Any],
        timeout: Optional[float] = None,
        run_immediately: bool = False,
    ):
        self.name = name
        self.interval = interval
        self.timeout = timeout
        self._fn = fn
        self._run_immediately = run_immediately
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"task-{name}")
        self._current: Optional[Future] = None
        self._lock = threading.Lock()
        self._stats = {
            "runs": 0,
            "failures": 0,
            "timeouts": 0,
            "skipped": 0,
        }
        self.last_run: Optional[datetime] = None
        self.last_error: Optional[str] = None

    @property
    def is_started(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def is_running(self) -> bool:
        """True while a run is executing."""
        return self._current is not None and not self._current.done()

    def start(self) -> None:
        if self.is_started:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._loop,
            name=f"periodic-{self.name}",
            daemon=True,
        )
        self._thread.start()
        logger.info(f"Started periodic task {self.name} (every {self.interval}s)")

    def stop(self, wait: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=wait)
            self._thread = None
        self._executor.shutdown(wait=False)
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"task-{self.name}")
        logger.info(f"Stopped periodic task {self.name}")

    def _loop(self) -> None:
        if self._run_immediately:
            self.run_once()
        while not self._stop.wait(self.interval):
            self.run_once()

    def run_once(self) -> bool:
        """
        Execute one run under the timeout.

        Returns:
            True if the callable completed without error
        """
        with self._lock:
            if self.is_running:
                self._stats["skipped"] += 1
                logger.warning(f"Periodic task {self.name} still running, skipping tick")
                return False
            self._current = self._executor.submit(self._fn)
            future = self._current
            self._stats["runs"] += 1
            self.last_run = datetime.now(timezone.utc)

        try:
            future.result(timeout=self.timeout)
        except FutureTimeout:
            with self._lock:
                self._stats["timeouts"] += 1
            self.last_error = f"timed out after {self.timeout}s"
            logger.error(f"Periodic task {self.name} timed out after {self.timeout}s")
            return False
        except Exception as e:
            with self._lock:
                self._stats["failures"] += 1
            self.last_error = str(e)
            logger.error(f"Periodic task {self.name} failed: {e}")
            return False

        self.last_error = None
        return True

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            stats = dict(self._stats)
        return {
            "name": self.name,
            "interval": self.interval,
            "timeout": self.timeout,
            "started": self.is_started,
            "running": self.is_running,
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "last_error": self.last_error,
            **stats,
        }

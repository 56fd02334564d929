"""
Proactive cache warming.

Each cycle builds a fresh task list, skips keys that are already cached,
and runs the rest highest-priority first in windows of at most
``concurrency`` producers. A window is given ``task_timeout`` seconds; any
producer still running after that is counted as failed and abandoned.
Abandoned producers keep their slot until they return, so later windows
shrink rather than exceed ``concurrency``.
"""
import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence

from .core import CacheContext, LeaguePhase, TaskPriority, WarmingResult, WarmingTask
from .exceptions import CacheEntryCorruptError
from .store import TieredCacheStore
from .ttl_policies import TTLPolicyEngine

logger = logging.getLogger("cache.warming")

DEFAULT_CONCURRENCY = 3
LEAGUE_CONCURRENCY = 2      # Targeted warming yields to the background cycle
DEFAULT_TASK_TIMEOUT = 15.0


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WarmingPlan(Protocol):
    """Builds warming tasks."""

    def cycle_tasks(self, phase: Optional[LeaguePhase]) -> List[WarmingTask]:
        ...

    def league_tasks(self, league_id: str, week: Optional[int] = None) -> List[WarmingTask]:
        ...


class SleeperWarmingPlan:
    """
    Warming tasks backed by the Sleeper API client.

    Order: league state first (it drives TTL decisions), then the bulk
    player table, then volatile trending lists. During an active season the
    tracked leagues' current-week matchups are added.
    """

    def __init__(self, client, tracked_league_ids: Sequence[str] = ()):
        self.client = client
        self.tracked_league_ids = list(tracked_league_ids)

    def cycle_tasks(self, phase: Optional[LeaguePhase]) -> List[WarmingTask]:
        tasks = [
            WarmingTask(
                key="state:nfl",
                producer=self.client.get_nfl_state,
                data_category="nfl_state",
                priority=TaskPriority.HIGH,
                description="NFL State",
            ),
            WarmingTask(
                key="players:all:nfl",
                producer=lambda: self.client.get_all_players("nfl"),
                data_category="player",
                priority=TaskPriority.HIGH,
                description="All NFL Players",
            ),
        ]
        for trend in ("add", "drop"):
            tasks.append(WarmingTask(
                key=f"players:trending:nfl:{trend}::",
                producer=lambda trend=trend: self.client.get_trending_players("nfl", trend),
                data_category="trending",
                priority=TaskPriority.MEDIUM,
                description=f"Trending {trend.capitalize()} Players",
            ))

        if phase is not None and phase.phase.is_active:
            for league_id in self.tracked_league_ids:
                tasks.append(self._matchup_task(league_id, phase.current_week))
        return tasks

    def _matchup_task(self, league_id: str, week: int) -> WarmingTask:
        return WarmingTask(
            key=f"matchups:{league_id}:{week}",
            producer=lambda: self.client.get_matchups(league_id, week),
            data_category="matchup",
            priority=TaskPriority.HIGH,
            description=f"Matchups {league_id} Week {week}",
            context=CacheContext(data_category="matchup", entity_week=week, league_id=league_id),
        )

    def league_tasks(self, league_id: str, week: Optional[int] = None) -> List[WarmingTask]:
        context = CacheContext(data_category="league", league_id=league_id)
        tasks = [
            WarmingTask(
                key=f"league:{league_id}",
                producer=lambda: self.client.get_league(league_id),
                data_category="league",
                priority=TaskPriority.HIGH,
                description=f"League {league_id}",
                context=context,
            ),
            WarmingTask(
                key=f"rosters:{league_id}",
                producer=lambda: self.client.get_rosters(league_id),
                data_category="roster",
                priority=TaskPriority.HIGH,
                description=f"Rosters {league_id}",
                context=context,
            ),
            WarmingTask(
                key=f"users:{league_id}",
                producer=lambda: self.client.get_users(league_id),
                data_category="user",
                priority=TaskPriority.MEDIUM,
                description=f"Users {league_id}",
                context=context,
            ),
        ]
        if week:
            tasks.append(self._matchup_task(league_id, week))
        return tasks


class CacheWarmer:
    """Runs warming cycles against a TieredCacheStore."""

    def __init__(
        self,
        store: TieredCacheStore,
        ttl_engine: TTLPolicyEngine,
        plan: WarmingPlan,
        concurrency: int = DEFAULT_CONCURRENCY,
        task_timeout: float = DEFAULT_TASK_TIMEOUT,
        league_concurrency: int = LEAGUE_CONCURRENCY,
        active_interval: int = 30 * 60,
        inactive_interval: int = 2 * 60 * 60,
        batch_pause: float = 0.1,
        clock: Callable[[], datetime] = _utcnow,
    ):
        """
        Args:
            store: Cache to populate
            ttl_engine: Source of league phase and TTLs
            plan: Task builder
            concurrency: Max producers running at once in a cycle
            task_timeout: Seconds a window of tasks may run
            league_concurrency: Max producers for warm_league_data
            active_interval: Seconds between cycles during the season
            inactive_interval: Seconds between cycles off-season
            batch_pause: Pause between windows to spare the upstream API
        """
        self.store = store
        self.ttl_engine = ttl_engine
        self.plan = plan
        self.concurrency = max(1, concurrency)
        self.task_timeout = task_timeout
        self.league_concurrency = max(1, league_concurrency)
        self.active_interval = active_interval
        self.inactive_interval = inactive_interval
        self.batch_pause = batch_pause
        self._clock = clock

        self._lock = threading.Lock()
        self._in_progress = False
        # Timed-out producers that are still running
        self._stragglers: List[Future] = []
        self.last_run: Optional[datetime] = None
        self._stats = {
            "total_tasks": 0,
            "completed_tasks": 0,
            "skipped_tasks": 0,
            "failed_tasks": 0,
            "last_duration_ms": 0.0,
            "cycles": 0,
        }

    @property
    def in_progress(self) -> bool:
        return self._in_progress

    def _begin(self) -> bool:
        with self._lock:
            if self._in_progress:
                return False
            self._in_progress = True
            return True

    def _end(self) -> None:
        with self._lock:
            self._in_progress = False

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _run_task(self, task: WarmingTask, force: bool) -> WarmingResult:
        try:
            if force:
                logger.debug(f"Warming cache: {task.description} ({task.key})")
                value = task.producer()
                self.store.smart_set(task.key, value, task.data_category, task.context)
                return WarmingResult(task.key, "success")

            produced = []

            def producer():
                logger.debug(f"Warming cache: {task.description} ({task.key})")
                produced.append(task.key)
                return task.producer()

            # One lookup per task: smart_wrap only calls producer on a miss
            try:
                self.store.smart_wrap(task.key, producer, task.data_category, task.context)
            except CacheEntryCorruptError as e:
                logger.warning(f"Replacing corrupt cache entry while warming: {e}")
                self.store.smart_wrap(task.key, producer, task.data_category, task.context)

            if not produced:
                logger.debug(f"Cache already warm for: {task.key}")
                return WarmingResult(task.key, "skipped")
            return WarmingResult(task.key, "success")
        except Exception as e:
            logger.warning(f"Failed to warm cache for {task.key}: {e}")
            return WarmingResult(task.key, "failed", error=str(e))

    def _free_slots(self, limit: int) -> int:
        with self._lock:
            self._stragglers = [f for f in self._stragglers if not f.done()]
            running = list(self._stragglers)
        if len(running) < limit:
            return limit - len(running)

        wait(running, timeout=self.task_timeout, return_when=FIRST_COMPLETED)
        with self._lock:
            self._stragglers = [f for f in self._stragglers if not f.done()]
            return max(0, limit - len(self._stragglers))

    def execute(
        self,
        tasks: List[WarmingTask],
        concurrency: Optional[int] = None,
        force: bool = False,
    ) -> List[WarmingResult]:
        """
        Run tasks in priority order with bounded concurrency.

        Producers abandoned after a timeout count against the bound until
        they return. If none returns within another ``task_timeout`` while
        every slot is held, the remaining tasks fail without running.

        Args:
            tasks: Tasks to run
            concurrency: Max producers running at once (defaults to self.concurrency)
            force: Re-run producers even for keys already cached
        """
        limit = max(1, concurrency or self.concurrency)
        ordered = sorted(tasks, key=lambda t: t.priority.rank, reverse=True)
        results: List[WarmingResult] = []

        index = 0
        while index < len(ordered):
            slots = self._free_slots(limit)
            if slots == 0:
                logger.error(
                    f"Cache warming capacity exhausted by stuck producers, "
                    f"failing {len(ordered) - index} remaining tasks"
                )
                for task in ordered[index:]:
                    results.append(
                        WarmingResult(task.key, "failed", error="Cache warming capacity exhausted")
                    )
                break

            window = ordered[index:index + slots]
            index += len(window)
            executor = ThreadPoolExecutor(max_workers=len(window), thread_name_prefix="cache-warm")
            futures = [executor.submit(self._run_task, task, force) for task in window]
            done, _ = wait(futures, timeout=self.task_timeout)

            for task, future in zip(window, futures):
                if future in done:
                    results.append(future.result())
                    continue
                if not future.cancel():
                    with self._lock:
                        self._stragglers.append(future)
                logger.warning(f"Cache warming timeout for {task.key} after {self.task_timeout}s")
                results.append(WarmingResult(task.key, "failed", error="Cache warming timeout"))
            # Producers that timed out keep their worker; don't wait on them
            executor.shutdown(wait=False)

            if self.batch_pause and index < len(ordered):
                time.sleep(self.batch_pause)

        return results

    # ------------------------------------------------------------------
    # Cycles
    # ------------------------------------------------------------------

    def warm_cache(self, force: bool = False) -> Optional[List[WarmingResult]]:
        """
        Run one full warming cycle.

        Returns:
            Per-task results, or None if a cycle was already running
        """
        if not self._begin():
            logger.info("Cache warming already in progress, skipping")
            return None

        started = time.monotonic()
        try:
            logger.info("Starting cache warming process")
            phase = self.ttl_engine.get_phase()
            try:
                tasks = self.plan.cycle_tasks(phase)
            except Exception as e:
                logger.error(f"Error generating warming tasks: {e}")
                tasks = []

            results = self.execute(tasks, self.concurrency, force=force)
            self._record(results, started)
            return results
        finally:
            self._end()

    def _record(self, results: List[WarmingResult], started: float) -> None:
        skipped = sum(1 for r in results if r.status == "skipped")
        succeeded = sum(1 for r in results if r.status == "success")
        failed = sum(1 for r in results if r.status == "failed")
        duration_ms = (time.monotonic() - started) * 1000

        with self._lock:
            self._stats["total_tasks"] += len(results)
            self._stats["completed_tasks"] += succeeded + skipped
            self._stats["skipped_tasks"] += skipped
            self._stats["failed_tasks"] += failed
            self._stats["last_duration_ms"] = round(duration_ms, 2)
            self._stats["cycles"] += 1
            self.last_run = self._clock()

        logger.info(
            f"Cache warming completed: {len(results)} tasks, "
            f"{succeeded} warmed, {skipped} already warm, {failed} failed "
            f"in {duration_ms:.0f}ms"
        )

    def warm_league_data(
        self,
        league_ids: Sequence[str],
        week: Optional[int] = None,
    ) -> List[WarmingResult]:
        """Warm the cache for specific leagues at reduced concurrency."""
        if self._in_progress:
            logger.info("Cache warming in progress, skipping league warming")
            return []

        tasks: List[WarmingTask] = []
        for league_id in league_ids:
            tasks.extend(self.plan.league_tasks(league_id, week))

        logger.info(f"Warming cache for {len(league_ids)} leagues")
        return self.execute(tasks, self.league_concurrency)

    def manual_warm(self, categories: Optional[Sequence[str]] = None) -> Dict[str, Any]:
        """Warm everything, or only tasks whose category matches one given."""
        if self._in_progress:
            return {"success": False, "message": "Cache warming already in progress"}

        if not categories:
            results = self.warm_cache()
            if results is None:
                return {"success": False, "message": "Cache warming already in progress"}
            warmed = sum(1 for r in results if r.status != "failed")
            return {"success": True, "message": f"Warmed {warmed} cache entries"}

        try:
            all_tasks = self.plan.cycle_tasks(self.ttl_engine.get_phase())
        except Exception as e:
            return {"success": False, "message": f"Cache warming failed: {e}"}

        selected = [
            task for task in all_tasks
            if any(category in task.data_category for category in categories)
        ]
        if not selected:
            return {
                "success": False,
                "message": f"No tasks found for data categories: {', '.join(categories)}",
            }

        self.execute(selected, self.concurrency)
        return {
            "success": True,
            "message": f"Warmed {len(selected)} cache entries for categories: {', '.join(categories)}",
        }

    def current_interval(self) -> int:
        """Seconds between cycles for the current league phase."""
        phase = self.ttl_engine.get_phase()
        if phase is not None and phase.phase.is_active:
            return self.active_interval
        return self.inactive_interval

    def scheduled_check(self) -> bool:
        """
        Run a cycle if the phase-dependent interval has elapsed.

        Returns:
            True if a cycle ran
        """
        interval = timedelta(seconds=self.current_interval())
        if self.last_run is not None and self._clock() - self.last_run < interval:
            return False
        return self.warm_cache() is not None

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            stats = dict(self._stats)
        return {
            "warming_in_progress": self._in_progress,
            "last_warming_time": self.last_run.isoformat() if self.last_run else None,
            "stats": stats,
        }

"""
Shared fixtures: in-memory backing store, static league state feed and a
controllable clock, so the cache can be exercised without Redis, the
Sleeper API or wall-clock waits.

Dates used throughout (league-local, America/New_York):
    2025-09-02 Tuesday   (waiver window 22:00-23:59)
    2025-09-03 Wednesday (waiver window 00:00-06:59)
    2025-09-05 Friday    (no windows)
    2025-09-07 Sunday    (game window 13:00-23:59)
"""
import threading
from datetime import datetime, timedelta
from typing import Dict, List, Optional

import pytest

from config.settings import Settings
from sleeper_cache.cache import (
    CacheWarmer,
    CompressionCodec,
    LeaguePhase,
    LocalTier,
    SeasonPhase,
    TaskPriority,
    TieredCacheStore,
    TTLPolicyEngine,
    WarmingTask,
    build_cache_system,
)


SUNDAY_GAME = datetime(2025, 9, 7, 15, 0)
SUNDAY_MORNING = datetime(2025, 9, 7, 10, 0)
TUESDAY_WAIVERS = datetime(2025, 9, 2, 23, 0)
FRIDAY_NOON = datetime(2025, 9, 5, 12, 0)


# =============================================================================
# Fakes
# =============================================================================

class FakeBackingStore:
    """Dict-backed stand-in for Redis. Set ``fail`` to simulate an outage."""

    def __init__(self):
        self.data: Dict[str, str] = {}
        self.ttls: Dict[str, int] = {}
        self.fail = False
        self.calls: List[str] = []

    def _check(self, op: str) -> None:
        self.calls.append(op)
        if self.fail:
            raise ConnectionError(f"redis {op} unavailable")

    def get(self, key: str) -> Optional[str]:
        self._check("get")
        return self.data.get(key)

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self._check("set")
        self.data[key] = value
        self.ttls[key] = ttl_seconds

    def delete(self, key: str) -> None:
        self._check("delete")
        self.data.pop(key, None)
        self.ttls.pop(key, None)

    def flush_all(self) -> None:
        self._check("flush_all")
        self.data.clear()
        self.ttls.clear()

    def ping(self) -> bool:
        self._check("ping")
        return True


class StaticPhaseFeed:
    """League state feed returning a fixed phase. Set ``error`` to make it fail."""

    def __init__(self, phase: Optional[LeaguePhase] = None):
        self.phase = phase or LeaguePhase(SeasonPhase.REGULAR, current_week=5, season="2025")
        self.error: Optional[Exception] = None
        self.calls = 0

    def get_current_phase(self) -> LeaguePhase:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.phase


class FakeClock:
    """Mutable clock returning naive league-local datetimes."""

    def __init__(self, start: datetime = FRIDAY_NOON):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class FakeTimer:
    """Mutable epoch-seconds clock for the local tier."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class StaticPlan:
    """Warming plan returning prebuilt tasks."""

    def __init__(self, tasks: Optional[List[WarmingTask]] = None):
        self.tasks = list(tasks or [])
        self.league_calls: List[tuple] = []

    def cycle_tasks(self, phase):
        return list(self.tasks)

    def league_tasks(self, league_id, week=None):
        self.league_calls.append((league_id, week))
        return [
            WarmingTask(
                key=f"league:{league_id}",
                producer=lambda: {"league_id": league_id},
                data_category="league",
                priority=TaskPriority.HIGH,
            )
        ]


class CountingProducer:
    """Producer that records how many times it ran."""

    def __init__(self, value=None, error: Optional[Exception] = None):
        self.value = value if value is not None else {"ok": True}
        self.error = error
        self.calls = 0
        self._lock = threading.Lock()

    def __call__(self):
        with self._lock:
            self.calls += 1
        if self.error is not None:
            raise self.error
        return self.value


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def timer():
    return FakeTimer()


@pytest.fixture
def phase_feed():
    return StaticPhaseFeed()


@pytest.fixture
def backing():
    return FakeBackingStore()


@pytest.fixture
def ttl_engine(phase_feed, clock):
    return TTLPolicyEngine(phase_feed=phase_feed, clock=clock)


@pytest.fixture
def codec():
    return CompressionCodec(enabled=True, threshold=1024, level=6)


@pytest.fixture
def local(timer):
    return LocalTier(clock=timer)


@pytest.fixture
def store(codec, ttl_engine, backing, local):
    """Tiered store with a reachable fake Redis in front of the local tier."""
    return TieredCacheStore(codec=codec, ttl_engine=ttl_engine, backing_store=backing, local=local)


@pytest.fixture
def memory_store(codec, ttl_engine, local):
    """Tiered store with no distributed tier configured."""
    return TieredCacheStore(codec=codec, ttl_engine=ttl_engine, local=local)


@pytest.fixture
def make_warmer(store, ttl_engine):
    def _make(tasks=None, **kwargs):
        kwargs.setdefault("batch_pause", 0)
        return CacheWarmer(store=store, ttl_engine=ttl_engine, plan=StaticPlan(tasks), **kwargs)
    return _make


@pytest.fixture
def test_settings():
    return Settings(
        _env_file=None,
        redis_url=None,
        scheduled_invalidation_delay=0.05,
        warming_task_timeout=2.0,
        warm_league_ids=[],
    )


@pytest.fixture
def cache_system(test_settings, phase_feed, backing, local):
    """Fully wired cache system over fakes. Background tasks are not started."""
    plan = StaticPlan([
        WarmingTask(
            key="state:nfl",
            producer=lambda: {"week": 5, "season_type": "regular"},
            data_category="nfl_state",
            priority=TaskPriority.HIGH,
        ),
        WarmingTask(
            key="players:trending:nfl:add::",
            producer=lambda: [{"player_id": "4046", "count": 120}],
            data_category="trending",
            priority=TaskPriority.MEDIUM,
        ),
    ])
    return build_cache_system(
        config=test_settings,
        phase_feed=phase_feed,
        backing_store=backing,
        plan=plan,
        local=local,
    )

"""
TTL configuration and the calendar-aware TTL policy engine.
"""
import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Protocol, Tuple
from zoneinfo import ZoneInfo

from .core import CacheContext, LeaguePhase, SeasonPhase, TTLStrategy

logger = logging.getLogger("cache.ttl_policies")

HOUR = 60 * 60
DAY = 24 * HOUR

# TTL strategies by data category (in seconds)
TTL_STRATEGIES: Dict[str, TTLStrategy] = {
    # User profiles - change infrequently
    "user": TTLStrategy(base_ttl=DAY, game_time_ttl=DAY, off_season_ttl=7 * DAY),
    # League settings - change rarely
    "league": TTLStrategy(base_ttl=12 * HOUR, game_time_ttl=12 * HOUR, off_season_ttl=DAY),
    # Rosters - churn during waivers and trades
    "roster": TTLStrategy(
        base_ttl=HOUR,
        game_time_ttl=HOUR,
        off_season_ttl=DAY,
        waiver_time_ttl=5 * 60,
    ),
    # Matchups - near real-time during games
    "matchup": TTLStrategy(base_ttl=HOUR, game_time_ttl=60, off_season_ttl=DAY),
    "transaction": TTLStrategy(base_ttl=30 * 60, game_time_ttl=10 * 60, off_season_ttl=12 * HOUR),
    "player": TTLStrategy(base_ttl=6 * HOUR, game_time_ttl=HOUR, off_season_ttl=7 * DAY),
    # Trending adds/drops - very dynamic
    "trending": TTLStrategy(base_ttl=15 * 60, game_time_ttl=5 * 60, off_season_ttl=HOUR),
    # Drafts - static once completed
    "draft": TTLStrategy(base_ttl=DAY, game_time_ttl=DAY, off_season_ttl=7 * DAY),
    "nfl_state": TTLStrategy(base_ttl=5 * 60, game_time_ttl=60, off_season_ttl=HOUR),
}

DEFAULT_TTL = 300            # Unknown categories
MIN_TTL = 30                 # Floor for every computed TTL
MIN_REFRESH_SECONDS = 300    # League state is never polled more often than this

# Broadcast windows, league-local time.
# (weekday, first_hour, last_hour) with Monday == 0, hours inclusive.
GAME_WINDOWS: List[Tuple[int, int, int]] = [
    (3, 20, 23),   # Thursday night
    (6, 13, 23),   # Sunday slate
    (0, 20, 23),   # Monday night
]

# Waiver processing: Tuesday 10 PM - Wednesday 6 AM
WAIVER_WINDOWS: List[Tuple[int, int, int]] = [
    (1, 22, 23),
    (2, 0, 6),
]

GAME_DAYS = {w for w, _, _ in GAME_WINDOWS}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def in_windows(moment: datetime, windows: List[Tuple[int, int, int]]) -> bool:
    """Check whether a league-local datetime falls inside any window."""
    weekday = moment.weekday()
    hour = moment.hour
    return any(
        weekday == day and first <= hour <= last
        for day, first, last in windows
    )


class LeaguePhaseFeed(Protocol):
    """Source of league calendar state, polled by the engine."""

    def get_current_phase(self) -> LeaguePhase:
        ...


class TTLPolicyEngine:
    """
    Maps (data category, league calendar context) to a TTL.

    The league phase is cached locally and refreshed from the feed at most
    once per refresh interval; a failed refresh keeps the previous snapshot.
    """

    def __init__(
        self,
        phase_feed: Optional[LeaguePhaseFeed] = None,
        strategies: Optional[Dict[str, TTLStrategy]] = None,
        refresh_interval: int = MIN_REFRESH_SECONDS,
        league_timezone: str = "America/New_York",
        clock: Callable[[], datetime] = _utcnow,
    ):
        """
        Initialize the policy engine.

        Args:
            phase_feed: League state feed (None means phase stays unknown
                        unless set with set_phase)
            strategies: Strategy table, defaults to a copy of TTL_STRATEGIES
            refresh_interval: Seconds between feed polls (minimum 300)
            league_timezone: Timezone the game and waiver windows are defined in
            clock: Returns the current time; naive results are read as league-local
        """
        self._feed = phase_feed
        self._strategies: Dict[str, TTLStrategy] = dict(strategies or TTL_STRATEGIES)
        self._refresh_interval = max(refresh_interval, MIN_REFRESH_SECONDS)
        self._tz = ZoneInfo(league_timezone)
        self._clock = clock
        self._lock = threading.Lock()
        self._phase: Optional[LeaguePhase] = None
        self._last_refresh: Optional[datetime] = None
        self._refreshing = False

    # ------------------------------------------------------------------
    # League state
    # ------------------------------------------------------------------

    def local_time(self, now: Optional[datetime] = None) -> datetime:
        moment = now or self._clock()
        if moment.tzinfo is None:
            return moment
        return moment.astimezone(self._tz)

    def _refresh_due(self, now: datetime) -> bool:
        if self._phase is None or self._last_refresh is None:
            return True
        return now - self._last_refresh >= timedelta(seconds=self._refresh_interval)

    def get_phase(self) -> Optional[LeaguePhase]:
        """
        Return the league phase snapshot, polling the feed if it is stale.

        The feed is called outside the lock: while one caller refreshes,
        others get the current snapshot instead of waiting on the network.
        """
        with self._lock:
            now = self._clock()
            if self._feed is None or self._refreshing or not self._refresh_due(now):
                return self._phase
            self._begin_refresh_locked(now)
        return self._finish_refresh()

    def refresh_phase(self) -> Optional[LeaguePhase]:
        """Poll the feed now regardless of the refresh interval."""
        with self._lock:
            if self._feed is None or self._refreshing:
                return self._phase
            self._begin_refresh_locked(self._clock())
        return self._finish_refresh()

    def _begin_refresh_locked(self, now: datetime) -> None:
        # Stamp the attempt first so a failing feed is not hammered
        self._last_refresh = now
        self._refreshing = True

    def _finish_refresh(self) -> Optional[LeaguePhase]:
        try:
            phase = self._feed.get_current_phase()
        except Exception as e:
            logger.warning(f"Failed to update league state: {e}")
            with self._lock:
                self._refreshing = False
                return self._phase

        with self._lock:
            self._phase = phase
            self._refreshing = False
        logger.debug(
            f"Updated league state: season={phase.season} "
            f"week={phase.current_week} phase={phase.phase.value}"
        )
        return phase

    def set_phase(self, phase: Optional[LeaguePhase]) -> None:
        """Replace the snapshot directly (operator override)."""
        with self._lock:
            self._phase = phase
            self._last_refresh = self._clock()

    @property
    def last_refresh(self) -> Optional[datetime]:
        return self._last_refresh

    # ------------------------------------------------------------------
    # Calendar windows
    # ------------------------------------------------------------------

    def is_game_time(self, now: Optional[datetime] = None) -> bool:
        """True during a broadcast window of an active season."""
        phase = self.get_phase()
        if phase is None or not phase.phase.is_active:
            return False
        return in_windows(self.local_time(now), GAME_WINDOWS)

    def is_waiver_time(self, now: Optional[datetime] = None) -> bool:
        """True during the weekly waiver processing window."""
        return in_windows(self.local_time(now), WAIVER_WINDOWS)

    def is_game_day(self, now: Optional[datetime] = None) -> bool:
        return self.local_time(now).weekday() in GAME_DAYS

    # ------------------------------------------------------------------
    # TTL computation
    # ------------------------------------------------------------------

    def get_optimal_ttl(self, context: CacheContext) -> int:
        """
        Compute the TTL for a cache context.

        Off-season dominates, then the roster waiver window, then game
        windows, then the base TTL. Week-scoped data is then shortened for
        the current week or lengthened for future weeks, and the result is
        floored at MIN_TTL.
        """
        strategy = self._strategies.get(context.data_category)
        if strategy is None:
            logger.warning(f"No TTL strategy found for data category: {context.data_category}")
            return DEFAULT_TTL

        phase = self.get_phase()
        now = context.now

        if phase is None or phase.phase == SeasonPhase.PRE:
            ttl = strategy.off_season_ttl
        elif (
            context.data_category == "roster"
            and strategy.waiver_time_ttl
            and self.is_waiver_time(now)
        ):
            ttl = strategy.waiver_time_ttl
        elif in_windows(self.local_time(now), GAME_WINDOWS):
            ttl = strategy.game_time_ttl
        else:
            ttl = strategy.base_ttl

        if context.entity_week is not None and phase is not None:
            if context.entity_week == phase.current_week:
                # Current week is the most volatile
                ttl = int(ttl * 0.5)
            elif context.entity_week > phase.current_week:
                ttl = int(ttl * 1.5)

        return max(ttl, MIN_TTL)

    def get_contextual_ttl(
        self,
        data_category: str,
        context: Optional[CacheContext] = None,
        entity_week: Optional[int] = None,
    ) -> int:
        """
        Get the TTL for a category, optionally with extra context.

        Args:
            data_category: Category name (e.g., "matchup")
            context: Partial context; its category is overridden
            entity_week: Week the cached data belongs to
        """
        if context is None:
            context = CacheContext(data_category=data_category, entity_week=entity_week)
        else:
            context = CacheContext(
                data_category=data_category,
                entity_week=entity_week if entity_week is not None else context.entity_week,
                league_id=context.league_id,
                now=context.now,
            )
        return self.get_optimal_ttl(context)

    # ------------------------------------------------------------------
    # Strategy table
    # ------------------------------------------------------------------

    def get_strategies(self) -> Dict[str, TTLStrategy]:
        with self._lock:
            return dict(self._strategies)

    def update_strategy(self, data_category: str, **fields) -> bool:
        """
        Update TTL fields for a known category.

        Returns:
            True if the category exists and was updated
        """
        with self._lock:
            current = self._strategies.get(data_category)
            if current is None:
                logger.warning(f"Cannot update strategy for unknown data category: {data_category}")
                return False
            merged = {
                "base_ttl": current.base_ttl,
                "game_time_ttl": current.game_time_ttl,
                "off_season_ttl": current.off_season_ttl,
                "waiver_time_ttl": current.waiver_time_ttl,
            }
            merged.update(fields)
            self._strategies[data_category] = TTLStrategy(**merged)
        logger.info(f"Updated TTL strategy for {data_category}: {fields}")
        return True

    def add_strategy(self, data_category: str, strategy: TTLStrategy) -> None:
        """Register a strategy for a new category."""
        with self._lock:
            self._strategies[data_category] = strategy
        logger.info(f"Added TTL strategy for {data_category}")

    def get_stats(self) -> Dict:
        """Current calendar state, for monitoring."""
        phase = self.get_phase()
        return {
            "league_state": {
                "phase": phase.phase.value,
                "week": phase.current_week,
                "season": phase.season,
            } if phase else None,
            "is_game_time": self.is_game_time(),
            "is_waiver_time": self.is_waiver_time(),
            "last_state_update": self._last_refresh.isoformat() if self._last_refresh else None,
            "strategies": sorted(self._strategies),
        }

"""
Unit tests for the calendar-aware TTL policy engine.
"""
import threading
import time
from datetime import datetime, timezone

import pytest

from sleeper_cache.cache import (
    CacheContext,
    LeaguePhase,
    SeasonPhase,
    TTL_STRATEGIES,
    TTLPolicyEngine,
    TTLStrategy,
)
from tests.conftest import (
    FRIDAY_NOON,
    SUNDAY_GAME,
    SUNDAY_MORNING,
    TUESDAY_WAIVERS,
    FakeClock,
    StaticPhaseFeed,
)


def _engine(phase=SeasonPhase.REGULAR, week=5, at=FRIDAY_NOON, strategies=None):
    feed = StaticPhaseFeed(LeaguePhase(phase, current_week=week, season="2025"))
    return TTLPolicyEngine(phase_feed=feed, strategies=strategies, clock=FakeClock(at))


class TestStrategies:

    def test_all_durations_positive(self):
        """Built-in strategies only hold positive durations"""
        for strategy in TTL_STRATEGIES.values():
            assert strategy.base_ttl > 0
            assert strategy.game_time_ttl > 0
            assert strategy.off_season_ttl > 0

    def test_only_roster_has_waiver_ttl(self):
        """Roster is the only category with waiver-window behavior"""
        with_waiver = [name for name, s in TTL_STRATEGIES.items() if s.waiver_time_ttl]
        assert with_waiver == ["roster"]

    def test_non_positive_duration_rejected(self):
        """TTLStrategy refuses zero or negative durations"""
        with pytest.raises(ValueError):
            TTLStrategy(base_ttl=0, game_time_ttl=60, off_season_ttl=60)

    def test_update_strategy(self):
        """Known categories can be retuned; unknown ones are refused"""
        engine = _engine()
        assert engine.update_strategy("matchup", base_ttl=1200) is True
        assert engine.get_strategies()["matchup"].base_ttl == 1200
        assert engine.get_strategies()["matchup"].game_time_ttl == 60
        assert engine.update_strategy("weather", base_ttl=10) is False

    def test_engine_copies_default_table(self):
        """Retuning one engine leaves the module defaults alone"""
        _engine().update_strategy("trending", base_ttl=999)
        assert TTL_STRATEGIES["trending"].base_ttl == 900


class TestOptimalTTL:

    def test_matchup_inside_game_window(self):
        """Matchups refresh every minute during the Sunday slate"""
        engine = _engine(at=SUNDAY_GAME)
        assert engine.get_contextual_ttl("matchup") == 60

    def test_matchup_outside_game_window(self):
        """Outside game windows matchups use the base TTL"""
        engine = _engine(at=FRIDAY_NOON)
        assert engine.get_contextual_ttl("matchup") == 3600

    def test_sunday_before_kickoff_is_not_game_time(self):
        """Sunday morning is a game day but not a game window"""
        engine = _engine(at=SUNDAY_MORNING)
        assert engine.is_game_day() is True
        assert engine.is_game_time() is False
        assert engine.get_contextual_ttl("matchup") == 3600

    def test_current_week_halves_ttl(self):
        """Current-week data gets half the TTL"""
        engine = _engine(at=FRIDAY_NOON, week=5)
        assert engine.get_contextual_ttl("matchup", entity_week=5) == 1800

    def test_future_week_extends_ttl(self):
        """Future-week data gets 1.5x the TTL"""
        engine = _engine(at=FRIDAY_NOON, week=5)
        assert engine.get_contextual_ttl("matchup", entity_week=7) == 5400

    def test_past_week_unchanged(self):
        """Past-week data keeps the window TTL"""
        engine = _engine(at=FRIDAY_NOON, week=5)
        assert engine.get_contextual_ttl("matchup", entity_week=2) == 3600

    def test_floor_applies_after_week_adjustment(self):
        """Halving a game-time TTL never goes under 30 seconds"""
        engine = _engine(at=SUNDAY_GAME, week=5)
        assert engine.get_contextual_ttl("nfl_state", entity_week=5) == 30

    def test_floor_for_tiny_strategy(self):
        """Even strategies shorter than the floor are clamped"""
        strategies = {"ticker": TTLStrategy(base_ttl=5, game_time_ttl=1, off_season_ttl=10)}
        for at in (FRIDAY_NOON, SUNDAY_GAME, TUESDAY_WAIVERS):
            for week in (None, 4, 5, 6):
                engine = _engine(at=at, strategies=strategies)
                assert engine.get_contextual_ttl("ticker", entity_week=week) >= 30

    def test_floor_across_every_category_and_window(self):
        """No category, window, phase or week combination goes under 30 seconds"""
        for phase in SeasonPhase:
            for at in (FRIDAY_NOON, SUNDAY_GAME, TUESDAY_WAIVERS):
                engine = _engine(phase=phase, at=at)
                for category in TTL_STRATEGIES:
                    for week in (None, 1, 5, 18):
                        assert engine.get_contextual_ttl(category, entity_week=week) >= 30

    def test_unknown_category_gets_default(self):
        """Unknown categories fall back to five minutes"""
        assert _engine().get_contextual_ttl("weather") == 300


class TestOffSeason:

    def test_off_season_dominates_game_window(self):
        """Pre-season uses the off-season TTL even inside a game window"""
        engine = _engine(phase=SeasonPhase.PRE, at=SUNDAY_GAME)
        assert engine.get_contextual_ttl("matchup") == 86400

    def test_off_season_dominates_waiver_window(self):
        """Pre-season uses the off-season TTL even during waivers"""
        engine = _engine(phase=SeasonPhase.PRE, at=TUESDAY_WAIVERS)
        assert engine.get_contextual_ttl("roster") == 86400

    def test_unknown_phase_treated_as_off_season(self):
        """Without any league state the off-season TTL is used"""
        engine = TTLPolicyEngine(clock=FakeClock(SUNDAY_GAME))
        assert engine.get_contextual_ttl("player") == 604800

    def test_off_season_is_never_game_time(self):
        """Game windows only count in an active season"""
        engine = _engine(phase=SeasonPhase.PRE, at=SUNDAY_GAME)
        assert engine.is_game_time() is False


class TestWaiverWindow:

    def test_roster_uses_waiver_ttl(self):
        """Rosters refresh every five minutes while waivers process"""
        engine = _engine(at=TUESDAY_WAIVERS)
        assert engine.is_waiver_time() is True
        assert engine.get_contextual_ttl("roster") == 300

    def test_waiver_window_spans_midnight(self):
        """Wednesday early morning is still waiver time"""
        engine = _engine(at=datetime(2025, 9, 3, 4, 30))
        assert engine.is_waiver_time() is True
        assert engine.get_contextual_ttl("roster") == 300

    def test_waiver_window_closes(self):
        """Wednesday 07:00 is past the waiver window"""
        engine = _engine(at=datetime(2025, 9, 3, 7, 0))
        assert engine.is_waiver_time() is False
        assert engine.get_contextual_ttl("roster") == 3600

    def test_other_categories_ignore_waivers(self):
        """Only rosters react to the waiver window"""
        engine = _engine(at=TUESDAY_WAIVERS)
        assert engine.get_contextual_ttl("transaction") == 1800


class TestLeagueTime:

    def test_aware_datetimes_converted_to_league_time(self):
        """UTC times are judged in league-local time"""
        engine = _engine()
        # 16:30 UTC is 12:30 in New York, before the Sunday slate
        assert engine.is_game_time(datetime(2025, 9, 7, 16, 30, tzinfo=timezone.utc)) is False
        # 18:00 UTC is 14:00 in New York
        assert engine.is_game_time(datetime(2025, 9, 7, 18, 0, tzinfo=timezone.utc)) is True

    def test_context_time_overrides_clock(self):
        """An explicit time in the context is used instead of the clock"""
        engine = _engine(at=FRIDAY_NOON)
        context = CacheContext(data_category="matchup", now=SUNDAY_GAME)
        assert engine.get_optimal_ttl(context) == 60


class TestPhaseRefresh:

    def test_feed_polled_at_most_once_per_interval(self):
        """The feed is not polled again within the refresh interval"""
        feed = StaticPhaseFeed()
        clock = FakeClock(FRIDAY_NOON)
        engine = TTLPolicyEngine(phase_feed=feed, clock=clock)
        engine.get_phase()
        clock.advance(120)
        engine.get_phase()
        assert feed.calls == 1
        clock.advance(300)
        engine.get_phase()
        assert feed.calls == 2

    def test_refresh_interval_has_minimum(self):
        """Intervals under five minutes are raised to five minutes"""
        feed = StaticPhaseFeed()
        clock = FakeClock(FRIDAY_NOON)
        engine = TTLPolicyEngine(phase_feed=feed, refresh_interval=10, clock=clock)
        engine.get_phase()
        clock.advance(60)
        engine.get_phase()
        assert feed.calls == 1

    def test_failed_refresh_keeps_previous_snapshot(self):
        """A feed failure keeps serving the last known phase"""
        feed = StaticPhaseFeed()
        clock = FakeClock(FRIDAY_NOON)
        engine = TTLPolicyEngine(phase_feed=feed, clock=clock)
        first = engine.get_phase()

        feed.error = ConnectionError("sleeper down")
        clock.advance(600)
        assert engine.get_phase() == first

    def test_slow_feed_does_not_block_readers(self):
        """Readers get the previous snapshot while a refresh is in flight"""
        clock = FakeClock(FRIDAY_NOON)
        feed = StaticPhaseFeed()
        engine = TTLPolicyEngine(phase_feed=feed, clock=clock)
        first = engine.get_phase()

        entered = threading.Event()
        release = threading.Event()
        newer = LeaguePhase(SeasonPhase.POST, current_week=18, season="2025")

        def slow_phase():
            entered.set()
            release.wait(5.0)
            return newer

        feed.get_current_phase = slow_phase
        clock.advance(600)
        refresher = threading.Thread(target=engine.get_phase)
        refresher.start()
        try:
            assert entered.wait(5.0)
            started = time.monotonic()
            assert engine.get_phase() == first
            assert "matchup" in engine.get_strategies()
            assert engine.refresh_phase() == first
            assert time.monotonic() - started < 1.0
        finally:
            release.set()
            refresher.join(5.0)

        assert engine.get_phase() == newer

    def test_set_phase_overrides_feed(self):
        """An operator override is used until the next refresh is due"""
        engine = _engine(phase=SeasonPhase.REGULAR)
        engine.set_phase(LeaguePhase(SeasonPhase.PRE, current_week=0))
        assert engine.get_phase().phase == SeasonPhase.PRE

    def test_from_state_parses_sleeper_payload(self):
        """The /state/nfl payload maps onto a LeaguePhase"""
        phase = LeaguePhase.from_state({"season_type": "regular", "week": 10, "season": "2025"})
        assert phase == LeaguePhase(SeasonPhase.REGULAR, current_week=10, season="2025")
        assert phase.phase.is_active is True

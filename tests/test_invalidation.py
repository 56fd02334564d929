"""
Unit tests for rule-driven cache invalidation.
"""
import time

import pytest

from sleeper_cache.cache import (
    CacheInvalidator,
    InvalidationRule,
    LeaguePhase,
    RulePriority,
    SeasonPhase,
)
from tests.conftest import FRIDAY_NOON, SUNDAY_GAME, TUESDAY_WAIVERS


@pytest.fixture
def invalidator(memory_store, ttl_engine, clock):
    return CacheInvalidator(store=memory_store, ttl_engine=ttl_engine, scheduled_delay=60, clock=clock)


@pytest.fixture
def populated(memory_store):
    keys = [
        "matchups:1:5",
        "matchups:2:5",
        "rosters:1",
        "players:trending:nfl:add::",
        "transactions:1:5",
        "state:nfl",
        "league:1",
        "users:1",
    ]
    for key in keys:
        memory_store.set(key, {"key": key}, ttl=3600)
    return memory_store


class BrokenPattern:
    """Pattern stand-in whose matching blows up."""
    pattern = "broken"

    def search(self, key):
        raise RuntimeError("regex engine failure")


class TestPatternInvalidation:

    def test_pattern_isolation(self, invalidator, memory_store):
        """Only keys with the matching prefix are removed"""
        for key in ("foo:1", "foo:2", "bar:1", "xfoo:1"):
            memory_store.set(key, 1, ttl=60)
        assert invalidator.invalidate_by_pattern(r"^foo:") == 2
        assert sorted(memory_store.keys()) == ["bar:1", "xfoo:1"]

    def test_no_match(self, invalidator, populated):
        """A pattern with no matches removes nothing"""
        assert invalidator.invalidate_by_pattern(r"^drafts:") == 0
        assert len(populated.keys()) == 8

    def test_invalidate_keys(self, invalidator, populated):
        """Specific keys are removed; unknown keys are ignored"""
        assert invalidator.invalidate_keys(["league:1", "users:1", "league:404"]) == 2
        assert populated.exists("league:1") is False

    def test_league_invalidation(self, invalidator, memory_store):
        """All data for one league goes; other leagues stay"""
        doomed = [
            "league:1", "rosters:1", "users:1", "matchups:1:5",
            "transactions:1:3", "bracket:1", "bracket:1:winners",
        ]
        survivors = ["league:12", "rosters:12", "matchups:12:5", "state:nfl"]
        for key in doomed + survivors:
            memory_store.set(key, 1, ttl=60)

        assert invalidator.invalidate_league("1") == len(doomed)
        assert sorted(memory_store.keys()) == sorted(survivors)


class TestTriggers:

    def test_immediate_rule(self, invalidator, populated):
        """game_start clears matchups right away"""
        assert invalidator.invalidate_by_trigger("game_start") == 2
        assert populated.exists("matchups:1:5") is False
        assert populated.exists("rosters:1") is True

    def test_unknown_trigger(self, invalidator, populated):
        """Triggers with no rules remove nothing"""
        assert invalidator.invalidate_by_trigger("halftime") == 0
        assert len(populated.keys()) == 8

    def test_scheduled_rules_deferred(self, invalidator, populated):
        """Scheduled rules wait for the delay or an explicit flush"""
        assert invalidator.invalidate_by_trigger("waiver_period") == 0
        assert populated.exists("players:trending:nfl:add::") is True
        assert invalidator.pending_count == 2

        assert invalidator.flush_scheduled() == 2
        assert populated.exists("players:trending:nfl:add::") is False
        assert populated.exists("transactions:1:5") is False
        assert invalidator.pending_count == 0

    def test_burst_collapses(self, invalidator, populated):
        """Repeated triggers queue each scheduled rule once"""
        for _ in range(3):
            invalidator.invalidate_by_trigger("waiver_period")
        assert invalidator.pending_count == 2
        invalidator.flush_pending()

    def test_scheduled_timer_fires(self, memory_store, ttl_engine, clock, populated):
        """Scheduled rules apply on their own after the delay"""
        invalidator = CacheInvalidator(
            store=memory_store, ttl_engine=ttl_engine, scheduled_delay=0.05, clock=clock
        )
        invalidator.invalidate_by_trigger("injury_report")

        deadline = time.monotonic() + 5.0
        while memory_store.exists("players:trending:nfl:add::") and time.monotonic() < deadline:
            time.sleep(0.02)
        assert memory_store.exists("players:trending:nfl:add::") is False

    def test_batch_rule_waits_for_check(self, invalidator, populated):
        """Batch rules are held until the next schedule check"""
        invalidator.add_rule(InvalidationRule(
            pattern=r"^users:",
            triggers={"season_rollover"},
            description="User data after rollover",
            priority=RulePriority.BATCH,
        ))
        invalidator.invalidate_by_trigger("season_rollover")
        assert populated.exists("users:1") is True

        invalidator.check_schedule()
        assert populated.exists("users:1") is False

    def test_failing_rule_isolated(self, invalidator, populated):
        """One failing rule does not stop its siblings"""
        invalidator.add_rule(InvalidationRule(
            pattern=BrokenPattern(),
            triggers={"game_start"},
            description="Broken rule",
        ))
        assert invalidator.invalidate_by_trigger("game_start") == 2
        assert populated.exists("matchups:2:5") is False

    def test_manual_trigger(self, invalidator, populated):
        """Operator triggers report their outcome"""
        result = invalidator.manual_trigger("week_change")
        assert result["success"] is True
        assert result["removed"] == 1
        assert "week_change" in result["message"]

    def test_stats(self, invalidator, populated):
        """Removed keys are tallied by pattern"""
        invalidator.invalidate_by_trigger("game_start")
        stats = invalidator.get_stats()
        assert stats["stats"]["total_invalidations"] == 2
        assert stats["stats"]["keys_by_pattern"]["^matchups:"] == 2
        assert stats["last_invalidation_run"] is not None
        assert len(stats["rules"]) == 5


class TestScheduleCheck:

    def test_quiet_weekday(self, invalidator, populated, clock):
        """Friday noon fires nothing"""
        clock.now = FRIDAY_NOON
        assert invalidator.check_schedule() == []

    def test_sunday_game_window(self, invalidator, populated, clock):
        """A Sunday game window fires game_day and game_start"""
        clock.now = SUNDAY_GAME
        assert invalidator.check_schedule() == ["game_day", "game_start"]
        assert populated.exists("matchups:1:5") is False

    def test_cooldowns(self, invalidator, populated, clock):
        """Triggers do not refire within their cooldown"""
        clock.now = SUNDAY_GAME
        invalidator.check_schedule()
        assert invalidator.check_schedule() == []

        clock.advance(61 * 60)
        assert invalidator.check_schedule() == ["game_start"]

    def test_waiver_window(self, invalidator, populated, clock):
        """Waiver processing fires waiver_period"""
        clock.now = TUESDAY_WAIVERS
        assert invalidator.check_schedule() == ["waiver_period"]
        assert invalidator.pending_count == 2
        invalidator.flush_pending()

    def test_week_change(self, invalidator, populated, clock, phase_feed):
        """A new week in the league state fires week_change"""
        clock.now = FRIDAY_NOON
        invalidator.check_schedule()

        phase_feed.phase = LeaguePhase(SeasonPhase.REGULAR, current_week=6, season="2025")
        clock.advance(301)
        assert invalidator.check_schedule() == ["week_change"]
        assert populated.exists("state:nfl") is False

    def test_off_season_has_no_game_start(self, invalidator, populated, clock, phase_feed):
        """Game windows do not fire outside an active season"""
        phase_feed.phase = LeaguePhase(SeasonPhase.PRE, current_week=0, season="2025")
        clock.now = SUNDAY_GAME
        assert invalidator.check_schedule() == ["game_day"]
        assert populated.exists("matchups:1:5") is True

    def test_purges_expired_entries(self, invalidator, memory_store, local, timer, clock):
        """The check drops expired local entries"""
        clock.now = FRIDAY_NOON
        memory_store.set("short", 1, ttl=30)
        memory_store.set("long", 1, ttl=3600)
        timer.advance(60)
        invalidator.check_schedule()
        assert len(local) == 1

"""
Rule-driven cache invalidation.

Named triggers (game_start, waiver_period, week_change, ...) map to key
patterns through InvalidationRules. Pattern matching runs against the local
tier's key set; matched keys are deleted from both tiers. Keys that exist
only in Redis (written by another replica) are left to expire on their own.
"""
import logging
import re
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from .core import InvalidationRule, RulePriority
from .store import TieredCacheStore
from .ttl_policies import TTLPolicyEngine

logger = logging.getLogger("cache.invalidation")

Pattern = Union[str, "re.Pattern[str]"]

# Minimum spacing between automatic firings of the same trigger
TRIGGER_COOLDOWNS: Dict[str, timedelta] = {
    "week_change": timedelta(hours=1),
    "waiver_period": timedelta(hours=12),
    "game_day": timedelta(hours=6),
    "game_start": timedelta(hours=1),
}


def default_rules() -> List[InvalidationRule]:
    """The built-in rule table."""
    return [
        InvalidationRule(
            pattern=r"^matchups:",
            triggers={"game_start", "game_end", "score_update"},
            description="Matchup data during games",
            priority=RulePriority.IMMEDIATE,
        ),
        InvalidationRule(
            pattern=r"^rosters:",
            triggers={"waiver_start", "waiver_end", "trade_completed"},
            description="Roster data during transactions",
            priority=RulePriority.IMMEDIATE,
        ),
        InvalidationRule(
            pattern=r"^players:trending:",
            triggers={"waiver_period", "game_day", "injury_report", "optimization"},
            description="Trending player data",
            priority=RulePriority.SCHEDULED,
        ),
        InvalidationRule(
            pattern=r"^transactions:",
            triggers={"waiver_period", "trade_deadline", "roster_moves", "optimization"},
            description="Transaction data",
            priority=RulePriority.SCHEDULED,
        ),
        InvalidationRule(
            pattern=r"^state:nfl",
            triggers={"week_change", "season_change", "schedule_update"},
            description="NFL state data",
            priority=RulePriority.IMMEDIATE,
        ),
    ]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CacheInvalidator:
    """
    Applies invalidation rules when triggers fire.

    Immediate rules run synchronously. Scheduled rules are held for a short
    delay so a burst of the same trigger collapses into one pass. Batch rules
    wait for the next automatic schedule check (or flush_pending).
    """

    def __init__(
        self,
        store: TieredCacheStore,
        ttl_engine: TTLPolicyEngine,
        rules: Optional[List[InvalidationRule]] = None,
        scheduled_delay: float = 1.0,
        cooldowns: Optional[Dict[str, timedelta]] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.ttl_engine = ttl_engine
        self.scheduled_delay = scheduled_delay
        self._rules: List[InvalidationRule] = list(rules) if rules is not None else default_rules()
        self._cooldowns = dict(TRIGGER_COOLDOWNS)
        if cooldowns:
            self._cooldowns.update(cooldowns)
        self._clock = clock

        self._lock = threading.Lock()
        self._pending_scheduled: List[InvalidationRule] = []
        self._pending_batch: List[InvalidationRule] = []
        self._timer: Optional[threading.Timer] = None

        self._last_fired: Dict[str, datetime] = {}
        self._last_seen_week: Optional[int] = None
        self.last_run: Optional[datetime] = None
        self._stats: Dict[str, Any] = {
            "total_invalidations": 0,
            "keys_by_pattern": {},
            "last_run_duration_ms": 0.0,
        }

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------

    def add_rule(self, rule: InvalidationRule) -> None:
        """Register an operator-supplied rule."""
        with self._lock:
            self._rules.append(rule)
        logger.info(
            f"Added invalidation rule {rule.pattern.pattern} "
            f"for triggers {sorted(rule.triggers)}: {rule.description}"
        )

    @property
    def rules(self) -> List[InvalidationRule]:
        with self._lock:
            return list(self._rules)

    # ------------------------------------------------------------------
    # Trigger processing
    # ------------------------------------------------------------------

    def invalidate_by_trigger(self, trigger: str) -> int:
        """
        Fire a trigger.

        Returns:
            Number of keys removed by the immediate rules
        """
        started = time.monotonic()
        logger.info(f"Cache invalidation triggered: {trigger}")

        matching = [rule for rule in self.rules if rule.matches_trigger(trigger)]
        if not matching:
            logger.debug(f"No invalidation rules match trigger: {trigger}")
            return 0

        immediate = [r for r in matching if r.priority == RulePriority.IMMEDIATE]
        scheduled = [r for r in matching if r.priority == RulePriority.SCHEDULED]
        batch = [r for r in matching if r.priority == RulePriority.BATCH]

        removed = self._process_rules(immediate) if immediate else 0
        if scheduled:
            self._schedule(scheduled)
        if batch:
            with self._lock:
                self._queue(self._pending_batch, batch)

        duration_ms = (time.monotonic() - started) * 1000
        with self._lock:
            self._stats["last_run_duration_ms"] = round(duration_ms, 2)
        self.last_run = self._clock()

        logger.info(
            f"Cache invalidation completed for trigger {trigger}: "
            f"{len(matching)} rules, {removed} keys removed immediately"
        )
        return removed

    @staticmethod
    def _queue(pending: List[InvalidationRule], rules: Iterable[InvalidationRule]) -> None:
        for rule in rules:
            if not any(rule is queued for queued in pending):
                pending.append(rule)

    def _schedule(self, rules: List[InvalidationRule]) -> None:
        with self._lock:
            self._queue(self._pending_scheduled, rules)
            if self._timer is None:
                self._timer = threading.Timer(self.scheduled_delay, self.flush_scheduled)
                self._timer.daemon = True
                self._timer.start()

    def flush_scheduled(self) -> int:
        """Apply scheduled rules now. Returns keys removed."""
        with self._lock:
            rules = self._pending_scheduled
            self._pending_scheduled = []
            timer = self._timer
            self._timer = None
        if timer is not None:
            timer.cancel()
        return self._process_rules(rules)

    def flush_batch(self) -> int:
        """Apply held batch rules. Returns keys removed."""
        with self._lock:
            rules = self._pending_batch
            self._pending_batch = []
        return self._process_rules(rules)

    def flush_pending(self) -> int:
        """Apply every deferred rule (scheduled and batch). Returns keys removed."""
        return self.flush_scheduled() + self.flush_batch()

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending_scheduled) + len(self._pending_batch)

    def _process_rules(self, rules: List[InvalidationRule]) -> int:
        removed = 0
        for rule in rules:
            try:
                removed += self.invalidate_by_pattern(rule.pattern, rule.description)
            except Exception as e:
                logger.error(f"Failed to process invalidation rule {rule.description}: {e}")
        return removed

    # ------------------------------------------------------------------
    # Direct invalidation
    # ------------------------------------------------------------------

    def invalidate_by_pattern(self, pattern: Pattern, description: Optional[str] = None) -> int:
        """
        Delete every locally known key matching a regex.

        Returns:
            Number of keys deleted
        """
        regex = re.compile(pattern) if isinstance(pattern, str) else pattern
        matched = [key for key in self.store.keys() if regex.search(key)]
        for key in matched:
            self.store.delete(key)

        with self._lock:
            self._stats["total_invalidations"] += len(matched)
            by_pattern = self._stats["keys_by_pattern"]
            by_pattern[regex.pattern] = by_pattern.get(regex.pattern, 0) + len(matched)

        if matched:
            suffix = f" ({description})" if description else ""
            logger.info(f"Invalidated {len(matched)} entries matching '{regex.pattern}'{suffix}")
        return len(matched)

    def invalidate_keys(self, keys: Iterable[str]) -> int:
        """Delete specific keys. Returns how many were held locally."""
        removed = sum(1 for key in keys if self.store.delete(key))
        with self._lock:
            self._stats["total_invalidations"] += removed
        if removed:
            logger.info(f"Manually invalidated {removed} cache entries")
        return removed

    def invalidate_league(self, league_id: str) -> int:
        """Delete all cached data scoped to one league."""
        lid = re.escape(str(league_id))
        patterns = [
            rf"^league:{lid}(?::|$)",
            rf"^rosters:{lid}(?::|$)",
            rf"^users:{lid}(?::|$)",
            rf"^matchups:{lid}:",
            rf"^transactions:{lid}:",
            rf"bracket:{lid}(?::|$)",
        ]
        total = sum(
            self.invalidate_by_pattern(p, f"League {league_id} data") for p in patterns
        )
        logger.info(f"Invalidated {total} cache entries for league {league_id}")
        return total

    def cleanup_expired_entries(self) -> int:
        """Drop expired local entries. Returns the number removed."""
        return self.store.local.purge_expired()

    def manual_trigger(self, trigger: str) -> Dict[str, Any]:
        """Fire a trigger on operator request."""
        try:
            removed = self.invalidate_by_trigger(trigger)
        except Exception as e:
            logger.error(f"Manual invalidation {trigger} failed: {e}")
            return {"success": False, "message": f"Failed to trigger invalidation: {e}"}
        return {
            "success": True,
            "message": f"Successfully triggered invalidation: {trigger}",
            "removed": removed,
        }

    # ------------------------------------------------------------------
    # Calendar-driven triggers
    # ------------------------------------------------------------------

    def recently_triggered(self, trigger: str, within: timedelta) -> bool:
        fired = self._last_fired.get(trigger)
        return fired is not None and self._clock() - fired < within

    def _fire_with_cooldown(self, trigger: str) -> bool:
        cooldown = self._cooldowns.get(trigger, timedelta(hours=1))
        if self.recently_triggered(trigger, cooldown):
            return False
        self._last_fired[trigger] = self._clock()
        self.invalidate_by_trigger(trigger)
        return True

    def check_schedule(self, now: Optional[datetime] = None) -> List[str]:
        """
        Derive calendar triggers from the cached league state and fire them.

        Runs periodically under a hard timeout. Also applies held batch rules
        and purges expired local entries. Scheduled rules keep their own delay.

        Returns:
            Names of the triggers fired
        """
        fired: List[str] = []
        phase = self.ttl_engine.get_phase()

        if phase is not None:
            candidates = []
            if self._last_seen_week is not None and phase.current_week != self._last_seen_week:
                candidates.append("week_change")
            self._last_seen_week = phase.current_week

            if self.ttl_engine.is_waiver_time(now):
                candidates.append("waiver_period")
            if self.ttl_engine.is_game_day(now):
                candidates.append("game_day")
            if phase.phase.is_active and self.ttl_engine.is_game_time(now):
                candidates.append("game_start")

            for trigger in candidates:
                if self._fire_with_cooldown(trigger):
                    fired.append(trigger)

        self.flush_batch()
        self.cleanup_expired_entries()
        if fired:
            logger.info(f"Scheduled invalidation fired: {', '.join(fired)}")
        return fired

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            stats = {
                "total_invalidations": self._stats["total_invalidations"],
                "keys_by_pattern": dict(self._stats["keys_by_pattern"]),
                "last_run_duration_ms": self._stats["last_run_duration_ms"],
            }
            rules = [rule.to_dict() for rule in self._rules]
            pending = len(self._pending_scheduled) + len(self._pending_batch)
        return {
            "last_invalidation_run": self.last_run.isoformat() if self.last_run else None,
            "stats": stats,
            "pending_rules": pending,
            "last_fired": {k: v.isoformat() for k, v in self._last_fired.items()},
            "rules": rules,
        }

"""
Core cache data structures.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Set
from enum import Enum
import re


SCHEMA_VERSION = "1.0"


class SeasonPhase(Enum):
    """Phase of the NFL calendar as reported by the league state feed."""
    PRE = "pre"          # Pre-season / off-season
    REGULAR = "regular"
    POST = "post"        # Playoffs

    @property
    def is_active(self) -> bool:
        return self in (SeasonPhase.REGULAR, SeasonPhase.POST)


class RulePriority(Enum):
    """When an invalidation rule is applied after its trigger fires."""
    IMMEDIATE = "immediate"   # Applied synchronously
    SCHEDULED = "scheduled"   # Deferred briefly so repeated triggers batch up
    BATCH = "batch"           # Held until the next automatic check


class TaskPriority(Enum):
    """Warming task priority."""
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return {"high": 3, "medium": 2, "low": 1}[self.value]


@dataclass
class CacheEntry:
    """
    A stored value plus the metadata needed to read it back.

    When ``compressed`` is True the payload is base64 gzip text and
    ``compressed_size`` is set; otherwise the payload is plain JSON.
    """
    payload: str
    compressed: bool
    original_size: int
    compressed_size: Optional[int] = None
    stored_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    schema_version: str = SCHEMA_VERSION

    @property
    def size_bytes(self) -> int:
        """Bytes held by the payload."""
        return len(self.payload.encode("utf-8"))

    def to_envelope(self) -> Dict[str, Any]:
        """Convert to the dict stored in the distributed tier."""
        return {
            "data": self.payload,
            "metadata": {
                "compressed": self.compressed,
                "originalSize": self.original_size,
                "compressedSize": self.compressed_size,
                "timestamp": int(self.stored_at.timestamp() * 1000),
                "version": self.schema_version,
            },
        }

    @classmethod
    def from_envelope(cls, envelope: Dict[str, Any]) -> "CacheEntry":
        """Rebuild an entry from a distributed-tier envelope."""
        meta = envelope["metadata"]
        stored_at = datetime.fromtimestamp(meta.get("timestamp", 0) / 1000, tz=timezone.utc)
        return cls(
            payload=envelope["data"],
            compressed=bool(meta["compressed"]),
            original_size=int(meta.get("originalSize", 0)),
            compressed_size=meta.get("compressedSize"),
            stored_at=stored_at,
            schema_version=meta.get("version", SCHEMA_VERSION),
        )


@dataclass
class TTLStrategy:
    """TTL durations (seconds) for one data category."""
    base_ttl: int
    game_time_ttl: int
    off_season_ttl: int
    waiver_time_ttl: Optional[int] = None

    def __post_init__(self):
        for name in ("base_ttl", "game_time_ttl", "off_season_ttl", "waiver_time_ttl"):
            value = getattr(self, name)
            if value is not None and value <= 0:
                raise ValueError(f"{name} must be positive, got {value}")


@dataclass
class LeaguePhase:
    """Snapshot of the league calendar state."""
    phase: SeasonPhase
    current_week: int
    season: Optional[str] = None

    @classmethod
    def from_state(cls, state: Dict[str, Any]) -> "LeaguePhase":
        """Build from a Sleeper ``/state/nfl`` payload."""
        return cls(
            phase=SeasonPhase(state.get("season_type", "pre")),
            current_week=int(state.get("week") or 0),
            season=state.get("season"),
        )


@dataclass
class CacheContext:
    """Situational input to TTL computation. Created per call."""
    data_category: str
    entity_week: Optional[int] = None
    league_id: Optional[str] = None
    now: Optional[datetime] = None


@dataclass
class InvalidationRule:
    """Maps trigger names to a key pattern that must be evicted."""
    pattern: "re.Pattern[str]"
    triggers: Set[str]
    description: str
    priority: RulePriority = RulePriority.IMMEDIATE

    def __post_init__(self):
        if isinstance(self.pattern, str):
            self.pattern = re.compile(self.pattern)
        self.triggers = set(self.triggers)

    def matches_trigger(self, trigger: str) -> bool:
        return trigger in self.triggers

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pattern": self.pattern.pattern,
            "triggers": sorted(self.triggers),
            "description": self.description,
            "priority": self.priority.value,
        }


@dataclass
class WarmingTask:
    """One proactive cache population job."""
    key: str
    producer: Callable[[], Any]
    data_category: str
    priority: TaskPriority = TaskPriority.MEDIUM
    description: str = ""
    context: Optional[CacheContext] = None


@dataclass
class WarmingResult:
    """Outcome of one warming task."""
    key: str
    status: str  # "success", "skipped" or "failed"
    error: Optional[str] = None

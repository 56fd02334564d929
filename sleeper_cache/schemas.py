"""
Pydantic schemas for the cache operations API.
"""
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


# ===== HEALTH SCHEMAS =====

class CacheHealth(BaseModel):
    """Cache health snapshot"""
    status: str
    details: Dict[str, str]
    recommendations: List[str] = []

    class Config:
        from_attributes = True


# ===== METRICS SCHEMAS =====

class MemoryUsage(BaseModel):
    """Local tier memory usage in bytes"""
    current: int
    peak: int
    limit: int
    percentage: float

    class Config:
        from_attributes = True


class CacheMetrics(BaseModel):
    """Cache performance snapshot; rates are percentages"""
    hit_rate: float
    miss_rate: float
    compression_ratio: float
    memory_usage: MemoryUsage
    key_distribution: Dict[str, int]
    ttl_distribution: Dict[str, int]

    class Config:
        from_attributes = True


# ===== ACTION SCHEMAS =====

class ActionResult(BaseModel):
    """Outcome of an operator action"""
    success: bool
    message: str


class WarmRequest(BaseModel):
    """Manual warming request; no categories means everything"""
    categories: Optional[List[str]] = None


class LeagueWarmRequest(BaseModel):
    """Targeted warming for specific leagues"""
    league_ids: List[str] = Field(..., min_length=1)
    week: Optional[int] = Field(None, ge=1)


class WarmingOutcome(BaseModel):
    """Result of a single warming task"""
    key: str
    status: str
    error: Optional[str] = None

    class Config:
        from_attributes = True


class LeagueInvalidation(BaseModel):
    """Keys removed for one league"""
    league_id: str
    removed: int

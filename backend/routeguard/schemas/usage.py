"""
RouteGuard Backend — Usage Statistics Schemas
===============================================

What:  Query models for the /usage/* endpoints and the stats payloads.
How:   `period` is one of hour | day | week | month | all; `limit` 1-100.
"""

from datetime import datetime
from typing import Dict, List, Literal

from pydantic import BaseModel, Field

Period = Literal["hour", "day", "week", "month", "all"]


# ══════════════════════════════════════════════════════════════════════════
# Query Parameter Models
# ══════════════════════════════════════════════════════════════════════════

class StatsQuery(BaseModel):
    endpoint: str = Field(default="", max_length=255, description="Exact endpoint; empty for all")
    period: Period = Field(default="day")


class RankingQuery(BaseModel):
    period: Period = Field(default="day")
    limit: int = Field(default=10, ge=1, le=100)


# ══════════════════════════════════════════════════════════════════════════
# Response Models
# ══════════════════════════════════════════════════════════════════════════

class EndpointStats(BaseModel):
    endpoint: str
    method: str
    count: int
    avg_response_time: float
    min_response_time: float
    max_response_time: float
    error_count: int


class UsageStats(BaseModel):
    total_requests: int
    period: Period
    period_start: datetime
    by_endpoint: List[EndpointStats] = Field(default_factory=list)
    by_status_code: Dict[int, int] = Field(default_factory=dict)
    by_hour: Dict[int, int] = Field(default_factory=dict)


class EndpointErrorRate(BaseModel):
    endpoint: str
    method: str
    total_requests: int
    error_count: int
    error_rate: float = Field(description="Percentage of responses with status >= 400, 2 decimals")

# =============================================================================
# API Response Models — Pydantic V2 Schemas
# =============================================================================
#
# Shapes returned by the HTTP surface: webhook acknowledgements, health,
# and the admin stats endpoints.
# =============================================================================

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    """Response for GET /health — confirms the API is running."""

    status: str = "ok"
    version: str
    service: str
    state_backend: str


class AckResponse(BaseModel):
    """Immediate acknowledgement for an event_callback delivery."""

    ok: bool = True


class ChallengeResponse(BaseModel):
    """Echo of a url_verification challenge."""

    challenge: str


class CacheEntryStats(BaseModel):
    query: str = Field(description="Cache key, truncated to 50 chars")
    hit_count: int
    age_seconds: int


class CacheStatsResponse(BaseModel):
    size: int
    total_hits: int
    entries: list[CacheEntryStats] = Field(
        description="Top 10 entries by hit count",
    )


class RateStats(BaseModel):
    request_count: int
    remaining: int
    reset_at: float


class CostStats(BaseModel):
    tokens_used: int
    estimated_cost: float
    request_count: int
    budget_remaining: float
    reset_at: float


class RequesterStatsResponse(BaseModel):
    requester_id: str
    rate: RateStats
    cost: CostStats

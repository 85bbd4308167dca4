"""Response model for GET /health."""

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    status: str = Field(description="healthy or unhealthy")
    version: str
    database: str = Field(description="connected or disconnected")
    rate_limit_store: str
    usage_driver: str
    routes: int = Field(description="Number of compiled routes")
    uptime_seconds: float

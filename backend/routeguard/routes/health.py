"""
RouteGuard Backend — Health Check Route
=========================================

What:  Health check endpoint for monitoring and load balancer probes.
Why:   Load balancers route away from instances that cannot reach their
       database.
How:   Runs SELECT 1 against the database and reports which stores the
       pipeline is using. Served outside the pipeline: never rate limited,
       authenticated or tracked.
Who:   Docker health checks, load balancers, monitoring.

Status levels:
    healthy:    database reachable (HTTP 200)
    unhealthy:  database unreachable (HTTP 503)
"""

import logging
import time

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text

from routeguard import __version__
from routeguard.schemas.health import HealthResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])

_start_time = time.time()


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Service health check",
    responses={503: {"description": "Database unreachable", "model": HealthResponse}},
)
async def health_check(request: Request):
    services = request.app.state.services
    db_status = "connected"
    overall = "healthy"

    try:
        async with services.session_factory() as session:
            await session.execute(text("SELECT 1"))
    except Exception as e:
        db_status = "disconnected"
        overall = "unhealthy"
        logger.warning("Health check: database unreachable: %s", e)

    payload = HealthResponse(
        status=overall,
        version=__version__,
        database=db_status,
        rate_limit_store=services.limiter.store.name,
        usage_driver=services.recorder.store.name,
        routes=len(services.table),
        uptime_seconds=round(time.time() - _start_time, 2),
    )
    return JSONResponse(content=payload.model_dump(), status_code=200 if overall == "healthy" else 503)

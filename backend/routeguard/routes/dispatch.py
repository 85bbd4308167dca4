"""
RouteGuard Backend — Pipeline Dispatch
========================================

What:  Mounts one catch-all FastAPI route that hands every request not
       claimed by an earlier route (health, docs) to the RequestPipeline.
Why:   Matching, 404 and 405 come from the compiled route table, so the
       routes.yml document stays the single source of routing truth.
"""

import logging

from fastapi import FastAPI
from starlette.requests import Request
from starlette.responses import Response

from routeguard.services.pipeline import RequestPipeline, Services
from routeguard.services.route_registry import RouteTable

logger = logging.getLogger(__name__)

DISPATCH_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]


def mount_routes(app: FastAPI, table: RouteTable, services: Services) -> RequestPipeline:
    """
    Register the catch-all route. Must be called after every explicit route.

    Raises:
        ConfigurationError if a controller in `table` cannot be resolved.
    """
    pipeline = RequestPipeline(services)

    async def dispatch(request: Request) -> Response:
        return await pipeline.run(request)

    app.add_api_route(
        "/{path:path}",
        dispatch,
        methods=DISPATCH_METHODS,
        include_in_schema=False,
        name="routeguard_dispatch",
    )
    for entry in table:
        logger.info("Route %-16s %-28s %s", entry.name, entry.pattern, ",".join(sorted(entry.methods)))
    return pipeline

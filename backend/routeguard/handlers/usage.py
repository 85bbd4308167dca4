"""
RouteGuard Backend — Usage Statistics Handlers
================================================

What:  GET /usage/stats, /usage/top, /usage/slow, /usage/errors.
Who:   Operators; the routes are secure (bearer token required).
"""

from typing import Dict

from routeguard.handlers.base import RequestHandler, VerbHandler
from routeguard.schemas.usage import RankingQuery, StatsQuery


class UsageStatsHandler(RequestHandler):
    def verbs(self) -> Dict[str, VerbHandler]:
        return {"GET": VerbHandler(self.stats, query_model=StatsQuery)}

    async def stats(self, ctx):
        query: StatsQuery = ctx.query
        return await self.services.recorder.stats_for(query.endpoint, query.period)


class TopEndpointsHandler(RequestHandler):
    def verbs(self) -> Dict[str, VerbHandler]:
        return {"GET": VerbHandler(self.top, query_model=RankingQuery)}

    async def top(self, ctx):
        return await self.services.recorder.top_endpoints(ctx.query.limit, ctx.query.period)


class SlowEndpointsHandler(RequestHandler):
    def verbs(self) -> Dict[str, VerbHandler]:
        return {"GET": VerbHandler(self.slow, query_model=RankingQuery)}

    async def slow(self, ctx):
        return await self.services.recorder.slowest_endpoints(ctx.query.limit, ctx.query.period)


class ErrorRatesHandler(RequestHandler):
    def verbs(self) -> Dict[str, VerbHandler]:
        return {"GET": VerbHandler(self.errors, query_model=RankingQuery)}

    async def errors(self, ctx):
        return await self.services.recorder.error_rates(ctx.query.period, ctx.query.limit)

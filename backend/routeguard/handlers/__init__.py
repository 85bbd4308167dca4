"""Business handlers served through the request pipeline."""

from routeguard.handlers.base import Reply, RequestHandler, VerbHandler

__all__ = ["Reply", "RequestHandler", "VerbHandler"]

"""
RouteGuard Backend — Handler Base Types
=========================================

What:  The contract between the request pipeline and business handlers.
How:   A handler class (named by `controller: module:Class` in routes.yml)
       returns a map from HTTP verb to VerbHandler. The pipeline validates
       query/body with the verb's pydantic models before calling it.

    class TodoHandler(RequestHandler):
        def verbs(self):
            return {
                "GET":  VerbHandler(self.list_todos, query_model=TodoQuery),
                "POST": VerbHandler(self.create_todo, body_model=TodoCreate, status_code=201),
            }

Return values:
    - a starlette Response     → sent as-is (rate-limit headers still added)
    - anything else            → wrapped in {"success": true, "data": ...}
    - a Reply                  → same, with an optional message/status/headers
"""

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Optional, Type

from pydantic import BaseModel

if TYPE_CHECKING:
    from routeguard.services.pipeline import RequestContext, Services


@dataclass(frozen=True)
class VerbHandler:
    call: Callable[["RequestContext"], Awaitable[Any]]
    query_model: Optional[Type[BaseModel]] = None
    body_model: Optional[Type[BaseModel]] = None
    status_code: int = 200


@dataclass
class Reply:
    data: Any = None
    message: Optional[str] = None
    status_code: Optional[int] = None
    headers: Dict[str, str] = field(default_factory=dict)


class RequestHandler:
    """Base class for controllers referenced from the route document."""

    def __init__(self, services: "Services"):
        self.services = services

    def verbs(self) -> Dict[str, VerbHandler]:
        raise NotImplementedError(f"{type(self).__name__} must define verbs()")

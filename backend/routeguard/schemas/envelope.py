"""
RouteGuard Backend — Response Envelopes
=========================================

What:  The two JSON shapes every pipeline-served response uses.
Why:   Clients branch on `success` alone; errors are either one message or
       a field → message map.

    {"success": true,  "data": ..., "message": "..."}   (message optional)
    {"success": false, "errors": "..." | {"field": "..."}}
"""

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class SuccessEnvelope(BaseModel):
    success: bool = Field(default=True)
    data: Any = Field(default=None, description="Handler payload")
    message: Optional[str] = Field(default=None, description="Optional human-readable note")

    def render(self) -> Dict[str, Any]:
        """Dump without the `message` key when no message was set."""
        return self.model_dump(mode="json", exclude_none=False, exclude={"message"} if self.message is None else None)


def success(data: Any = None, message: Optional[str] = None) -> Dict[str, Any]:
    return SuccessEnvelope(data=data, message=message).render()

"""
RouteGuard Backend — Custom Exception Hierarchy
=================================================

What:  One exception class per pipeline failure, each knowing its HTTP status
       and how to render itself into the JSON error envelope.
Why:   Every stage short-circuits by raising its own class; the pipeline and
       the global handlers turn it into `{"success": false, "errors": ...}`
       without a per-stage response builder.
How:   Each exception carries a user-facing message plus a context dict that
       is logged but never returned to the client.
Who:   Raised by services, the pipeline and handlers; rendered by
       RequestPipeline and by the handlers registered in main.py.

Exception Hierarchy:
    RouteGuardError (base)                 → 500
    ├── ConfigurationError                 → startup only (route document)
    ├── RouteNotFoundError                 → 404
    ├── MethodNotAllowedError              → 405 + Allow header
    ├── RateLimitExceededError             → 429 + Retry-After header
    ├── AuthenticationError                → 401 (reason logged, not returned)
    ├── InvalidCredentialsError            → 401 (login)
    ├── ParameterValidationError           → 400 (field → message map)
    ├── UploadRejectedError                → 400 (reason per file)
    ├── FileStorageError                   → 500
    ├── DatabaseError                      → 500
    └── InternalFailure                    → 500 (detail only in debug mode)
"""

import enum
from typing import Any, Dict, Iterable, List, Optional, Union


class RouteGuardError(Exception):
    """
    Base exception for all RouteGuard application errors.

    Attributes:
        message:  User-facing error description (safe to return in API response)
        context:  Additional debug info (logged but NOT returned to client)
    """

    status_code: int = 500

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        context: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.context = context or {}
        super().__init__(self.message)

    def envelope(self) -> Dict[str, Any]:
        """Body of the JSON error response."""
        return {"success": False, "errors": self.message}

    def headers(self) -> Dict[str, str]:
        """Extra response headers this failure requires."""
        return {}


class ConfigurationError(RouteGuardError):
    """
    Raised while compiling the route document or resolving handlers.

    Never raised at request time: a malformed document stops the process
    during startup.
    """

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, context=context)


class RouteNotFoundError(RouteGuardError):
    """No route pattern matches the request path."""

    status_code = 404

    def __init__(self, path: str = ""):
        super().__init__(message="Resource not found", context={"path": path})


class MethodNotAllowedError(RouteGuardError):
    """
    The path matched a route that does not accept the request verb.

    HTTP:    405 Method Not Allowed, with an `Allow` header listing the verbs
             the matched route does accept.
    """

    status_code = 405

    def __init__(self, method: str, allowed: Iterable[str]):
        self.allowed: List[str] = sorted(allowed)
        super().__init__(
            message="Method not allowed",
            context={"method": method, "allowed": self.allowed},
        )

    def headers(self) -> Dict[str, str]:
        return {"Allow": ", ".join(self.allowed)}


class RateLimitExceededError(RouteGuardError):
    """
    The client used up the sliding-window budget for this path.

    Response includes:
        - retry_after in the body, for clients that read JSON
        - Retry-After header, for HTTP-compliant clients
    """

    status_code = 429

    def __init__(self, retry_after: int = 60, context: Optional[Dict[str, Any]] = None):
        ctx = context or {}
        ctx["retry_after"] = retry_after
        super().__init__(message="Too many requests. Please try again later.", context=ctx)
        self.retry_after = retry_after

    def envelope(self) -> Dict[str, Any]:
        body = super().envelope()
        body["retry_after"] = self.retry_after
        return body

    def headers(self) -> Dict[str, str]:
        return {"Retry-After": str(self.retry_after)}


class AuthFailureReason(str, enum.Enum):
    """Why a bearer token was refused. Logged server-side only."""

    TRANSPORT_REQUIRED = "transport_required"
    TOKEN_NOT_FOUND = "token_not_found"
    EXPIRED = "expired"
    BAD_SIGNATURE = "bad_signature"
    MALFORMED = "malformed"
    SUBJECT_MISSING = "subject_missing"
    SUBJECT_NOT_FOUND = "subject_not_found"


class AuthenticationError(RouteGuardError):
    """
    Bearer authentication failed.

    The reason distinguishes expired, forged, malformed and missing tokens in
    the logs. The client always sees the same message so probing the
    endpoint reveals nothing about which check failed.
    """

    status_code = 401

    def __init__(self, reason: AuthFailureReason, context: Optional[Dict[str, Any]] = None):
        ctx = context or {}
        ctx["reason"] = reason.value
        super().__init__(message="Authentication required", context=ctx)
        self.reason = reason

    def headers(self) -> Dict[str, str]:
        return {"WWW-Authenticate": "Bearer"}


class InvalidCredentialsError(RouteGuardError):
    """Login with an unknown username or a wrong password; both read the same."""

    status_code = 401

    def __init__(self, context: Optional[Dict[str, Any]] = None):
        super().__init__(message="Invalid username or password", context=context)


class ParameterValidationError(RouteGuardError):
    """
    One or more path, query or body parameters failed their rules.

    `errors` maps each failing parameter to its message; all failures of a
    request are reported together.
    """

    status_code = 400

    def __init__(self, errors: Dict[str, str], context: Optional[Dict[str, Any]] = None):
        self.errors = dict(errors)
        super().__init__(message="Validation failed", context=context)

    def envelope(self) -> Dict[str, Any]:
        return {"success": False, "errors": self.errors}


class UploadRejectedError(RouteGuardError):
    """
    An uploaded file failed validation.

    Raised by FileIngestor with a single reason; the pipeline re-raises one
    instance carrying the reason for every rejected field in strict mode.
    """

    status_code = 400

    def __init__(
        self,
        message: str = "Upload rejected",
        errors: Optional[Dict[str, str]] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)
        self.errors = dict(errors or {})

    def envelope(self) -> Dict[str, Any]:
        payload: Union[str, Dict[str, str]] = self.errors or self.message
        return {"success": False, "errors": payload}


class FileStorageError(RouteGuardError):
    """
    Raised when file system operations fail.

    The client gets a generic message; paths and OS errors stay in context.
    """

    def __init__(
        self,
        message: str = "File storage operation failed",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class DatabaseError(RouteGuardError):
    """Raised when database operations fail unexpectedly. Message is always generic."""

    def __init__(
        self,
        message: str = "A database error occurred. Please try again later.",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class InternalFailure(RouteGuardError):
    """
    Wraps an unexpected exception escaping a handler.

    The detail is added to the envelope only when debug mode is on.
    """

    def __init__(self, detail: Optional[str] = None, debug: bool = False):
        super().__init__(message="Internal server error", context={"detail": detail})
        self.detail = detail
        self.debug = debug

    def envelope(self) -> Dict[str, Any]:
        body = super().envelope()
        if self.debug and self.detail:
            body["debug"] = {"detail": self.detail}
        return body

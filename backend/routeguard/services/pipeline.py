"""
RouteGuard Backend — Request Pipeline
=======================================

What:  Runs every routed request through the fixed stage order and calls
       the business handler.
Why:   Each stage is an independent component; this module owns only the
       order, the short-circuiting, and the final response shape.
Who:   routes/dispatch.py (catch-all endpoint) calls RequestPipeline.run().
When:  Once per request, after the request-id/access-log/security-header
       middleware.

Stage order:
    1. Route lookup         404 (no route) / 405 (verb not declared, Allow header)
    2. Rate limit           429 + Retry-After when over budget
    3. Path parameters      400 with {param: message}
    4. Authentication       401 (skipped for public and ignored paths)
    5. File ingestion       write verbs on routes with file_upload enabled;
                            strict → 400 with {field: reason}
    6. Query/body models    400 with {field: message}
    7. Handler              timed
    8. Usage record         never fails the request

    A stage failure is raised as its RouteGuardError subclass and rendered
    immediately; later stages do not run. X-RateLimit-* headers are attached
    to every response once stage 2 has produced a result.
"""

import importlib
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple, Type

from pydantic import BaseModel, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from starlette.datastructures import FormData, UploadFile
from starlette.exceptions import HTTPException
from starlette.formparsers import MultiPartException
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from routeguard.config import Settings
from routeguard.exceptions import (
    ConfigurationError,
    InternalFailure,
    MethodNotAllowedError,
    ParameterValidationError,
    RateLimitExceededError,
    RouteGuardError,
    RouteNotFoundError,
    UploadRejectedError,
)
from routeguard.handlers.base import Reply, RequestHandler, VerbHandler
from routeguard.schemas.envelope import success
from routeguard.schemas.upload import UploadResult
from routeguard.services.client_identity import UNKNOWN_CLIENT, ClientIdentityResolver
from routeguard.services.file_service import FileIngestor, discover_base64_files
from routeguard.services.param_validator import ParameterValidator
from routeguard.services.rate_limit_store import create_rate_limit_store
from routeguard.services.rate_limiter import RateLimiter, RateLimitResult
from routeguard.services.route_registry import RouteMatch, RouteTable, UploadPolicy
from routeguard.services.token_auth import ANONYMOUS, Identity, TokenAuthenticator, UserSubjectResolver
from routeguard.services.usage_store import create_usage_store
from routeguard.services.usage_tracker import UsageRecorder

logger = logging.getLogger(__name__)

WRITE_METHODS = frozenset({"POST", "PUT", "PATCH"})
BODY_METHODS = WRITE_METHODS | {"DELETE"}


# ══════════════════════════════════════════════════════════════════════════
# Shared Services
# ══════════════════════════════════════════════════════════════════════════

@dataclass
class Services:
    """Every long-lived collaborator, built once at startup."""

    settings: Settings
    table: RouteTable
    limiter: RateLimiter
    identity: ClientIdentityResolver
    authenticator: TokenAuthenticator
    validator: ParameterValidator
    ingestor: FileIngestor
    recorder: UsageRecorder
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None

    async def aclose(self) -> None:
        await self.recorder.close()
        await self.limiter.store.close()


def build_services(
    settings: Settings,
    table: RouteTable,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
) -> Services:
    if session_factory is None:
        from routeguard.database import async_session_factory as session_factory

    limiter = RateLimiter(
        table,
        create_rate_limit_store(settings),
        gc_probability=settings.rate_limit_gc_probability,
        stale_after_seconds=settings.rate_limit_stale_after_seconds,
    )
    authenticator = TokenAuthenticator(
        settings.effective_jwt_secret,
        UserSubjectResolver(session_factory),
        algorithm=settings.jwt_algorithm,
        expires_minutes=settings.jwt_expires_minutes,
        require_https=settings.auth_require_https,
        relaxed_hosts=settings.auth_relaxed_hosts_list,
        ignore_paths=settings.auth_ignore_paths_list,
    )
    recorder = UsageRecorder(
        table,
        create_usage_store(settings, session_factory),
        enabled=settings.usage_tracker_enabled,
        sample_rate=settings.usage_tracker_sample_rate,
    )
    return Services(
        settings=settings,
        table=table,
        limiter=limiter,
        identity=ClientIdentityResolver(settings.trusted_proxies_list, settings.trust_private_networks),
        authenticator=authenticator,
        validator=ParameterValidator(table),
        ingestor=FileIngestor(settings.upload_storage_root, settings.upload_base_url),
        recorder=recorder,
        session_factory=session_factory,
    )


# ══════════════════════════════════════════════════════════════════════════
# Per-Request Context
# ══════════════════════════════════════════════════════════════════════════

@dataclass
class RequestContext:
    """Everything the stages learned about one request; handed to the handler."""

    request: Request
    services: Services
    match: Optional[RouteMatch] = None
    client_ip: str = UNKNOWN_CLIENT
    identity: Identity = ANONYMOUS
    rate: Optional[RateLimitResult] = None
    raw_body: Any = None
    form: Optional[FormData] = None
    query: Optional[BaseModel] = None
    body: Optional[BaseModel] = None
    uploads: List[UploadResult] = field(default_factory=list)
    upload_errors: Dict[str, str] = field(default_factory=dict)

    @property
    def params(self) -> Mapping[str, str]:
        return self.match.params if self.match else {}

    @property
    def method(self) -> str:
        return self.request.method.upper()

    @property
    def path(self) -> str:
        return self.request.url.path


def _validation_messages(error: ValidationError, default_field: str) -> Dict[str, str]:
    """Collapse pydantic errors to {field: first message}."""
    messages: Dict[str, str] = {}
    for item in error.errors():
        key = ".".join(str(part) for part in item.get("loc", ())) or default_field
        messages.setdefault(key, item.get("msg", "Invalid value"))
    return messages


# ══════════════════════════════════════════════════════════════════════════
# Handler Resolution
# ══════════════════════════════════════════════════════════════════════════

def _import_controller(reference: str) -> Type[RequestHandler]:
    module_name, _, class_name = reference.partition(":")
    try:
        module = importlib.import_module(module_name)
        handler_cls = getattr(module, class_name)
    except (ImportError, AttributeError) as e:
        raise ConfigurationError(f"Cannot import controller '{reference}': {e}") from e
    if not isinstance(handler_cls, type) or not issubclass(handler_cls, RequestHandler):
        raise ConfigurationError(f"Controller '{reference}' is not a RequestHandler")
    return handler_cls


def resolve_handlers(table: RouteTable, services: Services) -> Dict[str, Dict[str, VerbHandler]]:
    """
    Import and instantiate every controller once; map route name → verb table.

    Raises:
        ConfigurationError when a controller cannot be imported or does not
        serve a verb its route declares.
    """
    instances: Dict[str, RequestHandler] = {}
    resolved: Dict[str, Dict[str, VerbHandler]] = {}
    for entry in table:
        handler = instances.get(entry.controller)
        if handler is None:
            handler = _import_controller(entry.controller)(services)
            instances[entry.controller] = handler
        verbs = {verb.upper(): vh for verb, vh in handler.verbs().items()}
        missing = sorted(m for m in entry.methods if m not in verbs)
        if missing:
            raise ConfigurationError(
                f"Route '{entry.name}' declares {missing} but {entry.controller} does not serve them"
            )
        resolved[entry.name] = verbs
    logger.info("Resolved %d routes across %d controllers", len(resolved), len(instances))
    return resolved


# ══════════════════════════════════════════════════════════════════════════
# Pipeline
# ══════════════════════════════════════════════════════════════════════════

class RequestPipeline:
    def __init__(self, services: Services, handlers: Optional[Dict[str, Dict[str, VerbHandler]]] = None):
        self.services = services
        self.handlers = handlers if handlers is not None else resolve_handlers(services.table, services)

    async def run(self, request: Request) -> Response:
        services = self.services
        ctx = RequestContext(request=request, services=services)
        started = time.perf_counter()

        try:
            await self._route_and_limit(ctx)
            self._check_params(ctx)
            await self._authenticate(ctx)
            verb = self.handlers[ctx.match.entry.name][ctx.method]
            await self._read_body(ctx)
            await self._ingest_files(ctx)
            self._validate_models(ctx, verb)
            response = self._render(await verb.call(ctx), verb.status_code)
        except RouteGuardError as e:
            response = self._render_error(e)
        except Exception as e:
            logger.error("Unhandled error in %s %s: %s", ctx.method, ctx.path, e, exc_info=True)
            response = self._render_error(InternalFailure(detail=str(e), debug=services.settings.debug))

        if ctx.rate is not None:
            response.headers.update(ctx.rate.headers())

        elapsed_ms = (time.perf_counter() - started) * 1000
        await self._track(ctx, response, elapsed_ms)
        return response

    # ── Stages ────────────────────────────────────────────────────────────

    async def _route_and_limit(self, ctx: RequestContext) -> None:
        services = self.services
        match = services.table.lookup(ctx.path)
        if match is None:
            raise RouteNotFoundError(ctx.path)
        ctx.match = match
        ctx.request.state.route_name = match.entry.name

        if not match.entry.allows(ctx.method):
            raise MethodNotAllowedError(ctx.method, match.entry.methods)

        ctx.client_ip = services.identity.resolve(ctx.request)
        ctx.request.state.client_ip = ctx.client_ip

        policy = services.table.rate_limit_for_entry(match.entry)
        ctx.rate = await services.limiter.check_policy(ctx.client_ip, ctx.path, policy)
        if ctx.rate is not None and not ctx.rate.allowed:
            raise RateLimitExceededError(retry_after=ctx.rate.retry_after, context={"path": ctx.path})

    def _check_params(self, ctx: RequestContext) -> None:
        errors = self.services.validator.validate_rules(ctx.match.entry.param_rules, ctx.match.params)
        if errors:
            raise ParameterValidationError(errors, context={"path": ctx.path})

    async def _authenticate(self, ctx: RequestContext) -> None:
        services = self.services
        if not services.authenticator.requires_auth(ctx.path, ctx.match):
            return
        ctx.identity = await services.authenticator.authenticate(
            ctx.request.headers.get("authorization"),
            host=ctx.request.headers.get("host", ""),
            is_https=services.identity.request_is_https(ctx.request),
        )

    async def _read_body(self, ctx: RequestContext) -> None:
        if ctx.method not in BODY_METHODS:
            return
        content_type = ctx.request.headers.get("content-type", "").lower()
        if content_type.startswith("multipart/form-data") or content_type.startswith(
            "application/x-www-form-urlencoded"
        ):
            try:
                ctx.form = await ctx.request.form()
            except (HTTPException, MultiPartException) as e:
                detail = getattr(e, "detail", None) or getattr(e, "message", "Invalid form body")
                raise ParameterValidationError({"body": str(detail)}) from e
            ctx.raw_body = {
                key: value for key, value in ctx.form.multi_items() if not isinstance(value, UploadFile)
            }
            return
        raw = await ctx.request.body()
        if not raw.strip():
            return
        try:
            ctx.raw_body = await ctx.request.json()
        except ValueError as e:
            raise ParameterValidationError({"body": "Invalid JSON body"}) from e

    async def _ingest_files(self, ctx: RequestContext) -> None:
        policy = ctx.match.entry.upload_policy
        if ctx.method not in WRITE_METHODS or policy is None or not policy.enabled:
            return

        accepted: List[UploadResult] = []
        errors: Dict[str, str] = {}
        for field_name, kind, payload, filename in self._collect_files(ctx):
            try:
                if kind == "multipart":
                    result = await self.services.ingestor.ingest_multipart(payload, policy, field_name)
                else:
                    result = await self.services.ingestor.ingest_base64(payload, filename, policy, field_name)
            except UploadRejectedError as e:
                errors[field_name] = e.message
                continue
            accepted.append(result)

        if errors and policy.strict:
            await self._discard(accepted, policy)
            raise UploadRejectedError(errors=errors, context={"path": ctx.path})
        ctx.uploads = accepted
        ctx.upload_errors = errors

    @staticmethod
    def _collect_files(ctx: RequestContext) -> List[Tuple[str, str, Any, Optional[str]]]:
        files: List[Tuple[str, str, Any, Optional[str]]] = []
        if ctx.form is not None:
            parts = [(k, v) for k, v in ctx.form.multi_items() if isinstance(v, UploadFile)]
            counts: Dict[str, int] = {}
            for key, _ in parts:
                counts[key] = counts.get(key, 0) + 1
            seen: Dict[str, int] = {}
            for key, upload in parts:
                index = seen.get(key, 0)
                seen[key] = index + 1
                name = f"{key}[{index}]" if counts[key] > 1 else key
                files.append((name, "multipart", upload, upload.filename))
        elif ctx.raw_body is not None:
            for field_name, payload, filename in discover_base64_files(ctx.raw_body):
                files.append((field_name, "base64", payload, filename))
        return files

    async def _discard(self, accepted: List[UploadResult], policy: UploadPolicy) -> None:
        if not policy.writes_to_disk:
            return
        for result in accepted:
            if result.relative_path:
                await self.services.ingestor.delete(result.relative_path)

    @staticmethod
    def _validate_models(ctx: RequestContext, verb: VerbHandler) -> None:
        if verb.query_model is not None:
            try:
                ctx.query = verb.query_model.model_validate(dict(ctx.request.query_params))
            except ValidationError as e:
                raise ParameterValidationError(_validation_messages(e, "query")) from e
        if verb.body_model is not None:
            try:
                ctx.body = verb.body_model.model_validate(ctx.raw_body if ctx.raw_body is not None else {})
            except ValidationError as e:
                raise ParameterValidationError(_validation_messages(e, "body")) from e

    # ── Rendering ─────────────────────────────────────────────────────────

    @staticmethod
    def _render(result: Any, status_code: int) -> Response:
        if isinstance(result, Response):
            return result
        if isinstance(result, Reply):
            return JSONResponse(
                content=success(result.data, result.message),
                status_code=result.status_code or status_code,
                headers=result.headers or None,
            )
        return JSONResponse(content=success(result), status_code=status_code)

    @staticmethod
    def _render_error(error: RouteGuardError) -> Response:
        return JSONResponse(content=error.envelope(), status_code=error.status_code, headers=error.headers())

    # ── Usage ─────────────────────────────────────────────────────────────

    async def _track(self, ctx: RequestContext, response: Response, elapsed_ms: float) -> None:
        if ctx.match is None:
            return
        headers = ctx.request.headers
        try:
            request_size = int(headers.get("content-length") or 0)
        except ValueError:
            request_size = 0
        body = getattr(response, "body", b"") or b""
        await self.services.recorder.track(
            entry=ctx.match.entry,
            method=ctx.method,
            path=ctx.path,
            status_code=response.status_code,
            elapsed_ms=elapsed_ms,
            request_size=request_size,
            response_size=len(body),
            identity=ctx.identity,
            client_ip=ctx.client_ip,
            user_agent=headers.get("user-agent"),
            query=ctx.request.query_params,
            body=ctx.raw_body,
        )

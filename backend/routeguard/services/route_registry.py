"""
RouteGuard Backend — Route Registry
=====================================

What:  Compiles the declarative route document into an immutable RouteTable
       and answers "which route serves this path, and with which policies?".
Why:   Every pipeline stage asks the same question. Compiling once at
       startup turns a malformed document into a startup failure and keeps
       per-request matching free of parsing work.
How:   The YAML document is validated with Pydantic models, normalized into
       frozen dataclasses, and indexed two ways: an exact-path dict for
       placeholder-free patterns, and an ordered list of compiled regexes.
Who:   Built by main.create_app() and passed explicitly to the pipeline,
       its stages and the handler dispatcher. There is no global instance.
When:  Once per process; never mutated afterwards.

Matching algorithm:
    1. Exact string match against placeholder-free patterns.
    2. Otherwise each placeholder pattern is tried in registration order;
       `{name}` matches exactly one non-empty path segment. The FIRST
       registered pattern that matches wins, even if a later pattern is
       more specific.

Route document (routes.yml):
    todoEntity:
      url: /todo/{id}
      version: 1                       # optional, prefixes /V1
      controller: app.handlers:Todo    # module:Class
      method: [get, put, delete]       # omitted → GET
      is_secure: true                  # default true
      rate_limit: {enabled: true, max_requests: 60, window_seconds: 60}
      params: {id: id}
      file_upload: {enabled: true, max_size: 1048576, allowed_types: images,
                    storage: filesystem, db_format: base64, strict: true}
      tracking: {enabled: true, name: todo_detail, track_user: true,
                 track_ip: true, track_user_agent: false, track_body: false}

    The document may also be a list of entries (each with an optional
    `name`), or wrapped in a top-level `routes:` key.
"""

import enum
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Iterator, List, Literal, Mapping, Optional, Pattern, Tuple, Union

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from routeguard.config import Settings
from routeguard.exceptions import ConfigurationError
from routeguard.services.param_validator import ParamRule, parse_rule_string

logger = logging.getLogger(__name__)

_PLACEHOLDER_RE = re.compile(r"\{([A-Za-z_][A-Za-z0-9_]*)\}")

# ── Upload Presets ────────────────────────────────────────────────────────
# What: Named allow-lists usable as `allowed_types: images`
IMAGE_TYPES = ("image/jpeg", "image/png", "image/gif", "image/webp")
DOCUMENT_TYPES = ("application/pdf", "text/plain", "text/csv", "application/json")

UPLOAD_PRESETS: Dict[str, Tuple[Tuple[str, ...], Tuple[str, ...]]] = {
    "images": (IMAGE_TYPES, ("jpg", "jpeg", "png", "gif", "webp")),
    "documents": (DOCUMENT_TYPES, ("pdf", "txt", "csv", "json")),
    "all": (
        IMAGE_TYPES + DOCUMENT_TYPES,
        ("jpg", "jpeg", "png", "gif", "webp", "pdf", "txt", "csv", "json"),
    ),
}


# ══════════════════════════════════════════════════════════════════════════
# Compiled Policy Types
# ══════════════════════════════════════════════════════════════════════════

class StorageMode(str, enum.Enum):
    FILESYSTEM = "filesystem"
    EMBEDDED = "embedded"
    BOTH = "both"


@dataclass(frozen=True)
class RateLimitPolicy:
    enabled: bool
    max_requests: int
    window_seconds: int


@dataclass(frozen=True)
class UploadPolicy:
    """
    Per-route upload rules.

    storage_mode decides where accepted bytes go; db_format only matters
    for the embedded half ("base64" text or "blob" raw bytes).
    strict=True rejects the request on any bad file; strict=False lets the
    handler see the accepted files plus the per-field errors.
    """

    enabled: bool
    max_size: int
    allowed_types: FrozenSet[str]
    allowed_extensions: FrozenSet[str]
    storage_mode: StorageMode = StorageMode.FILESYSTEM
    db_format: str = "base64"
    strict: bool = True

    @property
    def writes_to_disk(self) -> bool:
        return self.storage_mode in (StorageMode.FILESYSTEM, StorageMode.BOTH)

    @property
    def embeds_content(self) -> bool:
        return self.storage_mode in (StorageMode.EMBEDDED, StorageMode.BOTH)


@dataclass(frozen=True)
class TrackingPolicy:
    enabled: bool = True
    name: Optional[str] = None
    track_user: bool = True
    track_ip: bool = True
    track_user_agent: bool = False
    track_body: bool = False


@dataclass(frozen=True)
class RouteDefaults:
    """System-wide fallbacks for routes that declare no explicit policy."""

    secure_limit: RateLimitPolicy = RateLimitPolicy(True, 100, 60)
    public_limit: RateLimitPolicy = RateLimitPolicy(True, 30, 60)
    upload_max_size: int = 10_485_760
    track_all_routes: bool = False

    @classmethod
    def from_settings(cls, cfg: Settings) -> "RouteDefaults":
        return cls(
            secure_limit=RateLimitPolicy(
                True, cfg.rate_limit_secure_max_requests, cfg.rate_limit_secure_window_seconds
            ),
            public_limit=RateLimitPolicy(
                True, cfg.rate_limit_public_max_requests, cfg.rate_limit_public_window_seconds
            ),
            upload_max_size=cfg.upload_max_size,
            track_all_routes=cfg.usage_track_all_routes,
        )


@dataclass(frozen=True)
class RouteEntry:
    """One compiled route. Immutable; owned by the RouteTable."""

    name: str
    pattern: str
    methods: FrozenSet[str]
    controller: str
    is_secure: bool = True
    rate_limit: Optional[RateLimitPolicy] = None
    param_rules: Mapping[str, Tuple[ParamRule, ...]] = field(default_factory=dict)
    upload_policy: Optional[UploadPolicy] = None
    tracking_policy: Optional[TrackingPolicy] = None
    regex: Optional[Pattern[str]] = field(default=None, compare=False, repr=False)

    @property
    def has_placeholders(self) -> bool:
        return self.regex is not None

    def allows(self, method: str) -> bool:
        return method.upper() in self.methods


@dataclass(frozen=True)
class RouteMatch:
    entry: RouteEntry
    params: Mapping[str, str]


# ══════════════════════════════════════════════════════════════════════════
# Document Schema
# ══════════════════════════════════════════════════════════════════════════

class RateLimitSpec(BaseModel):
    enabled: bool = True
    max_requests: Optional[int] = Field(default=None, ge=1)
    window_seconds: Optional[int] = Field(default=None, ge=1)


class UploadSpec(BaseModel):
    enabled: bool = True
    max_size: Optional[int] = Field(default=None, ge=1)
    allowed_types: Optional[Union[str, List[str]]] = None
    allowed_extensions: Optional[List[str]] = None
    # "database" is accepted as the historical name of embedded storage
    storage: Literal["filesystem", "embedded", "database", "both"] = "filesystem"
    db_format: Literal["base64", "blob"] = "base64"
    strict: bool = True

    @field_validator("allowed_types")
    @classmethod
    def validate_preset(cls, v):
        if isinstance(v, str) and v not in UPLOAD_PRESETS:
            raise ValueError(f"Unknown upload preset '{v}'. Use one of {sorted(UPLOAD_PRESETS)} or a list")
        return v


class TrackingSpec(BaseModel):
    enabled: bool = True
    name: Optional[str] = None
    track_user: bool = True
    track_ip: bool = True
    track_user_agent: bool = False
    track_body: bool = False


class RouteSpec(BaseModel):
    model_config = {"extra": "ignore"}

    name: Optional[str] = None
    url: str = Field(min_length=1)
    version: Optional[Union[int, str]] = None
    controller: str = Field(min_length=1)
    method: Optional[Union[str, List[str]]] = None
    is_secure: bool = True
    rate_limit: Optional[RateLimitSpec] = None
    params: Dict[str, str] = Field(default_factory=dict)
    file_upload: Optional[UploadSpec] = None
    tracking: Optional[TrackingSpec] = None

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        if not v.startswith("/"):
            raise ValueError("url must start with '/'")
        return v

    @field_validator("controller")
    @classmethod
    def validate_controller(cls, v: str) -> str:
        module, _, attr = v.partition(":")
        if not module.strip() or not attr.strip():
            raise ValueError("controller must be a 'module.path:ClassName' reference")
        return v.strip()


# ══════════════════════════════════════════════════════════════════════════
# Route Table
# ══════════════════════════════════════════════════════════════════════════

class RouteTable:
    """
    Immutable, compiled route table.

    Lookup is pure: the same path always yields the same RouteMatch (or
    None), and nothing is cached or mutated during matching.
    """

    def __init__(self, entries: List[RouteEntry], defaults: RouteDefaults):
        self._entries: Tuple[RouteEntry, ...] = tuple(entries)
        self._defaults = defaults
        self._exact: Dict[str, RouteEntry] = {}
        self._patterned: Tuple[RouteEntry, ...] = tuple(e for e in entries if e.has_placeholders)
        for entry in entries:
            if entry.has_placeholders:
                continue
            if entry.pattern in self._exact:
                logger.warning(
                    "Route '%s' repeats path %s already served by '%s' — it will never match",
                    entry.name, entry.pattern, self._exact[entry.pattern].name,
                )
                continue
            self._exact[entry.pattern] = entry

    # ── Introspection ─────────────────────────────────────────────────────

    def __iter__(self) -> Iterator[RouteEntry]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def defaults(self) -> RouteDefaults:
        return self._defaults

    # ── Matching ──────────────────────────────────────────────────────────

    def lookup(self, path: str) -> Optional[RouteMatch]:
        """Exact match first, then placeholder patterns in registration order."""
        entry = self._exact.get(path)
        if entry is not None:
            return RouteMatch(entry=entry, params=MappingProxyType({}))
        for entry in self._patterned:
            match = entry.regex.match(path)
            if match is not None:
                return RouteMatch(entry=entry, params=MappingProxyType(match.groupdict()))
        return None

    # ── Policy Getters ────────────────────────────────────────────────────

    def rate_limit_for(self, path: str) -> RateLimitPolicy:
        """Declared policy, else the secure/public default. Unmatched paths get the secure default."""
        match = self.lookup(path)
        if match is None:
            return self._defaults.secure_limit
        return self.rate_limit_for_entry(match.entry)

    def rate_limit_for_entry(self, entry: RouteEntry) -> RateLimitPolicy:
        if entry.rate_limit is not None:
            return entry.rate_limit
        return self._defaults.secure_limit if entry.is_secure else self._defaults.public_limit

    def param_rules_for(self, path: str) -> Mapping[str, Tuple[ParamRule, ...]]:
        match = self.lookup(path)
        return match.entry.param_rules if match else MappingProxyType({})

    def upload_policy_for(self, path: str) -> Optional[UploadPolicy]:
        match = self.lookup(path)
        return match.entry.upload_policy if match else None

    def tracking_policy_for(self, path: str) -> Optional[TrackingPolicy]:
        match = self.lookup(path)
        return self.tracking_policy_for_entry(match.entry) if match else None

    def tracking_policy_for_entry(self, entry: RouteEntry) -> Optional[TrackingPolicy]:
        if entry.tracking_policy is not None:
            return entry.tracking_policy
        if self._defaults.track_all_routes:
            return TrackingPolicy(name=entry.name)
        return None

    def is_public(self, path: str) -> bool:
        match = self.lookup(path)
        return match is not None and not match.entry.is_secure


# ══════════════════════════════════════════════════════════════════════════
# Compilation
# ══════════════════════════════════════════════════════════════════════════

def _compile_pattern(name: str, pattern: str) -> Optional[Pattern[str]]:
    """Return the anchored regex for a placeholder pattern, or None if it has no placeholders."""
    if "{" not in pattern and "}" not in pattern:
        return None
    parts = []
    position = 0
    seen = set()
    for placeholder in _PLACEHOLDER_RE.finditer(pattern):
        parts.append(_escape_literal(name, pattern, pattern[position:placeholder.start()]))
        placeholder_name = placeholder.group(1)
        if placeholder_name in seen:
            raise ConfigurationError(
                f"Route '{name}' repeats placeholder '{placeholder_name}'",
                context={"pattern": pattern},
            )
        seen.add(placeholder_name)
        parts.append(f"(?P<{placeholder_name}>[^/]+)")
        position = placeholder.end()
    parts.append(_escape_literal(name, pattern, pattern[position:]))
    return re.compile("^" + "".join(parts) + r"\Z")


def _escape_literal(name: str, pattern: str, literal: str) -> str:
    # Braces left outside a placeholder mean the placeholder itself is malformed
    if "{" in literal or "}" in literal:
        raise ConfigurationError(
            f"Route '{name}' has a malformed placeholder in '{pattern}'",
            context={"pattern": pattern},
        )
    return re.escape(literal)


def _normalize_methods(name: str, method: Optional[Union[str, List[str]]]) -> FrozenSet[str]:
    if method is None:
        return frozenset({"GET"})
    raw = method.split(",") if isinstance(method, str) else method
    methods = frozenset(m.strip().upper() for m in raw if m and m.strip())
    if not methods:
        raise ConfigurationError(f"Route '{name}' declares an empty method list")
    return methods


def _build_rate_limit(spec: Optional[RateLimitSpec], default: RateLimitPolicy) -> Optional[RateLimitPolicy]:
    if spec is None:
        return None
    if not spec.enabled:
        return RateLimitPolicy(enabled=False, max_requests=default.max_requests, window_seconds=default.window_seconds)
    return RateLimitPolicy(
        enabled=True,
        max_requests=spec.max_requests or default.max_requests,
        window_seconds=spec.window_seconds or default.window_seconds,
    )


def _build_upload(spec: Optional[UploadSpec], defaults: RouteDefaults) -> Optional[UploadPolicy]:
    if spec is None:
        return None
    types, extensions = UPLOAD_PRESETS["all"]
    if isinstance(spec.allowed_types, str):
        types, extensions = UPLOAD_PRESETS[spec.allowed_types]
    elif spec.allowed_types is not None:
        types = tuple(spec.allowed_types)
    if spec.allowed_extensions is not None:
        extensions = tuple(spec.allowed_extensions)
    storage = "embedded" if spec.storage == "database" else spec.storage
    return UploadPolicy(
        enabled=spec.enabled,
        max_size=spec.max_size or defaults.upload_max_size,
        allowed_types=frozenset(t.strip().lower() for t in types),
        allowed_extensions=frozenset(e.strip().lower().lstrip(".") for e in extensions),
        storage_mode=StorageMode(storage),
        db_format=spec.db_format,
        strict=spec.strict,
    )


def _build_tracking(spec: Optional[TrackingSpec], route_name: str) -> Optional[TrackingPolicy]:
    if spec is None:
        return None
    return TrackingPolicy(
        enabled=spec.enabled,
        name=spec.name or route_name,
        track_user=spec.track_user,
        track_ip=spec.track_ip,
        track_user_agent=spec.track_user_agent,
        track_body=spec.track_body,
    )


def _iter_route_specs(document: Any) -> Iterator[Tuple[str, Any]]:
    if isinstance(document, dict) and set(document) == {"routes"}:
        document = document["routes"]
    if isinstance(document, dict):
        for name, raw in document.items():
            yield str(name), raw
    elif isinstance(document, list):
        for index, raw in enumerate(document):
            name = raw.get("name") if isinstance(raw, dict) else None
            yield str(name or f"route_{index}"), raw
    else:
        raise ConfigurationError("Route document must be a mapping or a list of routes")


def compile_entry(name: str, raw: Any, defaults: RouteDefaults) -> RouteEntry:
    """Validate and compile one route document entry."""
    if not isinstance(raw, dict):
        raise ConfigurationError(f"Route '{name}' must be a mapping")
    try:
        spec = RouteSpec.model_validate(raw)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ConfigurationError(f"Route '{name}' is invalid: {problems}") from e

    pattern = (f"/V{spec.version}" if spec.version is not None else "") + spec.url
    default_limit = defaults.secure_limit if spec.is_secure else defaults.public_limit
    return RouteEntry(
        name=name,
        pattern=pattern,
        methods=_normalize_methods(name, spec.method),
        controller=spec.controller,
        is_secure=spec.is_secure,
        rate_limit=_build_rate_limit(spec.rate_limit, default_limit),
        param_rules=MappingProxyType(
            {param: parse_rule_string(param, rules) for param, rules in spec.params.items()}
        ),
        upload_policy=_build_upload(spec.file_upload, defaults),
        tracking_policy=_build_tracking(spec.tracking, name),
        regex=_compile_pattern(name, pattern),
    )


def compile_route_table(document: Any, defaults: Optional[RouteDefaults] = None) -> RouteTable:
    """
    Build the RouteTable from an already-parsed route document.

    Raises:
        ConfigurationError on the first malformed entry: missing url or
        controller, explicitly empty method list, bad placeholder, invalid
        parameter rule.
    """
    defaults = defaults or RouteDefaults()
    entries = [compile_entry(name, raw, defaults) for name, raw in _iter_route_specs(document)]
    if not entries:
        raise ConfigurationError("Route document declares no routes")
    logger.info("Route table compiled: %d routes", len(entries))
    return RouteTable(entries, defaults)


def load_route_table(path: Union[str, Path], defaults: Optional[RouteDefaults] = None) -> RouteTable:
    """Read a YAML route document from disk and compile it."""
    try:
        with open(path, "r", encoding="utf-8") as fh:
            document = yaml.safe_load(fh)
    except OSError as e:
        raise ConfigurationError(f"Cannot read route document {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Route document {path} is not valid YAML: {e}") from e
    return compile_route_table(document, defaults)

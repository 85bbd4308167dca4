"""
RouteGuard Backend — Bearer Token Authentication
==================================================

What:  Verifies `Authorization: Bearer <jwt>` headers on secure routes and
       resolves the token subject to a caller record. Also issues tokens.
Why:   Handlers on secure routes can rely on `ctx.identity` being a fully
       validated AuthenticatedIdentity: signature, expiry and subject
       resolution have all succeeded, or the handler never runs.
How:   PyJWT verifies signature, algorithm and the `exp`/`sub` claims;
       a SubjectResolver (database-backed in production) maps `sub` to a
       principal.

Check order:
    1. Skipped for public routes (is_secure: false) and AUTH_IGNORE_PATHS globs
    2. HTTPS required unless the Host is a relaxed development host
    3. Case-insensitive `Bearer <token>` extraction
    4. Signature + algorithm + expiry verification
    5. Subject claim present and resolvable

Failure reporting:
    Every failure raises AuthenticationError with a specific reason
    (expired, bad_signature, malformed, ...) that is logged. The response
    body is the same generic message for all of them.
"""

import abc
import fnmatch
import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, Optional, Union

import jwt
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from routeguard.exceptions import (
    AuthFailureReason,
    AuthenticationError,
    ConfigurationError,
    DatabaseError,
)
from routeguard.services.route_registry import RouteMatch

logger = logging.getLogger(__name__)

_BEARER_RE = re.compile(r"^Bearer\s+(.+)$", re.IGNORECASE)


# ══════════════════════════════════════════════════════════════════════════
# Identities
# ══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class AnonymousIdentity:
    subject: None = None

    @property
    def is_authenticated(self) -> bool:
        return False


@dataclass(frozen=True)
class AuthenticatedIdentity:
    subject: str
    issued_at: Optional[datetime]
    expires_at: datetime
    principal: Any = field(default=None, compare=False, repr=False)

    @property
    def is_authenticated(self) -> bool:
        return True


ANONYMOUS = AnonymousIdentity()

Identity = Union[AnonymousIdentity, AuthenticatedIdentity]


# ══════════════════════════════════════════════════════════════════════════
# Subject Resolution
# ══════════════════════════════════════════════════════════════════════════

class SubjectResolver(abc.ABC):
    """Maps a token `sub` claim to the caller record it names."""

    @abc.abstractmethod
    async def resolve(self, subject: str) -> Optional[Any]:
        """Return the principal, or None when the subject does not exist."""


class UserSubjectResolver(SubjectResolver):
    """Resolves `sub` as a primary key of the users table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def resolve(self, subject: str) -> Optional[Any]:
        from routeguard.models.user import User

        try:
            user_id = int(subject)
        except (TypeError, ValueError):
            return None
        try:
            async with self._session_factory() as session:
                return await session.get(User, user_id)
        except SQLAlchemyError as e:
            logger.error("Subject lookup failed: %s", e)
            raise DatabaseError(context={"operation": "resolve_subject"}) from e


# ══════════════════════════════════════════════════════════════════════════
# Authenticator
# ══════════════════════════════════════════════════════════════════════════

def _bare_host(host: str) -> str:
    host = host.strip().lower()
    if host.startswith("["):
        return host[1:host.find("]")] if "]" in host else host
    return host.split(":", 1)[0]


class TokenAuthenticator:
    def __init__(
        self,
        secret: str,
        resolver: SubjectResolver,
        algorithm: str = "HS256",
        expires_minutes: int = 30,
        require_https: bool = True,
        relaxed_hosts: Iterable[str] = ("localhost", "127.0.0.1"),
        ignore_paths: Iterable[str] = (),
        clock: Callable[[], float] = time.time,
    ):
        if not secret:
            raise ConfigurationError("JWT secret is empty; set JWT_SECRET")
        self._secret = secret
        self._resolver = resolver
        self._algorithm = algorithm
        self._expires_seconds = expires_minutes * 60
        self._require_https = require_https
        self._relaxed_hosts = frozenset(_bare_host(h) for h in relaxed_hosts)
        self._ignore_paths = tuple(ignore_paths)
        self._clock = clock

    # ── Skip Rules ────────────────────────────────────────────────────────

    def is_ignored(self, path: str) -> bool:
        return any(path == pattern or fnmatch.fnmatchcase(path, pattern) for pattern in self._ignore_paths)

    def requires_auth(self, path: str, match: Optional[RouteMatch]) -> bool:
        """Secure routes need a token unless an ignore glob covers the path."""
        if self.is_ignored(path):
            return False
        return match is None or match.entry.is_secure

    # ── Verification ──────────────────────────────────────────────────────

    async def authenticate(
        self,
        authorization: Optional[str],
        *,
        host: str = "",
        is_https: bool = False,
    ) -> AuthenticatedIdentity:
        """
        Validate an Authorization header value.

        Raises:
            AuthenticationError with the specific reason.
        """
        if self._require_https and not is_https and _bare_host(host) not in self._relaxed_hosts:
            raise self._fail(AuthFailureReason.TRANSPORT_REQUIRED, host=host)

        match = _BEARER_RE.match((authorization or "").strip())
        if match is None:
            raise self._fail(AuthFailureReason.TOKEN_NOT_FOUND)

        claims = self.decode(match.group(1).strip())

        subject = claims.get("sub")
        if subject is None or str(subject) == "":
            raise self._fail(AuthFailureReason.SUBJECT_MISSING)

        principal = await self._resolver.resolve(str(subject))
        if principal is None:
            raise self._fail(AuthFailureReason.SUBJECT_NOT_FOUND, subject=str(subject))

        issued_at = claims.get("iat")
        return AuthenticatedIdentity(
            subject=str(subject),
            issued_at=datetime.fromtimestamp(issued_at, tz=timezone.utc) if issued_at is not None else None,
            expires_at=datetime.fromtimestamp(claims["exp"], tz=timezone.utc),
            principal=principal,
        )

    def decode(self, token: str) -> Dict[str, Any]:
        """
        Verify signature, algorithm and expiry; return the claims.

        Expiry is checked against the same clock `issue` stamps tokens with.
        """
        try:
            claims = jwt.decode(
                token,
                self._secret,
                algorithms=[self._algorithm],
                options={"require": ["exp", "sub"], "verify_exp": False, "verify_iat": False},
            )
        except jwt.InvalidSignatureError as e:
            raise self._fail(AuthFailureReason.BAD_SIGNATURE) from e
        except jwt.MissingRequiredClaimError as e:
            reason = AuthFailureReason.SUBJECT_MISSING if e.claim == "sub" else AuthFailureReason.MALFORMED
            raise self._fail(reason, claim=e.claim) from e
        except jwt.InvalidTokenError as e:
            raise self._fail(AuthFailureReason.MALFORMED, detail=str(e)) from e

        try:
            expires = int(claims["exp"])
        except (TypeError, ValueError) as e:
            raise self._fail(AuthFailureReason.MALFORMED, claim="exp") from e
        if expires <= self._clock():
            raise self._fail(AuthFailureReason.EXPIRED, expired_at=expires)
        return claims

    @staticmethod
    def _fail(reason: AuthFailureReason, **context: Any) -> AuthenticationError:
        logger.warning("Authentication failed: %s %s", reason.value, context or "")
        return AuthenticationError(reason, context=context)

    # ── Issuance ──────────────────────────────────────────────────────────

    def issue(self, subject: Union[str, int]) -> Dict[str, Any]:
        """
        Sign a token for `subject`.

        Returns:
            {"token": <jwt>, "expires": <epoch seconds>}
        """
        now = int(self._clock())
        expires = now + self._expires_seconds
        token = jwt.encode(
            {"iat": now, "exp": expires, "sub": str(subject)},
            self._secret,
            algorithm=self._algorithm,
        )
        return {"token": token, "expires": expires}

"""
RouteGuard Backend — Token Authentication Unit Tests
=======================================================

What:  Bearer parsing, JWT verification, HTTPS enforcement and skip rules.
How:   A stub SubjectResolver stands in for the users table.
"""

import time

import jwt
import pytest

from routeguard.exceptions import AuthenticationError, AuthFailureReason
from routeguard.services.token_auth import SubjectResolver, TokenAuthenticator

SECRET = "unit-test-secret"


class StubResolver(SubjectResolver):
    def __init__(self, known=("7",)):
        self.known = set(known)

    async def resolve(self, subject):
        return {"id": subject} if subject in self.known else None


def _authenticator(**kwargs):
    options = {"require_https": False, "ignore_paths": ["/health", "/docs*"]}
    options.update(kwargs)
    return TokenAuthenticator(SECRET, StubResolver(), **options)


async def _reason(auth, header, **kwargs):
    with pytest.raises(AuthenticationError) as exc_info:
        await auth.authenticate(header, **kwargs)
    return exc_info.value.reason


class TestIssueAndVerify:
    @pytest.mark.asyncio
    async def test_issued_token_authenticates(self):
        auth = _authenticator()
        issued = auth.issue(7)
        identity = await auth.authenticate(f"Bearer {issued['token']}")
        assert identity.is_authenticated
        assert identity.subject == "7"
        assert identity.principal == {"id": "7"}
        assert int(identity.expires_at.timestamp()) == issued["expires"]

    def test_issue_sets_expiry(self):
        auth = _authenticator(expires_minutes=5, clock=lambda: 1_000_000)
        assert auth.issue("7")["expires"] == 1_000_300

    @pytest.mark.asyncio
    async def test_scheme_is_case_insensitive(self):
        auth = _authenticator()
        identity = await auth.authenticate(f"bearer {auth.issue(7)['token']}")
        assert identity.subject == "7"

    @pytest.mark.asyncio
    async def test_expired_token(self):
        now = [1_000_000.0]
        auth = _authenticator(expires_minutes=1, clock=lambda: now[0])
        token = auth.issue(7)["token"]
        now[0] += 59
        assert (await auth.authenticate(f"Bearer {token}")).subject == "7"
        now[0] += 1
        assert await _reason(auth, f"Bearer {token}") is AuthFailureReason.EXPIRED

    @pytest.mark.asyncio
    async def test_expiry_follows_wall_clock_by_default(self):
        token = jwt.encode({"sub": "7", "exp": int(time.time()) - 10}, SECRET, algorithm="HS256")
        assert await _reason(_authenticator(), f"Bearer {token}") is AuthFailureReason.EXPIRED

    @pytest.mark.asyncio
    async def test_bad_signature(self):
        forged = jwt.encode({"sub": "7", "exp": int(time.time()) + 60}, "other-secret", algorithm="HS256")
        assert await _reason(_authenticator(), f"Bearer {forged}") is AuthFailureReason.BAD_SIGNATURE

    @pytest.mark.asyncio
    async def test_algorithm_none_rejected(self):
        unsigned = jwt.encode({"sub": "7", "exp": int(time.time()) + 60}, None, algorithm="none")
        assert await _reason(_authenticator(), f"Bearer {unsigned}") is AuthFailureReason.MALFORMED

    @pytest.mark.asyncio
    async def test_missing_subject(self):
        token = jwt.encode({"exp": int(time.time()) + 60}, SECRET, algorithm="HS256")
        assert await _reason(_authenticator(), f"Bearer {token}") is AuthFailureReason.SUBJECT_MISSING

    @pytest.mark.asyncio
    async def test_unknown_subject(self):
        auth = _authenticator()
        token = auth.issue(99)["token"]
        assert await _reason(auth, f"Bearer {token}") is AuthFailureReason.SUBJECT_NOT_FOUND

    @pytest.mark.asyncio
    @pytest.mark.parametrize("header", [None, "", "Token abc", "Bearer", "Basic dXNlcjpwYXNz"])
    async def test_missing_or_malformed_header(self, header):
        assert await _reason(_authenticator(), header) is AuthFailureReason.TOKEN_NOT_FOUND

    @pytest.mark.asyncio
    async def test_garbage_token(self):
        assert await _reason(_authenticator(), "Bearer not.a.jwt") is AuthFailureReason.MALFORMED


class TestTransport:
    @pytest.mark.asyncio
    async def test_plain_http_rejected_for_public_host(self):
        auth = _authenticator(require_https=True)
        token = auth.issue(7)["token"]
        reason = await _reason(auth, f"Bearer {token}", host="api.example.com", is_https=False)
        assert reason is AuthFailureReason.TRANSPORT_REQUIRED

    @pytest.mark.asyncio
    async def test_relaxed_host_with_port(self):
        auth = _authenticator(require_https=True)
        identity = await auth.authenticate(f"Bearer {auth.issue(7)['token']}", host="localhost:8000")
        assert identity.subject == "7"

    @pytest.mark.asyncio
    async def test_https_accepted(self):
        auth = _authenticator(require_https=True)
        identity = await auth.authenticate(
            f"Bearer {auth.issue(7)['token']}", host="api.example.com", is_https=True
        )
        assert identity.subject == "7"


class TestSkipRules:
    def test_public_route_needs_no_token(self, route_table):
        auth = _authenticator()
        assert not auth.requires_auth("/todo/1", route_table.lookup("/todo/1"))
        assert auth.requires_auth("/usage/stats", route_table.lookup("/usage/stats"))

    def test_ignore_globs(self):
        auth = _authenticator()
        assert not auth.requires_auth("/health", None)
        assert not auth.requires_auth("/docs/oauth2-redirect", None)
        assert auth.requires_auth("/anything", None)

    def test_empty_secret_rejected(self):
        from routeguard.exceptions import ConfigurationError

        with pytest.raises(ConfigurationError):
            TokenAuthenticator("", StubResolver())

"""
RouteGuard Backend — Application & Maintenance Tests
=======================================================

What:  App factory checks, /health, middleware headers, unexpected-error
       rendering, the shipped route document, and the maintenance CLI.
"""

import os
import time
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from routeguard.config import Settings, settings
from routeguard.exceptions import ConfigurationError
from routeguard.main import create_app
from routeguard.maintenance import main as maintenance_main
from routeguard.services.route_registry import RouteDefaults, compile_route_table, load_route_table
from routeguard.services.usage_store import UsageRecord


class TestCreateApp:
    def test_missing_secret_outside_debug(self, test_settings, route_table, session_factory):
        cfg = test_settings.model_copy(update={"jwt_secret": "", "debug": False})
        with pytest.raises(ConfigurationError, match="JWT_SECRET"):
            create_app(cfg=cfg, table=route_table, session_factory=session_factory)

    def test_debug_falls_back_to_development_secret(self, test_settings, route_table, session_factory):
        cfg = test_settings.model_copy(update={"jwt_secret": "", "debug": True})
        assert create_app(cfg=cfg, table=route_table, session_factory=session_factory) is not None

    def test_unimportable_controller(self, test_settings, session_factory):
        table = compile_route_table({"bad": {"url": "/bad", "controller": "routeguard.handlers.usage:Missing"}})
        with pytest.raises(ConfigurationError, match="Cannot import controller"):
            create_app(cfg=test_settings, table=table, session_factory=session_factory)

    def test_controller_missing_declared_verb(self, test_settings, session_factory):
        table = compile_route_table(
            {"bad": {"url": "/bad", "controller": "routeguard.handlers.usage:UsageStatsHandler", "method": "post"}}
        )
        with pytest.raises(ConfigurationError, match="does not serve"):
            create_app(cfg=test_settings, table=table, session_factory=session_factory)

    def test_controller_must_be_request_handler(self, test_settings, session_factory):
        table = compile_route_table({"bad": {"url": "/bad", "controller": "routeguard.config:Settings"}})
        with pytest.raises(ConfigurationError, match="not a RequestHandler"):
            create_app(cfg=test_settings, table=table, session_factory=session_factory)


class TestHealth:
    @pytest.mark.asyncio
    async def test_healthy(self, test_client):
        response = await test_client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["database"] == "connected"
        assert body["rate_limit_store"] == "memory"
        assert body["usage_driver"] == "memory"
        assert body["routes"] == 5
        assert "X-RateLimit-Limit" not in response.headers

    @pytest.mark.asyncio
    async def test_unreachable_database(self, test_settings, route_table, tmp_path):
        engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'dir' / 'x.db'}")
        factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        app = create_app(cfg=test_settings, table=route_table, session_factory=factory)
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            response = await client.get("/health")
        await engine.dispose()
        assert response.status_code == 503
        assert response.json()["status"] == "unhealthy"


class TestMiddleware:
    @pytest.mark.asyncio
    async def test_request_id_generated(self, test_client):
        response = await test_client.get("/todo/5")
        assert len(response.headers["X-Request-ID"]) == 8

    @pytest.mark.asyncio
    async def test_client_request_id_echoed(self, test_client):
        response = await test_client.get("/todo/5", headers={"X-Request-ID": "trace-123"})
        assert response.headers["X-Request-ID"] == "trace-123"

    @pytest.mark.asyncio
    async def test_unprintable_request_id_replaced(self, test_client):
        response = await test_client.get("/todo/5", headers={"X-Request-ID": "x" * 100})
        assert response.headers["X-Request-ID"] != "x" * 100

    @pytest.mark.asyncio
    async def test_security_headers(self, test_client):
        response = await test_client.get("/does/not/exist")
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["Strict-Transport-Security"].startswith("max-age=")

    @pytest.mark.asyncio
    async def test_cors_exposes_rate_limit_headers(self, test_client):
        response = await test_client.get("/todo/5", headers={"Origin": "http://localhost:3000"})
        exposed = response.headers["Access-Control-Expose-Headers"]
        assert "X-RateLimit-Remaining" in exposed
        assert "Retry-After" in exposed


class TestUnexpectedErrors:
    @pytest.mark.asyncio
    async def test_handler_crash_is_generic_500(self, app, test_client):
        recorder = app.state.services.recorder
        with patch.object(recorder, "stats_for", AsyncMock(side_effect=RuntimeError("boom"))):
            response = await test_client.get("/todo/5")
        assert response.status_code == 500
        assert response.json() == {"success": False, "errors": "Internal server error"}
        # Still metered and still carries the rate-limit headers
        assert response.headers["X-RateLimit-Limit"] == "3"
        assert recorder.store.records[-1].status_code == 500

    @pytest.mark.asyncio
    async def test_debug_mode_adds_detail(self, test_settings, route_table, session_factory):
        cfg = test_settings.model_copy(update={"debug": True})
        app = create_app(cfg=cfg, table=route_table, session_factory=session_factory)
        with patch.object(app.state.services.recorder, "stats_for", AsyncMock(side_effect=RuntimeError("boom"))):
            async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
                response = await client.get("/todo/5")
        assert response.json()["debug"] == {"detail": "boom"}


class TestMaintenance:
    def test_purge_usage(self, tmp_path):
        usage_dir = tmp_path / "usage"
        usage_dir.mkdir()
        (usage_dir / "usage_2020-01-01.jsonl").write_text("{}\n")
        cfg = Settings(jwt_secret="x", usage_tracker_driver="file", usage_storage_dir=str(usage_dir))
        assert maintenance_main(["purge-usage", "--days", "30"], cfg=cfg) == 0
        assert list(usage_dir.iterdir()) == []

    def test_purge_usage_rejects_zero_days(self, tmp_path):
        cfg = Settings(jwt_secret="x", usage_tracker_driver="memory")
        assert maintenance_main(["purge-usage", "--days", "0"], cfg=cfg) == 2

    def test_gc_rate_limits(self, tmp_path):
        stale = tmp_path / "abc.json"
        stale.write_text('{"requests": []}')
        old = time.time() - 7200
        os.utime(stale, (old, old))
        fresh = tmp_path / "def.json"
        fresh.write_text('{"requests": []}')
        cfg = Settings(jwt_secret="x", rate_limit_store="file", rate_limit_storage_dir=str(tmp_path))
        assert maintenance_main(["gc-rate-limits", "--older-than", "3600"], cfg=cfg) == 0
        assert not stale.exists()
        assert fresh.exists()

    def test_create_user(self, monkeypatch):
        monkeypatch.setenv("RG_TEST_PASSWORD", "a-long-password")
        cfg = Settings(jwt_secret="x")
        args = ["create-user", "maint-user", "--password-env", "RG_TEST_PASSWORD"]
        assert maintenance_main(args, cfg=cfg) == 0
        assert maintenance_main(args, cfg=cfg) == 1  # already exists

    def test_create_user_validates_input(self, monkeypatch):
        monkeypatch.setenv("RG_TEST_PASSWORD", "short")
        cfg = Settings(jwt_secret="x")
        assert maintenance_main(["create-user", "bad name!", "--password-env", "RG_TEST_PASSWORD"], cfg=cfg) == 2


class TestShippedRoutes:
    """The routes.yml that ships with the package, served end to end."""

    @pytest_asyncio.fixture
    async def shipped_client(self, test_settings, session_factory, user):
        table = load_route_table(settings.routes_file, RouteDefaults.from_settings(test_settings))
        application = create_app(cfg=test_settings, table=table, session_factory=session_factory)
        recorder = application.state.services.recorder
        for endpoint, elapsed in [("/a", 5.0), ("/a", 7.0), ("/b", 250.0)]:
            await recorder.record(UsageRecord(endpoint=endpoint, method="GET", status_code=200, response_time_ms=elapsed))
        token = application.state.services.authenticator.issue(user.id)["token"]
        async with AsyncClient(transport=ASGITransport(app=application), base_url="http://test") as client:
            client.headers["Authorization"] = f"Bearer {token}"
            yield client
        await application.state.services.aclose()

    @pytest.mark.asyncio
    async def test_top_endpoints(self, shipped_client):
        response = await shipped_client.get("/usage/top", params={"limit": 1})
        assert response.status_code == 200
        assert [row["endpoint"] for row in response.json()["data"]] == ["/a"]

    @pytest.mark.asyncio
    async def test_slowest_endpoints(self, shipped_client):
        response = await shipped_client.get("/usage/slow")
        assert [row["endpoint"] for row in response.json()["data"]] == ["/b", "/a"]

    @pytest.mark.asyncio
    async def test_limit_out_of_range(self, shipped_client):
        response = await shipped_client.get("/usage/top", params={"limit": 0})
        assert response.status_code == 400
        assert "limit" in response.json()["errors"]

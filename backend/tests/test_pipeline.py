"""
RouteGuard Backend — Request Pipeline Integration Tests
==========================================================

What:  Full requests through create_app(): routing, rate limiting, parameter
       rules, authentication, uploads, response envelopes and usage records.
How:   HTTPX AsyncClient over ASGITransport against the TEST_ROUTES table
       (see conftest.py). Stores are in memory; the database is aiosqlite.

Stage order exercised:
    404/405 → 429 → 400 (params) → 401 → uploads → 400 (models) → handler
"""

import base64
from unittest.mock import AsyncMock, patch

import pytest

from conftest import TEST_PASSWORD


def _records(app):
    return app.state.services.recorder.store.records


class TestRouting:
    @pytest.mark.asyncio
    async def test_unknown_path_is_404(self, app, test_client):
        response = await test_client.get("/does/not/exist")
        assert response.status_code == 404
        assert response.json() == {"success": False, "errors": "Resource not found"}
        assert "X-RateLimit-Limit" not in response.headers
        assert _records(app) == []

    @pytest.mark.asyncio
    async def test_wrong_method_is_405_with_allow(self, test_client):
        response = await test_client.post("/todo/5")
        assert response.status_code == 405
        assert response.headers["Allow"] == "GET"
        assert response.json()["success"] is False

    @pytest.mark.asyncio
    async def test_success_envelope(self, test_client):
        response = await test_client.get("/todo/5")
        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert "message" not in body
        assert body["data"]["total_requests"] == 0


class TestParameters:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("value", ["abc", "-5", "0"])
    async def test_invalid_id(self, test_client, value):
        response = await test_client.get(f"/todo/{value}")
        assert response.status_code == 400
        assert response.json() == {
            "success": False,
            "errors": {"id": "Invalid id: must be a positive integer"},
        }

    @pytest.mark.asyncio
    async def test_encoded_newline_in_id(self, test_client):
        response = await test_client.get("/todo/42%0A")
        assert response.status_code == 400
        assert response.json()["errors"] == {"id": "Invalid id: must be a positive integer"}

    @pytest.mark.asyncio
    async def test_invalid_query_model(self, test_client):
        response = await test_client.get("/todo/5", params={"period": "decade"})
        assert response.status_code == 400
        assert "period" in response.json()["errors"]


class TestRateLimiting:
    @pytest.mark.asyncio
    async def test_headers_on_every_routed_response(self, test_client):
        response = await test_client.get("/todo/5")
        assert response.headers["X-RateLimit-Limit"] == "3"
        assert response.headers["X-RateLimit-Remaining"] == "2"
        assert "X-RateLimit-Reset" in response.headers

    @pytest.mark.asyncio
    async def test_over_budget_is_429(self, test_client):
        for _ in range(3):
            assert (await test_client.get("/todo/5")).status_code == 200
        response = await test_client.get("/todo/5")
        assert response.status_code == 429
        assert int(response.headers["Retry-After"]) >= 1
        assert response.headers["X-RateLimit-Remaining"] == "0"
        body = response.json()
        assert body["success"] is False
        assert body["retry_after"] == int(response.headers["Retry-After"])

    @pytest.mark.asyncio
    async def test_budget_is_per_path(self, test_client):
        for _ in range(3):
            await test_client.get("/todo/5")
        assert (await test_client.get("/todo/6")).status_code == 200

    @pytest.mark.asyncio
    async def test_forwarded_client_from_loopback_proxy(self, test_client):
        for _ in range(3):
            await test_client.get("/todo/5", headers={"X-Forwarded-For": "198.51.100.1"})
        response = await test_client.get("/todo/5", headers={"X-Forwarded-For": "198.51.100.2"})
        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_store_outage_fails_open(self, app, test_client):
        store = app.state.services.limiter.store
        with patch.object(store, "update", AsyncMock(side_effect=ConnectionError("down"))):
            response = await test_client.get("/todo/5")
        assert response.status_code == 200
        assert "X-RateLimit-Limit" not in response.headers


class TestAuthentication:
    @pytest.mark.asyncio
    async def test_public_route_never_authenticates(self, app, test_client):
        authenticator = app.state.services.authenticator
        with patch.object(authenticator, "authenticate", AsyncMock()) as mocked:
            response = await test_client.get("/todo/5", headers={"Authorization": "Bearer garbage"})
        assert response.status_code == 200
        mocked.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_secure_route_without_token(self, test_client):
        response = await test_client.get("/usage/stats")
        assert response.status_code == 401
        assert response.json() == {"success": False, "errors": "Authentication required"}
        assert response.headers["WWW-Authenticate"] == "Bearer"

    @pytest.mark.asyncio
    async def test_secure_route_with_token(self, test_client, auth_headers):
        response = await test_client.get("/usage/stats", headers=auth_headers)
        assert response.status_code == 200
        assert response.json()["data"]["period"] == "day"

    @pytest.mark.asyncio
    async def test_token_over_plain_http_to_public_host(self, test_client, auth_headers):
        headers = dict(auth_headers, Host="api.example.com")
        response = await test_client.get("/usage/stats", headers=headers)
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_forwarded_https_from_trusted_proxy(self, test_client, auth_headers):
        headers = dict(auth_headers, Host="api.example.com")
        headers["X-Forwarded-Proto"] = "https"
        response = await test_client.get("/usage/stats", headers=headers)
        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_rate_limit_runs_before_auth(self, test_client):
        # /usage/stats declares no rate_limit block, so the secure default applies
        response = await test_client.get("/usage/stats")
        assert response.status_code == 401
        assert response.headers["X-RateLimit-Limit"] == "100"


class TestLogin:
    @pytest.mark.asyncio
    async def test_login_issues_usable_token(self, test_client, user):
        response = await test_client.post(
            "/users/login", json={"username": "alice", "password": TEST_PASSWORD}
        )
        assert response.status_code == 200
        data = response.json()["data"]
        assert set(data) == {"token", "expires"}

        stats = await test_client.get("/usage/stats", headers={"Authorization": f"Bearer {data['token']}"})
        assert stats.status_code == 200

    @pytest.mark.asyncio
    async def test_wrong_password_and_unknown_user_look_alike(self, test_client, user):
        wrong = await test_client.post("/users/login", json={"username": "alice", "password": "not-the-password"})
        unknown = await test_client.post("/users/login", json={"username": "mallory", "password": TEST_PASSWORD})
        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json() == unknown.json() == {"success": False, "errors": "Invalid username or password"}

    @pytest.mark.asyncio
    async def test_body_validation(self, test_client):
        response = await test_client.post("/users/login", json={"username": "al", "password": "short"})
        assert response.status_code == 400
        errors = response.json()["errors"]
        assert set(errors) == {"username", "password"}

    @pytest.mark.asyncio
    async def test_invalid_json(self, test_client):
        response = await test_client.post(
            "/users/login", content=b"{not json", headers={"Content-Type": "application/json"}
        )
        assert response.status_code == 400
        assert response.json()["errors"] == {"body": "Invalid JSON body"}

    @pytest.mark.asyncio
    async def test_login_body_tracked_with_password_redacted(self, app, test_client, user):
        await test_client.post("/users/login", json={"username": "alice", "password": TEST_PASSWORD})
        (record,) = _records(app)
        assert record.route_name == "login"
        assert record.metadata["body"] == {"username": "alice", "password": "[REDACTED]"}
        assert record.user_id is None


class TestUploads:
    @pytest.mark.asyncio
    async def test_disallowed_declared_type_rejected(self, test_client, auth_headers):
        response = await test_client.post(
            "/V1/files",
            files={"file": ("notes.txt", b"hello", "text/plain")},
            headers=auth_headers,
        )
        assert response.status_code == 400
        assert response.json() == {"success": False, "errors": {"file": "File type not allowed: text/plain"}}

    @pytest.mark.asyncio
    async def test_oversize_rejected(self, test_client, auth_headers):
        response = await test_client.post(
            "/V1/files",
            files={"file": ("big.png", b"x" * 2048, "image/png")},
            headers=auth_headers,
        )
        assert response.status_code == 400
        assert response.json()["errors"] == {"file": "File size exceeds limit of 1 KB"}

    @pytest.mark.asyncio
    async def test_multipart_without_boundary_is_400(self, test_client, auth_headers):
        headers = dict(auth_headers, **{"Content-Type": "multipart/form-data"})
        response = await test_client.post("/V1/files", content=b"garbage", headers=headers)
        assert response.status_code == 400
        body = response.json()
        assert body["success"] is False
        assert "body" in body["errors"]

    @pytest.mark.asyncio
    async def test_no_files(self, test_client, auth_headers):
        response = await test_client.post("/V1/files", json={"title": "nothing"}, headers=auth_headers)
        assert response.status_code == 400
        assert response.json()["errors"] == "No files uploaded"

    @pytest.mark.asyncio
    async def test_multipart_upload_download_delete(self, test_client, auth_headers, sample_png_bytes):
        pytest.importorskip("magic")
        response = await test_client.post(
            "/V1/files",
            files={"file": ("dot.png", sample_png_bytes, "image/png")},
            headers=auth_headers,
        )
        assert response.status_code == 201
        body = response.json()
        assert body["message"] == "1 file uploaded"
        (stored,) = body["data"]["files"]
        assert stored["detected_mime_type"] == "image/png"
        assert "embedded_data" not in stored

        download = await test_client.get("/V1/files", params={"path": stored["relative_path"]}, headers=auth_headers)
        assert download.status_code == 200
        assert download.content == sample_png_bytes
        assert download.headers["content-type"] == "image/png"

        deleted = await test_client.request(
            "DELETE", "/V1/files", json={"path": stored["relative_path"]}, headers=auth_headers
        )
        assert deleted.status_code == 200
        assert deleted.json()["message"] == "File deleted"

    @pytest.mark.asyncio
    async def test_strict_mode_discards_accepted_files(self, app, test_client, auth_headers, sample_png_bytes):
        pytest.importorskip("magic")
        payload = {
            "files": [
                {"data": base64.b64encode(sample_png_bytes).decode(), "name": "good.png"},
                {"data": "not base64!", "name": "bad.png"},
            ]
        }
        response = await test_client.post("/V1/files", json=payload, headers=auth_headers)
        assert response.status_code == 400
        assert response.json()["errors"] == {"files[1]": "Invalid base64 encoding"}
        root = app.state.services.ingestor.storage_root
        assert not any(path.is_file() for path in root.rglob("*"))

    @pytest.mark.asyncio
    async def test_delete_outside_root_is_404(self, test_client, auth_headers):
        response = await test_client.request(
            "DELETE", "/V1/files", json={"path": "../../etc/passwd"}, headers=auth_headers
        )
        assert response.status_code == 404


class TestUsageTracking:
    @pytest.mark.asyncio
    async def test_tracked_route_recorded_with_scrubbed_query(self, app, test_client):
        await test_client.get("/todo/5", params={"password": "hunter2", "page": "1"}, headers={"User-Agent": "pytest"})
        (record,) = _records(app)
        assert record.endpoint == "/todo/5"
        assert record.route_name == "todo_detail"
        assert record.status_code == 200
        assert record.ip_address == "127.0.0.1"
        assert record.metadata == {"query": {"password": "[REDACTED]", "page": "1"}}
        assert record.response_size > 0

    @pytest.mark.asyncio
    async def test_failures_on_tracked_routes_recorded(self, app, test_client):
        await test_client.get("/todo/abc")
        (record,) = _records(app)
        assert record.status_code == 400

    @pytest.mark.asyncio
    async def test_untracked_routes_not_recorded(self, app, test_client, auth_headers):
        await test_client.get("/usage/stats", headers=auth_headers)
        assert _records(app) == []

    @pytest.mark.asyncio
    async def test_error_rates_endpoint(self, test_client, auth_headers):
        await test_client.get("/todo/5")
        await test_client.get("/todo/abc")
        response = await test_client.get("/usage/errors", headers=auth_headers)
        rates = {row["endpoint"]: row for row in response.json()["data"]}
        assert rates["/todo/abc"]["error_rate"] == 100.0
        assert rates["/todo/5"]["error_rate"] == 0.0

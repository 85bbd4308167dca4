"""
RouteGuard Backend — Test Configuration (conftest.py)
======================================================

What:  Shared pytest fixtures for the entire test suite.
Why:   Provides reusable test infrastructure (SQLite database, compiled
       route table, app instance, API client, sample files).
How:   pytest auto-discovers conftest.py and makes fixtures available to all tests.
Who:   Used by all test files in the tests/ directory.
When:  Fixtures are created fresh for each test.

Fixture Hierarchy:
    ├── test_settings:    Settings with memory stores and tmp directories
    ├── db_engine:        aiosqlite engine with every table created
    ├── session_factory:  async sessions bound to db_engine
    ├── route_table:      TEST_ROUTES compiled with the test defaults
    ├── app:              create_app() wired to all of the above
    ├── test_client:      HTTPX AsyncClient over ASGITransport
    ├── user / auth_headers: a stored account and a bearer token for it
    └── sample_png_bytes / sample_jpeg_bytes
"""

import base64
import os
import tempfile

# Override settings for testing BEFORE any routeguard imports
# Why: the module-level app and engine in routeguard read these at import
_TEST_ROOT = tempfile.mkdtemp(prefix="routeguard_test_")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_TEST_ROOT}/import.db"
os.environ["JWT_SECRET"] = "test-secret-not-real"
os.environ["RATE_LIMIT_STORE"] = "memory"
os.environ["USAGE_TRACKER_DRIVER"] = "memory"
os.environ["UPLOAD_STORAGE_ROOT"] = os.path.join(_TEST_ROOT, "uploads")
os.environ["USAGE_STORAGE_DIR"] = os.path.join(_TEST_ROOT, "usage")
os.environ["RATE_LIMIT_STORAGE_DIR"] = os.path.join(_TEST_ROOT, "rate_limits")
os.environ["LOG_LEVEL"] = "WARNING"  # Reduce noise during tests

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402

from routeguard.config import Settings  # noqa: E402
from routeguard.database import create_tables  # noqa: E402
from routeguard.models.user import User  # noqa: E402
from routeguard.services.route_registry import RouteDefaults, compile_route_table  # noqa: E402

TEST_PASSWORD = "correct-horse-battery"

# What: The shipped routes plus a public placeholder route for pipeline tests
TEST_ROUTES = {
    "login": {
        "url": "/users/login",
        "controller": "routeguard.handlers.tokens:LoginHandler",
        "method": ["post"],
        "is_secure": False,
        "rate_limit": {"max_requests": 10, "window_seconds": 60},
        "tracking": {"name": "login", "track_user": False, "track_body": True},
    },
    "todo": {
        "url": "/todo/{id}",
        "controller": "routeguard.handlers.usage:UsageStatsHandler",
        "method": "get",
        "is_secure": False,
        "params": {"id": "id"},
        "rate_limit": {"max_requests": 3, "window_seconds": 60},
        "tracking": {"name": "todo_detail"},
    },
    "files": {
        "url": "/files",
        "version": 1,
        "controller": "routeguard.handlers.files:StoredFileHandler",
        "method": ["get", "post", "delete"],
        "file_upload": {"max_size": 1024, "allowed_types": "images", "strict": True},
        "tracking": {"name": "files"},
    },
    "usage_stats": {
        "url": "/usage/stats",
        "controller": "routeguard.handlers.usage:UsageStatsHandler",
    },
    "usage_errors": {
        "url": "/usage/errors",
        "controller": "routeguard.handlers.usage:ErrorRatesHandler",
    },
}


@pytest.fixture
def test_settings(tmp_path):
    """
    Settings isolated to one test.

    What:    Memory stores, tmp upload/usage directories, "test" as a
             relaxed host so httpx's http://test base URL may carry tokens.
    """
    return Settings(
        jwt_secret="test-secret-not-real",
        rate_limit_store="memory",
        rate_limit_gc_probability=0.0,
        usage_tracker_driver="memory",
        upload_storage_root=str(tmp_path / "uploads"),
        usage_storage_dir=str(tmp_path / "usage"),
        auth_relaxed_hosts="localhost,127.0.0.1,test",
        log_level="WARNING",
    )


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    """A fresh SQLite file per test, with users and usage_logs created."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def route_table(test_settings):
    return compile_route_table(TEST_ROUTES, RouteDefaults.from_settings(test_settings))


@pytest_asyncio.fixture
async def app(test_settings, route_table, session_factory):
    from routeguard.main import create_app

    application = create_app(cfg=test_settings, table=route_table, session_factory=session_factory)
    yield application
    await application.state.services.aclose()


@pytest_asyncio.fixture
async def test_client(app):
    """
    Provides an async HTTP test client for endpoint testing.

    What:    HTTPX AsyncClient configured to talk to our FastAPI app.
    How:     Uses ASGITransport to route requests directly to the app.
             The peer address is 127.0.0.1.
    """
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest_asyncio.fixture
async def user(session_factory):
    """A stored account with TEST_PASSWORD."""
    async with session_factory() as session:
        account = User(username="alice", password_hash=User.hash_password(TEST_PASSWORD))
        session.add(account)
        await session.commit()
        await session.refresh(account)
        return account


@pytest.fixture
def auth_headers(app, user):
    issued = app.state.services.authenticator.issue(user.id)
    return {"Authorization": f"Bearer {issued['token']}"}


@pytest.fixture
def sample_png_bytes():
    """A complete 1x1 PNG."""
    return base64.b64decode(
        "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mNkYPhfDwAChwGA60e6kgAAAABJRU5ErkJggg=="
    )


@pytest.fixture
def sample_jpeg_bytes():
    """
    Minimal JPEG: Start of Image (FFD8) + JFIF marker + End of Image (FFD9).

    Not a decodable photograph, but libmagic identifies it as image/jpeg.
    """
    return (
        b'\xff\xd8\xff\xe0\x00\x10JFIF\x00\x01\x01\x00\x00\x01\x00\x01\x00\x00'
        b'\xff\xd9'
    )

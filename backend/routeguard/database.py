"""
RouteGuard Backend — Database Session Management
==================================================

What:  Async SQLAlchemy engine, session factory, and declarative base.
Why:   The users table (token subjects, logins) and the usage_logs table
       (database usage driver) share one connection pool.
How:   An async engine with connection pooling; callers open short-lived
       sessions from `async_session_factory` and commit explicitly.
Who:   The subject resolver, the login handler, the database usage store,
       /health and the maintenance CLI.
When:  Engine is built at import (connections open on first use).

Connection Pooling Strategy:
    pool_size / max_overflow:  from settings (defaults 20 + 10)
    pool_pre_ping:             validates connections before use
    pool_timeout:              bounded wait for a free connection, so a
                               saturated pool fails a request instead of
                               hanging it
    SQLite (tests) uses SQLAlchemy's default pool without sizing options.
"""

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from routeguard.config import settings


def build_engine(url: str) -> AsyncEngine:
    """Create an async engine with pool options suited to the backend."""
    if url.startswith("sqlite"):
        return create_async_engine(url, echo=settings.log_level == "DEBUG")
    return create_async_engine(
        url,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_pre_ping=settings.db_pool_pre_ping,
        pool_timeout=settings.db_pool_timeout,
        pool_recycle=3600,
        echo=settings.log_level == "DEBUG",
    )


# ── Engine Configuration ──────────────────────────────────────────────────
engine = build_engine(settings.database_url)

# ── Session Factory ───────────────────────────────────────────────────────
# expire_on_commit=False: attributes stay readable after commit
async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


# ── Base Model ────────────────────────────────────────────────────────────
class Base(DeclarativeBase):
    """Base class for all ORM models; its metadata drives Alembic."""
    pass


# ── Lifecycle Helpers ─────────────────────────────────────────────────────
async def create_tables(target: AsyncEngine = engine) -> None:
    """Create all tables without Alembic. Used by tests and the SQLite dev setup."""
    import routeguard.models  # noqa: F401  registers the tables

    async with target.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def dispose_engine() -> None:
    """Close all pooled connections. Called during application shutdown."""
    await engine.dispose()

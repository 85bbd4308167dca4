"""
Alembic Migration Environment
===============================

What:  Runs RouteGuard's migrations (users, usage_logs).
How:   The URL is settings.database_url, never alembic.ini. Online mode
       drives the async engine through run_sync(); offline mode prints SQL.
Who:   `alembic -c backend/alembic.ini upgrade head`.
"""

import asyncio
from logging.config import fileConfig

from alembic import context
from sqlalchemy import pool
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import create_async_engine

from routeguard.config import settings
from routeguard.database import Base

# Registers users and usage_logs with Base.metadata
import routeguard.models  # noqa: F401

if context.config.config_file_name is not None:
    fileConfig(context.config.config_file_name)


def _configure_and_run(**options) -> None:
    context.configure(target_metadata=Base.metadata, compare_type=True, **options)
    with context.begin_transaction():
        context.run_migrations()


def _apply(connection: Connection) -> None:
    _configure_and_run(connection=connection)


async def _apply_online() -> None:
    engine = create_async_engine(settings.database_url, poolclass=pool.NullPool)
    try:
        async with engine.connect() as connection:
            await connection.run_sync(_apply)
    finally:
        await engine.dispose()


if context.is_offline_mode():
    _configure_and_run(
        url=settings.database_url,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
else:
    asyncio.run(_apply_online())

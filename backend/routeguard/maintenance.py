"""
RouteGuard Backend — Maintenance Commands
===========================================

What:  Housekeeping that should not run inside a request.
Who:   cron / operators, via the `routeguard-maintenance` console script.

    routeguard-maintenance purge-usage [--days N]
    routeguard-maintenance gc-rate-limits [--older-than SECONDS]
    routeguard-maintenance create-user USERNAME [--password-env VAR]

Exit codes: 0 success, 1 operation failed, 2 bad arguments.
"""

import argparse
import asyncio
import getpass
import logging
import os
import time
from typing import List, Optional

from pydantic import ValidationError
from sqlalchemy import select

from routeguard.config import Settings, settings as default_settings
from routeguard.database import async_session_factory, create_tables, dispose_engine
from routeguard.exceptions import RouteGuardError
from routeguard.logging_config import setup_logging
from routeguard.models.user import User
from routeguard.schemas.auth import LoginRequest
from routeguard.services.rate_limit_store import create_rate_limit_store
from routeguard.services.route_registry import RouteDefaults, load_route_table
from routeguard.services.usage_store import create_usage_store
from routeguard.services.usage_tracker import UsageRecorder

logger = logging.getLogger("routeguard.maintenance")


async def purge_usage(cfg: Settings, days: int) -> int:
    table = load_route_table(cfg.routes_file, RouteDefaults.from_settings(cfg))
    recorder = UsageRecorder(table, create_usage_store(cfg))
    try:
        return await recorder.purge(days)
    finally:
        await recorder.close()
        await dispose_engine()


async def gc_rate_limits(cfg: Settings, older_than: int) -> int:
    store = create_rate_limit_store(cfg)
    try:
        removed = await store.purge_stale(time.time() - older_than)
    finally:
        await store.close()
    logger.info("Rate-limit GC: removed %d windows idle for %ds (store=%s)", removed, older_than, store.name)
    return removed


async def create_user(username: str, password: str) -> int:
    """Create a login account. Returns the new user id."""
    await create_tables()
    try:
        async with async_session_factory() as session:
            existing = await session.execute(select(User.id).where(User.username == username))
            if existing.scalar_one_or_none() is not None:
                raise ValueError(f"User '{username}' already exists")
            hashed = await asyncio.to_thread(User.hash_password, password)
            user = User(username=username, password_hash=hashed)
            session.add(user)
            await session.commit()
            await session.refresh(user)
            logger.info("Created user %s (id=%d)", username, user.id)
            return user.id
    finally:
        await dispose_engine()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="routeguard-maintenance", description=__doc__.split("\n")[1])
    sub = parser.add_subparsers(dest="command", required=True)

    purge = sub.add_parser("purge-usage", help="delete usage records past retention")
    purge.add_argument("--days", type=int, default=None, help="defaults to USAGE_RETENTION_DAYS")

    gc = sub.add_parser("gc-rate-limits", help="drop idle rate-limit windows")
    gc.add_argument("--older-than", type=int, default=None, help="seconds; defaults to RATE_LIMIT_STALE_AFTER_SECONDS")

    user = sub.add_parser("create-user", help="create a login account")
    user.add_argument("username")
    user.add_argument("--password-env", default=None, help="read the password from this environment variable")
    return parser


def main(argv: Optional[List[str]] = None, cfg: Optional[Settings] = None) -> int:
    cfg = cfg or default_settings
    args = build_parser().parse_args(argv)
    setup_logging(cfg.log_level)

    try:
        if args.command == "purge-usage":
            days = args.days if args.days is not None else cfg.usage_retention_days
            if days < 1:
                logger.error("--days must be at least 1")
                return 2
            asyncio.run(purge_usage(cfg, days))
        elif args.command == "gc-rate-limits":
            older_than = args.older_than if args.older_than is not None else cfg.rate_limit_stale_after_seconds
            asyncio.run(gc_rate_limits(cfg, older_than))
        elif args.command == "create-user":
            password = os.environ.get(args.password_env, "") if args.password_env else getpass.getpass()
            try:
                LoginRequest(username=args.username, password=password)
            except ValidationError as e:
                for err in e.errors():
                    logger.error("%s: %s", ".".join(str(p) for p in err["loc"]), err["msg"])
                return 2
            asyncio.run(create_user(args.username, password))
    except (RouteGuardError, ValueError, OSError) as e:
        logger.error("%s failed: %s", args.command, e)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

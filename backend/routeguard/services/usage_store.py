"""
RouteGuard Backend — Usage Record Stores
==========================================

What:  Append-only persistence for per-request usage records, plus the
       aggregation queries the statistics endpoints need.
Why:   The recorder stays driver-agnostic; USAGE_TRACKER_DRIVER picks where
       records go without touching the pipeline.
How:   Three implementations behind the UsageStore interface:

       database  usage_logs table; inserts batched (USAGE_BATCH_SIZE) and
                 retried with tenacity; aggregation in SQL (GROUP BY)
       file      one JSON-lines file per UTC day (usage_YYYY-MM-DD.jsonl);
                 aggregation by scanning the files inside the period
       memory    a process-local list (tests, development)

Aggregate shape (UsageAggregate):
    total_requests, by_endpoint (per endpoint+method count, avg/min/max
    response time, error_count), by_status_code {code: n}, by_hour {0-23: n}
"""

import abc
import asyncio
import json
import logging
import re
from collections import Counter
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import aiofiles
import aiofiles.os
from sqlalchemy import case, delete, extract, func, insert, select
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from routeguard.config import Settings
from routeguard.exceptions import DatabaseError
from routeguard.models.usage_log import UsageLog
from routeguard.schemas.usage import EndpointStats

logger = logging.getLogger(__name__)

_DAY_FILE_RE = re.compile(r"^usage_(\d{4}-\d{2}-\d{2})\.jsonl$")


def _as_utc(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value.astimezone(timezone.utc)


# ══════════════════════════════════════════════════════════════════════════
# Records & Aggregates
# ══════════════════════════════════════════════════════════════════════════

@dataclass
class UsageRecord:
    endpoint: str
    method: str
    status_code: int
    response_time_ms: float = 0.0
    user_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    request_size: int = 0
    response_size: int = 0
    route_name: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_json(self) -> str:
        data = asdict(self)
        data["created_at"] = _as_utc(self.created_at).isoformat()
        return json.dumps(data, separators=(",", ":"), default=str)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UsageRecord":
        created_at = data.get("created_at")
        if isinstance(created_at, str):
            created_at = datetime.fromisoformat(created_at)
        return cls(
            endpoint=data.get("endpoint", ""),
            method=data.get("method", "GET"),
            status_code=int(data.get("status_code", 200)),
            response_time_ms=float(data.get("response_time_ms", 0.0)),
            user_id=data.get("user_id"),
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
            request_size=int(data.get("request_size") or 0),
            response_size=int(data.get("response_size") or 0),
            route_name=data.get("route_name"),
            metadata=data.get("metadata"),
            created_at=_as_utc(created_at) if created_at else datetime.now(timezone.utc),
        )


@dataclass
class UsageAggregate:
    total_requests: int = 0
    by_endpoint: List[EndpointStats] = field(default_factory=list)
    by_status_code: Dict[int, int] = field(default_factory=dict)
    by_hour: Dict[int, int] = field(default_factory=dict)


def aggregate_records(records: Iterable[UsageRecord]) -> UsageAggregate:
    """Fold records into an aggregate; by_endpoint ordered by count desc."""
    groups: Dict[tuple, Dict[str, Any]] = {}
    statuses: Counter = Counter()
    hours: Counter = Counter()
    total = 0

    for record in records:
        total += 1
        statuses[record.status_code] += 1
        hours[_as_utc(record.created_at).hour] += 1

        group = groups.setdefault(
            (record.endpoint, record.method),
            {"count": 0, "total": 0.0, "min": None, "max": None, "errors": 0},
        )
        elapsed = record.response_time_ms
        group["count"] += 1
        group["total"] += elapsed
        group["min"] = elapsed if group["min"] is None else min(group["min"], elapsed)
        group["max"] = elapsed if group["max"] is None else max(group["max"], elapsed)
        if record.status_code >= 400:
            group["errors"] += 1

    by_endpoint = [
        EndpointStats(
            endpoint=endpoint,
            method=method,
            count=g["count"],
            avg_response_time=round(g["total"] / g["count"], 2),
            min_response_time=g["min"],
            max_response_time=g["max"],
            error_count=g["errors"],
        )
        for (endpoint, method), g in groups.items()
    ]
    by_endpoint.sort(key=lambda s: s.count, reverse=True)

    return UsageAggregate(
        total_requests=total,
        by_endpoint=by_endpoint,
        by_status_code=dict(sorted(statuses.items())),
        by_hour=dict(sorted(hours.items())),
    )


# ══════════════════════════════════════════════════════════════════════════
# Interface
# ══════════════════════════════════════════════════════════════════════════

class UsageStore(abc.ABC):
    name: str = "abstract"

    @abc.abstractmethod
    async def append(self, record: UsageRecord) -> None:
        """Persist one record (possibly buffered until flush)."""

    @abc.abstractmethod
    async def aggregate(self, since: datetime, endpoint: str = "") -> UsageAggregate:
        """Aggregate records created at or after `since`; `endpoint` filters exactly."""

    @abc.abstractmethod
    async def purge(self, before: datetime) -> int:
        """Delete records older than `before`; returns how many units were removed."""

    async def flush(self) -> None:
        return None

    async def close(self) -> None:
        await self.flush()


class _ScanningUsageStore(UsageStore):
    """Aggregates in Python over whatever `_scan` yields."""

    @abc.abstractmethod
    async def _scan(self, since: datetime) -> List[UsageRecord]:
        ...

    async def aggregate(self, since: datetime, endpoint: str = "") -> UsageAggregate:
        since = _as_utc(since)
        records = [
            r for r in await self._scan(since)
            if _as_utc(r.created_at) >= since and (not endpoint or r.endpoint == endpoint)
        ]
        return aggregate_records(records)


# ══════════════════════════════════════════════════════════════════════════
# Memory
# ══════════════════════════════════════════════════════════════════════════

class MemoryUsageStore(_ScanningUsageStore):
    name = "memory"

    def __init__(self):
        self.records: List[UsageRecord] = []

    async def append(self, record: UsageRecord) -> None:
        self.records.append(record)

    async def _scan(self, since: datetime) -> List[UsageRecord]:
        return list(self.records)

    async def purge(self, before: datetime) -> int:
        before = _as_utc(before)
        kept = [r for r in self.records if _as_utc(r.created_at) >= before]
        removed = len(self.records) - len(kept)
        self.records = kept
        return removed

    def clear(self) -> None:
        self.records.clear()


# ══════════════════════════════════════════════════════════════════════════
# JSON-Lines Files
# ══════════════════════════════════════════════════════════════════════════

class FileUsageStore(_ScanningUsageStore):
    """
    usage_YYYY-MM-DD.jsonl per UTC day, one JSON object per line.

    Appends from this process are serialized by an asyncio.Lock; retention
    works on whole files (purge removes day files older than the cutoff).
    """

    name = "file"

    def __init__(self, storage_dir: str):
        self._dir = Path(storage_dir)
        self._dir.mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()

    def _day_path(self, moment: datetime) -> Path:
        return self._dir / f"usage_{_as_utc(moment).strftime('%Y-%m-%d')}.jsonl"

    def _day_files(self):
        for path in sorted(self._dir.glob("usage_*.jsonl")):
            match = _DAY_FILE_RE.match(path.name)
            if match:
                yield path, datetime.strptime(match.group(1), "%Y-%m-%d").date()

    async def append(self, record: UsageRecord) -> None:
        line = record.to_json() + "\n"
        async with self._lock:
            async with aiofiles.open(self._day_path(record.created_at), "a", encoding="utf-8") as f:
                await f.write(line)

    async def _scan(self, since: datetime) -> List[UsageRecord]:
        records: List[UsageRecord] = []
        for path, day in self._day_files():
            if day < since.date():
                continue
            async with aiofiles.open(path, "r", encoding="utf-8") as f:
                async for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        records.append(UsageRecord.from_dict(json.loads(line)))
                    except (ValueError, TypeError) as e:
                        logger.debug("Skipping unreadable usage line in %s: %s", path.name, e)
        return records

    async def purge(self, before: datetime) -> int:
        cutoff = _as_utc(before).date()
        removed = 0
        async with self._lock:
            for path, day in list(self._day_files()):
                if day < cutoff:
                    await aiofiles.os.remove(path)
                    removed += 1
        return removed


# ══════════════════════════════════════════════════════════════════════════
# Database
# ══════════════════════════════════════════════════════════════════════════

class DatabaseUsageStore(UsageStore):
    """
    usage_logs table via async SQLAlchemy.

    Records are buffered until `batch_size` are pending, then written in one
    INSERT. Transient OperationalErrors are retried with exponential
    backoff + jitter; a batch that still fails raises DatabaseError and is
    dropped (logged with its size).
    """

    name = "database"

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        batch_size: int = 1,
        max_attempts: int = 3,
        min_wait: float = 0.1,
        max_wait: float = 2.0,
    ):
        self._session_factory = session_factory
        self._batch_size = max(1, batch_size)
        self._max_attempts = max_attempts
        self._min_wait = min_wait
        self._max_wait = max_wait
        self._pending: List[UsageRecord] = []
        self._lock = asyncio.Lock()

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            retry=retry_if_exception_type(OperationalError),
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_exponential_jitter(initial=self._min_wait, max=self._max_wait),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

    async def append(self, record: UsageRecord) -> None:
        self._pending.append(record)
        if len(self._pending) >= self._batch_size:
            await self.flush()

    async def flush(self) -> None:
        async with self._lock:
            if not self._pending:
                return
            batch, self._pending = self._pending, []
            rows = [
                {
                    "endpoint": r.endpoint[:255],
                    "method": r.method,
                    "status_code": r.status_code,
                    "response_time_ms": r.response_time_ms,
                    "request_size": r.request_size,
                    "response_size": r.response_size,
                    "route_name": r.route_name,
                    "user_id": r.user_id,
                    "ip_address": r.ip_address,
                    "user_agent": r.user_agent[:500] if r.user_agent else None,
                    "extra": r.metadata,
                    "created_at": r.created_at,
                }
                for r in batch
            ]
            try:
                async for attempt in self._retrying():
                    with attempt:
                        async with self._session_factory() as session:
                            await session.execute(insert(UsageLog), rows)
                            await session.commit()
            except SQLAlchemyError as e:
                logger.error("Dropped %d usage records: %s", len(batch), e)
                raise DatabaseError(context={"operation": "usage_insert", "records": len(batch)}) from e

    async def aggregate(self, since: datetime, endpoint: str = "") -> UsageAggregate:
        await self.flush()

        filters = [UsageLog.created_at >= since]
        if endpoint:
            filters.append(UsageLog.endpoint == endpoint)

        error_case = case((UsageLog.status_code >= 400, 1), else_=0)
        hour = extract("hour", UsageLog.created_at)

        try:
            async with self._session_factory() as session:
                total = await session.scalar(select(func.count()).select_from(UsageLog).where(*filters))

                endpoint_rows = await session.execute(
                    select(
                        UsageLog.endpoint,
                        UsageLog.method,
                        func.count().label("count"),
                        func.avg(UsageLog.response_time_ms),
                        func.min(UsageLog.response_time_ms),
                        func.max(UsageLog.response_time_ms),
                        func.sum(error_case),
                    )
                    .where(*filters)
                    .group_by(UsageLog.endpoint, UsageLog.method)
                    .order_by(func.count().desc())
                )

                status_rows = await session.execute(
                    select(UsageLog.status_code, func.count())
                    .where(*filters)
                    .group_by(UsageLog.status_code)
                    .order_by(UsageLog.status_code)
                )

                hour_rows = await session.execute(
                    select(hour.label("hour"), func.count()).where(*filters).group_by("hour").order_by("hour")
                )
        except SQLAlchemyError as e:
            logger.error("Usage aggregation failed: %s", e)
            raise DatabaseError(context={"operation": "usage_aggregate"}) from e

        return UsageAggregate(
            total_requests=int(total or 0),
            by_endpoint=[
                EndpointStats(
                    endpoint=ep,
                    method=method,
                    count=int(count),
                    avg_response_time=round(float(avg or 0.0), 2),
                    min_response_time=float(low or 0.0),
                    max_response_time=float(high or 0.0),
                    error_count=int(errors or 0),
                )
                for ep, method, count, avg, low, high, errors in endpoint_rows.all()
            ],
            by_status_code={int(code): int(count) for code, count in status_rows.all()},
            by_hour={int(h): int(count) for h, count in hour_rows.all()},
        )

    async def purge(self, before: datetime) -> int:
        await self.flush()
        try:
            async with self._session_factory() as session:
                result = await session.execute(delete(UsageLog).where(UsageLog.created_at < before))
                await session.commit()
        except SQLAlchemyError as e:
            logger.error("Usage purge failed: %s", e)
            raise DatabaseError(context={"operation": "usage_purge"}) from e
        return int(result.rowcount or 0)


def create_usage_store(
    settings: Settings,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
) -> UsageStore:
    """Build the store named by USAGE_TRACKER_DRIVER."""
    if settings.usage_tracker_driver == "memory":
        return MemoryUsageStore()
    if settings.usage_tracker_driver == "file":
        return FileUsageStore(settings.usage_storage_dir)
    if session_factory is None:
        from routeguard.database import async_session_factory as session_factory
    return DatabaseUsageStore(
        session_factory,
        batch_size=settings.usage_batch_size,
        max_attempts=settings.retry_max_attempts,
        min_wait=settings.retry_min_wait,
        max_wait=settings.retry_max_wait,
    )

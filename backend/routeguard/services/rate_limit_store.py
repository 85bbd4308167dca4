"""
RouteGuard Backend — Rate-Limit Window Stores
===============================================

What:  Persistence for sliding-window records: one ordered list of request
       timestamps per (client, path) key.
Why:   The limiter's read → prune → count → append sequence must be atomic
       per key, or two concurrent requests both see N-1 and both pass.
       Each store provides that atomicity its own way.
How:   The single primitive is `update(key, mutate, ttl)`: the store loads
       the timestamps, calls the pure `mutate` function, writes back what it
       returns, and hands back mutate's result, all under one lock or
       transaction.

Implementations:
    MemoryRateLimitStore  asyncio.Lock around a dict. One process only.
    FileRateLimitStore    <dir>/<key>.json guarded by fcntl.flock(LOCK_EX).
                          Safe across workers on ONE host; not shared
                          between hosts.
    RedisRateLimitStore   WATCH/MULTI optimistic transaction, key TTL equal
                          to the window. Shared across instances.

Bounded I/O:
    Redis calls use socket timeouts and a bounded tenacity retry; file I/O
    is local. A store that still fails raises, and the limiter decides what
    to do with the failure.
"""

import abc
import asyncio
import fcntl
import json
import logging
import os
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple, TypeVar

from redis.asyncio import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from routeguard.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

# What: Pure function from current timestamps to (timestamps to store, result)
WindowMutator = Callable[[List[float]], Tuple[List[float], T]]


def _decode(raw: Optional[str]) -> List[float]:
    """Parse a stored record; corrupt or missing data reads as an empty window."""
    if not raw:
        return []
    try:
        data = json.loads(raw)
    except ValueError:
        logger.warning("Discarding corrupt rate-limit record")
        return []
    requests = data.get("requests") if isinstance(data, dict) else None
    if not isinstance(requests, list):
        return []
    return [float(ts) for ts in requests if isinstance(ts, (int, float))]


def _encode(timestamps: List[float]) -> str:
    return json.dumps({"requests": timestamps})


class RateLimitStore(abc.ABC):
    """Abstract window store. All methods are coroutine-safe."""

    name: str = "abstract"

    @abc.abstractmethod
    async def update(self, key: str, mutate: WindowMutator, ttl: int) -> T:
        """Atomically load, mutate and persist the window for `key`."""

    @abc.abstractmethod
    async def purge_stale(self, older_than: float) -> int:
        """Delete records untouched since `older_than` (epoch seconds). Returns count removed."""

    async def close(self) -> None:
        """Release connections. Default: nothing to release."""


# ══════════════════════════════════════════════════════════════════════════
# In-Memory Store
# ══════════════════════════════════════════════════════════════════════════

class MemoryRateLimitStore(RateLimitStore):
    name = "memory"

    def __init__(self, clock: Callable[[], float] = time.time):
        self._windows: Dict[str, Tuple[List[float], float]] = {}
        self._lock = asyncio.Lock()
        self._clock = clock

    async def update(self, key: str, mutate: WindowMutator, ttl: int) -> T:
        async with self._lock:
            current = list(self._windows.get(key, ([], 0.0))[0])
            stored, result = mutate(current)
            self._windows[key] = (list(stored), self._clock())
            return result

    async def purge_stale(self, older_than: float) -> int:
        async with self._lock:
            stale = [key for key, (_, touched) in self._windows.items() if touched < older_than]
            for key in stale:
                del self._windows[key]
        return len(stale)


# ══════════════════════════════════════════════════════════════════════════
# File Store
# ══════════════════════════════════════════════════════════════════════════

class FileRateLimitStore(RateLimitStore):
    """
    One JSON file per key: {"requests": [ts, ...]}.

    Keys are SHA-256 hex digests, so they are safe file names. The flock is
    held across read and write; blocking calls run in a worker thread so
    the event loop never waits on the lock.
    """

    name = "file"

    def __init__(self, storage_dir: str):
        self._dir = Path(storage_dir).resolve()
        self._dir.mkdir(parents=True, exist_ok=True)
        logger.info("FileRateLimitStore initialized at %s", self._dir)

    def _path(self, key: str) -> Path:
        if not key.isalnum():
            raise ValueError("rate-limit keys must be alphanumeric digests")
        return self._dir / f"{key}.json"

    def _update_sync(self, key: str, mutate: WindowMutator) -> T:
        fd = os.open(self._path(key), os.O_RDWR | os.O_CREAT, 0o600)
        with os.fdopen(fd, "r+", encoding="utf-8") as fh:
            fcntl.flock(fh.fileno(), fcntl.LOCK_EX)
            try:
                stored, result = mutate(_decode(fh.read()))
                fh.seek(0)
                fh.truncate()
                fh.write(_encode(list(stored)))
                fh.flush()
            finally:
                fcntl.flock(fh.fileno(), fcntl.LOCK_UN)
        return result

    async def update(self, key: str, mutate: WindowMutator, ttl: int) -> T:
        return await asyncio.to_thread(self._update_sync, key, mutate)

    def _purge_sync(self, older_than: float) -> int:
        removed = 0
        for record in self._dir.glob("*.json"):
            try:
                if record.stat().st_mtime < older_than:
                    record.unlink()
                    removed += 1
            except FileNotFoundError:
                continue
        return removed

    async def purge_stale(self, older_than: float) -> int:
        removed = await asyncio.to_thread(self._purge_sync, older_than)
        if removed:
            logger.debug("Removed %d stale rate-limit records", removed)
        return removed


# ══════════════════════════════════════════════════════════════════════════
# Redis Store
# ══════════════════════════════════════════════════════════════════════════

class RedisRateLimitStore(RateLimitStore):
    """
    Shared window store for multi-instance deployments.

    Concurrency: WATCH the key, read it, queue the SET inside MULTI. If
    another client writes the key first, EXEC fails with WatchError and
    redis-py re-runs the whole read-modify-write.
    Expiry: every write sets the key TTL to the window, so idle clients
    disappear without a sweep.
    """

    name = "redis"

    def __init__(
        self,
        client: Redis,
        key_prefix: str = "routeguard:ratelimit:",
        max_attempts: int = 3,
        min_wait: float = 0.1,
        max_wait: float = 2.0,
    ):
        self._redis = client
        self._prefix = key_prefix
        self._max_attempts = max_attempts
        self._min_wait = min_wait
        self._max_wait = max_wait

    @classmethod
    def from_url(cls, url: str, socket_timeout: float = 2.0, **kwargs) -> "RedisRateLimitStore":
        client = Redis.from_url(
            url,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
            decode_responses=True,
        )
        return cls(client, **kwargs)

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            retry=retry_if_exception_type((RedisConnectionError, RedisTimeoutError)),
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_exponential_jitter(initial=self._min_wait, max=self._max_wait),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

    async def update(self, key: str, mutate: WindowMutator, ttl: int) -> T:
        redis_key = f"{self._prefix}{key}"

        async def _transaction(pipe) -> T:
            current = _decode(await pipe.get(redis_key))
            stored, result = mutate(current)
            pipe.multi()
            pipe.set(redis_key, _encode(list(stored)), ex=max(1, int(ttl)))
            return result

        async for attempt in self._retrying():
            with attempt:
                return await self._redis.transaction(
                    _transaction, redis_key, value_from_callable=True
                )

    async def purge_stale(self, older_than: float) -> int:
        # Keys expire through their TTL
        return 0

    async def close(self) -> None:
        await self._redis.aclose()


def create_rate_limit_store(settings: Settings) -> RateLimitStore:
    """Build the store named by RATE_LIMIT_STORE."""
    if settings.rate_limit_store == "memory":
        return MemoryRateLimitStore()
    if settings.rate_limit_store == "redis":
        return RedisRateLimitStore.from_url(
            settings.redis_url,
            socket_timeout=settings.redis_socket_timeout,
            max_attempts=settings.retry_max_attempts,
            min_wait=settings.retry_min_wait,
            max_wait=settings.retry_max_wait,
        )
    return FileRateLimitStore(settings.rate_limit_storage_dir)

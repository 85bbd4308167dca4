"""
RouteGuard Backend — Sliding-Window Rate Limiter
==================================================

What:  Per (client, path) request budget: at most `max_requests` within the
       trailing `window_seconds`.
Why:   Fixed windows allow a 2x burst at the boundary (N at :59, N at :00).
       A sliding window always counts the last W seconds.
How:   1. window_start = now - window
       2. drop timestamps <= window_start
       3. if count >= max → deny, retry_after = max(1, oldest + window - now)
       4. else append now → allow
       Steps 1-4 run inside RateLimitStore.update, so they are atomic per key.

Failure policy:
    Denial is a normal result, never an exception. A broken store fails
    OPEN: the request proceeds and the error is logged, since an outage of
    the limiter's backend must not take the whole API down with it.

Garbage collection:
    On roughly 1% of checks (gc_probability) stale keys are purged from the
    store. Keys are also pruned lazily on every touch.
"""

import hashlib
import logging
import math
import random
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from routeguard.services.rate_limit_store import RateLimitStore
from routeguard.services.route_registry import RateLimitPolicy, RouteTable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitResult:
    """
    Outcome of one check.

    reset_at:     epoch second when the oldest counted request leaves the window
    retry_after:  seconds to wait; 0 when allowed, at least 1 when denied
    """

    allowed: bool
    limit: int
    current_count: int
    remaining: int
    reset_at: int
    retry_after: int

    def headers(self) -> Dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_at),
        }


class RateLimiter:
    def __init__(
        self,
        table: RouteTable,
        store: RateLimitStore,
        clock: Callable[[], float] = time.time,
        gc_probability: float = 0.01,
        stale_after_seconds: int = 3600,
        rng: Callable[[], float] = random.random,
    ):
        self._table = table
        self._store = store
        self._clock = clock
        self._gc_probability = gc_probability
        self._stale_after = stale_after_seconds
        self._rng = rng

    @property
    def store(self) -> RateLimitStore:
        return self._store

    @staticmethod
    def make_key(client_id: str, path: str) -> str:
        return hashlib.sha256(f"{client_id}|{path}".encode("utf-8")).hexdigest()

    async def check(self, client_id: str, path: str) -> Optional[RateLimitResult]:
        """Check `path` against its declared (or default) policy."""
        return await self.check_policy(client_id, path, self._table.rate_limit_for(path))

    async def check_policy(
        self, client_id: str, path: str, policy: RateLimitPolicy
    ) -> Optional[RateLimitResult]:
        """
        Apply `policy` to one request.

        Returns:
            RateLimitResult, or None when the policy is disabled or the store
            failed (fail open).
        """
        if not policy.enabled:
            return None

        now = self._clock()
        key = self.make_key(client_id, path)

        def _slide(timestamps: List[float]) -> Tuple[List[float], RateLimitResult]:
            window_start = now - policy.window_seconds
            kept = sorted(ts for ts in timestamps if ts > window_start)
            count = len(kept)
            reset_at = (kept[0] if kept else now) + policy.window_seconds
            if count >= policy.max_requests:
                return kept, RateLimitResult(
                    allowed=False,
                    limit=policy.max_requests,
                    current_count=count,
                    remaining=0,
                    reset_at=math.ceil(reset_at),
                    retry_after=max(1, math.ceil(reset_at - now)),
                )
            kept.append(now)
            return kept, RateLimitResult(
                allowed=True,
                limit=policy.max_requests,
                current_count=count + 1,
                remaining=max(0, policy.max_requests - count - 1),
                reset_at=math.ceil(reset_at),
                retry_after=0,
            )

        try:
            result = await self._store.update(key, _slide, ttl=policy.window_seconds)
        except Exception as e:
            logger.error(
                "Rate-limit store '%s' failed for %s — allowing request: %s",
                self._store.name, path, e, exc_info=True,
            )
            return None

        if not result.allowed:
            logger.warning(
                "Rate limit exceeded for %s on %s: %d requests in %ds window",
                client_id, path, result.current_count, policy.window_seconds,
            )

        if self._rng() < self._gc_probability:
            await self.collect_garbage()

        return result

    async def collect_garbage(self) -> int:
        """Purge records untouched for `stale_after_seconds`. Never raises."""
        try:
            return await self._store.purge_stale(self._clock() - self._stale_after)
        except Exception as e:
            logger.warning("Rate-limit garbage collection failed: %s", e)
            return 0

"""
RouteGuard Backend — Usage Recorder
=====================================

What:  Turns finished requests into UsageRecords and answers the
       statistics queries behind /usage/*.
Why:   Per-route tracking policy (what to record, under which name) lives in
       the route table; the pipeline only reports what happened.
How:   record() honours the global switch, the sampling rate and the route's
       tracking policy, scrubs metadata, and appends to the UsageStore.
       Failures are logged and swallowed; a request never fails because it
       could not be metered.

Periods (UTC):
    hour   now - 1 hour
    day    today 00:00
    week   7 days ago 00:00
    month  30 days ago 00:00
    all    epoch
"""

import logging
import random
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional

from routeguard.schemas.usage import EndpointErrorRate, EndpointStats, UsageStats
from routeguard.services.route_registry import RouteEntry, RouteTable, TrackingPolicy
from routeguard.services.token_auth import Identity
from routeguard.services.usage_store import UsageRecord, UsageStore

logger = logging.getLogger(__name__)

REDACTED = "[REDACTED]"

# Substring match on the lowercased key with "-" and spaces read as "_":
# "user_password", "X-Api-Key" and "card number" all hit
SENSITIVE_KEYS = (
    "password", "passwd", "pwd", "pass",
    "token", "api_key", "apikey", "secret",
    "credit_card", "card_number", "cvv", "cvc",
    "ssn", "social_security",
)

_KEY_SEPARATORS = re.compile(r"[-\s]")

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _is_sensitive(key: Any) -> bool:
    lowered = _KEY_SEPARATORS.sub("_", str(key).lower())
    return any(marker in lowered for marker in SENSITIVE_KEYS)


def sanitize_params(params: Any) -> Any:
    """Replace values under sensitive keys with [REDACTED], recursively."""
    if isinstance(params, Mapping):
        return {
            key: REDACTED if _is_sensitive(key) else sanitize_params(value)
            for key, value in params.items()
        }
    if isinstance(params, list):
        return [sanitize_params(item) for item in params]
    return params


def period_start(period: str, now: Optional[datetime] = None) -> datetime:
    now = now or datetime.now(timezone.utc)
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    if period == "hour":
        return now - timedelta(hours=1)
    if period == "week":
        return midnight - timedelta(days=7)
    if period == "month":
        return midnight - timedelta(days=30)
    if period == "all":
        return _EPOCH
    return midnight


class UsageRecorder:
    def __init__(
        self,
        table: RouteTable,
        store: UsageStore,
        enabled: bool = True,
        sample_rate: int = 100,
        rng: Callable[[int, int], int] = random.randint,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self._table = table
        self._store = store
        self._enabled = enabled
        self._sample_rate = sample_rate
        self._rng = rng
        self._clock = clock

    @property
    def store(self) -> UsageStore:
        return self._store

    # ── Recording ─────────────────────────────────────────────────────────

    def policy_for(self, entry: Optional[RouteEntry], method: str) -> Optional[TrackingPolicy]:
        """The tracking policy that applies, or None when the request is not tracked."""
        if not self._enabled or entry is None or method.upper() == "OPTIONS":
            return None
        policy = self._table.tracking_policy_for_entry(entry)
        if policy is None or not policy.enabled:
            return None
        return policy

    def _sampled_out(self) -> bool:
        return self._sample_rate < 100 and self._rng(1, 100) > self._sample_rate

    async def record(self, record: UsageRecord) -> bool:
        """Append one record subject to sampling. Never raises."""
        if self._sampled_out():
            return False
        try:
            await self._store.append(record)
        except Exception as e:
            logger.error("Failed to record usage for %s %s: %s", record.method, record.endpoint, e)
            return False
        return True

    async def track(
        self,
        *,
        entry: Optional[RouteEntry],
        method: str,
        path: str,
        status_code: int,
        elapsed_ms: float,
        request_size: int = 0,
        response_size: int = 0,
        identity: Optional[Identity] = None,
        client_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        query: Optional[Mapping[str, Any]] = None,
        body: Any = None,
    ) -> bool:
        """Build a record from a finished request and record it if its route is tracked."""
        policy = self.policy_for(entry, method)
        if policy is None:
            return False

        metadata: Dict[str, Any] = {}
        if query:
            metadata["query"] = sanitize_params(dict(query))
        if policy.track_body and body:
            metadata["body"] = sanitize_params(body)

        subject = None
        if policy.track_user and identity is not None and identity.is_authenticated:
            subject = identity.subject

        return await self.record(
            UsageRecord(
                endpoint=path,
                method=method.upper(),
                status_code=status_code,
                response_time_ms=round(elapsed_ms, 2),
                user_id=subject,
                ip_address=client_ip if policy.track_ip else None,
                user_agent=user_agent if policy.track_user_agent else None,
                request_size=request_size,
                response_size=response_size,
                route_name=policy.name,
                metadata=metadata or None,
                created_at=self._clock(),
            )
        )

    # ── Statistics ────────────────────────────────────────────────────────

    async def stats_for(self, endpoint: str = "", period: str = "day") -> UsageStats:
        since = period_start(period, self._clock())
        aggregate = await self._store.aggregate(since, endpoint)
        return UsageStats(
            total_requests=aggregate.total_requests,
            period=period,
            period_start=since,
            by_endpoint=aggregate.by_endpoint,
            by_status_code=aggregate.by_status_code,
            by_hour=aggregate.by_hour,
        )

    async def top_endpoints(self, limit: int = 10, period: str = "day") -> List[EndpointStats]:
        stats = await self.stats_for("", period)
        ranked = sorted(stats.by_endpoint, key=lambda s: s.count, reverse=True)
        return ranked[:limit]

    async def slowest_endpoints(self, limit: int = 10, period: str = "day") -> List[EndpointStats]:
        stats = await self.stats_for("", period)
        ranked = sorted(stats.by_endpoint, key=lambda s: s.avg_response_time, reverse=True)
        return ranked[:limit]

    async def error_rates(self, period: str = "day", limit: Optional[int] = None) -> List[EndpointErrorRate]:
        stats = await self.stats_for("", period)
        rates = [
            EndpointErrorRate(
                endpoint=s.endpoint,
                method=s.method,
                total_requests=s.count,
                error_count=s.error_count,
                error_rate=round(s.error_count / s.count * 100, 2) if s.count else 0.0,
            )
            for s in stats.by_endpoint
        ]
        rates.sort(key=lambda r: r.error_rate, reverse=True)
        return rates[:limit] if limit else rates

    # ── Retention ─────────────────────────────────────────────────────────

    async def purge(self, days: int) -> int:
        """Delete records older than `days` days."""
        cutoff = self._clock() - timedelta(days=days)
        removed = await self._store.purge(cutoff)
        logger.info("Usage retention: removed %d (older than %d days, driver=%s)", removed, days, self._store.name)
        return removed

    async def close(self) -> None:
        await self._store.close()

"""
RouteGuard Backend — UsageLog SQLAlchemy Model
================================================

What:  ORM model for the `usage_logs` table: one row per tracked request.
Why:   The database usage driver persists here; statistics are computed with
       GROUP BY queries over these rows.
Who:   DatabaseUsageStore (writes, aggregates, retention purge) and Alembic.

Index Rationale:
    - endpoint / method / status_code: the three GROUP BY dimensions of stats
    - created_at: every stats query and the retention purge filter on it
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import JSON, BigInteger, DateTime, Float, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from routeguard.database import Base

# SQLite only autoincrements INTEGER PRIMARY KEY
_ID_TYPE = BigInteger().with_variant(Integer, "sqlite")


class UsageLog(Base):
    __tablename__ = "usage_logs"

    id: Mapped[int] = mapped_column(_ID_TYPE, primary_key=True, autoincrement=True)

    # ── Request ───────────────────────────────────────────────────────────
    endpoint: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    method: Mapped[str] = mapped_column(String(10), nullable=False, index=True)
    route_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # ── Outcome ───────────────────────────────────────────────────────────
    status_code: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    response_time_ms: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    request_size: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    response_size: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # ── Caller (each gated by the route's tracking flags) ─────────────────
    user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    ip_address: Mapped[Optional[str]] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    # Sanitized params/body; `metadata` is reserved on declarative classes
    extra: Mapped[Optional[Dict[str, Any]]] = mapped_column("metadata", JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        index=True,
        default=lambda: datetime.now(timezone.utc),
    )

    def __repr__(self) -> str:
        return f"<UsageLog(id={self.id}, {self.method} {self.endpoint} -> {self.status_code})>"

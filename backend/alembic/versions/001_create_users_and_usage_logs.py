"""Create users and usage_logs tables

Revision ID: 001
Revises: None
Create Date: 2026-10-18 00:00:00.000000+00:00

What:  `users` (token subjects, login) and `usage_logs` (database usage driver).
How:   See routeguard/models/user.py and routeguard/models/usage_log.py for
       column rationale.

Rollback: downgrade() drops both tables (destructive).
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("username", sa.String(25), nullable=False),
        sa.Column("password_hash", sa.String(255), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )
    op.create_index("ix_users_username", "users", ["username"], unique=True)

    op.create_table(
        "usage_logs",
        sa.Column(
            "id",
            sa.BigInteger().with_variant(sa.Integer(), "sqlite"),
            primary_key=True,
            autoincrement=True,
        ),
        sa.Column("endpoint", sa.String(255), nullable=False),
        sa.Column("method", sa.String(10), nullable=False),
        sa.Column("route_name", sa.String(100), nullable=True),
        sa.Column("status_code", sa.Integer(), nullable=False),
        sa.Column("response_time_ms", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("request_size", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("response_size", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("user_id", sa.String(64), nullable=True),
        # 45 chars fits a full IPv6 address with an embedded IPv4 tail
        sa.Column("ip_address", sa.String(45), nullable=True),
        sa.Column("user_agent", sa.String(500), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )
    # Every stats query filters on created_at and groups by one of these
    op.create_index("ix_usage_logs_endpoint", "usage_logs", ["endpoint"])
    op.create_index("ix_usage_logs_method", "usage_logs", ["method"])
    op.create_index("ix_usage_logs_status_code", "usage_logs", ["status_code"])
    op.create_index("ix_usage_logs_created_at", "usage_logs", ["created_at"])


def downgrade() -> None:
    op.drop_index("ix_usage_logs_created_at", table_name="usage_logs")
    op.drop_index("ix_usage_logs_status_code", table_name="usage_logs")
    op.drop_index("ix_usage_logs_method", table_name="usage_logs")
    op.drop_index("ix_usage_logs_endpoint", table_name="usage_logs")
    op.drop_table("usage_logs")
    op.drop_index("ix_users_username", table_name="users")
    op.drop_table("users")

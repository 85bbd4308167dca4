"""
RouteGuard Backend — User SQLAlchemy Model
============================================

What:  ORM model for the `users` table.
Why:   Token subjects are user ids; the login handler verifies bcrypt
       password hashes stored here.
Who:   UserSubjectResolver (token → user), the login handler, and the
       maintenance CLI (create-user).
"""

from datetime import datetime, timezone

import bcrypt
from sqlalchemy import DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from routeguard.database import Base

# What: Verified against when the username is unknown, so a failed lookup
# costs the same bcrypt round as a wrong password.
_DUMMY_HASH = bcrypt.hashpw(b"routeguard-timing-equalizer", bcrypt.gensalt())


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Login name: 3-25 characters, letters, digits and hyphens
    username: Mapped[str] = mapped_column(String(25), nullable=False, unique=True, index=True)

    # bcrypt hash ($2b$...), never the password itself
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    @staticmethod
    def hash_password(password: str) -> str:
        return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")

    def verify_password(self, password: str) -> bool:
        return bcrypt.checkpw(password.encode("utf-8"), self.password_hash.encode("utf-8"))

    @staticmethod
    def burn_verification(password: str) -> None:
        """Spend one bcrypt check on the dummy hash (unknown-username path)."""
        bcrypt.checkpw(password.encode("utf-8"), _DUMMY_HASH)

    def __repr__(self) -> str:
        return f"<User(id={self.id}, username='{self.username}')>"

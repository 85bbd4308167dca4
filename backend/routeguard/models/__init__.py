"""ORM models. Importing this package registers every table with Base.metadata."""

from routeguard.models.usage_log import UsageLog
from routeguard.models.user import User

__all__ = ["UsageLog", "User"]

"""Record schemas and demo record sources."""

from avropipe.schemas.users import USERS, UserRecord, generate_users

__all__ = ["USERS", "UserRecord", "generate_users"]

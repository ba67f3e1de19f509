"""
SQLModel tables.

Importing this package registers every table on SQLModel.metadata.
"""

from app.models.account_token import AccountTokens
from app.models.mfa import BackupCodes, MfaChallenges, TrustedDevices
from app.models.permissions import Roles, UserRoles
from app.models.refresh_token import RefreshTokens
from app.models.security_event import SecurityEvents
from app.models.user import Users

__all__ = [
    "Users",
    "Roles",
    "UserRoles",
    "RefreshTokens",
    "MfaChallenges",
    "BackupCodes",
    "TrustedDevices",
    "SecurityEvents",
    "AccountTokens",
]

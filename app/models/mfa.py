"""
SQLModel-based MFA models.

- MfaChallenges: Short-lived, single-use tokens bridging password and second factor
- BackupCodes: One-time recovery codes (keyed hashes only)
- TrustedDevices: Devices allowed to skip the second factor for a while
"""

from datetime import datetime

from sqlalchemy import ForeignKeyConstraint, Index
from sqlmodel import Field, SQLModel


class MfaChallenges(SQLModel, table=True):
    """
    Pending MFA challenge issued after a correct password.

    user_id is not a foreign key. Expired rows are purged by the maintenance job.
    """

    __tablename__ = "mfa_challenges"

    __table_args__ = (
        Index("idx_mfa_challenges_token_hash", "token_hash", unique=True),
        Index("idx_mfa_challenges_expires_at", "expires_at"),
    )

    id: int | None = Field(default=None, primary_key=True)
    token_hash: str = Field(max_length=64)
    user_id: int
    created_at: datetime
    expires_at: datetime
    consumed: bool = Field(default=False)
    consumed_at: datetime | None = Field(default=None)
    remember_me: bool = Field(default=False)
    ip_address: str | None = Field(default=None, max_length=45)


class BackupCodes(SQLModel, table=True):
    """Single-use backup code. used_at is set when the code is burned."""

    __tablename__ = "backup_codes"

    __table_args__ = (
        ForeignKeyConstraint(
            ["user_id"],
            ["users.user_id"],
            ondelete="CASCADE",
            onupdate="CASCADE",
            name="fk_backup_codes_user_id",
        ),
        Index("idx_backup_codes_user_id_code_hash", "user_id", "code_hash"),
    )

    id: int | None = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="users.user_id")
    code_hash: str = Field(max_length=64)
    created_at: datetime
    used_at: datetime | None = Field(default=None)


class TrustedDevices(SQLModel, table=True):
    """A device that completed MFA with trust_device set."""

    __tablename__ = "trusted_devices"

    __table_args__ = (
        ForeignKeyConstraint(
            ["user_id"],
            ["users.user_id"],
            ondelete="CASCADE",
            onupdate="CASCADE",
            name="fk_trusted_devices_user_id",
        ),
        Index("idx_trusted_devices_user_id", "user_id"),
        Index("idx_trusted_devices_token_hash", "token_hash", unique=True),
    )

    id: int | None = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="users.user_id")
    token_hash: str = Field(max_length=64)
    device_fingerprint: str = Field(max_length=64)
    device_name: str = Field(max_length=100)
    ip_address: str | None = Field(default=None, max_length=45)
    created_at: datetime
    expires_at: datetime
    last_used_at: datetime | None = Field(default=None)

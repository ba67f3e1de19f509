"""
SQLModel-based User models with inheritance for security

This module defines the Users database model using SQLModel, which combines
SQLAlchemy and Pydantic functionality. The inheritance structure is:

UserBase (shared public fields)
    ├─> Users (database table, adds internal/sensitive fields)
    └─> UserResponse (API schema, defined in app/schemas)

Every guarded update of a Users row changes concurrency_stamp, so two writers
that read the same row cannot both commit.
"""

import uuid
from datetime import datetime

from sqlalchemy import Index
from sqlmodel import Field, SQLModel


def new_concurrency_stamp() -> str:
    return uuid.uuid4().hex


class UserBase(SQLModel):
    """
    Base model with shared public fields for Users.

    These fields are safe to expose to the account owner via the API.
    """

    username: str = Field(max_length=30)
    email: str = Field(max_length=120)


class Users(UserBase, table=True):
    """
    Database table for user accounts with internal and sensitive fields.

    Internal/sensitive fields (should NOT be exposed via public API):
    - password: bcrypt hash (highly sensitive)
    - totp_secret: Fernet-encrypted TOTP seed (highly sensitive)
    - failed_login_attempts, lockout_until: Lockout bookkeeping
    - concurrency_stamp: Optimistic-concurrency token
    - is_deleted, deleted_at, deleted_by: Soft-delete state

    Invariant: mfa_enabled implies totp_secret and totp_enrolled_at are set.
    """

    __tablename__ = "users"

    __table_args__ = (
        Index("idx_users_username", "username", unique=True),
        Index("idx_users_email", "email", unique=True),
    )

    # Primary key
    user_id: int | None = Field(default=None, primary_key=True)

    created_at: datetime
    last_login_at: datetime | None = Field(default=None)
    last_login_ip: str | None = Field(default=None, max_length=45)

    # Status
    active: bool = Field(default=True)
    email_confirmed: bool = Field(default=False)
    requires_password_change: bool = Field(default=False)

    # Soft delete
    is_deleted: bool = Field(default=False)
    deleted_at: datetime | None = Field(default=None)
    deleted_by: int | None = Field(default=None)

    # Authentication (highly sensitive - never expose)
    password: str = Field(max_length=255)

    # Account lockout (security)
    failed_login_attempts: int = Field(default=0)
    lockout_until: datetime | None = Field(default=None)

    # MFA
    mfa_enabled: bool = Field(default=False)
    totp_secret: str | None = Field(default=None, max_length=255)
    totp_enrolled_at: datetime | None = Field(default=None)

    # Optimistic concurrency
    concurrency_stamp: str = Field(default_factory=new_concurrency_stamp, max_length=32)

    # Note: Relationships are intentionally omitted.
    # Foreign keys are sufficient for queries, and omitting relationships avoids
    # accidental eager loading in async sessions.

    @property
    def is_valid_account(self) -> bool:
        """Active and not soft-deleted."""
        return bool(self.active) and not self.is_deleted

    @property
    def has_pending_totp(self) -> bool:
        return self.totp_secret is not None and self.totp_enrolled_at is None

"""
SQLModel-based AccountTokens model.

Single-use, expiring tokens for registration completion and password reset.
Only the SHA256 hash of the token is stored.
"""

from datetime import datetime

from sqlalchemy import Index
from sqlmodel import Field, SQLModel


class AccountTokens(SQLModel, table=True):
    __tablename__ = "account_tokens"

    __table_args__ = (
        Index("idx_account_tokens_token_hash", "token_hash", unique=True),
        Index("idx_account_tokens_email", "email"),
    )

    id: int | None = Field(default=None, primary_key=True)
    purpose: str = Field(max_length=20)  # AccountTokenPurpose
    email: str = Field(max_length=120)
    user_id: int | None = Field(default=None)
    token_hash: str = Field(max_length=64)
    created_at: datetime
    expires_at: datetime
    used_at: datetime | None = Field(default=None)

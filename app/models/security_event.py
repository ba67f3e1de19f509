"""
SQLModel-based SecurityEvents model (append-only audit sink).

Usernames and emails are stored masked; secrets are never stored.
"""

from datetime import datetime

from sqlalchemy import Index
from sqlmodel import Field, SQLModel


class SecurityEvents(SQLModel, table=True):
    __tablename__ = "security_events"

    __table_args__ = (
        Index("idx_security_events_user_id", "user_id"),
        Index("idx_security_events_event_type", "event_type"),
        Index("idx_security_events_created_at", "created_at"),
    )

    id: int | None = Field(default=None, primary_key=True)
    event_type: str = Field(max_length=50)
    user_id: int | None = Field(default=None)
    username: str | None = Field(default=None, max_length=150)
    success: bool
    details: str | None = Field(default=None, max_length=500)
    ip_address: str | None = Field(default=None, max_length=45)
    created_at: datetime

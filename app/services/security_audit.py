"""
Security audit sink.

Writes an append-only row to security_events and a structured log line for
every authentication-relevant event. Identifiers are masked; callers must not
pass secrets in details.
"""

from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logging import get_logger, mask_identifier
from app.models.security_event import SecurityEvents

logger = get_logger(__name__)

MAX_DETAILS_LENGTH = 500


async def log_event(
    db: AsyncSession,
    event_type: str,
    *,
    now: datetime,
    user_id: int | None = None,
    username: str | None = None,
    success: bool = True,
    details: str | None = None,
    ip_address: str | None = None,
) -> None:
    """
    Record a security event.

    The row joins the caller's unit of work; it is written when the caller
    commits.
    """
    masked = mask_identifier(username) if username else None
    if details and len(details) > MAX_DETAILS_LENGTH:
        details = details[:MAX_DETAILS_LENGTH]

    db.add(
        SecurityEvents(
            event_type=event_type,
            user_id=user_id,
            username=masked,
            success=success,
            details=details,
            ip_address=ip_address,
            created_at=now,
        )
    )

    log = logger.info if success else logger.warning
    log(
        "security_event",
        event_type=event_type,
        user_id=user_id,
        username=masked,
        success=success,
        details=details,
        ip_address=ip_address,
    )

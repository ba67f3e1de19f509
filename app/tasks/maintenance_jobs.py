"""Periodic cleanup of expired authentication rows for arq worker."""

from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import delete, or_
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.clock import system_clock
from app.core.database import get_async_session
from app.core.logging import bind_context, get_logger
from app.models.account_token import AccountTokens
from app.models.mfa import MfaChallenges, TrustedDevices
from app.models.refresh_token import RefreshTokens

logger = get_logger(__name__)


def retention_cutoff(now: datetime) -> datetime:
    return now - timedelta(days=settings.TOKEN_RETENTION_DAYS)


async def purge_expired_refresh_tokens(db: AsyncSession, now: datetime) -> int:
    """Delete refresh tokens that expired or were revoked before the retention window."""
    cutoff = retention_cutoff(now)
    result = await db.execute(
        delete(RefreshTokens).where(
            or_(
                RefreshTokens.expires_at < cutoff,  # type: ignore[arg-type]
                RefreshTokens.revoked_at < cutoff,  # type: ignore[arg-type,operator]
            )
        )
    )
    return result.rowcount or 0  # type: ignore[attr-defined]


async def purge_expired_mfa_challenges(db: AsyncSession, now: datetime) -> int:
    """Challenges are useless once expired; no retention window."""
    result = await db.execute(
        delete(MfaChallenges).where(MfaChallenges.expires_at < now)  # type: ignore[arg-type]
    )
    return result.rowcount or 0  # type: ignore[attr-defined]


async def purge_expired_trusted_devices(db: AsyncSession, now: datetime) -> int:
    result = await db.execute(
        delete(TrustedDevices).where(TrustedDevices.expires_at < now)  # type: ignore[arg-type]
    )
    return result.rowcount or 0  # type: ignore[attr-defined]


async def purge_expired_account_tokens(db: AsyncSession, now: datetime) -> int:
    cutoff = retention_cutoff(now)
    result = await db.execute(
        delete(AccountTokens).where(
            or_(
                AccountTokens.expires_at < cutoff,  # type: ignore[arg-type]
                AccountTokens.used_at < cutoff,  # type: ignore[arg-type,operator]
            )
        )
    )
    return result.rowcount or 0  # type: ignore[attr-defined]


async def cleanup_expired_tokens_job(ctx: dict[str, Any]) -> dict[str, int]:
    """
    Cron job: purge expired refresh tokens, MFA challenges, trusted devices
    and account tokens.

    Args:
        ctx: ARQ context dict (may carry a "clock" for tests)

    Returns:
        Rows deleted per table
    """
    bind_context(task="cleanup_expired_tokens")
    clock = ctx.get("clock", system_clock)
    now = clock.now()

    try:
        async with get_async_session() as db:
            counts = {
                "refresh_tokens": await purge_expired_refresh_tokens(db, now),
                "mfa_challenges": await purge_expired_mfa_challenges(db, now),
                "trusted_devices": await purge_expired_trusted_devices(db, now),
                "account_tokens": await purge_expired_account_tokens(db, now),
            }
            await db.commit()
    except Exception as e:
        logger.error(
            "cleanup_expired_tokens_failed",
            error=str(e),
            error_type=type(e).__name__,
        )
        raise

    logger.info("cleanup_expired_tokens_completed", **counts)
    return counts

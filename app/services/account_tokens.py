"""Single-use expiring tokens for registration and password reset."""

from datetime import datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.security import generate_secure_token, hash_token
from app.models.account_token import AccountTokens


async def issue_token(
    db: AsyncSession,
    *,
    purpose: str,
    email: str,
    lifetime: timedelta,
    now: datetime,
    user_id: int | None = None,
) -> str:
    """
    Create a token, retiring any unused ones for the same purpose and email.

    Returns:
        Plaintext token (goes into the emailed link)
    """
    await db.execute(
        update(AccountTokens)
        .where(AccountTokens.purpose == purpose)  # type: ignore[arg-type]
        .where(AccountTokens.email == email)  # type: ignore[arg-type]
        .where(AccountTokens.used_at.is_(None))  # type: ignore[union-attr]
        .values(used_at=now)
        .execution_options(synchronize_session=False)
    )

    token = generate_secure_token()
    db.add(
        AccountTokens(
            purpose=purpose,
            email=email,
            user_id=user_id,
            token_hash=hash_token(token),
            created_at=now,
            expires_at=now + lifetime,
        )
    )
    await db.flush()
    return token


async def get_valid_token(
    db: AsyncSession, token: str, purpose: str, now: datetime
) -> AccountTokens | None:
    result = await db.execute(
        select(AccountTokens)
        .where(AccountTokens.token_hash == hash_token(token))  # type: ignore[arg-type]
        .where(AccountTokens.purpose == purpose)  # type: ignore[arg-type]
    )
    record = result.scalar_one_or_none()
    if record is None or record.used_at is not None or record.expires_at <= now:
        return None
    return record


async def mark_used(db: AsyncSession, record: AccountTokens, now: datetime) -> bool:
    """Guarded single use. False if another request used it first."""
    result = await db.execute(
        update(AccountTokens)
        .where(AccountTokens.id == record.id)  # type: ignore[arg-type]
        .where(AccountTokens.used_at.is_(None))  # type: ignore[union-attr]
        .values(used_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1  # type: ignore[attr-defined]

"""
MFA challenge tokens.

A challenge is issued after a correct password when the account has MFA
enabled. It is opaque to the client, stored hashed, expires after
MFA_CHALLENGE_EXPIRE_MINUTES and can be consumed exactly once.
"""

from datetime import datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.security import generate_secure_token, hash_token
from app.models.mfa import MfaChallenges


async def create_challenge(
    db: AsyncSession,
    user_id: int,
    ip_address: str | None,
    now: datetime,
    remember_me: bool = False,
) -> str:
    """
    Persist a new challenge for the user.

    Returns:
        Plaintext challenge token
    """
    token = generate_secure_token()
    db.add(
        MfaChallenges(
            token_hash=hash_token(token),
            user_id=user_id,
            created_at=now,
            expires_at=now + timedelta(minutes=settings.MFA_CHALLENGE_EXPIRE_MINUTES),
            remember_me=remember_me,
            ip_address=ip_address,
        )
    )
    await db.flush()
    return token


async def get_valid_challenge(db: AsyncSession, token: str, now: datetime) -> MfaChallenges | None:
    """Look up a challenge that exists, is unexpired and is unconsumed."""
    result = await db.execute(
        select(MfaChallenges).where(MfaChallenges.token_hash == hash_token(token))  # type: ignore[arg-type]
    )
    challenge = result.scalar_one_or_none()

    if challenge is None or challenge.consumed or challenge.expires_at <= now:
        return None
    return challenge


async def consume_challenge(db: AsyncSession, challenge: MfaChallenges, now: datetime) -> bool:
    """
    Mark a challenge consumed.

    Returns:
        False if another request consumed it first
    """
    result = await db.execute(
        update(MfaChallenges)
        .where(MfaChallenges.id == challenge.id)  # type: ignore[arg-type]
        .where(MfaChallenges.consumed == False)  # type: ignore[arg-type]  # noqa: E712
        .values(consumed=True, consumed_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1  # type: ignore[attr-defined]

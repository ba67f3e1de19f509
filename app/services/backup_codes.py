"""
Backup code service.

Codes are single-use recovery credentials shown to the user once. Only a
keyed hash is stored, and a code is burned the moment it matches, whatever
happens to the rest of the login.
"""

import secrets
from datetime import datetime

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.logging import get_logger
from app.core.security import keyed_hash
from app.models.mfa import BackupCodes

logger = get_logger(__name__)

# No 0/O, 1/I/L
BACKUP_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"


def normalize_code(code: str) -> str:
    return "".join(ch for ch in code.strip().upper() if ch.isalnum())


def _generate_code() -> str:
    return "".join(secrets.choice(BACKUP_CODE_ALPHABET) for _ in range(settings.BACKUP_CODE_LENGTH))


async def generate_codes(db: AsyncSession, user_id: int, now: datetime) -> list[str]:
    """
    Replace all of a user's backup codes with a fresh set.

    Returns:
        Plaintext codes (never retrievable again)
    """
    await db.execute(delete(BackupCodes).where(BackupCodes.user_id == user_id))  # type: ignore[arg-type]

    codes: list[str] = []
    while len(codes) < settings.BACKUP_CODE_COUNT:
        code = _generate_code()
        if code not in codes:
            codes.append(code)

    for code in codes:
        db.add(BackupCodes(user_id=user_id, code_hash=keyed_hash(code), created_at=now))
    await db.flush()

    logger.info("backup_codes_generated", user_id=user_id, count=len(codes))
    return codes


async def consume(db: AsyncSession, user_id: int, code: str, now: datetime) -> bool:
    """
    Burn a matching unused code.

    The guarded UPDATE (used_at IS NULL) means two concurrent submissions of
    the same code cannot both succeed.

    Returns:
        True if a code was burned
    """
    normalized = normalize_code(code)
    if len(normalized) != settings.BACKUP_CODE_LENGTH:
        return False

    result = await db.execute(
        update(BackupCodes)
        .where(BackupCodes.user_id == user_id)  # type: ignore[arg-type]
        .where(BackupCodes.code_hash == keyed_hash(normalized))  # type: ignore[arg-type]
        .where(BackupCodes.used_at.is_(None))  # type: ignore[union-attr]
        .values(used_at=now)
        .execution_options(synchronize_session=False)
    )
    return bool(result.rowcount)  # type: ignore[attr-defined]


async def remaining(db: AsyncSession, user_id: int) -> int:
    result = await db.execute(
        select(func.count())
        .select_from(BackupCodes)
        .where(BackupCodes.user_id == user_id)  # type: ignore[arg-type]
        .where(BackupCodes.used_at.is_(None))  # type: ignore[union-attr]
    )
    return int(result.scalar_one())


async def delete_all(db: AsyncSession, user_id: int) -> None:
    await db.execute(delete(BackupCodes).where(BackupCodes.user_id == user_id))  # type: ignore[arg-type]

"""
Breached password check against the HaveIBeenPwned Passwords range API.

Only the first five hex characters of the password's SHA-1 are sent; the
API answers with every known suffix for that prefix ("SUFFIX:COUNT" lines)
and the match happens locally. The check fails open: if the API cannot be
reached the password is accepted and a warning is logged.
"""

import hashlib

import httpx

from app.config import AuthErrorCode, AuthErrorMessage, settings
from app.core.errors import ServiceError
from app.core.logging import get_logger

logger = get_logger(__name__)

HASH_PREFIX_LENGTH = 5


def _sha1_hex(password: str) -> str:
    # Required by the range API, never stored
    return hashlib.sha1(password.encode("utf-8"), usedforsecurity=False).hexdigest().upper()


def parse_breach_count(body: str, suffix: str) -> int:
    """Find the count for a hash suffix in a range API response (0 if absent)."""
    for line in body.splitlines():
        candidate, _, count = line.strip().partition(":")
        if candidate.upper() == suffix:
            try:
                return int(count)
            except ValueError:
                return 0
    return 0


async def fetch_hash_suffixes(prefix: str) -> str:
    async with httpx.AsyncClient(
        timeout=settings.BREACHED_PASSWORD_API_TIMEOUT,
        headers={"Add-Padding": "true"},
    ) as client:
        response = await client.get(f"{settings.BREACHED_PASSWORD_API_URL}{prefix}")
        response.raise_for_status()
        return response.text


async def get_breach_count(password: str) -> int | None:
    """
    Number of breaches the password appears in.

    Returns:
        The count, or None when the check is disabled or the API failed
    """
    if not settings.BREACHED_PASSWORD_CHECK_ENABLED:
        return None

    digest = _sha1_hex(password)
    try:
        body = await fetch_hash_suffixes(digest[:HASH_PREFIX_LENGTH])
    except httpx.HTTPError as e:
        logger.warning("breached_password_check_unavailable", error=str(e))
        return None

    return parse_breach_count(body, digest[HASH_PREFIX_LENGTH:])


async def ensure_not_breached(password: str) -> None:
    """
    Raises:
        ServiceError: PASSWORD_BREACHED
    """
    count = await get_breach_count(password)
    if count is None or count < settings.BREACHED_PASSWORD_MIN_COUNT:
        return

    logger.warning(
        "breached_password_detected",
        breach_count=count,
        threshold=settings.BREACHED_PASSWORD_MIN_COUNT,
        blocked=settings.BREACHED_PASSWORD_BLOCK,
    )
    if settings.BREACHED_PASSWORD_BLOCK:
        raise ServiceError(AuthErrorMessage.PASSWORD_BREACHED, code=AuthErrorCode.PASSWORD_BREACHED)

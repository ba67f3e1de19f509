"""
Trusted device service.

After a successful MFA verification with trust_device set, the client gets an
opaque device token. Presenting it on a later login from the same browser and
network skips the second factor until it expires.

The device fingerprint is SHA256("{user_agent}|{ip_prefix}"), where the IP
prefix is the first three IPv4 octets (or the IPv6 address minus its last
group) so a DHCP renewal does not invalidate the device.
"""

from datetime import datetime, timedelta

from sqlalchemy import delete, desc, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.logging import get_logger
from app.core.security import constant_time_equals, generate_secure_token, hash_token
from app.models.mfa import TrustedDevices

logger = get_logger(__name__)

# Checked in order; iOS user agents also contain "Mac OS"
_DEVICE_NAMES = (
    ("iphone", "iPhone"),
    ("ipad", "iPad"),
    ("android", "Android Device"),
    ("windows", "Windows PC"),
    ("mac os", "Mac"),
    ("linux", "Linux PC"),
)


def extract_ip_prefix(ip_address: str | None) -> str:
    if not ip_address:
        return ""

    parts = ip_address.split(".")
    if len(parts) >= 3:
        return ".".join(parts[:3])

    if ":" in ip_address:
        colon_index = ip_address.rfind(":")
        if colon_index > 0:
            return ip_address[:colon_index]

    return ip_address


def compute_device_fingerprint(user_agent: str, ip_address: str | None) -> str:
    return hash_token(f"{user_agent}|{extract_ip_prefix(ip_address)}")


def extract_device_name(user_agent: str | None) -> str:
    if not user_agent:
        return "Unknown Device"
    lowered = user_agent.lower()
    for needle, name in _DEVICE_NAMES:
        if needle in lowered:
            return name
    return "Unknown Device"


_LAST_ACTIVITY = func.coalesce(TrustedDevices.last_used_at, TrustedDevices.created_at)


async def _enforce_device_limit(db: AsyncSession, user_id: int) -> None:
    """Delete the least recently used devices so one more fits under the cap."""
    count_result = await db.execute(
        select(func.count()).select_from(TrustedDevices).where(TrustedDevices.user_id == user_id)  # type: ignore[arg-type]
    )
    current_count = int(count_result.scalar_one())
    if current_count < settings.TRUSTED_DEVICE_MAX_PER_USER:
        return

    excess = current_count - settings.TRUSTED_DEVICE_MAX_PER_USER + 1
    oldest = await db.execute(
        select(TrustedDevices.id)
        .where(TrustedDevices.user_id == user_id)  # type: ignore[arg-type]
        .order_by(_LAST_ACTIVITY, TrustedDevices.id)
        .limit(excess)
    )
    oldest_ids = [row[0] for row in oldest.fetchall()]
    await db.execute(delete(TrustedDevices).where(TrustedDevices.id.in_(oldest_ids)))  # type: ignore[union-attr]
    logger.info("trusted_devices_evicted", user_id=user_id, count=len(oldest_ids))


async def create_trusted_device(
    db: AsyncSession,
    user_id: int,
    user_agent: str,
    ip_address: str | None,
    now: datetime,
) -> str:
    """
    Register the current device as trusted.

    Returns:
        Plaintext device token
    """
    await _enforce_device_limit(db, user_id)

    token = generate_secure_token()
    db.add(
        TrustedDevices(
            user_id=user_id,
            token_hash=hash_token(token),
            device_fingerprint=compute_device_fingerprint(user_agent, ip_address),
            device_name=extract_device_name(user_agent),
            ip_address=ip_address,
            created_at=now,
            expires_at=now + timedelta(days=settings.TRUSTED_DEVICE_LIFETIME_DAYS),
        )
    )
    await db.flush()
    logger.info("trusted_device_created", user_id=user_id)
    return token


async def validate_trusted_device(
    db: AsyncSession,
    user_id: int,
    token: str | None,
    user_agent: str,
    ip_address: str | None,
    now: datetime,
) -> bool:
    """
    Check a device token for this user and the current device.

    Updates last_used_at on success.
    """
    if not token or not settings.TRUSTED_DEVICE_ENABLED:
        return False

    result = await db.execute(
        select(TrustedDevices)
        .where(TrustedDevices.user_id == user_id)  # type: ignore[arg-type]
        .where(TrustedDevices.token_hash == hash_token(token))  # type: ignore[arg-type]
        .where(TrustedDevices.expires_at > now)  # type: ignore[arg-type]
    )
    device = result.scalar_one_or_none()
    if device is None:
        return False

    current_fingerprint = compute_device_fingerprint(user_agent, ip_address)
    if not constant_time_equals(device.device_fingerprint, current_fingerprint):
        logger.info("trusted_device_fingerprint_mismatch", user_id=user_id, device_id=device.id)
        return False

    device.last_used_at = now
    return True


async def list_devices(db: AsyncSession, user_id: int, now: datetime) -> list[TrustedDevices]:
    result = await db.execute(
        select(TrustedDevices)
        .where(TrustedDevices.user_id == user_id)  # type: ignore[arg-type]
        .where(TrustedDevices.expires_at > now)  # type: ignore[arg-type]
        .order_by(desc(_LAST_ACTIVITY), desc(TrustedDevices.id))
    )
    return list(result.scalars().all())


async def revoke_device(db: AsyncSession, user_id: int, device_id: int) -> bool:
    result = await db.execute(
        delete(TrustedDevices)
        .where(TrustedDevices.id == device_id)  # type: ignore[arg-type]
        .where(TrustedDevices.user_id == user_id)  # type: ignore[arg-type]
    )
    return bool(result.rowcount)  # type: ignore[attr-defined]


async def revoke_all(db: AsyncSession, user_id: int) -> int:
    result = await db.execute(delete(TrustedDevices).where(TrustedDevices.user_id == user_id))  # type: ignore[arg-type]
    return int(result.rowcount or 0)  # type: ignore[attr-defined]

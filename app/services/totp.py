"""TOTP secret generation and code verification (RFC 6238 via pyotp)."""

import re
from datetime import UTC, datetime

import pyotp

from app.config import settings

_CODE_PATTERN = re.compile(r"^\d{6}$")


def generate_secret() -> str:
    """Random base32 secret (160 bits)."""
    return pyotp.random_base32()


def provisioning_uri(secret: str, account_name: str) -> str:
    """otpauth:// URI for authenticator apps (QR code payload)."""
    return pyotp.TOTP(secret).provisioning_uri(name=account_name, issuer_name=settings.MFA_ISSUER)


def verify_code(secret: str, code: str, at: datetime) -> bool:
    """
    Check a 6-digit code against the secret at the given time.

    Accepts codes from TOTP_VALID_WINDOW adjacent 30s steps on either side.

    Args:
        secret: Base32 TOTP secret (decrypted)
        code: Code submitted by the user
        at: Verification time, naive UTC
    """
    code = code.strip().replace(" ", "")
    if not _CODE_PATTERN.match(code):
        return False

    # pyotp treats naive datetimes as local time
    for_time = at.replace(tzinfo=UTC) if at.tzinfo is None else at
    return pyotp.TOTP(secret).verify(code, for_time=for_time, valid_window=settings.TOTP_VALID_WINDOW)

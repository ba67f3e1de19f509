"""
Security utilities for authentication and authorization.

This module provides:
- Password hashing and verification using bcrypt
- JWT access token generation and verification
- Opaque token generation and hashing (refresh, challenge, device, account tokens)
"""

import base64
import hashlib
import hmac
import re
import secrets
import uuid
from calendar import timegm
from dataclasses import dataclass, field
from datetime import datetime, timedelta

import bcrypt
import jwt

from app.config import settings

# 32 random bytes = 256 bits of entropy
TOKEN_BYTES = 32


def validate_password_strength(password: str) -> tuple[bool, str | None]:
    """
    Validate password meets security requirements.

    Requirements:
    - At least 8 characters
    - Contains at least one uppercase letter
    - Contains at least one lowercase letter
    - Contains at least one digit
    - Contains at least one special character

    Returns:
        Tuple of (is_valid, error_message)
    """
    if len(password) < 8:
        return False, "Password must be at least 8 characters long"

    if not re.search(r"[A-Z]", password):
        return False, "Password must contain at least one uppercase letter"

    if not re.search(r"[a-z]", password):
        return False, "Password must contain at least one lowercase letter"

    if not re.search(r"\d", password):
        return False, "Password must contain at least one digit"

    if not re.search(r'[!@#$%^&*(),.?":{}|<>_\-+=\[\]\\\/~`]', password):
        return False, "Password must contain at least one special character"

    return True, None


def _prepare_password_for_bcrypt(password: str) -> str:
    """
    Prepare password for bcrypt by handling long passwords.

    Bcrypt has a 72 byte limit. For passwords longer than 72 bytes,
    we SHA256 hash them first and encode as base64.
    """
    password_bytes = password.encode("utf-8")

    if len(password_bytes) <= 72:
        return password

    # SHA256 produces 32 bytes, base64 encoding produces 44 chars (well under 72)
    hashed = hashlib.sha256(password_bytes).digest()
    return base64.b64encode(hashed).decode("ascii")


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """
    Verify a plain password against a bcrypt hash.

    Malformed stored hashes count as a mismatch rather than an error.
    """
    prepared_password = _prepare_password_for_bcrypt(plain_password)
    try:
        return bcrypt.checkpw(prepared_password.encode("utf-8"), hashed_password.encode("utf-8"))
    except ValueError:
        return False


def get_password_hash(password: str) -> str:
    """
    Hash a password using bcrypt.

    For passwords longer than 72 bytes (bcrypt's limit), we SHA256 hash them first.
    """
    prepared_password = _prepare_password_for_bcrypt(password)
    salt = bcrypt.gensalt(rounds=settings.BCRYPT_ROUNDS)
    hashed = bcrypt.hashpw(prepared_password.encode("utf-8"), salt)
    return hashed.decode("utf-8")


def generate_secure_token() -> str:
    """
    Create a cryptographically secure opaque token.

    Returns:
        URL-safe random token string (43 characters)
    """
    return secrets.token_urlsafe(TOKEN_BYTES)


def hash_token(token: str) -> str:
    """SHA256 hex digest of an opaque token. Only this value is ever persisted."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def keyed_hash(value: str) -> str:
    """
    HMAC-SHA256 of a short secret (backup codes) keyed with SECRET_KEY.

    Short codes have too little entropy for a plain hash; the key keeps a
    leaked table from being brute-forced offline.
    """
    return hmac.new(
        settings.SECRET_KEY.encode("utf-8"), value.encode("utf-8"), hashlib.sha256
    ).hexdigest()


def constant_time_equals(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


@dataclass(frozen=True)
class AccessTokenClaims:
    """Verified claims of an access token."""

    user_id: int
    username: str
    roles: list[str] = field(default_factory=list)
    requires_password_change: bool = False


def create_access_token(
    user_id: int,
    username: str,
    roles: list[str],
    *,
    issued_at: datetime,
    requires_password_change: bool = False,
    expires_delta: timedelta | None = None,
) -> tuple[str, datetime]:
    """
    Create a JWT access token.

    Args:
        user_id: The user ID to encode in the token
        username: Username, carried as unique_name
        roles: Role names at the time of issue
        issued_at: Issue time (naive UTC) from the application clock
        requires_password_change: Adds the requires_password_change claim when set
        expires_delta: Optional custom lifetime (defaults to settings.ACCESS_TOKEN_EXPIRE_MINUTES)

    Returns:
        Tuple of (encoded token, expiry as naive UTC)
    """
    if expires_delta is None:
        expires_delta = timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)

    expires_at = issued_at + expires_delta

    payload: dict[str, object] = {
        "sub": str(user_id),
        "unique_name": username,
        "jti": str(uuid.uuid4()),
        "iat": issued_at,
        "exp": expires_at,
        "iss": settings.JWT_ISSUER,
        "aud": settings.JWT_AUDIENCE,
        "type": "access",
        "roles": sorted(roles),
    }
    if requires_password_change:
        payload["requires_password_change"] = True

    encoded_jwt = jwt.encode(payload, settings.SECRET_KEY, algorithm=settings.ALGORITHM)
    return encoded_jwt, expires_at


def verify_access_token(token: str, now: datetime) -> AccessTokenClaims | None:
    """
    Verify and decode a JWT access token.

    Expiry is checked against now (naive UTC from the application clock)
    rather than the wall clock, so it agrees with every other lifetime check.

    Returns:
        Claims if token is valid, None otherwise
    """
    try:
        payload = jwt.decode(
            token,
            settings.SECRET_KEY,
            algorithms=[settings.ALGORITHM],
            audience=settings.JWT_AUDIENCE,
            issuer=settings.JWT_ISSUER,
            options={
                "verify_signature": True,
                "verify_exp": False,
                "verify_iat": False,
                "require": ["exp", "sub"],
            },
        )

        if int(payload["exp"]) <= timegm(now.utctimetuple()):
            return None

        if payload.get("type") != "access":
            return None

        subject: str | None = payload.get("sub")
        if subject is None:
            return None

        return AccessTokenClaims(
            user_id=int(subject),
            username=str(payload.get("unique_name", "")),
            roles=list(payload.get("roles", [])),
            requires_password_change=bool(payload.get("requires_password_change", False)),
        )

    except jwt.InvalidTokenError:
        # Bad signature, wrong audience/issuer, malformed
        return None
    except (ValueError, TypeError):
        return None

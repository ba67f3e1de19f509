"""
TOTP enrollment and MFA management.

Enrollment states:
    NotEnrolled (no secret)
    -> PendingConfirmation (secret set, totp_enrolled_at NULL)
    -> Enrolled (secret set, totp_enrolled_at set, mfa_enabled)

A pending secret can be replaced by initiating again; only the latest one
can be confirmed. TOTP is the only factor that sets mfa_enabled, so
disabling it turns MFA off entirely and drops backup codes and trusted
devices with it.
"""

from dataclasses import dataclass
from datetime import datetime

from fastapi import status
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import AuthErrorCode, SecurityEventType, settings
from app.core.errors import (
    ConcurrencyConflictError,
    ConflictError,
    NotFoundError,
    ServiceError,
)
from app.core.logging import get_logger
from app.core.secret_protector import SecretProtector
from app.core.security import verify_password
from app.core.transaction import CONFLICT, ConcurrencyConflict, TransactionManager, guarded_stamp_update
from app.models.user import Users
from app.services import backup_codes, security_audit, totp, trusted_devices

logger = get_logger(__name__)


@dataclass
class TotpSetup:
    secret: str
    provisioning_uri: str


@dataclass
class _InitiateAttempt:
    secret: str | None = None


async def _load_user(db: AsyncSession, user_id: int) -> Users:
    user = await db.get(Users, user_id)
    if user is None or not user.is_valid_account:
        raise NotFoundError("User not found")
    return user


async def initiate_enrollment(
    transactions: TransactionManager,
    protector: SecretProtector,
    user_id: int,
) -> TotpSetup:
    """
    Generate and store a pending TOTP secret.

    Raises:
        ConflictError: TOTP_ALREADY_CONFIGURED, or TOTP_SETUP_FAILED when
            concurrent updates kept winning
    """

    async def operation(db: AsyncSession, state: _InitiateAttempt) -> TotpSetup | ConcurrencyConflict:
        user = await _load_user(db, user_id)
        if user.totp_secret is not None and user.totp_enrolled_at is not None:
            raise ConflictError(
                "Authenticator app is already configured",
                code=AuthErrorCode.TOTP_ALREADY_CONFIGURED,
            )

        state.secret = totp.generate_secret()
        updated = await guarded_stamp_update(
            db,
            user,
            totp_secret=protector.protect(state.secret),
            totp_enrolled_at=None,
            mfa_enabled=False,
        )
        if not updated:
            return CONFLICT
        return TotpSetup(
            secret=state.secret,
            provisioning_uri=totp.provisioning_uri(state.secret, user.email),
        )

    try:
        setup = await transactions.execute_in_transaction(
            operation,
            state_factory=_InitiateAttempt,
            max_retries=settings.TOTP_SETUP_MAX_ATTEMPTS - 1,
        )
    except ConcurrencyConflictError as e:
        raise ConflictError(
            "Unable to start authenticator setup. Please try again.",
            code=AuthErrorCode.TOTP_SETUP_FAILED,
        ) from e

    logger.info("totp_enrollment_initiated", user_id=user_id)
    return setup


async def confirm_enrollment(
    transactions: TransactionManager,
    protector: SecretProtector,
    db: AsyncSession,
    *,
    user_id: int,
    code: str,
    now: datetime,
    client_ip: str | None = None,
) -> None:
    """
    Confirm the pending secret with a code from the authenticator app.

    Raises:
        ConflictError: TOTP_ALREADY_CONFIRMED
        ServiceError: TOTP_NOT_INITIATED, INVALID_CODE
    """

    async def operation(session: AsyncSession, state: None) -> Users | None | ConcurrencyConflict:
        user = await _load_user(session, user_id)
        if user.mfa_enabled and user.totp_enrolled_at is not None:
            raise ConflictError(
                "Authenticator app is already confirmed",
                code=AuthErrorCode.TOTP_ALREADY_CONFIRMED,
            )
        if not user.has_pending_totp:
            raise ServiceError(
                "Authenticator setup has not been started",
                code=AuthErrorCode.TOTP_NOT_INITIATED,
            )

        if not totp.verify_code(protector.unprotect(user.totp_secret), code, now):  # type: ignore[arg-type]
            return None

        if not await guarded_stamp_update(session, user, totp_enrolled_at=now, mfa_enabled=True):
            return CONFLICT
        return user

    user = await transactions.execute_in_transaction(operation)

    if user is None:
        await security_audit.log_event(
            db,
            SecurityEventType.MFA_FAILED,
            now=now,
            user_id=user_id,
            success=False,
            details="invalid enrollment code",
            ip_address=client_ip,
        )
        await db.commit()
        raise ServiceError(
            "Invalid verification code",
            code=AuthErrorCode.INVALID_CODE,
            status_code=status.HTTP_400_BAD_REQUEST,
        )

    await security_audit.log_event(
        db,
        SecurityEventType.MFA_ENROLLED,
        now=now,
        user_id=user_id,
        username=user.username,
        ip_address=client_ip,
    )
    await db.commit()


async def disable_mfa(
    db: AsyncSession,
    user: Users,
    *,
    password: str,
    now: datetime,
    client_ip: str | None = None,
) -> None:
    """
    Turn MFA off after re-checking the password.

    Raises:
        ServiceError: INVALID_PASSWORD
        ConcurrencyConflictError: The account changed since it was loaded
    """
    if user.user_id is None:
        raise ValueError("User ID cannot be None")

    if not verify_password(password, user.password):
        raise ServiceError("Current password is incorrect", code=AuthErrorCode.INVALID_PASSWORD)

    updated = await guarded_stamp_update(
        db, user, totp_secret=None, totp_enrolled_at=None, mfa_enabled=False
    )
    if not updated:
        raise ConcurrencyConflictError()

    await backup_codes.delete_all(db, user.user_id)
    await trusted_devices.revoke_all(db, user.user_id)
    await security_audit.log_event(
        db,
        SecurityEventType.MFA_DISABLED,
        now=now,
        user_id=user.user_id,
        username=user.username,
        ip_address=client_ip,
    )
    await db.commit()


async def regenerate_backup_codes(
    db: AsyncSession,
    user: Users,
    *,
    now: datetime,
    client_ip: str | None = None,
) -> list[str]:
    """
    Replace the user's backup codes.

    Raises:
        ServiceError: TOTP_NOT_CONFIGURED when MFA is off
    """
    if user.user_id is None:
        raise ValueError("User ID cannot be None")

    if not user.mfa_enabled:
        raise ServiceError(
            "Authenticator app is not configured",
            code=AuthErrorCode.TOTP_NOT_CONFIGURED,
        )

    codes = await backup_codes.generate_codes(db, user.user_id, now)
    await security_audit.log_event(
        db,
        SecurityEventType.BACKUP_CODES_GENERATED,
        now=now,
        user_id=user.user_id,
        username=user.username,
        ip_address=client_ip,
    )
    await db.commit()
    return codes

"""
Second-factor verification against an MFA challenge.

Both flows share one shape:
1. Resolve the challenge (exists, unexpired, unconsumed) and its account
2. Under the attempt tracker's per-(user, type) guard: reject if locked out,
   otherwise verify the code and record the outcome
3. Consume the challenge, then issue tokens (and a trusted-device token
   when requested)

Backup codes are burned the moment they match and the burn is committed
right away, so a later failure in the flow cannot resurrect the code.
"""

from datetime import datetime
from typing import NoReturn

from sqlalchemy.ext.asyncio import AsyncSession

from app.config import AuthErrorCode, AuthErrorMessage, MfaAttemptType, SecurityEventType, settings
from app.core.errors import AuthenticationError, ServiceError, TooManyAttemptsError
from app.core.logging import get_logger
from app.core.secret_protector import SecretProtector
from app.models.mfa import MfaChallenges
from app.models.user import Users
from app.services import backup_codes, mfa_challenge, security_audit, totp, trusted_devices
from app.services.authentication import AuthResult, generate_auth_result
from app.services.mfa_attempt_tracker import MfaAttemptTracker

logger = get_logger(__name__)


def _invalid_challenge() -> AuthenticationError:
    return AuthenticationError(
        AuthErrorMessage.INVALID_CHALLENGE, code=AuthErrorCode.INVALID_CHALLENGE
    )


async def _resolve_challenge(
    db: AsyncSession, challenge_token: str, now: datetime
) -> tuple[MfaChallenges, Users]:
    challenge = await mfa_challenge.get_valid_challenge(db, challenge_token, now)
    if challenge is None:
        raise _invalid_challenge()

    user = await db.get(Users, challenge.user_id)
    if user is None or not user.is_valid_account:
        raise AuthenticationError(AuthErrorMessage.INVALID_CREDENTIALS)
    return challenge, user


async def _reject_locked_out(
    db: AsyncSession, user: Users, attempt_type: str, now: datetime, client_ip: str | None
) -> NoReturn:
    await security_audit.log_event(
        db,
        SecurityEventType.MFA_FAILED,
        now=now,
        user_id=user.user_id,
        username=user.username,
        success=False,
        details=f"{attempt_type} attempts locked out",
        ip_address=client_ip,
    )
    await db.commit()
    raise TooManyAttemptsError(AuthErrorMessage.TOO_MANY_ATTEMPTS)


async def _reject_invalid_code(
    db: AsyncSession,
    tracker: MfaAttemptTracker,
    user_id: int,
    user: Users,
    attempt_type: str,
    now: datetime,
    client_ip: str | None,
) -> NoReturn:
    locked = await tracker.record_failed_attempt(user_id, attempt_type)
    await security_audit.log_event(
        db,
        SecurityEventType.MFA_FAILED,
        now=now,
        user_id=user.user_id,
        username=user.username,
        success=False,
        details=f"invalid {attempt_type}" + (" (locked out)" if locked else ""),
        ip_address=client_ip,
    )
    await db.commit()
    raise AuthenticationError(AuthErrorMessage.INVALID_CODE, code=AuthErrorCode.INVALID_CODE)


async def _complete_verification(
    db: AsyncSession,
    challenge: MfaChallenges,
    user: Users,
    *,
    method: str,
    trust_device: bool,
    client_ip: str | None,
    user_agent: str,
    now: datetime,
) -> AuthResult:
    if not await mfa_challenge.consume_challenge(db, challenge, now):
        logger.info("mfa_challenge_consume_lost", user_id=challenge.user_id)
        raise _invalid_challenge()

    await security_audit.log_event(
        db,
        SecurityEventType.MFA_SUCCESS,
        now=now,
        user_id=user.user_id,
        username=user.username,
        details=method,
        ip_address=client_ip,
    )

    result = await generate_auth_result(
        db,
        user,
        now=now,
        client_ip=client_ip,
        user_agent=user_agent,
        remember_me=challenge.remember_me,
    )

    if trust_device and settings.TRUSTED_DEVICE_ENABLED:
        result.trusted_device_token = await trusted_devices.create_trusted_device(
            db, challenge.user_id, user_agent, client_ip, now
        )

    await db.commit()
    return result


async def verify_totp(
    db: AsyncSession,
    tracker: MfaAttemptTracker,
    protector: SecretProtector,
    *,
    challenge_token: str,
    code: str,
    trust_device: bool,
    client_ip: str | None,
    user_agent: str,
    now: datetime,
) -> AuthResult:
    """
    Complete a login with a TOTP code.

    Raises:
        AuthenticationError: INVALID_CHALLENGE, INVALID_CREDENTIALS or INVALID_CODE
        TooManyAttemptsError: TOTP attempts locked out for this account
        ServiceError: TOTP_NOT_CONFIGURED
    """
    challenge, user = await _resolve_challenge(db, challenge_token, now)
    user_id = challenge.user_id

    async with tracker.guard(user_id, MfaAttemptType.TOTP):
        if await tracker.is_locked_out(user_id, MfaAttemptType.TOTP):
            await _reject_locked_out(db, user, MfaAttemptType.TOTP, now, client_ip)

        if not user.mfa_enabled or user.totp_secret is None or user.totp_enrolled_at is None:
            raise ServiceError(
                "Authenticator app is not configured",
                code=AuthErrorCode.TOTP_NOT_CONFIGURED,
            )

        secret = protector.unprotect(user.totp_secret)
        if not totp.verify_code(secret, code, now):
            await _reject_invalid_code(db, tracker, user_id, user, MfaAttemptType.TOTP, now, client_ip)

        await tracker.reset_attempts(user_id, MfaAttemptType.TOTP)

    return await _complete_verification(
        db,
        challenge,
        user,
        method=MfaAttemptType.TOTP,
        trust_device=trust_device,
        client_ip=client_ip,
        user_agent=user_agent,
        now=now,
    )


async def verify_backup_code(
    db: AsyncSession,
    tracker: MfaAttemptTracker,
    *,
    challenge_token: str,
    code: str,
    trust_device: bool,
    client_ip: str | None,
    user_agent: str,
    now: datetime,
) -> AuthResult:
    """
    Complete a login with a single-use backup code.

    Raises:
        AuthenticationError: INVALID_CHALLENGE, INVALID_CREDENTIALS or INVALID_CODE
        TooManyAttemptsError: Backup-code attempts locked out for this account
    """
    challenge, user = await _resolve_challenge(db, challenge_token, now)
    user_id = challenge.user_id

    async with tracker.guard(user_id, MfaAttemptType.BACKUP_CODE):
        if await tracker.is_locked_out(user_id, MfaAttemptType.BACKUP_CODE):
            await _reject_locked_out(db, user, MfaAttemptType.BACKUP_CODE, now, client_ip)

        if not await backup_codes.consume(db, user_id, code, now):
            await _reject_invalid_code(db, tracker, user_id, user, MfaAttemptType.BACKUP_CODE, now, client_ip)

        # Burned regardless of what happens next
        await db.commit()
        await tracker.reset_attempts(user_id, MfaAttemptType.BACKUP_CODE)

    remaining = await backup_codes.remaining(db, user_id)
    logger.info("backup_code_used", user_id=user_id, remaining=remaining)

    return await _complete_verification(
        db,
        challenge,
        user,
        method=MfaAttemptType.BACKUP_CODE,
        trust_device=trust_device,
        client_ip=client_ip,
        user_agent=user_agent,
        now=now,
    )

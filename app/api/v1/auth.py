"""
Authentication API endpoints.

This module provides endpoints for:
- Login, MFA verification and token refresh (with rotation)
- Logout and logout everywhere
- TOTP enrollment, backup codes and trusted devices
- Registration and password change / reset

Tokens are returned in the body and mirrored in HTTPOnly cookies.
"""

from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, Cookie, Response, status

from app.config import AuthErrorCode, AuthErrorMessage, SecurityEventType, settings
from app.core.auth import (
    ClaimsDep,
    ClientIp,
    ClockDep,
    CurrentUser,
    DbSession,
    NotifierDep,
    ProtectorDep,
    TrackerDep,
    TransactionsDep,
    UserAgent,
)
from app.core.errors import AuthenticationError, NotFoundError
from app.core.logging import get_logger
from app.core.role_cache import get_user_roles
from app.schemas.auth import (
    BackupCodesResponse,
    ForgotPasswordRequest,
    LoginRequest,
    MessageResponse,
    MfaDisableRequest,
    MfaRequiredResponse,
    MfaVerifyRequest,
    PasswordChangeRequest,
    RefreshRequest,
    RegisterCompleteRequest,
    RegisterRequest,
    ResetPasswordRequest,
    TokenResponse,
    TotpConfirmRequest,
    TotpSetupResponse,
    TrustedDeviceResponse,
)
from app.schemas.user import CurrentUserResponse
from app.services import (
    authentication,
    mfa_enrollment,
    mfa_verification,
    password,
    registration,
    security_audit,
    token_service,
    trusted_devices,
)
from app.services.authentication import AuthResult, MfaRequired

logger = get_logger(__name__)

router = APIRouter(prefix="/auth", tags=["Authentication"])

REFRESH_COOKIE = "refresh_token"
ACCESS_COOKIE = "access_token"
TRUSTED_DEVICE_COOKIE = "trusted_device"

FORGOT_PASSWORD_MESSAGE = "If an account exists for that email, a reset link has been sent."
REGISTER_MESSAGE = "If the address can be registered, a verification link has been sent."


def _max_age(expires_at: datetime, now: datetime) -> int:
    return max(int((expires_at - now).total_seconds()), 0)


def _set_cookie(response: Response, key: str, value: str, max_age: int) -> None:
    response.set_cookie(
        key=key,
        value=value,
        httponly=True,  # Prevent JavaScript access (XSS protection)
        secure=settings.ENVIRONMENT == "production",  # HTTPS only in production
        samesite="strict",  # CSRF protection
        max_age=max_age,
    )


def _set_auth_cookies(
    response: Response,
    *,
    access_token: str,
    access_expires_at: datetime,
    refresh_token: str,
    refresh_expires_at: datetime,
    now: datetime,
) -> None:
    """Set both access token and refresh token as HTTPOnly cookies."""
    _set_cookie(response, REFRESH_COOKIE, refresh_token, _max_age(refresh_expires_at, now))
    _set_cookie(response, ACCESS_COOKIE, access_token, _max_age(access_expires_at, now))


def _clear_auth_cookies(response: Response) -> None:
    for key in (REFRESH_COOKIE, ACCESS_COOKIE):
        response.delete_cookie(
            key=key,
            path="/",
            httponly=True,
            secure=settings.ENVIRONMENT == "production",
            samesite="strict",
        )


def _token_response(response: Response, result: AuthResult, now: datetime) -> TokenResponse:
    _set_auth_cookies(
        response,
        access_token=result.access_token,
        access_expires_at=result.access_token_expires_at,
        refresh_token=result.refresh_token,
        refresh_expires_at=result.refresh_token_expires_at,
        now=now,
    )
    if result.trusted_device_token:
        _set_cookie(
            response,
            TRUSTED_DEVICE_COOKIE,
            result.trusted_device_token,
            settings.TRUSTED_DEVICE_LIFETIME_DAYS * 24 * 60 * 60,
        )

    return TokenResponse(
        access_token=result.access_token,
        refresh_token=result.refresh_token,
        expires_in=_max_age(result.access_token_expires_at, now),
        access_token_expires_at=result.access_token_expires_at,
        refresh_token_expires_at=result.refresh_token_expires_at,
        requires_password_change=result.requires_password_change,
        trusted_device_token=result.trusted_device_token,
    )


@router.post("/login", response_model=TokenResponse | MfaRequiredResponse)
async def login(
    credentials: LoginRequest,
    response: Response,
    db: DbSession,
    clock: ClockDep,
    client_ip: ClientIp,
    user_agent: UserAgent,
    trusted_device: Annotated[str | None, Cookie()] = None,
) -> TokenResponse | MfaRequiredResponse:
    """
    Authenticate with username or email and password.

    Returns tokens, or an MFA challenge when the account has MFA enabled and
    the request does not come from a trusted device.
    """
    now = clock.now()
    outcome = await authentication.login(
        db,
        username_or_email=credentials.username_or_email,
        password=credentials.password,
        remember_me=credentials.remember_me,
        client_ip=client_ip,
        user_agent=user_agent,
        now=now,
        trusted_device_token=credentials.trusted_device_token or trusted_device,
    )

    if isinstance(outcome, MfaRequired):
        return MfaRequiredResponse(
            challenge_token=outcome.challenge_token,
            delivery_hint=outcome.delivery_hint,
            expires_at=outcome.expires_at,
        )
    return _token_response(response, outcome, now)


@router.post("/mfa/totp/verify", response_model=TokenResponse)
async def verify_totp(
    body: MfaVerifyRequest,
    response: Response,
    db: DbSession,
    clock: ClockDep,
    tracker: TrackerDep,
    protector: ProtectorDep,
    client_ip: ClientIp,
    user_agent: UserAgent,
) -> TokenResponse:
    now = clock.now()
    result = await mfa_verification.verify_totp(
        db,
        tracker,
        protector,
        challenge_token=body.challenge_token,
        code=body.code,
        trust_device=body.trust_device,
        client_ip=client_ip,
        user_agent=user_agent,
        now=now,
    )
    return _token_response(response, result, now)


@router.post("/mfa/backup/verify", response_model=TokenResponse)
async def verify_backup_code(
    body: MfaVerifyRequest,
    response: Response,
    db: DbSession,
    clock: ClockDep,
    tracker: TrackerDep,
    client_ip: ClientIp,
    user_agent: UserAgent,
) -> TokenResponse:
    now = clock.now()
    result = await mfa_verification.verify_backup_code(
        db,
        tracker,
        challenge_token=body.challenge_token,
        code=body.code,
        trust_device=body.trust_device,
        client_ip=client_ip,
        user_agent=user_agent,
        now=now,
    )
    return _token_response(response, result, now)


@router.post("/refresh", response_model=TokenResponse)
async def refresh(
    response: Response,
    db: DbSession,
    clock: ClockDep,
    client_ip: ClientIp,
    user_agent: UserAgent,
    body: RefreshRequest | None = None,
    refresh_token: Annotated[str | None, Cookie()] = None,
) -> TokenResponse:
    """
    Rotate a refresh token.

    The presented token is revoked and a successor in the same family is
    issued. Presenting an already-revoked token revokes the whole family.
    """
    presented = (body.refresh_token if body else None) or refresh_token
    if not presented:
        raise AuthenticationError(AuthErrorMessage.INVALID_TOKEN, code=AuthErrorCode.INVALID_TOKEN)

    now = clock.now()
    rotation = await token_service.rotate_refresh_token(
        db, presented, now=now, client_ip=client_ip, user_agent=user_agent
    )
    _set_auth_cookies(
        response,
        access_token=rotation.access_token,
        access_expires_at=rotation.access_token_expires_at,
        refresh_token=rotation.refresh.token,
        refresh_expires_at=rotation.refresh.expires_at,
        now=now,
    )
    return TokenResponse(
        access_token=rotation.access_token,
        refresh_token=rotation.refresh.token,
        expires_in=_max_age(rotation.access_token_expires_at, now),
        access_token_expires_at=rotation.access_token_expires_at,
        refresh_token_expires_at=rotation.refresh.expires_at,
        requires_password_change=rotation.user.requires_password_change,
    )


@router.post("/logout", response_model=MessageResponse)
async def logout(
    response: Response,
    db: DbSession,
    clock: ClockDep,
    client_ip: ClientIp,
    body: RefreshRequest | None = None,
    refresh_token: Annotated[str | None, Cookie()] = None,
) -> MessageResponse:
    """Revoke the presented refresh token and clear cookies."""
    presented = (body.refresh_token if body else None) or refresh_token
    if presented:
        now = clock.now()
        record = await token_service.revoke_refresh_token(db, presented, now)
        if record is not None:
            await security_audit.log_event(
                db,
                SecurityEventType.LOGOUT,
                now=now,
                user_id=record.user_id,
                ip_address=client_ip,
            )
        await db.commit()

    _clear_auth_cookies(response)
    return MessageResponse(message="Logged out successfully")


@router.post("/logout-all", response_model=MessageResponse)
async def logout_all(
    response: Response,
    current_user: CurrentUser,
    db: DbSession,
    clock: ClockDep,
    client_ip: ClientIp,
) -> MessageResponse:
    """Revoke every refresh token of the current user."""
    if current_user.user_id is None:
        raise ValueError("User ID cannot be None")

    now = clock.now()
    revoked = await token_service.revoke_all_user_tokens(db, current_user.user_id, now)
    await security_audit.log_event(
        db,
        SecurityEventType.LOGOUT_ALL,
        now=now,
        user_id=current_user.user_id,
        username=current_user.username,
        details=f"revoked {revoked} sessions",
        ip_address=client_ip,
    )
    await db.commit()

    _clear_auth_cookies(response)
    return MessageResponse(message="Logged out of all sessions")


@router.get("/me", response_model=CurrentUserResponse)
async def get_me(current_user: CurrentUser, claims: ClaimsDep, db: DbSession) -> CurrentUserResponse:
    if current_user.user_id is None:
        raise ValueError("User ID cannot be None")
    roles = await get_user_roles(db, current_user.user_id)
    return CurrentUserResponse.model_validate(
        {
            **current_user.model_dump(),
            "roles": sorted(roles),
            "requires_password_change": current_user.requires_password_change
            or claims.requires_password_change,
        }
    )


# ===== TOTP enrollment and MFA management =====


@router.post("/totp/enroll/initiate", response_model=TotpSetupResponse)
async def initiate_totp_enrollment(
    current_user: CurrentUser,
    transactions: TransactionsDep,
    protector: ProtectorDep,
) -> TotpSetupResponse:
    if current_user.user_id is None:
        raise ValueError("User ID cannot be None")
    setup = await mfa_enrollment.initiate_enrollment(transactions, protector, current_user.user_id)
    return TotpSetupResponse(secret=setup.secret, provisioning_uri=setup.provisioning_uri)


@router.post("/totp/enroll/confirm", response_model=MessageResponse)
async def confirm_totp_enrollment(
    body: TotpConfirmRequest,
    current_user: CurrentUser,
    transactions: TransactionsDep,
    protector: ProtectorDep,
    db: DbSession,
    clock: ClockDep,
    client_ip: ClientIp,
) -> MessageResponse:
    if current_user.user_id is None:
        raise ValueError("User ID cannot be None")
    await mfa_enrollment.confirm_enrollment(
        transactions,
        protector,
        db,
        user_id=current_user.user_id,
        code=body.code,
        now=clock.now(),
        client_ip=client_ip,
    )
    return MessageResponse(message="Authenticator app enabled")


@router.post("/totp/enroll/disable", response_model=MessageResponse)
async def disable_totp(
    body: MfaDisableRequest,
    current_user: CurrentUser,
    db: DbSession,
    clock: ClockDep,
    client_ip: ClientIp,
) -> MessageResponse:
    await mfa_enrollment.disable_mfa(
        db, current_user, password=body.password, now=clock.now(), client_ip=client_ip
    )
    return MessageResponse(message="Two-factor authentication disabled")


@router.post("/mfa/backup-codes", response_model=BackupCodesResponse)
async def regenerate_backup_codes(
    current_user: CurrentUser,
    db: DbSession,
    clock: ClockDep,
    client_ip: ClientIp,
) -> BackupCodesResponse:
    """Replace all backup codes. The plaintext codes are only shown once."""
    codes = await mfa_enrollment.regenerate_backup_codes(
        db, current_user, now=clock.now(), client_ip=client_ip
    )
    return BackupCodesResponse(codes=codes)


# ===== Trusted devices =====


@router.get("/trusted-devices", response_model=list[TrustedDeviceResponse])
async def list_trusted_devices(
    current_user: CurrentUser,
    db: DbSession,
    clock: ClockDep,
) -> list[TrustedDeviceResponse]:
    if current_user.user_id is None:
        raise ValueError("User ID cannot be None")
    devices = await trusted_devices.list_devices(db, current_user.user_id, clock.now())
    return [TrustedDeviceResponse.model_validate(device) for device in devices]


@router.delete("/trusted-devices/{device_id}", status_code=status.HTTP_204_NO_CONTENT)
async def revoke_trusted_device(
    device_id: int,
    current_user: CurrentUser,
    db: DbSession,
) -> None:
    if current_user.user_id is None:
        raise ValueError("User ID cannot be None")
    if not await trusted_devices.revoke_device(db, current_user.user_id, device_id):
        raise NotFoundError("Trusted device not found", code="DEVICE_NOT_FOUND")
    await db.commit()


# ===== Passwords =====


@router.post("/change-password", response_model=MessageResponse)
async def change_password(
    body: PasswordChangeRequest,
    response: Response,
    current_user: CurrentUser,
    db: DbSession,
    clock: ClockDep,
    client_ip: ClientIp,
) -> MessageResponse:
    """
    Change password for the current user.

    Every session, including this one, is signed out.
    """
    await password.change_password(
        db,
        current_user,
        current_password=body.current_password,
        new_password=body.new_password,
        now=clock.now(),
        client_ip=client_ip,
    )
    _clear_auth_cookies(response)
    return MessageResponse(message="Password changed successfully. Please log in again.")


@router.post("/forgot-password", response_model=MessageResponse)
async def forgot_password(
    body: ForgotPasswordRequest,
    db: DbSession,
    notifier: NotifierDep,
    clock: ClockDep,
    client_ip: ClientIp,
) -> MessageResponse:
    """Always answers the same way whether or not the account exists."""
    await password.request_password_reset(
        db, notifier, email=body.email, now=clock.now(), client_ip=client_ip
    )
    return MessageResponse(message=FORGOT_PASSWORD_MESSAGE)


@router.post("/reset-password", response_model=MessageResponse)
async def reset_password(
    body: ResetPasswordRequest,
    db: DbSession,
    clock: ClockDep,
    client_ip: ClientIp,
) -> MessageResponse:
    await password.reset_password(
        db,
        token=body.token,
        new_password=body.new_password,
        now=clock.now(),
        client_ip=client_ip,
    )
    return MessageResponse(message="Password has been reset. Please log in.")


# ===== Registration =====


@router.post("/register", response_model=MessageResponse, status_code=status.HTTP_202_ACCEPTED)
async def register(
    body: RegisterRequest,
    db: DbSession,
    notifier: NotifierDep,
    clock: ClockDep,
) -> MessageResponse:
    await registration.initiate_registration(db, notifier, email=body.email, now=clock.now())
    return MessageResponse(message=REGISTER_MESSAGE)


@router.post("/register/complete", response_model=TokenResponse, status_code=status.HTTP_201_CREATED)
async def complete_registration(
    body: RegisterCompleteRequest,
    response: Response,
    db: DbSession,
    notifier: NotifierDep,
    clock: ClockDep,
    client_ip: ClientIp,
    user_agent: UserAgent,
) -> TokenResponse:
    now = clock.now()
    result = await registration.complete_registration(
        db,
        notifier,
        token=body.token,
        username=body.username,
        password=body.password,
        now=now,
        client_ip=client_ip,
        user_agent=user_agent,
    )
    return _token_response(response, result, now)

"""
Service-layer errors with stable (code, message) pairs.

Services raise these; the handler registered in app.main renders them as
{"detail": message, "code": code} so security-relevant failures never leak
stack traces or internal identifiers to the client.
"""

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from app.config import AuthErrorCode
from app.core.logging import get_logger

logger = get_logger(__name__)


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses."""

    status_code: int = status.HTTP_400_BAD_REQUEST
    code: str = "BAD_REQUEST"

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        status_code: int | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code
        self.headers = headers


class AuthenticationError(ServiceError):
    """Credentials, challenge, or token rejected (401)."""

    status_code = status.HTTP_401_UNAUTHORIZED
    code = AuthErrorCode.INVALID_CREDENTIALS


class AccountLockedError(ServiceError):
    """Primary account lockout (423)."""

    status_code = status.HTTP_423_LOCKED
    code = AuthErrorCode.ACCOUNT_LOCKED


class TooManyAttemptsError(ServiceError):
    """MFA attempt-type lockout (429)."""

    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    code = AuthErrorCode.TOO_MANY_ATTEMPTS


class ForbiddenError(ServiceError):
    status_code = status.HTTP_403_FORBIDDEN
    code = AuthErrorCode.FORBIDDEN


class NotFoundError(ServiceError):
    status_code = status.HTTP_404_NOT_FOUND
    code = AuthErrorCode.USER_NOT_FOUND


class ConflictError(ServiceError):
    status_code = status.HTTP_409_CONFLICT
    code = "CONFLICT"


class ConcurrencyConflictError(ConflictError):
    """Optimistic-concurrency retries exhausted."""

    code = AuthErrorCode.CONCURRENCY_CONFLICT

    def __init__(
        self,
        message: str = "The resource was modified concurrently. Please try again.",
        *,
        attempts: int = 0,
    ) -> None:
        super().__init__(message)
        self.attempts = attempts


def register_exception_handlers(app: FastAPI) -> None:
    """Install the ServiceError handler."""

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError) -> JSONResponse:
        log = logger.error if exc.status_code >= 500 else logger.info
        log(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.code,
        )
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.message, "code": exc.code},
            headers=exc.headers,
        )

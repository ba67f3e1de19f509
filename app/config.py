"""
Application Configuration
Uses Pydantic Settings for environment-based configuration
"""

from dotenv import load_dotenv
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",  # Ignore extra env vars like MARIADB_* used by docker-compose
    )

    # Application
    PROJECT_NAME: str = "Identity API"
    VERSION: str = "1.0.0"
    ENVIRONMENT: str = Field(default="development", pattern="^(development|staging|production)$")
    DEBUG: bool = Field(default=False)
    API_V1_STR: str = "/api/v1"

    # Security
    SECRET_KEY: str
    ALGORITHM: str = "HS256"
    JWT_ISSUER: str = "identity-api"
    JWT_AUDIENCE: str = "identity-api-clients"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 15
    REFRESH_TOKEN_EXPIRE_DAYS: int = 7
    REFRESH_TOKEN_REMEMBER_ME_EXPIRE_DAYS: int = 14
    ABSOLUTE_SESSION_TIMEOUT_DAYS: int = 30
    MAX_ACTIVE_SESSIONS_PER_USER: int = 5
    BCRYPT_ROUNDS: int = Field(default=12, ge=4, le=31)

    # Account lockout
    LOCKOUT_ENABLED: bool = True
    LOCKOUT_MAX_FAILED_ATTEMPTS: int = 5
    LOCKOUT_DURATION_MINUTES: int = 15

    # MFA
    MFA_ENCRYPTION_KEY: str | None = None  # Falls back to SECRET_KEY
    MFA_ISSUER: str = "Identity API"
    MFA_CHALLENGE_EXPIRE_MINUTES: int = 5
    MFA_MAX_ATTEMPTS: int = 5
    MFA_LOCKOUT_MINUTES: int = 15
    TOTP_VALID_WINDOW: int = 1  # Adjacent 30s steps tolerated for clock drift
    TOTP_SETUP_MAX_ATTEMPTS: int = 3
    BACKUP_CODE_COUNT: int = 10
    BACKUP_CODE_LENGTH: int = 8

    # Trusted devices
    TRUSTED_DEVICE_ENABLED: bool = True
    TRUSTED_DEVICE_LIFETIME_DAYS: int = 30
    TRUSTED_DEVICE_MAX_PER_USER: int = 5

    # Account tokens (registration / password reset)
    REGISTRATION_TOKEN_EXPIRE_HOURS: int = 24
    PASSWORD_RESET_EXPIRE_MINUTES: int = 60
    TOKEN_RETENTION_DAYS: int = 7  # How long expired rows are kept before cleanup

    # Breached password check (HaveIBeenPwned k-anonymity range API)
    BREACHED_PASSWORD_CHECK_ENABLED: bool = True
    BREACHED_PASSWORD_BLOCK: bool = True  # False: log a warning but accept the password
    BREACHED_PASSWORD_MIN_COUNT: int = 1
    BREACHED_PASSWORD_API_URL: str = "https://api.pwnedpasswords.com/range/"
    BREACHED_PASSWORD_API_TIMEOUT: float = 3.0

    # CORS
    # Allow str because it can be a comma-separated string in .env
    CORS_ORIGINS: str | list[str] = Field(
        default=["http://localhost:4200", "http://localhost:8000"]
    )

    # Database
    DATABASE_URL: str
    DB_POOL_SIZE: int = 20
    DB_MAX_OVERFLOW: int = 10
    DB_ECHO: bool = False

    # Redis
    REDIS_URL: str = Field(default="redis://localhost:6379/0")
    ROLE_CACHE_TTL: int = 300  # 5 minutes

    # Arq settings
    ARQ_REDIS_URL: str = Field(default="redis://localhost:6379/1")
    ARQ_MAX_TRIES: int = 3
    ARQ_KEEP_RESULT: int = 3600  # 1 hour

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"

    # Frontend URL (for email links, etc.)
    FRONTEND_URL: str = "http://localhost:4200"

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def parse_cors_origins(cls, v: str | list[str]) -> list[str]:
        """Parse CORS origins from comma-separated string"""
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",")]
        return v


# Create global settings instance

load_dotenv()
settings = Settings()  # type: ignore[call-arg]


class RoleName:
    """Role name constants"""

    USER = "User"
    DEVELOPER = "Developer"
    ADMIN = "Admin"

    ALL = (USER, DEVELOPER, ADMIN)


class MfaAttemptType:
    """Attempt-type keys for the MFA attempt tracker"""

    TOTP = "totp"
    BACKUP_CODE = "backup_code"


class AccountTokenPurpose:
    """Purposes for single-use account tokens"""

    REGISTRATION = "registration"
    PASSWORD_RESET = "password_reset"


class SecurityEventType:
    """Security audit event type constants"""

    LOGIN_SUCCESS = "login_success"
    LOGIN_FAILED = "login_failed"
    ACCOUNT_LOCKED = "account_locked"
    MFA_CHALLENGE_ISSUED = "mfa_challenge_issued"
    MFA_SUCCESS = "mfa_success"
    MFA_FAILED = "mfa_failed"
    MFA_BYPASSED_TRUSTED_DEVICE = "mfa_bypassed_trusted_device"
    MFA_ENROLLED = "mfa_enrolled"
    MFA_DISABLED = "mfa_disabled"
    BACKUP_CODES_GENERATED = "backup_codes_generated"
    TOKEN_REFRESHED = "token_refreshed"
    TOKEN_REUSE_DETECTED = "token_reuse_detected"
    LOGOUT = "logout"
    LOGOUT_ALL = "logout_all"
    PASSWORD_CHANGED = "password_changed"
    PASSWORD_RESET_REQUESTED = "password_reset_requested"
    PASSWORD_RESET = "password_reset"
    REGISTRATION_COMPLETED = "registration_completed"
    ROLE_ADDED = "role_added"
    ROLE_REMOVED = "role_removed"
    ACCOUNT_DELETED = "account_deleted"
    ACCOUNT_RESTORED = "account_restored"


class AuthErrorCode:
    """Stable error codes returned to clients alongside a message"""

    INVALID_CREDENTIALS = "INVALID_CREDENTIALS"
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
    INVALID_CHALLENGE = "INVALID_CHALLENGE"
    INVALID_CODE = "INVALID_CODE"
    TOO_MANY_ATTEMPTS = "TOO_MANY_ATTEMPTS"
    TOTP_NOT_CONFIGURED = "TOTP_NOT_CONFIGURED"
    TOTP_ALREADY_CONFIGURED = "TOTP_ALREADY_CONFIGURED"
    TOTP_ALREADY_CONFIRMED = "TOTP_ALREADY_CONFIRMED"
    TOTP_NOT_INITIATED = "TOTP_NOT_INITIATED"
    TOTP_SETUP_FAILED = "TOTP_SETUP_FAILED"
    INVALID_TOKEN = "INVALID_TOKEN"
    TOKEN_REUSE = "TOKEN_REUSE"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    INVALID_PASSWORD = "INVALID_PASSWORD"
    WEAK_PASSWORD = "WEAK_PASSWORD"
    PASSWORD_BREACHED = "PASSWORD_BREACHED"
    CONCURRENCY_CONFLICT = "CONCURRENCY_CONFLICT"
    USER_NOT_FOUND = "USER_NOT_FOUND"
    INVALID_ROLE = "INVALID_ROLE"
    ROLE_ALREADY_ASSIGNED = "ROLE_ALREADY_ASSIGNED"
    ROLE_NOT_ASSIGNED = "ROLE_NOT_ASSIGNED"
    USERNAME_TAKEN = "USERNAME_TAKEN"
    NOT_AUTHENTICATED = "NOT_AUTHENTICATED"
    FORBIDDEN = "FORBIDDEN"


class AuthErrorMessage:
    """User-facing messages paired with the error codes above"""

    INVALID_CREDENTIALS = "Invalid credentials"
    ACCOUNT_LOCKED = "Account locked. Please try again later."
    INVALID_CHALLENGE = "Invalid or expired verification session"
    INVALID_CODE = "Invalid verification code"
    TOO_MANY_ATTEMPTS = "Too many failed attempts. Please try again later."
    INVALID_TOKEN = "Invalid or expired token"
    PASSWORD_BREACHED = "This password has appeared in a data breach. Please choose a different password."
    TOKEN_REUSE = "Invalid or expired token"

import logging
import warnings
from enum import Enum
from functools import lru_cache
from typing import List, Optional

from pydantic_settings import BaseSettings


logger = logging.getLogger(__name__)


# Default insecure secret key - MUST be changed in production
_DEFAULT_INSECURE_SECRET_KEY = "your-secret-key-here-change-in-production"

_DEV_CORS_ORIGINS = [
    "http://localhost:4200",
    "http://localhost:5173",
    "http://127.0.0.1:4200",
    "http://127.0.0.1:5173",
]


class AppMode(str, Enum):
    DEV = "dev"
    PROD = "prod"


class Settings(BaseSettings):
    # Application mode - defaults to DEV for safety
    # SECURITY: In production, explicitly set APP_MODE=prod
    APP_MODE: AppMode = AppMode.DEV

    # Debug mode - MUST be False in production
    DEBUG: bool = False

    # Database (SQLite default for dev, use PostgreSQL in production)
    DATABASE_URL: str = "sqlite+aiosqlite:///./dmarc_auth.db"

    # Server configuration
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # JWT Configuration
    # Generate with: python -c "import secrets; print(secrets.token_urlsafe(64))"
    SECRET_KEY: str = _DEFAULT_INSECURE_SECRET_KEY
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 15
    REFRESH_TOKEN_EXPIRE_DAYS: int = 7
    JWT_ISSUER: str = "dmarc-dashboard"
    JWT_AUDIENCE: str = "dmarc-dashboard-users"

    # Password hashing cost factor (bcrypt log rounds)
    BCRYPT_ROUNDS: int = 12

    # Failed-login rate limiting (per client IP)
    RATE_LIMIT_IP_MAX_ATTEMPTS: int = 10
    RATE_LIMIT_IP_WINDOW_SECONDS: int = 900

    # Account lockout (per e-mail, independent of IP)
    RATE_LIMIT_ACCOUNT_MAX_ATTEMPTS: int = 5
    RATE_LIMIT_ACCOUNT_WINDOW_SECONDS: int = 900
    RATE_LIMIT_LOCK_DURATION_SECONDS: int = 900

    # Refresh token reuse handling
    THEFT_DETECTION_ENABLED: bool = True
    THEFT_DETECTION_INVALIDATE_FAMILY: bool = True

    # Expired refresh tokens are kept this long before housekeeping deletes them
    TOKEN_CLEANUP_GRACE_DAYS: int = 7

    # Redis URL for shared login counters (optional, in-memory used if not set)
    # IMPORTANT: For production with multiple instances, set this
    REDIS_URL: Optional[str] = None

    # Trusted proxy networks (comma-separated CIDR notation)
    # Example: "10.0.0.0/8,172.16.0.0/12,192.168.0.0/16"
    # SECURITY: Only IPs from these networks are trusted to set X-Forwarded-For headers
    TRUSTED_PROXIES: Optional[str] = None

    # Refresh cookie. COOKIE_SECURE=None means "secure in prod only".
    REFRESH_COOKIE_NAME: str = "refresh_token"
    COOKIE_SECURE: Optional[bool] = None
    COOKIE_DOMAIN: Optional[str] = None

    # Comma-separated list of allowed origins
    CORS_ALLOWED_ORIGINS: str = ""

    LOG_LEVEL: str = "INFO"

    @property
    def effective_cookie_secure(self) -> bool:
        if self.COOKIE_SECURE is not None:
            return self.COOKIE_SECURE
        return self.APP_MODE == AppMode.PROD

    @property
    def effective_cookie_samesite(self) -> str:
        """Strict in production, lax in dev so the SPA dev server can proxy."""
        if self.APP_MODE == AppMode.PROD:
            return "strict"
        return "lax"

    @property
    def CORS_ORIGINS(self) -> List[str]:
        """
        Get allowed CORS origins.

        SECURITY: In production, never return ["*"] as this allows any origin
        to make authenticated requests.
        """
        origins = []

        if self.APP_MODE == AppMode.DEV:
            origins = list(_DEV_CORS_ORIGINS)

        if self.CORS_ALLOWED_ORIGINS:
            custom_origins = [
                o.strip() for o in self.CORS_ALLOWED_ORIGINS.split(",") if o.strip()
            ]
            origins.extend(custom_origins)

        if not origins and self.APP_MODE == AppMode.PROD:
            logger.warning(
                "SECURITY WARNING: No CORS_ALLOWED_ORIGINS configured in production. "
                "Cross-origin requests will be blocked."
            )

        return origins

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"  # Ignore extra env variables


def _validate_settings(settings: Settings) -> Settings:
    """
    Validate settings and warn/error on security issues.

    Raises ValueError for misconfigurations that must never reach production.
    """
    if settings.BCRYPT_ROUNDS < 4 or settings.BCRYPT_ROUNDS > 31:
        raise ValueError("BCRYPT_ROUNDS must be between 4 and 31")

    if settings.APP_MODE == AppMode.PROD:
        # CRITICAL: Fail fast if using default secret key in production
        if settings.SECRET_KEY == _DEFAULT_INSECURE_SECRET_KEY:
            error_msg = (
                "CRITICAL SECURITY ERROR: Default SECRET_KEY is being used in production! "
                "Set a strong, unique SECRET_KEY environment variable."
            )
            logger.critical(error_msg)
            raise ValueError(error_msg)

        if settings.DEBUG:
            error_msg = (
                "CRITICAL SECURITY ERROR: DEBUG=True in production! "
                "Set DEBUG=False or remove the DEBUG environment variable."
            )
            logger.critical(error_msg)
            raise ValueError(error_msg)

        if len(settings.SECRET_KEY) < 32:
            warnings.warn(
                "SECRET_KEY appears to be weak (less than 32 characters). "
                "Consider using a longer, more random key for production.",
                SecurityWarning,
                stacklevel=2,
            )

        if settings.BCRYPT_ROUNDS < 10:
            warnings.warn(
                f"BCRYPT_ROUNDS={settings.BCRYPT_ROUNDS} is too low for production.",
                SecurityWarning,
                stacklevel=2,
            )

        if not settings.TRUSTED_PROXIES:
            logger.warning(
                "TRUSTED_PROXIES not configured in production. "
                "If behind a reverse proxy, every client will share the proxy's "
                "login rate limit. Set TRUSTED_PROXIES to your proxy's IP range."
            )

        if not settings.REDIS_URL:
            logger.warning(
                "REDIS_URL not configured in production. "
                "In-memory login counters are NOT shared between workers. "
                "Set REDIS_URL for reliable lockout across workers."
            )

    return settings


class SecurityWarning(UserWarning):
    """Warning for security-related configuration issues."""
    pass


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings (cached).

    This function validates settings on first access and raises errors
    for critical security misconfigurations in production.
    """
    settings = Settings()
    return _validate_settings(settings)

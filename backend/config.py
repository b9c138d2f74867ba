import logging
import warnings
from enum import Enum
from functools import lru_cache
from typing import List, Optional

from pydantic_settings import BaseSettings


logger = logging.getLogger(__name__)


# Default insecure signing secrets - MUST be changed in production
_DEFAULT_INSECURE_ACCESS_SECRET = "access-secret-change-in-production"
_DEFAULT_INSECURE_REFRESH_SECRET = "refresh-secret-change-in-production"
_DEFAULT_INSECURE_STREAM_SECRET = "stream-secret-change-in-production"

_DEFAULT_SECRETS = {
    "JWT_ACCESS_SECRET": _DEFAULT_INSECURE_ACCESS_SECRET,
    "JWT_REFRESH_SECRET": _DEFAULT_INSECURE_REFRESH_SECRET,
    "STREAM_SECRET": _DEFAULT_INSECURE_STREAM_SECRET,
}

_DEV_ORIGINS = [
    "http://localhost:3000",
    "http://localhost:5173",
    "http://127.0.0.1:3000",
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
    DATABASE_URL: str = "sqlite+aiosqlite:///./music_stream.db"

    # Server configuration
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # Token signing
    # SECURITY: access, refresh and stream tokens are signed with independent
    # secrets so a leak of one key does not let an attacker mint the others.
    # Generate with: python -c "import secrets; print(secrets.token_urlsafe(64))"
    JWT_ACCESS_SECRET: str = _DEFAULT_INSECURE_ACCESS_SECRET
    JWT_REFRESH_SECRET: str = _DEFAULT_INSECURE_REFRESH_SECRET
    STREAM_SECRET: str = _DEFAULT_INSECURE_STREAM_SECRET
    JWT_ALGORITHM: str = "HS256"
    JWT_ISSUER: str = "music-stream"
    JWT_AUDIENCE: str = "music-stream-users"

    ACCESS_TOKEN_EXPIRE_MINUTES: int = 15
    REFRESH_TOKEN_EXPIRE_DAYS: int = 7
    STREAM_TOKEN_TTL_SECONDS: int = 60

    # Brute-force lockout
    MAX_FAILED_LOGIN_ATTEMPTS: int = 5
    LOCKOUT_MINUTES: int = 15

    # Argon2id cost parameters (memory cost is in KiB)
    ARGON2_MEMORY_COST: int = 65536
    ARGON2_TIME_COST: int = 3
    ARGON2_PARALLELISM: int = 1

    # Session cookies
    COOKIE_SAMESITE: str = "strict"
    COOKIE_SECURE: bool = False  # forced on in prod
    COOKIE_PATH: str = "/"
    ACCESS_COOKIE_NAME: str = "access_token"
    REFRESH_COOKIE_NAME: str = "refresh_token"

    # Rate Limiting
    RATE_LIMIT_GLOBAL: int = 100  # requests per window per IP
    RATE_LIMIT_AUTH: int = 20  # requests per window per IP for auth endpoints
    RATE_LIMIT_MEDIA: int = 600  # stream/range requests per window per IP
    RATE_LIMIT_WINDOW: int = 600  # window in seconds
    RATE_LIMIT_REFRESH: int = 10  # refresh attempts per minute per IP

    # Redis URL for rate limiting persistence (optional, in-memory used if not set)
    REDIS_URL: Optional[str] = None

    # Trusted proxy networks (comma-separated CIDR notation)
    # SECURITY: Only IPs from these networks are trusted to set X-Forwarded-For headers
    TRUSTED_PROXIES: Optional[str] = None

    # Media storage: "local" (files under MEDIA_ROOT), "http" (objects fetched
    # from MEDIA_BASE_URL) or "s3"
    STORAGE_BACKEND: str = "local"
    MEDIA_ROOT: str = "storage/media"
    MEDIA_BASE_URL: str = ""
    UPSTREAM_TIMEOUT_SECONDS: float = 30.0
    STREAM_CHUNK_SIZE: int = 64 * 1024

    # S3 settings (used when STORAGE_BACKEND="s3")
    S3_BUCKET: str = ""
    S3_REGION: str = "us-east-1"
    S3_ACCESS_KEY_ID: str = ""
    S3_SECRET_ACCESS_KEY: str = ""
    S3_PREFIX: str = ""
    S3_ENDPOINT_URL: str = ""

    # Maximum JSON request body accepted by the API
    MAX_JSON_BODY_BYTES: int = 100 * 1024

    CORS_ALLOWED_ORIGINS: str = ""  # Comma-separated list of allowed origins

    @property
    def is_production(self) -> bool:
        return self.APP_MODE == AppMode.PROD

    @property
    def effective_cookie_secure(self) -> bool:
        """Session cookies are always transport-secure in production."""
        return self.is_production or self.COOKIE_SECURE

    @property
    def CORS_ORIGINS(self) -> List[str]:
        """
        Get allowed CORS origins.

        SECURITY: never returns ["*"]; session cookies are sent with
        credentials so every origin must be listed explicitly.
        """
        origins = list(_DEV_ORIGINS) if self.APP_MODE == AppMode.DEV else []

        if self.CORS_ALLOWED_ORIGINS:
            origins.extend(
                o.strip() for o in self.CORS_ALLOWED_ORIGINS.split(",") if o.strip()
            )

        if not origins and self.APP_MODE == AppMode.PROD:
            logger.warning(
                "SECURITY WARNING: No CORS_ALLOWED_ORIGINS configured in production. "
                "Cross-origin requests will be blocked."
            )
        return origins

    @property
    def LOG_LEVEL(self) -> str:
        return "DEBUG" if self.DEBUG else "INFO"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"  # Ignore extra env variables


def _validate_settings(settings: Settings) -> Settings:
    """
    Validate settings and warn/error on security issues.

    SECURITY: This function ensures critical security settings are properly
    configured in production environments.
    """
    secrets = {
        "JWT_ACCESS_SECRET": settings.JWT_ACCESS_SECRET,
        "JWT_REFRESH_SECRET": settings.JWT_REFRESH_SECRET,
        "STREAM_SECRET": settings.STREAM_SECRET,
    }

    if settings.APP_MODE == AppMode.PROD:
        # CRITICAL: Fail fast if any signing secret still has its default
        for name, value in secrets.items():
            if value == _DEFAULT_SECRETS[name]:
                error_msg = (
                    f"CRITICAL SECURITY ERROR: Default {name} is being used in production! "
                    f"Set a strong, unique {name} environment variable. "
                    "Generate one with: python -c \"import secrets; print(secrets.token_urlsafe(64))\""
                )
                logger.critical(error_msg)
                raise ValueError(error_msg)

        # CRITICAL: Fail fast if DEBUG is enabled in production
        if settings.DEBUG:
            error_msg = (
                "CRITICAL SECURITY ERROR: DEBUG=True in production! "
                "Debug mode exposes sensitive information in error responses. "
                "Set DEBUG=False or remove the DEBUG environment variable."
            )
            logger.critical(error_msg)
            raise ValueError(error_msg)

        for name, value in secrets.items():
            if len(value) < 32:
                warnings.warn(
                    f"{name} appears to be weak (less than 32 characters). "
                    "Consider using a longer, more random key for production.",
                    SecurityWarning,
                    stacklevel=2,
                )

        if not settings.TRUSTED_PROXIES:
            logger.warning(
                "TRUSTED_PROXIES not configured in production. "
                "If behind a reverse proxy, rate limiting may not work correctly. "
                "Set TRUSTED_PROXIES to your proxy's IP range."
            )

        if not settings.REDIS_URL:
            logger.warning(
                "REDIS_URL not configured in production. "
                "In-memory rate limiting is NOT process-safe with multiple workers. "
                "Set REDIS_URL for reliable rate limiting across workers."
            )

    # Sharing a secret between token kinds would let a refresh or stream token
    # pass as an access token. Refuse in every mode.
    values = list(secrets.values())
    if len(set(values)) != len(values):
        error_msg = (
            "CRITICAL SECURITY ERROR: JWT_ACCESS_SECRET, JWT_REFRESH_SECRET and "
            "STREAM_SECRET must all be different."
        )
        logger.critical(error_msg)
        raise ValueError(error_msg)

    if settings.STORAGE_BACKEND not in ("local", "http", "s3"):
        raise ValueError(
            f"Unknown STORAGE_BACKEND '{settings.STORAGE_BACKEND}'. "
            "Use 'local', 'http' or 's3'."
        )

    if settings.COOKIE_SAMESITE.lower() not in ("strict", "lax", "none"):
        raise ValueError("COOKIE_SAMESITE must be one of: strict, lax, none")

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

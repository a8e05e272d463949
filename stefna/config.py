"""
Configuration module for the Stefna generation backend.
Centralizes all environment variables and settings.

Credit-related values (daily cap, costs, starter grant) are defaults only;
rows in the app_config table override them at runtime (see pricing_service).

Usage:
    from stefna.config import config

    if config.IS_DEV:
        print("Running in development mode")

    conn_str = config.DATABASE_URL
"""

import os
from typing import List
from dataclasses import dataclass, field
from dotenv import load_dotenv

# Load .env file (safe - won't override existing env vars)
load_dotenv()


def _get_env(key: str, default: str = "") -> str:
    """Safely get and strip an environment variable."""
    return os.getenv(key, default).strip()


def _get_env_bool(key: str, default: bool = False) -> bool:
    """Get an environment variable as boolean."""
    val = _get_env(key, "").lower()
    if val in ("true", "1", "yes", "on"):
        return True
    if val in ("false", "0", "no", "off"):
        return False
    return default


def _get_env_int(key: str, default: int = 0) -> int:
    """Get an environment variable as integer."""
    try:
        return int(_get_env(key, str(default)))
    except ValueError:
        return default


def _get_env_list(key: str, default: List[str] = None) -> List[str]:
    """Get a comma-separated environment variable as list."""
    val = _get_env(key, "")
    if not val:
        return default or []
    return [item.strip() for item in val.split(",") if item.strip()]


def _fix_database_url(url: str) -> str:
    """
    Hosted Postgres providers hand out 'postgres://' URLs,
    psycopg3 requires 'postgresql://'.
    """
    if url and url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql://", 1)
    return url


@dataclass
class Config:
    """
    Application configuration with all settings.
    Loaded from environment variables with sensible defaults.
    """

    # ─────────────────────────────────────────────────────────────
    # Environment
    # ─────────────────────────────────────────────────────────────
    FLASK_ENV: str = field(default_factory=lambda: _get_env("FLASK_ENV", "production").lower())

    @property
    def IS_DEV(self) -> bool:
        """True if running in development mode."""
        return self.FLASK_ENV in ("development", "dev", "local")

    @property
    def IS_PROD(self) -> bool:
        """True if running in production mode."""
        return not self.IS_DEV

    # ─────────────────────────────────────────────────────────────
    # Server
    # ─────────────────────────────────────────────────────────────
    PORT: int = field(default_factory=lambda: _get_env_int("PORT", 8888))
    HOST: str = field(default_factory=lambda: _get_env("HOST", "0.0.0.0"))

    # ─────────────────────────────────────────────────────────────
    # Database
    # ─────────────────────────────────────────────────────────────
    _DATABASE_URL_RAW: str = field(default_factory=lambda: _get_env("DATABASE_URL"))

    @property
    def DATABASE_URL(self) -> str:
        """Database connection URL (fixed for psycopg3 compatibility)."""
        return _fix_database_url(self._DATABASE_URL_RAW)

    @property
    def HAS_DATABASE(self) -> bool:
        """True if database URL is configured."""
        return bool(self._DATABASE_URL_RAW)

    DB_CONNECT_TIMEOUT: int = field(default_factory=lambda: _get_env_int("DB_CONNECT_TIMEOUT", 5))

    # ─────────────────────────────────────────────────────────────
    # Auth
    # ─────────────────────────────────────────────────────────────
    # HS256 secret shared with the identity provider that mints user tokens
    JWT_SECRET: str = field(default_factory=lambda: _get_env("JWT_SECRET"))
    JWT_LEEWAY_SECONDS: int = field(default_factory=lambda: _get_env_int("JWT_LEEWAY_SECONDS", 5))

    # Admin endpoints (X-Admin-Token header)
    ADMIN_TOKEN: str = field(default_factory=lambda: _get_env("ADMIN_TOKEN"))

    @property
    def AUTH_CONFIGURED(self) -> bool:
        return bool(self.JWT_SECRET)

    # ─────────────────────────────────────────────────────────────
    # Vendor (AIML API - Kling image-to-video)
    # ─────────────────────────────────────────────────────────────
    AIML_API_URL: str = field(default_factory=lambda: _get_env("AIML_API_URL", "https://api.aimlapi.com").rstrip("/"))
    AIML_API_KEY: str = field(default_factory=lambda: _get_env("AIML_API_KEY"))
    AIML_CONNECT_TIMEOUT: int = field(default_factory=lambda: _get_env_int("AIML_CONNECT_TIMEOUT", 10))
    AIML_READ_TIMEOUT: int = field(default_factory=lambda: _get_env_int("AIML_READ_TIMEOUT", 60))
    # Status reads only; job start is never retried
    AIML_POLL_RETRIES: int = field(default_factory=lambda: _get_env_int("AIML_POLL_RETRIES", 2))

    @property
    def AIML_CONFIGURED(self) -> bool:
        return bool(self.AIML_API_KEY)

    # ─────────────────────────────────────────────────────────────
    # Storage
    # ─────────────────────────────────────────────────────────────
    # "cloudinary" or "s3"
    STORAGE_PROVIDER: str = field(default_factory=lambda: _get_env("STORAGE_PROVIDER", "cloudinary").lower())

    CLOUDINARY_CLOUD_NAME: str = field(default_factory=lambda: _get_env("CLOUDINARY_CLOUD_NAME"))
    CLOUDINARY_API_KEY: str = field(default_factory=lambda: _get_env("CLOUDINARY_API_KEY"))
    CLOUDINARY_API_SECRET: str = field(default_factory=lambda: _get_env("CLOUDINARY_API_SECRET"))
    CLOUDINARY_UPLOAD_PRESET: str = field(default_factory=lambda: _get_env("CLOUDINARY_UPLOAD_PRESET"))
    CLOUDINARY_FOLDER: str = field(default_factory=lambda: _get_env("CLOUDINARY_FOLDER", "stefna/generated"))

    @property
    def CLOUDINARY_CONFIGURED(self) -> bool:
        """Signed uploads need key + secret, unsigned ones an upload preset."""
        if not self.CLOUDINARY_CLOUD_NAME:
            return False
        signed = bool(self.CLOUDINARY_API_KEY and self.CLOUDINARY_API_SECRET)
        return signed or bool(self.CLOUDINARY_UPLOAD_PRESET)

    AWS_REGION: str = field(default_factory=lambda: _get_env("AWS_REGION", "eu-west-2"))
    AWS_BUCKET_MEDIA: str = field(default_factory=lambda: _get_env("AWS_BUCKET_MEDIA"))
    AWS_ACCESS_KEY_ID: str = field(default_factory=lambda: _get_env("AWS_ACCESS_KEY_ID"))
    AWS_SECRET_ACCESS_KEY: str = field(default_factory=lambda: _get_env("AWS_SECRET_ACCESS_KEY"))

    @property
    def AWS_CONFIGURED(self) -> bool:
        """True if AWS S3 is configured."""
        return bool(self.AWS_BUCKET_MEDIA and self.AWS_ACCESS_KEY_ID and self.AWS_SECRET_ACCESS_KEY)

    # New assets are private unless explicitly shared
    MEDIA_DEFAULT_PUBLIC: bool = field(default_factory=lambda: _get_env_bool("MEDIA_DEFAULT_PUBLIC", False))

    # ─────────────────────────────────────────────────────────────
    # Credits System (defaults - app_config rows win)
    # ─────────────────────────────────────────────────────────────
    DAILY_CAP: int = field(default_factory=lambda: _get_env_int("DAILY_CAP", 30))
    STARTER_CREDITS: int = field(default_factory=lambda: _get_env_int("STARTER_CREDITS", 30))
    VIDEO_COST: int = field(default_factory=lambda: _get_env_int("VIDEO_COST", 2))
    VIDEO_COST_PRO: int = field(default_factory=lambda: _get_env_int("VIDEO_COST_PRO", 4))
    RESERVATION_STALE_MINUTES: int = field(default_factory=lambda: _get_env_int("RESERVATION_STALE_MINUTES", 30))

    # ─────────────────────────────────────────────────────────────
    # Rate Limiting (shared counters in Postgres)
    # ─────────────────────────────────────────────────────────────
    RATE_LIMIT_GENERATION_MAX: int = field(default_factory=lambda: _get_env_int("RATE_LIMIT_GENERATION_MAX", 10))
    RATE_LIMIT_GENERATION_WINDOW: int = field(default_factory=lambda: _get_env_int("RATE_LIMIT_GENERATION_WINDOW", 3600))

    # ─────────────────────────────────────────────────────────────
    # CORS
    # ─────────────────────────────────────────────────────────────
    _ALLOWED_ORIGINS_RAW: str = field(default_factory=lambda: _get_env("ALLOWED_ORIGINS"))

    @property
    def ALLOWED_ORIGINS(self) -> List[str]:
        """
        List of allowed CORS origins.
        Parses comma-separated URLs, drops anything that isn't http(s).
        """
        raw = self._ALLOWED_ORIGINS_RAW

        if not raw:
            if self.IS_DEV:
                return [
                    "http://localhost:3000",
                    "http://localhost:5173",
                    "http://localhost:8888",
                    "http://127.0.0.1:3000",
                    "http://127.0.0.1:5173",
                ]
            return []

        if raw == "*":
            return ["*"]

        origins = []
        for origin in _get_env_list("ALLOWED_ORIGINS"):
            if origin.startswith("http://") or origin.startswith("https://"):
                origins.append(origin)
        return origins

    @property
    def ALLOW_ALL_ORIGINS(self) -> bool:
        """True if wildcard CORS is enabled."""
        return self._ALLOWED_ORIGINS_RAW == "*"

    # ─────────────────────────────────────────────────────────────
    # Logging & Debug
    # ─────────────────────────────────────────────────────────────
    def log_summary(self) -> None:
        """Print configuration summary for debugging."""
        print("=" * 60)
        print("[CONFIG] Stefna Backend Configuration")
        print("=" * 60)
        print(f"  Environment: {self.FLASK_ENV} (IS_DEV={self.IS_DEV})")
        print(f"  Port: {self.PORT}")
        print("-" * 60)
        print(f"  Database configured: {self.HAS_DATABASE}")
        print(f"  Auth configured: {self.AUTH_CONFIGURED}")
        print(f"  AIML configured: {self.AIML_CONFIGURED} ({self.AIML_API_URL})")
        print(f"  Storage provider: {self.STORAGE_PROVIDER}")
        if self.STORAGE_PROVIDER == "s3":
            print(f"  AWS S3 configured: {self.AWS_CONFIGURED}")
        else:
            print(f"  Cloudinary configured: {self.CLOUDINARY_CONFIGURED}")
        print("-" * 60)
        print(f"  Daily cap (default): {self.DAILY_CAP}")
        print(f"  Starter credits (default): {self.STARTER_CREDITS}")
        print(f"  Video cost std/pro (default): {self.VIDEO_COST}/{self.VIDEO_COST_PRO}")
        print(f"  Generation rate limit: {self.RATE_LIMIT_GENERATION_MAX} per {self.RATE_LIMIT_GENERATION_WINDOW}s")
        print("=" * 60)

    def validate(self) -> List[str]:
        """
        Validate configuration and return list of warnings.
        Returns empty list if all critical config is present.
        """
        warnings = []

        if self.IS_PROD:
            if not self.HAS_DATABASE:
                warnings.append("DATABASE_URL not set - credits and jobs cannot be stored!")
            if not self.AUTH_CONFIGURED:
                warnings.append("JWT_SECRET not set - all authenticated endpoints will reject requests")
            if not self.AIML_CONFIGURED:
                warnings.append("AIML_API_KEY not set - generation will fail")
            if self.STORAGE_PROVIDER == "s3" and not self.AWS_CONFIGURED:
                warnings.append("STORAGE_PROVIDER=s3 but AWS S3 not configured")
            if self.STORAGE_PROVIDER == "cloudinary" and not self.CLOUDINARY_CONFIGURED:
                warnings.append("STORAGE_PROVIDER=cloudinary but Cloudinary not configured")
            if not self.ALLOWED_ORIGINS:
                warnings.append("ALLOWED_ORIGINS not set - CORS will block requests")
            if self.ALLOW_ALL_ORIGINS:
                warnings.append("ALLOWED_ORIGINS=* - allowing all origins (not recommended for production)")

        if self.STORAGE_PROVIDER not in ("cloudinary", "s3"):
            warnings.append(f"Unknown STORAGE_PROVIDER={self.STORAGE_PROVIDER!r}")

        return warnings

    def to_dict(self) -> dict:
        """Export safe configuration as dictionary (no secrets)."""
        return {
            "environment": self.FLASK_ENV,
            "is_dev": self.IS_DEV,
            "port": self.PORT,
            "has_database": self.HAS_DATABASE,
            "auth_configured": self.AUTH_CONFIGURED,
            "aiml_configured": self.AIML_CONFIGURED,
            "storage_provider": self.STORAGE_PROVIDER,
            "cloudinary_configured": self.CLOUDINARY_CONFIGURED,
            "aws_configured": self.AWS_CONFIGURED,
            "daily_cap": self.DAILY_CAP,
            "starter_credits": self.STARTER_CREDITS,
        }


# ─────────────────────────────────────────────────────────────
# Singleton instance
# ─────────────────────────────────────────────────────────────
try:
    config = Config()
    print(f"[CONFIG] Loaded successfully (IS_DEV={config.IS_DEV})")
except Exception as e:
    print(f"[CONFIG] FATAL: Failed to load config: {repr(e)}")
    raise

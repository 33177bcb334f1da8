from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any
from urllib.parse import urlsplit

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from passgate.logging import get_logger

logger = get_logger(__name__)


class AppEnv(str, Enum):
    """Deployment environments that change cookie and delivery behaviour."""

    DEVELOPMENT = "development"
    PRODUCTION = "production"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for credential issuance, sessions and account lifecycle."""

    app_env: AppEnv = env_field(AppEnv.DEVELOPMENT, "APP_ENV")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")
    database_url: str = env_field(
        "postgresql://localhost:5432/passgate", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/passgate", "SHARED_FS_ROOT")
    store_timeout_seconds: float = env_field(5.0, "STORE_TIMEOUT_SECONDS")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (in-memory store, sync Redis client).",
    )
    trust_forwarded_for: bool = env_field(
        False,
        "TRUST_FORWARDED_FOR",
        description="Use the first X-Forwarded-For hop as client IP (only behind a trusted proxy)",
    )
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    cors_allow_credentials: bool = env_field(True, "CORS_ALLOW_CREDENTIALS")
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")

    # Session token and cookie
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str | None = env_field(
        None, "JWT_ISSUER", description="Defaults to the APP_BASE_URL origin"
    )
    jwt_audience: str | None = env_field(
        None, "JWT_AUDIENCE", description="Defaults to the APP_BASE_URL origin"
    )
    session_ttl_minutes: int = env_field(7 * 24 * 60, "SESSION_TTL_MINUTES")
    session_clock_skew_seconds: int = env_field(120, "SESSION_CLOCK_SKEW_SECONDS")
    session_cookie_name: str | None = env_field(
        None,
        "SESSION_COOKIE_NAME",
        description="Defaults to __Host-session in production, passgate.session otherwise",
    )
    session_cookie_secure: bool | None = env_field(
        None, "SESSION_COOKIE_SECURE", description="Defaults to on in production"
    )

    # CSRF double-submit cookie
    csrf_cookie_name: str = env_field("csrf_token", "CSRF_COOKIE_NAME")
    csrf_header_name: str = env_field("X-CSRF-Token", "CSRF_HEADER_NAME")
    csrf_cookie_max_age_seconds: int = env_field(24 * 60 * 60, "CSRF_COOKIE_MAX_AGE_SECONDS")

    # One-time credentials
    magic_link_ttl_minutes: int = env_field(15, "MAGIC_LINK_TTL_MINUTES")
    otp_ttl_minutes: int = env_field(10, "OTP_TTL_MINUTES")
    otp_length: int = env_field(6, "OTP_LENGTH")
    otp_max_attempts: int = env_field(5, "OTP_MAX_ATTEMPTS")
    otp_kdf_time_cost: int = env_field(2, "OTP_KDF_TIME_COST")
    otp_kdf_memory_kib: int = env_field(19 * 1024, "OTP_KDF_MEMORY_KIB")
    credential_retention_hours: int = env_field(24, "CREDENTIAL_RETENTION_HOURS")
    redirect_error_path: str = env_field("/login", "REDIRECT_ERROR_PATH")

    # Rate limits (limit per window)
    credential_ip_rate_limit: int = env_field(10, "CREDENTIAL_IP_RATE_LIMIT")
    credential_ip_rate_limit_window_seconds: int = env_field(
        3600, "CREDENTIAL_IP_RATE_LIMIT_WINDOW_SECONDS"
    )
    credential_recipient_rate_limit: int = env_field(3, "CREDENTIAL_RECIPIENT_RATE_LIMIT")
    credential_recipient_rate_limit_window_seconds: int = env_field(
        3600, "CREDENTIAL_RECIPIENT_RATE_LIMIT_WINDOW_SECONDS"
    )
    verify_code_rate_limit: int = env_field(10, "VERIFY_CODE_RATE_LIMIT")
    verify_code_rate_limit_window_seconds: int = env_field(
        900, "VERIFY_CODE_RATE_LIMIT_WINDOW_SECONDS"
    )
    redeem_rate_limit: int = env_field(30, "REDEEM_RATE_LIMIT")
    redeem_rate_limit_window_seconds: int = env_field(900, "REDEEM_RATE_LIMIT_WINDOW_SECONDS")
    csrf_rate_limit: int = env_field(60, "CSRF_RATE_LIMIT")
    csrf_rate_limit_window_seconds: int = env_field(60, "CSRF_RATE_LIMIT_WINDOW_SECONDS")
    guest_rate_limit: int = env_field(20, "GUEST_RATE_LIMIT")
    guest_rate_limit_window_seconds: int = env_field(3600, "GUEST_RATE_LIMIT_WINDOW_SECONDS")

    # Account lifecycle
    deletion_grace_days: int = env_field(7, "DELETION_GRACE_DAYS")
    deletion_sweep_interval_seconds: int = env_field(3600, "DELETION_SWEEP_INTERVAL_SECONDS")

    # Delivery
    delivery_timeout_seconds: float = env_field(10.0, "DELIVERY_TIMEOUT_SECONDS")
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Passgate", "EMAIL_FROM_NAME")
    twilio_account_sid: str | None = env_field(None, "TWILIO_ACCOUNT_SID")
    twilio_auth_token: str | None = env_field(None, "TWILIO_AUTH_TOKEN")
    twilio_from_number: str | None = env_field(None, "TWILIO_FROM_NUMBER")
    twilio_api_base_url: str = env_field(
        "https://api.twilio.com/2010-04-01", "TWILIO_API_BASE_URL"
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("app_env", mode="before")
    @classmethod
    def _validate_app_env(cls, value: Any) -> AppEnv:
        if isinstance(value, str):
            value = value.strip().lower()
        return AppEnv(value)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return list(value)

    @field_validator(
        "session_ttl_minutes",
        "magic_link_ttl_minutes",
        "otp_ttl_minutes",
        "otp_max_attempts",
        "credential_ip_rate_limit_window_seconds",
        "credential_recipient_rate_limit_window_seconds",
        "verify_code_rate_limit_window_seconds",
        "redeem_rate_limit_window_seconds",
        "csrf_rate_limit_window_seconds",
        "guest_rate_limit_window_seconds",
        "deletion_sweep_interval_seconds",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("otp_length")
    @classmethod
    def _validate_otp_length(cls, value: int) -> int:
        if not 4 <= value <= 10:
            raise ValueError("OTP_LENGTH must be between 4 and 10")
        return value

    @field_validator("deletion_grace_days", "credential_retention_hours")
    @classmethod
    def _require_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so sessions remain valid across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/passgate"))
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            # Directory may already exist with different ownership (e.g., in container)
            pass
        except OSError as exc:
            logger.warning(
                "jwt_secret_dir_setup",
                error=str(exc),
                path=str(fs_root),
            )

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error("jwt_secret_read_failed", error=str(exc), path=str(secret_path))

        generated = secrets.token_urlsafe(64)
        tmp_path: str | None = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".jwt_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path is not None:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass
            logger.error("jwt_secret_persist_failed", error=str(exc), path=str(secret_path))
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET env var or make SHARED_FS_ROOT writable"
            ) from exc
        return generated

    @property
    def is_production(self) -> bool:
        return self.app_env == AppEnv.PRODUCTION

    @property
    def origin(self) -> str:
        """Scheme and host of APP_BASE_URL, used to bind session tokens to this deployment."""
        parts = urlsplit(self.app_base_url)
        if parts.scheme and parts.netloc:
            return f"{parts.scheme}://{parts.netloc}"
        return self.app_base_url.rstrip("/")

    @property
    def session_issuer(self) -> str:
        return self.jwt_issuer or self.origin

    @property
    def session_audience(self) -> str:
        return self.jwt_audience or self.origin

    @property
    def resolved_session_cookie_name(self) -> str:
        if self.session_cookie_name:
            return self.session_cookie_name
        return "__Host-session" if self.is_production else "passgate.session"

    @property
    def cookies_secure(self) -> bool:
        if self.session_cookie_secure is not None:
            return self.session_cookie_secure
        return self.is_production


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None

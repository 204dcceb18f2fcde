from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from storeguard.logging import get_logger

logger = get_logger(__name__)

_MIN_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _persisted_secret(name: str) -> str:
    """Load or create a secret file under SHARED_FS_ROOT.

    Keeps generated secrets stable across restarts so CSRF tokens and
    encrypted MFA seeds remain valid. An explicit env var always wins.
    """
    fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/storeguard"))
    secret_path = fs_root / f".{name}"

    try:
        fs_root.mkdir(parents=True, exist_ok=True)
        os.chmod(fs_root, 0o700)
    except PermissionError:
        # Directory may already exist with different ownership (e.g., in container)
        pass
    except OSError as exc:
        logger.warning(
            "secret_dir_setup_failed", error=str(exc), path=str(fs_root), secret_name=name
        )

    if secret_path.exists() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
            if len(persisted) >= _MIN_SECRET_LENGTH:
                return persisted
        except OSError as exc:
            logger.error("secret_read_failed", error=str(exc), path=str(secret_path))

    generated = secrets.token_urlsafe(64)
    tmp_path: str | None = None
    try:
        # Atomic write: temp file then rename
        fd, tmp_path = tempfile.mkstemp(dir=str(fs_root), prefix=f".{name}_", suffix=".tmp")
        try:
            os.write(fd, generated.encode())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.rename(tmp_path, str(secret_path))
    except OSError as exc:
        if tmp_path and os.path.exists(tmp_path):
            os.unlink(tmp_path)
        logger.error("secret_persist_failed", error=str(exc), path=str(secret_path))
        raise RuntimeError(
            f"Unable to persist {name}; set it explicitly or make SHARED_FS_ROOT writable"
        ) from exc
    return generated


class Settings(BaseModel):
    """Runtime settings for the account-security service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/storeguard", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/storeguard", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and allow runtime resets.",
    )

    # Sessions
    session_cookie_name: str = env_field("session_id", "SESSION_COOKIE_NAME")
    session_max_age_hours: int = env_field(
        12, "SESSION_MAX_AGE_HOURS", description="Absolute session lifetime"
    )
    session_idle_timeout_days: int = env_field(
        7, "SESSION_IDLE_TIMEOUT_DAYS", description="Inactivity limit independent of expiry"
    )
    session_refresh_threshold_minutes: int = env_field(
        30,
        "SESSION_REFRESH_THRESHOLD_MINUTES",
        description="Remaining lifetime below which a session is extended",
    )
    cookie_secure: bool = env_field(
        True, "COOKIE_SECURE", description="Mark auth cookies Secure (disable only for local http)"
    )

    # Lockout and passwords
    lockout_max_attempts: int = env_field(5, "LOCKOUT_MAX_ATTEMPTS")
    lockout_duration_minutes: int = env_field(30, "LOCKOUT_DURATION_MINUTES")
    password_history_retention: int = env_field(10, "PASSWORD_HISTORY_RETENTION")
    password_reuse_window: int = env_field(5, "PASSWORD_REUSE_WINDOW")
    argon2_time_cost: int = env_field(3, "ARGON2_TIME_COST")
    argon2_memory_cost: int = env_field(
        65536, "ARGON2_MEMORY_COST", description="Argon2 memory cost in KiB"
    )
    argon2_parallelism: int = env_field(4, "ARGON2_PARALLELISM")
    require_email_verification: bool = env_field(
        False,
        "REQUIRE_EMAIL_VERIFICATION",
        description="Reject logins for accounts that have not verified their email",
    )

    # Tokens
    reset_token_ttl_minutes: int = env_field(60, "RESET_TOKEN_TTL_MINUTES")
    email_verification_ttl_hours: int = env_field(24, "EMAIL_VERIFICATION_TTL_HOURS")

    # MFA
    mfa_issuer: str = env_field("StormCom", "MFA_ISSUER")
    mfa_backup_code_count: int = env_field(10, "MFA_BACKUP_CODE_COUNT")
    mfa_backup_code_ttl_days: int = env_field(90, "MFA_BACKUP_CODE_TTL_DAYS")
    mfa_encryption_key: str = env_field(
        None, "MFA_ENCRYPTION_KEY", validate_default=True
    )

    # CSRF
    csrf_secret: str = env_field(None, "CSRF_SECRET", validate_default=True)
    csrf_ttl_hours: int = env_field(24, "CSRF_TTL_HOURS")
    csrf_cookie_name: str = env_field("csrf_token", "CSRF_COOKIE_NAME")

    # Email delivery
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("StormCom", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")

    # Rate limits
    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE")
    register_rate_limit_per_minute: int = env_field(5, "REGISTER_RATE_LIMIT_PER_MINUTE")
    reset_rate_limit_per_minute: int = env_field(5, "RESET_RATE_LIMIT_PER_MINUTE")
    mfa_rate_limit_per_minute: int = env_field(10, "MFA_RATE_LIMIT_PER_MINUTE")

    # HTTP
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    cors_allow_credentials: bool = env_field(True, "CORS_ALLOW_CREDENTIALS")
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")

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

    @property
    def session_max_age_seconds(self) -> int:
        return self.session_max_age_hours * 3600

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> list[str]:
        if value is None or value == "":
            return []
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return list(value)

    @field_validator("redis_url")
    @classmethod
    def _blank_redis_url(cls, value: str | None) -> str | None:
        return value or None

    @field_validator(
        "lockout_max_attempts",
        "lockout_duration_minutes",
        "password_history_retention",
        "password_reuse_window",
        "session_max_age_hours",
        "mfa_backup_code_count",
        "csrf_ttl_hours",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("csrf_secret", mode="before")
    @classmethod
    def _ensure_csrf_secret(cls, value: str | None) -> str:
        if value:
            if len(value) < _MIN_SECRET_LENGTH:
                raise ValueError(
                    f"CSRF_SECRET must be at least {_MIN_SECRET_LENGTH} characters"
                )
            return value
        return _persisted_secret("csrf_secret")

    @field_validator("mfa_encryption_key", mode="before")
    @classmethod
    def _ensure_mfa_key(cls, value: str | None) -> str:
        if value:
            return value
        return _persisted_secret("mfa_encryption_key")


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

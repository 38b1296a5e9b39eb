from __future__ import annotations

import os
import secrets
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from loginguard.logging import get_logger

logger = get_logger(__name__)

# Values shipped in sample configuration files; treated as "not configured"
PLACEHOLDER_SITE_KEY = "YOUR_SITE_KEY_HERE"
PLACEHOLDER_SECRET_KEY = "YOUR_SECRET_KEY_HERE"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication core and its HTTP surface."""

    database_url: str = env_field(
        "postgresql://localhost:5432/loginguard", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/loginguard", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and allow runtime resets.",
    )
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")

    # Identity token and cookies
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("loginguard", "JWT_ISSUER")
    jwt_audience: str = env_field("loginguard-clients", "JWT_AUDIENCE")
    session_ttl_minutes: int = env_field(
        30, "SESSION_TTL_MINUTES", description="Identity token lifetime for ordinary sign-ins"
    )
    remember_me_ttl_days: int = env_field(
        14, "REMEMBER_ME_TTL_DAYS", description="Identity token lifetime when remember-me is set"
    )
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")

    # Human-verification gate
    human_verification_enabled: bool = env_field(True, "HUMAN_VERIFICATION_ENABLED")
    human_verification_site_key: str | None = env_field(
        None, "HUMAN_VERIFICATION_SITE_KEY"
    )
    human_verification_secret_key: str | None = env_field(
        None, "HUMAN_VERIFICATION_SECRET_KEY"
    )
    human_verification_min_score: float = env_field(
        0.5, "HUMAN_VERIFICATION_MIN_SCORE", description="Lowest trust score accepted"
    )
    human_verification_verify_url: str = env_field(
        "https://www.google.com/recaptcha/api/siteverify",
        "HUMAN_VERIFICATION_VERIFY_URL",
    )
    human_verification_timeout_seconds: float = env_field(
        5.0, "HUMAN_VERIFICATION_TIMEOUT_SECONDS"
    )

    # Lockout
    max_failed_attempts: int = env_field(3, "MAX_FAILED_ATTEMPTS")
    lockout_minutes: int = env_field(15, "LOCKOUT_MINUTES")

    # Password lifecycle
    password_history_count: int = env_field(2, "PASSWORD_HISTORY_COUNT")
    password_min_age_hours: int = env_field(24, "PASSWORD_MIN_AGE_HOURS")
    password_max_age_days: int = env_field(90, "PASSWORD_MAX_AGE_DAYS")
    password_expiry_warning_days: int = env_field(14, "PASSWORD_EXPIRY_WARNING_DAYS")
    enforce_min_age_on_reset: bool = env_field(
        False,
        "ENFORCE_MIN_AGE_ON_RESET",
        description="Apply the minimum password age to token-based resets as well as changes",
    )
    password_reset_token_ttl_minutes: int = env_field(
        60, "PASSWORD_RESET_TOKEN_TTL_MINUTES"
    )

    # Two-factor
    two_factor_ttl_minutes: int = env_field(
        5, "TWO_FACTOR_TTL_MINUTES", description="Lifetime of a suspended login awaiting its code"
    )
    two_factor_issuer: str = env_field("LoginGuard", "TWO_FACTOR_ISSUER")
    mfa_secret_key: str | None = env_field(None, "MFA_SECRET_KEY")

    # Email service settings
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("LoginGuard", "EMAIL_FROM_NAME")

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
    def human_verification_configured(self) -> bool:
        """True when the gate is switched on and both keys are real values."""
        site_key = (self.human_verification_site_key or "").strip()
        secret_key = (self.human_verification_secret_key or "").strip()
        if not self.human_verification_enabled:
            return False
        if not site_key or site_key == PLACEHOLDER_SITE_KEY:
            return False
        if not secret_key or secret_key == PLACEHOLDER_SECRET_KEY:
            return False
        return True

    @field_validator("redis_url")
    @classmethod
    def _blank_redis_url(cls, value: str | None) -> str | None:
        return value or None

    @field_validator("human_verification_min_score")
    @classmethod
    def _validate_min_score(cls, value: float) -> float:
        if not 0.0 <= value <= 1.0:
            raise ValueError("HUMAN_VERIFICATION_MIN_SCORE must be between 0.0 and 1.0")
        return value

    @field_validator("human_verification_timeout_seconds")
    @classmethod
    def _validate_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("HUMAN_VERIFICATION_TIMEOUT_SECONDS must be positive")
        return value

    @field_validator(
        "max_failed_attempts",
        "lockout_minutes",
        "password_history_count",
        "password_max_age_days",
        "password_reset_token_ttl_minutes",
        "session_ttl_minutes",
        "remember_me_ttl_days",
        "two_factor_ttl_minutes",
    )
    @classmethod
    def _validate_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("value must be at least 1")
        return value

    @field_validator("password_min_age_hours", "password_expiry_warning_days")
    @classmethod
    def _validate_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("value must not be negative")
        return value

    @model_validator(mode="after")
    def _validate_password_windows(self):
        if self.password_expiry_warning_days >= self.password_max_age_days:
            raise ValueError(
                "PASSWORD_EXPIRY_WARNING_DAYS must be smaller than PASSWORD_MAX_AGE_DAYS"
            )
        return self

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so identity tokens survive restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/loginguard"))
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            # Directory may already exist with different permissions (e.g., in container)
            pass
        except OSError as exc:
            logger.warning(
                "jwt_secret_dir_setup",
                error=str(exc),
                path=str(fs_root),
                message="Could not set directory permissions",
            )

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error(
                    "jwt_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path: str | None = None
        try:
            import tempfile

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
            if tmp_path:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET env var or make SHARED_FS_ROOT writable"
            ) from exc
        return generated


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

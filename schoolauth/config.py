from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from schoolauth.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/school_management", "DATABASE_URL"
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors; allows running without Redis.",
    )
    secrets_dir: str = env_field("/srv/schoolauth", "SECRETS_DIR")

    # Token signing
    jwt_secret: str = env_field(None, "JWT_SECRET")
    jwt_refresh_secret: str | None = env_field(None, "JWT_REFRESH_SECRET")
    jwt_verification_secret: str | None = env_field(None, "JWT_VERIFICATION_SECRET")
    jwt_reset_secret: str | None = env_field(None, "JWT_RESET_SECRET")
    jwt_issuer: str = env_field("school-management-system", "JWT_ISSUER")
    jwt_audience: str = env_field("sms-client", "JWT_AUDIENCE")

    # Token lifetimes
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_days: int = env_field(7, "REFRESH_TOKEN_TTL_DAYS")
    refresh_token_remember_ttl_days: int = env_field(
        30,
        "REFRESH_TOKEN_REMEMBER_TTL_DAYS",
        description="Refresh token TTL when the client asks to be remembered",
    )
    verification_token_ttl_hours: int = env_field(24, "VERIFICATION_TOKEN_TTL_HOURS")
    reset_token_ttl_minutes: int = env_field(60, "RESET_TOKEN_TTL_MINUTES")
    refresh_token_single_use: bool = env_field(
        True,
        "REFRESH_TOKEN_SINGLE_USE",
        description="Reject a refresh token once it has minted a new pair",
    )

    # Lockout policy
    lockout_threshold: int = env_field(5, "LOCKOUT_THRESHOLD")
    lockout_duration_minutes: int = env_field(120, "LOCKOUT_DURATION_MINUTES")
    require_verified_login: bool = env_field(True, "REQUIRE_VERIFIED_LOGIN")

    # Revocation cache bounds
    revocation_high_water: int = env_field(10_000, "REVOCATION_HIGH_WATER")
    revocation_low_water: int = env_field(5_000, "REVOCATION_LOW_WATER")

    # Admission control: (limit, window) per route
    login_rate_limit: int = env_field(5, "LOGIN_RATE_LIMIT")
    login_rate_window_seconds: int = env_field(15 * 60, "LOGIN_RATE_WINDOW_SECONDS")
    register_rate_limit: int = env_field(3, "REGISTER_RATE_LIMIT")
    register_rate_window_seconds: int = env_field(60 * 60, "REGISTER_RATE_WINDOW_SECONDS")
    reset_rate_limit: int = env_field(3, "RESET_RATE_LIMIT")
    reset_rate_window_seconds: int = env_field(60 * 60, "RESET_RATE_WINDOW_SECONDS")
    resend_verification_rate_limit: int = env_field(5, "RESEND_VERIFICATION_RATE_LIMIT")
    resend_verification_rate_window_seconds: int = env_field(
        60 * 60, "RESEND_VERIFICATION_RATE_WINDOW_SECONDS"
    )
    refresh_rate_limit: int = env_field(10, "REFRESH_RATE_LIMIT")
    refresh_rate_window_seconds: int = env_field(60, "REFRESH_RATE_WINDOW_SECONDS")

    # Email delivery
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("School Management System", "EMAIL_FROM_NAME")
    support_email: str = env_field("support@schoolms.com", "SUPPORT_EMAIL")
    client_base_url: str = env_field("http://localhost:3000", "CLIENT_URL")

    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    cors_allow_credentials: bool = env_field(True, "CORS_ALLOW_CREDENTIALS")
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")
    build_sha: str = env_field("dev", "BUILD_SHA")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, Any] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        if merged.get("redis_url") == "":
            merged["redis_url"] = None
        return cls(**merged)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator(
        "access_token_ttl_minutes",
        "refresh_token_ttl_days",
        "refresh_token_remember_ttl_days",
        "verification_token_ttl_hours",
        "reset_token_ttl_minutes",
        "lockout_threshold",
        "lockout_duration_minutes",
        "revocation_low_water",
        "login_rate_window_seconds",
        "register_rate_window_seconds",
        "reset_rate_window_seconds",
        "resend_verification_rate_window_seconds",
        "refresh_rate_window_seconds",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @model_validator(mode="after")
    def _check_revocation_bounds(self) -> "Settings":
        if self.revocation_low_water >= self.revocation_high_water:
            raise ValueError("revocation_low_water must be below revocation_high_water")
        return self

    @model_validator(mode="after")
    def _ensure_jwt_secret(self) -> "Settings":
        if not self.jwt_secret:
            self.jwt_secret = _load_or_create_secret(Path(self.secrets_dir))
        return self

    def signing_secret(self, kind: str) -> str:
        """Signing key for a token kind; dedicated secrets win over derivation."""
        dedicated = {
            "refresh": self.jwt_refresh_secret,
            "verify": self.jwt_verification_secret,
            "reset": self.jwt_reset_secret,
        }.get(kind)
        if dedicated:
            return dedicated
        if kind == "access":
            return self.jwt_secret
        return f"{self.jwt_secret}:{kind}"


def _load_or_create_secret(secrets_dir: Path) -> str:
    """Persist a generated JWT secret so tokens remain valid across restarts."""
    secret_path = secrets_dir / ".jwt_secret"
    try:
        secrets_dir.mkdir(parents=True, exist_ok=True)
        os.chmod(secrets_dir, 0o700)
    except PermissionError:
        pass
    except OSError as exc:
        logger.warning("jwt_secret_dir_setup", error=str(exc), path=str(secrets_dir))

    if secret_path.exists() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
            if persisted and len(persisted) >= 32:
                return persisted
        except OSError as exc:
            logger.error("jwt_secret_read_failed", error=str(exc), path=str(secret_path))

    generated = secrets.token_urlsafe(64)
    tmp_path = None
    try:
        fd, tmp_path = tempfile.mkstemp(
            dir=str(secrets_dir), prefix=".jwt_secret_", suffix=".tmp"
        )
        try:
            os.write(fd, generated.encode())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.rename(tmp_path, str(secret_path))
    except OSError as exc:
        if tmp_path and os.path.exists(tmp_path):
            os.unlink(tmp_path)
        logger.error("jwt_secret_persist_failed", error=str(exc), path=str(secret_path))
        raise RuntimeError(
            "Unable to persist JWT secret; set JWT_SECRET or make SECRETS_DIR writable"
        ) from exc
    logger.warning("jwt_secret_generated", path=str(secret_path))
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

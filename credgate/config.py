from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from credgate.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the credential and session service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/credgate", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    shared_fs_root: str = env_field("/srv/credgate", "SHARED_FS_ROOT")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic behaviours for CI runs",
    )

    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("credgate", "JWT_ISSUER")
    jwt_audience: str = env_field("credgate-clients", "JWT_AUDIENCE")
    session_ttl_minutes: int = env_field(
        30 * 24 * 60,
        "SESSION_TTL_MINUTES",
        description="Lifetime of a signed session token",
    )
    session_cookie_secure: bool = env_field(True, "SESSION_COOKIE_SECURE")
    default_login_redirect: str = env_field("/settings", "DEFAULT_LOGIN_REDIRECT")

    # One-time token lifetimes
    verification_token_ttl_minutes: int = env_field(
        60,
        "VERIFICATION_TOKEN_TTL_MINUTES",
        description="Email-keyed verification links",
    )
    user_verification_token_ttl_minutes: int = env_field(
        24 * 60,
        "USER_VERIFICATION_TOKEN_TTL_MINUTES",
        description="Verification links issued for a known user id",
    )
    password_reset_token_ttl_minutes: int = env_field(
        60, "PASSWORD_RESET_TOKEN_TTL_MINUTES"
    )
    two_factor_token_ttl_minutes: int = env_field(5, "TWO_FACTOR_TOKEN_TTL_MINUTES")
    token_purge_interval_seconds: int = env_field(
        15 * 60,
        "TOKEN_PURGE_INTERVAL_SECONDS",
        description="How often expired one-time tokens are swept from the store",
    )

    # argon2id cost factor, fixed per deployment
    password_hash_time_cost: int = env_field(3, "PASSWORD_HASH_TIME_COST")
    password_hash_memory_cost: int = env_field(
        64 * 1024, "PASSWORD_HASH_MEMORY_COST", description="KiB"
    )
    password_hash_parallelism: int = env_field(4, "PASSWORD_HASH_PARALLELISM")

    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Credgate", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")

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

    @field_validator(
        "session_ttl_minutes",
        "verification_token_ttl_minutes",
        "user_verification_token_ttl_minutes",
        "password_reset_token_ttl_minutes",
        "two_factor_token_ttl_minutes",
        "token_purge_interval_seconds",
    )
    @classmethod
    def _positive_duration(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("durations must be positive")
        return value

    @field_validator("default_login_redirect")
    @classmethod
    def _relative_redirect(cls, value: str) -> str:
        if not value.startswith("/") or value.startswith("//"):
            raise ValueError("default_login_redirect must be a relative path")
        return value

    @field_validator("app_base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so sessions survive restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/credgate"))
        secret_path = fs_root / ".jwt_secret"
        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            pass

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error(
                    "jwt_secret_read_failed", error=str(exc), path=str(secret_path)
                )

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
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET or make SHARED_FS_ROOT writable"
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

from __future__ import annotations

import os
import re
import secrets
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from hydroline_identity.logging import get_logger

logger = get_logger(__name__)

# Dial code -> region for the phone channel defaults
DEFAULT_PHONE_DIAL_CODES: dict[str, str] = {
    "+86": "CN",
    "+852": "HK",
    "+853": "MO",
    "+886": "TW",
}

_DIAL_CODE_PATTERN = re.compile(r"^\+\d{2,6}$")


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the identity service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/hydroline", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/hydroline", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Enable deterministic test behaviors and runtime resets.",
    )
    jwt_secret: str = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("hydroline", "JWT_ISSUER")
    access_token_ttl_minutes: int = env_field(30, "ACCESS_TOKEN_TTL_MINUTES")
    session_ttl_minutes: int = env_field(7 * 24 * 60, "SESSION_TTL_MINUTES")
    cookie_prefix: str = env_field("hydroline", "COOKIE_PREFIX")
    # External credential store (AuthMe bridge)
    credential_store_url: str | None = env_field(None, "CREDENTIAL_STORE_URL")
    credential_store_token: str | None = env_field(None, "CREDENTIAL_STORE_TOKEN")
    credential_store_timeout_seconds: float = env_field(
        5.0, "CREDENTIAL_STORE_TIMEOUT_SECONDS"
    )
    # Contacts
    verification_code_ttl_minutes: int = env_field(10, "VERIFICATION_CODE_TTL_MINUTES")
    phone_verification_enabled: bool = env_field(False, "PHONE_VERIFICATION_ENABLED")
    supported_phone_dial_codes: dict[str, str] = env_field(
        dict(DEFAULT_PHONE_DIAL_CODES),
        "SUPPORTED_PHONE_DIAL_CODES",
        description="Comma separated '+code:REGION' pairs",
    )
    # Rate limits
    email_code_rate_limit_per_hour: int = env_field(5, "EMAIL_CODE_RATE_LIMIT_PER_HOUR")
    bind_rate_limit_per_minute: int = env_field(10, "BIND_RATE_LIMIT_PER_MINUTE")
    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE")
    permission_cache_ttl_seconds: int = env_field(30, "PERMISSION_CACHE_TTL_SECONDS")
    # Email service
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Hydroline", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

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

    @field_validator("redis_url")
    @classmethod
    def _blank_redis_url(cls, value: str | None) -> str | None:
        return value or None

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("supported_phone_dial_codes", mode="before")
    @classmethod
    def _parse_dial_codes(cls, value: Any) -> Any:
        if not isinstance(value, str):
            return value
        parsed: dict[str, str] = {}
        for item in value.split(","):
            item = item.strip()
            if not item:
                continue
            code, _, region = item.partition(":")
            code = code.strip()
            if not _DIAL_CODE_PATTERN.match(code):
                raise ValueError(f"invalid dial code {code!r}")
            parsed[code] = region.strip().upper() or DEFAULT_PHONE_DIAL_CODES.get(code, "")
        return parsed or dict(DEFAULT_PHONE_DIAL_CODES)

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so tokens survive restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/hydroline"))
        secret_path = fs_root / ".jwt_secret"
        try:
            fs_root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            logger.warning("jwt_secret_dir_setup", error=str(exc), path=str(fs_root))

        if secret_path.exists() and not secret_path.is_symlink():
            persisted = secret_path.read_text().strip()
            if len(persisted) >= 32:
                return persisted

        generated = secrets.token_urlsafe(64)
        try:
            secret_path.write_text(generated)
            os.chmod(secret_path, 0o600)
        except OSError as exc:
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

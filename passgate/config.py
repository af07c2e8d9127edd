from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from passgate.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the credential and session lifecycle engine."""

    database_url: str = env_field(
        "postgresql://localhost:5432/passgate", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    shared_fs_root: str = env_field("/srv/passgate", "SHARED_FS_ROOT")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Relax startup checks for CI and local test runs",
    )
    signing_key: str | None = env_field(None, "SIGNING_KEY", validate_default=True)
    access_token_ttl_minutes: int = env_field(
        20, "ACCESS_TOKEN_TTL_MINUTES", description="Access credential lifetime"
    )
    refresh_session_ttl_hours: int = env_field(
        256, "REFRESH_SESSION_TTL_HOURS", description="Refresh session lifetime"
    )
    max_sessions_per_account: int = env_field(
        5,
        "MAX_SESSIONS_PER_ACCOUNT",
        description="Live refresh sessions allowed per account",
    )
    elevated_role: str = env_field("moderator", "ELEVATED_ROLE")
    default_role: str = env_field("default", "DEFAULT_ROLE")
    default_partition: str = env_field("global", "DEFAULT_PARTITION")
    password_hash_time_cost: int = env_field(3, "PASSWORD_HASH_TIME_COST")
    password_hash_memory_cost: int = env_field(
        64 * 1024, "PASSWORD_HASH_MEMORY_COST", description="argon2 memory in KiB"
    )
    allow_signup: bool = env_field(
        True, "ALLOW_SIGNUP", description="Allow self-service registration"
    )
    revoke_sessions_on_reset: bool = env_field(
        True,
        "REVOKE_SESSIONS_ON_RESET",
        description="Delete every refresh session after a completed password reset",
    )
    sender_base_url: str | None = env_field(None, "SENDER_BASE_URL")
    sender_timeout_seconds: float = env_field(5.0, "SENDER_TIMEOUT_SECONDS")
    notifier_source_contact: str = env_field(
        "no-reply@passgate.local", "NOTIFIER_SOURCE_CONTACT"
    )
    refresh_cookie_path: str = env_field("/v1/refresh_tokens", "REFRESH_COOKIE_PATH")

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
    def access_token_ttl_ms(self) -> int:
        return self.access_token_ttl_minutes * 60 * 1000

    @property
    def refresh_session_ttl_ms(self) -> int:
        return self.refresh_session_ttl_hours * 60 * 60 * 1000

    @field_validator("max_sessions_per_account")
    @classmethod
    def _validate_session_cap(cls, value: int) -> int:
        if value < 1:
            raise ValueError("max_sessions_per_account must be at least 1")
        return value

    @field_validator("signing_key")
    @classmethod
    def _ensure_signing_key(cls, value: str | None) -> str:
        # validate_default so an unset key is generated at construction
        if value:
            return value
        # Persist a generated key so issued credentials survive restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/passgate"))
        key_path = fs_root / ".signing_key"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            pass
        except OSError as exc:
            logger.warning("signing_key_dir_setup", error=str(exc), path=str(fs_root))

        if key_path.exists() and not key_path.is_symlink():
            try:
                persisted = key_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error("signing_key_read_failed", error=str(exc), path=str(key_path))

        generated = secrets.token_urlsafe(64)
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".signing_key_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(key_path))
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error("signing_key_persist_failed", error=str(exc), path=str(key_path))
            raise RuntimeError(
                "Unable to persist signing key; set SIGNING_KEY or make SHARED_FS_ROOT writable"
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

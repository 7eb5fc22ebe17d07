from __future__ import annotations

import os
import secrets
import tempfile
from datetime import timedelta
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from authkeeper.logging import get_logger
from authkeeper.storage.models import AccountKind

logger = get_logger(__name__)

MIN_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the token service."""

    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Relaxes production-only checks for the test suite",
    )
    state_dir: str = env_field(
        "/var/lib/authkeeper",
        "AUTHKEEPER_STATE_DIR",
        description="Directory for the persisted signing secret and account state",
    )
    persist_accounts: bool = env_field(
        False,
        "PERSIST_ACCOUNTS",
        description="Write the in-memory account directory to state_dir",
    )
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str | None = env_field("authkeeper", "JWT_ISSUER")
    access_token_ttl_minutes: int = env_field(
        20, "ACCESS_TOKEN_TTL_MINUTES", description="Access token lifetime"
    )
    refresh_token_ttl_minutes: int = env_field(
        60 * 24 * 7, "REFRESH_TOKEN_TTL_MINUTES", description="Refresh token lifetime"
    )
    account_kinds: list[AccountKind] = env_field(
        "user,fan,creator",
        "ACCOUNT_KINDS",
        validate_default=True,
        description="Comma-separated account kinds served by this deployment",
    )
    default_account_kind: AccountKind = env_field(
        AccountKind.USER, "DEFAULT_ACCOUNT_KIND", validate_default=True
    )
    username_max_attempts: int = env_field(10_000, "USERNAME_MAX_ATTEMPTS")
    revocation_sweep_interval_seconds: int = env_field(
        300,
        "REVOCATION_SWEEP_INTERVAL_SECONDS",
        description="Minimum seconds between sweeps of expired revocation entries",
    )
    allow_signup: bool = env_field(
        True,
        "ALLOW_SIGNUP",
        description="Allow new account self-registration",
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

    @property
    def access_ttl(self) -> timedelta:
        return timedelta(minutes=self.access_token_ttl_minutes)

    @property
    def refresh_ttl(self) -> timedelta:
        return timedelta(minutes=self.refresh_token_ttl_minutes)

    @field_validator("access_token_ttl_minutes", "refresh_token_ttl_minutes")
    @classmethod
    def _validate_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("token lifetimes must be positive")
        return value

    @field_validator("username_max_attempts", "revocation_sweep_interval_seconds")
    @classmethod
    def _validate_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("account_kinds", mode="before")
    @classmethod
    def _split_account_kinds(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = [part for part in value.split(",") if part.strip()]
        if isinstance(value, (list, tuple, set)):
            kinds = [
                item if isinstance(item, AccountKind) else AccountKind(str(item).strip().upper())
                for item in value
            ]
            if not kinds:
                raise ValueError("at least one account kind is required")
            return list(dict.fromkeys(kinds))
        return value

    @field_validator("default_account_kind", mode="before")
    @classmethod
    def _parse_default_kind(cls, value: Any) -> Any:
        if isinstance(value, str):
            return AccountKind(value.strip().upper())
        return value

    @field_validator("default_account_kind")
    @classmethod
    def _default_kind_is_served(cls, value: AccountKind, info: ValidationInfo) -> AccountKind:
        served = info.data.get("account_kinds")
        if served is not None and value not in served:
            raise ValueError(f"default account kind {value.value} is not in ACCOUNT_KINDS")
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None, info: ValidationInfo) -> str:
        if value:
            if len(value) < MIN_SECRET_LENGTH and not info.data.get("test_mode"):
                logger.warning("jwt_secret_short", length=len(value))
            return value
        # Persist a generated secret so tokens remain valid across restarts
        state_dir = Path(info.data.get("state_dir") or "/var/lib/authkeeper")
        secret_path = state_dir / ".jwt_secret"

        try:
            state_dir.mkdir(parents=True, exist_ok=True)
            os.chmod(state_dir, 0o700)
        except PermissionError:
            # Directory may already exist with different permissions (e.g., in container)
            pass
        except OSError as exc:
            logger.warning(
                "jwt_secret_dir_setup",
                error=str(exc),
                path=str(state_dir),
                message="Could not set directory permissions",
            )

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= MIN_SECRET_LENGTH:
                    return persisted
            except OSError as exc:
                logger.error(
                    "jwt_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(state_dir), prefix=".jwt_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.replace(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path is not None and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET or make AUTHKEEPER_STATE_DIR writable"
            ) from exc
        logger.info("jwt_secret_generated", path=str(secret_path))
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

from __future__ import annotations

import os
import secrets
import tempfile
from datetime import timedelta
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from sessioncore.logging import get_logger

logger = get_logger(__name__)

SYMMETRIC_ALGORITHMS = frozenset({"HS256", "HS384", "HS512"})
ASYMMETRIC_ALGORITHMS = frozenset(
    {"RS256", "RS384", "RS512", "ES256", "ES384", "ES512", "PS256", "PS384", "PS512", "EdDSA"}
)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the session core."""

    database_url: str | None = env_field(None, "DATABASE_URL")
    redis_url: str | None = env_field(None, "REDIS_URL")
    shared_fs_root: str = env_field("/srv/sessioncore", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow in-memory fallbacks and runtime resets for test suites.",
    )

    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_algorithm: str = env_field("HS256", "JWT_ALGORITHM")
    jwt_private_key: str | None = env_field(
        None, "JWT_PRIVATE_KEY", description="PEM signing key for asymmetric algorithms"
    )
    jwt_public_key: str | None = env_field(
        None, "JWT_PUBLIC_KEY", description="PEM verification key for asymmetric algorithms"
    )
    jwt_issuer: str = env_field("sessioncore", "JWT_ISSUER")
    jwt_audience: str = env_field("sessioncore-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(60 * 24 * 7, "REFRESH_TOKEN_TTL_MINUTES")
    rotate_refresh_tokens: bool = env_field(
        True,
        "ROTATE_REFRESH_TOKENS",
        description="Single-use refresh tokens; when off, refresh only mints a new access token.",
    )

    lock_threshold: int = env_field(
        3, "LOCK_THRESHOLD", description="Consecutive failed logins before a timed lock"
    )
    lock_duration_minutes: int = env_field(30, "LOCK_DURATION_MINUTES")
    lockout_update_retries: int = env_field(
        5,
        "LOCKOUT_UPDATE_RETRIES",
        description="Compare-and-set attempts for lockout bookkeeping before giving up",
    )
    store_timeout_seconds: float = env_field(5.0, "STORE_TIMEOUT_SECONDS")

    argon2_time_cost: int = env_field(3, "ARGON2_TIME_COST")
    argon2_memory_cost: int = env_field(65536, "ARGON2_MEMORY_COST")
    argon2_parallelism: int = env_field(4, "ARGON2_PARALLELISM")

    model_config = ConfigDict(extra="ignore")

    @property
    def access_token_ttl(self) -> timedelta:
        return timedelta(minutes=self.access_token_ttl_minutes)

    @property
    def refresh_token_ttl(self) -> timedelta:
        return timedelta(minutes=self.refresh_token_ttl_minutes)

    @property
    def lock_duration(self) -> timedelta:
        return timedelta(minutes=self.lock_duration_minutes)

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
        "access_token_ttl_minutes",
        "refresh_token_ttl_minutes",
        "lock_threshold",
        "lock_duration_minutes",
        "lockout_update_retries",
    )
    @classmethod
    def _ensure_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("store_timeout_seconds")
    @classmethod
    def _ensure_positive_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("jwt_algorithm")
    @classmethod
    def _validate_algorithm(cls, value: str) -> str:
        if value not in SYMMETRIC_ALGORITHMS | ASYMMETRIC_ALGORITHMS:
            raise ValueError(f"unsupported JWT algorithm: {value}")
        return value

    @model_validator(mode="after")
    def _check_signing_material(self) -> "Settings":
        if self.refresh_token_ttl_minutes <= self.access_token_ttl_minutes:
            raise ValueError("refresh token TTL must exceed access token TTL")
        if self.jwt_algorithm in ASYMMETRIC_ALGORITHMS:
            if not self.jwt_private_key or not self.jwt_public_key:
                raise ValueError(
                    f"{self.jwt_algorithm} requires JWT_PRIVATE_KEY and JWT_PUBLIC_KEY"
                )
        elif not self.jwt_secret:
            self.jwt_secret = _load_or_create_secret(Path(self.shared_fs_root))
        return self


def _load_or_create_secret(fs_root: Path) -> str:
    """Persist a generated HMAC secret so tokens survive restarts."""
    secret_path = fs_root / ".jwt_secret"
    try:
        fs_root.mkdir(parents=True, exist_ok=True)
        os.chmod(fs_root, 0o700)
    except PermissionError:
        # Directory may already exist with different permissions (e.g., in container)
        pass

    if secret_path.exists() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
        except OSError as exc:
            logger.error("jwt_secret_read_failed", error=str(exc), path=str(secret_path))
        else:
            if len(persisted) >= 32:
                return persisted

    generated = secrets.token_urlsafe(64)
    tmp_path = None
    try:
        fd, tmp_path = tempfile.mkstemp(
            dir=str(fs_root), prefix=".jwt_secret_", suffix=".tmp"
        )
        try:
            os.write(fd, generated.encode())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.replace(tmp_path, secret_path)
    except OSError as exc:
        if tmp_path and os.path.exists(tmp_path):
            os.unlink(tmp_path)
        logger.error("jwt_secret_persist_failed", error=str(exc), path=str(secret_path))
        raise RuntimeError(
            "Unable to persist JWT secret; set JWT_SECRET or make SHARED_FS_ROOT writable"
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

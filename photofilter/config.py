from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from photofilter.logging import get_logger

logger = get_logger(__name__)


class ShareStoreMode(str, Enum):
    """Backing store for share grants."""

    MEMORY = "memory"
    REDIS = "redis"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth kernel."""

    database_url: str = env_field(
        "postgresql://localhost:5432/photofilter", "DATABASE_URL"
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    shared_fs_root: str = env_field("/srv/photofilter", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    share_store: ShareStoreMode = env_field(
        ShareStoreMode.MEMORY,
        "SHARE_STORE",
        description="Where share grants live: process memory or Redis",
    )
    test_mode: bool = env_field(False, "TEST_MODE")
    allow_signup: bool = env_field(True, "ALLOW_SIGNUP")
    app_base_url: str = env_field("http://localhost:3000", "APP_BASE_URL")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

    # Local token codec
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("photofilter", "JWT_ISSUER")
    jwt_audience: str = env_field("photofilter-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(24 * 60, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES"
    )
    token_leeway_seconds: int = env_field(
        30,
        "TOKEN_LEEWAY_SECONDS",
        description="Clock skew tolerated when checking exp/iat",
    )
    max_refresh_tokens_per_user: int = env_field(
        10,
        "MAX_REFRESH_TOKENS_PER_USER",
        description="Newest refresh tokens kept per user; older ones are dropped",
    )

    # Password hashing
    password_min_length: int = env_field(8, "PASSWORD_MIN_LENGTH")
    argon2_time_cost: int = env_field(2, "ARGON2_TIME_COST")
    argon2_memory_cost: int = env_field(19 * 1024, "ARGON2_MEMORY_COST")
    argon2_parallelism: int = env_field(1, "ARGON2_PARALLELISM")

    # External identity provider (optional)
    identity_pool_id: str | None = env_field(None, "IDENTITY_POOL_ID")
    identity_region: str = env_field("ap-southeast-2", "IDENTITY_REGION")
    identity_issuer: str | None = env_field(
        None,
        "IDENTITY_ISSUER",
        description="Explicit issuer URL; derived from pool id and region when unset",
    )
    identity_jwks_url: str | None = env_field(None, "IDENTITY_JWKS_URL")
    identity_client_id: str | None = env_field(
        None,
        "IDENTITY_CLIENT_ID",
        description="Expected audience; any audience is accepted when unset",
    )
    identity_token_use: str = env_field("id", "IDENTITY_TOKEN_USE")
    identity_jwks_cache_seconds: int = env_field(3600, "IDENTITY_JWKS_CACHE_SECONDS")
    identity_jwks_min_refresh_seconds: int = env_field(
        60, "IDENTITY_JWKS_MIN_REFRESH_SECONDS"
    )
    identity_http_timeout_seconds: float = env_field(
        5.0, "IDENTITY_HTTP_TIMEOUT_SECONDS"
    )

    # Email verification and share tokens
    email_verification_ttl_hours: int = env_field(24, "EMAIL_VERIFICATION_TTL_HOURS")
    email_verification_resend_cooldown_seconds: int = env_field(
        60, "EMAIL_VERIFICATION_RESEND_COOLDOWN_SECONDS"
    )
    share_token_max_ttl_hours: int = env_field(24 * 7, "SHARE_TOKEN_MAX_TTL_HOURS")

    # Outbound email
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("PhotoFilter Pro", "EMAIL_FROM_NAME")

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
    def identity_configured(self) -> bool:
        return bool(self.identity_issuer or self.identity_pool_id)

    @property
    def resolved_identity_issuer(self) -> Optional[str]:
        if self.identity_issuer:
            return self.identity_issuer.rstrip("/")
        if self.identity_pool_id:
            return (
                f"https://cognito-idp.{self.identity_region}.amazonaws.com/"
                f"{self.identity_pool_id}"
            )
        return None

    @property
    def resolved_identity_jwks_url(self) -> Optional[str]:
        if self.identity_jwks_url:
            return self.identity_jwks_url
        issuer = self.resolved_identity_issuer
        return f"{issuer}/.well-known/jwks.json" if issuer else None

    @field_validator("share_store")
    @classmethod
    def _validate_share_store(cls, value: ShareStoreMode) -> ShareStoreMode:
        return ShareStoreMode(value)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("password_min_length")
    @classmethod
    def _validate_min_length(cls, value: int) -> int:
        if value < 1:
            raise ValueError("password_min_length must be positive")
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so tokens remain valid across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/photofilter"))
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            # Directory may already exist with different permissions (e.g., in container)
            pass
        except OSError as exc:
            logger.warning(
                "jwt_secret_dir_setup", error=str(exc), path=str(fs_root)
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
            # Write to a temp file then rename so readers never see a partial secret
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

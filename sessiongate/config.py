from __future__ import annotations

import hashlib
import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from sessiongate.logging import get_logger

logger = get_logger(__name__)


class RateLimitBackend(str, Enum):
    """Where rate limit windows are counted."""

    MEMORY = "memory"
    REDIS = "redis"


DEFAULT_PROTECTED_PREFIXES = ["/admin", "/product"]

DEFAULT_PUBLIC_ROUTES = [
    "/auth",
    "/login",
    "/register",
    "/notice",
    "/api/auth/login",
    "/api/auth/register",
    "/api/auth/verify",
    "/api/auth/refresh",
    "/api/auth/logout",
    "/api/auth/profile",
    "/api/auth/social",
    "/api/search",
]


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the session gateway."""

    database_url: str = env_field(
        "postgresql://localhost:5432/sessiongate", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    shared_fs_root: str = env_field("/srv/sessiongate", "SHARED_FS_ROOT")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic behaviors for CI; disables background maintenance.",
    )

    # Token secrets and lifetimes
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_algorithm: str = env_field("HS256", "JWT_ALGORITHM")
    refresh_token_secret: str | None = env_field(None, "REFRESH_TOKEN_SECRET")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_days: int = env_field(
        7,
        "REFRESH_TOKEN_TTL_DAYS",
        description="Expiry embedded inside the encrypted refresh token",
    )
    session_ttl_days: int = env_field(
        7, "SESSION_TTL_DAYS", description="Session row lifetime at login"
    )
    rotated_session_ttl_days: int = env_field(
        14,
        "ROTATED_SESSION_TTL_DAYS",
        description="Session row lifetime after a refresh token rotation",
    )

    # Rate limiting
    rate_limit_backend: RateLimitBackend = env_field(
        RateLimitBackend.MEMORY, "RATE_LIMIT_BACKEND"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    rate_limit_window_seconds: int = env_field(60, "RATE_LIMIT_WINDOW_SECONDS")
    rate_limit_requests: int = env_field(100, "RATE_LIMIT_REQUESTS")
    auth_rate_limit_requests: int = env_field(30, "AUTH_RATE_LIMIT_REQUESTS")
    rate_limit_sweep_seconds: int = env_field(300, "RATE_LIMIT_SWEEP_SECONDS")

    # Session maintenance
    max_sessions_per_user: int = env_field(5, "MAX_SESSIONS_PER_USER")
    suspicious_ip_session_threshold: int = env_field(
        10, "SUSPICIOUS_IP_SESSION_THRESHOLD"
    )
    suspicious_ip_keep_sessions: int = env_field(3, "SUSPICIOUS_IP_KEEP_SESSIONS")
    session_cleanup_interval_seconds: int = env_field(
        3600,
        "SESSION_CLEANUP_INTERVAL_SECONDS",
        description="Interval of the background suspicious-IP sweep; 0 disables the loop",
    )
    inactive_session_retention_hours: int = env_field(
        24, "INACTIVE_SESSION_RETENTION_HOURS"
    )

    # Request gate
    protected_prefixes: list[str] = env_field(
        DEFAULT_PROTECTED_PREFIXES, "PROTECTED_PREFIXES"
    )
    public_routes: list[str] = env_field(DEFAULT_PUBLIC_ROUTES, "PUBLIC_ROUTES")
    default_locale: str = env_field("ko", "DEFAULT_LOCALE")
    login_path: str = env_field("/auth/login", "LOGIN_PATH")
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")

    admin_role_id: str = env_field("admin", "ADMIN_ROLE_ID")
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

    @field_validator("protected_prefixes", "public_routes", "cors_allow_origins", mode="before")
    @classmethod
    def _split_csv(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("rate_limit_backend")
    @classmethod
    def _validate_rate_limit_backend(cls, value: RateLimitBackend) -> RateLimitBackend:
        return RateLimitBackend(value)

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so tokens remain valid across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/sessiongate"))
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            # Directory may already exist with different permissions (e.g., in container)
            pass
        except OSError as exc:
            logger.warning("jwt_secret_dir_setup", error=str(exc), path=str(fs_root))

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
            logger.error("jwt_secret_persist_failed", error=str(exc), path=str(secret_path))
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET env var or make SHARED_FS_ROOT writable"
            ) from exc
        return generated

    @model_validator(mode="after")
    def _derive_refresh_secret(self) -> "Settings":
        if not self.refresh_token_secret:
            # Keep the refresh key distinct from the signing key even when only
            # JWT_SECRET is configured.
            self.refresh_token_secret = hashlib.sha256(
                f"refresh:{self.jwt_secret}".encode()
            ).hexdigest()
        return self


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

from __future__ import annotations

import os
import secrets
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from zust.logging import get_logger

logger = get_logger(__name__)

ASSET_DIR = Path(__file__).resolve().parent / "assets"

# Authorization endpoints for the providers the broker knows how to talk to.
OAUTH_ENDPOINTS: dict[str, dict[str, str]] = {
    "github": {
        "auth_url": "https://github.com/login/oauth/authorize",
        "token_url": "https://github.com/login/oauth/access_token",
        "userinfo_url": "https://api.github.com/user",
        "emails_url": "https://api.github.com/user/emails",
        "scope": "read:user user:email",
    },
    "google": {
        "auth_url": "https://accounts.google.com/o/oauth2/v2/auth",
        "token_url": "https://oauth2.googleapis.com/token",
        "userinfo_url": "https://www.googleapis.com/oauth2/v2/userinfo",
        "scope": "openid email profile",
    },
}


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process configuration, built once at startup and handed to each component."""

    database_url: str = env_field("postgresql://localhost:5432/zust", "DATABASE_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")
    resource_path: str = env_field("/srv/zust/resources", "RESOURCE_PATH")
    asset_path: str = env_field(str(ASSET_DIR), "ASSET_PATH")

    secret_key: str = env_field(None, "SECRET_KEY", validate_default=True)
    jwt_issuer: str = env_field("Zust", "JWT_ISSUER")
    access_token_ttl_minutes: int = env_field(
        15, "TOKEN_EXPIRATION", description="Access token TTL in minutes", gt=0
    )
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60,
        "REFRESH_TOKEN_EXPIRATION",
        description="Refresh token TTL in minutes",
        gt=0,
    )
    token_leeway_seconds: int = env_field(30, "TOKEN_LEEWAY_SECONDS", ge=0)
    verification_ttl_hours: int = env_field(24, "VERIFICATION_TTL_HOURS", gt=0)

    max_image_mb: int = env_field(5, "MAX_IMAGE_SIZE", description="Image upload limit in MiB")
    max_video_mb: int = env_field(
        500, "MAX_VIDEO_UPLOAD", description="Video upload limit in MiB"
    )

    oauth_github_client_id: str | None = env_field(None, "GITHUB_CLIENT_ID")
    oauth_github_client_secret: str | None = env_field(None, "GITHUB_CLIENT_SECRET")
    oauth_google_client_id: str | None = env_field(None, "GOOGLE_CLIENT_ID")
    oauth_google_client_secret: str | None = env_field(None, "GOOGLE_CLIENT_SECRET")
    oauth_redirect_uri: str | None = env_field(None, "OAUTH_REDIRECT_URI")
    oauth_timeout_seconds: float = env_field(15.0, "OAUTH_TIMEOUT_SECONDS")

    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Zust", "EMAIL_FROM_NAME")

    model_config = ConfigDict(extra="ignore", frozen=True)

    @classmethod
    def from_env(cls, env_file: str = ".env") -> "Settings":
        env_file_values = dotenv_values(env_file)
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
    def max_image_bytes(self) -> int:
        return self.max_image_mb << 20

    @property
    def max_video_bytes(self) -> int:
        return self.max_video_mb << 20

    def oauth_credentials(self, provider: str) -> tuple[str | None, str | None]:
        return (
            getattr(self, f"oauth_{provider}_client_id", None),
            getattr(self, f"oauth_{provider}_client_secret", None),
        )

    @field_validator("secret_key", mode="before")
    @classmethod
    def _ensure_secret_key(cls, value: str | None, info) -> str:
        if value:
            if len(value) < 32:
                raise ValueError("SECRET_KEY must be at least 32 characters")
            return value
        # Persist a generated key so issued tokens survive restarts
        root = Path(info.data.get("resource_path") or "/srv/zust/resources")
        secret_path = root / ".secret_key"
        try:
            root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            logger.warning("secret_key_dir_setup_failed", error=str(exc), path=str(root))

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error("secret_key_read_failed", error=str(exc), path=str(secret_path))

        generated = secrets.token_urlsafe(64)
        try:
            fd = os.open(secret_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "w") as handle:
                handle.write(generated)
            logger.info("secret_key_generated", path=str(secret_path))
        except OSError as exc:
            logger.warning(
                "secret_key_persist_failed",
                error=str(exc),
                path=str(secret_path),
                message="tokens will not survive a restart",
            )
        return generated

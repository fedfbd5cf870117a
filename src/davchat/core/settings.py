"""Application settings and configuration.

This module defines all configuration options for a DavChat client.
Settings are loaded from environment variables (or a ``.env`` file) with
sensible defaults. Nothing is instantiated at import time; callers build a
``Settings`` object with :func:`load_settings` and pass it down explicitly.
"""

from __future__ import annotations

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Client settings loaded from environment variables.

    Any field can be overridden via its environment alias, a ``.env`` file,
    or by keyword when constructing the object.
    """

    # Application metadata
    app_name: str = Field(default="DavChat", alias="APP_NAME")

    # Remote WebDAV store
    webdav_url: str | None = Field(default=None, alias="WEBDAV_URL")
    webdav_username: str | None = Field(default=None, alias="WEBDAV_USERNAME")
    webdav_password: str | None = Field(default=None, alias="WEBDAV_PASSWORD")
    remote_root: str = Field(default="", alias="REMOTE_ROOT")
    messages_dir: str = Field(default="messages", alias="MESSAGES_DIR")
    files_dir: str = Field(default="files", alias="FILES_DIR")
    users_dir: str = Field(default="users", alias="USERS_DIR")
    http_timeout_seconds: float = Field(default=10.0, alias="HTTP_TIMEOUT_SECONDS")
    circuit_failure_threshold: int = Field(default=5, alias="CIRCUIT_FAILURE_THRESHOLD")
    circuit_recovery_seconds: float = Field(default=30.0, alias="CIRCUIT_RECOVERY_SECONDS")

    # Encryption
    encryption_secret: str = Field(alias="ENCRYPTION_SECRET")
    encryption_salt: str = Field(default="webdav-chat-salt", alias="ENCRYPTION_SALT")
    cipher_algorithm: str = Field(default="aes-256-cbc", alias="CIPHER_ALGORITHM")
    encrypt_file_metadata: bool = Field(default=True, alias="ENCRYPT_FILE_METADATA")

    # Synchronization
    poll_interval_ms: int = Field(default=3000, alias="POLL_INTERVAL_MS")
    send_max_retries: int = Field(default=3, alias="SEND_MAX_RETRIES")
    seen_set_max: int = Field(default=1000, alias="SEEN_SET_MAX")
    seen_set_trim: int = Field(default=500, alias="SEEN_SET_TRIM")
    cursor_skew_tolerance_ms: int = Field(
        default=5 * 60 * 1000,
        alias="CURSOR_SKEW_TOLERANCE_MS",
    )

    # Local cache
    database_url: str = Field(default="sqlite:///./davchat.db", alias="DATABASE_URL")
    sql_debug: bool = Field(default=False, alias="SQL_DEBUG")

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    error_log_path: str | None = Field(default="error.log", alias="ERROR_LOG_PATH")

    model_config = SettingsConfigDict(
        env_file=".env",
        validate_assignment=True,
        extra="ignore",
        populate_by_name=True,
    )

    @field_validator(
        "poll_interval_ms",
        "send_max_retries",
        "seen_set_max",
        "seen_set_trim",
        "circuit_failure_threshold",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("remote_root")
    @classmethod
    def _strip_slashes(cls, value: str) -> str:
        return value.strip().strip("/")

    @property
    def poll_interval_seconds(self) -> float:
        """Return the poll interval in seconds for asyncio timers."""
        return self.poll_interval_ms / 1000.0

    def remote_path(self, *parts: str) -> str:
        """Join ``parts`` below the configured remote root.

        Returns:
            A slash-separated relative path without leading or trailing slashes
        """
        segments = [self.remote_root] if self.remote_root else []
        segments.extend(part.strip("/") for part in parts if part)
        return "/".join(segments)


def load_settings(**overrides: object) -> Settings:
    """Build a ``Settings`` instance from the environment plus ``overrides``."""
    return Settings(**overrides)  # type: ignore[arg-type]

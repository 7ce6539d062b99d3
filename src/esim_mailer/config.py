# Settings - environment/.env backed configuration for the mailer.
# Created: 2026-10-19

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_CONFIG_DIR = Path.home() / ".esim-mailer"


class Settings(BaseSettings):
    """Runtime settings, read from ``ESIM_MAILER_*`` env vars or ``.env``."""

    model_config = SettingsConfigDict(
        env_prefix="ESIM_MAILER_",
        env_file=".env",
        extra="ignore",
        case_sensitive=False,
    )

    config_dir: Path = DEFAULT_CONFIG_DIR

    # ── OAuth clients ────────────────────────────────────────────────────
    # Empty means "use the IDs embedded at provisioning time".
    gmail_client_id: str = ""
    outlook_client_id: str = ""
    # Plaintext secrets, only read by the ``provision`` command.
    gmail_client_secret: str = ""
    outlook_client_secret: str = ""

    # ── Token cache ──────────────────────────────────────────────────────
    token_store: Literal["memory", "file"] = "file"
    token_cache_dir: Path | None = None

    # ── Redirect listener ────────────────────────────────────────────────
    # No port setting: it is fixed by the registered redirect URI.
    listener_host: str = "127.0.0.1"
    listener_timeout: float = Field(default=300.0, gt=0)

    strict_browser: bool = False

    # ── Token endpoint ───────────────────────────────────────────────────
    http_timeout: float = 15.0
    refresh_retries: int = Field(default=1, ge=0)
    refresh_backoff: float = Field(default=1.0, ge=0)

    log_level: str = "INFO"

    def resolved_token_cache_dir(self) -> Path:
        return self.token_cache_dir or (self.config_dir / "tokens")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the process-wide settings instance."""
    return Settings()


def get_config_dir(settings: Settings | None = None) -> Path:
    """Get/create the config directory."""
    d = (settings or get_settings()).config_dir
    d.mkdir(parents=True, exist_ok=True)
    return d

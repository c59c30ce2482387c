"""Process-wide settings resolved once from the environment."""

from __future__ import annotations

import os
import sys
from pathlib import Path

from pydantic import BaseModel, Field, field_validator

ENV_PREFIX = "SLP_TO_VIDEO_"

_TRUTHY = {"1", "true", "yes", "on"}


class Settings(BaseModel):
    """Host facts and binary overrides captured at startup.

    Core code never reads ``os.environ`` or ``sys.platform`` itself; it is
    handed a Settings instance instead.
    """

    dolphin_path: str = Field(default="")
    ffmpeg_path: str = Field(default="")
    development: bool = Field(default=False)
    platform: str = Field(default_factory=lambda: sys.platform)
    appdata: str = Field(default="")
    home: str = Field(default_factory=lambda: str(Path.home()))

    @field_validator("platform")
    @classmethod
    def normalize_platform(cls, value: str) -> str:
        v = value.strip().lower()
        if v.startswith("linux"):
            return "linux"
        return v

    @classmethod
    def from_env(cls) -> Settings:
        """Build settings from environment variables."""
        return cls(
            dolphin_path=os.getenv(ENV_PREFIX + "DOLPHIN_PATH", ""),
            ffmpeg_path=os.getenv(ENV_PREFIX + "FFMPEG_PATH", ""),
            development=os.getenv(ENV_PREFIX + "DEVELOPMENT", "").strip().lower() in _TRUTHY,
            appdata=os.getenv("APPDATA", ""),
        )


# Singleton: initialised once on first access.
_config: Settings | None = None


def get_config() -> Settings:
    """Return the global settings singleton, creating it on first access.

    Loads ``~/.config/slp-to-video/.env`` before reading env vars.
    Process environment always takes precedence over the config file.
    """
    global _config
    if _config is None:
        from .dotenv import load_dotenv

        load_dotenv()
        _config = Settings.from_env()
    return _config


def update_config(**overrides: object) -> Settings:
    """Patch the live settings."""
    global _config
    cfg = get_config()
    data = cfg.model_dump()
    data.update({k: v for k, v in overrides.items() if v is not None})
    _config = Settings(**data)
    return _config

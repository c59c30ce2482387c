"""Prerequisite checks for the conversion environment."""

from __future__ import annotations

from pydantic import BaseModel, Field

from .config import Settings, get_config
from .paths import find_dolphin_path, find_ffmpeg_path


class PrereqStatus(BaseModel):
    """Result of checking a single prerequisite."""

    name: str
    available: bool
    path: str = ""
    message: str = ""


class PrereqReport(BaseModel):
    """Aggregated prerequisite check results."""

    all_ok: bool = False
    checks: list[PrereqStatus] = Field(default_factory=list)


def check_prereqs(settings: Settings | None = None) -> PrereqReport:
    """Check that Playback Dolphin and ffmpeg can be located."""
    cfg = settings if settings is not None else get_config()
    checks: list[PrereqStatus] = []

    dolphin = find_dolphin_path(cfg)
    checks.append(PrereqStatus(
        name="dolphin",
        available=dolphin is not None,
        path=str(dolphin or ""),
        message="" if dolphin else "Playback Dolphin not found: install Slippi Launcher or set SLP_TO_VIDEO_DOLPHIN_PATH",
    ))

    ffmpeg = find_ffmpeg_path(cfg)
    checks.append(PrereqStatus(
        name="ffmpeg",
        available=ffmpeg is not None,
        path=str(ffmpeg or ""),
        message="" if ffmpeg else "FFmpeg not found: install it or set SLP_TO_VIDEO_FFMPEG_PATH",
    ))

    return PrereqReport(
        all_ok=all(c.available for c in checks),
        checks=checks,
    )

"""Locate the Playback Dolphin and ffmpeg binaries."""

from __future__ import annotations

import logging
import shutil
from pathlib import Path

from .config import Settings

logger = logging.getLogger(__name__)

BUNDLED_BIN_DIR = Path(__file__).parent / "bin"
DEVELOPMENT_DOLPHIN_DIR = Path("dolphin")

PLAYBACK_CMD = "slippi-playback"


def dolphin_binary_name(platform: str) -> str:
    if platform == "win32":
        return "Slippi Dolphin.exe"
    if platform == "darwin":
        return "Slippi Dolphin.app/Contents/MacOS/Slippi Dolphin"
    return "Slippi_Playback-x86_64.AppImage"


def ffmpeg_binary_name(platform: str) -> str:
    return "ffmpeg.exe" if platform == "win32" else "ffmpeg"


def launcher_playback_dir(settings: Settings) -> Path | None:
    """Directory where Slippi Launcher installs its playback Dolphin."""
    home = Path(settings.home)
    if settings.platform == "win32":
        if not settings.appdata:
            return None
        return Path(settings.appdata) / "Slippi Launcher" / "playback"
    if settings.platform == "darwin":
        return home / "Library" / "Application Support" / "Slippi Launcher" / "playback"
    return home / ".config" / "Slippi Launcher" / "playback"


def to_absolute_path(path: str | Path, base: str | Path | None = None) -> Path:
    """Resolve *path* against *base* (default: the current directory)."""
    p = Path(path).expanduser()
    if p.is_absolute():
        return p
    return Path(base if base is not None else Path.cwd()) / p


def _first_file(candidates: list[tuple[str, Path | None]]) -> Path | None:
    for source, candidate in candidates:
        if candidate is not None and candidate.is_file():
            logger.info("Using %s binary: %s", source, candidate)
            return candidate
    return None


def find_dolphin_path(settings: Settings) -> Path | None:
    """Return the Playback Dolphin binary, or ``None`` if none is installed.

    Checked in order: ``SLP_TO_VIDEO_DOLPHIN_PATH``, a local development
    build (development mode only), a copy bundled with this package,
    Slippi Launcher's playback install, then ``PATH``.
    """
    name = dolphin_binary_name(settings.platform)
    launcher_dir = launcher_playback_dir(settings)
    found = _first_file([
        ("env override", to_absolute_path(settings.dolphin_path) if settings.dolphin_path else None),
        ("development", to_absolute_path(DEVELOPMENT_DOLPHIN_DIR / name) if settings.development else None),
        ("bundled", BUNDLED_BIN_DIR / name),
        ("Slippi Launcher", launcher_dir / name if launcher_dir is not None else None),
    ])
    if found is not None:
        return found
    which = shutil.which(PLAYBACK_CMD)
    return Path(which) if which else None


def find_ffmpeg_path(settings: Settings) -> Path | None:
    """Return the ffmpeg binary: env override, bundled copy, then ``PATH``."""
    found = _first_file([
        ("env override", to_absolute_path(settings.ffmpeg_path) if settings.ffmpeg_path else None),
        ("bundled", BUNDLED_BIN_DIR / ffmpeg_binary_name(settings.platform)),
    ])
    if found is not None:
        return found
    which = shutil.which("ffmpeg")
    return Path(which) if which else None

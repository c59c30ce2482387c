"""Shared constants and type aliases."""

from __future__ import annotations

from collections.abc import Callable
from typing import Literal

# ── Replay timing ────────────────────────────────────────────────────────────

FRAMES_PER_SECOND = 60
FIRST_FRAME = -123  # frame indexing starts before the match begins
DEFAULT_START_PADDING_FRAMES = 120

# Exit code reported when a process or pipeline was aborted rather than exiting.
ABORTED: None = None

# ── Literal enums ────────────────────────────────────────────────────────────

InternalResolution = Literal[
    "auto",
    "1x",
    "1.5x",
    "2x",
    "720p",
    "2.5x",
    "3x",
    "1080p",
    "4x",
    "WQHD",
    "5x",
    "6x",
    "4K",
    "7x",
    "8x",
]

# ── Callbacks ────────────────────────────────────────────────────────────────

ProgressCallback = Callable[[int, int, "int | None"], None]
ExitCallback = Callable[["int | None"], None]
LineCallback = Callable[[str], None]

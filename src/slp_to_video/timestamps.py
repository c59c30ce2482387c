"""Frame and timestamp conversions used by the command line."""

from __future__ import annotations

import re
from typing import NamedTuple

from .types import FIRST_FRAME, FRAMES_PER_SECOND

_FRAME_RE = re.compile(r"^-?\d+$")
_TIMESTAMP_RE = re.compile(r"^(?:(\d+):)?(\d{1,2}):(\d{1,2}(?:\.\d+)?)$")


class Timestamp(NamedTuple):
    hours: int
    minutes: int
    seconds: float


def parse_timestamp(text: str) -> Timestamp | None:
    """Parse ``MM:SS`` or ``HH:MM:SS`` (seconds may be fractional)."""
    match = _TIMESTAMP_RE.match(text.strip())
    if match is None:
        return None
    hours = int(match.group(1) or 0)
    minutes = int(match.group(2))
    seconds = float(match.group(3))
    if minutes >= 60 or seconds >= 60:
        return None
    return Timestamp(hours, minutes, seconds)


def parse_frame_input(
    text: str,
    start_frame: int = FIRST_FRAME,
    framerate: int = FRAMES_PER_SECOND,
) -> int | None:
    """Turn a user-supplied frame number or timestamp into a frame number.

    Timestamps are relative to the first frame of the replay, so ``00:00``
    maps to *start_frame*. Returns ``None`` when *text* is neither.
    """
    text = text.strip()
    if _FRAME_RE.match(text):
        return int(text)

    ts = parse_timestamp(text)
    if ts is None:
        return None
    return round(ts.hours * 3600 + ts.minutes * 60 + ts.seconds) * framerate + start_frame


def ms_to_timestamp(ms: int) -> str:
    """Format milliseconds as ``MM:SS`` or ``HH:MM:SS``."""
    total_seconds = max(0, ms) // 1000
    hours, rest = divmod(total_seconds, 3600)
    minutes, seconds = divmod(rest, 60)
    if hours:
        return f"{hours:02d}:{minutes:02d}:{seconds:02d}"
    return f"{minutes:02d}:{seconds:02d}"

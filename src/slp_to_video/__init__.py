"""slp-to-video: render Slippi replays to video with Playback Dolphin and ffmpeg."""

from __future__ import annotations

__version__ = "0.4.0"

"""Playback Dolphin stage: working directory setup, spawn and output scraping."""

from __future__ import annotations

import configparser
import json
import logging
import re
import shutil
from collections.abc import Callable
from pathlib import Path
from typing import BinaryIO

from .process import ProcessHandle, spawn_process
from .replay import read_last_frame
from .types import FIRST_FRAME

logger = logging.getLogger(__name__)

ASSET_DIR = Path(__file__).parent / "assets"

DOLPHIN_INI_FILENAME = "Dolphin.ini"
GFX_INI_FILENAME = "GFX.ini"
GECKO_INI_FILENAME = "GALE01.ini"
INPUT_JSON_FILENAME = "input.json"

AUDIO_DUMP_FILENAME = "dspdump.wav"
VIDEO_DUMP_FILENAME = "framedump0.avi"

NO_GAME_MARKER = "[NO_GAME]"
_CURRENT_FRAME_RE = re.compile(r"\[CURRENT_FRAME\]\s+(-?\d+)")

# Internal resolution preset → GFX.ini EFBScale value.
INTERNAL_RESOLUTION_TO_EFB_SCALE: dict[str, int] = {
    "auto": 0,
    "1x": 2,
    "1.5x": 3,
    "2x": 4,
    "720p": 4,
    "2.5x": 5,
    "3x": 6,
    "1080p": 6,
    "4x": 7,
    "WQHD": 7,
    "5x": 8,
    "6x": 9,
    "4K": 9,
    "7x": 10,
    "8x": 11,
}

DEFAULT_EFB_SCALE = 4

VALID_INTERNAL_RESOLUTIONS = list(INTERNAL_RESOLUTION_TO_EFB_SCALE)


def is_valid_internal_resolution(name: str) -> bool:
    return name in INTERNAL_RESOLUTION_TO_EFB_SCALE


def efb_scale_for(name: str) -> int:
    """Return the EFBScale for a preset, falling back to the 720p scale."""
    return INTERNAL_RESOLUTION_TO_EFB_SCALE.get(name, DEFAULT_EFB_SCALE)


def _case_preserving_parser() -> configparser.ConfigParser:
    parser = configparser.ConfigParser(interpolation=None)
    parser.optionxform = str  # Dolphin keys are case sensitive
    return parser


class PlaybackLauncher:
    """Prepares a working directory and spawns Playback Dolphin against it.

    Dolphin writes its frame and audio dumps into ``workdir`` (see
    :attr:`video_dump_file` and :attr:`audio_dump_file`) and reports
    progress on stdout as ``[CURRENT_FRAME] <n>`` lines. It does not quit
    by itself once the queue is exhausted; it prints ``[NO_GAME]`` and
    waits, so the launcher stops it.
    """

    def __init__(
        self,
        *,
        dolphin_path: str | Path,
        slp_input_file: str | Path,
        workdir: str | Path,
        melee_iso: str | Path,
        bitrate: int,
        internal_resolution: str,
        enable_widescreen: bool = False,
        timeout: float | None = None,
        start_frame: int | None = None,
        end_frame: int | None = None,
        stdout: BinaryIO | None = None,
        stderr: BinaryIO | None = None,
        metadata_reader: Callable[[Path], int | None] = read_last_frame,
    ) -> None:
        self.dolphin_path = Path(dolphin_path)
        self.slp_input_file = Path(slp_input_file)
        self.workdir = Path(workdir)
        self.melee_iso = Path(melee_iso)
        self.bitrate = bitrate
        self.efb_scale = efb_scale_for(internal_resolution)
        self.enable_widescreen = enable_widescreen
        self.timeout = timeout
        self.start_frame = start_frame
        self.end_frame = end_frame
        self.stdout = stdout
        self.stderr = stderr

        if not is_valid_internal_resolution(internal_resolution):
            logger.warning(
                "Unknown internal resolution %r, using EFBScale %d",
                internal_resolution,
                DEFAULT_EFB_SCALE,
            )

        self.user_dir = self.workdir / "User"
        self.input_json_path = self.workdir / INPUT_JSON_FILENAME
        self.audio_dump_file = self.workdir / AUDIO_DUMP_FILENAME
        self.video_dump_file = self.workdir / VIDEO_DUMP_FILENAME

        self.progress_start = start_frame if start_frame is not None else FIRST_FRAME
        if end_frame is not None:
            self.progress_end: int | None = end_frame + 1
        else:
            self.progress_end = metadata_reader(self.slp_input_file)

        self.process: ProcessHandle | None = None

    def input_descriptor(self) -> dict:
        """Build the ``input.json`` queue document Dolphin is launched with."""
        entry: dict = {"path": str(self.slp_input_file)}
        if self.start_frame is not None:
            entry["startFrame"] = self.start_frame
        if self.end_frame is not None:
            entry["endFrame"] = self.end_frame
        return {"mode": "queue", "queue": [entry]}

    def prepare_workdir(self) -> None:
        """Write the user config directory and input descriptor into the workdir."""
        config_dir = self.user_dir / "Config"
        config_dir.mkdir(parents=True, exist_ok=True)

        shutil.copyfile(ASSET_DIR / DOLPHIN_INI_FILENAME, config_dir / DOLPHIN_INI_FILENAME)

        gfx = _case_preserving_parser()
        gfx.read(ASSET_DIR / GFX_INI_FILENAME, encoding="utf-8")
        if not gfx.has_section("Settings"):
            gfx.add_section("Settings")
        gfx["Settings"]["BitrateKbps"] = str(self.bitrate)
        gfx["Settings"]["EFBScale"] = str(self.efb_scale)
        with (config_dir / GFX_INI_FILENAME).open("w", encoding="utf-8", newline="\r\n") as fh:
            gfx.write(fh)

        if self.enable_widescreen:
            settings_dir = self.user_dir / "GameSettings"
            settings_dir.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(ASSET_DIR / GECKO_INI_FILENAME, settings_dir / GECKO_INI_FILENAME)

        self.input_json_path.write_text(json.dumps(self.input_descriptor()), encoding="utf-8")

    def command_args(self) -> list[str]:
        return [
            "-u", str(self.user_dir),
            "--output-directory", str(self.workdir),
            "-i", str(self.input_json_path),
            "-e", str(self.melee_iso),
            "-b",
            "--cout",
            "--hide-seekbar",
        ]

    def _scrape_stdout(self, process: ProcessHandle, line: str) -> None:
        if line.startswith(NO_GAME_MARKER):
            logger.info("Playback reported no game left, stopping Dolphin")
            process.kill()
            return
        match = _CURRENT_FRAME_RE.search(line)
        if match:
            process.emit_progress(int(match.group(1)), self.progress_start, self.progress_end)

    async def spawn(self) -> ProcessHandle:
        """Prepare the workdir and start Dolphin."""
        self.prepare_workdir()
        process = await spawn_process(
            self.dolphin_path,
            self.command_args(),
            name="dolphin",
            cwd=self.workdir,
            timeout=self.timeout,
            stdout_sink=self.stdout,
            stderr_sink=self.stderr,
        )
        process.on_stdout_line(lambda line: self._scrape_stdout(process, line))
        self.process = process
        return process

"""ffmpeg stage: mux the Dolphin dumps into the output file."""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import BinaryIO

from .process import ProcessHandle, spawn_process

logger = logging.getLogger(__name__)

_OUT_TIME_RE = re.compile(r"out_time_us=(\d+)")
_PROGRESS_END_RE = re.compile(r"progress=end")
_DURATION_RE = re.compile(r"Duration:\s*(?:(\d+):)?(\d+):(\d+(?:\.\d+)?)")


def parse_duration_ms(line: str) -> int | None:
    """Extract an input ``Duration: [HH:]MM:SS.ff`` from an ffmpeg log line."""
    match = _DURATION_RE.search(line)
    if match is None:
        return None
    hours = int(match.group(1) or 0)
    minutes = int(match.group(2))
    seconds = float(match.group(3))
    return round((hours * 3600 + minutes * 60 + seconds) * 1000)


class EncoderProgressParser:
    """Tracks the ffmpeg progress window in milliseconds.

    ``end`` is first estimated from the longest input ``Duration`` on stderr,
    then fixed to the last observed ``out_time`` once ``progress=end``
    arrives. After that, duration lines no longer change it.
    """

    def __init__(self, start_cutoff_seconds: float | None = None) -> None:
        self.start = 0
        self.current = 0
        self.end: int | None = None
        self.finalized = False
        self._cutoff_ms = round((start_cutoff_seconds or 0) * 1000)

    def feed_stdout(self, line: str) -> bool:
        """Consume a ``-progress`` line. Returns True when progress should be emitted."""
        match = _OUT_TIME_RE.search(line)
        if match is not None:
            self.current = int(match.group(1)) // 1000
            return True
        if _PROGRESS_END_RE.search(line):
            self.end = self.current
            self.finalized = True
            return True
        return False

    def feed_stderr(self, line: str) -> bool:
        """Consume an ffmpeg log line. Returns True when the window end changed."""
        if self.finalized:
            return False
        duration = parse_duration_ms(line)
        if duration is None:
            return False
        # -ss trims the lead-in, so the output is shorter than the inputs.
        duration = max(0, duration - self._cutoff_ms)
        if self.end is not None and duration <= self.end:
            return False
        self.end = duration
        return True


class EncoderLauncher:
    """Builds the ffmpeg command line and spawns it once the dumps exist."""

    def __init__(
        self,
        *,
        ffmpeg_path: str | Path,
        video_file: str | Path,
        audio_file: str | Path,
        output_file: str | Path,
        volume: float = 1.0,
        start_cutoff_seconds: float | None = None,
        timeout: float | None = None,
        stdout: BinaryIO | None = None,
        stderr: BinaryIO | None = None,
    ) -> None:
        self.ffmpeg_path = Path(ffmpeg_path)
        self.video_file = Path(video_file)
        self.audio_file = Path(audio_file)
        self.output_file = Path(output_file)
        self.volume = volume
        self.start_cutoff_seconds = start_cutoff_seconds
        self.timeout = timeout
        self.stdout = stdout
        self.stderr = stderr
        self.parser = EncoderProgressParser(start_cutoff_seconds)
        self.process: ProcessHandle | None = None

    def command_args(self) -> list[str]:
        args = [
            "-i", str(self.video_file),
            "-i", str(self.audio_file),
            "-y",
            "-progress", "pipe:1",
        ]
        if self.output_file.suffix.lower() == self.video_file.suffix.lower():
            args.extend(["-c:v", "copy"])  # same container, skip re-encoding video
        if self.volume != 1:
            args.extend(["-filter:a", f"volume={self.volume}"])
        if self.start_cutoff_seconds is not None and self.start_cutoff_seconds > 0:
            args.extend(["-ss", f"{self.start_cutoff_seconds:.3f}"])
        args.append(str(self.output_file))
        return args

    def _emit(self, process: ProcessHandle) -> None:
        process.emit_progress(self.parser.current, self.parser.start, self.parser.end)

    def _scrape_stdout(self, process: ProcessHandle, line: str) -> None:
        if self.parser.feed_stdout(line):
            self._emit(process)

    def _scrape_stderr(self, line: str) -> None:
        if self.parser.feed_stderr(line):
            logger.debug("Encoder duration estimate: %sms", self.parser.end)

    async def spawn(self) -> ProcessHandle:
        process = await spawn_process(
            self.ffmpeg_path,
            self.command_args(),
            name="ffmpeg",
            timeout=self.timeout,
            stdout_sink=self.stdout,
            stderr_sink=self.stderr,
        )
        process.on_stdout_line(lambda line: self._scrape_stdout(process, line))
        process.on_stderr_line(self._scrape_stderr)
        self.process = process
        return process

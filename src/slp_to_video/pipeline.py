"""Coordinates the Dolphin and ffmpeg processes of one replay conversion.

This module is meant to be driven by other programs as well as by the CLI,
so it never prints, exits, or touches the environment directly.

State machine::

    IDLE → PLAYBACK_RUNNING → ENCODING_RUNNING → DONE
                            ↘ FAILED
    (any non-terminal state) → KILLED

``done`` fires exactly once, on the first terminal transition, with the
encoder's exit code (DONE), Dolphin's exit code (FAILED) or ``None`` (KILLED).
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import signal
import time
from collections.abc import Callable
from enum import Enum
from pathlib import Path

from .config import Settings, get_config
from .encoder import EncoderLauncher
from .errors import BinaryNotFoundError
from .events import EventChannel
from .models.options import ConversionOptions
from .paths import find_dolphin_path, find_ffmpeg_path, to_absolute_path
from .playback import PlaybackLauncher
from .process import ProcessHandle
from .replay import read_last_frame
from .types import ABORTED, FIRST_FRAME, FRAMES_PER_SECOND, ExitCallback, ProgressCallback

logger = logging.getLogger(__name__)

PathResolver = Callable[[Settings], "Path | None"]


class PipelineState(str, Enum):
    """Conversion lifecycle states."""

    IDLE = "idle"
    PLAYBACK_RUNNING = "playback_running"
    ENCODING_RUNNING = "encoding_running"
    DONE = "done"
    FAILED = "failed"
    KILLED = "killed"


TERMINAL_STATES = frozenset({PipelineState.DONE, PipelineState.FAILED, PipelineState.KILLED})


def compute_start_padding(
    start_frame: int | None,
    padding_frames: int,
) -> tuple[int | None, float | None]:
    """Return ``(playback_start_frame, start_cutoff_seconds)``.

    Dolphin starts rendering up to *padding_frames* before the requested
    frame (never before :data:`FIRST_FRAME`) and ffmpeg trims that lead-in
    back out of the final video.
    """
    if start_frame is None:
        return None, None
    effective = max(FIRST_FRAME, start_frame - padding_frames)
    cutoff = max(0, start_frame - effective) / FRAMES_PER_SECOND
    return effective, cutoff


class ConversionPipeline:
    """One playback → encode run.

    Construct it, register observers, then ``await start()`` and
    ``await wait()``. Construction fails fast with
    :class:`~slp_to_video.errors.BinaryNotFoundError` when a binary cannot
    be located; nothing is spawned in that case.
    """

    def __init__(
        self,
        options: ConversionOptions,
        *,
        settings: Settings | None = None,
        dolphin_resolver: PathResolver = find_dolphin_path,
        ffmpeg_resolver: PathResolver = find_ffmpeg_path,
        metadata_reader: Callable[[Path], int | None] = read_last_frame,
    ) -> None:
        self.options = options
        self._created_at = time.monotonic()
        settings = settings if settings is not None else get_config()

        self.dolphin_path = self._resolve(options.dolphin_path, dolphin_resolver, settings, "playback dolphin")
        self.ffmpeg_path = self._resolve(options.ffmpeg_path, ffmpeg_resolver, settings, "ffmpeg")

        self.playback_start_frame, self.start_cutoff_seconds = compute_start_padding(
            options.start_frame, options.start_padding_frames
        )

        self.playback = PlaybackLauncher(
            dolphin_path=self.dolphin_path,
            slp_input_file=options.input_file,
            workdir=options.workdir,
            melee_iso=options.melee_iso,
            bitrate=options.bitrate,
            internal_resolution=options.internal_resolution,
            enable_widescreen=options.enable_widescreen,
            timeout=options.dolphin_timeout,
            start_frame=self.playback_start_frame,
            end_frame=options.end_frame,
            stdout=options.stdout,
            stderr=options.stderr,
            metadata_reader=metadata_reader,
        )
        self.encoder = EncoderLauncher(
            ffmpeg_path=self.ffmpeg_path,
            video_file=self.playback.video_dump_file,
            audio_file=self.playback.audio_dump_file,
            output_file=options.output_filename,
            volume=options.volume,
            start_cutoff_seconds=self.start_cutoff_seconds,
            timeout=options.ffmpeg_timeout,
            stdout=options.stdout,
            stderr=options.stderr,
        )

        self.state = PipelineState.IDLE
        self.exit_code: int | None = None
        # "dolphin" or "ffmpeg" once the pipeline is FAILED.
        self.failed_stage: str | None = None
        self._killed = False
        self._done = False
        self._timer: asyncio.TimerHandle | None = None
        self._done_future: asyncio.Future[int | None] | None = None
        self._playback_process: ProcessHandle | None = None
        self._encoder_process: ProcessHandle | None = None

        self._playback_progress = EventChannel("playback:progress")
        self._playback_exit = EventChannel("playback:exit")
        self._encoder_progress = EventChannel("encoder:progress")
        self._encoder_exit = EventChannel("encoder:exit")
        self._done_channel = EventChannel("done")

    @staticmethod
    def _resolve(
        explicit: str | None,
        resolver: PathResolver,
        settings: Settings,
        label: str,
    ) -> Path:
        if explicit:
            # A bare command name is looked up on PATH.
            path = to_absolute_path(explicit)
            if path.is_file():
                return path
            on_path = shutil.which(explicit)
            if on_path is None:
                raise BinaryNotFoundError(label)
            return Path(on_path)
        found = resolver(settings)
        if found is None:
            raise BinaryNotFoundError(label)
        return found

    # ── observers ────────────────────────────────────────────────────────

    def on_playback_progress(self, callback: ProgressCallback) -> None:
        self._playback_progress.add(callback)

    def on_playback_exit(self, callback: ExitCallback) -> None:
        self._playback_exit.add(callback)

    def on_encoder_progress(self, callback: ProgressCallback) -> None:
        self._encoder_progress.add(callback)

    def on_encoder_exit(self, callback: ExitCallback) -> None:
        self._encoder_exit.add(callback)

    def on_done(self, callback: ExitCallback) -> None:
        self._done_channel.add(callback)

    # ── lifecycle ────────────────────────────────────────────────────────

    @property
    def done(self) -> bool:
        return self._done

    @property
    def killed(self) -> bool:
        return self._killed

    def _future(self) -> asyncio.Future[int | None]:
        if self._done_future is None:
            self._done_future = asyncio.get_running_loop().create_future()
            if self._done:
                self._done_future.set_result(self.exit_code)
        return self._done_future

    async def start(self) -> None:
        """Spawn Dolphin and arm the overall timeout. A no-op once killed."""
        if self.state is not PipelineState.IDLE:
            return
        self._future()

        if self.options.timeout is not None:
            remaining = self.options.timeout - (time.monotonic() - self._created_at)
            self._timer = asyncio.get_running_loop().call_later(max(0.0, remaining), self._on_timeout)

        self.state = PipelineState.PLAYBACK_RUNNING
        try:
            process = await self.playback.spawn()
        except BaseException:
            self._cancel_timer()
            if not self._done:
                self.state = PipelineState.IDLE
            raise
        self._playback_process = process
        process.on_progress(self._playback_progress.emit)
        process.on_exit(self._handle_playback_exit)
        if self._killed:
            # kill() landed while the spawn was in flight.
            process.kill()

    async def wait(self) -> int | None:
        """Wait for the terminal ``done`` event and return its exit code."""
        return await asyncio.shield(self._future())

    async def run(self) -> int | None:
        await self.start()
        return await self.wait()

    def kill(self, sig: int = signal.SIGTERM) -> None:
        """Abort the conversion. Safe to call any number of times."""
        if self._done:
            return
        logger.warning("Conversion killed")
        self._killed = True
        self._finish(PipelineState.KILLED, ABORTED)
        if self._playback_process is not None:
            self._playback_process.kill(sig)
        if self._encoder_process is not None:
            self._encoder_process.kill(sig)

    # ── internals ────────────────────────────────────────────────────────

    def _on_timeout(self) -> None:
        self._timer = None
        logger.warning("Conversion exceeded its %.1fs timeout", self.options.timeout)
        self.kill()

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _finish(self, state: PipelineState, code: int | None, failed_stage: str | None = None) -> None:
        if self._done:
            return
        self._done = True
        self.state = state
        self.failed_stage = failed_stage
        self.exit_code = code
        self._cancel_timer()
        logger.info("Conversion %s with code %s", state.value, code)
        self._done_channel.emit(code)
        if self._done_future is not None and not self._done_future.done():
            self._done_future.set_result(code)

    def _handle_playback_exit(self, code: int | None) -> None:
        self._playback_exit.emit(code)
        if code != 0:
            self._finish(PipelineState.FAILED, code, "dolphin")
            return
        if self._killed:
            return
        task = asyncio.create_task(self._start_encoder(), name="ffmpeg-spawn")
        task.add_done_callback(self._on_encoder_spawn_done)

    async def _start_encoder(self) -> None:
        if self._killed:
            return
        self.state = PipelineState.ENCODING_RUNNING
        process = await self.encoder.spawn()
        self._encoder_process = process
        process.on_progress(self._encoder_progress.emit)
        process.on_exit(self._handle_encoder_exit)
        if self._killed:
            process.kill()

    def _on_encoder_spawn_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Could not start ffmpeg: %s", exc)
            self._finish(PipelineState.FAILED, None, "ffmpeg")

    def _handle_encoder_exit(self, code: int | None) -> None:
        self._encoder_exit.emit(code)
        self._finish(PipelineState.DONE, code)


async def convert(options: ConversionOptions, **kwargs) -> int | None:
    """Run a whole conversion and return the final exit code (``None`` if aborted)."""
    pipeline = ConversionPipeline(options, **kwargs)
    try:
        return await pipeline.run()
    except asyncio.CancelledError:
        pipeline.kill()
        raise

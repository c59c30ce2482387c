"""Command line entry point.

This is the only module that prints to the terminal or exits the program.
"""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from pathlib import Path
from typing import TextIO

import typer

from .config import get_config, update_config
from .errors import ConfigurationError, InvalidFrameError, describe_exit
from .models.options import ConversionOptions
from .paths import to_absolute_path
from .pipeline import ConversionPipeline, PipelineState
from .playback import VALID_INTERNAL_RESOLUTIONS, is_valid_internal_resolution
from .timestamps import ms_to_timestamp, parse_frame_input
from .types import DEFAULT_START_PADDING_FRAMES
from .workdir import create_workdir, remove_workdir

logger = logging.getLogger(__name__)

app = typer.Typer(add_completion=False)

_DEFAULTS = ConversionOptions()


class LoadingMessage:
    """Prints ``message.``, ``message..``, ``message...`` until stopped."""

    def __init__(self, message: str, stream: TextIO, interval: float = 0.5) -> None:
        self.message = message
        self.stream = stream
        self.interval = interval
        self._task: asyncio.Task | None = None

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run())

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None
            self.stream.write("\r" + " " * (len(self.message) + 4) + "\r")
            self.stream.flush()

    @property
    def running(self) -> bool:
        return self._task is not None

    async def _run(self) -> None:
        dots = 0
        while True:
            dots = dots % 3 + 1
            self.stream.write(f"\r{self.message}{'.' * dots}   ")
            self.stream.flush()
            await asyncio.sleep(self.interval)


def format_frame_progress(current: int, start: int, end: int | None) -> str:
    done = current - start
    if end is None:
        return f"rendering frames: ??.?% ({done}/?)    "
    total = end - start
    percent = done / total * 100 if total > 0 else 100.0
    return f"rendering frames: {percent:04.1f}% ({done}/{total})"


def format_encoder_progress(current_ms: int, end_ms: int | None) -> str:
    if end_ms is None or end_ms <= 0:
        return f"rendering output file: ??.?% ({ms_to_timestamp(current_ms)})"
    percent = min(100.0, current_ms / end_ms * 100)
    return f"rendering output file: {percent:04.1f}% ({ms_to_timestamp(current_ms)})"


def _frame_option(which: str, value: str | None) -> int | None:
    if value is None:
        return None
    frame = parse_frame_input(value)
    if frame is None:
        raise InvalidFrameError(which, value)
    return frame


def _check_readable(path: Path) -> None:
    if not path.is_file():
        raise ConfigurationError(f"file not found: {path}")
    if not os.access(path, os.R_OK):
        raise ConfigurationError(f"file not readable: {path}")


async def _run_pipeline(pipeline: ConversionPipeline, verbose: bool) -> int | None:
    out = sys.stdout
    loading = LoadingMessage("opening playback dolphin", out)
    if not verbose:
        loading.start()

        def on_playback_progress(current: int, start: int, end: int | None) -> None:
            loading.stop()
            out.write("\r" + format_frame_progress(current, start, end))
            out.flush()

        def on_encoder_progress(current: int, start: int, end: int | None) -> None:
            out.write("\r" + format_encoder_progress(current, end))
            out.flush()

        pipeline.on_playback_progress(on_playback_progress)
        pipeline.on_encoder_progress(on_encoder_progress)

    def on_playback_exit(code: int | None) -> None:
        loading.stop()
        if not verbose:
            out.write("\n")
        if pipeline.killed:
            return
        if code != 0:
            typer.echo(describe_exit("dolphin", code), err=True)
            return
        typer.echo("dolphin process finished")

    def on_encoder_exit(code: int | None) -> None:
        if not verbose:
            out.write("\n")
        if code != 0:
            typer.echo(describe_exit("ffmpeg", code), err=True)
        else:
            typer.echo("done!")

    pipeline.on_playback_exit(on_playback_exit)
    pipeline.on_encoder_exit(on_encoder_exit)

    try:
        return await pipeline.run()
    finally:
        loading.stop()
        # Never leave Dolphin or ffmpeg orphaned, including on Ctrl-C.
        pipeline.kill()


@app.command()
def main(
    slp_file: Path = typer.Argument(..., help="the .slp replay to convert"),
    iso: Path = typer.Option(Path(_DEFAULTS.melee_iso), "--iso", "-i", help="path to the Melee ISO"),
    timeout: float | None = typer.Option(
        None, "--timeout", "-m", help="maximum number of seconds the overall process is allowed to run"
    ),
    output: Path = typer.Option(Path(_DEFAULTS.output_filename), "--output", "-o", help="name of the output file"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="enable extra output"),
    widescreen: bool = typer.Option(False, "--widescreen", "-w", help="enable widescreen resolution (16:9)"),
    start: str | None = typer.Option(
        None, "--from", "-f", help="frame to start the replay on; also accepts a MM:SS timestamp"
    ),
    end: str | None = typer.Option(
        None, "--to", "-t", help="frame to end the replay on; also accepts a MM:SS timestamp"
    ),
    volume: float = typer.Option(_DEFAULTS.volume, "--volume", "-V", min=0, help="volume multiplier for the output file"),
    dolphin_path: Path | None = typer.Option(None, "--dolphin-path", "-d", help="path of the Playback Dolphin binary"),
    ffmpeg_path: Path | None = typer.Option(None, "--ffmpeg-path", "-p", help="path to the ffmpeg binary"),
    dolphin_timeout: float | None = typer.Option(
        None, "--dolphin-timeout", help="maximum number of seconds the Dolphin process is allowed to run"
    ),
    ffmpeg_timeout: float | None = typer.Option(
        None, "--ffmpeg-timeout", help="maximum number of seconds the ffmpeg process is allowed to run"
    ),
    bitrate: int = typer.Option(_DEFAULTS.bitrate, "--bitrate", "-b", min=1, help="bitrate used by Dolphin for the dumped frames"),
    internal_resolution: str = typer.Option(
        _DEFAULTS.internal_resolution,
        "--internal-resolution",
        "-I",
        help=f"internal resolution option ({', '.join(VALID_INTERNAL_RESOLUTIONS)})",
    ),
    padding: int = typer.Option(
        DEFAULT_START_PADDING_FRAMES, "--padding", min=0, help="frames rendered before --from and trimmed from the output"
    ),
    development: bool = typer.Option(False, "--dev", hidden=True, help="keep the workdir for inspection"),
) -> None:
    """Converts SLP files to video files."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    settings = get_config()
    if development:
        settings = update_config(development=True)

    if not is_valid_internal_resolution(internal_resolution):
        typer.echo(
            f"invalid internal resolution {internal_resolution!r}. "
            f"Available: {', '.join(VALID_INTERNAL_RESOLUTIONS)}",
            err=True,
        )
        raise typer.Exit(code=2)

    workdir: Path | None = None
    try:
        input_file = to_absolute_path(slp_file)
        melee_iso = to_absolute_path(iso)
        _check_readable(input_file)
        _check_readable(melee_iso)
        start_frame = _frame_option("start", start)
        end_frame = _frame_option("end", end)

        workdir = create_workdir(settings.development)
        options = ConversionOptions.with_defaults(
            input_file=str(input_file),
            workdir=str(workdir),
            melee_iso=str(melee_iso),
            dolphin_path=str(to_absolute_path(dolphin_path)) if dolphin_path else None,
            ffmpeg_path=str(to_absolute_path(ffmpeg_path)) if ffmpeg_path else None,
            output_filename=str(to_absolute_path(output)),
            internal_resolution=internal_resolution,
            enable_widescreen=widescreen,
            start_frame=start_frame,
            end_frame=end_frame,
            start_padding_frames=padding,
            volume=volume,
            bitrate=bitrate,
            timeout=timeout,
            dolphin_timeout=dolphin_timeout,
            ffmpeg_timeout=ffmpeg_timeout,
            stdout=sys.stdout.buffer if verbose else None,
            stderr=sys.stderr.buffer if verbose else None,
        )
        pipeline = ConversionPipeline(options, settings=settings)

        if verbose:
            typer.echo(f"workdir: {workdir}")
            typer.echo(f"slp file: {input_file}")
            typer.echo(f"dolphin: {pipeline.dolphin_path}")
            typer.echo(f"iso: {melee_iso}")
            typer.echo(f"start frame: {start_frame}")
            typer.echo(f"end frame: {end_frame}")
            typer.echo(f"ffmpeg: {pipeline.ffmpeg_path}")

        try:
            code = asyncio.run(_run_pipeline(pipeline, verbose))
        except KeyboardInterrupt:
            typer.echo("\ninterrupted", err=True)
            raise typer.Exit(code=130)
    except (ConfigurationError, ValueError) as exc:
        typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(code=1)
    finally:
        typer.echo("cleaning up...")
        remove_workdir(workdir, settings.development)

    if pipeline.state is PipelineState.KILLED:
        typer.echo("conversion aborted", err=True)
        raise typer.Exit(code=1)
    if code != 0:
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()

"""Conversion tools: convert, start/poll/cancel background jobs, prereqs."""

from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path
from typing import Annotated

from fastmcp import FastMCP
from mcp.types import ToolAnnotations
from pydantic import Field

from ..config import get_config
from ..errors import InvalidFrameError, StageFailedError, make_tool_error
from ..jobs import JobStatus, create_job, get_job, update_job
from ..models.options import ConversionOptions
from ..models.results import ConversionResult
from ..paths import to_absolute_path
from ..pipeline import ConversionPipeline, PipelineState
from ..prereqs import check_prereqs
from ..process import ProgressWindow
from ..timestamps import parse_frame_input
from ..types import InternalResolution
from ..workdir import create_workdir, remove_workdir

logger = logging.getLogger(__name__)
convert_server = FastMCP("convert")

# Prevent background conversion tasks from being garbage-collected mid-execution.
_background_tasks: set[asyncio.Task] = set()

SlpFile = Annotated[str, Field(min_length=1, description="Path to the .slp replay")]
MeleeIso = Annotated[str, Field(min_length=1, description="Path to the Melee 1.02 ISO")]
OutputFile = Annotated[str, Field(min_length=1, description="Destination video file")]
FrameInput = Annotated[
    str | None,
    Field(description="Frame number or MM:SS / HH:MM:SS timestamp"),
]


def _frame(which: str, value: str | None) -> int | None:
    if value is None:
        return None
    frame = parse_frame_input(value)
    if frame is None:
        raise InvalidFrameError(which, value)
    return frame


def _build_pipeline(
    *,
    slp_file: str,
    iso: str,
    output: str,
    workdir: Path,
    start: str | None,
    end: str | None,
    widescreen: bool,
    internal_resolution: str,
    volume: float | None,
    timeout: float | None,
) -> ConversionPipeline:
    input_file = to_absolute_path(slp_file)
    melee_iso = to_absolute_path(iso)
    for path in (input_file, melee_iso):
        if not path.is_file():
            raise FileNotFoundError(f"No such file: {path}")

    options = ConversionOptions.with_defaults(
        input_file=str(input_file),
        melee_iso=str(melee_iso),
        output_filename=str(to_absolute_path(output)),
        workdir=str(workdir),
        start_frame=_frame("start", start),
        end_frame=_frame("end", end),
        enable_widescreen=widescreen,
        internal_resolution=internal_resolution,
        volume=volume,
        timeout=timeout,
    )
    return ConversionPipeline(options)


def _result(pipeline: ConversionPipeline, elapsed: float) -> dict:
    code = pipeline.exit_code
    if pipeline.state is PipelineState.DONE and code == 0:
        return ConversionResult(
            input_file=pipeline.options.input_file,
            output_file=pipeline.options.output_filename,
            success=True,
            exit_code=code,
            duration_seconds=round(elapsed, 2),
            message="Conversion complete",
        ).model_dump()
    if pipeline.state is PipelineState.KILLED:
        stage = "conversion"
    else:
        stage = pipeline.failed_stage or "ffmpeg"
    return make_tool_error(StageFailedError(stage, code))


@convert_server.tool(annotations=ToolAnnotations(readOnlyHint=False, openWorldHint=False))
async def slp_convert(
    slp_file: SlpFile,
    iso: MeleeIso,
    output: OutputFile = "output.avi",
    start: FrameInput = None,
    end: FrameInput = None,
    widescreen: Annotated[bool, Field(description="Render in 16:9")] = False,
    internal_resolution: Annotated[InternalResolution, Field(description="Dolphin internal resolution")] = "720p",
    volume: Annotated[float | None, Field(ge=0, description="Output volume multiplier")] = None,
    timeout: Annotated[float | None, Field(gt=0, description="Overall timeout in seconds")] = None,
) -> dict:
    """Convert a replay to video (blocking: waits for completion).

    For long replays, prefer ``slp_convert_start`` + ``slp_convert_poll``.

    Returns:
        ConversionResult with the output path and duration.
    """
    workdir: Path | None = None
    development = get_config().development
    try:
        workdir = create_workdir(development)
        pipeline = _build_pipeline(
            slp_file=slp_file, iso=iso, output=output, workdir=workdir,
            start=start, end=end, widescreen=widescreen,
            internal_resolution=internal_resolution, volume=volume, timeout=timeout,
        )
        start_time = time.monotonic()
        try:
            await pipeline.run()
        except asyncio.CancelledError:
            pipeline.kill()
            raise
        return _result(pipeline, time.monotonic() - start_time)
    except Exception as exc:
        return make_tool_error(exc)
    finally:
        remove_workdir(workdir, development)


@convert_server.tool(annotations=ToolAnnotations(readOnlyHint=False, openWorldHint=False))
async def slp_convert_start(
    slp_file: SlpFile,
    iso: MeleeIso,
    output: OutputFile = "output.avi",
    start: FrameInput = None,
    end: FrameInput = None,
    widescreen: Annotated[bool, Field(description="Render in 16:9")] = False,
    internal_resolution: Annotated[InternalResolution, Field(description="Dolphin internal resolution")] = "720p",
    volume: Annotated[float | None, Field(ge=0, description="Output volume multiplier")] = None,
    timeout: Annotated[float | None, Field(gt=0, description="Overall timeout in seconds")] = None,
) -> dict:
    """Start a background conversion and return immediately with a job ID.

    Poll progress with ``slp_convert_poll``; stop it with ``slp_convert_cancel``.
    """
    development = get_config().development
    workdir: Path | None = None
    try:
        workdir = create_workdir(development)
        pipeline = _build_pipeline(
            slp_file=slp_file, iso=iso, output=output, workdir=workdir,
            start=start, end=end, widescreen=widescreen,
            internal_resolution=internal_resolution, volume=volume, timeout=timeout,
        )
    except Exception as exc:
        remove_workdir(workdir, development)
        return make_tool_error(exc)

    job = create_job(pipeline.options.input_file, pipeline.options.output_filename)
    job.pipeline = pipeline
    job_id = job.job_id

    pipeline.on_playback_progress(
        lambda current, first, last: update_job(
            job_id, playback=ProgressWindow(start=first, current=current, end=last)
        )
    )
    pipeline.on_encoder_progress(
        lambda current, first, last: update_job(
            job_id, encoder=ProgressWindow(start=first, current=current, end=last)
        )
    )

    async def _convert_background():
        start_time = time.monotonic()
        try:
            update_job(job_id, status=JobStatus.RUNNING)
            code = await pipeline.run()
            elapsed = round(time.monotonic() - start_time, 2)
            if pipeline.state is PipelineState.KILLED:
                update_job(job_id, status=JobStatus.CANCELLED, duration_seconds=elapsed)
            elif pipeline.state is PipelineState.DONE and code == 0:
                update_job(job_id, status=JobStatus.COMPLETED, exit_code=code, duration_seconds=elapsed)
            else:
                update_job(
                    job_id,
                    status=JobStatus.FAILED,
                    exit_code=code,
                    error=_result(pipeline, elapsed)["error"],
                    duration_seconds=elapsed,
                )
        except asyncio.CancelledError:
            pipeline.kill()
            update_job(job_id, status=JobStatus.CANCELLED)
            raise
        except Exception as exc:
            update_job(
                job_id,
                status=JobStatus.FAILED,
                error=str(exc),
                duration_seconds=round(time.monotonic() - start_time, 2),
            )
        finally:
            remove_workdir(workdir, development)

    task = asyncio.create_task(_convert_background())
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return {
        "job_id": job_id,
        "input_file": job.input_file,
        "status": "running",
        "message": "Conversion started in background: poll with slp_convert_poll",
    }


@convert_server.tool(annotations=ToolAnnotations(readOnlyHint=True, openWorldHint=False))
async def slp_convert_poll(
    job_id: Annotated[str, Field(description="Job ID from slp_convert_start")],
) -> dict:
    """Check the status and per-stage progress of a background conversion."""
    try:
        job = get_job(job_id)
        if job is None:
            return make_tool_error(KeyError(f"Job not found: {job_id}"))
        return job.to_dict()
    except Exception as exc:
        return make_tool_error(exc)


@convert_server.tool(annotations=ToolAnnotations(readOnlyHint=False, openWorldHint=False))
async def slp_convert_cancel(
    job_id: Annotated[str, Field(description="Job ID from slp_convert_start")],
) -> dict:
    """Cancel a background conversion. The partial output file is left as is."""
    try:
        job = get_job(job_id)
        if job is None:
            return make_tool_error(KeyError(f"Job not found: {job_id}"))
        if job.pipeline is not None:
            job.pipeline.kill()
        return job.to_dict()
    except Exception as exc:
        return make_tool_error(exc)


@convert_server.tool(annotations=ToolAnnotations(readOnlyHint=True, openWorldHint=False))
async def slp_prereqs() -> dict:
    """Report whether Playback Dolphin and ffmpeg can be located."""
    try:
        return check_prereqs().model_dump()
    except Exception as exc:
        return make_tool_error(exc)

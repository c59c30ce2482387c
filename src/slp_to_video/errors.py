"""Structured error handling: configuration errors, categories and tool error model."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel


class ErrorCategory(str, Enum):
    """Categories of errors for diagnostics."""

    BINARY_NOT_FOUND = "BINARY_NOT_FOUND"
    INPUT_NOT_READABLE = "INPUT_NOT_READABLE"
    INVALID_INPUT = "INVALID_INPUT"
    PLAYBACK_FAILED = "PLAYBACK_FAILED"
    ENCODER_FAILED = "ENCODER_FAILED"
    ABORTED = "ABORTED"
    TIMEOUT = "TIMEOUT"
    JOB_NOT_FOUND = "JOB_NOT_FOUND"
    UNKNOWN = "UNKNOWN"


class ConfigurationError(Exception):
    """Raised before any process is spawned when a run cannot be set up."""


class BinaryNotFoundError(ConfigurationError):
    """Raised when the Dolphin or ffmpeg binary cannot be located."""

    def __init__(self, binary: str) -> None:
        self.binary = binary
        super().__init__(f"no valid {binary} path was found")


class InvalidFrameError(ConfigurationError):
    """Raised when a --from/--to value is neither a frame nor a timestamp."""

    def __init__(self, which: str, value: str) -> None:
        self.which = which
        self.value = value
        super().__init__(f"invalid {which} frame input: {value!r}")


class StageFailedError(Exception):
    """A pipeline stage exited with a non-zero or indeterminate code."""

    def __init__(self, stage: str, exit_code: int | None) -> None:
        self.stage = stage
        self.exit_code = exit_code
        super().__init__(describe_exit(stage, exit_code))


class ToolError(BaseModel):
    """Structured error returned from any tool."""

    error: str
    category: str
    hint: str
    retryable: bool = False


def describe_exit(stage: str, exit_code: int | None) -> str:
    """Human-readable summary of a stage or pipeline exit code."""
    if exit_code is None:
        return f"{stage} was aborted"
    if exit_code == 0:
        return f"{stage} finished"
    if stage == "dolphin":
        return (
            f"dolphin exited abnormally (code {exit_code}). "
            "This may be due to an invalid SLP or ISO file"
        )
    return f"{stage} exited abnormally (code {exit_code})"


def categorize_error(error: Exception) -> tuple[ErrorCategory, str]:
    """Map an exception to an ErrorCategory + human-readable hint."""
    s = str(error).lower()

    if isinstance(error, BinaryNotFoundError):
        if error.binary == "ffmpeg":
            return (
                ErrorCategory.BINARY_NOT_FOUND,
                "ffmpeg not found: install it or set SLP_TO_VIDEO_FFMPEG_PATH",
            )
        return (
            ErrorCategory.BINARY_NOT_FOUND,
            "Playback Dolphin not found: install Slippi Launcher or set SLP_TO_VIDEO_DOLPHIN_PATH",
        )
    if isinstance(error, InvalidFrameError):
        return (
            ErrorCategory.INVALID_INPUT,
            "Frames are integers (e.g. -123, 600) or timestamps (MM:SS or HH:MM:SS)",
        )
    if isinstance(error, StageFailedError):
        if error.exit_code is None and error.stage not in {"dolphin", "ffmpeg"}:
            return (ErrorCategory.ABORTED, "Conversion was cancelled or timed out")
        if error.stage == "dolphin":
            return (
                ErrorCategory.PLAYBACK_FAILED,
                "Dolphin failed: check that the replay and the Melee ISO are valid",
            )
        return (
            ErrorCategory.ENCODER_FAILED,
            "ffmpeg failed: check the output path and available disk space",
        )
    if isinstance(error, KeyError) and "job" in s:
        return (ErrorCategory.JOB_NOT_FOUND, "Unknown job ID: start one with slp_convert_start")
    if isinstance(error, (FileNotFoundError, PermissionError)):
        return (
            ErrorCategory.INPUT_NOT_READABLE,
            "Input file missing or unreadable: check the replay and ISO paths",
        )
    if "timeout" in s or "timed out" in s:
        return (ErrorCategory.TIMEOUT, "Conversion timed out: increase the timeout")
    if isinstance(error, (ConfigurationError, ValueError)):
        return (ErrorCategory.INVALID_INPUT, str(error))

    return (ErrorCategory.UNKNOWN, str(error))


def make_tool_error(error: Exception) -> dict:
    """Create a serialisable ToolError dict from an exception."""
    cat, hint = categorize_error(error)
    retryable = cat in {ErrorCategory.TIMEOUT, ErrorCategory.ABORTED}
    return ToolError(
        error=str(error),
        category=cat.value,
        hint=hint,
        retryable=retryable,
    ).model_dump()

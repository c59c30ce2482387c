"""Run configuration for one replay conversion."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..types import DEFAULT_START_PADDING_FRAMES


class ConversionOptions(BaseModel):
    """Immutable input to one :class:`~slp_to_video.pipeline.ConversionPipeline`.

    Paths are taken as given; callers resolve relative paths first. Timeouts
    are in seconds. ``dolphin_path`` / ``ffmpeg_path`` left as ``None`` are
    looked up when the pipeline is built.
    """

    model_config = ConfigDict(frozen=True)

    input_file: str = Field(default="input.slp")
    workdir: str = Field(default="tmp")
    melee_iso: str = Field(default="SSBM.iso")
    dolphin_path: str | None = None
    ffmpeg_path: str | None = None
    output_filename: str = Field(default="output.avi")
    internal_resolution: str = Field(default="720p")
    enable_widescreen: bool = False
    start_frame: int | None = None
    end_frame: int | None = None
    start_padding_frames: int = Field(default=DEFAULT_START_PADDING_FRAMES)
    volume: float = Field(default=0.25)
    bitrate: int = Field(default=25000)
    timeout: float | None = None
    dolphin_timeout: float | None = None
    ffmpeg_timeout: float | None = None
    # Binary streams receiving a raw copy of both processes' output.
    stdout: Any = Field(default=None, exclude=True)
    stderr: Any = Field(default=None, exclude=True)

    @field_validator("volume")
    @classmethod
    def validate_volume(cls, value: float) -> float:
        if value < 0:
            raise ValueError("Volume must be >= 0")
        return value

    @field_validator("bitrate")
    @classmethod
    def validate_bitrate(cls, value: int) -> int:
        if value < 1:
            raise ValueError("Bitrate must be >= 1")
        return value

    @field_validator("start_padding_frames")
    @classmethod
    def validate_padding(cls, value: int) -> int:
        if value < 0:
            raise ValueError("Start padding must be >= 0 frames")
        return value

    @field_validator("timeout", "dolphin_timeout", "ffmpeg_timeout")
    @classmethod
    def validate_timeouts(cls, value: float | None) -> float | None:
        if value is not None and value <= 0:
            raise ValueError("Timeout values must be > 0")
        return value

    @classmethod
    def with_defaults(cls, **partial: Any) -> ConversionOptions:
        """Overlay the non-``None`` values of *partial* onto the defaults.

        Only ``None`` counts as unset: an explicit ``0`` or ``False`` is kept.
        """
        return cls(**{k: v for k, v in partial.items() if v is not None})

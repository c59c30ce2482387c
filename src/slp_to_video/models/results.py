"""Conversion result models returned by tools."""

from __future__ import annotations

from pydantic import BaseModel


class ConversionResult(BaseModel):
    """Result of a finished replay conversion."""

    input_file: str
    output_file: str
    success: bool
    exit_code: int | None = None
    duration_seconds: float = 0.0
    message: str = ""

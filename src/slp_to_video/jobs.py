"""In-memory tracking of background conversions."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from .process import ProgressWindow


class JobStatus(str, Enum):
    """Conversion job lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


FINISHED_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})


@dataclass
class ConversionJob:
    """Tracks a background replay conversion."""

    job_id: str
    input_file: str
    output_file: str
    status: JobStatus = JobStatus.PENDING
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: datetime | None = None
    playback: ProgressWindow | None = None
    encoder: ProgressWindow | None = None
    exit_code: int | None = None
    error: str = ""
    duration_seconds: float = 0.0
    pipeline: Any = field(default=None, repr=False)

    def to_dict(self) -> dict:
        return {
            "job_id": self.job_id,
            "input_file": self.input_file,
            "output_file": self.output_file,
            "status": self.status.value,
            "playback_percent": self.playback.percent if self.playback else None,
            "encoder_percent": self.encoder.percent if self.encoder else None,
            "exit_code": self.exit_code,
            "error": self.error,
            "duration_seconds": self.duration_seconds,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


# Module-level job registry
_jobs: dict[str, ConversionJob] = {}


def create_job(input_file: str, output_file: str) -> ConversionJob:
    """Create and register a new conversion job."""
    job_id = uuid.uuid4().hex[:12]
    job = ConversionJob(job_id=job_id, input_file=input_file, output_file=output_file)
    _jobs[job_id] = job
    return job


def get_job(job_id: str) -> ConversionJob | None:
    return _jobs.get(job_id)


def update_job(
    job_id: str,
    *,
    status: JobStatus | None = None,
    playback: ProgressWindow | None = None,
    encoder: ProgressWindow | None = None,
    exit_code: int | None = None,
    error: str | None = None,
    duration_seconds: float | None = None,
) -> ConversionJob | None:
    """Update fields on an existing job.

    Returns:
        The updated ConversionJob, or None if not found.
    """
    job = _jobs.get(job_id)
    if job is None:
        return None

    if status is not None:
        job.status = status
        if status in FINISHED_STATUSES:
            job.completed_at = datetime.now(timezone.utc)
    if playback is not None:
        job.playback = playback
    if encoder is not None:
        job.encoder = encoder
    if exit_code is not None:
        job.exit_code = exit_code
    if error is not None:
        job.error = error
    if duration_seconds is not None:
        job.duration_seconds = duration_seconds
    return job


def clear_jobs() -> int:
    """Remove all tracked jobs. Returns count cleared."""
    count = len(_jobs)
    _jobs.clear()
    return count

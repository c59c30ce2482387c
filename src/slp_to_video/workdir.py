"""Per-run temporary working directories."""

from __future__ import annotations

import logging
import shutil
import tempfile
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_PREFIX = "slp-to-video-"
DEVELOPMENT_TMP_DIR = Path("tmp")


def create_workdir(development: bool = False, prefix: str = DEFAULT_PREFIX) -> Path:
    """Create a fresh, uniquely named working directory.

    In development mode the directory lives under ``./tmp`` so it can be
    inspected after the run; otherwise it goes to the system temp dir.
    """
    parent: Path | None = None
    if development:
        parent = DEVELOPMENT_TMP_DIR.resolve()
        parent.mkdir(parents=True, exist_ok=True)
    path = Path(tempfile.mkdtemp(prefix=prefix, dir=parent))
    logger.info("Created workdir %s", path)
    return path


def remove_workdir(path: Path | None, development: bool = False) -> None:
    """Recursively delete *path* unless running in development mode."""
    if path is None or development:
        return
    shutil.rmtree(path, ignore_errors=True)
    logger.info("Removed workdir %s", path)

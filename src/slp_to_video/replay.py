"""Read the trailing metadata block of a Slippi replay.

``.slp`` files are UBJSON objects of the form ``{"raw": <bytes>,
"metadata": {...}}``. Only ``metadata.lastFrame`` is of interest here: it is
the fallback end of the playback progress window.
"""

from __future__ import annotations

import logging
from pathlib import Path

import ubjson

logger = logging.getLogger(__name__)


def read_metadata(path: str | Path) -> dict:
    """Return the replay's metadata object, or an empty dict if it has none.

    Raises:
        OSError: When the file cannot be read.
        ubjson.DecoderException: When the file is not valid UBJSON.
    """
    data = Path(path).read_bytes()
    document = ubjson.loadb(data)
    if not isinstance(document, dict):
        return {}
    metadata = document.get("metadata")
    return metadata if isinstance(metadata, dict) else {}


def read_last_frame(path: str | Path) -> int | None:
    """Return the recorded last frame of the replay at *path*.

    Replays that cannot be decoded, or that were recorded without metadata
    (e.g. an interrupted game), yield ``None``.

    Raises:
        OSError: When the file cannot be read.
    """
    try:
        metadata = read_metadata(path)
    except ubjson.DecoderException as exc:
        logger.warning("Could not decode replay metadata of %s: %s", path, exc)
        return None

    last_frame = metadata.get("lastFrame")
    if isinstance(last_frame, bool) or not isinstance(last_frame, int):
        logger.warning("Replay %s has no lastFrame metadata", path)
        return None
    return last_frame

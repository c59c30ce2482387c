"""Binary overrides read from ``~/.config/slp-to-video/.env``.

The file uses ``KEY=value`` lines (optionally ``export``-prefixed). Only
this tool's own variables (``SLP_TO_VIDEO_*``) and ``APPDATA`` are honoured;
anything else is reported and skipped so a shared ``.env`` cannot leak
unrelated settings into the Dolphin or ffmpeg child processes.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Iterator
from pathlib import Path
from typing import NamedTuple

from .config import ENV_PREFIX

logger = logging.getLogger(__name__)

DEFAULT_ENV_PATH = Path.home() / ".config" / "slp-to-video" / ".env"

EXTRA_KEYS = frozenset({"APPDATA"})


class Assignment(NamedTuple):
    """One ``KEY=value`` line of the config file."""

    lineno: int
    key: str
    value: str


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
        return value[1:-1]
    return value


def is_known_key(key: str) -> bool:
    return key.startswith(ENV_PREFIX) or key in EXTRA_KEYS


def needs_value(key: str, current: str | None) -> bool:
    """True when the process environment has no usable value for *key*.

    MCP hosts expand ``${KEY}`` to an empty string, or pass it through
    verbatim, when the variable is unset in the user's shell; both count
    as missing.
    """
    if current is None:
        return True
    value = _unquote(current.strip()).strip()
    return not value or value in {f"${key}", f"${{{key}}}"}


def iter_assignments(path: Path) -> Iterator[Assignment]:
    """Yield the assignments of *path*, warning about lines that are not one."""
    for lineno, raw in enumerate(path.read_text(encoding="utf-8").splitlines(), start=1):
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        line = line.removeprefix("export ").lstrip()
        key, sep, value = line.partition("=")
        key = key.strip()
        if not sep or not key:
            logger.warning("%s:%d: not a KEY=value line, skipped", path, lineno)
            continue
        yield Assignment(lineno, key, _unquote(value.strip()))


def parse_dotenv(path: Path) -> dict[str, str]:
    """Return every assignment in *path* (later lines win); ``{}`` if absent."""
    if not path.is_file():
        return {}
    return {a.key: a.value for a in iter_assignments(path)}


def load_dotenv(path: Path | None = None) -> dict[str, str]:
    """Copy known settings from *path* into ``os.environ`` where unset.

    ``~`` in ``*_PATH`` values is expanded, since the file is not read by a
    shell.

    Returns:
        The variables that were injected.
    """
    path = DEFAULT_ENV_PATH if path is None else path
    if not path.is_file():
        return {}

    injected: dict[str, str] = {}
    for assignment in iter_assignments(path):
        key, value = assignment.key, assignment.value
        if not is_known_key(key):
            logger.warning("%s:%d: ignoring unrelated variable %s", path, assignment.lineno, key)
            continue
        if not needs_value(key, os.environ.get(key)):
            continue
        if key.endswith("_PATH"):
            value = os.path.expanduser(value)
        os.environ[key] = value
        injected[key] = value

    if injected:
        logger.info("Loaded %s from %s", ", ".join(injected), path)
    return injected

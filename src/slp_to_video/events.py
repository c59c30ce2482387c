"""Listener lists used for process and pipeline notifications."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)


class EventChannel:
    """One named event with any number of listeners, called in registration order."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._listeners: list[Callable[..., Any]] = []

    def add(self, callback: Callable[..., Any]) -> None:
        self._listeners.append(callback)

    def emit(self, *args: Any) -> None:
        # Copy so listeners registered during emission wait for the next event.
        for callback in list(self._listeners):
            try:
                callback(*args)
            except Exception:
                logger.exception("Listener for %r raised", self.name)

    def __len__(self) -> int:
        return len(self._listeners)

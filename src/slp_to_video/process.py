"""External process handle shared by the playback and encoder stages.

A :class:`ProcessHandle` wraps a spawned ``asyncio.subprocess.Process`` and
turns its lifecycle into listener registrations:

* ``on_progress``: zero or more ``(current, start, end)`` notifications,
  emitted by the stage-specific scrapers via :meth:`ProcessHandle.emit_progress`.
* ``on_exit``: exactly one notification with the exit code, or ``None``
  when the process was terminated by a signal.

Output is read in chunks rather than with ``readline`` because ffmpeg
terminates its stats lines with ``\\r`` and never emits a newline for them.
"""

from __future__ import annotations

import asyncio
import codecs
import logging
import re
import signal
from collections.abc import Sequence
from pathlib import Path
from typing import BinaryIO

from pydantic import BaseModel

from .events import EventChannel
from .types import ExitCallback, LineCallback, ProgressCallback

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 4096

_LINE_SPLIT_RE = re.compile(r"\r\n|\r|\n")


class ProgressWindow(BaseModel):
    """Completion window of a stage: ``(start, current, end?)``."""

    start: int
    current: int
    end: int | None = None

    @property
    def percent(self) -> float | None:
        """Percent complete, or ``None`` while the end is unknown."""
        if self.end is None:
            return None
        span = self.end - self.start
        if span <= 0:
            return 100.0
        return max(0.0, min(100.0, (self.current - self.start) / span * 100))


def normalize_returncode(returncode: int | None) -> int | None:
    """Map asyncio's negative signal return codes to ``None``."""
    if returncode is None or returncode < 0:
        return None
    return returncode


class ProcessHandle:
    """Uniform handle over one running external process."""

    def __init__(
        self,
        proc: asyncio.subprocess.Process,
        *,
        name: str,
        timeout: float | None = None,
        stdout_sink: BinaryIO | None = None,
        stderr_sink: BinaryIO | None = None,
    ) -> None:
        self.name = name
        self._proc = proc
        self._stdout_sink = stdout_sink
        self._stderr_sink = stderr_sink
        self._progress = EventChannel(f"{name}:progress")
        self._exit = EventChannel(f"{name}:exit")
        self._stdout_lines = EventChannel(f"{name}:stdout")
        self._stderr_lines = EventChannel(f"{name}:stderr")
        self._exited = False
        self._exit_code: int | None = None
        self._done: asyncio.Future[int | None] = asyncio.get_running_loop().create_future()
        self._timer: asyncio.TimerHandle | None = None
        if timeout is not None:
            self._timer = asyncio.get_running_loop().call_later(timeout, self._on_timeout, timeout)
        self._watcher = asyncio.create_task(self._watch(), name=f"{name}-watcher")

    # ── registration ─────────────────────────────────────────────────────

    def on_exit(self, callback: ExitCallback) -> None:
        self._exit.add(callback)

    def on_progress(self, callback: ProgressCallback) -> None:
        self._progress.add(callback)

    def on_stdout_line(self, callback: LineCallback) -> None:
        self._stdout_lines.add(callback)

    def on_stderr_line(self, callback: LineCallback) -> None:
        self._stderr_lines.add(callback)

    def emit_progress(self, current: int, start: int, end: int | None) -> None:
        self._progress.emit(current, start, end)

    # ── state ────────────────────────────────────────────────────────────

    @property
    def pid(self) -> int:
        return self._proc.pid

    @property
    def running(self) -> bool:
        return not self._exited

    @property
    def exit_code(self) -> int | None:
        return self._exit_code

    async def wait(self) -> int | None:
        """Wait until exit listeners have been notified and return the exit code."""
        return await asyncio.shield(self._done)

    def kill(self, sig: int = signal.SIGTERM) -> None:
        """Send *sig* to the process. A no-op once the process has exited."""
        if self._exited or self._proc.returncode is not None:
            return
        logger.info("Sending signal %d to %s (pid %s)", sig, self.name, self._proc.pid)
        try:
            self._proc.send_signal(sig)
        except ProcessLookupError:
            logger.debug("%s already gone", self.name)

    # ── internals ────────────────────────────────────────────────────────

    def _on_timeout(self, timeout: float) -> None:
        logger.warning("%s exceeded its %.1fs timeout, killing", self.name, timeout)
        self.kill()

    async def _pump(
        self,
        stream: asyncio.StreamReader | None,
        sink: BinaryIO | None,
        lines: EventChannel,
    ) -> None:
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        pending = ""
        while True:
            chunk = await stream.read(READ_CHUNK_SIZE)
            if not chunk:
                break
            if sink is not None:
                sink.write(chunk)
                sink.flush()
            # Multi-byte characters may straddle chunks.
            pending += decoder.decode(chunk)
            *complete, pending = _LINE_SPLIT_RE.split(pending)
            for line in complete:
                lines.emit(line)
        pending += decoder.decode(b"", final=True)
        if pending:
            lines.emit(pending)

    async def _watch(self) -> None:
        try:
            try:
                await asyncio.gather(
                    self._pump(self._proc.stdout, self._stdout_sink, self._stdout_lines),
                    self._pump(self._proc.stderr, self._stderr_sink, self._stderr_lines),
                )
            except (OSError, ValueError):
                # Output is no longer observable; the process must not outlive us.
                logger.exception("Lost output of %s, killing it", self.name)
                self.kill(signal.SIGKILL)
            returncode = await self._proc.wait()
        finally:
            if self._timer is not None:
                self._timer.cancel()
        self._exited = True
        self._exit_code = normalize_returncode(returncode)
        logger.info("%s exited with code %s (raw %s)", self.name, self._exit_code, returncode)
        self._exit.emit(self._exit_code)
        self._done.set_result(self._exit_code)


async def spawn_process(
    program: str | Path,
    args: Sequence[str],
    *,
    name: str,
    cwd: str | Path | None = None,
    timeout: float | None = None,
    stdout_sink: BinaryIO | None = None,
    stderr_sink: BinaryIO | None = None,
) -> ProcessHandle:
    """Spawn *program* with an argument list (never a shell) and wrap it.

    Args:
        program: Absolute path of the binary.
        args: Arguments after the program name.
        name: Label used in logs and listener errors.
        cwd: Working directory of the child.
        timeout: Hard kill deadline in seconds, measured from spawn.
        stdout_sink: Binary stream receiving a raw copy of stdout.
        stderr_sink: Binary stream receiving a raw copy of stderr.

    Returns:
        A ProcessHandle already watching the child's output and exit.
    """
    cmd = [str(program), *args]
    logger.info("Spawning %s: %s", name, " ".join(cmd))
    proc = await asyncio.create_subprocess_exec(
        *cmd,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=str(cwd) if cwd is not None else None,
    )
    return ProcessHandle(
        proc,
        name=name,
        timeout=timeout,
        stdout_sink=stdout_sink,
        stderr_sink=stderr_sink,
    )

"""Shared test fixtures for slp-to-video."""

from __future__ import annotations

import asyncio
import signal
from types import SimpleNamespace
from typing import Any

import pytest
import ubjson

import slp_to_video.config as cfg_mod


def unwrap_tool(tool: Any) -> Any:
    """Extract the raw coroutine from a FastMCP FunctionTool, if wrapped.

    FastMCP 2.x wraps @server.tool functions in FunctionTool (not callable).
    FastMCP 3.x preserves the original function. This helper works with both.
    """
    return getattr(tool, "fn", tool)


class FakeProcess:
    """Stand-in for ``asyncio.subprocess.Process`` driven from the test.

    Output passed to the constructor is buffered before the handle starts
    reading it; ``returncode`` makes the process exit right away. A signal
    makes it exit with ``signal_returncode`` (default ``-sig``), mimicking
    how asyncio reports signal deaths.
    """

    def __init__(
        self,
        *,
        stdout: bytes = b"",
        stderr: bytes = b"",
        returncode: int | None = None,
        signal_returncode: int | None = None,
        exit_on_signal: bool = True,
    ) -> None:
        self.pid = 4242
        self.stdout = asyncio.StreamReader()
        self.stderr = asyncio.StreamReader()
        self.returncode: int | None = None
        self.signals: list[int] = []
        self._signal_returncode = signal_returncode
        self._exit_on_signal = exit_on_signal
        self._exited = asyncio.Event()
        if stdout:
            self.stdout.feed_data(stdout)
        if stderr:
            self.stderr.feed_data(stderr)
        if returncode is not None:
            self.exit(returncode)

    def write_stdout(self, data: bytes) -> None:
        self.stdout.feed_data(data)

    def write_stderr(self, data: bytes) -> None:
        self.stderr.feed_data(data)

    def exit(self, returncode: int) -> None:
        if self._exited.is_set():
            return
        self.stdout.feed_eof()
        self.stderr.feed_eof()
        self.returncode = returncode
        self._exited.set()

    def send_signal(self, sig: int) -> None:
        self.signals.append(sig)
        if self._exit_on_signal:
            code = self._signal_returncode if self._signal_returncode is not None else -int(sig)
            self.exit(code)

    def terminate(self) -> None:
        self.send_signal(signal.SIGTERM)

    def kill(self) -> None:
        self.send_signal(signal.SIGKILL)

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode


@pytest.fixture(autouse=True)
def _clean_config():
    """Reset the config singleton between tests."""
    cfg_mod._config = None
    yield
    cfg_mod._config = None


@pytest.fixture(autouse=True)
def _isolate_dotenv(tmp_path, monkeypatch):
    """Prevent tests from loading the user's real .env file."""
    monkeypatch.setattr(
        "slp_to_video.dotenv.DEFAULT_ENV_PATH",
        tmp_path / "nonexistent.env",
    )


@pytest.fixture()
def _isolate_jobs():
    """Clear the in-memory job registry."""
    from slp_to_video.jobs import _jobs
    _jobs.clear()
    yield
    _jobs.clear()


@pytest.fixture()
def fake_exec(monkeypatch):
    """Patch ``asyncio.create_subprocess_exec`` to hand out queued FakeProcesses.

    Queue either FakeProcess instances or zero-argument factories (useful
    when the process must be created inside the event loop that spawns it).
    Every spawn is recorded with its argv and keyword arguments.
    """
    state = SimpleNamespace(queue=[], spawned=[])

    async def _exec(*args, **kwargs):
        if not state.queue:
            raise AssertionError(f"unexpected spawn: {args}")
        item = state.queue.pop(0)
        proc = item() if callable(item) else item
        state.spawned.append(SimpleNamespace(args=list(args), kwargs=kwargs, proc=proc))
        return proc

    monkeypatch.setattr("asyncio.create_subprocess_exec", _exec)
    return state


@pytest.fixture()
def slp_file(tmp_path):
    """Write a minimal UBJSON replay with ``lastFrame`` metadata."""
    def _factory(last_frame: int | None = 600, name: str = "game.slp"):
        document: dict = {"raw": b"\x35\x0e\x00\x1e"}
        if last_frame is not None:
            document["metadata"] = {"lastFrame": last_frame, "playedOn": "dolphin"}
        path = tmp_path / name
        path.write_bytes(ubjson.dumpb(document))
        return path

    return _factory


@pytest.fixture()
def melee_iso(tmp_path):
    path = tmp_path / "SSBM.iso"
    path.write_bytes(b"GALE01")
    return path


@pytest.fixture()
def fake_binaries(tmp_path):
    """Empty files standing in for the Dolphin and ffmpeg executables."""
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    dolphin = bin_dir / "dolphin"
    ffmpeg = bin_dir / "ffmpeg"
    dolphin.write_bytes(b"")
    ffmpeg.write_bytes(b"")
    return SimpleNamespace(dolphin=dolphin, ffmpeg=ffmpeg)

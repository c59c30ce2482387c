"""Main FastMCP server: mounts all sub-servers."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastmcp import FastMCP

from .tools.convert import _background_tasks, convert_server

logger = logging.getLogger(__name__)


@asynccontextmanager
async def _lifespan(server: FastMCP):
    """Startup/shutdown hook: abort conversions still running on shutdown."""
    yield {}
    for task in list(_background_tasks):
        task.cancel()
    logger.info("Lifespan shutdown: slp-to-video")


app = FastMCP(
    "slp-to-video",
    instructions=(
        "Render Slippi (.slp) replays to video files. Wraps Playback "
        "Dolphin and ffmpeg; use slp_prereqs to check both are installed."
    ),
    lifespan=_lifespan,
)

app.mount(convert_server)


def main() -> None:
    """Entry-point for ``slp-to-video-mcp`` console script."""
    app.run()


if __name__ == "__main__":
    main()

"""Execution utilities for FFmpeg commands."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Awaitable, Callable, Optional

import structlog

from ..errors import EncodeError

logger = structlog.get_logger(__name__)

ProgressCallback = Callable[[int], Awaitable[None]]

# Machine-readable key=value progress on stdout, diagnostics alone on stderr.
PROGRESS_FLAGS = ["-hide_banner", "-nostats", "-progress", "pipe:1"]

# The final percentage belongs to the caller once the process has exited cleanly.
MAX_STREAMED_PERCENT = 99


def parse_progress_line(line: str, duration: Optional[float]) -> Optional[int]:
    """Turn one ``-progress`` line into a percentage of ``duration``.

    ffmpeg reports both ``out_time_us`` and ``out_time_ms``; despite its name the
    latter is also in microseconds.
    """

    key, _, value = line.strip().partition("=")
    if key not in {"out_time_us", "out_time_ms"} or not duration or duration <= 0:
        return None
    try:
        microseconds = int(value)
    except ValueError:
        return None
    percent = int(microseconds / 1_000_000 / duration * 100)
    return max(0, min(MAX_STREAMED_PERCENT, percent))


async def run_ffmpeg(
    command: list[str],
    *,
    duration: Optional[float] = None,
    on_progress: Optional[ProgressCallback] = None,
    cwd: Optional[Path] = None,
) -> str:
    """Run FFmpeg, awaiting ``on_progress`` for each new percentage.

    Returns the tool's stderr; raises EncodeError on a non-zero exit.
    """

    full_command = [command[0], *PROGRESS_FLAGS, *command[1:]]
    logger.debug("Starting ffmpeg", command=" ".join(full_command))
    try:
        process = await asyncio.create_subprocess_exec(
            *full_command,
            cwd=str(cwd) if cwd else None,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        raise EncodeError(full_command, str(exc)) from exc

    if process.stdout is None or process.stderr is None:
        process.kill()
        raise EncodeError(full_command, "ffmpeg started without output pipes")
    stderr_task = asyncio.create_task(process.stderr.read())
    last_percent = -1
    try:
        async for raw_line in process.stdout:
            percent = parse_progress_line(raw_line.decode(errors="replace"), duration)
            if percent is None or percent <= last_percent:
                continue
            last_percent = percent
            if on_progress is not None:
                await on_progress(percent)
        returncode = await process.wait()
        stderr = (await stderr_task).decode(errors="replace")
    finally:
        if process.returncode is None:
            process.kill()
            await process.wait()
        if not stderr_task.done():
            stderr_task.cancel()

    if returncode != 0:
        raise EncodeError(full_command, stderr, returncode)
    return stderr

"""FFprobe integration helpers."""

from __future__ import annotations

import asyncio
import json
from fractions import Fraction
from pathlib import Path
from typing import Any, Optional

from ..errors import ProbeError
from ..job_models import VideoMetadata


async def probe_media(ffprobe_binary: str, media_path: Path) -> dict[str, Any]:
    """Return structured ffprobe metadata for the supplied media file."""

    command = [
        ffprobe_binary,
        "-v",
        "error",
        "-show_format",
        "-show_streams",
        "-print_format",
        "json",
        str(media_path),
    ]
    try:
        process = await asyncio.create_subprocess_exec(
            *command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        raise ProbeError(f"Unable to run ffprobe: {exc}") from exc
    stdout, stderr = await process.communicate()
    if process.returncode != 0:
        raise ProbeError(f"ffprobe failed for {media_path}: {stderr.decode(errors='replace').strip()}")
    try:
        return json.loads(stdout or b"{}")
    except json.JSONDecodeError as exc:
        raise ProbeError(f"ffprobe returned invalid JSON for {media_path}") from exc


def _frame_rate(value: Optional[str]) -> float:
    if not value:
        return 0.0
    try:
        rate = Fraction(value)
    except (ValueError, ZeroDivisionError):
        return 0.0
    return round(float(rate), 3)


def _int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def summarize_media(metadata: dict[str, Any]) -> VideoMetadata:
    """Reduce ffprobe output to the fields the pipeline depends on."""

    format_info = metadata.get("format", {})
    streams = metadata.get("streams", [])
    video = next((s for s in streams if s.get("codec_type") == "video"), None)
    audio = next((s for s in streams if s.get("codec_type") == "audio"), None)
    if video is None:
        raise ProbeError("No video stream found")

    try:
        duration = float(format_info.get("duration") or 0)
    except (TypeError, ValueError):
        duration = 0.0

    return VideoMetadata(
        duration=duration,
        format=format_info.get("format_name", ""),
        width=_int(video.get("width")),
        height=_int(video.get("height")),
        bitrate=_int(format_info.get("bit_rate")),
        fps=_frame_rate(video.get("r_frame_rate")),
        codec=video.get("codec_name", ""),
        audio_codec=audio.get("codec_name") if audio else None,
        audio_bitrate=_int(audio.get("bit_rate")) if audio else None,
    )

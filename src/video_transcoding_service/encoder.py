"""Encoding capability: the pipeline's view of ffmpeg.

Each call writes into its own ``mkdtemp`` directory below the caller's work
directory. Nothing produced here is expected to outlive the caller's cleanup.
"""

from __future__ import annotations

import re
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import structlog

from .artifacts import DASH_MANIFEST_NAME, HLS_PLAYLIST_NAME
from .config import Settings
from .ffmpeg.command_builder import (
    build_dash_command,
    build_hls_command,
    build_preview_command,
    build_thumbnail_command,
    build_transcode_command,
    thumbnail_timestamps,
)
from .ffmpeg.probe import probe_media, summarize_media
from .ffmpeg.runner import ProgressCallback, run_ffmpeg
from .job_models import VideoMetadata
from .profiles import TranscodeProfile

logger = structlog.get_logger(__name__)


@dataclass(slots=True)
class PackagedStream:
    """Index file (playlist or manifest) plus the segments it references."""

    index_path: Path
    segment_paths: list[Path]

    @property
    def directory(self) -> Path:
        return self.index_path.parent


def _natural_key(path: Path) -> list[object]:
    return [int(part) if part.isdigit() else part for part in re.split(r"(\d+)", path.name)]


def list_segments(directory: Path, suffix: str) -> list[Path]:
    return sorted((p for p in directory.iterdir() if p.suffix == suffix), key=_natural_key)


class AbstractEncoder:
    """Interface implemented by the ffmpeg adapter and by test fakes."""

    async def metadata(self, input_path: Path) -> VideoMetadata:  # pragma: no cover - interface
        raise NotImplementedError

    async def transcode(
        self,
        input_path: Path,
        profile: TranscodeProfile,
        *,
        workdir: Path,
        duration: Optional[float] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> Path:  # pragma: no cover - interface
        raise NotImplementedError

    async def package_hls(
        self,
        input_path: Path,
        *,
        workdir: Path,
        duration: Optional[float] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> PackagedStream:  # pragma: no cover - interface
        raise NotImplementedError

    async def package_dash(
        self,
        input_path: Path,
        *,
        workdir: Path,
        duration: Optional[float] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> PackagedStream:  # pragma: no cover - interface
        raise NotImplementedError

    async def thumbnails(
        self,
        input_path: Path,
        count: int,
        *,
        workdir: Path,
        duration: Optional[float] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> list[Path]:  # pragma: no cover - interface
        raise NotImplementedError

    async def preview(
        self,
        input_path: Path,
        max_duration: float,
        *,
        workdir: Path,
        duration: Optional[float] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> Path:  # pragma: no cover - interface
        raise NotImplementedError


class FFmpegEncoder(AbstractEncoder):
    """Production adapter shelling out to ffmpeg and ffprobe."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    @staticmethod
    def _private_dir(workdir: Path, prefix: str) -> Path:
        workdir.mkdir(parents=True, exist_ok=True)
        return Path(tempfile.mkdtemp(prefix=prefix, dir=workdir))

    async def metadata(self, input_path: Path) -> VideoMetadata:
        raw = await probe_media(self._settings.ffprobe_binary, input_path)
        return summarize_media(raw)

    async def transcode(
        self,
        input_path: Path,
        profile: TranscodeProfile,
        *,
        workdir: Path,
        duration: Optional[float] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> Path:
        output_path = self._private_dir(workdir, f"{profile.name}-") / f"{profile.name}.mp4"
        command = build_transcode_command(
            self._settings.ffmpeg_binary,
            input_path,
            output_path,
            profile,
            threads=self._settings.ffmpeg_threads,
        )
        logger.info("Transcoding rendition", profile=profile.name, output=str(output_path))
        await run_ffmpeg(command, duration=duration, on_progress=on_progress)
        return output_path

    async def package_hls(
        self,
        input_path: Path,
        *,
        workdir: Path,
        duration: Optional[float] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> PackagedStream:
        playlist_path = self._private_dir(workdir, "hls-") / HLS_PLAYLIST_NAME
        command = build_hls_command(
            self._settings.ffmpeg_binary,
            input_path,
            playlist_path,
            segment_duration=self._settings.hls_segment_duration,
            playlist_size=self._settings.hls_playlist_size,
            vod=self._settings.hls_vod_playlist,
        )
        logger.info("Packaging HLS", output=str(playlist_path))
        await run_ffmpeg(command, duration=duration, on_progress=on_progress)
        return PackagedStream(playlist_path, list_segments(playlist_path.parent, ".ts"))

    async def package_dash(
        self,
        input_path: Path,
        *,
        workdir: Path,
        duration: Optional[float] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> PackagedStream:
        manifest_path = self._private_dir(workdir, "dash-") / DASH_MANIFEST_NAME
        command = build_dash_command(
            self._settings.ffmpeg_binary,
            input_path,
            manifest_path,
            segment_duration=self._settings.dash_segment_duration,
        )
        logger.info("Packaging DASH", output=str(manifest_path))
        # Segment names in the manifest are relative to the manifest directory.
        await run_ffmpeg(command, duration=duration, on_progress=on_progress, cwd=manifest_path.parent)
        return PackagedStream(manifest_path, list_segments(manifest_path.parent, ".m4s"))

    async def thumbnails(
        self,
        input_path: Path,
        count: int,
        *,
        workdir: Path,
        duration: Optional[float] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> list[Path]:
        if duration is None:
            duration = (await self.metadata(input_path)).duration
        output_dir = self._private_dir(workdir, "thumbs-")
        paths: list[Path] = []
        timestamps = thumbnail_timestamps(duration, count)
        for index, timestamp in enumerate(timestamps):
            output_path = output_dir / f"thumb_{index}.jpg"
            command = build_thumbnail_command(
                self._settings.ffmpeg_binary,
                input_path,
                output_path,
                timestamp,
                size=self._settings.thumbnail_size,
            )
            await run_ffmpeg(command)
            paths.append(output_path)
            if on_progress is not None:
                await on_progress(int((index + 1) / len(timestamps) * 100))
        return paths

    async def preview(
        self,
        input_path: Path,
        max_duration: float,
        *,
        workdir: Path,
        duration: Optional[float] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> Path:
        output_path = self._private_dir(workdir, "preview-") / "preview.mp4"
        command = build_preview_command(
            self._settings.ffmpeg_binary,
            input_path,
            output_path,
            max_duration=max_duration,
            size=self._settings.preview_size,
        )
        clip_duration = min(duration, max_duration) if duration else max_duration
        await run_ffmpeg(command, duration=clip_duration, on_progress=on_progress)
        return output_path

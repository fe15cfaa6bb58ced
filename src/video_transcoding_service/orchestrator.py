"""Transcoding pipeline state machine.

One attempt walks the stages in a fixed order:

    metadata -> transcode (per profile) -> hls -> dash -> thumbnails -> preview -> finalize

Only metadata, preview and finalize always run. Each finished artifact is
uploaded and its local copy removed before the next stage starts. A failure in
any stage ends the attempt; a redelivered job starts again from metadata.
"""

from __future__ import annotations

import shutil
import tempfile
from pathlib import Path, PurePosixPath
from typing import Awaitable, Callable, Optional

import structlog
from structlog.typing import FilteringBoundLogger

from .artifacts import (
    content_type_for,
    dash_key,
    hls_key,
    preview_key,
    rendition_key,
    thumbnail_key,
)
from .config import Settings
from .encoder import AbstractEncoder, PackagedStream
from .errors import JobStoreError, LeaseLostError
from .ffmpeg.runner import ProgressCallback
from .job_models import (
    DASHOutput,
    HLSOutput,
    JobState,
    PipelineStage,
    TranscodedFile,
    TranscodeRequest,
    TranscodeResult,
)
from .job_store import AbstractJobStore
from .profiles import get_profile
from .storage import AbstractArtifactStore

logger = structlog.get_logger(__name__)

LeaseCheck = Callable[[], Awaitable[bool]]

# Cumulative progress once each stage has finished.
STAGE_PROGRESS: dict[PipelineStage, int] = {
    PipelineStage.METADATA: 10,
    PipelineStage.TRANSCODE: 40,
    PipelineStage.HLS: 70,
    PipelineStage.DASH: 85,
    PipelineStage.THUMBNAILS: 95,
    PipelineStage.PREVIEW: 99,
    PipelineStage.FINALIZE: 100,
}


class ProgressTracker:
    """Writes job progress, never moving it backwards within an attempt."""

    def __init__(self, job_store: AbstractJobStore, job_id: str, lease_check: Optional[LeaseCheck] = None) -> None:
        self._job_store = job_store
        self._job_id = job_id
        self._lease_check = lease_check
        self.current = 0
        self.stage: Optional[PipelineStage] = None

    async def enter(self, stage: PipelineStage) -> None:
        self.stage = stage
        await self.ensure_lease()
        await self._job_store.update_progress(self._job_id, self.current, stage=stage)

    async def advance(self, value: float) -> None:
        value = min(100, int(value))
        if value <= self.current:
            return
        await self.ensure_lease()
        self.current = value
        await self._job_store.update_progress(self._job_id, value)

    async def holds_lease(self) -> bool:
        return self._lease_check is None or await self._lease_check()

    async def ensure_lease(self) -> None:
        """Stop an attempt whose delivery has been handed to another worker."""

        if not await self.holds_lease():
            raise LeaseLostError(f"Lease on job {self._job_id} is no longer held")

    def band(self, end: float) -> ProgressCallback:
        """Map an encoder's 0-100 onto the span between now and ``end``."""

        start = self.current

        async def report(percent: int) -> None:
            await self.advance(start + (end - start) * percent / 100)

        return report


def _discard_private_dir(path: Path) -> None:
    """Remove a per-invocation encoder directory and anything left in it."""

    shutil.rmtree(path, ignore_errors=True)


class TranscodingOrchestrator:
    """Drives the encoder through every requested stage for one job attempt."""

    def __init__(
        self,
        encoder: AbstractEncoder,
        artifact_store: AbstractArtifactStore,
        job_store: AbstractJobStore,
        settings: Settings,
    ) -> None:
        self._encoder = encoder
        self._store = artifact_store
        self._job_store = job_store
        self._settings = settings

    def _new_workdir(self, job_id: str) -> Path:
        self._settings.temp_dir.mkdir(parents=True, exist_ok=True)
        return Path(tempfile.mkdtemp(prefix=f"job-{job_id}-", dir=self._settings.temp_dir))

    async def run(
        self,
        job_id: str,
        request: TranscodeRequest,
        *,
        lease_check: Optional[LeaseCheck] = None,
    ) -> TranscodeResult:
        """Execute one attempt; the job record ends ``completed`` or ``failed``.

        With ``lease_check`` every job store write is made only while the
        check passes. Once it fails the attempt stops with ``LeaseLostError``
        and leaves the record to the worker that now holds the job.
        """

        log = logger.bind(job_id=job_id, video_id=request.video_id)
        tracker = ProgressTracker(self._job_store, job_id, lease_check)
        workdir = self._new_workdir(job_id)
        try:
            result = await self._execute(request, workdir, tracker, log)
            await tracker.ensure_lease()
            await self._job_store.set_status(
                job_id,
                JobState.COMPLETED,
                STAGE_PROGRESS[PipelineStage.FINALIZE],
                result=result,
                stage=PipelineStage.FINALIZE,
                message="Transcoding completed",
            )
            log.info("Pipeline completed", artifacts=len(result.artifact_keys()))
            return result
        except LeaseLostError:
            log.warning("Lease lost, attempt abandoned", stage=tracker.stage.value if tracker.stage else None)
            raise
        except Exception as exc:
            log.error("Pipeline failed", stage=tracker.stage.value if tracker.stage else None, error=str(exc))
            if await tracker.holds_lease():
                await self._record_failure(job_id, tracker, exc)
            raise
        finally:
            self._cleanup_workdir(workdir, log)

    async def _execute(
        self,
        request: TranscodeRequest,
        workdir: Path,
        tracker: ProgressTracker,
        log: FilteringBoundLogger,
    ) -> TranscodeResult:
        video_id = request.video_id

        await tracker.enter(PipelineStage.METADATA)
        input_path = await self._resolve_input(request.input_location, workdir)
        metadata = await self._encoder.metadata(input_path)
        duration = metadata.duration
        result = TranscodeResult(video_id=video_id, metadata=metadata)
        await tracker.advance(STAGE_PROGRESS[PipelineStage.METADATA])
        log.info("Metadata extracted", duration=duration, width=metadata.width, height=metadata.height)

        if request.profiles:
            await tracker.enter(PipelineStage.TRANSCODE)
            start = STAGE_PROGRESS[PipelineStage.METADATA]
            share = (STAGE_PROGRESS[PipelineStage.TRANSCODE] - start) / len(request.profiles)
            for index, name in enumerate(request.profiles):
                profile = get_profile(name)
                end = start + share * (index + 1)
                log.info("Transcoding profile", profile=name)
                output_path = await self._encoder.transcode(
                    input_path,
                    profile,
                    workdir=workdir,
                    duration=duration,
                    on_progress=tracker.band(end),
                )
                key = rendition_key(video_id, name)
                size = await self._upload(key, output_path, {"video-id": video_id, "profile": name})
                _discard_private_dir(output_path.parent)
                result.transcoded_files.append(TranscodedFile(profile=name, path=key, size=size))
                await tracker.advance(end)

        if request.generate_hls:
            await tracker.enter(PipelineStage.HLS)
            log.info("Generating HLS")
            stream = await self._encoder.package_hls(
                input_path,
                workdir=workdir,
                duration=duration,
                on_progress=tracker.band(STAGE_PROGRESS[PipelineStage.HLS]),
            )
            playlist, segments = await self._upload_stream(stream, lambda name: hls_key(video_id, name))
            result.hls = HLSOutput(playlist=playlist, segments=segments)
            await tracker.advance(STAGE_PROGRESS[PipelineStage.HLS])

        if request.generate_dash:
            await tracker.enter(PipelineStage.DASH)
            log.info("Generating DASH")
            stream = await self._encoder.package_dash(
                input_path,
                workdir=workdir,
                duration=duration,
                on_progress=tracker.band(STAGE_PROGRESS[PipelineStage.DASH]),
            )
            manifest, segments = await self._upload_stream(stream, lambda name: dash_key(video_id, name))
            result.dash = DASHOutput(manifest=manifest, segments=segments)
            await tracker.advance(STAGE_PROGRESS[PipelineStage.DASH])

        if request.generate_thumbnails:
            await tracker.enter(PipelineStage.THUMBNAILS)
            log.info("Generating thumbnails", count=self._settings.thumbnail_count)
            thumbnail_paths = await self._encoder.thumbnails(
                input_path,
                self._settings.thumbnail_count,
                workdir=workdir,
                duration=duration,
                on_progress=tracker.band(STAGE_PROGRESS[PipelineStage.THUMBNAILS]),
            )
            for index, path in enumerate(thumbnail_paths):
                key = thumbnail_key(video_id, index)
                await self._upload(key, path, {"video-id": video_id})
                result.thumbnails.append(key)
            for directory in {path.parent for path in thumbnail_paths}:
                _discard_private_dir(directory)
            await tracker.advance(STAGE_PROGRESS[PipelineStage.THUMBNAILS])

        await tracker.enter(PipelineStage.PREVIEW)
        log.info("Generating preview", max_duration=self._settings.preview_duration_seconds)
        preview_path = await self._encoder.preview(
            input_path,
            self._settings.preview_duration_seconds,
            workdir=workdir,
            duration=duration,
            on_progress=tracker.band(STAGE_PROGRESS[PipelineStage.PREVIEW]),
        )
        result.preview = preview_key(video_id)
        await self._upload(result.preview, preview_path, {"video-id": video_id})
        _discard_private_dir(preview_path.parent)
        await tracker.advance(STAGE_PROGRESS[PipelineStage.PREVIEW])

        return result

    async def _resolve_input(self, location: str, workdir: Path) -> Path:
        local = self._local_input(location)
        if local is not None:
            return local
        destination = workdir / "source" / PurePosixPath(location).name
        logger.info("Downloading source", key=location)
        return await self._store.download(location, destination)

    def _local_input(self, location: str) -> Optional[Path]:
        """A file under ``local_input_root``; anything else is an artifact key."""

        root = self._settings.local_input_root
        if root is None:
            return None
        root = root.resolve()
        candidate = (root / location).resolve()
        if not candidate.is_relative_to(root) or not candidate.is_file():
            return None
        return candidate

    async def _upload(self, key: str, path: Path, metadata: dict[str, str]) -> int:
        size = await self._store.put(key, path, content_type=content_type_for(key), metadata=metadata)
        path.unlink(missing_ok=True)
        return size

    async def _upload_stream(
        self,
        stream: PackagedStream,
        key_for: Callable[[str], str],
    ) -> tuple[str, list[str]]:
        # Segments go first so a published index never points at missing objects.
        segment_keys: list[str] = []
        for segment_path in stream.segment_paths:
            key = key_for(segment_path.name)
            await self._upload(key, segment_path, {})
            segment_keys.append(key)
        index_key = key_for(stream.index_path.name)
        await self._upload(index_key, stream.index_path, {})
        _discard_private_dir(stream.directory)
        return index_key, segment_keys

    async def _record_failure(self, job_id: str, tracker: ProgressTracker, exc: BaseException) -> None:
        try:
            await self._job_store.set_status(
                job_id,
                JobState.FAILED,
                tracker.current,
                error=str(exc) or exc.__class__.__name__,
                stage=tracker.stage,
                message=f"{exc.__class__.__name__} during {tracker.stage.value if tracker.stage else 'start'}",
            )
        except JobStoreError as store_exc:
            logger.error("Failed to record job failure", job_id=job_id, error=str(store_exc))

    @staticmethod
    def _cleanup_workdir(workdir: Path, log: FilteringBoundLogger) -> None:
        try:
            shutil.rmtree(workdir)
        except FileNotFoundError:
            pass
        except OSError as exc:  # pragma: no cover - best effort cleanup
            log.warning("Temporary directory cleanup failed", path=str(workdir), error=str(exc))

    async def delete_artifacts(self, result: TranscodeResult) -> list[str]:
        """Remove every object listed in a result manifest."""

        keys = result.artifact_keys()
        for key in keys:
            await self._store.delete(key)
        logger.info("Artifacts deleted", video_id=result.video_id, count=len(keys))
        return keys

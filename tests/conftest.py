from __future__ import annotations

import asyncio
import sys
import tempfile
from pathlib import Path
from typing import Callable, Iterable, Optional

import pytest
from fastapi.testclient import TestClient

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from video_transcoding_service.config import Settings, settings
from video_transcoding_service.encoder import AbstractEncoder, PackagedStream
from video_transcoding_service.errors import EncodeError, ProbeError
from video_transcoding_service.job_models import JobState, VideoMetadata
from video_transcoding_service.job_store import InMemoryJobStore
from video_transcoding_service.main import create_app
from video_transcoding_service.orchestrator import TranscodingOrchestrator
from video_transcoding_service.storage import InMemoryArtifactStore
from video_transcoding_service.work_queue import InMemoryWorkQueue, RetryPolicy


class FakeClock:
    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingJobStore(InMemoryJobStore):
    """Keeps every progress value written, in order."""

    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self.progress_history: list[int] = []

    async def update_progress(self, job_id, progress, *, stage=None, message=None):
        self.progress_history.append(progress)
        return await super().update_progress(job_id, progress, stage=stage, message=message)

    async def set_status(self, job_id, state, progress, **kwargs):
        if state in {JobState.ACTIVE, JobState.COMPLETED}:
            self.progress_history.append(progress)
        return await super().set_status(job_id, state, progress, **kwargs)


class FakeEncoder(AbstractEncoder):
    """Writes small canned files and reports a fixed progress sequence."""

    def __init__(
        self,
        *,
        duration: float = 120.0,
        fail_on: Iterable[str] = (),
        fail_times: Optional[int] = None,
        progress_steps: Iterable[int] = (20, 60, 100),
        delay: float = 0.0,
        on_enter: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.duration = duration
        self.fail_on = set(fail_on)
        self.fail_times = fail_times
        self.progress_steps = list(progress_steps)
        self.delay = delay
        self.on_enter = on_enter
        self.calls: list[str] = []
        self.inputs: list[Path] = []
        self._failures = 0

    def _enter(self, call: str) -> None:
        self.calls.append(call)
        if self.on_enter is not None:
            self.on_enter(call)
        if call.split(":")[0] not in self.fail_on:
            return
        if self.fail_times is not None and self._failures >= self.fail_times:
            return
        self._failures += 1
        if call == "metadata":
            raise ProbeError("No video stream found")
        raise EncodeError(["ffmpeg", call], "boom", 1)

    async def _report(self, on_progress) -> None:
        if self.delay:
            await asyncio.sleep(self.delay)
        if on_progress is None:
            return
        for step in self.progress_steps:
            await on_progress(step)

    @staticmethod
    def _private_dir(workdir: Path, prefix: str) -> Path:
        workdir.mkdir(parents=True, exist_ok=True)
        return Path(tempfile.mkdtemp(prefix=prefix, dir=workdir))

    async def metadata(self, input_path: Path) -> VideoMetadata:
        self.inputs.append(input_path)
        self._enter("metadata")
        return VideoMetadata(
            duration=self.duration,
            format="mov,mp4,m4a,3gp,3g2,mj2",
            width=1920,
            height=1080,
            bitrate=5_000_000,
            fps=29.97,
            codec="h264",
            audio_codec="aac",
            audio_bitrate=128_000,
        )

    async def transcode(self, input_path, profile, *, workdir, duration=None, on_progress=None) -> Path:
        self._enter(f"transcode:{profile.name}")
        output = self._private_dir(workdir, f"{profile.name}-") / f"{profile.name}.mp4"
        output.write_bytes(profile.name.encode() * 10)
        await self._report(on_progress)
        return output

    async def package_hls(self, input_path, *, workdir, duration=None, on_progress=None) -> PackagedStream:
        self._enter("hls")
        directory = self._private_dir(workdir, "hls-")
        segments = []
        for index in range(3):
            segment = directory / f"segment_{index:03d}.ts"
            segment.write_bytes(b"ts")
            segments.append(segment)
        playlist = directory / "playlist.m3u8"
        playlist.write_text("#EXTM3U\n")
        await self._report(on_progress)
        return PackagedStream(playlist, segments)

    async def package_dash(self, input_path, *, workdir, duration=None, on_progress=None) -> PackagedStream:
        self._enter("dash")
        directory = self._private_dir(workdir, "dash-")
        segments = []
        for name in ("init_0.m4s", "init_1.m4s", "segment_0_1.m4s", "segment_1_1.m4s"):
            segment = directory / name
            segment.write_bytes(b"m4s")
            segments.append(segment)
        manifest = directory / "manifest.mpd"
        manifest.write_text("<MPD/>")
        await self._report(on_progress)
        return PackagedStream(manifest, segments)

    async def thumbnails(self, input_path, count, *, workdir, duration=None, on_progress=None) -> list[Path]:
        self._enter("thumbnails")
        directory = self._private_dir(workdir, "thumbs-")
        paths = []
        for index in range(count):
            path = directory / f"thumb_{index}.jpg"
            path.write_bytes(b"jpg")
            paths.append(path)
        await self._report(on_progress)
        return paths

    async def preview(self, input_path, max_duration, *, workdir, duration=None, on_progress=None) -> Path:
        self._enter("preview")
        output = self._private_dir(workdir, "preview-") / "preview.mp4"
        output.write_bytes(b"preview")
        await self._report(on_progress)
        return output


@pytest.fixture()
def test_settings(tmp_path: Path) -> Settings:
    return settings.model_copy(
        update={
            "temp_dir": tmp_path / "work",
            "local_input_root": tmp_path,
            "queue_backend": "memory",
            "storage_backend": "memory",
            "queue_poll_interval_seconds": 0.01,
            "enable_4k": False,
        }
    )


@pytest.fixture()
def source_file(tmp_path: Path) -> Path:
    path = tmp_path / "source.mp4"
    path.write_bytes(b"not really a video")
    return path


@pytest.fixture()
def fake_encoder() -> FakeEncoder:
    return FakeEncoder()


@pytest.fixture()
def in_memory_store() -> RecordingJobStore:
    return RecordingJobStore()


@pytest.fixture()
def artifact_store() -> InMemoryArtifactStore:
    return InMemoryArtifactStore()


@pytest.fixture()
def orchestrator(
    fake_encoder: FakeEncoder,
    artifact_store: InMemoryArtifactStore,
    in_memory_store: RecordingJobStore,
    test_settings: Settings,
) -> TranscodingOrchestrator:
    return TranscodingOrchestrator(fake_encoder, artifact_store, in_memory_store, test_settings)


@pytest.fixture()
def work_queue() -> InMemoryWorkQueue:
    return InMemoryWorkQueue(RetryPolicy(max_attempts=1, base_delay=0.0))


@pytest.fixture()
def api_client(
    in_memory_store: RecordingJobStore,
    work_queue: InMemoryWorkQueue,
    artifact_store: InMemoryArtifactStore,
    fake_encoder: FakeEncoder,
    test_settings: Settings,
) -> TestClient:
    app = create_app(
        job_store=in_memory_store,
        work_queue=work_queue,
        artifact_store=artifact_store,
        encoder=fake_encoder,
        app_settings=test_settings,
        start_workers=False,
    )
    with TestClient(app) as client:
        yield client

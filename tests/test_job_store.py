from __future__ import annotations

import asyncio

from conftest import FakeClock

from video_transcoding_service.job_models import (
    JobRecord,
    JobState,
    PipelineStage,
    QueueMetrics,
    TranscodeRequest,
    TranscodeResult,
)
from video_transcoding_service.job_store import InMemoryJobStore


def _record(job_id: str = "job-1") -> JobRecord:
    return JobRecord(job_id=job_id, request=TranscodeRequest(video_id="v1", input_location="in.mp4"))


def test_set_status_overwrites_error_and_result() -> None:
    store = InMemoryJobStore()

    async def scenario() -> JobRecord | None:
        await store.create_job(_record())
        await store.set_status("job-1", JobState.FAILED, 35, error="boom", stage=PipelineStage.HLS)
        await store.set_status("job-1", JobState.ACTIVE, 0, attempts=2)
        return await store.get_job("job-1")

    record = asyncio.run(scenario())

    assert record is not None
    assert record.state is JobState.ACTIVE
    assert record.error is None
    assert record.attempts == 2
    assert record.stage is PipelineStage.HLS


def test_update_progress_clamps_and_keeps_state() -> None:
    store = InMemoryJobStore()

    async def scenario() -> JobRecord | None:
        await store.create_job(_record())
        await store.update_progress("job-1", 140, stage=PipelineStage.TRANSCODE)
        return await store.get_job("job-1")

    record = asyncio.run(scenario())

    assert record is not None
    assert record.progress == 100
    assert record.state is JobState.QUEUED
    assert record.stage is PipelineStage.TRANSCODE


def test_records_expire_unless_written() -> None:
    clock = FakeClock()
    store = InMemoryJobStore(ttl_seconds=60, clock=clock)

    async def scenario() -> tuple[JobRecord | None, JobRecord | None]:
        await store.create_job(_record("job-1"))
        await store.create_job(_record("job-2"))
        clock.advance(50)
        await store.update_progress("job-2", 10)
        clock.advance(20)
        return await store.get_job("job-1"), await store.get_job("job-2")

    expired, refreshed = asyncio.run(scenario())

    assert expired is None
    assert refreshed is not None and refreshed.progress == 10


def test_writes_to_unknown_job_are_ignored() -> None:
    store = InMemoryJobStore()

    assert asyncio.run(store.set_status("missing", JobState.ACTIVE, 0)) is None
    assert asyncio.run(store.update_progress("missing", 10)) is None


def test_returned_records_are_copies() -> None:
    store = InMemoryJobStore()

    async def scenario() -> JobRecord | None:
        await store.create_job(_record())
        first = await store.get_job("job-1")
        assert first is not None
        first.progress = 90
        return await store.get_job("job-1")

    assert asyncio.run(scenario()).progress == 0


def test_count_by_state_feeds_metrics() -> None:
    store = InMemoryJobStore()
    result = TranscodeResult(video_id="v1")

    async def scenario() -> dict[JobState, int]:
        for index in range(4):
            await store.create_job(_record(f"job-{index}"))
        await store.set_status("job-1", JobState.ACTIVE, 5)
        await store.set_status("job-2", JobState.COMPLETED, 100, result=result)
        await store.set_status("job-3", JobState.FAILED, 40, error="boom")
        return await store.count_by_state()

    metrics = QueueMetrics.from_counts(asyncio.run(scenario()))

    assert (metrics.queued, metrics.active, metrics.completed, metrics.failed) == (1, 1, 1, 1)
    assert metrics.total == 4

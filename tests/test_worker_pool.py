from __future__ import annotations

import asyncio
import time
from pathlib import Path
from typing import Callable, Optional

from conftest import FakeClock, FakeEncoder, RecordingJobStore

from video_transcoding_service.job_models import JobRecord, JobState, TranscodeRequest
from video_transcoding_service.orchestrator import TranscodingOrchestrator
from video_transcoding_service.storage import InMemoryArtifactStore
from video_transcoding_service.work_queue import EntryState, InMemoryWorkQueue, RetryPolicy
from video_transcoding_service.worker import JobWorker
from video_transcoding_service.worker_pool import WorkerPool


def _pool(
    encoder: FakeEncoder,
    store: RecordingJobStore,
    test_settings,
    *,
    policy: RetryPolicy,
    concurrency: int = 1,
    clock: Optional[Callable[[], float]] = None,
) -> tuple[WorkerPool, InMemoryWorkQueue]:
    queue = InMemoryWorkQueue(policy, lease_seconds=30, clock=clock or time.monotonic)
    orchestrator = TranscodingOrchestrator(encoder, InMemoryArtifactStore(), store, test_settings)
    worker = JobWorker(orchestrator, store, max_attempts=policy.max_attempts)
    return WorkerPool(queue, worker, concurrency=concurrency, poll_interval=0.01), queue


async def _submit(store: RecordingJobStore, queue: InMemoryWorkQueue, job_id: str, request: TranscodeRequest) -> None:
    await store.create_job(JobRecord(job_id=job_id, request=request, max_attempts=queue.policy.max_attempts))
    await queue.enqueue(job_id, request)


async def _run_until_drained(pool: WorkerPool) -> None:
    await pool.start()
    try:
        await asyncio.wait_for(pool.drain(), timeout=5)
    finally:
        await pool.stop(timeout=5)


def test_failing_job_is_attempted_exactly_max_attempts_times(test_settings, source_file: Path) -> None:
    encoder = FakeEncoder(fail_on=["transcode"])
    store = RecordingJobStore()
    pool, queue = _pool(encoder, store, test_settings, policy=RetryPolicy(max_attempts=3, base_delay=0.0))
    request = TranscodeRequest(video_id="v1", input_location=str(source_file), profiles=["720p"])

    async def scenario():
        await _submit(store, queue, "job-1", request)
        await _run_until_drained(pool)
        return await store.get_job("job-1"), await queue.get_entry("job-1")

    record, entry = asyncio.run(scenario())

    assert encoder.calls.count("metadata") == 3
    assert record is not None
    assert record.state is JobState.FAILED
    assert record.attempts == 3
    assert "boom" in (record.error or "")
    assert entry is not None and entry.state is EntryState.DEAD


def test_transient_failure_recovers_on_redelivery(test_settings, source_file: Path) -> None:
    encoder = FakeEncoder(fail_on=["hls"], fail_times=1)
    store = RecordingJobStore()
    pool, queue = _pool(encoder, store, test_settings, policy=RetryPolicy(max_attempts=3, base_delay=0.0))
    request = TranscodeRequest(video_id="v1", input_location=str(source_file), generate_hls=True)

    async def scenario():
        await _submit(store, queue, "job-1", request)
        await _run_until_drained(pool)
        return await store.get_job("job-1")

    record = asyncio.run(scenario())

    assert record is not None
    assert record.state is JobState.COMPLETED
    assert record.attempts == 2
    assert record.error is None
    assert record.progress == 100
    assert record.result is not None and record.result.hls is not None
    # The redelivered attempt starts again from 0 after the first one got to 10.
    history = store.progress_history
    restart = history.index(0, history.index(10))
    assert max(history[:restart]) == 10
    assert history[restart:] == sorted(history[restart:])
    assert history[-1] == 100


def test_permanent_error_fast_fails_when_enabled(test_settings, source_file: Path) -> None:
    encoder = FakeEncoder(fail_on=["metadata"])
    store = RecordingJobStore()
    policy = RetryPolicy(max_attempts=3, base_delay=0.0, fast_fail_permanent=True)
    pool, queue = _pool(encoder, store, test_settings, policy=policy)
    request = TranscodeRequest(video_id="v1", input_location=str(source_file))

    async def scenario():
        await _submit(store, queue, "job-1", request)
        await _run_until_drained(pool)
        return await store.get_job("job-1")

    record = asyncio.run(scenario())

    assert encoder.calls == ["metadata"]
    assert record is not None
    assert record.state is JobState.FAILED
    assert record.error == "No video stream found"


def test_pool_never_exceeds_concurrency(test_settings, source_file: Path) -> None:
    encoder = FakeEncoder(delay=0.02)
    store = RecordingJobStore()
    pool, queue = _pool(encoder, store, test_settings, policy=RetryPolicy(base_delay=0.0), concurrency=2)

    async def scenario():
        for index in range(5):
            request = TranscodeRequest(video_id=f"v{index}", input_location=str(source_file), profiles=["360p"])
            await _submit(store, queue, f"job-{index}", request)
        await _run_until_drained(pool)
        return await store.count_by_state()

    counts = asyncio.run(scenario())

    assert counts[JobState.COMPLETED] == 5
    assert 1 <= pool.peak_active <= 2
    assert not pool.running


def test_lease_expiry_on_final_attempt_marks_job_failed(test_settings, source_file: Path) -> None:
    clock = FakeClock()
    store = RecordingJobStore()
    _, queue = _pool(FakeEncoder(), store, test_settings, policy=RetryPolicy(max_attempts=1), clock=clock)
    request = TranscodeRequest(video_id="v1", input_location=str(source_file))

    async def scenario():
        await _submit(store, queue, "job-1", request)
        delivery = await queue.dequeue()
        # The worker reports some progress, then stalls without renewing its lease.
        await store.set_status("job-1", JobState.ACTIVE, 30, attempts=delivery.attempt)
        clock.advance(31)
        return await queue.counts(), await store.get_job("job-1")

    counts, record = asyncio.run(scenario())

    assert counts["dead"] == 1
    assert record is not None
    assert record.state is JobState.FAILED
    assert record.error == "Lease expired before the job was acknowledged"
    assert record.progress == 30


def test_lease_expiry_with_attempts_left_requeues_job(test_settings, source_file: Path) -> None:
    clock = FakeClock()
    store = RecordingJobStore()
    _, queue = _pool(FakeEncoder(), store, test_settings, policy=RetryPolicy(max_attempts=2), clock=clock)
    request = TranscodeRequest(video_id="v1", input_location=str(source_file))

    async def scenario():
        await _submit(store, queue, "job-1", request)
        await queue.dequeue()
        clock.advance(31)
        redelivery = await queue.dequeue()
        return redelivery, await store.get_job("job-1")

    redelivery, record = asyncio.run(scenario())

    assert redelivery is not None and redelivery.attempt == 2
    assert record is not None
    assert record.state is JobState.QUEUED
    assert "Lease expired" in (record.message or "")


def test_stale_worker_does_not_publish_after_losing_lease(test_settings, source_file: Path) -> None:
    clock = FakeClock()
    stalled: list[str] = []

    def stall_once(call: str) -> None:
        if call == "preview" and not stalled:
            stalled.append(call)
            clock.advance(31)

    encoder = FakeEncoder(on_enter=stall_once)
    store = RecordingJobStore()
    pool, queue = _pool(encoder, store, test_settings, policy=RetryPolicy(max_attempts=3, base_delay=0.0), clock=clock)
    request = TranscodeRequest(video_id="v1", input_location=str(source_file))

    async def scenario():
        await _submit(store, queue, "job-1", request)
        stale = await queue.dequeue()
        await pool.process(stale)
        after_stale = await store.get_job("job-1")

        fresh = await queue.dequeue()
        requeued = await store.get_job("job-1")
        await pool.process(fresh)
        return after_stale, requeued, fresh, await store.get_job("job-1"), await queue.get_entry("job-1")

    after_stale, requeued, fresh, record, entry = asyncio.run(scenario())

    assert after_stale is not None
    assert after_stale.state is JobState.ACTIVE
    assert after_stale.result is None
    assert requeued is not None and requeued.state is JobState.QUEUED
    assert fresh is not None and fresh.attempt == 2
    assert record is not None
    assert record.state is JobState.COMPLETED
    assert record.attempts == 2
    assert entry is not None and entry.state is EntryState.COMPLETED

"""Job state persistence for API and worker usage.

Every write replaces the stored snapshot and refreshes its expiry, so jobs that
stay idle long enough disappear on their own. A job is only ever written by the
single worker that holds its lease, which is why no compare-and-set is used.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Callable, Optional

import structlog
from redis.asyncio import Redis as AsyncRedis
from redis.exceptions import RedisError

from .errors import JobStoreError
from .job_models import JobRecord, JobState, PipelineStage, TranscodeResult, utcnow

logger = structlog.get_logger(__name__)

DEFAULT_TTL_SECONDS = 86400


class AbstractJobStore:
    """Common interface for job state storage."""

    async def create_job(self, record: JobRecord) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def get_job(self, job_id: str) -> Optional[JobRecord]:  # pragma: no cover - interface
        raise NotImplementedError

    async def set_status(
        self,
        job_id: str,
        state: JobState,
        progress: int,
        *,
        error: Optional[str] = None,
        result: Optional[TranscodeResult] = None,
        stage: Optional[PipelineStage] = None,
        attempts: Optional[int] = None,
        max_attempts: Optional[int] = None,
        message: Optional[str] = None,
    ) -> Optional[JobRecord]:  # pragma: no cover - interface
        raise NotImplementedError

    async def update_progress(
        self,
        job_id: str,
        progress: int,
        *,
        stage: Optional[PipelineStage] = None,
        message: Optional[str] = None,
    ) -> Optional[JobRecord]:  # pragma: no cover - interface
        raise NotImplementedError

    async def count_by_state(self) -> dict[JobState, int]:  # pragma: no cover - interface
        raise NotImplementedError

    async def close(self) -> None:  # pragma: no cover - interface
        """Release any allocated resources."""
        return None


def _status_update(
    record: JobRecord,
    state: JobState,
    progress: int,
    *,
    error: Optional[str],
    result: Optional[TranscodeResult],
    stage: Optional[PipelineStage],
    attempts: Optional[int],
    max_attempts: Optional[int],
    message: Optional[str],
) -> JobRecord:
    update_data: dict[str, Any] = {
        "state": state,
        "progress": max(0, min(100, int(progress))),
        "error": error,
        "result": result,
        "message": message,
        "updated_at": utcnow(),
    }
    if stage is not None:
        update_data["stage"] = stage
    if attempts is not None:
        update_data["attempts"] = attempts
    if max_attempts is not None:
        update_data["max_attempts"] = max_attempts
    return record.model_copy(update=update_data)


def _progress_update(
    record: JobRecord,
    progress: int,
    *,
    stage: Optional[PipelineStage],
    message: Optional[str],
) -> JobRecord:
    update_data: dict[str, Any] = {
        "progress": max(0, min(100, int(progress))),
        "updated_at": utcnow(),
    }
    if stage is not None:
        update_data["stage"] = stage
    if message is not None:
        update_data["message"] = message
    return record.model_copy(update=update_data)


class InMemoryJobStore(AbstractJobStore):
    """Simple asyncio-safe in-memory store used for testing and local dev."""

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._records: dict[str, tuple[JobRecord, float]] = {}
        self._ttl = ttl_seconds
        self._clock = clock
        self._lock = asyncio.Lock()

    def _live(self, job_id: str) -> Optional[JobRecord]:
        entry = self._records.get(job_id)
        if entry is None:
            return None
        record, expires_at = entry
        if self._clock() >= expires_at:
            del self._records[job_id]
            return None
        return record

    def _store(self, record: JobRecord) -> JobRecord:
        self._records[record.job_id] = (record, self._clock() + self._ttl)
        return record.model_copy(deep=True)

    async def create_job(self, record: JobRecord) -> None:
        async with self._lock:
            self._store(record)

    async def get_job(self, job_id: str) -> Optional[JobRecord]:
        async with self._lock:
            record = self._live(job_id)
            return record.model_copy(deep=True) if record else None

    async def set_status(
        self,
        job_id: str,
        state: JobState,
        progress: int,
        *,
        error: Optional[str] = None,
        result: Optional[TranscodeResult] = None,
        stage: Optional[PipelineStage] = None,
        attempts: Optional[int] = None,
        max_attempts: Optional[int] = None,
        message: Optional[str] = None,
    ) -> Optional[JobRecord]:
        async with self._lock:
            record = self._live(job_id)
            if not record:
                return None
            return self._store(
                _status_update(
                    record,
                    state,
                    progress,
                    error=error,
                    result=result,
                    stage=stage,
                    attempts=attempts,
                    max_attempts=max_attempts,
                    message=message,
                )
            )

    async def update_progress(
        self,
        job_id: str,
        progress: int,
        *,
        stage: Optional[PipelineStage] = None,
        message: Optional[str] = None,
    ) -> Optional[JobRecord]:
        async with self._lock:
            record = self._live(job_id)
            if not record:
                return None
            return self._store(_progress_update(record, progress, stage=stage, message=message))

    async def count_by_state(self) -> dict[JobState, int]:
        async with self._lock:
            counts = {state: 0 for state in JobState}
            for job_id in list(self._records):
                record = self._live(job_id)
                if record:
                    counts[record.state] += 1
            return counts

    async def close(self) -> None:
        self._records.clear()


def _job_key(job_id: str) -> str:
    return f"video-job:{job_id}"


class RedisJobStore(AbstractJobStore):
    """Redis-backed store shared by the API and the workers."""

    def __init__(self, redis_url: str, ttl_seconds: int = DEFAULT_TTL_SECONDS) -> None:
        self._redis = AsyncRedis.from_url(redis_url, decode_responses=True)
        self._ttl = ttl_seconds

    async def _read(self, job_id: str) -> Optional[JobRecord]:
        try:
            raw = await self._redis.get(_job_key(job_id))
        except RedisError as exc:
            raise JobStoreError(f"Failed to read job {job_id}: {exc}") from exc
        if raw is None:
            return None
        return JobRecord.model_validate_json(raw)

    async def _write(self, record: JobRecord) -> JobRecord:
        try:
            await self._redis.set(_job_key(record.job_id), record.model_dump_json(), ex=self._ttl)
        except RedisError as exc:
            raise JobStoreError(f"Failed to write job {record.job_id}: {exc}") from exc
        return record

    async def create_job(self, record: JobRecord) -> None:
        await self._write(record)

    async def get_job(self, job_id: str) -> Optional[JobRecord]:
        return await self._read(job_id)

    async def set_status(
        self,
        job_id: str,
        state: JobState,
        progress: int,
        *,
        error: Optional[str] = None,
        result: Optional[TranscodeResult] = None,
        stage: Optional[PipelineStage] = None,
        attempts: Optional[int] = None,
        max_attempts: Optional[int] = None,
        message: Optional[str] = None,
    ) -> Optional[JobRecord]:
        record = await self._read(job_id)
        if record is None:
            logger.warning("Status write for unknown or expired job", job_id=job_id, state=state.value)
            return None
        return await self._write(
            _status_update(
                record,
                state,
                progress,
                error=error,
                result=result,
                stage=stage,
                attempts=attempts,
                max_attempts=max_attempts,
                message=message,
            )
        )

    async def update_progress(
        self,
        job_id: str,
        progress: int,
        *,
        stage: Optional[PipelineStage] = None,
        message: Optional[str] = None,
    ) -> Optional[JobRecord]:
        record = await self._read(job_id)
        if record is None:
            return None
        return await self._write(_progress_update(record, progress, stage=stage, message=message))

    async def count_by_state(self) -> dict[JobState, int]:
        counts = {state: 0 for state in JobState}
        try:
            async for key in self._redis.scan_iter(match=_job_key("*"), count=500):
                raw = await self._redis.get(key)
                if raw is None:
                    continue
                counts[JobRecord.model_validate_json(raw).state] += 1
        except RedisError as exc:
            raise JobStoreError(f"Failed to count jobs: {exc}") from exc
        return counts

    async def close(self) -> None:
        await self._redis.aclose()
        await self._redis.connection_pool.disconnect()

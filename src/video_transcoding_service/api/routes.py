"""HTTP API routes for the video transcoding service."""

from __future__ import annotations

from typing import Optional
from uuid import uuid4

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from ..errors import QueueTransportError, StorageError
from ..job_models import (
    JobCreatedResponse,
    JobRecord,
    JobState,
    JobStatusResponse,
    PresignedUrlResponse,
    QueueMetrics,
    TranscodeRequest,
)
from ..runtime import ServiceContainer

logger = structlog.get_logger(__name__)

router = APIRouter()


def get_container(request: Request) -> ServiceContainer:
    container = getattr(request.app.state, "container", None)
    if container is None:
        raise RuntimeError("Service container not configured")
    return container


async def _load_job(container: ServiceContainer, job_id: str) -> JobRecord:
    record = await container.job_store.get_job(job_id)
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    return record


async def _enqueue(container: ServiceContainer, job_id: str, request_body: TranscodeRequest) -> None:
    try:
        await container.work_queue.enqueue(job_id, request_body)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except QueueTransportError as exc:
        await container.job_store.set_status(job_id, JobState.FAILED, 0, error=str(exc), message="Enqueue failed")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Work queue unavailable") from exc


@router.get("/health", tags=["health"])
async def healthcheck() -> dict[str, bool]:
    """Liveness probe endpoint."""

    return {"ok": True}


@router.post("/jobs/transcode", response_model=JobCreatedResponse, status_code=status.HTTP_202_ACCEPTED)
async def submit_transcode_job(
    request_body: TranscodeRequest,
    container: ServiceContainer = Depends(get_container),
) -> JobCreatedResponse:
    """Schedule a transcoding job."""

    job_id = uuid4().hex
    record = JobRecord(
        job_id=job_id,
        request=request_body,
        state=JobState.QUEUED,
        max_attempts=container.retry_policy.max_attempts,
    )
    await container.job_store.create_job(record)
    await _enqueue(container, job_id, request_body)
    logger.info("Transcoding job submitted", job_id=job_id, video_id=request_body.video_id)
    return JobCreatedResponse(job_id=job_id)


@router.get("/jobs/metrics", response_model=QueueMetrics)
async def get_queue_metrics(container: ServiceContainer = Depends(get_container)) -> QueueMetrics:
    """Count tracked jobs per lifecycle state."""

    return QueueMetrics.from_counts(await container.job_store.count_by_state())


@router.get("/jobs/{job_id}", response_model=JobStatusResponse)
async def get_job_status(
    job_id: str,
    container: ServiceContainer = Depends(get_container),
) -> JobStatusResponse:
    """Fetch the status of a previously scheduled job."""

    return JobStatusResponse.from_record(await _load_job(container, job_id))


@router.post("/jobs/{job_id}/retry", response_model=JobCreatedResponse, status_code=status.HTTP_202_ACCEPTED)
async def retry_job(
    job_id: str,
    container: ServiceContainer = Depends(get_container),
) -> JobCreatedResponse:
    """Give a permanently failed job a fresh attempt budget."""

    record = await _load_job(container, job_id)
    if record.state is not JobState.FAILED:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=f"Job is {record.state.value}")
    await container.job_store.set_status(
        job_id,
        JobState.QUEUED,
        0,
        attempts=0,
        message="Requeued after permanent failure",
    )
    await _enqueue(container, job_id, record.request)
    logger.info("Transcoding job requeued", job_id=job_id)
    return JobCreatedResponse(job_id=job_id)


@router.delete("/jobs/{job_id}/artifacts")
async def delete_job_artifacts(
    job_id: str,
    container: ServiceContainer = Depends(get_container),
) -> dict[str, list[str]]:
    """Remove every artifact a completed job produced."""

    record = await _load_job(container, job_id)
    if record.state is not JobState.COMPLETED or record.result is None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Job has no artifacts")
    try:
        deleted = await container.orchestrator.delete_artifacts(record.result)
    except StorageError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
    return {"deleted": deleted}


@router.get("/artifacts/url", response_model=PresignedUrlResponse)
async def get_artifact_url(
    key: str = Query(min_length=1),
    expires: Optional[int] = Query(default=None, gt=0, le=7 * 86400),
    container: ServiceContainer = Depends(get_container),
) -> PresignedUrlResponse:
    """Sign a time-limited download URL for an artifact."""

    expires_in = expires or container.settings.s3_presign_expire_seconds
    try:
        url = await container.artifact_store.presigned_get(key, expires_in)
    except StorageError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
    return PresignedUrlResponse(key=key, url=url, expires_in=expires_in)

"""Celery task implementation for the transcoding pipeline."""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Optional

import structlog
from celery import Task

from .celery_app import celery_app
from .config import settings
from .errors import LeaseLostError
from .job_models import JobState, TranscodeRequest
from .runtime import ServiceContainer, build_container
from .work_queue import RetryDecision
from .worker import AttemptOutcome

logger = structlog.get_logger(__name__)


ContainerProvider = Callable[[], ServiceContainer]

_container_provider: Optional[ContainerProvider] = None


def set_container_provider(provider: Optional[ContainerProvider]) -> None:
    """Override how workers build their collaborators (used during testing)."""

    global _container_provider
    _container_provider = provider


def _get_container() -> ServiceContainer:
    if _container_provider:
        return _container_provider()
    # The Celery worker is the pool; no in-process workers here.
    return build_container(settings, start_workers=False)


async def run_delivery(
    job_id: str,
    request: TranscodeRequest,
    retries: int,
) -> tuple[AttemptOutcome, Optional[RetryDecision]]:
    """Run one delivery and, on failure, settle the job record per the retry policy.

    The attempt number is one past the larger of Celery's retry count and the
    attempts already recorded on the job. A message redelivered after its
    worker died keeps ``retries`` unchanged, so only the record counts it.
    """

    container = _get_container()
    try:
        policy = container.retry_policy
        record = await container.job_store.get_job(job_id)
        if record is not None and record.state is JobState.COMPLETED and record.result is not None:
            logger.info("Duplicate delivery of a completed job ignored", job_id=job_id)
            return AttemptOutcome(job_id=job_id, attempt=record.attempts, result=record.result), None
        previous = max(retries, record.attempts if record else 0)
        if previous >= policy.max_attempts:
            outcome = AttemptOutcome(
                job_id=job_id,
                attempt=previous,
                error=LeaseLostError(f"Worker lost during attempt {previous}, no attempts left"),
            )
            decision = RetryDecision(retry=False, delay=0.0, attempts=previous)
            await container.job_worker.settle_failure(outcome, decision)
            return outcome, decision

        attempt = previous + 1
        outcome = await container.job_worker.run_attempt(job_id, request, attempt)
        if outcome.succeeded:
            return outcome, None
        decision = policy.decide(attempt, outcome.error)
        await container.job_worker.settle_failure(outcome, decision)
        return outcome, decision
    finally:
        await container.close()


# max_retries=None leaves the bound to the container's RetryPolicy.
@celery_app.task(name="video.transcode", bind=True, acks_late=True, reject_on_worker_lost=True, max_retries=None)
def transcode_video(self: Task, job_id: str, payload: dict[str, Any]) -> dict[str, Any]:
    """Celery task running one attempt of the transcoding pipeline."""

    request = TranscodeRequest.model_validate(payload)
    outcome, decision = asyncio.run(run_delivery(job_id, request, self.request.retries))

    if outcome.error is None:
        if outcome.result is None:
            raise RuntimeError(f"Job {job_id} finished without a result manifest")
        return outcome.result.model_dump(mode="json", by_alias=True)

    if decision is None:
        raise RuntimeError(f"Job {job_id} failed without a retry decision")
    if decision.retry:
        raise self.retry(exc=outcome.error, countdown=decision.delay)
    logger.error("Transcoding job dead-lettered", job_id=job_id, attempts=outcome.attempt)
    raise outcome.error

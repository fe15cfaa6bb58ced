"""Per-delivery job handling shared by the Celery task and the in-process pool."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import structlog

from .errors import LeaseLostError
from .job_models import JobState, TranscodeRequest, TranscodeResult
from .job_store import AbstractJobStore
from .orchestrator import LeaseCheck, TranscodingOrchestrator
from .work_queue import LEASE_EXPIRED_MESSAGE, LeaseExpiry, RetryDecision

logger = structlog.get_logger(__name__)


@dataclass(slots=True)
class AttemptOutcome:
    job_id: str
    attempt: int
    result: Optional[TranscodeResult] = None
    error: Optional[Exception] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


class JobWorker:
    """Runs one delivery attempt and settles the job record afterwards."""

    def __init__(
        self,
        orchestrator: TranscodingOrchestrator,
        job_store: AbstractJobStore,
        max_attempts: int,
    ) -> None:
        self.orchestrator = orchestrator
        self.job_store = job_store
        self.max_attempts = max_attempts

    async def run_attempt(
        self,
        job_id: str,
        request: TranscodeRequest,
        attempt: int,
        *,
        lease_check: Optional[LeaseCheck] = None,
    ) -> AttemptOutcome:
        if lease_check is not None and not await lease_check():
            return AttemptOutcome(job_id=job_id, attempt=attempt, error=LeaseLostError(LEASE_EXPIRED_MESSAGE))
        # Progress starts over on every attempt.
        await self.job_store.set_status(
            job_id,
            JobState.ACTIVE,
            0,
            attempts=attempt,
            max_attempts=self.max_attempts,
            message=f"Attempt {attempt} of {self.max_attempts} accepted by worker",
        )
        logger.info("Job attempt started", job_id=job_id, video_id=request.video_id, attempt=attempt)
        try:
            result = await self.orchestrator.run(job_id, request, lease_check=lease_check)
        except Exception as exc:
            return AttemptOutcome(job_id=job_id, attempt=attempt, error=exc)
        return AttemptOutcome(job_id=job_id, attempt=attempt, result=result)

    async def settle_failure(self, outcome: AttemptOutcome, decision: RetryDecision) -> None:
        error = str(outcome.error) if outcome.error is not None else "unknown error"
        record = await self.job_store.get_job(outcome.job_id)
        if decision.retry:
            await self.job_store.set_status(
                outcome.job_id,
                JobState.QUEUED,
                0,
                stage=record.stage if record else None,
                message=f"Attempt {outcome.attempt} failed, retrying in {decision.delay:.1f}s: {error}",
            )
            logger.warning(
                "Job attempt failed, retry scheduled",
                job_id=outcome.job_id,
                attempt=outcome.attempt,
                delay=decision.delay,
                error=error,
            )
            return

        await self.job_store.set_status(
            outcome.job_id,
            JobState.FAILED,
            record.progress if record else 0,
            error=error,
            stage=record.stage if record else None,
            message=f"Permanent failure after {outcome.attempt} attempts",
        )
        logger.error("Job failed permanently", job_id=outcome.job_id, attempts=outcome.attempt, error=error)

    async def settle_lease_expiry(self, expiry: LeaseExpiry) -> None:
        """Record a delivery whose worker stopped renewing its lease."""

        outcome = AttemptOutcome(
            job_id=expiry.job_id,
            attempt=expiry.attempt,
            error=LeaseLostError(LEASE_EXPIRED_MESSAGE),
        )
        await self.settle_failure(outcome, expiry.decision)

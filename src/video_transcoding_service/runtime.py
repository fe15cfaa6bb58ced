"""Composition root wiring stores, encoder, orchestrator and work queue together."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .config import Settings
from .encoder import AbstractEncoder, FFmpegEncoder
from .job_store import AbstractJobStore, InMemoryJobStore, RedisJobStore
from .orchestrator import TranscodingOrchestrator
from .storage import AbstractArtifactStore, create_artifact_store
from .work_queue import AbstractWorkQueue, CeleryWorkQueue, InMemoryWorkQueue, RetryPolicy
from .worker import JobWorker
from .worker_pool import WorkerPool


@dataclass
class ServiceContainer:
    settings: Settings
    job_store: AbstractJobStore
    artifact_store: AbstractArtifactStore
    encoder: AbstractEncoder
    orchestrator: TranscodingOrchestrator
    job_worker: JobWorker
    retry_policy: RetryPolicy
    work_queue: AbstractWorkQueue
    worker_pool: Optional[WorkerPool] = None

    async def start(self) -> None:
        if self.worker_pool is not None:
            await self.worker_pool.start()

    async def close(self) -> None:
        if self.worker_pool is not None:
            await self.worker_pool.stop()
        await self.work_queue.close()
        await self.job_store.close()


def _default_work_queue(settings: Settings, policy: RetryPolicy) -> AbstractWorkQueue:
    if settings.queue_backend == "memory":
        return InMemoryWorkQueue.from_settings(settings)
    from .tasks import transcode_video  # local import to avoid cycle

    return CeleryWorkQueue(policy, transcode_video)


def build_container(
    settings: Settings,
    *,
    job_store: Optional[AbstractJobStore] = None,
    artifact_store: Optional[AbstractArtifactStore] = None,
    encoder: Optional[AbstractEncoder] = None,
    work_queue: Optional[AbstractWorkQueue] = None,
    start_workers: bool = True,
) -> ServiceContainer:
    """Build every collaborator, using the supplied ones where given."""

    if job_store is None:
        if settings.queue_backend == "memory":
            job_store = InMemoryJobStore(ttl_seconds=settings.job_state_ttl_seconds)
        else:
            job_store = RedisJobStore(settings.redis_url, ttl_seconds=settings.job_state_ttl_seconds)
    artifact_store = artifact_store or create_artifact_store(settings)
    encoder = encoder or FFmpegEncoder(settings)
    policy = RetryPolicy.from_settings(settings)

    work_queue = work_queue or _default_work_queue(settings, policy)
    policy = getattr(work_queue, "policy", policy)

    orchestrator = TranscodingOrchestrator(encoder, artifact_store, job_store, settings)
    job_worker = JobWorker(orchestrator, job_store, max_attempts=policy.max_attempts)
    if isinstance(work_queue, InMemoryWorkQueue):
        work_queue.set_expiry_listener(job_worker.settle_lease_expiry)

    worker_pool = None
    if start_workers and isinstance(work_queue, InMemoryWorkQueue):
        worker_pool = WorkerPool(
            work_queue,
            job_worker,
            concurrency=settings.queue_concurrency,
            poll_interval=settings.queue_poll_interval_seconds,
        )

    return ServiceContainer(
        settings=settings,
        job_store=job_store,
        artifact_store=artifact_store,
        encoder=encoder,
        orchestrator=orchestrator,
        job_worker=job_worker,
        retry_policy=policy,
        work_queue=work_queue,
        worker_pool=worker_pool,
    )

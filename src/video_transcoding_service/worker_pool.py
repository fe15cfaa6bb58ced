"""Bounded in-process worker pool over the in-memory work queue."""

from __future__ import annotations

import asyncio
import contextlib
from functools import partial
from typing import Any, Awaitable, Callable, Optional, TypeVar

import structlog

from .errors import JobStoreError, QueueTransportError
from .work_queue import Delivery, InMemoryWorkQueue, RetryPolicy
from .worker import JobWorker

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class WorkerPool:
    """Runs ``concurrency`` worker loops, each handling one job at a time."""

    def __init__(
        self,
        queue: InMemoryWorkQueue,
        worker: JobWorker,
        *,
        concurrency: int = 2,
        poll_interval: float = 1.0,
        transport_policy: Optional[RetryPolicy] = None,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self._queue = queue
        self._worker = worker
        self.concurrency = concurrency
        self._poll_interval = poll_interval
        self._transport_policy = transport_policy or queue.policy
        queue.set_expiry_listener(worker.settle_lease_expiry)
        self._tasks: list[asyncio.Task[None]] = []
        self._stopping = asyncio.Event()
        self.active = 0
        self.peak_active = 0

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    async def start(self) -> None:
        if self.running:
            return
        self._stopping.clear()
        self._tasks = [
            asyncio.create_task(self._run(index), name=f"transcode-worker-{index}")
            for index in range(self.concurrency)
        ]
        logger.info("Worker pool started", concurrency=self.concurrency)

    async def stop(self, timeout: Optional[float] = None) -> None:
        """Stop accepting jobs and wait for the current ones to finish."""

        self._stopping.set()
        if not self._tasks:
            return
        _, pending = await asyncio.wait(self._tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        for task in pending:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks = []
        logger.info("Worker pool stopped")

    async def drain(self, poll: float = 0.01) -> None:
        """Wait until nothing is waiting, delayed or running."""

        while True:
            counts = await self._queue.counts()
            if counts["waiting"] == 0 and counts["delayed"] == 0 and counts["active"] == 0 and self.active == 0:
                return
            await asyncio.sleep(poll)

    async def _sleep(self, seconds: float) -> None:
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)

    async def _with_transport_retry(self, operation: Callable[..., Awaitable[T]], *args: Any) -> T:
        failures = 0
        while True:
            try:
                return await operation(*args)
            except QueueTransportError as exc:
                failures += 1
                if failures >= self._transport_policy.max_attempts:
                    raise
                delay = self._transport_policy.delay_for(failures)
                logger.warning("Queue transport error, retrying", error=str(exc), delay=delay)
                await asyncio.sleep(delay)

    async def _run(self, index: int) -> None:
        log = logger.bind(worker=index)
        while not self._stopping.is_set():
            try:
                delivery = await self._with_transport_retry(self._queue.dequeue)
            except QueueTransportError as exc:
                log.error("Queue unreachable", error=str(exc))
                await self._sleep(self._transport_policy.delay_for(self._transport_policy.max_attempts))
                continue
            if delivery is None:
                await self._sleep(self._poll_interval)
                continue
            try:
                await self.process(delivery)
            except (QueueTransportError, JobStoreError) as exc:
                # The lease runs out and the job is redelivered.
                log.error("Could not settle delivery", job_id=delivery.job_id, error=str(exc))

    async def _heartbeat(self, delivery: Delivery, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            if not await self._queue.extend_lease(delivery.job_id, delivery.lease_token):
                logger.warning("Lease lost while processing", job_id=delivery.job_id)
                return

    async def process(self, delivery: Delivery) -> None:
        """Run one delivery to completion and report the outcome to the queue."""

        self.active += 1
        self.peak_active = max(self.peak_active, self.active)
        try:
            await self._process(delivery)
        finally:
            self.active -= 1

    async def _process(self, delivery: Delivery) -> None:
        heartbeat = asyncio.create_task(self._heartbeat(delivery, max(self._queue.lease_seconds / 2, 0.05)))
        try:
            outcome = await self._worker.run_attempt(
                delivery.job_id,
                delivery.request,
                delivery.attempt,
                lease_check=partial(self._queue.holds_lease, delivery.job_id, delivery.lease_token),
            )
        finally:
            heartbeat.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await heartbeat

        if outcome.succeeded:
            acked = await self._with_transport_retry(self._queue.ack, delivery.job_id, delivery.lease_token)
            if not acked:
                logger.warning("Result discarded, lease was reassigned", job_id=delivery.job_id)
            return

        decision = await self._with_transport_retry(
            self._queue.fail, delivery.job_id, delivery.lease_token, outcome.error
        )
        if decision is None:
            logger.warning("Failure discarded, lease was reassigned", job_id=delivery.job_id)
            return
        await self._worker.settle_failure(outcome, decision)

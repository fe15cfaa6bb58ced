"""Work queue: at-least-once delivery of transcoding jobs with bounded retries.

Two transports share one retry policy:

* ``CeleryWorkQueue`` publishes to the Celery broker. Leases are Celery late
  acknowledgements plus the broker visibility timeout, and redelivery after a
  failure is ``Task.retry`` with the policy's countdown.
* ``InMemoryWorkQueue`` is a pull queue used by the in-process ``WorkerPool``
  for local runs and tests. It keeps the full lease/backoff/dead-letter
  bookkeeping itself.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import time
from collections import deque
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union
from uuid import uuid4

import structlog
from kombu.exceptions import OperationalError

from .config import Settings
from .errors import JobStoreError, QueueTransportError
from .job_models import TranscodeRequest

logger = structlog.get_logger(__name__)

FailureReason = Union[BaseException, str]

LEASE_EXPIRED_MESSAGE = "Lease expired before the job was acknowledged"


@dataclass(frozen=True, slots=True)
class RetryDecision:
    retry: bool
    delay: float
    attempts: int


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Exponential backoff over a bounded number of delivery attempts."""

    max_attempts: int = 3
    base_delay: float = 2.0
    fast_fail_permanent: bool = False

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.queue_max_attempts,
            base_delay=settings.queue_backoff_delay_seconds,
            fast_fail_permanent=settings.queue_fast_fail_permanent_errors,
        )

    def delay_for(self, attempts: int) -> float:
        """Delay before the next delivery after ``attempts`` failed ones."""

        return self.base_delay * 2 ** max(attempts - 1, 0)

    def decide(self, attempts: int, error: Optional[FailureReason] = None) -> RetryDecision:
        if attempts >= self.max_attempts:
            return RetryDecision(retry=False, delay=0.0, attempts=attempts)
        if self.fast_fail_permanent and getattr(error, "permanent", False):
            return RetryDecision(retry=False, delay=0.0, attempts=attempts)
        return RetryDecision(retry=True, delay=self.delay_for(attempts), attempts=attempts)


class AbstractWorkQueue:
    """Enqueue side shared by every transport."""

    async def enqueue(self, job_id: str, request: TranscodeRequest) -> str:  # pragma: no cover - interface
        raise NotImplementedError

    async def close(self) -> None:
        return None


class EntryState(str, Enum):
    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    DEAD = "dead"


@dataclass(slots=True)
class QueueEntry:
    job_id: str
    request: TranscodeRequest
    state: EntryState = EntryState.WAITING
    attempts: int = 0
    available_at: float = 0.0
    lease_token: Optional[str] = None
    lease_expires_at: float = 0.0
    last_error: Optional[str] = None
    finished_at: float = 0.0


@dataclass(frozen=True, slots=True)
class Delivery:
    """A job handed to a worker together with its lease."""

    job_id: str
    request: TranscodeRequest
    attempt: int
    lease_token: str
    lease_expires_at: float


@dataclass(frozen=True, slots=True)
class LeaseExpiry:
    """A delivery whose lease ran out before the worker acked or failed it."""

    job_id: str
    attempt: int
    decision: RetryDecision


ExpiryListener = Callable[[LeaseExpiry], Awaitable[None]]


class InMemoryWorkQueue(AbstractWorkQueue):
    """Pull queue with leases, delayed retries and dead-lettering."""

    def __init__(
        self,
        policy: RetryPolicy,
        *,
        lease_seconds: float = 300.0,
        completed_max_age: float = 3600.0,
        completed_max_count: int = 100,
        failed_max_age: float = 86400.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.policy = policy
        self._lease_seconds = lease_seconds
        self._completed_max_age = completed_max_age
        self._completed_max_count = completed_max_count
        self._failed_max_age = failed_max_age
        self._clock = clock
        self._entries: dict[str, QueueEntry] = {}
        self._waiting: dict[int, deque[str]] = {}
        self._delayed: list[tuple[float, int, str]] = []
        self._completed: deque[str] = deque()
        self._dead: deque[str] = deque()
        self._sequence = itertools.count()
        self._lock = asyncio.Lock()
        self._expiry_listener: Optional[ExpiryListener] = None

    def set_expiry_listener(self, listener: Optional[ExpiryListener]) -> None:
        """Register the callback told about every lease that expires."""

        self._expiry_listener = listener

    @property
    def lease_seconds(self) -> float:
        return self._lease_seconds

    @classmethod
    def from_settings(cls, settings: Settings) -> "InMemoryWorkQueue":
        return cls(
            RetryPolicy.from_settings(settings),
            lease_seconds=settings.queue_lease_seconds,
            completed_max_age=settings.queue_completed_max_age_seconds,
            completed_max_count=settings.queue_completed_max_count,
            failed_max_age=settings.queue_failed_max_age_seconds,
        )

    async def enqueue(self, job_id: str, request: TranscodeRequest) -> str:
        async with self._lock:
            existing = self._entries.get(job_id)
            if existing and existing.state not in {EntryState.COMPLETED, EntryState.DEAD}:
                raise ValueError(f"Job {job_id} is already queued")
            self._forget(job_id)
            self._entries[job_id] = QueueEntry(job_id=job_id, request=request)
            self._push_waiting(job_id)
        logger.debug("Job enqueued", job_id=job_id, priority=request.priority)
        return job_id

    async def dequeue(self) -> Optional[Delivery]:
        async with self._lock:
            now = self._clock()
            expired = self._housekeeping(now)
            delivery = self._next_delivery(now)
        await self._notify_expired(expired)
        return delivery

    async def extend_lease(self, job_id: str, lease_token: str) -> bool:
        async with self._lock:
            now = self._clock()
            entry = self._leased(job_id, lease_token, now)
            if entry is None:
                return False
            entry.lease_expires_at = now + self._lease_seconds
            return True

    async def holds_lease(self, job_id: str, lease_token: str) -> bool:
        """True while ``lease_token`` is the live, unexpired lease on the job."""

        async with self._lock:
            return self._leased(job_id, lease_token, self._clock()) is not None

    async def ack(self, job_id: str, lease_token: str) -> bool:
        """Mark a delivery successful; False when the lease was lost meanwhile."""

        async with self._lock:
            now = self._clock()
            entry = self._leased(job_id, lease_token, now)
            if entry is None:
                logger.warning("Ack for a lease that is no longer held", job_id=job_id)
                return False
            self._finish(entry, EntryState.COMPLETED, now)
            return True

    async def fail(self, job_id: str, lease_token: str, error: FailureReason) -> Optional[RetryDecision]:
        """Record a failed delivery; returns None when the lease was lost meanwhile."""

        async with self._lock:
            now = self._clock()
            entry = self._leased(job_id, lease_token, now)
            if entry is None:
                logger.warning("Failure for a lease that is no longer held", job_id=job_id)
                return None
            entry.last_error = str(error)
            decision = self.policy.decide(entry.attempts, error)
            if decision.retry:
                entry.lease_token = None
                self._schedule(entry, now + decision.delay, now)
                logger.info(
                    "Job scheduled for retry",
                    job_id=job_id,
                    attempts=entry.attempts,
                    delay=decision.delay,
                )
            else:
                self._finish(entry, EntryState.DEAD, now)
                logger.error("Job dead-lettered", job_id=job_id, attempts=entry.attempts, error=entry.last_error)
            return decision

    async def get_entry(self, job_id: str) -> Optional[QueueEntry]:
        async with self._lock:
            entry = self._entries.get(job_id)
            return replace(entry) if entry else None

    async def counts(self) -> dict[str, int]:
        async with self._lock:
            expired = self._housekeeping(self._clock())
            counts = {state.value: 0 for state in EntryState}
            for entry in self._entries.values():
                counts[entry.state.value] += 1
        await self._notify_expired(expired)
        return counts

    def _next_delivery(self, now: float) -> Optional[Delivery]:
        for priority in sorted(self._waiting):
            pending = self._waiting[priority]
            if not pending:
                continue
            entry = self._entries[pending.popleft()]
            entry.attempts += 1
            entry.state = EntryState.ACTIVE
            entry.lease_token = uuid4().hex
            entry.lease_expires_at = now + self._lease_seconds
            return Delivery(
                job_id=entry.job_id,
                request=entry.request,
                attempt=entry.attempts,
                lease_token=entry.lease_token,
                lease_expires_at=entry.lease_expires_at,
            )
        return None

    async def _notify_expired(self, expired: list[LeaseExpiry]) -> None:
        # Runs outside the lock: the listener writes the job store.
        if self._expiry_listener is None:
            return
        for expiry in expired:
            try:
                await self._expiry_listener(expiry)
            except JobStoreError as exc:
                logger.error("Could not record lease expiry", job_id=expiry.job_id, error=str(exc))

    def _leased(self, job_id: str, lease_token: str, now: float) -> Optional[QueueEntry]:
        entry = self._entries.get(job_id)
        if entry is None or entry.state is not EntryState.ACTIVE or entry.lease_token != lease_token:
            return None
        if entry.lease_expires_at <= now:
            return None
        return entry

    def _push_waiting(self, job_id: str) -> None:
        entry = self._entries[job_id]
        entry.state = EntryState.WAITING
        self._waiting.setdefault(entry.request.priority, deque()).append(job_id)

    def _schedule(self, entry: QueueEntry, available_at: float, now: float) -> None:
        if available_at <= now:
            self._push_waiting(entry.job_id)
            return
        entry.state = EntryState.DELAYED
        entry.available_at = available_at
        heapq.heappush(self._delayed, (available_at, next(self._sequence), entry.job_id))

    def _finish(self, entry: QueueEntry, state: EntryState, now: float) -> None:
        entry.state = state
        entry.lease_token = None
        entry.finished_at = now
        (self._completed if state is EntryState.COMPLETED else self._dead).append(entry.job_id)

    def _forget(self, job_id: str) -> None:
        self._entries.pop(job_id, None)
        for bucket in (self._completed, self._dead):
            if job_id in bucket:
                bucket.remove(job_id)

    def _housekeeping(self, now: float) -> list[LeaseExpiry]:
        while self._delayed and self._delayed[0][0] <= now:
            _, _, job_id = heapq.heappop(self._delayed)
            entry = self._entries.get(job_id)
            if entry is not None and entry.state is EntryState.DELAYED:
                self._push_waiting(job_id)

        expired: list[LeaseExpiry] = []
        for entry in list(self._entries.values()):
            if entry.state is EntryState.ACTIVE and entry.lease_expires_at <= now:
                entry.last_error = LEASE_EXPIRED_MESSAGE
                entry.lease_token = None
                if entry.attempts < self.policy.max_attempts:
                    logger.warning("Lease expired, redelivering", job_id=entry.job_id, attempts=entry.attempts)
                    self._push_waiting(entry.job_id)
                    decision = RetryDecision(retry=True, delay=0.0, attempts=entry.attempts)
                else:
                    logger.error("Lease expired on final attempt", job_id=entry.job_id)
                    self._finish(entry, EntryState.DEAD, now)
                    decision = RetryDecision(retry=False, delay=0.0, attempts=entry.attempts)
                expired.append(LeaseExpiry(job_id=entry.job_id, attempt=entry.attempts, decision=decision))

        self._purge(self._completed, now - self._completed_max_age, self._completed_max_count)
        self._purge(self._dead, now - self._failed_max_age, None)
        return expired

    def _purge(self, bucket: deque[str], cutoff: float, max_count: Optional[int]) -> None:
        while bucket:
            entry = self._entries[bucket[0]]
            too_many = max_count is not None and len(bucket) > max_count
            if entry.finished_at > cutoff and not too_many:
                break
            bucket.popleft()
            del self._entries[entry.job_id]


class CeleryWorkQueue(AbstractWorkQueue):
    """Publishes jobs to the Celery broker; the Celery worker is the pool.

    Publishing is retried with the queue's own ``RetryPolicy``: at most
    ``max_attempts`` tries, sleeping ``delay_for(n)`` after the n-th failure.
    """

    def __init__(self, policy: RetryPolicy, task: Any) -> None:
        self.policy = policy
        self._task = task

    def _publish(self, job_id: str, request: TranscodeRequest) -> None:
        self._task.apply_async(
            args=(job_id, request.model_dump(mode="json")),
            task_id=job_id,
            priority=request.priority,
            retry=False,
        )

    async def enqueue(self, job_id: str, request: TranscodeRequest) -> str:
        failures = 0
        while True:
            try:
                await asyncio.to_thread(self._publish, job_id, request)
                break
            except (OperationalError, ConnectionError, OSError) as exc:
                failures += 1
                if failures >= self.policy.max_attempts:
                    logger.error("Broker unreachable", job_id=job_id, tries=failures, error=str(exc))
                    raise QueueTransportError(f"Unable to enqueue job {job_id}: {exc}") from exc
                delay = self.policy.delay_for(failures)
                logger.warning("Publish failed, retrying", job_id=job_id, tries=failures, delay=delay)
                await asyncio.sleep(delay)
        logger.info("Job published", job_id=job_id, video_id=request.video_id)
        return job_id

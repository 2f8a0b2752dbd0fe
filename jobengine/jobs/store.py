"""
Job store contract and the in-memory default backend.

The store is the single source of truth for job records. Every status change
goes through a compare-and-transition: the record's current status is checked
against the expected prior status and the change is rejected with
InvalidTransitionError when they differ. That check is what guarantees a job
is claimed by at most one worker at a time, including under races between
workers and the cancel path.
"""

import asyncio
import itertools
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable, Collection, Iterable
from datetime import datetime
from uuid import UUID, uuid4

from jobengine.config.logging import get_logger
from jobengine.core.clock import Clock, SystemClock
from jobengine.core.exceptions import (
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from jobengine.core.registries import Registry
from jobengine.jobs.backoff import BackoffPolicy
from jobengine.jobs.queue import DelayedIndex, ReadyQueue
from jobengine.jobs.schemas import (
    CancelOutcome,
    ErrorKind,
    JobDefinition,
    JobError,
    JobFilter,
    JobRecord,
    JobStatus,
)

logger = get_logger(__name__)

# Called with a snapshot of the record after a change and its previous status
# (None for a newly enqueued record).
TransitionListener = Callable[[JobRecord, JobStatus | None], None]

CANCELLABLE_STATUSES = (JobStatus.PENDING, JobStatus.READY, JobStatus.RETRYING)


class JobStore(ABC):
    """Persistence and state-transition authority for job records."""

    orphan_page_size = 1000

    def __init__(
        self,
        clock: Clock | None = None,
        backoff: BackoffPolicy | None = None,
        registry: Registry | None = None,
    ):
        self.clock = clock or SystemClock()
        self.backoff = backoff or BackoffPolicy()
        self.registry = registry
        self._listeners: list[TransitionListener] = []
        self._ready_signal = asyncio.Event()

    async def init(self) -> None:
        """Prepare the backend for use."""

    async def close(self) -> None:
        """Release backend resources."""

    # Observation

    def subscribe(self, listener: TransitionListener) -> None:
        """Register a passive observer of record transitions."""
        self._listeners.append(listener)

    def _emit(self, record: JobRecord, previous: JobStatus | None) -> None:
        for listener in self._listeners:
            try:
                listener(record, previous)
            except Exception:
                # Observers never get a say in whether a transition happens
                logger.exception(
                    "Transition listener failed",
                    job_id=str(record.id),
                    status=record.status.value,
                )

    # Ready notification

    def _notify_ready(self) -> None:
        self._ready_signal.set()

    def _mark_drained(self) -> None:
        self._ready_signal.clear()

    async def wait_for_ready(self, timeout: float) -> bool:
        """Suspend until work may be ready or ``timeout`` seconds pass."""
        try:
            await asyncio.wait_for(self._ready_signal.wait(), timeout)
            return True
        except asyncio.TimeoutError:
            return False

    # Shared policy

    def _validate_job_type(self, definition: JobDefinition) -> None:
        if self.registry is not None and definition.job_type not in self.registry:
            raise ValidationError(
                f"Unknown job type: {definition.job_type}",
                details={
                    "job_type": definition.job_type,
                    "registered": self.registry.list(),
                },
            )

    def _initial_status(self, definition: JobDefinition, now: datetime) -> tuple[JobStatus, datetime]:
        eligible_at = definition.run_at or now
        status = JobStatus.READY if eligible_at <= now else JobStatus.PENDING
        return status, eligible_at

    def _resolve_failure(
        self, record: JobRecord, retryable: bool, now: datetime
    ) -> tuple[JobStatus, datetime]:
        """
        Decide where a failed attempt goes and when it is next eligible.

        ``attempts`` counts executions started, so a job with max_retries=k is
        retried while attempts <= k and fails on attempt k+1.
        """
        if record.cancel_requested:
            return JobStatus.CANCELLED, record.eligible_at
        if retryable and record.attempts <= record.max_retries:
            return JobStatus.RETRYING, now + self.backoff.delay(record.attempts - 1)
        return JobStatus.FAILED, record.eligible_at

    @staticmethod
    def _reject(record: JobRecord, expected: Iterable[JobStatus]) -> InvalidTransitionError:
        expected = [status.value for status in expected]
        return InvalidTransitionError(
            f"Job {record.id} is {record.status.value}, expected one of {expected}",
            details={
                "job_id": str(record.id),
                "status": record.status.value,
                "expected": expected,
            },
        )

    @staticmethod
    def _not_found(job_id: UUID) -> NotFoundError:
        return NotFoundError(f"Job {job_id} not found", details={"job_id": str(job_id)})

    # Contract

    @abstractmethod
    async def enqueue(self, definition: JobDefinition) -> UUID:
        """Persist a new job; Ready if eligible now, else Pending."""

    @abstractmethod
    async def claim_next(self, job_types: Collection[str] | None = None) -> JobRecord | None:
        """Atomically move the highest-ordered Ready job to Running."""

    @abstractmethod
    async def complete(self, job_id: UUID, result: bytes | None = None) -> JobRecord:
        """Running -> Completed."""

    @abstractmethod
    async def fail(self, job_id: UUID, error: JobError, retryable: bool) -> JobRecord:
        """Running -> Retrying (with backoff) or Failed; Cancelled if a cancel was requested."""

    @abstractmethod
    async def cancel(self, job_id: UUID) -> CancelOutcome:
        """Cancel a waiting job, or flag a running one for cooperative cancellation."""

    @abstractmethod
    async def finish_cancelled(self, job_id: UUID) -> JobRecord:
        """Running -> Cancelled, once the worker has stopped the attempt."""

    @abstractmethod
    async def promote_due(self, now: datetime | None = None) -> int:
        """Move every Pending/Retrying job whose eligible time has passed to Ready."""

    @abstractmethod
    async def get(self, job_id: UUID) -> JobRecord:
        """Snapshot of one record."""

    @abstractmethod
    async def list(self, job_filter: JobFilter | None = None) -> list[JobRecord]:
        """Snapshots in enqueue order."""

    @abstractmethod
    async def purge(self, older_than: datetime) -> int:
        """Delete terminal records last updated before ``older_than``."""

    @abstractmethod
    async def count_by_status(self) -> dict[JobStatus, int]:
        """Number of records in each status."""

    async def recover_orphans(self) -> int:
        """
        Fail records left Running by a previous process.

        They go through the normal retry policy with an ``abandoned`` error,
        so nothing stays Running with no worker attached.
        """
        recovered = 0
        seen: set[UUID] = set()
        while True:
            page = await self.list(
                JobFilter(status=[JobStatus.RUNNING], limit=self.orphan_page_size)
            )
            page = [record for record in page if record.id not in seen]
            if not page:
                break
            for record in page:
                seen.add(record.id)
                try:
                    await self.fail(
                        record.id,
                        JobError(
                            kind=ErrorKind.ABANDONED,
                            message="Worker exited while the job was running",
                        ),
                        retryable=True,
                    )
                    recovered += 1
                except InvalidTransitionError:
                    continue

        if recovered:
            logger.warning("Recovered orphaned running jobs", count=recovered)
        return recovered


class InMemoryJobStore(JobStore):
    """
    Process-local store.

    A lock guards the record map and both orderings; critical sections never
    await, so they are short and cannot interleave with one another.
    """

    def __init__(
        self,
        clock: Clock | None = None,
        backoff: BackoffPolicy | None = None,
        registry: Registry | None = None,
    ):
        super().__init__(clock=clock, backoff=backoff, registry=registry)
        self._records: dict[UUID, JobRecord] = {}
        self._ready = ReadyQueue()
        self._delayed = DelayedIndex()
        self._seq = itertools.count(1)
        self._lock = threading.Lock()

    def _transition(
        self,
        job_id: UUID,
        expected: Iterable[JobStatus],
        new_status: JobStatus,
        now: datetime,
        **changes,
    ) -> tuple[JobRecord, JobStatus]:
        record = self._records.get(job_id)
        if record is None:
            raise self._not_found(job_id)
        expected = tuple(expected)
        if record.status not in expected:
            raise self._reject(record, expected)

        previous = record.status
        record.status = new_status
        for name, value in changes.items():
            setattr(record, name, value)
        record.updated_at = now
        if new_status.is_terminal:
            record.finished_at = now
        return record.snapshot(), previous

    async def enqueue(self, definition: JobDefinition) -> UUID:
        self._validate_job_type(definition)
        now = self.clock.now()
        status, eligible_at = self._initial_status(definition, now)

        with self._lock:
            record = JobRecord(
                id=uuid4(),
                definition=definition,
                status=status,
                seq=next(self._seq),
                created_at=now,
                updated_at=now,
                eligible_at=eligible_at,
            )
            self._records[record.id] = record
            if status == JobStatus.READY:
                self._ready.push(record.id, definition.priority, record.seq)
            else:
                self._delayed.add(record.id, eligible_at, record.seq)
            snapshot = record.snapshot()

        self._emit(snapshot, None)
        if status == JobStatus.READY:
            self._notify_ready()
        return snapshot.id

    async def claim_next(self, job_types: Collection[str] | None = None) -> JobRecord | None:
        now = self.clock.now()

        def accept(job_id: UUID) -> bool:
            record = self._records.get(job_id)
            return record is not None and record.job_type in job_types

        with self._lock:
            while True:
                job_id = self._ready.pop(None if job_types is None else accept)
                if job_id is None:
                    # Nothing claimable by this caller; wait for the next enqueue or promotion
                    self._mark_drained()
                    return None

                record = self._records.get(job_id)
                if record is None or record.status != JobStatus.READY:
                    # Stale ordering entry
                    continue

                snapshot, previous = self._transition(
                    job_id,
                    (JobStatus.READY,),
                    JobStatus.RUNNING,
                    now,
                    attempts=record.attempts + 1,
                    started_at=now,
                )
                break

        self._emit(snapshot, previous)
        return snapshot

    async def complete(self, job_id: UUID, result: bytes | None = None) -> JobRecord:
        now = self.clock.now()
        with self._lock:
            snapshot, previous = self._transition(
                job_id, (JobStatus.RUNNING,), JobStatus.COMPLETED, now, result=result
            )
        self._emit(snapshot, previous)
        return snapshot

    async def fail(self, job_id: UUID, error: JobError, retryable: bool) -> JobRecord:
        now = self.clock.now()
        with self._lock:
            record = self._records.get(job_id)
            if record is None:
                raise self._not_found(job_id)
            if record.status != JobStatus.RUNNING:
                raise self._reject(record, (JobStatus.RUNNING,))

            new_status, eligible_at = self._resolve_failure(record, retryable, now)
            snapshot, previous = self._transition(
                job_id,
                (JobStatus.RUNNING,),
                new_status,
                now,
                last_error=error,
                eligible_at=eligible_at,
            )
            if new_status == JobStatus.RETRYING:
                self._delayed.add(job_id, eligible_at, snapshot.seq)

        self._emit(snapshot, previous)
        return snapshot

    async def cancel(self, job_id: UUID) -> CancelOutcome:
        now = self.clock.now()
        with self._lock:
            record = self._records.get(job_id)
            if record is None:
                raise self._not_found(job_id)

            if record.status.is_terminal:
                return CancelOutcome.FINISHED

            if record.status == JobStatus.RUNNING:
                record.cancel_requested = True
                record.updated_at = now
                return CancelOutcome.REQUESTED

            snapshot, previous = self._transition(
                job_id, CANCELLABLE_STATUSES, JobStatus.CANCELLED, now
            )
            self._ready.discard(job_id)
            self._delayed.discard(job_id)

        self._emit(snapshot, previous)
        return CancelOutcome.CANCELLED

    async def finish_cancelled(self, job_id: UUID) -> JobRecord:
        now = self.clock.now()
        with self._lock:
            snapshot, previous = self._transition(
                job_id, (JobStatus.RUNNING,), JobStatus.CANCELLED, now
            )
        self._emit(snapshot, previous)
        return snapshot

    async def promote_due(self, now: datetime | None = None) -> int:
        now = now or self.clock.now()
        promoted = []
        with self._lock:
            for job_id in self._delayed.pop_due(now):
                record = self._records.get(job_id)
                if record is None or not record.status.is_waiting or record.eligible_at > now:
                    continue
                snapshot, previous = self._transition(
                    job_id, (JobStatus.PENDING, JobStatus.RETRYING), JobStatus.READY, now
                )
                self._ready.push(job_id, record.priority, record.seq)
                promoted.append((snapshot, previous))

        for snapshot, previous in promoted:
            self._emit(snapshot, previous)
        if promoted:
            self._notify_ready()
        return len(promoted)

    async def get(self, job_id: UUID) -> JobRecord:
        with self._lock:
            record = self._records.get(job_id)
            if record is None:
                raise self._not_found(job_id)
            return record.snapshot()

    async def list(self, job_filter: JobFilter | None = None) -> list[JobRecord]:
        job_filter = job_filter or JobFilter()
        with self._lock:
            matching = [r for r in self._records.values() if job_filter.matches(r)]
            matching.sort(key=lambda r: r.seq)
            page = matching[job_filter.offset : job_filter.offset + job_filter.limit]
            return [r.snapshot() for r in page]

    async def purge(self, older_than: datetime) -> int:
        with self._lock:
            expired = [
                job_id
                for job_id, record in self._records.items()
                if record.status.is_terminal and record.updated_at < older_than
            ]
            for job_id in expired:
                del self._records[job_id]
                self._ready.discard(job_id)
                self._delayed.discard(job_id)

        if expired:
            logger.info("Purged terminal jobs", count=len(expired))
        return len(expired)

    async def count_by_status(self) -> dict[JobStatus, int]:
        counts = dict.fromkeys(JobStatus, 0)
        with self._lock:
            for record in self._records.values():
                counts[record.status] += 1
        return counts

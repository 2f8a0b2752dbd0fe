"""
Fixed-size asyncio worker pool.
"""

import asyncio
from collections.abc import Collection
from dataclasses import dataclass
from enum import Enum
from uuid import UUID

from jobengine.config.logging import get_logger, job_log_context
from jobengine.core.exceptions import (
    AbandonedError,
    ExecutionError,
    InvalidTransitionError,
    JobCancelledError,
    JobEngineException,
    JobTimeoutError,
    NotFoundError,
)
from jobengine.core.registries import JobHandler, Registry
from jobengine.jobs.backoff import call_with_store_retry
from jobengine.jobs.context import CancelReason, JobContext
from jobengine.jobs.schemas import ErrorKind, JobError, JobRecord, JobStatus
from jobengine.jobs.store import JobStore

logger = get_logger(__name__)

# Seconds a cancel for a claimed, not yet started attempt is remembered
PENDING_CANCEL_TTL_S = 5.0


class OutcomeKind(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class Outcome:
    kind: OutcomeKind
    result: bytes | None = None
    error: JobError | None = None
    retryable: bool = False

    @classmethod
    def failed(cls, kind: ErrorKind, message: str, retryable: bool) -> "Outcome":
        return cls(
            OutcomeKind.FAILED,
            error=JobError(kind=kind, message=message),
            retryable=retryable,
        )


@dataclass
class _Attempt:
    ctx: JobContext
    task: asyncio.Task | None = None


def _consume_result(task: asyncio.Task) -> None:
    # Abandoned handler tasks finish unobserved
    if not task.cancelled():
        task.exception()


def _error_kind(exc: ExecutionError) -> ErrorKind:
    if isinstance(exc, JobTimeoutError):
        return ErrorKind.TIMEOUT
    if isinstance(exc, AbandonedError):
        return ErrorKind.ABANDONED
    return ErrorKind.EXECUTION


def _coerce_result(result: object) -> bytes | None:
    if result is None or isinstance(result, bytes):
        return result
    if isinstance(result, bytearray | memoryview):
        return bytes(result)
    if isinstance(result, str):
        return result.encode()
    raise ExecutionError(
        f"Handler returned unsupported result type {type(result).__name__}",
        retryable=False,
    )


class WorkerPool:
    """
    N concurrent executors sharing one store.

    Each worker claims a job, resolves its handler, runs the handler under
    the job's per-attempt deadline, and reports the outcome back to the store.
    Handler failures never escape a worker; a crashing handler becomes a
    ``fail`` call.
    """

    def __init__(
        self,
        store: JobStore,
        registry: Registry[JobHandler],
        concurrency: int,
        claim_timeout_s: float = 1.0,
        abandon_grace_s: float = 1.0,
        job_types: Collection[str] | None = None,
        store_retry_attempts: int = 3,
        store_retry_base_s: float = 0.05,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.store = store
        self.registry = registry
        self.concurrency = concurrency
        self.claim_timeout_s = claim_timeout_s
        self.abandon_grace_s = abandon_grace_s
        self.job_types = job_types
        self.store_retry_attempts = store_retry_attempts
        self.store_retry_base_s = store_retry_base_s

        self._workers: dict[str, asyncio.Task] = {}
        self._idle: set[str] = set()
        self._inflight: dict[UUID, _Attempt] = {}
        self._pending_cancels: dict[UUID, float] = {}
        self._stopping = asyncio.Event()

    @property
    def running(self) -> bool:
        return bool(self._workers) and not self._stopping.is_set()

    @property
    def in_flight(self) -> list[UUID]:
        return list(self._inflight)

    def start(self) -> None:
        """Start the workers. The handler registry is frozen from here on."""
        if self._workers:
            raise RuntimeError("Worker pool is already running")

        self.registry.freeze()
        if self.job_types is None:
            self.job_types = frozenset(self.registry.list())

        self._stopping.clear()
        for i in range(self.concurrency):
            name = f"worker-{i}"
            self._workers[name] = asyncio.create_task(self._worker_loop(name), name=name)

        logger.info(
            "Worker pool started",
            concurrency=self.concurrency,
            job_types=sorted(self.job_types),
        )

    def _signal_cancel(self, job_id: UUID) -> bool:
        attempt = self._inflight.get(job_id)
        if attempt is None:
            return False
        attempt.ctx.signal(CancelReason.REQUESTED)
        return True

    async def request_cancel(self, job_id: UUID) -> None:
        """
        Signal a running attempt to stop.

        A job the store still reports Running that has no attempt here yet
        (claimed but not started) is remembered for a short while, so its
        attempt starts already cancelled.
        """
        if self._signal_cancel(job_id):
            return
        try:
            record = await self.store.get(job_id)
        except NotFoundError:
            return
        if self._signal_cancel(job_id) or record.status != JobStatus.RUNNING:
            return

        now = asyncio.get_running_loop().time()
        self._pending_cancels = {
            pending_id: at
            for pending_id, at in self._pending_cancels.items()
            if now - at < PENDING_CANCEL_TTL_S
        }
        self._pending_cancels[job_id] = now

    async def shutdown(self, grace_s: float) -> int:
        """
        Stop claiming, drain in-flight attempts for up to ``grace_s`` seconds,
        then abandon whatever is still running.

        Returns the number of abandoned jobs.
        """
        if not self._workers:
            return 0

        self._stopping.set()
        logger.info("Stopping worker pool", in_flight=len(self._inflight), grace_s=grace_s)

        # Idle workers hold no job and can stop immediately
        for name in list(self._idle):
            self._workers[name].cancel()

        _, pending = await asyncio.wait(list(self._workers.values()), timeout=grace_s)

        abandoned_ids = list(self._inflight)
        if pending:
            for attempt in self._inflight.values():
                attempt.ctx.signal(CancelReason.SHUTDOWN)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        abandoned = 0
        for job_id in abandoned_ids:
            try:
                await self.store.fail(
                    job_id,
                    JobError(
                        kind=ErrorKind.ABANDONED,
                        message=f"Job still running after {grace_s}s shutdown grace",
                    ),
                    retryable=False,
                )
                abandoned += 1
                logger.warning("Job abandoned at shutdown", job_id=str(job_id))
            except InvalidTransitionError:
                # The worker recorded an outcome before it stopped
                logger.debug("Job finished during shutdown", job_id=str(job_id))
            except JobEngineException as e:
                logger.error(
                    "Could not mark abandoned job", job_id=str(job_id), error=e.message
                )

        self._workers.clear()
        self._idle.clear()
        self._pending_cancels.clear()
        logger.info("Worker pool stopped", abandoned=abandoned)
        return abandoned

    async def _worker_loop(self, name: str) -> None:
        logger.debug("Worker started", worker=name)
        while not self._stopping.is_set():
            try:
                record = await call_with_store_retry(
                    lambda: self.store.claim_next(self.job_types),
                    attempts=self.store_retry_attempts,
                    base_delay_s=self.store_retry_base_s,
                    description="claim_next",
                )
            except Exception:
                logger.exception("Error claiming job", worker=name)
                await self._wait_idle(name)
                continue

            if record is None:
                await self._wait_idle(name)
                continue

            try:
                await self._execute(name, record)
            except Exception:
                logger.exception("Error executing job", worker=name, job_id=str(record.id))
        logger.debug("Worker stopped", worker=name)

    async def _wait_idle(self, name: str) -> None:
        self._idle.add(name)
        try:
            await self.store.wait_for_ready(self.claim_timeout_s)
        finally:
            self._idle.discard(name)

    async def _execute(self, name: str, record: JobRecord) -> None:
        with job_log_context(
            job_id=str(record.id),
            job_type=record.job_type,
            attempt=record.attempts,
            worker=name,
        ):
            logger.info("Job claimed", priority=record.priority.name)
            ctx = JobContext(
                job_id=record.id,
                job_type=record.job_type,
                attempt=record.attempts,
                max_retries=record.max_retries,
                timeout_s=record.definition.timeout_ms / 1000,
            )
            attempt = _Attempt(ctx)
            self._inflight[record.id] = attempt
            if record.cancel_requested or record.id in self._pending_cancels:
                ctx.signal(CancelReason.REQUESTED)
            self._pending_cancels.pop(record.id, None)

            try:
                try:
                    handler = self.registry.get(record.job_type)
                except KeyError as e:
                    # Configuration error for this job, never retried
                    outcome = Outcome.failed(ErrorKind.VALIDATION, e.args[0], retryable=False)
                else:
                    outcome = await self._run_attempt(attempt, handler, record.definition.payload)
                await self._report(record, outcome)
            finally:
                self._inflight.pop(record.id, None)

    async def _run_attempt(
        self, attempt: _Attempt, handler: JobHandler, payload: bytes
    ) -> Outcome:
        ctx = attempt.ctx
        if ctx.cancelled:
            return Outcome(OutcomeKind.CANCELLED)

        task = asyncio.create_task(handler.handle(ctx, payload), name=f"job-{ctx.job_id}")
        attempt.task = task
        cancel_wait = asyncio.create_task(ctx.wait_cancelled())
        try:
            await asyncio.wait(
                {task, cancel_wait},
                timeout=ctx.remaining(),
                return_when=asyncio.FIRST_COMPLETED,
            )
            if not task.done():
                if not ctx.cancelled:
                    ctx.signal(CancelReason.TIMEOUT)
                task.cancel()
                await asyncio.wait({task}, timeout=self.abandon_grace_s)
                if not task.done():
                    logger.warning(
                        "Handler ignored cancellation, abandoning attempt",
                        reason=ctx.cancel_reason.value,
                    )
                    task.add_done_callback(_consume_result)
        except asyncio.CancelledError:
            # The worker itself is being torn down
            task.cancel()
            task.add_done_callback(_consume_result)
            raise
        finally:
            cancel_wait.cancel()

        return self._outcome(ctx, task)

    def _outcome(self, ctx: JobContext, task: asyncio.Task) -> Outcome:
        exc = None
        if task.done() and not task.cancelled():
            exc = task.exception()
            if exc is None:
                try:
                    return Outcome(OutcomeKind.COMPLETED, result=_coerce_result(task.result()))
                except ExecutionError as e:
                    exc = e

        reason = ctx.cancel_reason
        if reason == CancelReason.REQUESTED:
            return Outcome(OutcomeKind.CANCELLED)
        if reason == CancelReason.TIMEOUT:
            return Outcome.failed(
                ErrorKind.TIMEOUT, "Attempt exceeded its execution timeout", retryable=True
            )
        if reason == CancelReason.SHUTDOWN:
            return Outcome.failed(
                ErrorKind.ABANDONED, "Attempt stopped by shutdown", retryable=False
            )

        if exc is None:
            return Outcome.failed(
                ErrorKind.EXECUTION, "Handler task was cancelled", retryable=True
            )
        if isinstance(exc, JobCancelledError):
            return Outcome(OutcomeKind.CANCELLED)
        if isinstance(exc, ExecutionError):
            return Outcome.failed(_error_kind(exc), exc.message, retryable=exc.retryable)

        logger.warning("Handler raised", error=f"{type(exc).__name__}: {exc}")
        return Outcome.failed(
            ErrorKind.EXECUTION, f"{type(exc).__name__}: {exc}", retryable=True
        )

    async def _report(self, record: JobRecord, outcome: Outcome) -> None:
        if outcome.kind == OutcomeKind.COMPLETED:
            operation = lambda: self.store.complete(record.id, outcome.result)  # noqa: E731
        elif outcome.kind == OutcomeKind.CANCELLED:
            operation = lambda: self.store.finish_cancelled(record.id)  # noqa: E731
        else:
            operation = lambda: self.store.fail(  # noqa: E731
                record.id, outcome.error, outcome.retryable
            )

        try:
            updated = await call_with_store_retry(
                operation,
                attempts=self.store_retry_attempts,
                base_delay_s=self.store_retry_base_s,
                description=f"report {outcome.kind.value}",
            )
        except (InvalidTransitionError, NotFoundError) as e:
            logger.error(
                "Job outcome rejected by store",
                outcome=outcome.kind.value,
                error=e.message,
                details=e.details,
            )
            return

        if updated.status == JobStatus.COMPLETED:
            logger.info("Job completed")
        elif updated.status == JobStatus.RETRYING:
            logger.info(
                "Job scheduled for retry",
                error=outcome.error.message,
                next_eligible_at=updated.eligible_at.isoformat(),
            )
        elif updated.status == JobStatus.CANCELLED:
            logger.info("Job cancelled while running")
        else:
            logger.error(
                "Job failed",
                error_kind=outcome.error.kind.value,
                error=outcome.error.message,
                attempts=updated.attempts,
            )

"""
Job engine facade.

Wires the store, promoter, worker pool and stats collector together and
exposes the operations callers use: enqueue, schedule, cancel, status, stats
and handler registration. An engine is an explicitly constructed instance
with an explicit start/shutdown lifecycle:

    engine = JobEngine()
    engine.register_handler("send_email", send_email)
    async with engine:
        job_id = await engine.enqueue("send_email", b"...")
"""

import asyncio
from datetime import datetime, timedelta
from uuid import UUID

from jobengine.config.logging import get_logger
from jobengine.config.settings import Settings, StoreBackend, get_settings
from jobengine.core.clock import Clock, SystemClock
from jobengine.core.exceptions import ShutdownError, ValidationError
from jobengine.core.registries import HandlerRegistry, JobHandler, Registry
from jobengine.jobs.backoff import BackoffPolicy, call_with_store_retry
from jobengine.jobs.handlers import (
    MAINTENANCE_CLEANUP,
    HandlerFn,
    MaintenanceCleanupHandler,
    as_handler,
)
from jobengine.jobs.scheduler import Promoter, Schedule
from jobengine.jobs.schemas import (
    CancelOutcome,
    JobDefinition,
    JobFilter,
    JobPriority,
    JobRecord,
    StatsSnapshot,
    build_definition,
)
from jobengine.jobs.stats import MetricsSink, StatsCollector
from jobengine.jobs.store import InMemoryJobStore, JobStore
from jobengine.jobs.worker import WorkerPool

logger = get_logger(__name__)


class JobEngine:
    """Priority-ordered, retry-aware background job processing."""

    def __init__(
        self,
        settings: Settings | None = None,
        store: JobStore | None = None,
        clock: Clock | None = None,
        registry: Registry[JobHandler] | None = None,
        metrics_sink: MetricsSink | None = None,
    ):
        self.settings = settings or get_settings()
        self.registry = registry if registry is not None else HandlerRegistry()

        if store is None:
            store = self._build_store(clock or SystemClock())
        elif store.registry is None:
            store.registry = self.registry
        self.store = store
        self.clock = store.clock

        self.stats_collector = StatsCollector(
            clock=self.clock, window_s=self.settings.job_stats_window_s
        )
        self.store.subscribe(self.stats_collector.observe)
        self.metrics_sink = metrics_sink

        store_retry = {
            "store_retry_attempts": self.settings.job_store_retry_attempts,
            "store_retry_base_s": self.settings.job_store_retry_base_ms / 1000,
        }
        self.promoter = Promoter(
            self.store,
            poll_interval_s=self.settings.job_poll_interval_ms / 1000,
            clock=self.clock,
            **store_retry,
        )
        self.pool = WorkerPool(
            self.store,
            self.registry,
            concurrency=self.settings.job_concurrency,
            claim_timeout_s=self.settings.job_claim_timeout_ms / 1000,
            abandon_grace_s=self.settings.job_abandon_grace_ms / 1000,
            **store_retry,
        )

        if MAINTENANCE_CLEANUP not in self.registry and not self.registry.is_frozen():
            self.registry.register(
                MAINTENANCE_CLEANUP,
                MaintenanceCleanupHandler(self.store, self.settings.job_retention_s),
            )

        self._started = False
        self._shutting_down = False
        self._closed = False
        self._background: list[asyncio.Task] = []

    def _build_store(self, clock: Clock) -> JobStore:
        backoff = BackoffPolicy.from_settings(self.settings)
        if self.settings.job_store_backend == StoreBackend.DATABASE:
            # SQLAlchemy is only imported for the database backend
            from jobengine.infra.database import Database
            from jobengine.jobs.sql_store import SqlJobStore

            return SqlJobStore(
                Database(self.settings), clock=clock, backoff=backoff, registry=self.registry
            )
        return InMemoryJobStore(clock=clock, backoff=backoff, registry=self.registry)

    @property
    def running(self) -> bool:
        return self._started and not self._shutting_down

    # Handlers

    def register_handler(self, job_type: str, handler: JobHandler | HandlerFn) -> None:
        """Register the logic for a job type. Only allowed before start()."""
        if not job_type:
            raise ValidationError("Job type must be a non-empty string")
        if self._started:
            raise RuntimeError(
                f"Cannot register handler for '{job_type}' after the engine has started"
            )
        self.registry.register(job_type, as_handler(handler))
        logger.debug("Handler registered", job_type=job_type)

    # Enqueueing

    def _definition(
        self,
        job_type: str,
        payload: bytes,
        priority: JobPriority | None,
        max_retries: int | None,
        timeout_ms: int | None,
        run_at: datetime | None,
    ) -> JobDefinition:
        return build_definition(
            job_type,
            payload,
            priority=JobPriority.NORMAL if priority is None else priority,
            max_retries=(
                self.settings.job_default_max_retries if max_retries is None else max_retries
            ),
            timeout_ms=(
                self.settings.job_default_timeout_ms if timeout_ms is None else timeout_ms
            ),
            run_at=run_at,
        )

    def _check_accepting(self) -> None:
        if self._shutting_down:
            raise ShutdownError("Job engine is shutting down; new jobs are not accepted")

    async def enqueue(
        self,
        job_type: str,
        payload: bytes = b"",
        *,
        priority: JobPriority | None = None,
        delay: timedelta | float | None = None,
        max_retries: int | None = None,
        timeout_ms: int | None = None,
    ) -> UUID:
        """
        Enqueue a job.

        Args:
            job_type: Registered job type
            payload: Opaque payload handed to the handler
            priority: Dequeue priority, NORMAL by default
            delay: Time (timedelta or seconds) before the job becomes eligible
            max_retries: Retries after the first attempt
            timeout_ms: Per-attempt execution timeout

        Returns:
            The new job's id

        Raises:
            ValidationError: unknown job type or malformed options
            ShutdownError: the engine is shutting down
        """
        self._check_accepting()

        run_at = None
        if delay is not None:
            try:
                if not isinstance(delay, timedelta):
                    delay = timedelta(seconds=delay)
                if delay > timedelta(0):
                    run_at = self.clock.now() + delay
            except (TypeError, ValueError, OverflowError) as e:
                raise ValidationError(
                    f"Invalid delay: {delay!r}", details={"delay": repr(delay)}
                ) from e
            if delay < timedelta(0):
                raise ValidationError(
                    "Delay must not be negative",
                    details={"delay_s": delay.total_seconds()},
                )

        definition = self._definition(job_type, payload, priority, max_retries, timeout_ms, run_at)
        job_id = await self.store.enqueue(definition)
        logger.info(
            "Job enqueued",
            job_id=str(job_id),
            job_type=job_type,
            priority=definition.priority.name,
            run_at=run_at.isoformat() if run_at else None,
        )
        return job_id

    async def schedule(
        self,
        job_type: str,
        payload: bytes,
        run_at: datetime,
        *,
        priority: JobPriority | None = None,
        max_retries: int | None = None,
        timeout_ms: int | None = None,
    ) -> UUID:
        """Enqueue a job that becomes eligible at ``run_at`` (timezone-aware)."""
        self._check_accepting()
        definition = self._definition(job_type, payload, priority, max_retries, timeout_ms, run_at)
        job_id = await self.store.enqueue(definition)
        logger.info(
            "Job scheduled",
            job_id=str(job_id),
            job_type=job_type,
            run_at=run_at.isoformat(),
        )
        return job_id

    def schedule_recurring(
        self,
        job_type: str,
        payload: bytes = b"",
        *,
        schedule: Schedule,
        priority: JobPriority | None = None,
        max_retries: int | None = None,
        timeout_ms: int | None = None,
    ) -> UUID:
        """Enqueue a new job each time ``schedule`` fires. Returns the schedule id."""
        self._check_accepting()
        if job_type not in self.registry:
            raise ValidationError(
                f"Unknown job type: {job_type}",
                details={"job_type": job_type, "registered": self.registry.list()},
            )
        template = self._definition(job_type, payload, priority, max_retries, timeout_ms, None)
        return self.promoter.add_recurring(template, schedule).id

    def cancel_recurring(self, schedule_id: UUID) -> bool:
        removed = self.promoter.remove_recurring(schedule_id)
        if removed:
            logger.info("Recurring job removed", schedule_id=str(schedule_id))
        return removed

    # Control and inspection

    async def cancel(self, job_id: UUID) -> bool:
        """
        Cancel a job.

        Waiting jobs are cancelled immediately. A running job is flagged and its
        handler signalled; it ends Cancelled once the handler stops. Returns
        False when the job had already finished.
        """
        outcome = await self.store.cancel(job_id)
        if outcome == CancelOutcome.REQUESTED:
            await self.pool.request_cancel(job_id)
        logger.info("Job cancel requested", job_id=str(job_id), outcome=outcome.value)
        return outcome != CancelOutcome.FINISHED

    async def status(self, job_id: UUID) -> JobRecord:
        """Snapshot of a job; raises NotFoundError for an unknown id."""
        return await self.store.get(job_id)

    async def list_jobs(self, job_filter: JobFilter | None = None) -> list[JobRecord]:
        return await self.store.list(job_filter)

    def stats(self) -> StatsSnapshot:
        return self.stats_collector.snapshot()

    # Lifecycle

    async def start(self) -> None:
        """Prepare the store, then start the promoter, workers and background loops."""
        if self._started:
            raise RuntimeError("Job engine is already started")

        await call_with_store_retry(
            self.store.init,
            attempts=self.settings.job_store_retry_attempts,
            base_delay_s=self.settings.job_store_retry_base_ms / 1000,
            description="init",
        )
        await self.store.recover_orphans()
        self.stats_collector.seed(await self.store.count_by_status())

        self._started = True
        self.promoter.start()
        self.pool.start()

        if self.settings.job_cleanup_interval_s > 0:
            self._background.append(
                asyncio.create_task(self._retention_loop(), name="jobengine-retention")
            )
        if self.metrics_sink is not None:
            self._background.append(
                asyncio.create_task(self._stats_loop(), name="jobengine-stats")
            )

        logger.info(
            "Job engine started",
            store=type(self.store).__name__,
            concurrency=self.settings.job_concurrency,
            job_types=self.registry.list(),
        )

    async def shutdown(self, grace_s: float | None = None) -> int:
        """
        Stop accepting work and drain in-flight jobs for up to ``grace_s``
        seconds. Jobs whose handlers are still running after that are marked
        Failed (abandoned).

        Returns the number of abandoned jobs.
        """
        if self._closed:
            return 0
        self._shutting_down = True
        grace_s = self.settings.job_shutdown_grace_s if grace_s is None else grace_s
        logger.info("Job engine shutting down", grace_s=grace_s)

        if self.promoter.running:
            await self.promoter.stop()

        for task in self._background:
            task.cancel()
        await asyncio.gather(*self._background, return_exceptions=True)
        self._background.clear()

        abandoned = await self.pool.shutdown(grace_s)

        if self.metrics_sink is not None:
            try:
                await self.metrics_sink.push(self.stats())
            except Exception:
                logger.exception("Final stats push failed")

        await self.store.close()
        self._closed = True
        logger.info("Job engine stopped", abandoned=abandoned)
        return abandoned

    async def __aenter__(self) -> "JobEngine":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()

    async def _retention_loop(self) -> None:
        retention = timedelta(seconds=self.settings.job_retention_s)
        while True:
            await asyncio.sleep(self.settings.job_cleanup_interval_s)
            cutoff = self.clock.now() - retention
            try:
                await call_with_store_retry(
                    lambda: self.store.purge(cutoff),
                    attempts=self.settings.job_store_retry_attempts,
                    base_delay_s=self.settings.job_store_retry_base_ms / 1000,
                    description="purge",
                )
            except Exception:
                logger.exception("Retention purge failed")

    async def _stats_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.job_stats_push_interval_s)
            try:
                await self.metrics_sink.push(self.stats())
            except Exception:
                logger.exception("Stats push failed")

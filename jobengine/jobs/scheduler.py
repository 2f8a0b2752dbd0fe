"""
Promotion of delayed work and recurring schedules.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from uuid import UUID, uuid4

from jobengine.config.logging import get_logger
from jobengine.core.clock import Clock, SystemClock
from jobengine.core.exceptions import JobEngineException, ValidationError
from jobengine.jobs.backoff import call_with_store_retry
from jobengine.jobs.schemas import JobDefinition
from jobengine.jobs.store import JobStore

logger = get_logger(__name__)


@dataclass(frozen=True)
class Schedule:
    """When a recurring job fires: once at a time, or at a fixed interval."""

    at: datetime | None = None
    interval: timedelta | None = None
    start_at: datetime | None = None

    def __post_init__(self):
        if (self.at is None) == (self.interval is None):
            raise ValueError("Schedule needs exactly one of 'at' or 'interval'")
        if self.interval is not None and self.interval <= timedelta(0):
            raise ValueError("Schedule interval must be positive")

    @classmethod
    def once(cls, at: datetime) -> "Schedule":
        return cls(at=at)

    @classmethod
    def every(
        cls, interval: timedelta | float, start_at: datetime | None = None
    ) -> "Schedule":
        if not isinstance(interval, timedelta):
            interval = timedelta(seconds=interval)
        return cls(interval=interval, start_at=start_at)

    def next_run(self, after: datetime) -> datetime | None:
        """First firing time strictly after ``after``, or None if there is none."""
        if self.at is not None:
            return self.at if after < self.at else None

        start = self.start_at or after
        if after < start:
            return start
        intervals = (after - start) // self.interval + 1
        return start + intervals * self.interval


@dataclass
class RecurringJob:
    template: JobDefinition
    schedule: Schedule
    next_run: datetime
    id: UUID = field(default_factory=uuid4)
    fired: int = 0
    last_job_id: UUID | None = None


EnqueueFn = Callable[[JobDefinition], Awaitable[UUID]]


class Promoter:
    """
    Periodic task that surfaces eligible jobs.

    Every poll interval it moves each Pending/Retrying record whose eligible
    time has passed into the ready queue, then fires due recurring schedules.
    The interval only bounds latency between eligibility and first claim.
    """

    def __init__(
        self,
        store: JobStore,
        poll_interval_s: float,
        clock: Clock | None = None,
        enqueue: EnqueueFn | None = None,
        store_retry_attempts: int = 3,
        store_retry_base_s: float = 0.05,
    ):
        if poll_interval_s <= 0:
            raise ValueError("poll_interval_s must be positive")
        self.store = store
        self.poll_interval_s = poll_interval_s
        self.clock = clock or store.clock
        self.enqueue = enqueue or store.enqueue
        self.store_retry_attempts = store_retry_attempts
        self.store_retry_base_s = store_retry_base_s
        self.recurring: dict[UUID, RecurringJob] = {}
        self._stopping = asyncio.Event()
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def add_recurring(self, template: JobDefinition, schedule: Schedule) -> RecurringJob:
        now = self.clock.now()
        if schedule.interval is not None and schedule.start_at is None:
            # Anchor the interval so firing times do not drift
            schedule = replace(schedule, start_at=now)
            first_run = now + schedule.interval
        elif schedule.interval is not None:
            first_run = schedule.start_at if schedule.start_at >= now else schedule.next_run(now)
        else:
            first_run = schedule.at
            if first_run < now:
                raise ValidationError(
                    "One-off schedule is in the past", details={"at": first_run.isoformat()}
                )

        recurring = RecurringJob(template=template, schedule=schedule, next_run=first_run)
        self.recurring[recurring.id] = recurring
        logger.info(
            "Recurring job registered",
            schedule_id=str(recurring.id),
            job_type=template.job_type,
            next_run=first_run.isoformat(),
        )
        return recurring

    def remove_recurring(self, schedule_id: UUID) -> bool:
        return self.recurring.pop(schedule_id, None) is not None

    async def tick(self) -> int:
        """Run one promotion pass; returns the number of jobs made ready."""
        now = self.clock.now()
        promoted = await call_with_store_retry(
            lambda: self.store.promote_due(now),
            attempts=self.store_retry_attempts,
            base_delay_s=self.store_retry_base_s,
            description="promote_due",
        )
        if promoted:
            logger.debug("Promoted eligible jobs", count=promoted)

        await self._fire_recurring(now)
        return promoted

    async def _fire_recurring(self, now: datetime) -> None:
        for recurring in list(self.recurring.values()):
            if recurring.next_run > now:
                continue
            try:
                recurring.last_job_id = await self.enqueue(recurring.template)
                recurring.fired += 1
            except JobEngineException as e:
                logger.error(
                    "Recurring job enqueue failed",
                    schedule_id=str(recurring.id),
                    job_type=recurring.template.job_type,
                    error=e.message,
                )

            next_run = recurring.schedule.next_run(now)
            if next_run is None:
                del self.recurring[recurring.id]
            else:
                recurring.next_run = next_run

    def start(self) -> None:
        if self.running:
            raise RuntimeError("Promoter is already running")
        self._stopping.clear()
        self._task = asyncio.create_task(self._run(), name="jobengine-promoter")
        logger.info("Promoter started", poll_interval_ms=self.poll_interval_s * 1000)

    async def stop(self) -> None:
        self._stopping.set()
        if self._task is not None:
            await self._task
            self._task = None
        logger.info("Promoter stopped")

    async def _run(self) -> None:
        while not self._stopping.is_set():
            try:
                await self.tick()
            except Exception:
                logger.exception("Error in promoter loop")

            try:
                await asyncio.wait_for(self._stopping.wait(), self.poll_interval_s)
            except asyncio.TimeoutError:
                pass

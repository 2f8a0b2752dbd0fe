"""
Lifecycle statistics.

The collector is a passive observer: it subscribes to store transitions and
keeps running counts, never touching job state. Counts follow transitions
rather than the store's current contents, so purging old records does not
change them.
"""

import threading
from collections import deque
from datetime import datetime, timedelta
from typing import Protocol

from jobengine.config.logging import get_logger
from jobengine.core.clock import Clock, SystemClock
from jobengine.jobs.schemas import JobRecord, JobStatus, StatsSnapshot

logger = get_logger(__name__)


class StatsCollector:
    """Running per-status counts plus rolling-window completion throughput."""

    def __init__(self, clock: Clock | None = None, window_s: float = 60.0):
        if window_s <= 0:
            raise ValueError("window_s must be positive")
        self.clock = clock or SystemClock()
        self.window = timedelta(seconds=window_s)
        self._counts: dict[JobStatus, int] = dict.fromkeys(JobStatus, 0)
        self._total = 0
        self._completions: deque[datetime] = deque()
        self._lock = threading.Lock()

    def observe(self, record: JobRecord, previous: JobStatus | None) -> None:
        """Store transition listener."""
        with self._lock:
            if previous is None:
                self._total += 1
            else:
                self._counts[previous] -= 1
            self._counts[record.status] += 1
            if record.status == JobStatus.COMPLETED:
                now = self.clock.now()
                self._completions.append(now)
                self._trim(now)

    def seed(self, counts: dict[JobStatus, int]) -> None:
        """Start from a store's existing contents."""
        with self._lock:
            self._counts = dict.fromkeys(JobStatus, 0)
            self._counts.update(counts)
            self._total = sum(self._counts.values())
            self._completions.clear()

    def _trim(self, now: datetime) -> None:
        cutoff = now - self.window
        while self._completions and self._completions[0] < cutoff:
            self._completions.popleft()

    def _throughput(self, now: datetime) -> float:
        self._trim(now)
        return len(self._completions) / self.window.total_seconds()

    def snapshot(self) -> StatsSnapshot:
        now = self.clock.now()
        with self._lock:
            counts = self._counts
            return StatsSnapshot(
                pending=counts[JobStatus.PENDING] + counts[JobStatus.RETRYING],
                ready=counts[JobStatus.READY],
                running=counts[JobStatus.RUNNING],
                completed=counts[JobStatus.COMPLETED],
                failed=counts[JobStatus.FAILED],
                cancelled=counts[JobStatus.CANCELLED],
                retrying=counts[JobStatus.RETRYING],
                total=self._total,
                throughput=self._throughput(now),
            )


class MetricsSink(Protocol):
    """External destination for periodic stats snapshots."""

    async def push(self, snapshot: StatsSnapshot) -> None:
        ...


class LoggingMetricsSink:
    """Sink that writes each snapshot to the structured log."""

    def __init__(self, event: str = "Job stats"):
        self.event = event

    async def push(self, snapshot: StatsSnapshot) -> None:
        logger.info(self.event, **snapshot.model_dump())

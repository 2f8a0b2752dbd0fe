"""
In-memory orderings over job ids.

Neither structure holds job state: entries are (ordering key, job id) pairs and
the store remains the authority on whether an entry is still valid. Removal is
lazy; discarded ids are skipped when they surface.
"""

import heapq
from collections.abc import Callable
from datetime import datetime
from uuid import UUID

from jobengine.jobs.schemas import JobPriority


class ReadyQueue:
    """Eligible jobs ordered by priority (descending) then enqueue sequence."""

    def __init__(self):
        self._heap: list[tuple[int, int, UUID]] = []
        self._live: set[UUID] = set()

    def __len__(self) -> int:
        return len(self._live)

    def __contains__(self, job_id: object) -> bool:
        return job_id in self._live

    def push(self, job_id: UUID, priority: JobPriority, seq: int) -> None:
        if job_id in self._live:
            return
        self._live.add(job_id)
        heapq.heappush(self._heap, (-int(priority), seq, job_id))

    def discard(self, job_id: UUID) -> None:
        self._live.discard(job_id)

    def pop(self, accept: Callable[[UUID], bool] | None = None) -> UUID | None:
        """
        Remove and return the first live id that ``accept`` allows.

        Entries rejected by ``accept`` keep their position.
        """
        skipped: list[tuple[int, int, UUID]] = []
        found = None
        while self._heap:
            entry = heapq.heappop(self._heap)
            job_id = entry[2]
            if job_id not in self._live:
                continue
            if accept is not None and not accept(job_id):
                skipped.append(entry)
                continue
            self._live.discard(job_id)
            found = job_id
            break

        for entry in skipped:
            heapq.heappush(self._heap, entry)
        return found

    def peek(self) -> UUID | None:
        while self._heap and self._heap[0][2] not in self._live:
            heapq.heappop(self._heap)
        return self._heap[0][2] if self._heap else None


class DelayedIndex:
    """Delayed and retrying jobs ordered by next eligible time."""

    def __init__(self):
        self._heap: list[tuple[datetime, int, UUID]] = []
        self._due: dict[UUID, datetime] = {}

    def __len__(self) -> int:
        return len(self._due)

    def __contains__(self, job_id: object) -> bool:
        return job_id in self._due

    def add(self, job_id: UUID, eligible_at: datetime, seq: int) -> None:
        # Re-adding replaces the previous eligibility time
        self._due[job_id] = eligible_at
        heapq.heappush(self._heap, (eligible_at, seq, job_id))

    def discard(self, job_id: UUID) -> None:
        self._due.pop(job_id, None)

    def pop_due(self, now: datetime) -> list[UUID]:
        """Remove and return every id whose eligible time is <= now, earliest first."""
        due = []
        while self._heap and self._heap[0][0] <= now:
            eligible_at, _, job_id = heapq.heappop(self._heap)
            if self._due.get(job_id) != eligible_at:
                continue
            del self._due[job_id]
            due.append(job_id)
        return due

    def next_eligible_at(self) -> datetime | None:
        while self._heap:
            eligible_at, _, job_id = self._heap[0]
            if self._due.get(job_id) == eligible_at:
                return eligible_at
            heapq.heappop(self._heap)
        return None

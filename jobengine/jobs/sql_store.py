"""
Database-backed job store.

Implements the same contract as the in-memory store on top of SQLAlchemy.
Transitions are guarded UPDATEs (``WHERE id = ? AND status = <expected>``);
a rowcount of zero means another caller changed the record first, and the
operation re-reads and re-decides. Claim candidates are selected with
``FOR UPDATE SKIP LOCKED`` where the dialect supports it so concurrent
claimers do not queue up behind one another.
"""

import itertools
from collections.abc import Callable, Collection
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from jobengine.config.logging import get_logger
from jobengine.core.clock import Clock
from jobengine.core.exceptions import InvalidTransitionError, StorageError
from jobengine.core.registries import Registry
from jobengine.infra.database import Database
from jobengine.jobs.backoff import BackoffPolicy
from jobengine.jobs.models import JobRow
from jobengine.jobs.schemas import (
    TERMINAL_STATUSES,
    CancelOutcome,
    JobDefinition,
    JobError,
    JobFilter,
    JobRecord,
    JobStatus,
)
from jobengine.jobs.store import CANCELLABLE_STATUSES, JobStore

logger = get_logger(__name__)


class SqlJobStore(JobStore):
    """Job store persisted through an async SQLAlchemy engine."""

    def __init__(
        self,
        database: Database,
        clock: Clock | None = None,
        backoff: BackoffPolicy | None = None,
        registry: Registry | None = None,
        contention_attempts: int = 16,
    ):
        super().__init__(clock=clock, backoff=backoff, registry=registry)
        self.database = database
        self.contention_attempts = contention_attempts
        self._seq: itertools.count | None = None

    @asynccontextmanager
    async def _session(self):
        try:
            async with self.database.session() as session:
                yield session
        except SQLAlchemyError as e:
            raise StorageError(
                f"Job store unavailable: {e.__class__.__name__}",
                details={"error": str(e)},
            ) from e

    async def init(self) -> None:
        """Create the jobs table if needed and resume the enqueue sequence."""
        try:
            await self.database.create_all()
        except SQLAlchemyError as e:
            raise StorageError("Could not create job tables", details={"error": str(e)}) from e

        async with self._session() as session:
            max_seq = (await session.execute(select(func.max(JobRow.seq)))).scalar()
        self._seq = itertools.count((max_seq or 0) + 1)
        logger.info("Database job store ready", dialect=self.database.engine.dialect.name)

    async def close(self) -> None:
        await self.database.close()

    async def _next_seq(self) -> int:
        if self._seq is None:
            await self.init()
        return next(self._seq)

    async def _reload(self, session: AsyncSession, job_id: UUID) -> JobRecord:
        row = await session.get(JobRow, job_id, populate_existing=True)
        return row.to_record()

    async def _transition(
        self,
        job_id: UUID,
        expected: tuple[JobStatus, ...],
        build: Callable[[JobRecord], dict[str, Any]],
        now: datetime,
    ) -> JobRecord:
        """
        Compare-and-transition one record.

        ``build`` receives the current record and returns the column values to
        write; it is re-run if the guarded update loses a race.
        """
        for _ in range(self.contention_attempts):
            async with self._session() as session:
                row = await session.get(JobRow, job_id, populate_existing=True)
                if row is None:
                    raise self._not_found(job_id)
                current = row.to_record()
                if current.status not in expected:
                    raise self._reject(current, expected)

                values = build(current)
                values["updated_at"] = now
                if JobStatus(values["status"]).is_terminal:
                    values["finished_at"] = now

                result = await session.execute(
                    update(JobRow)
                    .where(
                        JobRow.id == job_id,
                        JobRow.status == current.status.value,
                        JobRow.cancel_requested == current.cancel_requested,
                    )
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    await session.rollback()
                    continue

                await session.commit()
                snapshot = await self._reload(session, job_id)

            self._emit(snapshot, current.status)
            return snapshot

        raise StorageError(
            f"Job {job_id} kept changing under contention",
            details={"job_id": str(job_id), "attempts": self.contention_attempts},
        )

    async def enqueue(self, definition: JobDefinition) -> UUID:
        self._validate_job_type(definition)
        now = self.clock.now()
        status, eligible_at = self._initial_status(definition, now)
        seq = await self._next_seq()

        async with self._session() as session:
            row = JobRow.from_definition(uuid4(), seq, definition, status, eligible_at, now)
            session.add(row)
            await session.commit()
            snapshot = row.to_record()

        self._emit(snapshot, None)
        if status == JobStatus.READY:
            self._notify_ready()
        return snapshot.id

    async def claim_next(self, job_types: Collection[str] | None = None) -> JobRecord | None:
        now = self.clock.now()

        for _ in range(self.contention_attempts):
            async with self._session() as session:
                query = select(JobRow.id).where(JobRow.status == JobStatus.READY.value)
                if job_types is not None:
                    query = query.where(JobRow.job_type.in_(list(job_types)))
                query = query.order_by(JobRow.priority.desc(), JobRow.seq.asc()).limit(1)
                if self.database.supports_skip_locked:
                    query = query.with_for_update(skip_locked=True)

                candidate = (await session.execute(query)).scalar_one_or_none()
                if candidate is None:
                    await session.rollback()
                    self._mark_drained()
                    return None

                result = await session.execute(
                    update(JobRow)
                    .where(JobRow.id == candidate, JobRow.status == JobStatus.READY.value)
                    .values(
                        status=JobStatus.RUNNING.value,
                        attempts=JobRow.attempts + 1,
                        started_at=now,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    # Another claimer won this one
                    await session.rollback()
                    continue

                await session.commit()
                snapshot = await self._reload(session, candidate)

            self._emit(snapshot, JobStatus.READY)
            return snapshot

        return None

    async def complete(self, job_id: UUID, result: bytes | None = None) -> JobRecord:
        return await self._transition(
            job_id,
            (JobStatus.RUNNING,),
            lambda _: {"status": JobStatus.COMPLETED.value, "result": result},
            self.clock.now(),
        )

    async def fail(self, job_id: UUID, error: JobError, retryable: bool) -> JobRecord:
        now = self.clock.now()

        def build(record: JobRecord) -> dict[str, Any]:
            status, eligible_at = self._resolve_failure(record, retryable, now)
            return {
                "status": status.value,
                "eligible_at": eligible_at,
                "error_kind": error.kind.value,
                "last_error": error.message,
            }

        return await self._transition(job_id, (JobStatus.RUNNING,), build, now)

    async def cancel(self, job_id: UUID) -> CancelOutcome:
        now = self.clock.now()

        for _ in range(self.contention_attempts):
            async with self._session() as session:
                row = await session.get(JobRow, job_id, populate_existing=True)
                if row is None:
                    raise self._not_found(job_id)
                status = JobStatus(row.status)
                if status.is_terminal:
                    return CancelOutcome.FINISHED

                if status == JobStatus.RUNNING:
                    result = await session.execute(
                        update(JobRow)
                        .where(JobRow.id == job_id, JobRow.status == JobStatus.RUNNING.value)
                        .values(cancel_requested=True, updated_at=now)
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount == 1:
                        await session.commit()
                        return CancelOutcome.REQUESTED
                    await session.rollback()
                    continue

            try:
                await self._transition(
                    job_id,
                    CANCELLABLE_STATUSES,
                    lambda _: {"status": JobStatus.CANCELLED.value},
                    now,
                )
            except InvalidTransitionError:
                # Claimed or finished in between; decide again from the new status
                continue
            return CancelOutcome.CANCELLED

        raise StorageError(
            f"Job {job_id} kept changing under contention",
            details={"job_id": str(job_id), "attempts": self.contention_attempts},
        )

    async def finish_cancelled(self, job_id: UUID) -> JobRecord:
        return await self._transition(
            job_id,
            (JobStatus.RUNNING,),
            lambda _: {"status": JobStatus.CANCELLED.value},
            self.clock.now(),
        )

    async def promote_due(self, now: datetime | None = None) -> int:
        now = now or self.clock.now()
        async with self._session() as session:
            due = (
                await session.execute(
                    select(JobRow.id)
                    .where(
                        JobRow.status.in_([JobStatus.PENDING.value, JobStatus.RETRYING.value]),
                        JobRow.eligible_at <= now,
                    )
                    .order_by(JobRow.eligible_at, JobRow.seq)
                )
            ).scalars().all()

        promoted = 0
        for job_id in due:
            try:
                await self._transition(
                    job_id,
                    (JobStatus.PENDING, JobStatus.RETRYING),
                    lambda _: {"status": JobStatus.READY.value},
                    now,
                )
                promoted += 1
            except InvalidTransitionError:
                continue

        if promoted:
            self._notify_ready()
        return promoted

    async def get(self, job_id: UUID) -> JobRecord:
        async with self._session() as session:
            row = await session.get(JobRow, job_id)
            if row is None:
                raise self._not_found(job_id)
            return row.to_record()

    async def list(self, job_filter: JobFilter | None = None) -> list[JobRecord]:
        job_filter = job_filter or JobFilter()
        query = select(JobRow)
        if job_filter.status is not None:
            query = query.where(JobRow.status.in_([s.value for s in job_filter.status]))
        if job_filter.job_type is not None:
            query = query.where(JobRow.job_type == job_filter.job_type)
        query = query.order_by(JobRow.seq).offset(job_filter.offset).limit(job_filter.limit)

        async with self._session() as session:
            rows = (await session.execute(query)).scalars().all()
            return [row.to_record() for row in rows]

    async def purge(self, older_than: datetime) -> int:
        async with self._session() as session:
            result = await session.execute(
                delete(JobRow)
                .where(
                    JobRow.status.in_([s.value for s in TERMINAL_STATUSES]),
                    JobRow.updated_at < older_than,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()

        deleted = result.rowcount
        if deleted:
            logger.info("Purged terminal jobs", count=deleted)
        return deleted

    async def count_by_status(self) -> dict[JobStatus, int]:
        counts = dict.fromkeys(JobStatus, 0)
        async with self._session() as session:
            result = await session.execute(
                select(JobRow.status, func.count(JobRow.id)).group_by(JobRow.status)
            )
            for status, count in result.all():
                counts[JobStatus(status)] = count
        return counts

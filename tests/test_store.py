"""Tests for the job store contract against the in-memory backend."""

import asyncio
from datetime import timedelta
from uuid import uuid4

import pytest

from jobengine.core.exceptions import (
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from jobengine.jobs.schemas import (
    CancelOutcome,
    ErrorKind,
    JobError,
    JobFilter,
    JobPriority,
    JobStatus,
)
from jobengine.jobs.store import InMemoryJobStore

BOOM = JobError(kind=ErrorKind.EXECUTION, message="boom")


class TestEnqueue:
    """Test initial status and validation at enqueue."""

    @pytest.mark.asyncio
    async def test_immediate_job_is_ready(self, store, make_definition):
        job_id = await store.enqueue(make_definition())
        record = await store.get(job_id)

        assert record.status == JobStatus.READY
        assert record.attempts == 0
        assert record.last_error is None
        assert record.result is None
        assert record.created_at == store.clock.now()

    @pytest.mark.asyncio
    async def test_delayed_job_is_pending(self, store, make_definition):
        job_id = await store.enqueue(make_definition(delay=timedelta(seconds=5)))
        record = await store.get(job_id)

        assert record.status == JobStatus.PENDING
        assert record.eligible_at == store.clock.now() + timedelta(seconds=5)

    @pytest.mark.asyncio
    async def test_run_at_in_the_past_is_ready(self, store, make_definition):
        job_id = await store.enqueue(make_definition(delay=timedelta(seconds=-5)))
        assert (await store.get(job_id)).status == JobStatus.READY

    @pytest.mark.asyncio
    async def test_unknown_job_type_rejected(self, clock, backoff, registry, make_definition):
        store = InMemoryJobStore(clock=clock, backoff=backoff, registry=registry)

        with pytest.raises(ValidationError, match="Unknown job type"):
            await store.enqueue(make_definition(job_type="missing"))
        assert await store.list() == []

    @pytest.mark.asyncio
    async def test_ids_are_unique(self, store, make_definition):
        ids = {await store.enqueue(make_definition()) for _ in range(50)}
        assert len(ids) == 50


class TestClaimOrdering:
    """Test priority then FIFO ordering of claims."""

    @pytest.mark.asyncio
    async def test_priority_then_fifo(self, store, make_definition):
        low = await store.enqueue(make_definition(priority=JobPriority.LOW))
        high_1 = await store.enqueue(make_definition(priority=JobPriority.HIGH))
        normal = await store.enqueue(make_definition(priority=JobPriority.NORMAL))
        high_2 = await store.enqueue(make_definition(priority=JobPriority.HIGH))
        critical = await store.enqueue(make_definition(priority=JobPriority.CRITICAL))

        claimed = []
        while (record := await store.claim_next()) is not None:
            claimed.append(record.id)

        assert claimed == [critical, high_1, high_2, normal, low]

    @pytest.mark.asyncio
    async def test_fifo_within_priority(self, store, make_definition):
        ids = [await store.enqueue(make_definition()) for _ in range(20)]

        claimed = [(await store.claim_next()).id for _ in range(20)]
        assert claimed == ids

    @pytest.mark.asyncio
    async def test_claim_marks_running_and_counts_attempt(self, store, make_definition):
        job_id = await store.enqueue(make_definition())
        record = await store.claim_next()

        assert record.id == job_id
        assert record.status == JobStatus.RUNNING
        assert record.attempts == 1
        assert record.started_at == store.clock.now()

    @pytest.mark.asyncio
    async def test_claim_empty_returns_none(self, store):
        assert await store.claim_next() is None

    @pytest.mark.asyncio
    async def test_claim_filters_job_types(self, store, make_definition):
        await store.enqueue(make_definition(job_type="a", priority=JobPriority.HIGH))
        b = await store.enqueue(make_definition(job_type="b"))

        record = await store.claim_next(job_types={"b"})
        assert record.id == b

        # The skipped job keeps its place for a capable worker
        other = await store.claim_next(job_types={"a"})
        assert other.job_type == "a"

    @pytest.mark.asyncio
    async def test_concurrent_claims_never_share_a_job(self, store, make_definition):
        ids = {await store.enqueue(make_definition()) for _ in range(100)}

        async def claimer():
            claimed = []
            while (record := await store.claim_next()) is not None:
                claimed.append(record.id)
                await asyncio.sleep(0)
            return claimed

        results = await asyncio.gather(*(claimer() for _ in range(8)))
        all_claimed = [job_id for claimed in results for job_id in claimed]

        assert len(all_claimed) == len(set(all_claimed))
        assert set(all_claimed) == ids


class TestCompleteAndFail:
    """Test outcome transitions and the retry policy."""

    @pytest.mark.asyncio
    async def test_complete_stores_result(self, store, make_definition):
        job_id = await store.enqueue(make_definition())
        await store.claim_next()

        record = await store.complete(job_id, b"done")
        assert record.status == JobStatus.COMPLETED
        assert record.result == b"done"
        assert record.finished_at == store.clock.now()

    @pytest.mark.asyncio
    async def test_complete_requires_running(self, store, make_definition):
        job_id = await store.enqueue(make_definition())

        with pytest.raises(InvalidTransitionError) as exc_info:
            await store.complete(job_id)
        assert exc_info.value.details["status"] == "ready"

    @pytest.mark.asyncio
    async def test_complete_unknown_job(self, store):
        with pytest.raises(NotFoundError):
            await store.complete(uuid4())

    @pytest.mark.asyncio
    async def test_double_complete_rejected(self, store, make_definition):
        job_id = await store.enqueue(make_definition())
        await store.claim_next()
        await store.complete(job_id)

        with pytest.raises(InvalidTransitionError):
            await store.complete(job_id)

    @pytest.mark.asyncio
    async def test_retryable_failure_backs_off(self, store, clock, make_definition):
        job_id = await store.enqueue(make_definition(max_retries=2))
        await store.claim_next()

        record = await store.fail(job_id, BOOM, retryable=True)
        assert record.status == JobStatus.RETRYING
        assert record.last_error == BOOM
        assert record.eligible_at == clock.now() + timedelta(seconds=1)

        # Not eligible before the backoff elapses
        assert await store.promote_due() == 0
        assert await store.claim_next() is None

        clock.advance(1)
        assert await store.promote_due() == 1
        record = await store.claim_next()
        assert record.id == job_id
        assert record.attempts == 2

    @pytest.mark.asyncio
    async def test_backoff_grows_between_attempts(self, store, clock, make_definition):
        job_id = await store.enqueue(make_definition(max_retries=3))

        delays = []
        for _ in range(3):
            await store.claim_next()
            record = await store.fail(job_id, BOOM, retryable=True)
            delays.append(record.eligible_at - clock.now())
            clock.set(record.eligible_at)
            await store.promote_due()

        assert delays == [timedelta(seconds=1), timedelta(seconds=2), timedelta(seconds=4)]

    @pytest.mark.asyncio
    async def test_retries_exhausted_after_k_plus_one_attempts(
        self, store, clock, make_definition
    ):
        job_id = await store.enqueue(make_definition(max_retries=2))

        statuses = []
        for _ in range(3):
            record = await store.claim_next()
            assert record is not None
            record = await store.fail(job_id, BOOM, retryable=True)
            statuses.append((record.attempts, record.status))
            clock.advance(60)
            await store.promote_due()

        assert statuses == [
            (1, JobStatus.RETRYING),
            (2, JobStatus.RETRYING),
            (3, JobStatus.FAILED),
        ]
        assert await store.claim_next() is None

    @pytest.mark.asyncio
    async def test_zero_retries_fails_immediately(self, store, make_definition):
        job_id = await store.enqueue(make_definition(max_retries=0))
        await store.claim_next()

        record = await store.fail(job_id, BOOM, retryable=True)
        assert record.status == JobStatus.FAILED

    @pytest.mark.asyncio
    async def test_non_retryable_failure_is_final(self, store, make_definition):
        job_id = await store.enqueue(make_definition(max_retries=5))
        await store.claim_next()

        record = await store.fail(job_id, BOOM, retryable=False)
        assert record.status == JobStatus.FAILED
        assert record.attempts == 1
        assert record.last_error.kind == ErrorKind.EXECUTION

    @pytest.mark.asyncio
    async def test_retry_keeps_its_place_in_fifo(self, store, clock, make_definition):
        first = await store.enqueue(make_definition())
        second = await store.enqueue(make_definition())

        await store.claim_next()
        await store.fail(first, BOOM, retryable=True)
        clock.advance(10)
        await store.promote_due()

        # The retried job was enqueued first, so it still goes first
        assert (await store.claim_next()).id == first
        assert (await store.claim_next()).id == second


class TestCancel:
    """Test cancellation in each state."""

    @pytest.mark.asyncio
    async def test_cancel_pending_job(self, store, clock, make_definition):
        job_id = await store.enqueue(make_definition(delay=timedelta(seconds=1)))

        assert await store.cancel(job_id) == CancelOutcome.CANCELLED
        assert (await store.get(job_id)).status == JobStatus.CANCELLED

        clock.advance(5)
        assert await store.promote_due() == 0
        assert await store.claim_next() is None

    @pytest.mark.asyncio
    async def test_cancel_ready_job(self, store, make_definition):
        job_id = await store.enqueue(make_definition())

        assert await store.cancel(job_id) == CancelOutcome.CANCELLED
        assert await store.claim_next() is None

    @pytest.mark.asyncio
    async def test_cancel_retrying_job(self, store, clock, make_definition):
        job_id = await store.enqueue(make_definition())
        await store.claim_next()
        await store.fail(job_id, BOOM, retryable=True)

        assert await store.cancel(job_id) == CancelOutcome.CANCELLED
        clock.advance(60)
        assert await store.promote_due() == 0

    @pytest.mark.asyncio
    async def test_cancel_running_job_sets_flag(self, store, make_definition):
        job_id = await store.enqueue(make_definition())
        await store.claim_next()

        assert await store.cancel(job_id) == CancelOutcome.REQUESTED
        record = await store.get(job_id)
        assert record.status == JobStatus.RUNNING
        assert record.cancel_requested is True

        record = await store.finish_cancelled(job_id)
        assert record.status == JobStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_failure_after_cancel_request_is_cancelled(self, store, make_definition):
        job_id = await store.enqueue(make_definition())
        await store.claim_next()
        await store.cancel(job_id)

        record = await store.fail(job_id, BOOM, retryable=True)
        assert record.status == JobStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_finished_job(self, store, make_definition):
        job_id = await store.enqueue(make_definition())
        await store.claim_next()
        await store.complete(job_id)

        assert await store.cancel(job_id) == CancelOutcome.FINISHED
        assert (await store.get(job_id)).status == JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_cancel_unknown_job(self, store):
        with pytest.raises(NotFoundError):
            await store.cancel(uuid4())


class TestReads:
    """Test snapshots, listing and counts."""

    @pytest.mark.asyncio
    async def test_get_returns_a_copy(self, store, make_definition):
        job_id = await store.enqueue(make_definition())

        snapshot = await store.get(job_id)
        snapshot.status = JobStatus.FAILED
        assert (await store.get(job_id)).status == JobStatus.READY

    @pytest.mark.asyncio
    async def test_get_unknown_job(self, store):
        with pytest.raises(NotFoundError):
            await store.get(uuid4())

    @pytest.mark.asyncio
    async def test_list_filters_and_pages(self, store, make_definition):
        ids = [await store.enqueue(make_definition(job_type="a")) for _ in range(5)]
        await store.enqueue(make_definition(job_type="b"))
        await store.cancel(ids[0])

        page = await store.list(JobFilter(job_type="a", limit=2, offset=1))
        assert [r.id for r in page] == ids[1:3]

        cancelled = await store.list(JobFilter(status=[JobStatus.CANCELLED]))
        assert [r.id for r in cancelled] == [ids[0]]

    @pytest.mark.asyncio
    async def test_count_by_status(self, store, make_definition):
        await store.enqueue(make_definition())
        await store.enqueue(make_definition())
        await store.enqueue(make_definition(delay=timedelta(seconds=10)))
        await store.claim_next()

        counts = await store.count_by_status()
        assert counts[JobStatus.RUNNING] == 1
        assert counts[JobStatus.READY] == 1
        assert counts[JobStatus.PENDING] == 1
        assert counts[JobStatus.COMPLETED] == 0


class TestMaintenance:
    """Test purge, promotion and orphan recovery."""

    @pytest.mark.asyncio
    async def test_purge_removes_only_old_terminal_jobs(self, store, clock, make_definition):
        done = await store.enqueue(make_definition())
        await store.claim_next()
        await store.complete(done)
        waiting = await store.enqueue(make_definition(delay=timedelta(days=30)))

        clock.advance(timedelta(days=8))
        recent = await store.enqueue(make_definition())
        await store.cancel(recent)

        deleted = await store.purge(clock.now() - timedelta(days=7))
        assert deleted == 1

        with pytest.raises(NotFoundError):
            await store.get(done)
        assert (await store.get(waiting)).status == JobStatus.PENDING
        assert (await store.get(recent)).status == JobStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_promote_due_in_eligibility_order(self, store, clock, make_definition):
        later = await store.enqueue(make_definition(delay=timedelta(seconds=2)))
        sooner = await store.enqueue(make_definition(delay=timedelta(seconds=1)))

        clock.advance(1)
        assert await store.promote_due() == 1
        assert (await store.get(sooner)).status == JobStatus.READY
        assert (await store.get(later)).status == JobStatus.PENDING

        clock.advance(1)
        assert await store.promote_due() == 1
        assert (await store.get(later)).status == JobStatus.READY

    @pytest.mark.asyncio
    async def test_recover_orphans(self, store, make_definition):
        job_id = await store.enqueue(make_definition(max_retries=1))
        await store.claim_next()

        assert await store.recover_orphans() == 1
        record = await store.get(job_id)
        assert record.status == JobStatus.RETRYING
        assert record.last_error.kind == ErrorKind.ABANDONED

    @pytest.mark.asyncio
    async def test_recover_orphans_beyond_one_page(self, store, make_definition):
        store.orphan_page_size = 2
        ids = [await store.enqueue(make_definition()) for _ in range(5)]
        for _ in ids:
            await store.claim_next()

        assert await store.recover_orphans() == 5
        for job_id in ids:
            assert (await store.get(job_id)).status == JobStatus.RETRYING


class TestListenersAndSignals:
    """Test transition observation and ready notification."""

    @pytest.mark.asyncio
    async def test_listener_sees_every_transition(self, store, make_definition):
        seen = []
        store.subscribe(lambda record, previous: seen.append((previous, record.status)))

        job_id = await store.enqueue(make_definition())
        await store.claim_next()
        await store.complete(job_id)

        assert seen == [
            (None, JobStatus.READY),
            (JobStatus.READY, JobStatus.RUNNING),
            (JobStatus.RUNNING, JobStatus.COMPLETED),
        ]

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_block_transition(self, store, make_definition):
        def broken(record, previous):
            raise RuntimeError("listener bug")

        store.subscribe(broken)
        job_id = await store.enqueue(make_definition())
        assert (await store.get(job_id)).status == JobStatus.READY

    @pytest.mark.asyncio
    async def test_wait_for_ready_wakes_on_enqueue(self, store, make_definition):
        assert await store.claim_next() is None

        waiter = asyncio.create_task(store.wait_for_ready(1.0))
        await asyncio.sleep(0)
        await store.enqueue(make_definition())

        assert await waiter is True

    @pytest.mark.asyncio
    async def test_wait_for_ready_times_out_when_drained(self, store):
        assert await store.claim_next() is None
        assert await store.wait_for_ready(0.01) is False

    @pytest.mark.asyncio
    async def test_wait_for_ready_blocks_when_nothing_claimable(self, store, make_definition):
        await store.enqueue(make_definition(job_type="echo"))

        assert await store.claim_next(job_types={"noop"}) is None
        assert await store.wait_for_ready(0.01) is False
        assert (await store.claim_next(job_types={"echo"})).job_type == "echo"

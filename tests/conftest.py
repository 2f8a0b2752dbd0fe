import asyncio
from datetime import timedelta

import pytest

from jobengine.config.settings import Settings
from jobengine.core.clock import ManualClock
from jobengine.core.registries import HandlerRegistry
from jobengine.jobs.backoff import BackoffPolicy
from jobengine.jobs.handlers import FunctionHandler
from jobengine.jobs.schemas import JobDefinition, JobPriority
from jobengine.jobs.store import InMemoryJobStore


async def noop_handler(ctx, payload):
    return None


async def echo_handler(ctx, payload):
    return payload


@pytest.fixture
def clock():
    """Deterministic clock starting at 2024-01-01 UTC."""
    return ManualClock()


@pytest.fixture
def backoff():
    """Backoff without jitter: 1s, 2s, 4s, ... capped at 60s."""
    return BackoffPolicy(base_delay_s=1.0, factor=2.0, max_delay_s=60.0, jitter=0.0)


@pytest.fixture
def registry():
    registry = HandlerRegistry()
    registry.register("noop", FunctionHandler(noop_handler))
    registry.register("echo", FunctionHandler(echo_handler))
    return registry


@pytest.fixture
def store(clock, backoff):
    """In-memory store that accepts any job type."""
    return InMemoryJobStore(clock=clock, backoff=backoff)


@pytest.fixture
def fast_settings():
    """Settings tuned for sub-second engine tests."""
    return Settings(
        environment="test",
        job_concurrency=2,
        job_poll_interval_ms=10,
        job_claim_timeout_ms=50,
        job_default_max_retries=3,
        job_default_timeout_ms=5_000,
        job_backoff_base_ms=10,
        job_backoff_factor=2.0,
        job_max_backoff_s=1,
        job_backoff_jitter=0.0,
        job_shutdown_grace_s=1,
        job_abandon_grace_ms=50,
        job_store_retry_attempts=2,
        job_store_retry_base_ms=1,
        job_cleanup_interval_s=0,
        job_stats_push_interval_s=0.05,
    )


@pytest.fixture
def make_definition(clock):
    """Factory for job definitions; ``delay`` is relative to the test clock."""

    def make(
        job_type: str = "noop",
        priority: JobPriority = JobPriority.NORMAL,
        max_retries: int = 3,
        delay: timedelta | None = None,
        **options,
    ) -> JobDefinition:
        run_at = clock.now() + delay if delay is not None else None
        return JobDefinition(
            job_type=job_type,
            priority=priority,
            max_retries=max_retries,
            run_at=run_at,
            **options,
        )

    return make


@pytest.fixture
def wait_for_status():
    """Poll a store until a job reaches one of the given statuses."""

    async def wait(store, job_id, *statuses, timeout: float = 2.0):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            record = await store.get(job_id)
            if record.status in statuses:
                return record
            if loop.time() > deadline:
                raise AssertionError(
                    f"Job {job_id} is {record.status.value}, expected one of "
                    f"{[s.value for s in statuses]}"
                )
            await asyncio.sleep(0.005)

    return wait

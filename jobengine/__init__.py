"""
jobengine - priority-ordered, retry-aware background job processing.
"""

from jobengine.core.clock import Clock, ManualClock, SystemClock
from jobengine.core.exceptions import (
    AbandonedError,
    ExecutionError,
    InvalidTransitionError,
    JobCancelledError,
    JobEngineException,
    JobTimeoutError,
    NotFoundError,
    ShutdownError,
    StorageError,
    ValidationError,
)
from jobengine.jobs.context import JobContext
from jobengine.jobs.engine import JobEngine
from jobengine.jobs.schemas import (
    JobDefinition,
    JobError,
    JobFilter,
    JobPriority,
    JobRecord,
    JobStatus,
    StatsSnapshot,
)
from jobengine.jobs.scheduler import Schedule

__all__ = [
    "AbandonedError",
    "Clock",
    "ExecutionError",
    "InvalidTransitionError",
    "JobCancelledError",
    "JobContext",
    "JobDefinition",
    "JobEngine",
    "JobEngineException",
    "JobError",
    "JobFilter",
    "JobPriority",
    "JobRecord",
    "JobStatus",
    "JobTimeoutError",
    "ManualClock",
    "NotFoundError",
    "Schedule",
    "ShutdownError",
    "StatsSnapshot",
    "StorageError",
    "SystemClock",
    "ValidationError",
]

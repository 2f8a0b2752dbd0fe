"""
Job data model.
"""

from datetime import datetime, timedelta
from enum import Enum, IntEnum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from jobengine.core.exceptions import ValidationError


class JobPriority(IntEnum):
    """Priority levels; a larger value is dequeued first."""

    LOW = 0
    NORMAL = 1
    HIGH = 2
    CRITICAL = 3


class JobStatus(str, Enum):
    """Job status enumeration."""

    PENDING = "pending"
    READY = "ready"
    RUNNING = "running"
    RETRYING = "retrying"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_waiting(self) -> bool:
        """Waiting on an eligibility time (delayed or backing off)."""
        return self in (JobStatus.PENDING, JobStatus.RETRYING)


TERMINAL_STATUSES = frozenset(
    {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}
)


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    EXECUTION = "execution"
    TIMEOUT = "timeout"
    ABANDONED = "abandoned"
    STORAGE = "storage"


class CancelOutcome(str, Enum):
    """Result of a store-level cancel."""

    CANCELLED = "cancelled"  # was not running; now terminal
    REQUESTED = "requested"  # running; flag set for the worker to observe
    FINISHED = "finished"  # already terminal; nothing to do


class JobError(BaseModel):
    """Structured error recorded on a job."""

    model_config = ConfigDict(frozen=True)

    kind: ErrorKind
    message: str


class JobDefinition(BaseModel):
    """Caller-supplied description of a unit of work."""

    model_config = ConfigDict(frozen=True)

    job_type: str = Field(..., min_length=1, description="Job type identifier")
    payload: bytes = Field(default=b"", description="Opaque, handler-interpreted payload")
    priority: JobPriority = Field(default=JobPriority.NORMAL)
    max_retries: int = Field(default=3, ge=0, description="Retries after the first attempt")
    timeout_ms: int = Field(default=300_000, gt=0, description="Per-attempt timeout")
    run_at: datetime | None = Field(
        default=None, description="Earliest eligible time; None means now"
    )

    @field_validator("run_at")
    @classmethod
    def _require_aware(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            raise ValueError("run_at must be timezone-aware")
        return value

    @property
    def timeout(self) -> timedelta:
        return timedelta(milliseconds=self.timeout_ms)


class JobRecord(BaseModel):
    """Store-owned state of a job. Callers only ever see copies."""

    id: UUID
    definition: JobDefinition
    status: JobStatus
    seq: int = Field(..., description="Enqueue sequence; FIFO tie-break within a priority")
    attempts: int = 0
    last_error: JobError | None = None
    result: bytes | None = None
    cancel_requested: bool = False
    created_at: datetime
    updated_at: datetime
    eligible_at: datetime
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def job_type(self) -> str:
        return self.definition.job_type

    @property
    def priority(self) -> JobPriority:
        return self.definition.priority

    @property
    def max_retries(self) -> int:
        return self.definition.max_retries

    def snapshot(self) -> "JobRecord":
        return self.model_copy(deep=True)


class JobFilter(BaseModel):
    """Filters for listing jobs."""

    status: list[JobStatus] | None = Field(
        default=None, description="Filter by job status"
    )
    job_type: str | None = Field(default=None, description="Filter by job type")
    limit: int = Field(
        default=50, ge=1, le=1000, description="Maximum results to return"
    )
    offset: int = Field(default=0, ge=0, description="Results offset for pagination")

    def matches(self, record: JobRecord) -> bool:
        if self.status is not None and record.status not in self.status:
            return False
        if self.job_type is not None and record.job_type != self.job_type:
            return False
        return True


class StatsSnapshot(BaseModel):
    """Point-in-time lifecycle counts."""

    pending: int = 0  # includes retrying
    ready: int = 0
    running: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    retrying: int = 0
    total: int = 0
    throughput: float = Field(default=0.0, description="Completions per second")


def build_definition(job_type: str, payload: bytes, **options: Any) -> JobDefinition:
    """Build a definition, reporting malformed options as ValidationError."""
    try:
        return JobDefinition(job_type=job_type, payload=payload, **options)
    except PydanticValidationError as e:
        raise ValidationError(
            f"Invalid options for job type '{job_type}'",
            details={"errors": e.errors(include_url=False)},
        ) from e

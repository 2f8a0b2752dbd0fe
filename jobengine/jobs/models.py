"""
Job table for the database-backed store.
"""

from datetime import UTC, datetime
from uuid import UUID

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    LargeBinary,
    SmallInteger,
    Text,
    TypeDecorator,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from jobengine.infra.database import Base
from jobengine.jobs.schemas import (
    ErrorKind,
    JobDefinition,
    JobError,
    JobPriority,
    JobRecord,
    JobStatus,
)


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC timestamps, also on backends that drop the offset."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("Naive datetimes are not accepted")
        value = value.astimezone(UTC)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value: datetime | None, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


class JobRow(Base):
    """Persistent job record."""

    __tablename__ = "jobs"

    # Core fields
    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    seq: Mapped[int] = mapped_column(
        BigInteger, nullable=False, comment="Enqueue sequence for FIFO tie-break"
    )
    job_type: Mapped[str] = mapped_column(
        Text, nullable=False, comment="Job type identifier"
    )
    payload: Mapped[bytes] = mapped_column(
        LargeBinary, nullable=False, default=b"", comment="Opaque job payload"
    )
    priority: Mapped[int] = mapped_column(
        SmallInteger,
        nullable=False,
        default=int(JobPriority.NORMAL),
        comment="Priority 0-3, higher is dequeued first",
    )
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False)
    timeout_ms: Mapped[int] = mapped_column(Integer, nullable=False)
    run_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime, nullable=True, comment="Requested earliest time to run"
    )

    # Job state
    status: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="pending|ready|running|retrying|completed|failed|cancelled",
    )
    attempts: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, comment="Executions started"
    )
    eligible_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, comment="Next time the job may become ready"
    )
    cancel_requested: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )

    # Results and errors
    result: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)
    error_kind: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Structured error kind"
    )
    last_error: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Last error message"
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    started_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'ready', 'running', 'retrying', "
            "'completed', 'failed', 'cancelled')",
            name="jobs_status_check",
        ),
        CheckConstraint("priority BETWEEN 0 AND 3", name="jobs_priority_check"),
        Index("ix_jobs_ready_order", "status", "priority", "seq"),
        Index("ix_jobs_eligible", "status", "eligible_at"),
    )

    @classmethod
    def from_definition(
        cls,
        job_id: UUID,
        seq: int,
        definition: JobDefinition,
        status: JobStatus,
        eligible_at: datetime,
        now: datetime,
    ) -> "JobRow":
        return cls(
            id=job_id,
            seq=seq,
            job_type=definition.job_type,
            payload=definition.payload,
            priority=int(definition.priority),
            max_retries=definition.max_retries,
            timeout_ms=definition.timeout_ms,
            run_at=definition.run_at,
            status=status.value,
            attempts=0,
            eligible_at=eligible_at,
            cancel_requested=False,
            created_at=now,
            updated_at=now,
        )

    def to_record(self) -> JobRecord:
        last_error = None
        if self.error_kind is not None:
            last_error = JobError(kind=ErrorKind(self.error_kind), message=self.last_error or "")

        return JobRecord(
            id=self.id,
            definition=JobDefinition(
                job_type=self.job_type,
                payload=self.payload,
                priority=JobPriority(self.priority),
                max_retries=self.max_retries,
                timeout_ms=self.timeout_ms,
                run_at=self.run_at,
            ),
            status=JobStatus(self.status),
            seq=self.seq,
            attempts=self.attempts,
            last_error=last_error,
            result=self.result,
            cancel_requested=self.cancel_requested,
            created_at=self.created_at,
            updated_at=self.updated_at,
            eligible_at=self.eligible_at,
            started_at=self.started_at,
            finished_at=self.finished_at,
        )

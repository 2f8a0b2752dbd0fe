"""
Per-attempt execution context handed to handlers.
"""

import asyncio
from enum import Enum
from uuid import UUID

from jobengine.core.exceptions import JobCancelledError


class CancelReason(str, Enum):
    REQUESTED = "requested"
    TIMEOUT = "timeout"
    SHUTDOWN = "shutdown"


class JobContext:
    """
    Identity, deadline and cancellation signal for one attempt.

    Handlers that run long should check ``cancelled`` (or call
    ``raise_if_cancelled``) at safe points, and prefer ``ctx.sleep`` over
    ``asyncio.sleep`` so that waits end as soon as the attempt is cancelled.
    """

    def __init__(
        self,
        job_id: UUID,
        job_type: str,
        attempt: int,
        max_retries: int,
        timeout_s: float,
    ):
        self.job_id = job_id
        self.job_type = job_type
        self.attempt = attempt
        self.max_retries = max_retries
        self.deadline = asyncio.get_running_loop().time() + timeout_s
        self._cancelled = asyncio.Event()
        self._reason: CancelReason | None = None

    @property
    def retry_count(self) -> int:
        return self.attempt - 1

    @property
    def is_last_attempt(self) -> bool:
        return self.attempt > self.max_retries

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def cancel_reason(self) -> CancelReason | None:
        return self._reason

    def remaining(self) -> float:
        """Seconds left before the attempt deadline (never negative)."""
        return max(0.0, self.deadline - asyncio.get_running_loop().time())

    def signal(self, reason: CancelReason) -> None:
        """Ask the handler to stop. The first reason given wins."""
        if self._reason is None:
            self._reason = reason
        self._cancelled.set()

    async def wait_cancelled(self) -> None:
        await self._cancelled.wait()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise JobCancelledError(
                f"Job {self.job_id} cancelled ({self._reason.value})",
                details={"job_id": str(self.job_id), "reason": self._reason.value},
            )

    async def sleep(self, seconds: float) -> None:
        """Sleep, raising JobCancelledError as soon as the attempt is cancelled."""
        try:
            await asyncio.wait_for(self._cancelled.wait(), seconds)
        except asyncio.TimeoutError:
            return
        self.raise_if_cancelled()

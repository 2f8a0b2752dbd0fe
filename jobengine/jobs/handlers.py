"""
Handler adapters and built-in job handlers.
"""

import inspect
import json
from collections.abc import Awaitable, Callable
from datetime import timedelta

from jobengine.config.logging import get_logger
from jobengine.core.exceptions import ExecutionError
from jobengine.core.registries import JobHandler
from jobengine.jobs.context import JobContext
from jobengine.jobs.store import JobStore

logger = get_logger(__name__)

HandlerFn = Callable[[JobContext, bytes], Awaitable[bytes | None]]

MAINTENANCE_CLEANUP = "maintenance_cleanup"


class FunctionHandler:
    """Adapts a plain ``async def fn(ctx, payload)`` to the JobHandler protocol."""

    def __init__(self, fn: HandlerFn):
        self.fn = fn
        self.__name__ = getattr(fn, "__name__", type(fn).__name__)

    async def handle(self, ctx: JobContext, payload: bytes) -> bytes | None:
        result = self.fn(ctx, payload)
        if not inspect.isawaitable(result):
            raise ExecutionError(
                f"Handler {self.__name__} did not return an awaitable", retryable=False
            )
        return await result

    def __repr__(self) -> str:
        return f"FunctionHandler({self.__name__})"


def _is_async_callable(fn: object) -> bool:
    return inspect.iscoroutinefunction(fn) or inspect.iscoroutinefunction(
        getattr(fn, "__call__", None)
    )


def as_handler(handler: JobHandler | HandlerFn) -> JobHandler:
    """Resolve a registration argument to a JobHandler."""
    if isinstance(handler, JobHandler):
        return handler
    if _is_async_callable(handler):
        return FunctionHandler(handler)
    raise TypeError(f"Handler must be a JobHandler or an async callable, got {handler!r}")


class MaintenanceCleanupHandler:
    """
    Job handler that purges terminal jobs past the retention window.

    Payload expected (JSON, all optional):
    {
        "retention_s": 604800,  # defaults to the engine's retention window
        "dry_run": false
    }
    """

    def __init__(self, store: JobStore, retention_s: int):
        self.store = store
        self.retention_s = retention_s

    async def handle(self, ctx: JobContext, payload: bytes) -> bytes | None:
        try:
            params = json.loads(payload) if payload else {}
        except json.JSONDecodeError as e:
            raise ExecutionError(f"Invalid maintenance payload: {e}", retryable=False) from e

        retention_s = params.get("retention_s", self.retention_s)
        dry_run = params.get("dry_run", False)
        if not isinstance(retention_s, int | float) or retention_s < 0:
            raise ExecutionError(
                f"retention_s must be a non-negative number, got: {retention_s}",
                retryable=False,
            )

        cutoff = self.store.clock.now() - timedelta(seconds=retention_s)

        if dry_run:
            result = {"status": "dry_run", "cutoff": cutoff.isoformat()}
        else:
            deleted = await self.store.purge(cutoff)
            result = {"status": "completed", "deleted_count": deleted}

        logger.info("Maintenance cleanup finished", retention_s=retention_s, **result)
        return json.dumps(result).encode()

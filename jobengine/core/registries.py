from typing import TYPE_CHECKING, Generic, Protocol, TypeVar, runtime_checkable

if TYPE_CHECKING:
    from jobengine.jobs.context import JobContext

# Base registry implementation
T = TypeVar("T")


class Registry(Generic[T]):
    """Generic registry for pluggable implementations."""

    def __init__(self, name: str):
        self.name = name
        self._implementations: dict[str, T] = {}
        self._frozen = False

    def register(self, name: str, implementation: T) -> None:
        """Register an implementation with a given name."""
        if self._frozen:
            raise RuntimeError(
                f"Cannot register '{name}' in {self.name.lower()} registry: "
                "registry is frozen once workers have started"
            )
        self._implementations[name] = implementation

    def get(self, name: str) -> T:
        """Get an implementation by name."""
        if name not in self._implementations:
            raise KeyError(
                f"No {self.name.lower()} implementation registered with name: {name}"
            )
        return self._implementations[name]

    def list(self) -> list[str]:
        """List all registered implementation names."""
        return list(self._implementations.keys())

    def __contains__(self, name: object) -> bool:
        return name in self._implementations

    def freeze(self) -> None:
        """Freeze the registry to prevent further modifications."""
        self._frozen = True

    def is_frozen(self) -> bool:
        """Check if the registry is frozen."""
        return self._frozen


# Job Registry - background processing handlers
@runtime_checkable
class JobHandler(Protocol):
    """Protocol for job handlers that process background work."""

    async def handle(self, ctx: "JobContext", payload: bytes) -> bytes | None:
        """
        Handle one attempt of a job.

        Args:
            ctx: Attempt context with identity, deadline and cancellation signal
            payload: Opaque job payload

        Returns:
            Optional result payload stored with the completed job

        Raises:
            ExecutionError: with ``retryable=False`` to fail permanently; any
                other exception is retried per the backoff policy
        """
        ...


class HandlerRegistry(Registry[JobHandler]):
    """Registry mapping job types to handlers."""

    def __init__(self):
        super().__init__("Job")

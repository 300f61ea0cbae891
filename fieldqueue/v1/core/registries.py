from typing import Generic, Protocol, TypeVar

from fieldqueue.v1.infra.jobs.schemas import JobPayload, JobResult

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
                "registry is frozen in production mode"
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

    def clear(self) -> None:
        """Remove every registered implementation."""
        if self._frozen:
            raise RuntimeError(
                f"Cannot clear {self.name.lower()} registry: "
                "registry is frozen in production mode"
            )
        self._implementations.clear()

    def freeze(self) -> None:
        """Freeze the registry to prevent further modifications."""
        self._frozen = True

    def is_frozen(self) -> bool:
        """Check if the registry is frozen."""
        return self._frozen


# Job Registry - background processing handlers
class JobHandler(Protocol):
    """Protocol for job handlers that process background tasks."""

    async def handle(self, payload: JobPayload) -> JobResult | dict | None:
        """
        Handle a background job.

        Args:
            payload: Normalized job payload (org_id, type, data)

        Returns:
            A JobResult (or a dict validated into one). ``None`` means success.
            Raising marks the attempt as failed and lets the queue retry it.
        """
        ...


class JobRegistry(Registry[JobHandler]):
    """Registry for background job handlers, one handler per job type."""

    def __init__(self):
        super().__init__("Job")

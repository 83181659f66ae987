from typing import Any, Generic, Protocol, TypeVar

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

    def unregister(self, name: str) -> None:
        """Remove an implementation; unknown names are ignored."""
        if self._frozen:
            raise RuntimeError(
                f"Cannot unregister '{name}' from {self.name.lower()} registry: "
                "registry is frozen in production mode"
            )
        self._implementations.pop(name, None)

    def get(self, name: str) -> T:
        """Get an implementation by name."""
        if name not in self._implementations:
            raise KeyError(
                f"No {self.name.lower()} implementation registered with name: {name}"
            )
        return self._implementations[name]

    def __contains__(self, name: object) -> bool:
        return name in self._implementations

    def list(self) -> list[str]:
        """List all registered implementation names."""
        return list(self._implementations.keys())

    def freeze(self) -> None:
        """Freeze the registry to prevent further modifications."""
        self._frozen = True

    def is_frozen(self) -> bool:
        """Check if the registry is frozen."""
        return self._frozen


# Job Registry - business handlers keyed by job type
class JobHandler(Protocol):
    """Protocol for business handlers invoked by the job consumer."""

    async def handle(self, payload: dict[str, Any], attempt: int) -> Any:
        """
        Process one delivery of a job.

        Args:
            payload: Job-specific parameters, opaque to the engine
            attempt: Delivery attempt number, starting at 1

        Returns:
            Success, RetryableFailure or FatalFailure. Handlers never
            acknowledge broker messages or write ledger/outbox rows.
        """
        ...


class JobRegistry(Registry[JobHandler]):
    """Registry for job handlers, one per job type."""

    def __init__(self):
        super().__init__("Job")


# Global registry instance (singleton)
job_registry = JobRegistry()

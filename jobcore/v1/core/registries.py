from typing import Any, Generic, Iterable, Protocol, TypeVar, runtime_checkable

from jobcore.v1.core.exceptions import DuplicateHandlerError, HandlerNotRegisteredError
from jobcore.v1.infra.jobs.catalog import JobType

# Base registry implementation
T = TypeVar("T")


class Registry(Generic[T]):
    """Generic registry for pluggable implementations."""

    def __init__(self, name: str, allow_replace: bool = True):
        self.name = name
        self.allow_replace = allow_replace
        self._implementations: dict[str, T] = {}
        self._frozen = False

    def register(self, name: str, implementation: T) -> None:
        """Register an implementation with a given name."""
        if self._frozen:
            raise RuntimeError(
                f"Cannot register '{name}' in {self.name.lower()} registry: "
                "registry is frozen"
            )
        if not self.allow_replace and name in self._implementations:
            existing = self._implementations[name]
            raise DuplicateHandlerError(
                f"Duplicate {self.name.lower()} registered for {name}: "
                f"{type(existing).__name__} and {type(implementation).__name__}"
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

    def __len__(self) -> int:
        return len(self._implementations)

    def freeze(self) -> None:
        """Freeze the registry to prevent further modifications."""
        self._frozen = True

    def is_frozen(self) -> bool:
        """Check if the registry is frozen."""
        return self._frozen


# Job handlers - executables for background job types
@runtime_checkable
class JobHandler(Protocol):
    """Protocol for job handlers.

    Handlers must tolerate concurrent calls for different job instances of
    their type; the dispatcher guarantees a single job instance is never
    executed by two workers at once.
    """

    def handles_type(self) -> JobType:
        """The job type this handler executes."""
        ...

    async def execute(
        self,
        ctx: Any,  # JobContext
        payload: dict[str, Any],
    ) -> dict[str, Any] | None:
        """
        Run one attempt of a job.

        Args:
            ctx: Explicit execution context (job id, attempt, bound logger,
                session factory for domain writes)
            payload: Job parameters exactly as enqueued

        Returns:
            Optional result dictionary stored with the succeeded job

        Raises:
            NonRetryableJobError: the job can never succeed; fail it now
            Exception: any other error consumes an attempt and backs off
        """
        ...


class HandlerRegistry(Registry[JobHandler]):
    """Registry mapping each JobType to exactly one handler."""

    def __init__(self):
        super().__init__("Handler", allow_replace=False)

    def add(self, handler: JobHandler) -> None:
        """Index a handler by the type it declares."""
        job_type = JobType(handler.handles_type())
        self.register(job_type.value, handler)

    def add_all(self, handlers: Iterable[JobHandler]) -> "HandlerRegistry":
        for handler in handlers:
            self.add(handler)
        return self

    def handler_for(self, job_type: JobType | str) -> JobHandler:
        """Lookup used at dispatch time; a gap is an error, never a silent drop."""
        key = JobType(job_type).value
        if key not in self._implementations:
            raise HandlerNotRegisteredError(f"No handler registered for JobType.{key}")
        return self._implementations[key]

    def missing_types(self) -> list[JobType]:
        """Catalog types that have no handler yet."""
        return [t for t in JobType if t.value not in self._implementations]

    @classmethod
    def build(cls, handlers: Iterable[JobHandler]) -> "HandlerRegistry":
        """Build and freeze a registry once at startup."""
        registry = cls().add_all(handlers)
        registry.freeze()
        return registry

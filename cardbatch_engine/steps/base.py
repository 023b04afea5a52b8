"""
Step protocols, job/step definitions and JobRegistry.

Contract:
    ``ItemReader`` / ``ItemProcessor`` / ``ItemWriter`` define the
    reader -> processor -> writer pipeline of one chunk-oriented step.
    ``StepDefinition`` holds factories producing fresh pipeline objects for
    every step execution.  ``JobDefinition`` is an ordered list of steps plus
    declared parameters.  ``JobRegistry`` stores definitions keyed by name.

Architecture:
    cardbatch_engine/steps.  Imports from cardbatch_engine.domain and stdlib
    only (plus the SQLAlchemy Session type).

Invariants enforced:
    - One job definition per name.
    - Step names are unique within a job (they key the checkpoints).
    - Readers expose a JSON-serializable position token; writers expose a
      JSON-serializable checkpoint.  Both are restored on restart.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Protocol, runtime_checkable
from uuid import UUID

from sqlalchemy.orm import Session, sessionmaker

from cardbatch_engine.domain.parameters import JobParameters, ParameterSpec
from cardbatch_kernel.domain.clock import Clock
from cardbatch_kernel.exceptions import JobNotRegisteredError


# =============================================================================
# Runtime scope objects
# =============================================================================


@dataclass(frozen=True)
class StepScope:
    """Everything a step's pipeline objects may depend on.

    Passed to the reader/processor/writer factories of a StepDefinition.
    """

    job_name: str
    step_name: str
    execution_id: UUID
    parameters: JobParameters
    session_factory: sessionmaker[Session]
    clock: Clock


@dataclass
class ChunkContext:
    """Per-chunk view handed to processors and writers.

    ``values`` are the step's running accumulators.  They are persisted in
    the ExecutionContext with every commit and restored to their committed
    state whenever a chunk (or a single item attempt) is rolled back, so
    they must hold JSON-native values only (decimals as canonical strings).
    """

    session: Session
    values: dict[str, Any]
    scope: StepScope
    chunk_number: int = 0


# =============================================================================
# Pipeline protocols
# =============================================================================


@runtime_checkable
class ItemReader(Protocol):
    """Sequential source of items with a restorable position.

    Contract:
        - ``open(position)`` restores a token from ``position()`` (or starts
          at the beginning when ``None``).
        - ``read()`` returns the next item or ``None`` at end of input.  A
          malformed item raises AFTER the reader has advanced past it.
        - ``current_ref`` names the last item read (``line N`` or a key).
    """

    def open(self, position: dict[str, Any] | None) -> None: ...

    def read(self) -> Any | None: ...

    def position(self) -> dict[str, Any]: ...

    @property
    def current_ref(self) -> str: ...

    def close(self) -> None: ...


@runtime_checkable
class ItemProcessor(Protocol):
    """Business transform of one item.

    Returns the output item, or ``None`` to filter the input out.  Must not
    write to the database; writes belong to the writer.
    """

    def process(self, item: Any, chunk: ChunkContext) -> Any | None: ...


@runtime_checkable
class ItemWriter(Protocol):
    """Writes a chunk of output items inside the chunk transaction.

    Contract:
        - ``write(items, chunk)`` must be replayable: after ``on_rollback()``
          the same items may be written again.
        - ``checkpoint()`` is persisted with each commit and handed back to
          ``open()`` on restart.
        - ``on_commit()`` is called after the chunk transaction committed.
    """

    def open(self, checkpoint: dict[str, Any] | None) -> None: ...

    def write(self, items: list[Any], chunk: ChunkContext) -> None: ...

    def checkpoint(self) -> dict[str, Any]: ...

    def on_commit(self) -> None: ...

    def on_rollback(self) -> None: ...

    def close(self) -> None: ...


@runtime_checkable
class ChunkListener(Protocol):
    """Optional hooks; processors and writers implementing them are called."""

    def before_chunk(self, chunk: ChunkContext) -> None: ...

    def after_commit(self, chunk: ChunkContext) -> None: ...

    def on_chunk_error(self, chunk: ChunkContext, exc: BaseException) -> None: ...


class PassThroughProcessor:
    """Returns every item unchanged."""

    def process(self, item: Any, chunk: ChunkContext) -> Any:
        return item


# =============================================================================
# Definitions
# =============================================================================


@dataclass(frozen=True)
class StepDefinition:
    """One chunk-oriented step of a job.

    ``allow_continue`` lets the job go on when this step fails; the
    configuration may override it per step.
    """

    name: str
    reader_factory: Callable[[StepScope], ItemReader]
    writer_factory: Callable[[StepScope], ItemWriter]
    processor_factory: Callable[[StepScope], ItemProcessor] | None = None
    allow_continue: bool = False
    description: str = ""


@dataclass(frozen=True)
class JobDefinition:
    """Ordered steps plus the parameters a launch must supply."""

    name: str
    steps: tuple[StepDefinition, ...]
    parameters: tuple[ParameterSpec, ...] = ()
    processing_window_minutes: int | None = None
    description: str = ""
    extra_exceptions: dict[str, type[BaseException]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.steps:
            raise ValueError(f"Job '{self.name}' must declare at least one step")
        names = [step.name for step in self.steps]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"Job '{self.name}' has duplicate step names: {duplicates}")

    @property
    def step_names(self) -> tuple[str, ...]:
        return tuple(step.name for step in self.steps)


# =============================================================================
# JobRegistry
# =============================================================================


class JobRegistry:
    """Registry mapping job names to JobDefinitions.

    Contract:
        - ``register()`` adds a job; raises ValueError on duplicate.
        - ``get()`` retrieves by name; raises JobNotRegisteredError if missing.
        - ``list_jobs()`` returns all registered job names.
    """

    def __init__(self) -> None:
        self._jobs: dict[str, JobDefinition] = {}

    def register(self, job: JobDefinition) -> None:
        """Register a job definition.

        Raises:
            ValueError: If a job with the same name is already registered.
        """
        if job.name in self._jobs:
            raise ValueError(f"Job '{job.name}' is already registered")
        self._jobs[job.name] = job

    def get(self, job_name: str) -> JobDefinition:
        """Retrieve a registered job definition.

        Raises:
            JobNotRegisteredError: If no job is registered under job_name.
        """
        try:
            return self._jobs[job_name]
        except KeyError:
            raise JobNotRegisteredError(job_name, self.list_jobs()) from None

    def list_jobs(self) -> tuple[str, ...]:
        """Return all registered job names, sorted."""
        return tuple(sorted(self._jobs.keys()))

    def __len__(self) -> int:
        return len(self._jobs)

    def __contains__(self, job_name: str) -> bool:
        return job_name in self._jobs

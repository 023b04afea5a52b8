"""
cardbatch_engine.domain.types -- Pure dataclasses for job execution metadata.

ZERO I/O.  Frozen dataclasses with str-enum status fields and tuples for
immutable collections; the ORM models in ``cardbatch_engine.models`` convert
to and from these.

Invariants enforced:
    - Execution/step status enums expose ``is_terminal`` so the single
      active execution rule is expressed once.
    - The chunk phase machine rejects illegal transitions.
    - Step counters are the only mutable DTO; they live for one step
      execution and are persisted with every chunk commit.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from cardbatch_engine.domain.parameters import JobParameters
from cardbatch_kernel.exceptions import InvalidStateTransitionError


# =============================================================================
# Status enums
# =============================================================================


class JobStatus(str, Enum):
    """JobExecution lifecycle status."""

    STARTING = "STARTING"  # Row created, steps not yet running
    STARTED = "STARTED"  # Steps running
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    STOPPED = "STOPPED"  # Operator stop honored at a chunk boundary

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.STOPPED)

    @property
    def is_restartable(self) -> bool:
        return self in (JobStatus.FAILED, JobStatus.STOPPED)


class StepStatus(str, Enum):
    """StepExecution lifecycle status."""

    STARTED = "STARTED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    STOPPED = "STOPPED"

    @property
    def is_terminal(self) -> bool:
        return self != StepStatus.STARTED


class ExitCode(str, Enum):
    """Exit codes reported to the operator (and by the CLI as return codes)."""

    COMPLETED = "COMPLETED"
    COMPLETED_WITH_SKIPS = "COMPLETED_WITH_SKIPS"
    COMPLETED_WITH_STEP_FAILURES = "COMPLETED_WITH_STEP_FAILURES"
    FAILED = "FAILED"
    STOPPED = "STOPPED"
    UNKNOWN = "UNKNOWN"

    @property
    def return_code(self) -> int:
        return _RETURN_CODES[self]


_RETURN_CODES = {
    ExitCode.COMPLETED: 0,
    ExitCode.COMPLETED_WITH_SKIPS: 4,
    ExitCode.COMPLETED_WITH_STEP_FAILURES: 8,
    ExitCode.STOPPED: 12,
    ExitCode.FAILED: 16,
    ExitCode.UNKNOWN: 16,
}


class FailurePhase(str, Enum):
    """Where in the chunk an item failure happened."""

    READ = "read"
    PROCESS = "process"
    WRITE = "write"
    STEP = "step"  # Fatal, step-level failure (not tied to one item)


class FailureAction(str, Enum):
    SKIPPED = "skipped"
    FATAL = "fatal"


# =============================================================================
# Chunk state machine
# =============================================================================


class ChunkPhase(str, Enum):
    """Phase of the chunk loop within one step execution."""

    INITIALIZING = "INITIALIZING"
    READING = "READING"
    PROCESSING = "PROCESSING"
    WRITING = "WRITING"
    COMMITTING = "COMMITTING"
    COMPLETED = "COMPLETED"
    STOPPED = "STOPPED"
    FAILED = "FAILED"


_CHUNK_TRANSITIONS: dict[ChunkPhase, frozenset[ChunkPhase]] = {
    ChunkPhase.INITIALIZING: frozenset({ChunkPhase.READING, ChunkPhase.FAILED}),
    ChunkPhase.READING: frozenset(
        {ChunkPhase.PROCESSING, ChunkPhase.COMPLETED, ChunkPhase.FAILED}
    ),
    ChunkPhase.PROCESSING: frozenset({ChunkPhase.WRITING, ChunkPhase.FAILED}),
    ChunkPhase.WRITING: frozenset({ChunkPhase.COMMITTING, ChunkPhase.FAILED}),
    ChunkPhase.COMMITTING: frozenset(
        {
            ChunkPhase.WRITING,  # commit failed transiently, chunk is rewritten
            ChunkPhase.READING,
            ChunkPhase.COMPLETED,
            ChunkPhase.STOPPED,
            ChunkPhase.FAILED,
        }
    ),
    ChunkPhase.COMPLETED: frozenset(),
    ChunkPhase.STOPPED: frozenset(),
    ChunkPhase.FAILED: frozenset(),
}


class ChunkStateMachine:
    """Tracks the chunk phase of one step execution and validates each move."""

    def __init__(self, step_name: str) -> None:
        self._step_name = step_name
        self._phase = ChunkPhase.INITIALIZING
        self._history: list[ChunkPhase] = [ChunkPhase.INITIALIZING]

    @property
    def phase(self) -> ChunkPhase:
        return self._phase

    @property
    def history(self) -> tuple[ChunkPhase, ...]:
        return tuple(self._history)

    def advance(self, target: ChunkPhase) -> None:
        if target not in _CHUNK_TRANSITIONS[self._phase]:
            raise InvalidStateTransitionError(
                f"step {self._step_name}", self._phase.value, target.value
            )
        self._phase = target
        self._history.append(target)


# =============================================================================
# Execution DTOs
# =============================================================================


@dataclass(frozen=True)
class JobInstance:
    """Identity of a logical run: job name + normalized parameters."""

    instance_id: UUID
    job_name: str
    job_key: str  # SHA-256 of the canonical typed parameters
    parameters: JobParameters
    created_at: datetime | None = None


@dataclass(frozen=True)
class JobExecution:
    """One attempt to run a JobInstance."""

    execution_id: UUID
    instance_id: UUID
    job_name: str
    attempt: int
    status: JobStatus
    parameters: JobParameters
    created_at: datetime | None = None
    started_at: datetime | None = None
    ended_at: datetime | None = None
    exit_code: ExitCode = ExitCode.UNKNOWN
    exit_description: str | None = None
    stop_requested: bool = False


@dataclass
class StepCounters:
    """Running counters of one step execution (persisted per chunk)."""

    read_count: int = 0
    write_count: int = 0
    filter_count: int = 0
    read_skip_count: int = 0
    process_skip_count: int = 0
    write_skip_count: int = 0
    commit_count: int = 0
    rollback_count: int = 0
    retry_count: int = 0

    @property
    def skip_count(self) -> int:
        return self.read_skip_count + self.process_skip_count + self.write_skip_count

    def as_dict(self) -> dict[str, int]:
        return asdict(self)

    def copy(self) -> StepCounters:
        return StepCounters(**asdict(self))


@dataclass(frozen=True)
class StepExecution:
    """Snapshot of one step's execution within a JobExecution."""

    step_execution_id: UUID
    execution_id: UUID
    step_name: str
    status: StepStatus
    counters: StepCounters = field(default_factory=StepCounters)
    context: dict[str, Any] = field(default_factory=dict)
    started_at: datetime | None = None
    ended_at: datetime | None = None
    exit_description: str | None = None


@dataclass(frozen=True)
class StepFailure:
    """One skipped or fatal item (or a step-level failure).

    ``item_ref`` is a natural key or ``line N``; raw record bytes are never
    stored.
    """

    phase: FailurePhase
    item_ref: str
    exception_type: str
    error_code: str | None
    message: str
    action: FailureAction


@dataclass(frozen=True)
class StepReport:
    """Step section of an ExecutionReport."""

    step_name: str
    status: StepStatus
    counters: StepCounters
    exit_description: str | None = None
    failures: tuple[StepFailure, ...] = ()


@dataclass(frozen=True)
class ExecutionReport:
    """Operator-facing status of one JobExecution."""

    execution: JobExecution
    steps: tuple[StepReport, ...] = ()
    failing_step: str | None = None

    @property
    def total_skips(self) -> int:
        return sum(step.counters.skip_count for step in self.steps)

    @property
    def total_writes(self) -> int:
        return sum(step.counters.write_count for step in self.steps)

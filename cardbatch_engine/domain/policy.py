"""
Fault policy -- declarative skip/retry classification of item failures.

Contract:
    ``FaultPolicy`` is built from a ``FaultPolicyDef`` (configuration) by
    resolving exception NAMES against a registry of known exception classes.
    ``classify(exc, phase)`` answers what the chunk processor should do with
    one failure.  Matching is by ``isinstance``, so listing a base class
    covers its subclasses.

Invariants enforced:
    - DecimalOverflowError and step-level errors are always fatal, whatever
      the configuration says.
    - Retry applies to the process and write phases only; a reader cannot
      re-read the same record.
    - Unknown exception names in configuration fail fast with ConfigError.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from cardbatch_config.schema import FaultPolicyDef
from cardbatch_engine.domain.types import FailurePhase
from cardbatch_kernel import exceptions as kernel_errors
from cardbatch_kernel.exceptions import ConfigError, DecimalOverflowError, StepError


class FaultAction(str, Enum):
    SKIP = "skip"
    RETRY = "retry"
    FATAL = "fatal"


ALWAYS_FATAL: tuple[type[BaseException], ...] = (DecimalOverflowError, StepError)


def _known_exceptions() -> dict[str, type[BaseException]]:
    known: dict[str, type[BaseException]] = {
        name: obj
        for name, obj in vars(kernel_errors).items()
        if isinstance(obj, type) and issubclass(obj, kernel_errors.BatchKernelError)
    }
    for builtin in (TimeoutError, ConnectionError, OSError, ValueError, KeyError, LookupError):
        known[builtin.__name__] = builtin
    return known


KNOWN_EXCEPTIONS: dict[str, type[BaseException]] = _known_exceptions()


def resolve_exception_names(
    names: tuple[str, ...],
    extra: dict[str, type[BaseException]] | None = None,
) -> tuple[type[BaseException], ...]:
    registry = dict(KNOWN_EXCEPTIONS)
    if extra:
        registry.update(extra)
    resolved = []
    for name in names:
        if name not in registry:
            raise ConfigError(
                f"unknown exception '{name}' in fault policy; known: {sorted(registry)}"
            )
        resolved.append(registry[name])
    return tuple(resolved)


@dataclass(frozen=True)
class FaultPolicy:
    """Effective chunk/skip/retry policy of one step."""

    chunk_size: int = 100
    skip_limit: int = 10
    retry_limit: int = 3
    skippable: tuple[type[BaseException], ...] = ()
    retryable: tuple[type[BaseException], ...] = ()

    @classmethod
    def from_def(
        cls,
        definition: FaultPolicyDef,
        extra_exceptions: dict[str, type[BaseException]] | None = None,
    ) -> FaultPolicy:
        return cls(
            chunk_size=definition.chunk_size,
            skip_limit=definition.skip_limit,
            retry_limit=definition.retry_limit,
            skippable=resolve_exception_names(definition.skippable, extra_exceptions),
            retryable=resolve_exception_names(definition.retryable, extra_exceptions),
        )

    def is_skippable(self, exc: BaseException) -> bool:
        if isinstance(exc, ALWAYS_FATAL):
            return False
        return isinstance(exc, self.skippable)

    def is_retryable(self, exc: BaseException, phase: FailurePhase) -> bool:
        if isinstance(exc, ALWAYS_FATAL) or phase == FailurePhase.READ:
            return False
        return isinstance(exc, self.retryable)

    def classify(self, exc: BaseException, phase: FailurePhase, attempt: int = 1) -> FaultAction:
        """
        Decide the action for a failure on the given (1-based) attempt.

        Retry is checked first; once ``retry_limit`` attempts are used up the
        item is skipped if it is also skippable, otherwise the step fails.
        """
        if self.is_retryable(exc, phase) and attempt < self.retry_limit:
            return FaultAction.RETRY
        if self.is_skippable(exc):
            return FaultAction.SKIP
        return FaultAction.FATAL

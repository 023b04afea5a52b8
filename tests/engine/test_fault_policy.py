"""
Tests for fault classification and the chunk phase state machine.
"""

import pytest

from cardbatch_config.schema import FaultPolicyDef
from cardbatch_engine.domain.policy import FaultAction, FaultPolicy
from cardbatch_engine.domain.types import ChunkPhase, ChunkStateMachine, FailurePhase
from cardbatch_kernel.exceptions import (
    ConfigError,
    ConstraintViolationError,
    DecimalOverflowError,
    InvalidStateTransitionError,
    MalformedRecordError,
    SkipLimitExceededError,
    TransientIOError,
)


def policy(**overrides) -> FaultPolicy:
    return FaultPolicy.from_def(FaultPolicyDef(**overrides))


def malformed() -> MalformedRecordError:
    return MalformedRecordError("DAILY_TRANSACTION", "amount", 132, "non-digit")


def transient() -> TransientIOError:
    return TransientIOError("post transactions", "database is locked")


# =============================================================================
# Classification
# =============================================================================


class TestClassify:
    def test_skippable_exception_is_skipped(self):
        assert policy().classify(malformed(), FailurePhase.READ) == FaultAction.SKIP
        assert (
            policy().classify(ConstraintViolationError("k", 100, "x"), FailurePhase.PROCESS)
            == FaultAction.SKIP
        )

    def test_unlisted_exception_is_fatal(self):
        assert policy().classify(RuntimeError("x"), FailurePhase.PROCESS) == FaultAction.FATAL

    def test_retry_until_limit(self):
        p = policy(retry_limit=3)
        assert p.classify(transient(), FailurePhase.WRITE, attempt=1) == FaultAction.RETRY
        assert p.classify(transient(), FailurePhase.WRITE, attempt=2) == FaultAction.RETRY
        assert p.classify(transient(), FailurePhase.WRITE, attempt=3) == FaultAction.FATAL

    def test_retry_limit_one_means_no_retry(self):
        assert policy(retry_limit=1).classify(
            transient(), FailurePhase.WRITE, attempt=1,
        ) == FaultAction.FATAL

    def test_exhausted_retry_falls_back_to_skip(self):
        p = policy(retry_limit=2, skippable=("TransientIOError",))
        assert p.classify(transient(), FailurePhase.PROCESS, attempt=2) == FaultAction.SKIP

    def test_reads_are_never_retried(self):
        p = policy(retryable=("MalformedRecordError",))
        assert p.classify(malformed(), FailurePhase.READ, attempt=1) == FaultAction.SKIP

    def test_builtin_timeout_is_retryable(self):
        assert policy().classify(TimeoutError(), FailurePhase.WRITE) == FaultAction.RETRY

    def test_decimal_overflow_is_always_fatal(self):
        p = policy(skippable=("DecimalError",), retryable=("DecimalError",))
        exc = DecimalOverflowError("1000000000.00", 9, 2)
        assert p.classify(exc, FailurePhase.PROCESS) == FaultAction.FATAL

    def test_step_errors_are_always_fatal(self):
        p = policy(skippable=("BatchKernelError",))
        exc = SkipLimitExceededError("post_transactions", 5, "line 7")
        assert p.classify(exc, FailurePhase.PROCESS) == FaultAction.FATAL

    def test_base_class_covers_subclasses(self):
        p = policy(skippable=("RecordError",))
        assert p.classify(malformed(), FailurePhase.READ) == FaultAction.SKIP

    def test_unknown_exception_name_rejected(self):
        with pytest.raises(ConfigError):
            policy(skippable=("NoSuchError",))

    def test_job_specific_exception(self):
        class DuplicateCardError(Exception):
            pass

        p = FaultPolicy.from_def(
            FaultPolicyDef(skippable=("DuplicateCardError",)),
            {"DuplicateCardError": DuplicateCardError},
        )
        assert p.classify(DuplicateCardError(), FailurePhase.PROCESS) == FaultAction.SKIP


# =============================================================================
# Chunk state machine
# =============================================================================


class TestChunkStateMachine:
    def test_normal_cycle(self):
        machine = ChunkStateMachine("post_transactions")
        for phase in (
            ChunkPhase.READING,
            ChunkPhase.PROCESSING,
            ChunkPhase.WRITING,
            ChunkPhase.COMMITTING,
            ChunkPhase.READING,
            ChunkPhase.COMPLETED,
        ):
            machine.advance(phase)
        assert machine.phase == ChunkPhase.COMPLETED
        assert machine.history[0] == ChunkPhase.INITIALIZING

    def test_cannot_skip_writing(self):
        machine = ChunkStateMachine("s")
        machine.advance(ChunkPhase.READING)
        machine.advance(ChunkPhase.PROCESSING)
        with pytest.raises(InvalidStateTransitionError):
            machine.advance(ChunkPhase.COMMITTING)

    def test_terminal_phases_are_final(self):
        machine = ChunkStateMachine("s")
        machine.advance(ChunkPhase.FAILED)
        with pytest.raises(InvalidStateTransitionError):
            machine.advance(ChunkPhase.READING)

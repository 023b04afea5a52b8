"""
ChunkProcessor -- read/process/write loop of one step execution.

Contract:
    ``run()`` drives a step's reader -> processor -> writer pipeline in
    chunks of ``policy.chunk_size`` items until the input is exhausted, the
    operator requests a stop, or a fatal failure occurs.  It never raises for
    item or step failures; the outcome is persisted through the metadata
    store and returned as a ``StepOutcome``.

Architecture: cardbatch_engine/services.  Imports from cardbatch_engine.domain,
    cardbatch_engine.steps and the metadata store.

Invariants enforced:
    - Each chunk's writes, step counters, ExecutionContext and skip records
      commit in ONE transaction; the checkpoint advances only after commit.
    - Chunks run strictly in reader order; chunk N+1 is read only after
      chunk N committed.
    - Retry applies per item (process) or per chunk (write); reads are never
      retried.  DecimalOverflowError is always fatal.
    - The step fails on the (skip_limit + 1)-th skip.
    - Running values are restored to their committed state whenever a chunk
      or a single item attempt is rolled back.
    - Write-skip scan mode isolates each item in its own SAVEPOINT.
"""

from __future__ import annotations

import copy
import time
from dataclasses import dataclass
from typing import Any

from sqlalchemy.exc import OperationalError

from cardbatch_engine.domain.policy import FaultAction, FaultPolicy
from cardbatch_engine.domain.types import (
    ChunkPhase,
    ChunkStateMachine,
    FailureAction,
    FailurePhase,
    StepCounters,
    StepExecution,
    StepFailure,
    StepStatus,
)
from cardbatch_engine.services.metadata_store import ExecutionMetadataStore
from cardbatch_engine.services.observability import BatchMetrics, ProcessingWindowMonitor
from cardbatch_engine.steps.base import (
    ChunkContext,
    ChunkListener,
    ItemProcessor,
    ItemReader,
    ItemWriter,
    PassThroughProcessor,
    StepDefinition,
    StepScope,
)
from cardbatch_kernel.exceptions import (
    RetryLimitExceededError,
    SkipLimitExceededError,
    TransientIOError,
)
from cardbatch_kernel.logging_config import LogContext, get_logger
from cardbatch_kernel.utils.masking import sanitize_message

logger = get_logger("engine.chunk_processor")

_PHASE_OF = {
    ChunkPhase.READING: FailurePhase.READ,
    ChunkPhase.PROCESSING: FailurePhase.PROCESS,
    ChunkPhase.WRITING: FailurePhase.WRITE,
    ChunkPhase.COMMITTING: FailurePhase.WRITE,
}


@dataclass(frozen=True)
class StepOutcome:
    """Result of one step execution."""

    status: StepStatus
    counters: StepCounters
    failure: StepFailure | None = None


def _translate(exc: Exception) -> Exception:
    """Database lock/statement timeouts surface as retryable TransientIOError."""
    if isinstance(exc, OperationalError):
        translated = TransientIOError("chunk write", str(exc.orig))
        translated.__cause__ = exc
        return translated
    return exc


def _failure(
    exc: BaseException, phase: FailurePhase, item_ref: str, action: FailureAction,
) -> StepFailure:
    return StepFailure(
        phase=phase,
        item_ref=item_ref,
        exception_type=type(exc).__name__,
        error_code=getattr(exc, "code", None),
        message=sanitize_message(str(exc)),
        action=action,
    )


class ChunkProcessor:
    """Runs chunk-oriented steps against the metadata store.

    Contract:
        - ``run()`` executes one StepExecution and returns its outcome.

    Non-goals:
        - Does NOT sequence steps or decide job status -- the orchestrator does.
        - Does NOT parallelize; items of a chunk are processed sequentially.
    """

    def __init__(
        self,
        store: ExecutionMetadataStore,
        metrics: BatchMetrics | None = None,
    ) -> None:
        self._store = store
        self._metrics = metrics or BatchMetrics()

    def run(
        self,
        step: StepDefinition,
        policy: FaultPolicy,
        scope: StepScope,
        step_execution: StepExecution,
        restored_context: dict[str, Any] | None = None,
        window: ProcessingWindowMonitor | None = None,
    ) -> StepOutcome:
        with LogContext.bind(step_name=step.name):
            run = _StepRun(
                step=step,
                policy=policy,
                scope=scope,
                step_execution=step_execution,
                restored=restored_context or {},
                store=self._store,
                metrics=self._metrics,
                window=window,
            )
            return run.execute()


class _StepRun:
    """Mutable state of one step execution."""

    def __init__(
        self,
        step: StepDefinition,
        policy: FaultPolicy,
        scope: StepScope,
        step_execution: StepExecution,
        restored: dict[str, Any],
        store: ExecutionMetadataStore,
        metrics: BatchMetrics,
        window: ProcessingWindowMonitor | None,
    ) -> None:
        self.step = step
        self.policy = policy
        self.scope = scope
        self.step_execution = step_execution
        self.restored = restored
        self.store = store
        self.metrics = metrics
        self.window = window
        self.machine = ChunkStateMachine(step.name)
        self.committed = StepCounters()
        self.values: dict[str, Any] = copy.deepcopy(restored.get("values") or {})
        self.current_ref = "start"
        self.reader: ItemReader | None = None
        self.processor: ItemProcessor = PassThroughProcessor()
        self.writer: ItemWriter | None = None
        self.listeners: list[ChunkListener] = []

    # -------------------------------------------------------------------------
    # Step loop
    # -------------------------------------------------------------------------

    def execute(self) -> StepOutcome:
        started = time.monotonic()
        try:
            self._open()
            self.machine.advance(ChunkPhase.READING)
            chunk_number = 0
            while self.machine.phase == ChunkPhase.READING:
                chunk_number += 1
                self._run_chunk(chunk_number)
            status = (
                StepStatus.COMPLETED
                if self.machine.phase == ChunkPhase.COMPLETED
                else StepStatus.STOPPED
            )
            outcome = self._finish(status, None)
        except Exception as exc:
            outcome = self._fail(exc)
        finally:
            self._close()

        self.metrics.step_finished(
            self.step.name,
            outcome.status.value,
            outcome.counters.as_dict(),
            (time.monotonic() - started) * 1000,
        )
        return outcome

    def _open(self) -> None:
        self.reader = self.step.reader_factory(self.scope)
        if self.step.processor_factory is not None:
            self.processor = self.step.processor_factory(self.scope)
        self.writer = self.step.writer_factory(self.scope)
        self.listeners = [
            obj for obj in (self.processor, self.writer) if isinstance(obj, ChunkListener)
        ]
        self.reader.open(self.restored.get("reader"))
        self.writer.open(self.restored.get("writer"))
        logger.info(
            "step_started",
            extra={
                "step_execution_id": str(self.step_execution.step_execution_id),
                "chunk_size": self.policy.chunk_size,
                "skip_limit": self.policy.skip_limit,
                "retry_limit": self.policy.retry_limit,
                "restarted": bool(self.restored),
            },
        )

    def _close(self) -> None:
        for resource in (self.reader, self.writer):
            if resource is None:
                continue
            try:
                resource.close()
            except OSError:
                logger.warning("step_resource_close_failed", exc_info=True)

    def _finish(self, status: StepStatus, failure: StepFailure | None) -> StepOutcome:
        self.store.complete_step(
            self.step_execution.step_execution_id,
            status,
            self.committed,
            exit_description=None if failure is None else failure.message,
            failures=() if failure is None else (failure,),
        )
        return StepOutcome(status=status, counters=self.committed, failure=failure)

    def _fail(self, exc: Exception) -> StepOutcome:
        phase = self.machine.phase
        if isinstance(exc, SkipLimitExceededError):
            failure_phase = FailurePhase.STEP
            item_ref = exc.item_ref
        else:
            failure_phase = _PHASE_OF.get(phase, FailurePhase.STEP)
            item_ref = self.current_ref
        failure = _failure(exc, failure_phase, item_ref, FailureAction.FATAL)
        if phase not in (ChunkPhase.COMPLETED, ChunkPhase.STOPPED, ChunkPhase.FAILED):
            self.machine.advance(ChunkPhase.FAILED)
        logger.error(
            "step_failed",
            extra={
                "phase": phase.value,
                "item_ref": item_ref,
                "exc_type": type(exc).__name__,
                "exc_code": getattr(exc, "code", None),
            },
            exc_info=True,
        )
        return self._finish(StepStatus.FAILED, failure)

    # -------------------------------------------------------------------------
    # One chunk
    # -------------------------------------------------------------------------

    def _context(self) -> dict[str, Any]:
        return {
            "reader": self.reader.position(),
            "writer": self.writer.checkpoint(),
            "values": copy.deepcopy(self.values),
        }

    def _run_chunk(self, chunk_number: int) -> None:
        started = time.monotonic()
        working = self.committed.copy()
        failures: list[StepFailure] = []
        snapshot = copy.deepcopy(self.values)
        session = self.store.open_chunk_session()
        chunk = ChunkContext(
            session=session, values=self.values, scope=self.scope, chunk_number=chunk_number,
        )
        try:
            for listener in self.listeners:
                listener.before_chunk(chunk)
            items, exhausted = self._read(working, failures)
            finish = exhausted and hasattr(self.writer, "finish")
            if not items and not failures and not finish:
                self.machine.advance(ChunkPhase.COMPLETED)
                return

            self.machine.advance(ChunkPhase.PROCESSING)
            outputs = self._process(items, chunk, working, failures)

            self.machine.advance(ChunkPhase.WRITING)
            working = self._write_and_commit(outputs, chunk, working, failures, finish)
        except Exception as exc:
            session.rollback()
            self.writer.on_rollback()
            self.values.clear()
            self.values.update(snapshot)
            self.committed.rollback_count += 1
            for listener in self.listeners:
                listener.on_chunk_error(chunk, exc)
            raise
        finally:
            session.close()

        self.committed = working
        self.writer.on_commit()
        for listener in self.listeners:
            listener.after_commit(chunk)
        self.metrics.chunk_committed(
            self.step.name, chunk_number, len(outputs), (time.monotonic() - started) * 1000,
        )
        if self.window is not None:
            self.window.check()

        if exhausted:
            self.machine.advance(ChunkPhase.COMPLETED)
        elif self.store.is_stop_requested(self.scope.execution_id):
            logger.info("step_stop_honored", extra={"chunk_number": chunk_number})
            self.machine.advance(ChunkPhase.STOPPED)
        else:
            self.machine.advance(ChunkPhase.READING)

    def _read(
        self, working: StepCounters, failures: list[StepFailure],
    ) -> tuple[list[tuple[str, Any]], bool]:
        items: list[tuple[str, Any]] = []
        consumed = 0
        while consumed < self.policy.chunk_size:
            try:
                item = self.reader.read()
            except Exception as exc:
                consumed += 1
                self.current_ref = self.reader.current_ref
                if self.policy.classify(exc, FailurePhase.READ) != FaultAction.SKIP:
                    raise
                self._skip(exc, FailurePhase.READ, self.current_ref, working, failures)
                continue
            if item is None:
                return items, True
            consumed += 1
            working.read_count += 1
            self.current_ref = getattr(item, "key_ref", None) or self.reader.current_ref
            items.append((self.current_ref, item))
        return items, False

    def _process(
        self,
        items: list[tuple[str, Any]],
        chunk: ChunkContext,
        working: StepCounters,
        failures: list[StepFailure],
    ) -> list[tuple[str, Any]]:
        outputs: list[tuple[str, Any]] = []
        for item_ref, item in items:
            self.current_ref = item_ref
            attempt = 1
            while True:
                item_snapshot = copy.deepcopy(chunk.values)
                try:
                    result = self.processor.process(item, chunk)
                except Exception as exc:
                    chunk.values.clear()
                    chunk.values.update(item_snapshot)
                    # Nothing is written before WRITING, so dropping the
                    # transaction only discards reads
                    chunk.session.rollback()
                    action = self.policy.classify(exc, FailurePhase.PROCESS, attempt)
                    if action == FaultAction.RETRY:
                        working.retry_count += 1
                        self.metrics.item_retried(
                            self.step.name, FailurePhase.PROCESS.value, attempt,
                            type(exc).__name__, item_ref,
                        )
                        attempt += 1
                        continue
                    if action == FaultAction.SKIP:
                        self._skip(exc, FailurePhase.PROCESS, item_ref, working, failures)
                        break
                    self._raise_fatal(exc, FailurePhase.PROCESS, attempt)
                if result is None:
                    working.filter_count += 1
                else:
                    outputs.append((item_ref, result))
                break
        return outputs

    def _write_and_commit(
        self,
        outputs: list[tuple[str, Any]],
        chunk: ChunkContext,
        working: StepCounters,
        failures: list[StepFailure],
        finish: bool,
    ) -> StepCounters:
        session = chunk.session
        pending = outputs
        attempt = 1
        while True:
            try:
                if pending:
                    self.writer.write([item for _, item in pending], chunk)
                if finish:
                    self.writer.finish(chunk)
                session.flush()
            except Exception as raw:
                exc = _translate(raw)
                self._rollback(chunk, working, FailurePhase.WRITE, exc)
                action = self.policy.classify(exc, FailurePhase.WRITE, attempt)
                if action == FaultAction.RETRY:
                    working.retry_count += 1
                    self.metrics.item_retried(
                        self.step.name, FailurePhase.WRITE.value, attempt,
                        type(exc).__name__, None,
                    )
                    attempt += 1
                    continue
                if action != FaultAction.SKIP:
                    self._raise_fatal(exc, FailurePhase.WRITE, attempt)
                pending = self._scan(pending, chunk, working, failures, finish)

            self.machine.advance(ChunkPhase.COMMITTING)
            tentative = working.copy()
            tentative.write_count += len(pending)
            tentative.commit_count += 1
            try:
                self.store.record_step_progress(
                    session,
                    self.step_execution.step_execution_id,
                    tentative,
                    self._context(),
                    failures,
                )
                session.commit()
            except Exception as raw:
                exc = _translate(raw)
                self._rollback(chunk, working, FailurePhase.WRITE, exc)
                if self.policy.classify(exc, FailurePhase.WRITE, attempt) != FaultAction.RETRY:
                    self._raise_fatal(exc, FailurePhase.WRITE, attempt)
                working.retry_count += 1
                attempt += 1
                self.machine.advance(ChunkPhase.WRITING)
                continue
            return tentative

    def _scan(
        self,
        outputs: list[tuple[str, Any]],
        chunk: ChunkContext,
        working: StepCounters,
        failures: list[StepFailure],
        finish: bool,
    ) -> list[tuple[str, Any]]:
        """Re-write items one by one, each in a SAVEPOINT, skipping failures."""
        session = chunk.session
        survivors: list[tuple[str, Any]] = []
        for item_ref, item in outputs:
            self.current_ref = item_ref
            savepoint = session.begin_nested()
            try:
                self.writer.write([item], chunk)
                session.flush()
                savepoint.commit()
            except Exception as raw:
                savepoint.rollback()
                exc = _translate(raw)
                if not self.policy.is_skippable(exc):
                    self._raise_fatal(exc, FailurePhase.WRITE, 1)
                self._skip(exc, FailurePhase.WRITE, item_ref, working, failures)
                continue
            survivors.append((item_ref, item))
        if finish:
            self.writer.finish(chunk)
            session.flush()
        return survivors

    # -------------------------------------------------------------------------
    # Fault helpers
    # -------------------------------------------------------------------------

    def _rollback(
        self,
        chunk: ChunkContext,
        working: StepCounters,
        phase: FailurePhase,
        exc: Exception,
    ) -> None:
        chunk.session.rollback()
        self.writer.on_rollback()
        working.rollback_count += 1
        for listener in self.listeners:
            listener.on_chunk_error(chunk, exc)
        self.metrics.chunk_rolled_back(
            self.step.name, phase.value, sanitize_message(str(exc), 200),
        )

    def _skip(
        self,
        exc: Exception,
        phase: FailurePhase,
        item_ref: str,
        working: StepCounters,
        failures: list[StepFailure],
    ) -> None:
        if phase == FailurePhase.READ:
            working.read_skip_count += 1
        elif phase == FailurePhase.PROCESS:
            working.process_skip_count += 1
        else:
            working.write_skip_count += 1
        failures.append(_failure(exc, phase, item_ref, FailureAction.SKIPPED))
        self.metrics.item_skipped(
            self.step.name, phase.value, item_ref, type(exc).__name__,
            getattr(exc, "code", None),
        )
        if working.skip_count > self.policy.skip_limit:
            raise SkipLimitExceededError(
                self.step.name, self.policy.skip_limit, item_ref,
            ) from exc

    def _raise_fatal(self, exc: Exception, phase: FailurePhase, attempt: int) -> None:
        if self.policy.is_retryable(exc, phase) and attempt >= self.policy.retry_limit:
            raise RetryLimitExceededError(
                self.step.name, attempt, f"{type(exc).__name__}: {exc}",
            ) from exc
        raise exc

"""
JobOrchestrator -- launch, restart, stop, recover and report job executions.

Contract:
    Validates launch parameters against the job definition, enforces the
    instance lifecycle (one active execution, no silent rerun of a completed
    or failed instance), runs the job's steps in order through the
    ChunkProcessor and derives the execution's status and exit code.

Architecture: cardbatch_engine (top-level).  The canonical entry point for
    running jobs; the CLI and tests compose it via ``from_settings()``.

Invariants enforced:
    - At most one non-terminal execution per JobInstance.
    - ``launch`` never reruns an instance that already executed; a FAILED or
      STOPPED instance is resumed only through ``restart``.
    - On restart, steps COMPLETED by any earlier execution of the instance
      are skipped and every other step resumes from its last checkpoint.
    - A failed step halts the job unless the step allows continuation.
    - The processing window is a warning, never an abort.
    - All timestamps come from the injected Clock.
"""

from __future__ import annotations

import time
from collections.abc import Mapping
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session, sessionmaker

from cardbatch_config import get_batch_config
from cardbatch_config.schema import BatchSettings
from cardbatch_engine.domain.parameters import JobParameters, validate_parameters
from cardbatch_engine.domain.policy import FaultPolicy
from cardbatch_engine.domain.types import (
    ExecutionReport,
    ExitCode,
    JobExecution,
    JobInstance,
    JobStatus,
    StepStatus,
)
from cardbatch_engine.services.chunk_processor import ChunkProcessor
from cardbatch_engine.services.metadata_store import ExecutionMetadataStore
from cardbatch_engine.services.observability import BatchMetrics, ProcessingWindowMonitor
from cardbatch_engine.steps.base import JobDefinition, JobRegistry, StepScope
from cardbatch_kernel.db.engine import get_session_factory, init_engine_from_url
from cardbatch_kernel.domain.clock import Clock, SystemClock
from cardbatch_kernel.exceptions import (
    ConcurrentExecutionError,
    JobInstanceAlreadyCompleteError,
    JobRestartRequiredError,
    NoRestartableExecutionError,
)
from cardbatch_kernel.logging_config import LogContext, get_logger

logger = get_logger("engine.orchestrator")


class JobOrchestrator:
    """Runs registered jobs against the execution metadata store.

    Contract:
        - ``launch()`` starts the first execution of a new instance.
        - ``restart()`` resumes a FAILED or STOPPED instance.
        - ``stop()`` / ``recover()`` for operators.
        - ``status()`` returns an ExecutionReport.

    Non-goals:
        - Does NOT schedule -- the CLI (or an external scheduler) launches.
        - Does NOT run steps in parallel.
    """

    def __init__(
        self,
        store: ExecutionMetadataStore,
        registry: JobRegistry,
        session_factory: sessionmaker[Session],
        settings: BatchSettings | None = None,
        clock: Clock | None = None,
        metrics: BatchMetrics | None = None,
    ) -> None:
        self._store = store
        self._registry = registry
        self._session_factory = session_factory
        self._settings = settings or BatchSettings()
        self._clock = clock or SystemClock()
        self._metrics = metrics or BatchMetrics()
        self._chunk_processor = ChunkProcessor(store, self._metrics)

    # -------------------------------------------------------------------------
    # Factory
    # -------------------------------------------------------------------------

    @classmethod
    def from_settings(
        cls,
        registry: JobRegistry,
        settings: BatchSettings | None = None,
        session_factory: sessionmaker[Session] | None = None,
        clock: Clock | None = None,
        metrics: BatchMetrics | None = None,
    ) -> JobOrchestrator:
        """Create a fully wired orchestrator.

        Args:
            registry: Jobs that may be launched.
            settings: Batch configuration; loaded via get_batch_config() if None.
            session_factory: Optional factory.  If None, the module engine is
                initialized from ``settings.database_url``.
            clock: Optional clock for deterministic testing.
            metrics: Optional metric sink.
        """
        effective_settings = settings or get_batch_config()
        if session_factory is None:
            init_engine_from_url(
                effective_settings.database_url,
                io_timeout_seconds=effective_settings.io_timeout_seconds,
            )
            session_factory = get_session_factory()
        effective_clock = clock or SystemClock()
        return cls(
            store=ExecutionMetadataStore(session_factory, effective_clock),
            registry=registry,
            session_factory=session_factory,
            settings=effective_settings,
            clock=effective_clock,
            metrics=metrics,
        )

    @property
    def store(self) -> ExecutionMetadataStore:
        return self._store

    @property
    def registry(self) -> JobRegistry:
        return self._registry

    # -------------------------------------------------------------------------
    # Launch / restart
    # -------------------------------------------------------------------------

    def launch(
        self, job_name: str, params: JobParameters | Mapping[str, Any],
    ) -> JobExecution:
        """Run the first execution of the instance ``job_name`` + ``params``.

        Raises:
            JobNotRegisteredError: Unknown job.
            InvalidJobParametersError: Missing or mistyped parameters.
            ConcurrentExecutionError: The instance has an active execution.
            JobInstanceAlreadyCompleteError: The instance already completed.
            JobRestartRequiredError: The instance failed or stopped earlier.
        """
        job, parameters = self._resolve(job_name, params)
        instance, created = self._store.get_or_create_instance(job.name, parameters)
        if not created:
            latest = self._store.latest_execution(instance.instance_id)
            if latest is not None:
                self._reject_existing(job.name, instance, latest)
        execution = self._store.start_execution(instance)
        return self._run(job, instance, execution, completed_steps=set(), restarting=False)

    def restart(
        self, job_name: str, params: JobParameters | Mapping[str, Any],
    ) -> JobExecution:
        """Resume the most recent FAILED/STOPPED execution of an instance.

        Raises:
            NoRestartableExecutionError: No instance, or nothing to resume.
            ConcurrentExecutionError: The instance has an active execution.
            JobInstanceAlreadyCompleteError: The instance already completed.
        """
        job, parameters = self._resolve(job_name, params)
        instance = self._store.get_instance(job.name, parameters)
        if instance is None:
            raise NoRestartableExecutionError(job.name, "no instance for these parameters")

        restartable = self._store.find_restartable_execution(instance.instance_id)
        if restartable is None:
            latest = self._store.latest_execution(instance.instance_id)
            if latest is None:
                raise NoRestartableExecutionError(job.name, "instance was never executed")
            if not latest.status.is_terminal:
                raise ConcurrentExecutionError(
                    job.name, str(instance.instance_id), str(latest.execution_id),
                )
            raise JobInstanceAlreadyCompleteError(job.name, str(instance.instance_id))

        completed_steps = self._store.completed_step_names(instance.instance_id)
        execution = self._store.start_execution(instance)
        logger.info(
            "job_restarting",
            extra={
                "job_instance_id": str(instance.instance_id),
                "previous_execution_id": str(restartable.execution_id),
                "previous_status": restartable.status.value,
                "completed_steps": sorted(completed_steps),
            },
        )
        return self._run(job, instance, execution, completed_steps, restarting=True)

    # -------------------------------------------------------------------------
    # Operator control
    # -------------------------------------------------------------------------

    def stop(self, execution_id: UUID) -> JobExecution:
        """Request a stop; honored at the execution's next chunk boundary."""
        return self._store.request_stop(execution_id)

    def recover(self, execution_id: UUID) -> JobExecution:
        """Mark an execution abandoned by a crashed process as FAILED."""
        return self._store.mark_abandoned_failed(execution_id)

    def status(self, execution_id: UUID) -> ExecutionReport:
        return self._store.build_report(execution_id, self._settings.failure_report_limit)

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    def _resolve(
        self, job_name: str, params: JobParameters | Mapping[str, Any],
    ) -> tuple[JobDefinition, JobParameters]:
        job = self._registry.get(job_name)
        parameters = params if isinstance(params, JobParameters) else JobParameters(params, job_name)
        validate_parameters(job.name, parameters, job.parameters)
        return job, parameters

    @staticmethod
    def _reject_existing(
        job_name: str, instance: JobInstance, latest: JobExecution,
    ) -> None:
        if not latest.status.is_terminal:
            raise ConcurrentExecutionError(
                job_name, str(instance.instance_id), str(latest.execution_id),
            )
        if latest.status == JobStatus.COMPLETED:
            raise JobInstanceAlreadyCompleteError(job_name, str(instance.instance_id))
        raise JobRestartRequiredError(
            job_name, str(latest.execution_id), latest.status.value,
        )

    def _window_minutes(self, job: JobDefinition) -> int | None:
        configured = self._settings.processing_window_minutes(job.name)
        return configured if configured is not None else job.processing_window_minutes

    def _allow_continue(self, job: JobDefinition, step_name: str, default: bool) -> bool:
        configured = self._settings.allow_continue(job.name, step_name)
        return configured if configured is not None else default

    def _run(
        self,
        job: JobDefinition,
        instance: JobInstance,
        execution: JobExecution,
        completed_steps: set[str],
        restarting: bool,
    ) -> JobExecution:
        execution_id = execution.execution_id
        with LogContext.bind(
            job_name=job.name,
            job_execution_id=str(execution_id),
            correlation_id=str(execution_id),
        ):
            execution = self._store.mark_execution_started(execution_id)
            started = time.monotonic()
            window = ProcessingWindowMonitor(
                job.name,
                self._window_minutes(job),
                self._clock.now(),
                self._clock,
                self._metrics,
            )
            logger.info(
                "job_started",
                extra={
                    "job_instance_id": str(instance.instance_id),
                    "attempt": execution.attempt,
                    "parameters": instance.parameters.to_json(),
                    "restart": restarting,
                },
            )

            stopped = False
            failed_step: str | None = None
            failure_message: str | None = None
            continued_failures: list[str] = []
            skips = 0
            try:
                for index, step in enumerate(job.steps):
                    if step.name in completed_steps:
                        logger.info("step_already_completed", extra={"step": step.name})
                        continue

                    policy = FaultPolicy.from_def(
                        self._settings.step_policy(job.name, step.name),
                        job.extra_exceptions,
                    )
                    restored = None
                    if restarting:
                        previous = self._store.last_step_execution(
                            instance.instance_id, step.name,
                        )
                        if previous is not None and previous.status != StepStatus.COMPLETED:
                            restored = previous.context or None
                    step_execution = self._store.start_step(
                        execution_id, step.name, index, restored,
                    )
                    scope = StepScope(
                        job_name=job.name,
                        step_name=step.name,
                        execution_id=execution_id,
                        parameters=instance.parameters,
                        session_factory=self._session_factory,
                        clock=self._clock,
                    )
                    outcome = self._chunk_processor.run(
                        step, policy, scope, step_execution, restored, window,
                    )
                    window.check()
                    skips += outcome.counters.skip_count

                    if outcome.status == StepStatus.STOPPED:
                        stopped = True
                        break
                    if outcome.status == StepStatus.FAILED:
                        message = outcome.failure.message if outcome.failure else "failed"
                        if self._allow_continue(job, step.name, step.allow_continue):
                            logger.warning(
                                "step_failure_continued", extra={"step": step.name},
                            )
                            continued_failures.append(step.name)
                            continue
                        failed_step = step.name
                        failure_message = message
                        break
            except Exception as exc:
                logger.error("job_execution_error", exc_info=True)
                final = self._store.complete_execution(
                    execution_id,
                    JobStatus.FAILED,
                    ExitCode.FAILED,
                    f"{type(exc).__name__}: {exc}",
                )
                self._metrics.job_finished(
                    job.name, final.status.value, final.exit_code.value,
                    (time.monotonic() - started) * 1000,
                )
                raise

            if stopped:
                status, exit_code = JobStatus.STOPPED, ExitCode.STOPPED
                description = "stopped on operator request"
            elif failed_step is not None:
                status, exit_code = JobStatus.FAILED, ExitCode.FAILED
                description = f"step {failed_step} failed: {failure_message}"
            elif continued_failures:
                status, exit_code = JobStatus.COMPLETED, ExitCode.COMPLETED_WITH_STEP_FAILURES
                description = f"steps failed and continued: {', '.join(continued_failures)}"
            elif skips > 0:
                status, exit_code = JobStatus.COMPLETED, ExitCode.COMPLETED_WITH_SKIPS
                description = f"{skips} item(s) skipped"
            else:
                status, exit_code = JobStatus.COMPLETED, ExitCode.COMPLETED
                description = None

            final = self._store.complete_execution(
                execution_id, status, exit_code, description,
            )
            self._metrics.job_finished(
                job.name, status.value, exit_code.value,
                (time.monotonic() - started) * 1000,
            )
            return final

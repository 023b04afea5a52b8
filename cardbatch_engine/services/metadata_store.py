"""
ExecutionMetadataStore -- persistence of job instances, executions and steps.

Contract:
    Records which JobInstances exist, every JobExecution attempt, each
    StepExecution's counters and last committed ExecutionContext, and the
    skipped/fatal item records.  Returns frozen DTOs only.

Architecture: cardbatch_engine/services.  Imports from cardbatch_engine.domain,
    cardbatch_engine.models and the kernel db layer.

Invariants enforced:
    - Every mutation except chunk progress runs in its own transaction and is
      committed before the method returns.
    - Chunk progress (``record_step_progress``) is written into the caller's
      chunk transaction, so counters, context and skip records commit or roll
      back together with the chunk's own writes.
    - At most one non-terminal execution per instance: checked under a row
      lock on the instance and backed by the UNIQUE(job_instance_id,
      active_lock) constraint.
    - All timestamps come from the injected Clock.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from cardbatch_engine.domain.parameters import JobParameters
from cardbatch_engine.domain.types import (
    ExecutionReport,
    ExitCode,
    JobExecution,
    JobInstance,
    JobStatus,
    StepCounters,
    StepExecution,
    StepFailure,
    StepReport,
    StepStatus,
)
from cardbatch_engine.models.metadata import (
    ACTIVE,
    JobExecutionModel,
    JobInstanceModel,
    StepExecutionModel,
    StepFailureModel,
)
from cardbatch_kernel.db.engine import session_scope
from cardbatch_kernel.domain.clock import Clock, SystemClock
from cardbatch_kernel.exceptions import (
    ConcurrentExecutionError,
    InvalidStateTransitionError,
    JobExecutionNotFoundError,
    JobInstanceAlreadyExistsError,
)
from cardbatch_kernel.logging_config import get_logger

logger = get_logger("engine.metadata_store")

_NON_TERMINAL = (JobStatus.STARTING.value, JobStatus.STARTED.value)


class ExecutionMetadataStore:
    """Transactional store for execution metadata.

    Contract:
        - ``create_instance()`` / ``get_instance()`` for JobInstances.
        - ``start_execution()`` .. ``complete_execution()`` for attempts.
        - ``start_step()`` / ``record_step_progress()`` / ``complete_step()``
          for step executions.
        - ``request_stop()``, ``mark_abandoned_failed()``, ``purge_before()``
          for operators.

    Non-goals:
        - Does NOT decide restart policy -- the orchestrator does.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        clock: Clock | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock or SystemClock()

    # -------------------------------------------------------------------------
    # Instances
    # -------------------------------------------------------------------------

    def create_instance(self, job_name: str, params: JobParameters) -> JobInstance:
        """Create the JobInstance for ``job_name`` + ``params``.

        Raises:
            JobInstanceAlreadyExistsError: If the instance already exists.
        """
        job_key = params.job_key
        try:
            with session_scope(self._session_factory) as session:
                model = JobInstanceModel(
                    job_name=job_name,
                    job_key=job_key,
                    parameters=params.to_json(),
                )
                model.created_at = self._clock.now()
                session.add(model)
                session.flush()
                dto = model.to_dto()
        except IntegrityError as exc:
            raise JobInstanceAlreadyExistsError(job_name, job_key) from exc

        logger.info(
            "job_instance_created",
            extra={
                "job_instance_id": str(dto.instance_id),
                "job_key": job_key,
                "parameters": params.to_json(),
            },
        )
        return dto

    def get_instance(self, job_name: str, params: JobParameters) -> JobInstance | None:
        with session_scope(self._session_factory) as session:
            model = session.execute(
                select(JobInstanceModel).where(
                    JobInstanceModel.job_name == job_name,
                    JobInstanceModel.job_key == params.job_key,
                )
            ).scalar_one_or_none()
            return model.to_dto() if model is not None else None

    def get_or_create_instance(
        self, job_name: str, params: JobParameters,
    ) -> tuple[JobInstance, bool]:
        """Return ``(instance, created)``; tolerates a concurrent creator."""
        existing = self.get_instance(job_name, params)
        if existing is not None:
            return existing, False
        try:
            return self.create_instance(job_name, params), True
        except JobInstanceAlreadyExistsError:
            instance = self.get_instance(job_name, params)
            if instance is None:
                raise
            return instance, False

    # -------------------------------------------------------------------------
    # Executions
    # -------------------------------------------------------------------------

    def list_executions(self, instance_id: UUID) -> list[JobExecution]:
        with session_scope(self._session_factory) as session:
            models = session.execute(
                select(JobExecutionModel)
                .where(JobExecutionModel.job_instance_id == instance_id)
                .order_by(JobExecutionModel.attempt)
            ).scalars().all()
            return [m.to_dto() for m in models]

    def latest_execution(self, instance_id: UUID) -> JobExecution | None:
        executions = self.list_executions(instance_id)
        return executions[-1] if executions else None

    def start_execution(self, instance: JobInstance) -> JobExecution:
        """Create a STARTING execution for ``instance``.

        Raises:
            ConcurrentExecutionError: If a non-terminal execution exists,
                including one inserted concurrently by another process.
        """
        try:
            with session_scope(self._session_factory) as session:
                # Serialize starters of the same instance (no-op on SQLite)
                session.execute(
                    select(JobInstanceModel.id)
                    .where(JobInstanceModel.id == instance.instance_id)
                    .with_for_update()
                )
                active = session.execute(
                    select(JobExecutionModel.id).where(
                        JobExecutionModel.job_instance_id == instance.instance_id,
                        JobExecutionModel.status.in_(_NON_TERMINAL),
                    )
                ).scalars().first()
                if active is not None:
                    raise ConcurrentExecutionError(
                        instance.job_name, str(instance.instance_id), str(active),
                    )

                last_attempt = session.execute(
                    select(func.max(JobExecutionModel.attempt)).where(
                        JobExecutionModel.job_instance_id == instance.instance_id,
                    )
                ).scalar_one()

                model = JobExecutionModel(
                    job_instance_id=instance.instance_id,
                    attempt=(last_attempt or 0) + 1,
                    status=JobStatus.STARTING.value,
                    active_lock=ACTIVE,
                    exit_code=ExitCode.UNKNOWN.value,
                    stop_requested=False,
                )
                model.created_at = self._clock.now()
                session.add(model)
                session.flush()
                dto = model.to_dto()
        except IntegrityError as exc:
            raise ConcurrentExecutionError(
                instance.job_name, str(instance.instance_id),
            ) from exc

        logger.info(
            "job_execution_created",
            extra={
                "job_execution_id": str(dto.execution_id),
                "job_instance_id": str(instance.instance_id),
                "attempt": dto.attempt,
            },
        )
        return dto

    def mark_execution_started(self, execution_id: UUID) -> JobExecution:
        with session_scope(self._session_factory) as session:
            model = self._load_execution(session, execution_id)
            if model.status != JobStatus.STARTING.value:
                raise InvalidStateTransitionError(
                    "job execution", model.status, JobStatus.STARTED.value,
                )
            model.status = JobStatus.STARTED.value
            model.started_at = self._clock.now()
            return model.to_dto()

    def complete_execution(
        self,
        execution_id: UUID,
        status: JobStatus,
        exit_code: ExitCode,
        exit_description: str | None = None,
    ) -> JobExecution:
        """Move an execution to a terminal status and release its active lock."""
        if not status.is_terminal:
            raise InvalidStateTransitionError("job execution", "?", status.value)
        with session_scope(self._session_factory) as session:
            model = self._load_execution(session, execution_id)
            if JobStatus(model.status).is_terminal:
                raise InvalidStateTransitionError(
                    "job execution", model.status, status.value,
                )
            model.status = status.value
            model.exit_code = exit_code.value
            model.exit_description = exit_description
            model.ended_at = self._clock.now()
            model.active_lock = None
            dto = model.to_dto()

        logger.info(
            "job_execution_completed",
            extra={
                "job_execution_id": str(execution_id),
                "status": status.value,
                "exit_code": exit_code.value,
            },
        )
        return dto

    def get_execution(self, execution_id: UUID) -> JobExecution:
        """
        Raises:
            JobExecutionNotFoundError: If execution_id does not exist.
        """
        with session_scope(self._session_factory) as session:
            return self._load_execution(session, execution_id).to_dto()

    def find_restartable_execution(self, instance_id: UUID) -> JobExecution | None:
        """Most recent execution if it is FAILED or STOPPED, else None."""
        latest = self.latest_execution(instance_id)
        if latest is None or not latest.status.is_restartable:
            return None
        return latest

    # -------------------------------------------------------------------------
    # Operator control
    # -------------------------------------------------------------------------

    def request_stop(self, execution_id: UUID) -> JobExecution:
        """Flag a running execution to stop at its next chunk boundary."""
        with session_scope(self._session_factory) as session:
            model = self._load_execution(session, execution_id)
            if JobStatus(model.status).is_terminal:
                raise InvalidStateTransitionError(
                    "job execution", model.status, JobStatus.STOPPED.value,
                )
            model.stop_requested = True
            dto = model.to_dto()

        logger.info("job_stop_requested", extra={"job_execution_id": str(execution_id)})
        return dto

    def is_stop_requested(self, execution_id: UUID) -> bool:
        with session_scope(self._session_factory) as session:
            flag = session.execute(
                select(JobExecutionModel.stop_requested).where(
                    JobExecutionModel.id == execution_id,
                )
            ).scalar_one_or_none()
            return bool(flag)

    def mark_abandoned_failed(self, execution_id: UUID) -> JobExecution:
        """Fail an execution left non-terminal by a crashed process.

        Step checkpoints are kept so that a restart resumes from them.
        """
        now = self._clock.now()
        with session_scope(self._session_factory) as session:
            model = self._load_execution(session, execution_id)
            if JobStatus(model.status).is_terminal:
                raise InvalidStateTransitionError(
                    "job execution", model.status, JobStatus.FAILED.value,
                )
            for step in model.steps:
                if step.status == StepStatus.STARTED.value:
                    step.status = StepStatus.FAILED.value
                    step.ended_at = now
                    step.exit_description = "abandoned"
            model.status = JobStatus.FAILED.value
            model.exit_code = ExitCode.FAILED.value
            model.exit_description = "abandoned execution marked failed by operator"
            model.ended_at = now
            model.active_lock = None
            dto = model.to_dto()

        logger.warning(
            "job_execution_abandoned", extra={"job_execution_id": str(execution_id)},
        )
        return dto

    def purge_before(self, cutoff: datetime) -> int:
        """Delete terminal executions of completed instances created before ``cutoff``.

        Executions of instances that never completed are kept, so their
        checkpoints stay restartable.  Instances left without executions are
        deleted too.  Returns the number of executions removed.
        """
        completed_instances = select(JobExecutionModel.job_instance_id).where(
            JobExecutionModel.status == JobStatus.COMPLETED.value,
        )
        with session_scope(self._session_factory) as session:
            models = session.execute(
                select(JobExecutionModel).where(
                    JobExecutionModel.created_at < cutoff,
                    JobExecutionModel.status.not_in(_NON_TERMINAL),
                    JobExecutionModel.job_instance_id.in_(completed_instances),
                )
            ).scalars().all()
            for model in models:
                session.delete(model)
            session.flush()

            orphaned = select(JobInstanceModel.id).where(
                ~select(JobExecutionModel.id)
                .where(JobExecutionModel.job_instance_id == JobInstanceModel.id)
                .exists()
            )
            session.execute(
                delete(JobInstanceModel)
                .where(JobInstanceModel.id.in_(orphaned))
                .execution_options(synchronize_session=False)
            )
            purged = len(models)

        logger.info(
            "execution_metadata_purged",
            extra={"cutoff": cutoff, "executions_deleted": purged},
        )
        return purged

    # -------------------------------------------------------------------------
    # Steps
    # -------------------------------------------------------------------------

    def start_step(
        self,
        execution_id: UUID,
        step_name: str,
        step_index: int,
        context: dict[str, Any] | None = None,
    ) -> StepExecution:
        """Create a STARTED step execution seeded with ``context``."""
        with session_scope(self._session_factory) as session:
            model = StepExecutionModel(
                job_execution_id=execution_id,
                step_name=step_name,
                step_index=step_index,
                status=StepStatus.STARTED.value,
                execution_context=dict(context or {}),
                started_at=self._clock.now(),
                **{name: 0 for name in StepExecutionModel.COUNTER_FIELDS},
            )
            model.created_at = self._clock.now()
            session.add(model)
            session.flush()
            return model.to_dto()

    def open_chunk_session(self) -> Session:
        """Session for a chunk whose commit the caller drives explicitly."""
        return self._session_factory()

    def record_step_progress(
        self,
        session: Session,
        step_execution_id: UUID,
        counters: StepCounters,
        context: dict[str, Any],
        failures: Iterable[StepFailure] = (),
    ) -> None:
        """Stage counters, context and failure records in ``session``.

        Does NOT commit; the caller's chunk commit makes them durable.
        """
        model = session.get(StepExecutionModel, step_execution_id)
        if model is None:
            raise JobExecutionNotFoundError(str(step_execution_id))
        self._apply_counters(model, counters)
        model.execution_context = dict(context)
        model.updated_at = self._clock.now()
        self._add_failures(session, step_execution_id, failures)
        session.flush()

    def complete_step(
        self,
        step_execution_id: UUID,
        status: StepStatus,
        counters: StepCounters,
        exit_description: str | None = None,
        failures: Iterable[StepFailure] = (),
        context: dict[str, Any] | None = None,
    ) -> StepExecution:
        """Move a step to a terminal status, recording any final failures."""
        if not status.is_terminal:
            raise InvalidStateTransitionError("step execution", "?", status.value)
        with session_scope(self._session_factory) as session:
            model = session.get(StepExecutionModel, step_execution_id)
            if model is None:
                raise JobExecutionNotFoundError(str(step_execution_id))
            self._apply_counters(model, counters)
            if context is not None:
                model.execution_context = dict(context)
            model.status = status.value
            model.exit_description = exit_description
            model.ended_at = self._clock.now()
            self._add_failures(session, step_execution_id, failures)
            session.flush()
            return model.to_dto()

    def list_step_executions(self, execution_id: UUID) -> list[StepExecution]:
        with session_scope(self._session_factory) as session:
            models = session.execute(
                select(StepExecutionModel)
                .where(StepExecutionModel.job_execution_id == execution_id)
                .order_by(StepExecutionModel.step_index)
            ).scalars().all()
            return [m.to_dto() for m in models]

    def completed_step_names(self, instance_id: UUID) -> set[str]:
        """Steps that COMPLETED in any execution of the instance."""
        with session_scope(self._session_factory) as session:
            names = session.execute(
                select(StepExecutionModel.step_name)
                .join(JobExecutionModel)
                .where(
                    JobExecutionModel.job_instance_id == instance_id,
                    StepExecutionModel.status == StepStatus.COMPLETED.value,
                )
            ).scalars().all()
            return set(names)

    def last_step_execution(
        self, instance_id: UUID, step_name: str,
    ) -> StepExecution | None:
        """Latest execution of ``step_name`` across the instance's attempts."""
        with session_scope(self._session_factory) as session:
            model = session.execute(
                select(StepExecutionModel)
                .join(JobExecutionModel)
                .where(
                    JobExecutionModel.job_instance_id == instance_id,
                    StepExecutionModel.step_name == step_name,
                )
                .order_by(JobExecutionModel.attempt.desc())
                .limit(1)
            ).scalar_one_or_none()
            return model.to_dto() if model is not None else None

    def list_step_failures(
        self, step_execution_id: UUID, limit: int | None = None,
    ) -> list[StepFailure]:
        with session_scope(self._session_factory) as session:
            stmt = (
                select(StepFailureModel)
                .where(StepFailureModel.step_execution_id == step_execution_id)
                .order_by(StepFailureModel.ordinal)
            )
            if limit is not None:
                stmt = stmt.limit(limit)
            return [m.to_dto() for m in session.execute(stmt).scalars().all()]

    # -------------------------------------------------------------------------
    # Reporting
    # -------------------------------------------------------------------------

    def build_report(self, execution_id: UUID, failure_limit: int = 10) -> ExecutionReport:
        """Status, exit code, per-step counters and the first failures."""
        execution = self.get_execution(execution_id)
        step_reports = []
        failing_step = None
        for step in self.list_step_executions(execution_id):
            if step.status == StepStatus.FAILED and failing_step is None:
                failing_step = step.step_name
            step_reports.append(
                StepReport(
                    step_name=step.step_name,
                    status=step.status,
                    counters=step.counters,
                    exit_description=step.exit_description,
                    failures=tuple(
                        self.list_step_failures(step.step_execution_id, failure_limit)
                    ),
                )
            )
        return ExecutionReport(
            execution=execution,
            steps=tuple(step_reports),
            failing_step=failing_step,
        )

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    def _load_execution(self, session: Session, execution_id: UUID) -> JobExecutionModel:
        model = session.get(JobExecutionModel, execution_id)
        if model is None:
            raise JobExecutionNotFoundError(str(execution_id))
        return model

    @staticmethod
    def _apply_counters(model: StepExecutionModel, counters: StepCounters) -> None:
        for name, value in counters.as_dict().items():
            setattr(model, name, value)

    @staticmethod
    def _add_failures(
        session: Session, step_execution_id: UUID, failures: Iterable[StepFailure],
    ) -> None:
        failures = list(failures)
        if not failures:
            return
        ordinal = session.execute(
            select(func.count(StepFailureModel.id)).where(
                StepFailureModel.step_execution_id == step_execution_id,
            )
        ).scalar_one()
        for failure in failures:
            session.add(StepFailureModel.from_dto(failure, step_execution_id, ordinal))
            ordinal += 1

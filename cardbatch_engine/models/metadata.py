"""
ORM models for execution metadata.

Contract:
    JobInstanceModel, JobExecutionModel, StepExecutionModel and
    StepFailureModel persist the job/step/execution metadata.  Each has a
    ``to_dto()`` method returning the frozen DTO from
    ``cardbatch_engine.domain.types``.

Architecture: cardbatch_engine/models.  Imports from cardbatch_kernel.db only.

Invariants enforced:
    - (job_name, job_key) is UNIQUE: one JobInstance per name + parameters.
    - (job_instance_id, active_lock) is UNIQUE.  ``active_lock`` is 1 while an
      execution is non-terminal and NULL afterwards, so the database itself
      refuses a second concurrently active execution of the same instance.
    - Step context is stored as JSON text; it holds only JSON-native values
      (monetary totals are canonical decimal strings).
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any
from uuid import UUID

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from cardbatch_kernel.db.base import TrackedBase, UUIDString

if TYPE_CHECKING:
    from cardbatch_engine.domain.types import (
        JobExecution,
        JobInstance,
        StepExecution,
        StepFailure,
    )

ACTIVE = 1


class JobInstanceModel(TrackedBase):
    """Persistent JobInstance (job name + normalized parameters)."""

    __tablename__ = "batch_job_instances"

    __table_args__ = (
        UniqueConstraint("job_name", "job_key", name="uq_batch_job_instance_key"),
    )

    job_name: Mapped[str] = mapped_column(String(100), nullable=False)
    job_key: Mapped[str] = mapped_column(String(64), nullable=False)
    parameters: Mapped[dict] = mapped_column(JSON, nullable=False)

    executions: Mapped[list["JobExecutionModel"]] = relationship(
        "JobExecutionModel",
        back_populates="instance",
        order_by="JobExecutionModel.attempt",
        cascade="all, delete-orphan",
    )

    def to_dto(self) -> JobInstance:
        from cardbatch_engine.domain.parameters import JobParameters
        from cardbatch_engine.domain.types import JobInstance

        return JobInstance(
            instance_id=self.id,
            job_name=self.job_name,
            job_key=self.job_key,
            parameters=JobParameters.from_json(self.parameters),
            created_at=self.created_at,
        )


class JobExecutionModel(TrackedBase):
    """Persistent JobExecution with the single-active-execution guard."""

    __tablename__ = "batch_job_executions"

    __table_args__ = (
        UniqueConstraint(
            "job_instance_id", "active_lock", name="uq_batch_job_execution_active"
        ),
        Index("ix_batch_job_executions_status", "status"),
    )

    job_instance_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("batch_job_instances.id", ondelete="CASCADE"),
        nullable=False,
    )
    attempt: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    active_lock: Mapped[int | None] = mapped_column(Integer, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    ended_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    exit_code: Mapped[str] = mapped_column(String(40), nullable=False, default="UNKNOWN")
    exit_description: Mapped[str | None] = mapped_column(Text, nullable=True)
    stop_requested: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    instance: Mapped["JobInstanceModel"] = relationship(
        "JobInstanceModel", back_populates="executions",
    )
    steps: Mapped[list["StepExecutionModel"]] = relationship(
        "StepExecutionModel",
        back_populates="execution",
        order_by="StepExecutionModel.step_index",
        cascade="all, delete-orphan",
    )

    def to_dto(self) -> JobExecution:
        from cardbatch_engine.domain.parameters import JobParameters
        from cardbatch_engine.domain.types import ExitCode, JobExecution, JobStatus

        return JobExecution(
            execution_id=self.id,
            instance_id=self.job_instance_id,
            job_name=self.instance.job_name,
            attempt=self.attempt,
            status=JobStatus(self.status),
            parameters=JobParameters.from_json(self.instance.parameters),
            created_at=self.created_at,
            started_at=self.started_at,
            ended_at=self.ended_at,
            exit_code=ExitCode(self.exit_code),
            exit_description=self.exit_description,
            stop_requested=self.stop_requested,
        )


class StepExecutionModel(TrackedBase):
    """Persistent StepExecution: counters and last committed context."""

    __tablename__ = "batch_step_executions"

    __table_args__ = (
        Index("ix_batch_step_executions_exec_step", "job_execution_id", "step_name"),
    )

    job_execution_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("batch_job_executions.id", ondelete="CASCADE"),
        nullable=False,
    )
    step_name: Mapped[str] = mapped_column(String(100), nullable=False)
    step_index: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    read_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    write_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    filter_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    read_skip_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    process_skip_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    write_skip_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    commit_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    rollback_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    execution_context: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    ended_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    exit_description: Mapped[str | None] = mapped_column(Text, nullable=True)

    execution: Mapped["JobExecutionModel"] = relationship(
        "JobExecutionModel", back_populates="steps",
    )
    failures: Mapped[list["StepFailureModel"]] = relationship(
        "StepFailureModel",
        back_populates="step_execution",
        order_by="StepFailureModel.ordinal",
        cascade="all, delete-orphan",
    )

    COUNTER_FIELDS = (
        "read_count",
        "write_count",
        "filter_count",
        "read_skip_count",
        "process_skip_count",
        "write_skip_count",
        "commit_count",
        "rollback_count",
        "retry_count",
    )

    def to_dto(self) -> StepExecution:
        from cardbatch_engine.domain.types import StepCounters, StepExecution, StepStatus

        return StepExecution(
            step_execution_id=self.id,
            execution_id=self.job_execution_id,
            step_name=self.step_name,
            status=StepStatus(self.status),
            counters=StepCounters(
                **{name: getattr(self, name) for name in self.COUNTER_FIELDS}
            ),
            context=dict(self.execution_context or {}),
            started_at=self.started_at,
            ended_at=self.ended_at,
            exit_description=self.exit_description,
        )


class StepFailureModel(TrackedBase):
    """One skipped or fatal item recorded against a step execution."""

    __tablename__ = "batch_step_failures"

    __table_args__ = (
        Index("ix_batch_step_failures_step", "step_execution_id", "ordinal"),
    )

    step_execution_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("batch_step_executions.id", ondelete="CASCADE"),
        nullable=False,
    )
    ordinal: Mapped[int] = mapped_column(Integer, nullable=False)
    phase: Mapped[str] = mapped_column(String(20), nullable=False)
    item_ref: Mapped[str] = mapped_column(String(200), nullable=False)
    exception_type: Mapped[str] = mapped_column(String(100), nullable=False)
    error_code: Mapped[str | None] = mapped_column(String(100), nullable=True)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    action: Mapped[str] = mapped_column(String(20), nullable=False)

    step_execution: Mapped["StepExecutionModel"] = relationship(
        "StepExecutionModel", back_populates="failures",
    )

    def to_dto(self) -> StepFailure:
        from cardbatch_engine.domain.types import (
            FailureAction,
            FailurePhase,
            StepFailure,
        )

        return StepFailure(
            phase=FailurePhase(self.phase),
            item_ref=self.item_ref,
            exception_type=self.exception_type,
            error_code=self.error_code,
            message=self.message,
            action=FailureAction(self.action),
        )

    @classmethod
    def from_dto(
        cls, dto: StepFailure, step_execution_id: UUID, ordinal: int,
    ) -> StepFailureModel:
        return cls(
            step_execution_id=step_execution_id,
            ordinal=ordinal,
            phase=dto.phase.value,
            item_ref=dto.item_ref,
            exception_type=dto.exception_type,
            error_code=dto.error_code,
            message=dto.message,
            action=dto.action.value,
        )

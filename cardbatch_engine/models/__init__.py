"""Execution metadata ORM models."""

from cardbatch_engine.models.metadata import (
    JobExecutionModel,
    JobInstanceModel,
    StepExecutionModel,
    StepFailureModel,
)

__all__ = [
    "JobExecutionModel",
    "JobInstanceModel",
    "StepExecutionModel",
    "StepFailureModel",
]

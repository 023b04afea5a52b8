"""
Batch configuration schema.

Human-authored YAML (``defaults/batch.yaml`` or an operator-supplied file) is
parsed by the loader into these frozen dataclasses.  Nothing else in the
system reads configuration files.

Resolution order for a step's fault policy:
    step override  >  global defaults
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace

# ---------------------------------------------------------------------------
# Fault policy
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FaultPolicyDef:
    """Declarative chunk/skip/retry settings for one step."""

    chunk_size: int = 100
    skip_limit: int = 10
    retry_limit: int = 3  # total attempts, first one included
    skippable: tuple[str, ...] = (
        "MalformedRecordError",
        "ConstraintViolationError",
    )
    retryable: tuple[str, ...] = (
        "TransientIOError",
        "TimeoutError",
    )


@dataclass(frozen=True)
class StepSettings:
    """Per-step overrides; ``None`` means inherit."""

    name: str
    chunk_size: int | None = None
    skip_limit: int | None = None
    retry_limit: int | None = None
    skippable: tuple[str, ...] | None = None
    retryable: tuple[str, ...] | None = None
    allow_continue: bool | None = None

    def apply(self, base: FaultPolicyDef) -> FaultPolicyDef:
        overrides = {
            name: getattr(self, name)
            for name in ("chunk_size", "skip_limit", "retry_limit", "skippable", "retryable")
            if getattr(self, name) is not None
        }
        return replace(base, **overrides)


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class JobSettings:
    """Operational settings of one job."""

    name: str
    processing_window_minutes: int | None = None
    steps: tuple[StepSettings, ...] = ()

    def step(self, step_name: str) -> StepSettings | None:
        for step in self.steps:
            if step.name == step_name:
                return step
        return None


# ---------------------------------------------------------------------------
# Root
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BatchSettings:
    """Root configuration object returned by ``get_batch_config()``."""

    database_url: str = "sqlite:///cardbatch.db"
    io_timeout_seconds: int = 30
    failure_report_limit: int = 10
    defaults: FaultPolicyDef = field(default_factory=FaultPolicyDef)
    jobs: tuple[JobSettings, ...] = ()
    checksum: str = ""

    def job(self, job_name: str) -> JobSettings | None:
        for job in self.jobs:
            if job.name == job_name:
                return job
        return None

    def step_policy(self, job_name: str, step_name: str) -> FaultPolicyDef:
        """Effective fault policy for ``job_name``/``step_name``."""
        job = self.job(job_name)
        if job is None:
            return self.defaults
        step = job.step(step_name)
        if step is None:
            return self.defaults
        return step.apply(self.defaults)

    def allow_continue(self, job_name: str, step_name: str) -> bool | None:
        job = self.job(job_name)
        step = job.step(step_name) if job is not None else None
        return step.allow_continue if step is not None else None

    def processing_window_minutes(self, job_name: str) -> int | None:
        job = self.job(job_name)
        return job.processing_window_minutes if job is not None else None

"""
Tests for JobOrchestrator: the instance lifecycle, operator stop and
recovery, step continuation and the processing window warning.
"""

from datetime import date

import pytest
from sqlalchemy import func, select

from cardbatch_config.schema import JobSettings, StepSettings
from cardbatch_engine.domain.parameters import JobParameters, ParameterSpec, ParameterType
from cardbatch_engine.domain.types import ExitCode, JobStatus, StepStatus
from cardbatch_engine.services.observability import BatchMetrics
from cardbatch_engine.steps.base import JobDefinition, JobRegistry, StepDefinition
from cardbatch_engine.steps.readers import FixedWidthFileReader
from cardbatch_engine.steps.writers import UpsertWriter
from cardbatch_jobs.common import record_row
from cardbatch_jobs.orm import CardXref
from cardbatch_kernel.codec import Record, encode
from cardbatch_kernel.codec.layouts import CARD_XREF
from cardbatch_kernel.exceptions import (
    ConcurrentExecutionError,
    InvalidJobParametersError,
    InvalidStateTransitionError,
    JobInstanceAlreadyCompleteError,
    JobNotRegisteredError,
    JobRestartRequiredError,
    NoRestartableExecutionError,
)
from conftest import events, make_settings, write_lines

PARAMS = {"processing_date": date(2024, 1, 15)}
DATE_PARAM = (ParameterSpec("processing_date", ParameterType.DATE),)


def xref_path(tmp_path, count: int):
    lines = [
        encode(
            Record.build(
                CARD_XREF, card_number=f"{4100000000000000 + i}", customer_id=i, account_id=i,
            )
        )
        for i in range(1, count + 1)
    ]
    return write_lines(tmp_path / "xref.txt", lines)


class Breaker:
    """Raises RuntimeError on one account while ``armed``."""

    def __init__(self, account_id: int):
        self.account_id = account_id
        self.armed = True

    def process(self, item, chunk):
        if self.armed and item["account_id"] == self.account_id:
            raise RuntimeError("unexpected")
        return item


class StopAfterFirstCommit:
    """Requests an operator stop once the first chunk has committed."""

    def __init__(self, store):
        self.store = store
        self.done = False

    def process(self, item, chunk):
        return item

    def before_chunk(self, chunk):
        pass

    def after_commit(self, chunk):
        if not self.done:
            self.done = True
            self.store.request_stop(chunk.scope.execution_id)

    def on_chunk_error(self, chunk, exc):
        pass


class SlowProcessor:
    """Advances the injected clock for every item."""

    def __init__(self, seconds: int):
        self.seconds = seconds

    def process(self, item, chunk):
        chunk.scope.clock.advance(self.seconds)
        return item


class WindowMetrics(BatchMetrics):
    def __init__(self):
        self.window_warnings = []

    def processing_window_exceeded(self, job_name, window_minutes, elapsed_minutes):
        self.window_warnings.append((job_name, window_minutes))
        super().processing_window_exceeded(job_name, window_minutes, elapsed_minutes)


def step(name, path, processor=None, allow_continue=False) -> StepDefinition:
    return StepDefinition(
        name=name,
        reader_factory=lambda scope: FixedWidthFileReader(path, CARD_XREF),
        writer_factory=lambda scope: UpsertWriter(CardXref, CARD_XREF.key_fields, record_row),
        processor_factory=(lambda scope: processor) if processor is not None else None,
        allow_continue=allow_continue,
    )


def registry_of(*steps, **job_kwargs) -> JobRegistry:
    registry = JobRegistry()
    job_kwargs.setdefault("parameters", DATE_PARAM)
    registry.register(JobDefinition(name="xref_load", steps=tuple(steps), **job_kwargs))
    return registry


def xref_count(session_factory) -> int:
    with session_factory() as session:
        return session.execute(select(func.count(CardXref.id))).scalar_one()


# =============================================================================
# Launch rules
# =============================================================================


class TestLaunch:
    def test_unknown_job(self, make_orchestrator):
        orchestrator = make_orchestrator(JobRegistry())
        with pytest.raises(JobNotRegisteredError):
            orchestrator.launch("nope", PARAMS)

    def test_invalid_parameters(self, tmp_path, make_orchestrator):
        orchestrator = make_orchestrator(registry_of(step("load", xref_path(tmp_path, 1))))
        with pytest.raises(InvalidJobParametersError):
            orchestrator.launch("xref_load", {"processing_date": "2024-01-15"})
        with pytest.raises(InvalidJobParametersError):
            orchestrator.launch("xref_load", {})

    def test_completed_instance_is_not_rerun(self, tmp_path, make_orchestrator):
        orchestrator = make_orchestrator(registry_of(step("load", xref_path(tmp_path, 5))))
        first = orchestrator.launch("xref_load", PARAMS)
        assert first.exit_code == ExitCode.COMPLETED
        assert first.exit_code.return_code == 0

        with pytest.raises(JobInstanceAlreadyCompleteError):
            orchestrator.launch("xref_load", PARAMS)
        with pytest.raises(JobInstanceAlreadyCompleteError):
            orchestrator.restart("xref_load", PARAMS)

    def test_failed_instance_requires_restart(self, tmp_path, make_orchestrator):
        processor = Breaker(3)
        orchestrator = make_orchestrator(
            registry_of(step("load", xref_path(tmp_path, 5), processor)),
        )
        first = orchestrator.launch("xref_load", PARAMS)
        assert first.status == JobStatus.FAILED
        assert first.exit_code.return_code == 16

        with pytest.raises(JobRestartRequiredError):
            orchestrator.launch("xref_load", PARAMS)

    def test_active_execution_blocks_launch(self, tmp_path, make_orchestrator, store):
        orchestrator = make_orchestrator(registry_of(step("load", xref_path(tmp_path, 5))))
        instance, _ = store.get_or_create_instance("xref_load", JobParameters(PARAMS))
        store.start_execution(instance)

        with pytest.raises(ConcurrentExecutionError):
            orchestrator.launch("xref_load", PARAMS)
        with pytest.raises(ConcurrentExecutionError):
            orchestrator.restart("xref_load", PARAMS)

    def test_new_parameters_are_a_new_instance(self, tmp_path, make_orchestrator):
        orchestrator = make_orchestrator(registry_of(step("load", xref_path(tmp_path, 5))))
        orchestrator.launch("xref_load", PARAMS)
        second = orchestrator.launch("xref_load", {"processing_date": date(2024, 1, 16)})
        assert second.attempt == 1

    def test_restart_without_instance(self, tmp_path, make_orchestrator):
        orchestrator = make_orchestrator(registry_of(step("load", xref_path(tmp_path, 5))))
        with pytest.raises(NoRestartableExecutionError):
            orchestrator.restart("xref_load", PARAMS)

    def test_lifecycle_is_logged(self, tmp_path, make_orchestrator, captured_logs):
        orchestrator = make_orchestrator(registry_of(step("load", xref_path(tmp_path, 5))))
        execution = orchestrator.launch("xref_load", PARAMS)

        logs = captured_logs()
        [started] = events(logs, "job_started")
        assert started["job_execution_id"] == str(execution.execution_id)
        assert started["parameters"] == {
            "processing_date": {"type": "date", "value": "2024-01-15"},
        }
        [finished] = events(logs, "job_finished")
        assert finished["exit_code"] == "COMPLETED"


# =============================================================================
# Restart
# =============================================================================


class TestRestart:
    def test_completed_steps_are_not_rerun(self, tmp_path, make_orchestrator):
        path = xref_path(tmp_path, 10)
        breaker = Breaker(4)
        orchestrator = make_orchestrator(
            registry_of(step("first", path), step("second", path, breaker)),
        )

        failed = orchestrator.launch("xref_load", PARAMS)
        report = orchestrator.status(failed.execution_id)
        assert report.failing_step == "second"
        assert [s.status for s in report.steps] == [StepStatus.COMPLETED, StepStatus.FAILED]

        breaker.armed = False
        restarted = orchestrator.restart("xref_load", PARAMS)

        assert restarted.status == JobStatus.COMPLETED
        assert restarted.attempt == 2
        assert [s.step_name for s in orchestrator.status(restarted.execution_id).steps] == [
            "second"
        ]


# =============================================================================
# Operator control
# =============================================================================


class TestOperatorControl:
    def test_stop_at_chunk_boundary_then_restart(
        self, tmp_path, make_orchestrator, store, session_factory,
    ):
        path = xref_path(tmp_path, 250)
        orchestrator = make_orchestrator(
            registry_of(step("load", path, StopAfterFirstCommit(store))),
            make_settings(chunk_size=100),
        )

        stopped = orchestrator.launch("xref_load", PARAMS)

        assert stopped.status == JobStatus.STOPPED
        assert stopped.exit_code == ExitCode.STOPPED
        assert stopped.exit_code.return_code == 12
        assert xref_count(session_factory) == 100
        [step_report] = orchestrator.status(stopped.execution_id).steps
        assert step_report.status == StepStatus.STOPPED
        assert step_report.counters.commit_count == 1

        resumed = orchestrator.restart("xref_load", PARAMS)

        assert resumed.status == JobStatus.COMPLETED
        [step_report] = orchestrator.status(resumed.execution_id).steps
        assert step_report.counters.read_count == 150
        assert xref_count(session_factory) == 250

    def test_stop_finished_execution_rejected(self, tmp_path, make_orchestrator):
        orchestrator = make_orchestrator(registry_of(step("load", xref_path(tmp_path, 5))))
        execution = orchestrator.launch("xref_load", PARAMS)
        with pytest.raises(InvalidStateTransitionError):
            orchestrator.stop(execution.execution_id)

    def test_recover_abandoned_execution(self, tmp_path, make_orchestrator, store):
        orchestrator = make_orchestrator(registry_of(step("load", xref_path(tmp_path, 5))))
        instance, _ = store.get_or_create_instance("xref_load", JobParameters(PARAMS))
        crashed = store.start_execution(instance)
        store.mark_execution_started(crashed.execution_id)

        recovered = orchestrator.recover(crashed.execution_id)
        assert recovered.status == JobStatus.FAILED

        restarted = orchestrator.restart("xref_load", PARAMS)
        assert restarted.status == JobStatus.COMPLETED
        assert restarted.attempt == 2


# =============================================================================
# Step failures and exit codes
# =============================================================================


class TestStepFailures:
    def test_allowed_failure_continues(self, tmp_path, make_orchestrator):
        path = xref_path(tmp_path, 10)
        orchestrator = make_orchestrator(
            registry_of(
                step("optional", path, Breaker(2), allow_continue=True),
                step("required", path),
            ),
        )

        execution = orchestrator.launch("xref_load", PARAMS)

        assert execution.status == JobStatus.COMPLETED
        assert execution.exit_code == ExitCode.COMPLETED_WITH_STEP_FAILURES
        assert execution.exit_code.return_code == 8
        statuses = [s.status for s in orchestrator.status(execution.execution_id).steps]
        assert statuses == [StepStatus.FAILED, StepStatus.COMPLETED]

    def test_configuration_overrides_continuation(self, tmp_path, make_orchestrator):
        path = xref_path(tmp_path, 10)
        settings = make_settings(
            jobs=(
                JobSettings(
                    name="xref_load",
                    steps=(StepSettings(name="optional", allow_continue=False),),
                ),
            ),
        )
        orchestrator = make_orchestrator(
            registry_of(
                step("optional", path, Breaker(2), allow_continue=True),
                step("required", path),
            ),
            settings,
        )

        execution = orchestrator.launch("xref_load", PARAMS)

        assert execution.status == JobStatus.FAILED
        report = orchestrator.status(execution.execution_id)
        assert report.failing_step == "optional"
        assert len(report.steps) == 1


# =============================================================================
# Processing window
# =============================================================================


class TestProcessingWindow:
    def test_window_overrun_warns_once_and_completes(self, tmp_path, make_orchestrator):
        metrics = WindowMetrics()
        orchestrator = make_orchestrator(
            registry_of(
                step("load", xref_path(tmp_path, 30), SlowProcessor(10)),
                processing_window_minutes=1,
            ),
            make_settings(chunk_size=5),
            metrics,
        )

        execution = orchestrator.launch("xref_load", PARAMS)

        assert execution.exit_code == ExitCode.COMPLETED
        assert metrics.window_warnings == [("xref_load", 1)]

    def test_configured_window_wins(self, tmp_path, make_orchestrator):
        metrics = WindowMetrics()
        settings = make_settings(
            jobs=(JobSettings(name="xref_load", processing_window_minutes=60),),
        )
        orchestrator = make_orchestrator(
            registry_of(
                step("load", xref_path(tmp_path, 30), SlowProcessor(10)),
                processing_window_minutes=1,
            ),
            settings,
            metrics,
        )

        orchestrator.launch("xref_load", PARAMS)

        assert metrics.window_warnings == []

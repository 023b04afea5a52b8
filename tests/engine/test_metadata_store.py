"""
Tests for ExecutionMetadataStore: instance identity, the single active
execution rule, step progress and operator maintenance.
"""

from datetime import date, datetime, timedelta, timezone
from uuid import uuid4

import pytest

from cardbatch_engine.domain.parameters import JobParameters
from cardbatch_engine.domain.types import (
    ExitCode,
    FailureAction,
    FailurePhase,
    JobStatus,
    StepCounters,
    StepFailure,
    StepStatus,
)
from cardbatch_kernel.exceptions import (
    ConcurrentExecutionError,
    InvalidStateTransitionError,
    JobExecutionNotFoundError,
    JobInstanceAlreadyExistsError,
)

PARAMS = JobParameters({"processing_date": date(2024, 1, 15)})


def skipped(ref: str) -> StepFailure:
    return StepFailure(
        phase=FailurePhase.READ,
        item_ref=ref,
        exception_type="MalformedRecordError",
        error_code="MALFORMED_RECORD",
        message="bad",
        action=FailureAction.SKIPPED,
    )


# =============================================================================
# Instances
# =============================================================================


class TestInstances:
    def test_same_parameters_same_instance(self, store):
        created = store.create_instance("daily_posting", PARAMS)
        found = store.get_instance(
            "daily_posting", JobParameters({"processing_date": date(2024, 1, 15)}),
        )
        assert found.instance_id == created.instance_id
        assert found.parameters == PARAMS

    def test_duplicate_instance_rejected(self, store):
        store.create_instance("daily_posting", PARAMS)
        with pytest.raises(JobInstanceAlreadyExistsError):
            store.create_instance("daily_posting", PARAMS)

    def test_get_or_create(self, store):
        first, created = store.get_or_create_instance("daily_posting", PARAMS)
        second, created_again = store.get_or_create_instance("daily_posting", PARAMS)
        assert created and not created_again
        assert first.instance_id == second.instance_id

    def test_other_parameters_other_instance(self, store):
        a = store.create_instance("daily_posting", PARAMS)
        b = store.create_instance(
            "daily_posting", JobParameters({"processing_date": date(2024, 1, 16)}),
        )
        assert a.instance_id != b.instance_id


# =============================================================================
# Executions
# =============================================================================


class TestExecutions:
    def test_second_active_execution_rejected(self, store):
        instance = store.create_instance("daily_posting", PARAMS)
        store.start_execution(instance)
        with pytest.raises(ConcurrentExecutionError):
            store.start_execution(instance)

    def test_attempts_increase_after_terminal(self, store):
        instance = store.create_instance("daily_posting", PARAMS)
        first = store.start_execution(instance)
        store.mark_execution_started(first.execution_id)
        store.complete_execution(first.execution_id, JobStatus.FAILED, ExitCode.FAILED)

        second = store.start_execution(instance)
        assert second.attempt == 2
        assert store.find_restartable_execution(instance.instance_id) is None
        assert [e.attempt for e in store.list_executions(instance.instance_id)] == [1, 2]

    def test_restartable_execution(self, store):
        instance = store.create_instance("daily_posting", PARAMS)
        execution = store.start_execution(instance)
        store.complete_execution(execution.execution_id, JobStatus.STOPPED, ExitCode.STOPPED)
        restartable = store.find_restartable_execution(instance.instance_id)
        assert restartable.execution_id == execution.execution_id

    def test_terminal_execution_cannot_change(self, store):
        instance = store.create_instance("daily_posting", PARAMS)
        execution = store.start_execution(instance)
        store.complete_execution(execution.execution_id, JobStatus.COMPLETED, ExitCode.COMPLETED)
        with pytest.raises(InvalidStateTransitionError):
            store.complete_execution(execution.execution_id, JobStatus.FAILED, ExitCode.FAILED)
        with pytest.raises(InvalidStateTransitionError):
            store.request_stop(execution.execution_id)

    def test_timestamps_come_from_clock(self, store, clock):
        instance = store.create_instance("daily_posting", PARAMS)
        execution = store.start_execution(instance)
        clock.advance(90)
        started = store.mark_execution_started(execution.execution_id)
        assert started.started_at.replace(tzinfo=timezone.utc) == clock.now()

    def test_unknown_execution(self, store):
        with pytest.raises(JobExecutionNotFoundError):
            store.get_execution(uuid4())


# =============================================================================
# Steps and operator control
# =============================================================================


class TestSteps:
    def test_progress_and_completion(self, store):
        instance = store.create_instance("daily_posting", PARAMS)
        execution = store.start_execution(instance)
        step = store.start_step(execution.execution_id, "post_transactions", 0)

        session = store.open_chunk_session()
        try:
            store.record_step_progress(
                session,
                step.step_execution_id,
                StepCounters(read_count=10, write_count=9, read_skip_count=1, commit_count=1),
                {"reader": {"offset": 3510, "line": 10}},
                [skipped("line 4")],
            )
            session.commit()
        finally:
            session.close()

        store.complete_step(
            step.step_execution_id,
            StepStatus.COMPLETED,
            StepCounters(read_count=10, write_count=9, read_skip_count=1, commit_count=1),
        )
        [saved] = store.list_step_executions(execution.execution_id)
        assert saved.status == StepStatus.COMPLETED
        assert saved.counters.skip_count == 1
        assert saved.context["reader"]["line"] == 10
        assert [f.item_ref for f in store.list_step_failures(step.step_execution_id)] == [
            "line 4"
        ]
        assert store.completed_step_names(instance.instance_id) == {"post_transactions"}

    def test_uncommitted_progress_is_discarded(self, store):
        instance = store.create_instance("daily_posting", PARAMS)
        execution = store.start_execution(instance)
        step = store.start_step(execution.execution_id, "post_transactions", 0)

        session = store.open_chunk_session()
        try:
            store.record_step_progress(
                session, step.step_execution_id, StepCounters(write_count=5), {"x": 1},
                [skipped("line 1")],
            )
            session.rollback()
        finally:
            session.close()

        [saved] = store.list_step_executions(execution.execution_id)
        assert saved.counters.write_count == 0
        assert saved.context == {}
        assert store.list_step_failures(step.step_execution_id) == []

    def test_stop_request(self, store):
        instance = store.create_instance("daily_posting", PARAMS)
        execution = store.start_execution(instance)
        assert not store.is_stop_requested(execution.execution_id)
        store.request_stop(execution.execution_id)
        assert store.is_stop_requested(execution.execution_id)

    def test_mark_abandoned_failed_keeps_checkpoint(self, store):
        instance = store.create_instance("daily_posting", PARAMS)
        execution = store.start_execution(instance)
        store.mark_execution_started(execution.execution_id)
        store.start_step(
            execution.execution_id, "post_transactions", 0, {"reader": {"offset": 700}},
        )

        failed = store.mark_abandoned_failed(execution.execution_id)
        assert failed.status == JobStatus.FAILED
        last = store.last_step_execution(instance.instance_id, "post_transactions")
        assert last.status == StepStatus.FAILED
        assert last.context == {"reader": {"offset": 700}}
        # The active lock is released
        store.start_execution(instance)

    def test_purge_keeps_unfinished_instances(self, store, clock):
        done = store.create_instance("daily_posting", PARAMS)
        execution = store.start_execution(done)
        store.complete_execution(execution.execution_id, JobStatus.COMPLETED, ExitCode.COMPLETED)

        pending = store.create_instance(
            "daily_posting", JobParameters({"processing_date": date(2024, 1, 16)}),
        )
        failed = store.start_execution(pending)
        store.complete_execution(failed.execution_id, JobStatus.FAILED, ExitCode.FAILED)

        purged = store.purge_before(clock.now() + timedelta(days=1))
        assert purged == 1
        assert store.get_instance("daily_posting", PARAMS) is None
        assert store.find_restartable_execution(pending.instance_id) is not None

    def test_purge_respects_cutoff(self, store, clock):
        instance = store.create_instance("daily_posting", PARAMS)
        execution = store.start_execution(instance)
        store.complete_execution(execution.execution_id, JobStatus.COMPLETED, ExitCode.COMPLETED)
        assert store.purge_before(datetime(2000, 1, 1, tzinfo=timezone.utc)) == 0

"""
Observability hooks for batch executions.

Emits structured log events for metrics and dashboards:
- Throughput: chunk_committed (items written per commit, duration_ms).
- Fault handling: item_skipped, item_retried, chunk_rolled_back.
- Outcome: step_finished, job_finished.
- Timing contract: processing_window_exceeded (warning, never an abort).

All events use a consistent ``observability_event`` field and stable extra
fields so log aggregators can parse them into metrics.

``BatchMetrics`` is the injectable sink used by the chunk processor and the
orchestrator.  The default implementation writes the log events below; tests
subclass it to record calls.

Usage:
    from cardbatch_engine.services.observability import log_chunk_committed
    log_chunk_committed(step_name="post_transactions", chunk_number=3,
                        item_count=100, duration_ms=41.2)
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

from cardbatch_kernel.domain.clock import Clock
from cardbatch_kernel.logging_config import get_logger

logger = get_logger("engine.observability")

# Standard event names for filtering in log pipelines
EVENT_CHUNK_COMMITTED = "chunk_committed"
EVENT_CHUNK_ROLLED_BACK = "chunk_rolled_back"
EVENT_ITEM_SKIPPED = "item_skipped"
EVENT_ITEM_RETRIED = "item_retried"
EVENT_STEP_FINISHED = "step_finished"
EVENT_JOB_FINISHED = "job_finished"
EVENT_PROCESSING_WINDOW_EXCEEDED = "processing_window_exceeded"


def log_chunk_committed(
    *,
    step_name: str,
    chunk_number: int,
    item_count: int,
    duration_ms: float | None = None,
    **extra: Any,
) -> None:
    payload: dict[str, Any] = {
        "observability_event": EVENT_CHUNK_COMMITTED,
        "step_name": step_name,
        "chunk_number": chunk_number,
        "item_count": item_count,
        **extra,
    }
    if duration_ms is not None:
        payload["duration_ms"] = round(duration_ms, 2)
    logger.info("chunk_committed", extra=payload)


def log_chunk_rolled_back(
    *,
    step_name: str,
    phase: str,
    reason: str,
    **extra: Any,
) -> None:
    logger.warning(
        "chunk_rolled_back",
        extra={
            "observability_event": EVENT_CHUNK_ROLLED_BACK,
            "step_name": step_name,
            "phase": phase,
            "reason": reason,
            **extra,
        },
    )


def log_item_skipped(
    *,
    step_name: str,
    phase: str,
    item_ref: str,
    exc_type: str,
    exc_code: str | None = None,
    **extra: Any,
) -> None:
    """
    Log one skipped item.

    ``item_ref`` is a natural key or ``line N``; raw record content must
    never be passed here.
    """
    payload: dict[str, Any] = {
        "observability_event": EVENT_ITEM_SKIPPED,
        "step_name": step_name,
        "phase": phase,
        "item_ref": item_ref,
        "exc_type": exc_type,
        **extra,
    }
    if exc_code is not None:
        payload["exc_code"] = exc_code
    logger.warning("item_skipped", extra=payload)


def log_item_retried(
    *,
    step_name: str,
    phase: str,
    attempt: int,
    exc_type: str,
    item_ref: str | None = None,
    **extra: Any,
) -> None:
    payload: dict[str, Any] = {
        "observability_event": EVENT_ITEM_RETRIED,
        "step_name": step_name,
        "phase": phase,
        "attempt": attempt,
        "exc_type": exc_type,
        **extra,
    }
    if item_ref is not None:
        payload["item_ref"] = item_ref
    logger.info("item_retried", extra=payload)


def log_step_finished(
    *,
    step_name: str,
    status: str,
    counters: dict[str, int],
    duration_ms: float | None = None,
    **extra: Any,
) -> None:
    payload: dict[str, Any] = {
        "observability_event": EVENT_STEP_FINISHED,
        "step_name": step_name,
        "status": status,
        **counters,
        **extra,
    }
    if duration_ms is not None:
        payload["duration_ms"] = round(duration_ms, 2)
    if status == "COMPLETED":
        logger.info("step_finished", extra=payload)
    else:
        logger.error("step_finished", extra=payload)


def log_job_finished(
    *,
    job_name: str,
    status: str,
    exit_code: str,
    duration_ms: float | None = None,
    **extra: Any,
) -> None:
    payload: dict[str, Any] = {
        "observability_event": EVENT_JOB_FINISHED,
        "job_name": job_name,
        "status": status,
        "exit_code": exit_code,
        **extra,
    }
    if duration_ms is not None:
        payload["duration_ms"] = round(duration_ms, 2)
    logger.info("job_finished", extra=payload)


def log_processing_window_exceeded(
    *,
    job_name: str,
    window_minutes: int,
    elapsed_minutes: float,
    **extra: Any,
) -> None:
    logger.warning(
        "processing_window_exceeded",
        extra={
            "observability_event": EVENT_PROCESSING_WINDOW_EXCEEDED,
            "job_name": job_name,
            "window_minutes": window_minutes,
            "elapsed_minutes": round(elapsed_minutes, 2),
            **extra,
        },
    )


class BatchMetrics:
    """Metric sink; the default writes the structured log events above."""

    def chunk_committed(
        self, step_name: str, chunk_number: int, item_count: int, duration_ms: float,
    ) -> None:
        log_chunk_committed(
            step_name=step_name,
            chunk_number=chunk_number,
            item_count=item_count,
            duration_ms=duration_ms,
        )

    def chunk_rolled_back(self, step_name: str, phase: str, reason: str) -> None:
        log_chunk_rolled_back(step_name=step_name, phase=phase, reason=reason)

    def item_skipped(
        self,
        step_name: str,
        phase: str,
        item_ref: str,
        exc_type: str,
        exc_code: str | None,
    ) -> None:
        log_item_skipped(
            step_name=step_name,
            phase=phase,
            item_ref=item_ref,
            exc_type=exc_type,
            exc_code=exc_code,
        )

    def item_retried(
        self, step_name: str, phase: str, attempt: int, exc_type: str, item_ref: str | None,
    ) -> None:
        log_item_retried(
            step_name=step_name,
            phase=phase,
            attempt=attempt,
            exc_type=exc_type,
            item_ref=item_ref,
        )

    def step_finished(
        self, step_name: str, status: str, counters: dict[str, int], duration_ms: float,
    ) -> None:
        log_step_finished(
            step_name=step_name, status=status, counters=counters, duration_ms=duration_ms,
        )

    def job_finished(
        self, job_name: str, status: str, exit_code: str, duration_ms: float,
    ) -> None:
        log_job_finished(
            job_name=job_name, status=status, exit_code=exit_code, duration_ms=duration_ms,
        )

    def processing_window_exceeded(
        self, job_name: str, window_minutes: int, elapsed_minutes: float,
    ) -> None:
        log_processing_window_exceeded(
            job_name=job_name,
            window_minutes=window_minutes,
            elapsed_minutes=elapsed_minutes,
        )


class ProcessingWindowMonitor:
    """Warns once per execution when the job's wall-clock window is exceeded."""

    def __init__(
        self,
        job_name: str,
        window_minutes: int | None,
        started_at: datetime,
        clock: Clock,
        metrics: BatchMetrics,
    ) -> None:
        self._job_name = job_name
        self._window_minutes = window_minutes
        self._started_at = started_at
        self._clock = clock
        self._metrics = metrics
        self._warned = False

    @property
    def exceeded(self) -> bool:
        return self._warned

    def check(self) -> bool:
        """Emit the warning the first time the window is found exceeded."""
        if self._window_minutes is None or self._warned:
            return self._warned
        elapsed = self._clock.now() - self._started_at
        if elapsed > timedelta(minutes=self._window_minutes):
            self._warned = True
            self._metrics.processing_window_exceeded(
                self._job_name,
                self._window_minutes,
                elapsed.total_seconds() / 60,
            )
        return self._warned

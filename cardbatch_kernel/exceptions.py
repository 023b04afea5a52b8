"""
Typed Exception Hierarchy for the card batch kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

The chunk processor decides per exception whether an item is skipped, retried
or fatal.  That decision is made by exception TYPE (resolved from the fault
policy table), never by parsing messages.  Every class therefore carries:

  1. A ``code`` class attribute (machine-readable, stable across releases)
  2. Structured attributes (field name, offset, job name, execution id ...)
  3. A message that never contains raw record bytes or full card numbers

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    BatchKernelError (base)
    |
    +-- DecimalError
    |   +-- DecimalOverflowError        (also OverflowError)
    |   +-- InvalidDecimalError         (also ValueError)
    |   +-- DecimalDivisionByZeroError  (also ZeroDivisionError)
    |
    +-- RecordError
    |   +-- MalformedRecordError
    |   +-- RecordEncodingError
    |   +-- RecordLayoutError
    |
    +-- ItemError
    |   +-- ConstraintViolationError
    |   +-- TransientIOError
    |
    +-- JobError
    |   +-- JobNotRegisteredError
    |   +-- InvalidJobParametersError
    |   +-- JobInstanceAlreadyExistsError
    |   +-- JobInstanceAlreadyCompleteError
    |   +-- JobRestartRequiredError
    |   +-- NoRestartableExecutionError
    |   +-- JobExecutionNotFoundError
    |   +-- InvalidStateTransitionError
    |
    +-- ConcurrencyError
    |   +-- ConcurrentExecutionError
    |
    +-- StepError
    |   +-- SkipLimitExceededError
    |   +-- RetryLimitExceededError
    |
    +-- ReportError
    |   +-- ReportLayoutError
    |
    +-- ConfigError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category     | Code                          | Default fault classification
-------------|-------------------------------|------------------------------
Decimal      | DECIMAL_OVERFLOW              | always fatal
             | INVALID_DECIMAL               | skippable (bad input)
             | DECIMAL_DIVISION_BY_ZERO      | fatal
-------------|-------------------------------|------------------------------
Record       | MALFORMED_RECORD              | skippable
             | RECORD_ENCODING_ERROR         | fatal
             | RECORD_LAYOUT_ERROR           | fatal (programming error)
-------------|-------------------------------|------------------------------
Item         | CONSTRAINT_VIOLATION          | skippable
             | TRANSIENT_IO                  | retryable
-------------|-------------------------------|------------------------------
Job          | JOB_NOT_REGISTERED ...        | raised at launch, never per item
Concurrency  | CONCURRENT_EXECUTION          | fatal at launch
Step         | SKIP_LIMIT_EXCEEDED           | fatal
             | RETRY_LIMIT_EXCEEDED          | fatal

===============================================================================
"""

from __future__ import annotations


class BatchKernelError(Exception):
    """
    Base exception for all card batch errors.

    All subclasses must have a ``code`` class attribute for machine-readable
    error identification.
    """

    code: str = "BATCH_KERNEL_ERROR"


# Decimal exceptions


class DecimalError(BatchKernelError):
    """Base exception for fixed-point arithmetic errors."""

    code: str = "DECIMAL_ERROR"


class DecimalOverflowError(DecimalError, OverflowError):
    """
    Result does not fit the receiving field.

    Always fatal: silently truncating high-order digits would corrupt money.
    """

    code: str = "DECIMAL_OVERFLOW"

    def __init__(self, value: str, max_integer_digits: int, scale: int):
        self.value = value
        self.max_integer_digits = max_integer_digits
        self.scale = scale
        super().__init__(
            f"Value {value} exceeds field capacity "
            f"S9({max_integer_digits})V9({scale})"
        )


class InvalidDecimalError(DecimalError, ValueError):
    """Text or Decimal input cannot be represented at the declared scale."""

    code: str = "INVALID_DECIMAL"

    def __init__(self, value: str, reason: str):
        self.value = value
        self.reason = reason
        super().__init__(f"Invalid decimal {value!r}: {reason}")


class DecimalDivisionByZeroError(DecimalError, ZeroDivisionError):
    """Division by a zero-valued FixedDecimal."""

    code: str = "DECIMAL_DIVISION_BY_ZERO"

    def __init__(self, dividend: str):
        self.dividend = dividend
        super().__init__(f"Division of {dividend} by zero")


# Record exceptions


class RecordError(BatchKernelError):
    """Base exception for fixed-width record errors."""

    code: str = "RECORD_ERROR"


class MalformedRecordError(RecordError):
    """
    A fixed-width line failed to decode.

    Carries the layout, the first offending field and its byte offset.
    The raw bytes are deliberately NOT part of the message.
    """

    code: str = "MALFORMED_RECORD"

    def __init__(
        self,
        layout_name: str,
        field_name: str | None,
        offset: int | None,
        reason: str,
    ):
        self.layout_name = layout_name
        self.field_name = field_name
        self.offset = offset
        self.reason = reason
        if field_name is None:
            super().__init__(f"Malformed {layout_name} record: {reason}")
        else:
            super().__init__(
                f"Malformed {layout_name} record: field {field_name} "
                f"at offset {offset}: {reason}"
            )


class RecordEncodingError(RecordError):
    """A typed value cannot be written into its fixed-width field."""

    code: str = "RECORD_ENCODING_ERROR"

    def __init__(self, layout_name: str, field_name: str, reason: str):
        self.layout_name = layout_name
        self.field_name = field_name
        self.reason = reason
        super().__init__(
            f"Cannot encode {layout_name}.{field_name}: {reason}"
        )


class RecordLayoutError(RecordError):
    """A layout specification is inconsistent (gaps, overlaps, bad lengths)."""

    code: str = "RECORD_LAYOUT_ERROR"

    def __init__(self, layout_name: str, reason: str):
        self.layout_name = layout_name
        self.reason = reason
        super().__init__(f"Invalid layout {layout_name}: {reason}")


# Item exceptions


class ItemError(BatchKernelError):
    """Base exception for per-item processing failures."""

    code: str = "ITEM_ERROR"


class ConstraintViolationError(ItemError):
    """
    A record is well-formed but violates a business rule.

    ``reason_code`` is the numeric rejection reason of the posting rules
    (100 invalid card, 101 account not found, 102 over limit, 103 expired,
    104 customer not found).
    """

    code: str = "CONSTRAINT_VIOLATION"

    def __init__(self, item_key: str, reason_code: int, description: str):
        self.item_key = item_key
        self.reason_code = reason_code
        self.description = description
        super().__init__(f"Item {item_key} rejected ({reason_code}): {description}")


class TransientIOError(ItemError):
    """A retryable I/O failure (lock timeout, dropped connection)."""

    code: str = "TRANSIENT_IO"

    def __init__(self, operation: str, reason: str):
        self.operation = operation
        self.reason = reason
        super().__init__(f"Transient I/O failure during {operation}: {reason}")


# Job exceptions


class JobError(BatchKernelError):
    """Base exception for job launch and lifecycle errors."""

    code: str = "JOB_ERROR"


class JobNotRegisteredError(JobError):
    """No job definition is registered under the requested name."""

    code: str = "JOB_NOT_REGISTERED"

    def __init__(self, job_name: str, available: tuple[str, ...] = ()):
        self.job_name = job_name
        self.available = available
        super().__init__(
            f"Job '{job_name}' is not registered. Available: {list(available)}"
        )


class InvalidJobParametersError(JobError):
    """Launch parameters are missing, mistyped, or of an unsupported type."""

    code: str = "INVALID_JOB_PARAMETERS"

    def __init__(self, job_name: str, errors: list[str]):
        self.job_name = job_name
        self.errors = errors
        super().__init__(
            f"Invalid parameters for job '{job_name}': {'; '.join(errors)}"
        )


class JobInstanceAlreadyExistsError(JobError):
    """A JobInstance with the same name and parameters already exists."""

    code: str = "JOB_INSTANCE_ALREADY_EXISTS"

    def __init__(self, job_name: str, job_key: str):
        self.job_name = job_name
        self.job_key = job_key
        super().__init__(f"Job instance already exists: {job_name} [{job_key[:12]}]")


class JobInstanceAlreadyCompleteError(JobError):
    """The instance already has a COMPLETED execution; it will not run again."""

    code: str = "JOB_INSTANCE_ALREADY_COMPLETE"

    def __init__(self, job_name: str, instance_id: str):
        self.job_name = job_name
        self.instance_id = instance_id
        super().__init__(
            f"Job instance {instance_id} of '{job_name}' is already complete"
        )


class JobRestartRequiredError(JobError):
    """The instance's last execution failed or stopped; use restart instead."""

    code: str = "JOB_RESTART_REQUIRED"

    def __init__(self, job_name: str, execution_id: str, status: str):
        self.job_name = job_name
        self.execution_id = execution_id
        self.status = status
        super().__init__(
            f"Job '{job_name}' last execution {execution_id} is {status}; "
            f"restart it instead of launching"
        )


class NoRestartableExecutionError(JobError):
    """Restart was requested but there is no FAILED/STOPPED execution."""

    code: str = "NO_RESTARTABLE_EXECUTION"

    def __init__(self, job_name: str, reason: str):
        self.job_name = job_name
        self.reason = reason
        super().__init__(f"Cannot restart '{job_name}': {reason}")


class JobExecutionNotFoundError(JobError):
    """No JobExecution with the given id."""

    code: str = "JOB_EXECUTION_NOT_FOUND"

    def __init__(self, execution_id: str):
        self.execution_id = execution_id
        super().__init__(f"Job execution not found: {execution_id}")


class InvalidStateTransitionError(JobError):
    """A step or execution was moved along an edge its state machine forbids."""

    code: str = "INVALID_STATE_TRANSITION"

    def __init__(self, entity: str, from_state: str, to_state: str):
        self.entity = entity
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            f"Illegal {entity} transition: {from_state} -> {to_state}"
        )


# Concurrency exceptions


class ConcurrencyError(BatchKernelError):
    """Base exception for concurrency conflicts."""

    code: str = "CONCURRENCY_ERROR"


class ConcurrentExecutionError(ConcurrencyError):
    """A non-terminal execution already exists for this job instance."""

    code: str = "CONCURRENT_EXECUTION"

    def __init__(self, job_name: str, instance_id: str, execution_id: str | None = None):
        self.job_name = job_name
        self.instance_id = instance_id
        self.execution_id = execution_id
        running = f" (execution {execution_id})" if execution_id else ""
        super().__init__(
            f"Job instance {instance_id} of '{job_name}' is already running{running}"
        )


# Step exceptions


class StepError(BatchKernelError):
    """Base exception for step-level fatal conditions."""

    code: str = "STEP_ERROR"


class SkipLimitExceededError(StepError):
    """More items were skipped than the step's skip limit allows."""

    code: str = "SKIP_LIMIT_EXCEEDED"

    def __init__(self, step_name: str, skip_limit: int, item_ref: str):
        self.step_name = step_name
        self.skip_limit = skip_limit
        self.item_ref = item_ref
        super().__init__(
            f"Skip limit {skip_limit} exceeded in step '{step_name}' at {item_ref}"
        )


class RetryLimitExceededError(StepError):
    """A retryable failure persisted through every allowed attempt."""

    code: str = "RETRY_LIMIT_EXCEEDED"

    def __init__(self, step_name: str, attempts: int, cause: str):
        self.step_name = step_name
        self.attempts = attempts
        self.cause = cause
        super().__init__(
            f"Step '{step_name}' gave up after {attempts} attempts: {cause}"
        )


# Report exceptions


class ReportError(BatchKernelError):
    """Base exception for report rendering errors."""

    code: str = "REPORT_ERROR"


class ReportLayoutError(ReportError):
    """Column specifications do not fit the report line width."""

    code: str = "REPORT_LAYOUT_ERROR"

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Invalid report layout: {reason}")


# Configuration exceptions


class ConfigError(BatchKernelError):
    """Batch configuration is missing or inconsistent."""

    code: str = "CONFIG_ERROR"

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Invalid batch configuration: {reason}")

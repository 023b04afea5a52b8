"""
Pytest fixtures for the card batch test suite.

Provides:
- A file-backed SQLite database per test (metadata + domain tables)
- DeterministicClock, metadata store and orchestrator wiring
- Fixed-width file builders for the job scenarios
- Structured log capture
- Crash injection for restart scenarios

Environment Variables:
- CARDBATCH_TEST_DATABASE_URL: run the database tests against this URL
  instead of a per-test SQLite file (e.g. a disposable PostgreSQL database).
"""

import dataclasses
import json
import logging
import os
from datetime import date, datetime, timezone
from io import StringIO
from pathlib import Path

import pytest
from sqlalchemy.orm import sessionmaker

from cardbatch_config.schema import BatchSettings, FaultPolicyDef
from cardbatch_engine.orchestrator import JobOrchestrator
from cardbatch_engine.services.metadata_store import ExecutionMetadataStore
from cardbatch_engine.steps.base import (
    JobDefinition,
    JobRegistry,
    PassThroughProcessor,
    StepDefinition,
)
from cardbatch_jobs.orm import Account, CardXref
from cardbatch_kernel.codec import Record, RecordLayout, encode
from cardbatch_kernel.codec.layouts import DAILY_TRANSACTION
from cardbatch_kernel.db.base import Base
from cardbatch_kernel.db.engine import build_engine
from cardbatch_kernel.domain.clock import DeterministicClock
from cardbatch_kernel.domain.fixed_decimal import FixedDecimal
from cardbatch_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)

# Register every table on Base.metadata
import cardbatch_engine.models.metadata  # noqa: F401


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture cardbatch logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, orchestrator):
            orchestrator.launch(...)
            logs = captured_logs()
            assert any(r["message"] == "chunk_committed" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("cardbatch")
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)


def events(records: list[dict], message: str) -> list[dict]:
    return [r for r in records if r["message"] == message]


# =============================================================================
# Database
# =============================================================================


@pytest.fixture
def db_url(tmp_path: Path) -> str:
    return os.environ.get(
        "CARDBATCH_TEST_DATABASE_URL", f"sqlite:///{tmp_path / 'cardbatch.db'}",
    )


@pytest.fixture
def db_engine(db_url: str):
    engine = build_engine(db_url, io_timeout_seconds=5)
    Base.metadata.drop_all(engine)
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(bind=db_engine, expire_on_commit=False)


@pytest.fixture
def clock() -> DeterministicClock:
    return DeterministicClock(datetime(2024, 1, 15, 22, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def store(session_factory, clock) -> ExecutionMetadataStore:
    return ExecutionMetadataStore(session_factory, clock)


# =============================================================================
# Orchestrator wiring
# =============================================================================


def make_settings(
    chunk_size: int = 100,
    skip_limit: int = 10,
    retry_limit: int = 3,
    **overrides,
) -> BatchSettings:
    """Settings with one policy for every step (no per-job overrides)."""
    return BatchSettings(
        database_url="sqlite://",
        defaults=FaultPolicyDef(
            chunk_size=chunk_size, skip_limit=skip_limit, retry_limit=retry_limit,
        ),
        **overrides,
    )


@pytest.fixture
def make_orchestrator(session_factory, store, clock):
    """Factory: ``make_orchestrator(registry, settings=None, metrics=None)``."""

    def _make(registry: JobRegistry, settings: BatchSettings | None = None, metrics=None):
        return JobOrchestrator(
            store=store,
            registry=registry,
            session_factory=session_factory,
            settings=settings or make_settings(),
            clock=clock,
            metrics=metrics,
        )

    return _make


# =============================================================================
# Fixed-width files
# =============================================================================


def write_lines(path: Path, lines: list[bytes]) -> Path:
    path.write_bytes(b"".join(line + b"\n" for line in lines))
    return path


def write_records(path: Path, records: list[Record]) -> Path:
    return write_lines(path, [encode(r) for r in records])


def corrupt_field(line: bytes, layout: RecordLayout, field_name: str, fill: bytes = b"X") -> bytes:
    """Overwrite a numeric field with non-digits so it fails to decode."""
    spec = layout.field(field_name)
    return line[: spec.offset] + fill * spec.length + line[spec.end:]


# =============================================================================
# Card-account builders
# =============================================================================


def money(text: str, integer_digits: int = 9) -> FixedDecimal:
    return FixedDecimal.parse(text, 2, integer_digits)


def account_row(
    account_id: int,
    credit_limit: str = "5000.00",
    balance: str = "0.00",
    cycle_credit: str = "0.00",
    cycle_debit: str = "0.00",
    expiration_date: date | None = date(2030, 12, 31),
    group_id: str = "A",
) -> Account:
    return Account(
        account_id=account_id,
        active_status="Y",
        current_balance=money(balance, 10),
        credit_limit=money(credit_limit, 10),
        cash_credit_limit=money("0.00", 10),
        expiration_date=expiration_date,
        current_cycle_credit=money(cycle_credit, 10),
        current_cycle_debit=money(cycle_debit, 10),
        group_id=group_id,
    )


def xref_row(card_number: str, account_id: int) -> CardXref:
    return CardXref(card_number=card_number, customer_id=account_id, account_id=account_id)


def seed(session_factory, *rows) -> None:
    with session_factory() as session:
        session.add_all(rows)
        session.commit()


def daily_transaction(
    transaction_id: str,
    card_number: str,
    amount: str,
    type_code: str = "01",
    category_code: int = 1,
    origin: str = "2024-01-15 10:00:00.000000",
) -> Record:
    return Record.build(
        DAILY_TRANSACTION,
        transaction_id=transaction_id,
        type_code=type_code,
        category_code=category_code,
        source="POS TERM",
        description=f"purchase {transaction_id}",
        amount=money(amount),
        merchant_id=1,
        merchant_name="Store",
        merchant_city="Town",
        merchant_zip="12345",
        card_number=card_number,
        origin_timestamp=origin,
    )


# =============================================================================
# Crash injection for restart scenarios
# =============================================================================


class Crash:
    """Raises RuntimeError before processing the first item ``hits`` matches.

    Disarm it before restarting so the resumed step runs cleanly.
    """

    def __init__(self, hits):
        self.hits = hits
        self.armed = True


class _CrashingProcessor:
    def __init__(self, inner, crash: Crash):
        self._inner = inner
        self._crash = crash

    def process(self, item, chunk):
        if self._crash.armed and self._crash.hits(item):
            raise RuntimeError("simulated abend")
        return self._inner.process(item, chunk)

    def before_chunk(self, chunk):
        if hasattr(self._inner, "before_chunk"):
            self._inner.before_chunk(chunk)

    def after_commit(self, chunk):
        if hasattr(self._inner, "after_commit"):
            self._inner.after_commit(chunk)

    def on_chunk_error(self, chunk, exc):
        if hasattr(self._inner, "on_chunk_error"):
            self._inner.on_chunk_error(chunk, exc)


def crashing_registry(job: JobDefinition, crash: Crash) -> JobRegistry:
    """Registry holding ``job`` with its processors wrapped by ``crash``."""

    def wrap(step: StepDefinition) -> StepDefinition:
        inner_factory = step.processor_factory or (lambda scope: PassThroughProcessor())
        return dataclasses.replace(
            step,
            processor_factory=lambda scope: _CrashingProcessor(inner_factory(scope), crash),
        )

    registry = JobRegistry()
    registry.register(dataclasses.replace(job, steps=tuple(wrap(s) for s in job.steps)))
    return registry

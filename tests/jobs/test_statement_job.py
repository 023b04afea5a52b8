"""
Tests for the statement_generation job: statement content, the minimum
payment rule, skipped accounts, masking and restart.
"""

from datetime import date
from pathlib import Path

import pytest

from cardbatch_engine.domain.types import ExitCode, JobStatus
from cardbatch_jobs.orm import Customer, Transaction
from cardbatch_jobs.registry import default_job_registry
from cardbatch_jobs.statement import (
    END_MARKER,
    START_MARKER,
    STATEMENT_LAYOUT,
    minimum_payment,
    statement_generation_job,
)
from conftest import (
    Crash,
    account_row,
    crashing_registry,
    make_settings,
    money,
    seed,
    xref_row,
)

CARD_A = "4000000000000001"
CARD_B = "4000000000000011"
CARD_C = "4000000000000003"
AMOUNT_AT = STATEMENT_LAYOUT.offset_of("amount")
DETAILS_AT = STATEMENT_LAYOUT.offset_of("description")


def customer_row(customer_id: int, first: str = "ADA", last: str = "LOVELACE", **extra) -> Customer:
    return Customer(
        customer_id=customer_id,
        first_name=first,
        last_name=last,
        address_line_1=extra.pop("address_line_1", "12 ST JAMES SQ"),
        address_line_3=extra.pop("address_line_3", "LONDON"),
        state_code="NY",
        country_code="USA",
        zip_code="10001",
        fico_score=extra.pop("fico_score", 742),
        **extra,
    )


def posted(
    n: int,
    card_number: str,
    amount: str,
    description: str = "purchase",
    merchant_name: str = "",
    processed: str = "2024-01-10 09:00:00.000000",
) -> Transaction:
    return Transaction(
        transaction_id=f"{n:016d}",
        type_code="01",
        category_code=1,
        source="POS TERM",
        description=description,
        amount=money(amount),
        merchant_name=merchant_name,
        card_number=card_number,
        origin_timestamp=processed,
        processed_timestamp=processed,
    )


def run_statements(orchestrator, tmp_path, **params) -> tuple:
    output = tmp_path / "statements.txt"
    execution = orchestrator.launch(
        "statement_generation",
        {"processing_date": date(2024, 1, 15), "output_file": str(output), **params},
    )
    return execution, Path(output).read_text().splitlines()


def statements(lines: list[str]) -> list[list[str]]:
    """Lines of each statement, markers included."""
    found: list[list[str]] = []
    current: list[str] | None = None
    for line in lines:
        if line == START_MARKER:
            current = []
        if current is not None:
            current.append(line)
        if line == END_MARKER:
            found.append(current)
            current = None
    return found


def amount_of(line: str) -> str:
    return line[AMOUNT_AT:].strip()


def field(statement: list[str], label: str) -> str:
    [line] = [line for line in statement if line.startswith(f"{label:<19}:")]
    return line[21:].rstrip()


# =============================================================================
# Minimum payment
# =============================================================================


class TestMinimumPayment:
    @pytest.mark.parametrize(
        "balance, expected",
        [
            ("0.00", "0.00"),
            ("-12.50", "0.00"),
            ("10.00", "25.00"),
            ("1234.56", "25.00"),
            ("2000.00", "40.00"),
            ("5000.25", "100.01"),
        ],
    )
    def test_two_percent_with_floor(self, balance, expected):
        assert minimum_payment(money(balance, 10)).format() == expected


# =============================================================================
# Statement content
# =============================================================================


class TestStatementGeneration:
    def test_statement_per_active_account(self, tmp_path, make_orchestrator, session_factory):
        inactive = account_row(2, balance="75.00")
        inactive.active_status = "N"
        seed(
            session_factory,
            account_row(1, balance="2000.00"),
            inactive,
            account_row(3, balance="500.00"),
            xref_row(CARD_A, 1),
            xref_row("4000000000000002", 2),
            xref_row(CARD_C, 3),
            customer_row(1, middle_name="KING"),
            customer_row(2),
            customer_row(3, first="GRACE", last="HOPPER", fico_score=801),
            posted(1, CARD_A, "100.00", "purchase 1", "CORNER SHOP"),
            posted(2, CARD_A, "-40.00", "payment"),
            posted(3, CARD_A, "9.99", processed="2023-11-01 09:00:00.000000"),
        )
        orchestrator = make_orchestrator(default_job_registry())

        execution, lines = run_statements(orchestrator, tmp_path)

        assert execution.exit_code == ExitCode.COMPLETED
        assert all(len(line) == 80 for line in lines)
        assert lines[0].startswith(
            "ACCOUNT STATEMENTS  PERIOD: 2023-12-16 TO 2024-01-15  RUN DATE: 2024-01-15"
        )
        assert lines[1] == "=" * 80

        first, second = statements(lines)
        assert first[1].rstrip() == "ADA KING LOVELACE"
        assert first[2].rstrip() == "12 ST JAMES SQ"
        assert first[3].strip() == ""
        assert first[4].rstrip() == "LONDON NY USA 10001"
        assert first[6].strip() == "Basic Details"
        assert field(first, "Account ID") == "00000000001"
        assert field(first, "Current Balance") == "2000.00"
        assert field(first, "Credit Limit") == "5000.00"
        assert field(first, "FICO Score") == "742"
        assert field(first, "Card Number") == "4000********0001"

        details = [line for line in first if line.startswith("0000")]
        assert [line[:16] for line in details] == [f"{1:016d}", f"{2:016d}"]
        assert details[0][DETAILS_AT:AMOUNT_AT].rstrip() == "purchase 1 - CORNER SHOP"
        assert details[1][DETAILS_AT:AMOUNT_AT].rstrip() == "payment"
        assert [amount_of(line) for line in details] == ["100.00", "-40.00"]
        assert first[-3].startswith("Total EXP:")
        assert amount_of(first[-3]) == "60.00"
        assert first[-2].startswith("Minimum Payment:")
        assert amount_of(first[-2]) == "40.00"

        assert second[1].rstrip() == "GRACE HOPPER"
        assert field(second, "Account ID") == "00000000003"
        assert field(second, "FICO Score") == "801"
        assert amount_of(second[-3]) == "0.00"
        assert amount_of(second[-2]) == "25.00"

        assert lines[-3] == "=" * 80
        assert lines[-2].rstrip() == "STATEMENTS PRINTED: 2"
        assert lines[-1].startswith("GRAND TOTAL EXP:")
        assert amount_of(lines[-1]) == "60.00"

    def test_every_card_of_the_account_is_listed(
        self, tmp_path, make_orchestrator, session_factory,
    ):
        seed(
            session_factory,
            account_row(1, balance="10.00"),
            xref_row(CARD_A, 1),
            xref_row(CARD_B, 1),
            customer_row(1),
            posted(1, CARD_B, "5.00"),
            posted(2, CARD_A, "7.00"),
        )
        orchestrator = make_orchestrator(default_job_registry())

        _, lines = run_statements(orchestrator, tmp_path)

        [statement] = statements(lines)
        cards = [line[21:].rstrip() for line in statement if line.startswith("Card Number")]
        assert cards == ["4000********0001", "4000********0011"]
        details = [line for line in statement if line.startswith("0000")]
        assert [line[:16] for line in details] == [f"{2:016d}", f"{1:016d}"]
        assert amount_of(statement[-3]) == "12.00"
        text = "\n".join(lines)
        assert CARD_A not in text
        assert CARD_B not in text

    def test_explicit_period(self, tmp_path, make_orchestrator, session_factory):
        seed(
            session_factory,
            account_row(1),
            xref_row(CARD_A, 1),
            customer_row(1),
            posted(1, CARD_A, "1.00", processed="2024-01-01 00:00:00.000000"),
            posted(2, CARD_A, "2.00", processed="2024-01-31 23:59:59.999999"),
            posted(3, CARD_A, "4.00", processed="2024-02-01 00:00:00.000000"),
        )
        orchestrator = make_orchestrator(default_job_registry())

        _, lines = run_statements(
            orchestrator, tmp_path, start_date=date(2024, 1, 1), end_date=date(2024, 1, 31),
        )

        assert "PERIOD: 2024-01-01 TO 2024-01-31" in lines[0]
        assert amount_of(lines[-1]) == "3.00"

    def test_accounts_without_xref_or_customer_are_skipped(
        self, tmp_path, make_orchestrator, session_factory,
    ):
        seed(
            session_factory,
            account_row(1),
            account_row(4),
            account_row(5),
            xref_row(CARD_A, 1),
            xref_row("4000000000000005", 5),
            customer_row(1),
            posted(1, CARD_A, "10.00"),
        )
        orchestrator = make_orchestrator(default_job_registry())

        execution, lines = run_statements(orchestrator, tmp_path)

        assert execution.exit_code == ExitCode.COMPLETED_WITH_SKIPS
        failures = orchestrator.status(execution.execution_id).steps[0].failures
        assert [(f.item_ref, f.exception_type) for f in failures] == [
            ("4", "ConstraintViolationError"),
            ("5", "ConstraintViolationError"),
        ]
        assert "(100)" in failures[0].message
        assert "(104)" in failures[1].message
        assert len(statements(lines)) == 1
        assert lines[-2].rstrip() == "STATEMENTS PRINTED: 1"

    def test_no_accounts(self, tmp_path, make_orchestrator):
        orchestrator = make_orchestrator(default_job_registry())

        execution, lines = run_statements(orchestrator, tmp_path)

        assert execution.exit_code == ExitCode.COMPLETED
        assert len(lines) == 5
        assert lines[3].rstrip() == "STATEMENTS PRINTED: 0"
        assert amount_of(lines[4]) == "0.00"


# =============================================================================
# Restart
# =============================================================================


class TestRestart:
    def test_restarted_statements_match_uninterrupted(
        self, tmp_path, make_orchestrator, session_factory,
    ):
        rows = []
        for n in range(1, 6):
            card = f"40000000000000{n:02d}"
            rows += [
                account_row(n, balance=f"{n * 300}.00"),
                xref_row(card, n),
                customer_row(n, first=f"HOLDER{n}"),
                posted(n, card, f"{n}.50"),
                posted(10 + n, card, "-1.00", "payment"),
            ]
        seed(session_factory, *rows)
        crash = Crash(lambda account: account.account_id == 4)
        orchestrator = make_orchestrator(
            crashing_registry(statement_generation_job(), crash), make_settings(chunk_size=2),
        )
        restarted = tmp_path / "restarted.txt"
        params = {"processing_date": date(2024, 1, 15), "output_file": str(restarted)}

        first = orchestrator.launch("statement_generation", params)
        assert first.status == JobStatus.FAILED

        crash.armed = False
        second = orchestrator.restart("statement_generation", params)
        clean, lines = run_statements(orchestrator, tmp_path)

        assert second.exit_code == ExitCode.COMPLETED
        assert clean.exit_code == ExitCode.COMPLETED
        assert restarted.read_bytes() == (tmp_path / "statements.txt").read_bytes()
        assert len(statements(lines)) == 5
        assert lines[-2].rstrip() == "STATEMENTS PRINTED: 5"
        assert amount_of(lines[-1]) == "12.50"

"""
statement_generation -- one printed statement per active account.

Reads active accounts in account order.  Each statement joins the account
with its card cross references, the customer of the first card and the
transactions of those cards processed in the statement period:

    START OF STATEMENT marker
    customer name and address
    Basic Details        account id, balance, credit limit, FICO, cards
    TRANSACTION SUMMARY  one line per transaction
    Total EXP, Minimum Payment
    END OF STATEMENT marker

The minimum payment is 2% of a positive balance (round-half-up) with a
floor of 25.00; a balance of zero or below owes nothing.  Card numbers are
printed masked.  The statement count and the grand total of all statements
live in the step's running values and close the file.

Parameters:
    processing_date (date, required)
    output_file (string, required)
    start_date, end_date (date, optional; default processing_date - 30 days
    and processing_date)
"""

from __future__ import annotations

from datetime import date, timedelta
from pathlib import Path
from typing import Any

from sqlalchemy import select

from cardbatch_engine.domain.parameters import ParameterSpec, ParameterType
from cardbatch_engine.report import ColumnKind, ColumnSpec, ReportEmitter, ReportLayout
from cardbatch_engine.steps.base import ChunkContext, JobDefinition, StepDefinition, StepScope
from cardbatch_engine.steps.readers import KeysetQueryReader
from cardbatch_engine.steps.writers import ReportFileWriter
from cardbatch_jobs.common import (
    PROCESSING_DATE,
    TOTAL_INTEGER_DIGITS,
    load_total,
    store_total,
)
from cardbatch_jobs.orm import ACCOUNT_AMOUNT, Account, CardXref, Customer, Transaction
from cardbatch_jobs.posting import REASON_INVALID_CARD
from cardbatch_kernel.domain.fixed_decimal import FixedDecimal
from cardbatch_kernel.exceptions import ConstraintViolationError
from cardbatch_kernel.logging_config import get_logger
from cardbatch_kernel.utils.masking import mask_card_number

logger = get_logger("jobs.statement")

JOB_NAME = "statement_generation"

REASON_CUSTOMER_NOT_FOUND = 104

STATEMENT_PERIOD_DAYS = 30
MINIMUM_PAYMENT_RATE = FixedDecimal.parse("0.02", 2, 1)
MINIMUM_PAYMENT_FLOOR = FixedDecimal.parse("25.00", ACCOUNT_AMOUNT[1], ACCOUNT_AMOUNT[0])

LINE_WIDTH = 80
START_MARKER = f"{'*' * 31}START OF STATEMENT{'*' * 31}"
END_MARKER = f"{'*' * 32}END OF STATEMENT{'*' * 32}"
LABEL_WIDTH = 19

STATEMENT_LAYOUT = ReportLayout(
    title="ACCOUNT STATEMENTS",
    columns=(
        ColumnSpec("transaction_id", 16, heading="Tran ID"),
        ColumnSpec("description", 49, heading="Tran Details"),
        ColumnSpec("amount", 13, ColumnKind.DECIMAL, heading="Tran Amount"),
    ),
    line_width=LINE_WIDTH,
)


def statement_period(parameters: Any) -> tuple[date, date]:
    processing_date = parameters["processing_date"]
    default_start = processing_date - timedelta(days=STATEMENT_PERIOD_DAYS)
    start = parameters.get("start_date", default_start)
    end = parameters.get("end_date", processing_date)
    return start, end


def minimum_payment(balance: FixedDecimal) -> FixedDecimal:
    if balance.sign <= 0:
        return FixedDecimal.zero(ACCOUNT_AMOUNT[1], ACCOUNT_AMOUNT[0])
    return max(balance.multiply(MINIMUM_PAYMENT_RATE, scale=2), MINIMUM_PAYMENT_FLOOR)


def customer_name(customer: Customer) -> str:
    parts = (customer.first_name, customer.middle_name, customer.last_name)
    return " ".join(part.strip() for part in parts if part and part.strip())


def transaction_details(transaction: Transaction) -> str:
    parts = (transaction.description, transaction.merchant_name)
    return " - ".join(part.strip() for part in parts if part and part.strip())


class StatementProcessor:
    """Builds the statement lines of one account."""

    def __init__(self, scope: StepScope) -> None:
        self._emitter = ReportEmitter(STATEMENT_LAYOUT)
        self._start, self._end = statement_period(scope.parameters)

    def process(self, account: Account, chunk: ChunkContext) -> list[str]:
        session = chunk.session
        account_ref = f"{account.account_id:011d}"

        xrefs = session.execute(
            select(CardXref)
            .where(CardXref.account_id == account.account_id)
            .order_by(CardXref.card_number)
        ).scalars().all()
        if not xrefs:
            raise ConstraintViolationError(
                account_ref, REASON_INVALID_CARD, "no card cross reference for account",
            )
        customer = session.execute(
            select(Customer).where(Customer.customer_id == xrefs[0].customer_id)
        ).scalar_one_or_none()
        if customer is None:
            raise ConstraintViolationError(
                account_ref, REASON_CUSTOMER_NOT_FOUND, "customer record not found",
            )

        cards = [xref.card_number for xref in xrefs]
        transactions = session.execute(
            select(Transaction)
            .where(
                Transaction.card_number.in_(cards),
                Transaction.processed_timestamp >= self._start.isoformat(),
                Transaction.processed_timestamp
                < (self._end + timedelta(days=1)).isoformat(),
            )
            .order_by(Transaction.card_number, Transaction.transaction_id)
        ).scalars().all()

        emit = self._emitter
        lines = [emit.emit_text(START_MARKER)]
        lines.extend(self._address(customer))
        lines.extend(self._section("Basic Details"))
        lines.append(self._field("Account ID", account_ref))
        lines.append(self._field("Current Balance", account.current_balance.format()))
        lines.append(self._field("Credit Limit", account.credit_limit.format()))
        lines.append(self._field("FICO Score", str(customer.fico_score)))
        lines.extend(self._field("Card Number", mask_card_number(card)) for card in cards)
        lines.extend(self._section("TRANSACTION SUMMARY"))
        lines.append(
            emit.emit_text(f"{'Tran ID':<16} {'Tran Details':<49} {'Tran Amount':>13}")
        )

        total = FixedDecimal.zero(2, TOTAL_INTEGER_DIGITS)
        for transaction in transactions:
            lines.append(
                emit.emit_detail(
                    {
                        "transaction_id": transaction.transaction_id,
                        "description": transaction_details(transaction),
                        "amount": transaction.amount,
                    }
                )
            )
            total = total + transaction.amount

        lines.append(emit.emit_rule())
        lines.append(emit.emit_summary("Total EXP:", {"amount": total}))
        lines.append(
            emit.emit_summary(
                "Minimum Payment:", {"amount": minimum_payment(account.current_balance)},
            )
        )
        lines.append(emit.emit_text(END_MARKER))

        values = chunk.values
        values["statements"] = int(values.get("statements", 0)) + 1
        store_total(values, "grand_total", load_total(values, "grand_total") + total)
        logger.debug(
            "statement_built",
            extra={"account_id": account.account_id, "transactions": len(transactions)},
        )
        return lines

    def _address(self, customer: Customer) -> list[str]:
        last_line = " ".join(
            part
            for part in (
                customer.address_line_3,
                customer.state_code,
                customer.country_code,
                customer.zip_code,
            )
            if part
        )
        return [
            self._emitter.emit_text(customer_name(customer)),
            self._emitter.emit_text(customer.address_line_1),
            self._emitter.emit_text(customer.address_line_2),
            self._emitter.emit_text(last_line),
        ]

    def _section(self, title: str) -> list[str]:
        rule = self._emitter.emit_rule()
        return [rule, self._emitter.emit_text(title, centered=True), rule]

    def _field(self, label: str, value: str) -> str:
        return self._emitter.emit_text(f"{label:<{LABEL_WIDTH}}: {value}")


def statement_header(parameters: Any):
    start, end = statement_period(parameters)
    title = (
        f"{STATEMENT_LAYOUT.title}  PERIOD: {start.isoformat()} TO {end.isoformat()}"
        f"  RUN DATE: {parameters['processing_date'].isoformat()}"
    )

    def build(emitter: ReportEmitter, chunk: ChunkContext) -> list[str]:
        return [emitter.emit_text(title), emitter.emit_rule("=")]

    return build


def statement_footer(emitter: ReportEmitter, chunk: ChunkContext) -> list[str]:
    values = chunk.values
    return [
        emitter.emit_rule("="),
        emitter.emit_text(f"STATEMENTS PRINTED: {int(values.get('statements', 0))}"),
        emitter.emit_summary(
            "GRAND TOTAL EXP:", {"amount": load_total(values, "grand_total")},
        ),
    ]


def statement_generation_job() -> JobDefinition:
    def reader(scope: StepScope) -> KeysetQueryReader:
        return KeysetQueryReader(
            scope.session_factory,
            Account,
            ("account_id",),
            filters=(Account.active_status == "Y",),
        )

    def writer(scope: StepScope) -> ReportFileWriter:
        return ReportFileWriter(
            Path(str(scope.parameters["output_file"])),
            ReportEmitter(STATEMENT_LAYOUT),
            header=statement_header(scope.parameters),
            footer=statement_footer,
        )

    return JobDefinition(
        name=JOB_NAME,
        steps=(
            StepDefinition(
                name="write_statements",
                reader_factory=reader,
                processor_factory=StatementProcessor,
                writer_factory=writer,
                description="print one statement per active account",
            ),
        ),
        parameters=(
            PROCESSING_DATE,
            ParameterSpec("output_file", ParameterType.STRING),
            ParameterSpec("start_date", ParameterType.DATE, required=False),
            ParameterSpec("end_date", ParameterType.DATE, required=False),
        ),
        processing_window_minutes=60,
        description="Monthly account statements",
    )

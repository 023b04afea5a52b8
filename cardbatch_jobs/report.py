"""
transaction_report -- transaction detail report over a processed-date range.

Transactions whose processed timestamp falls in ``[start_date, end_date]``
are listed in (card number, transaction id) order, one detail line each.
Breaks:

    - card number change   ->  ACCOUNT TOTAL line for the previous card
    - every 20 detail lines ->  PAGE TOTAL line and a rule
    - end of input          ->  last ACCOUNT TOTAL, open PAGE TOTAL, GRAND TOTAL

Running totals and the break state live in the step's running values, so a
restarted step prints exactly the lines an uninterrupted run would have.
Card numbers are printed masked.

Parameters:
    processing_date (date, required)
    output_file (string, required)
    start_date, end_date (date, optional; default processing_date)
"""

from __future__ import annotations

from datetime import date, timedelta
from pathlib import Path
from typing import Any

from sqlalchemy import select

from cardbatch_engine.domain.parameters import ParameterSpec, ParameterType
from cardbatch_engine.report import (
    ColumnKind,
    ColumnSpec,
    ReportEmitter,
    ReportHeader,
    ReportLayout,
)
from cardbatch_engine.steps.base import ChunkContext, JobDefinition, StepDefinition, StepScope
from cardbatch_engine.steps.readers import KeysetQueryReader
from cardbatch_engine.steps.writers import ReportFileWriter
from cardbatch_jobs.common import PROCESSING_DATE, load_total, store_total
from cardbatch_jobs.orm import CardXref, Transaction
from cardbatch_jobs.posting import REASON_INVALID_CARD
from cardbatch_kernel.exceptions import ConstraintViolationError
from cardbatch_kernel.utils.masking import mask_card_number

JOB_NAME = "transaction_report"

REPORT_TITLE = "CARDDEMO TRANSACTION DETAIL REPORT"
PAGE_SIZE = 20

TRANSACTION_REPORT_LAYOUT = ReportLayout(
    title=REPORT_TITLE,
    columns=(
        ColumnSpec("transaction_id", 16, heading="TRANSACTION ID"),
        ColumnSpec("account_id", 11, heading="ACCOUNT ID"),
        ColumnSpec("card_number", 16, heading="CARD NUMBER"),
        ColumnSpec("type_code", 4, heading="TYPE"),
        ColumnSpec("category_code", 8, ColumnKind.INT, heading="CATEGORY"),
        ColumnSpec("source", 10, heading="SOURCE"),
        ColumnSpec("description", 40, heading="DESCRIPTION"),
        ColumnSpec("amount", 16, ColumnKind.DECIMAL, heading="AMOUNT"),
    ),
)


def report_period(parameters: Any) -> tuple[date, date]:
    processing_date = parameters["processing_date"]
    start = parameters.get("start_date", processing_date)
    end = parameters.get("end_date", processing_date)
    return start, end


class TransactionReportProcessor:
    """Turns each transaction into its report lines, including break lines."""

    def __init__(self, scope: StepScope) -> None:
        self._emitter = ReportEmitter(TRANSACTION_REPORT_LAYOUT)

    def process(self, transaction: Transaction, chunk: ChunkContext) -> list[str]:
        values = chunk.values
        xref = chunk.session.execute(
            select(CardXref).where(CardXref.card_number == transaction.card_number)
        ).scalar_one_or_none()
        if xref is None:
            raise ConstraintViolationError(
                transaction.transaction_id, REASON_INVALID_CARD, "invalid card number found",
            )

        lines: list[str] = []
        previous_card = values.get("card_number")
        if previous_card is not None and previous_card != transaction.card_number:
            lines.append(self._account_total(values))

        lines.append(
            self._emitter.emit_detail(
                {
                    "transaction_id": transaction.transaction_id,
                    "account_id": f"{xref.account_id:011d}",
                    "card_number": mask_card_number(transaction.card_number),
                    "type_code": transaction.type_code,
                    "category_code": transaction.category_code,
                    "source": transaction.source,
                    "description": transaction.description,
                    "amount": transaction.amount,
                }
            )
        )
        values["card_number"] = transaction.card_number
        for name in ("account_total", "page_total", "grand_total"):
            store_total(values, name, load_total(values, name) + transaction.amount)

        values["detail_lines"] = int(values.get("detail_lines", 0)) + 1
        if values["detail_lines"] % PAGE_SIZE == 0:
            lines.extend(self._page_total(values))
        return lines

    def _account_total(self, values: dict[str, Any]) -> str:
        line = self._emitter.emit_summary(
            "ACCOUNT TOTAL", {"amount": load_total(values, "account_total")},
        )
        values.pop("account_total", None)
        return line

    def _page_total(self, values: dict[str, Any]) -> list[str]:
        line = self._emitter.emit_summary(
            "PAGE TOTAL", {"amount": load_total(values, "page_total")},
        )
        values.pop("page_total", None)
        return [line, self._emitter.emit_rule()]


def report_header(parameters: Any):
    start, end = report_period(parameters)
    header = ReportHeader(
        start_date=start,
        end_date=end,
        run_label=f"RUN DATE: {parameters['processing_date'].isoformat()}",
    )

    def build(emitter: ReportEmitter, chunk: ChunkContext) -> list[str]:
        return emitter.emit_header(header)

    return build


def report_footer(emitter: ReportEmitter, chunk: ChunkContext) -> list[str]:
    """Closing break lines of the report."""
    values = chunk.values
    lines: list[str] = []
    if values.get("card_number") is not None:
        lines.append(
            emitter.emit_summary(
                "ACCOUNT TOTAL", {"amount": load_total(values, "account_total")},
            )
        )
    if int(values.get("detail_lines", 0)) % PAGE_SIZE:
        lines.append(
            emitter.emit_summary("PAGE TOTAL", {"amount": load_total(values, "page_total")})
        )
    lines.append(emitter.emit_rule("="))
    lines.append(
        emitter.emit_summary("GRAND TOTAL", {"amount": load_total(values, "grand_total")})
    )
    return lines


def transaction_report_job() -> JobDefinition:
    def reader(scope: StepScope) -> KeysetQueryReader:
        start, end = report_period(scope.parameters)
        return KeysetQueryReader(
            scope.session_factory,
            Transaction,
            ("card_number", "transaction_id"),
            filters=(
                Transaction.processed_timestamp >= start.isoformat(),
                Transaction.processed_timestamp < (end + timedelta(days=1)).isoformat(),
            ),
            ref=lambda transaction: transaction.transaction_id,
        )

    def writer(scope: StepScope) -> ReportFileWriter:
        return ReportFileWriter(
            Path(str(scope.parameters["output_file"])),
            ReportEmitter(TRANSACTION_REPORT_LAYOUT),
            header=report_header(scope.parameters),
            footer=report_footer,
        )

    return JobDefinition(
        name=JOB_NAME,
        steps=(
            StepDefinition(
                name="write_report",
                reader_factory=reader,
                processor_factory=TransactionReportProcessor,
                writer_factory=writer,
                description="print transaction detail lines with account and page totals",
            ),
        ),
        parameters=(
            PROCESSING_DATE,
            ParameterSpec("output_file", ParameterType.STRING),
            ParameterSpec("start_date", ParameterType.DATE, required=False),
            ParameterSpec("end_date", ParameterType.DATE, required=False),
        ),
        processing_window_minutes=30,
        description="Transaction detail report",
    )

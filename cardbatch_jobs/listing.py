"""
card_listing, xref_listing, customer_listing -- master file listings.

Each job prints one detail line per row of a master table in natural-key
order, framed by the report header and a record count.  Card numbers are
printed masked; CVV codes and customer SSNs are never printed.

Parameters:
    processing_date (date, required)
    output_file (string, required)
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Callable

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
from cardbatch_jobs.common import PROCESSING_DATE
from cardbatch_jobs.orm import Card, CardXref, Customer
from cardbatch_kernel.utils.masking import mask_card_number

CARD_LISTING_LAYOUT = ReportLayout(
    title="CARDDEMO CARD LISTING",
    columns=(
        ColumnSpec("card_number", 16, heading="CARD NUMBER"),
        ColumnSpec("account_id", 11, heading="ACCOUNT ID"),
        ColumnSpec("embossed_name", 50, heading="EMBOSSED NAME"),
        ColumnSpec("expiration_date", 10, ColumnKind.DATE, heading="EXPIRES"),
        ColumnSpec("active_status", 6, heading="STATUS"),
    ),
)

XREF_LISTING_LAYOUT = ReportLayout(
    title="CARDDEMO CARD CROSS REFERENCE LISTING",
    columns=(
        ColumnSpec("card_number", 16, heading="CARD NUMBER"),
        ColumnSpec("customer_id", 9, heading="CUST ID"),
        ColumnSpec("account_id", 11, heading="ACCOUNT ID"),
    ),
)

CUSTOMER_LISTING_LAYOUT = ReportLayout(
    title="CARDDEMO CUSTOMER LISTING",
    columns=(
        ColumnSpec("customer_id", 9, heading="CUST ID"),
        ColumnSpec("first_name", 20, heading="FIRST NAME"),
        ColumnSpec("last_name", 20, heading="LAST NAME"),
        ColumnSpec("date_of_birth", 10, ColumnKind.DATE, heading="BIRTH DATE"),
        ColumnSpec("fico_score", 4, ColumnKind.INT, heading="FICO"),
        ColumnSpec("phone_number", 15, heading="PHONE"),
        ColumnSpec("address", 35, heading="ADDRESS"),
        ColumnSpec("state_code", 2, heading="ST"),
        ColumnSpec("zip_code", 10, heading="ZIP"),
    ),
)


def card_detail(card: Card) -> dict[str, Any]:
    return {
        "card_number": mask_card_number(card.card_number),
        "account_id": f"{card.account_id:011d}",
        "embossed_name": card.embossed_name,
        "expiration_date": card.expiration_date,
        "active_status": card.active_status,
    }


def xref_detail(xref: CardXref) -> dict[str, Any]:
    return {
        "card_number": mask_card_number(xref.card_number),
        "customer_id": f"{xref.customer_id:09d}",
        "account_id": f"{xref.account_id:011d}",
    }


def customer_detail(customer: Customer) -> dict[str, Any]:
    return {
        "customer_id": f"{customer.customer_id:09d}",
        "first_name": customer.first_name,
        "last_name": customer.last_name,
        "date_of_birth": customer.date_of_birth,
        "fico_score": customer.fico_score,
        "phone_number": customer.phone_number_1,
        "address": customer.address_line_1,
        "state_code": customer.state_code,
        "zip_code": customer.zip_code,
    }


class ListingProcessor:
    """One detail line per row; counts the rows in the running values."""

    def __init__(self, layout: ReportLayout, to_detail: Callable[[Any], dict[str, Any]]) -> None:
        self._emitter = ReportEmitter(layout)
        self._to_detail = to_detail

    def process(self, row: Any, chunk: ChunkContext) -> str:
        chunk.values["records"] = int(chunk.values.get("records", 0)) + 1
        return self._emitter.emit_detail(self._to_detail(row))


def listing_footer(emitter: ReportEmitter, chunk: ChunkContext) -> list[str]:
    return [
        emitter.emit_rule("="),
        emitter.emit_text(f"TOTAL RECORDS: {int(chunk.values.get('records', 0))}"),
    ]


def listing_job(
    name: str,
    layout: ReportLayout,
    model: type,
    key_columns: tuple[str, ...],
    to_detail: Callable[[Any], dict[str, Any]],
    description: str,
) -> JobDefinition:
    def reader(scope: StepScope) -> KeysetQueryReader:
        return KeysetQueryReader(scope.session_factory, model, key_columns)

    def processor(scope: StepScope) -> ListingProcessor:
        return ListingProcessor(layout, to_detail)

    def writer(scope: StepScope) -> ReportFileWriter:
        processing_date = scope.parameters["processing_date"]
        header = ReportHeader(start_date=processing_date, end_date=processing_date)

        def build_header(emitter: ReportEmitter, chunk: ChunkContext) -> list[str]:
            return emitter.emit_header(header)

        return ReportFileWriter(
            Path(str(scope.parameters["output_file"])),
            ReportEmitter(layout),
            header=build_header,
            footer=listing_footer,
        )

    return JobDefinition(
        name=name,
        steps=(
            StepDefinition(
                name="write_listing",
                reader_factory=reader,
                processor_factory=processor,
                writer_factory=writer,
                description=f"list {model.__tablename__}",
            ),
        ),
        parameters=(PROCESSING_DATE, ParameterSpec("output_file", ParameterType.STRING)),
        processing_window_minutes=30,
        description=description,
    )


def card_listing_job() -> JobDefinition:
    return listing_job(
        "card_listing", CARD_LISTING_LAYOUT, Card, ("card_number",), card_detail,
        "Card master listing",
    )


def xref_listing_job() -> JobDefinition:
    return listing_job(
        "xref_listing", XREF_LISTING_LAYOUT, CardXref, ("card_number",), xref_detail,
        "Card cross reference listing",
    )


def customer_listing_job() -> JobDefinition:
    return listing_job(
        "customer_listing", CUSTOMER_LISTING_LAYOUT, Customer, ("customer_id",),
        customer_detail, "Customer master listing",
    )

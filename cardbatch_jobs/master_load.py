"""
master_load -- load the master files into the domain tables.

Steps (in order): accounts, cards, card cross references, customers,
disclosure groups, category balances.  Each step reads one fixed-width
master file and upserts its records by natural key, so a replayed chunk
never duplicates a row.  A file parameter that is not supplied makes its
step a no-op.

Parameters:
    processing_date (date, required)
    accounts_file, cards_file, xref_file, customer_file, disclosure_file,
    category_balance_file (string, optional)

Customer SSN and government id fields are never stored.
"""

from __future__ import annotations

from typing import Any, Callable

from cardbatch_engine.domain.parameters import ParameterSpec, ParameterType
from cardbatch_engine.steps.base import JobDefinition, StepDefinition, StepScope
from cardbatch_engine.steps.writers import UpsertWriter
from cardbatch_jobs.common import PROCESSING_DATE, file_reader_factory, record_row
from cardbatch_jobs.orm import (
    Account,
    Card,
    CardXref,
    CategoryBalance,
    Customer,
    DisclosureGroup,
)
from cardbatch_kernel.codec import Record, RecordLayout
from cardbatch_kernel.codec.layouts import (
    ACCOUNT,
    CARD,
    CARD_XREF,
    CATEGORY_BALANCE,
    CUSTOMER,
    DISCLOSURE_GROUP,
)

JOB_NAME = "master_load"

CUSTOMER_PRIVATE_FIELDS = ("filler", "ssn", "government_issued_id")


def _upsert_step(
    name: str,
    parameter: str,
    layout: RecordLayout,
    model: type,
    to_row: Callable[[Record], dict[str, Any]] = record_row,
) -> StepDefinition:
    def writer(scope: StepScope) -> UpsertWriter:
        return UpsertWriter(model, layout.key_fields, to_row)

    return StepDefinition(
        name=name,
        reader_factory=file_reader_factory(parameter, layout),
        writer_factory=writer,
        description=f"upsert {layout.name} records into {model.__tablename__}",
    )


def master_load_job() -> JobDefinition:
    return JobDefinition(
        name=JOB_NAME,
        steps=(
            _upsert_step("load_accounts", "accounts_file", ACCOUNT, Account),
            _upsert_step("load_cards", "cards_file", CARD, Card),
            _upsert_step("load_card_xrefs", "xref_file", CARD_XREF, CardXref),
            _upsert_step(
                "load_customers",
                "customer_file",
                CUSTOMER,
                Customer,
                lambda record: record_row(record, exclude=CUSTOMER_PRIVATE_FIELDS),
            ),
            _upsert_step(
                "load_disclosure_groups", "disclosure_file", DISCLOSURE_GROUP, DisclosureGroup,
            ),
            _upsert_step(
                "load_category_balances",
                "category_balance_file",
                CATEGORY_BALANCE,
                CategoryBalance,
            ),
        ),
        parameters=(
            PROCESSING_DATE,
            ParameterSpec("accounts_file", ParameterType.STRING, required=False),
            ParameterSpec("cards_file", ParameterType.STRING, required=False),
            ParameterSpec("xref_file", ParameterType.STRING, required=False),
            ParameterSpec("customer_file", ParameterType.STRING, required=False),
            ParameterSpec("disclosure_file", ParameterType.STRING, required=False),
            ParameterSpec("category_balance_file", ParameterType.STRING, required=False),
        ),
        processing_window_minutes=30,
        description="Load account, card, xref, customer, disclosure and balance master files",
    )

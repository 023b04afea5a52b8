"""Helpers shared by the card-account jobs."""

from __future__ import annotations

from datetime import date, datetime
from pathlib import Path
from typing import Any

from cardbatch_engine.domain.parameters import ParameterSpec, ParameterType
from cardbatch_engine.steps.base import ItemReader, StepScope
from cardbatch_engine.steps.readers import EmptyReader, FixedWidthFileReader
from cardbatch_kernel.codec import Record, RecordLayout
from cardbatch_kernel.domain.fixed_decimal import FixedDecimal

PROCESSING_DATE = ParameterSpec("processing_date", ParameterType.DATE)

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S.%f"

# Running totals are kept as canonical strings in the ExecutionContext
TOTAL_INTEGER_DIGITS = 13


def format_timestamp(moment: datetime) -> str:
    """26-character ``YYYY-MM-DD HH:MM:SS.ffffff`` timestamp of the layouts."""
    return moment.strftime(TIMESTAMP_FORMAT)


def timestamp_date(text: str) -> date:
    """Date part of a layout timestamp; ValueError when it is not a date."""
    return date.fromisoformat(text[:10])


def load_total(values: dict[str, Any], name: str) -> FixedDecimal:
    text = values.get(name)
    if text is None:
        return FixedDecimal.zero(2, TOTAL_INTEGER_DIGITS)
    return FixedDecimal.parse(text, 2, TOTAL_INTEGER_DIGITS)


def store_total(values: dict[str, Any], name: str, amount: FixedDecimal) -> None:
    values[name] = amount.format()


def file_reader_factory(parameter: str, layout: RecordLayout):
    """Reader factory for a file named by a job parameter.

    An absent parameter means the input is optional and empty.
    """

    def build(scope: StepScope) -> ItemReader:
        path = scope.parameters.get(parameter)
        if not path:
            return EmptyReader()
        return FixedWidthFileReader(Path(str(path)), layout)

    return build


def record_row(record: Record, *, exclude: tuple[str, ...] = ("filler",)) -> dict[str, Any]:
    """Column values of a decoded record, without filler."""
    return {name: value for name, value in record.items() if name not in exclude}

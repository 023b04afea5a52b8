"""Fixed-width report formatting."""

from cardbatch_engine.report.emitter import (
    Align,
    ColumnKind,
    ColumnSpec,
    Overflow,
    ReportEmitter,
    ReportHeader,
    ReportLayout,
)

__all__ = [
    "Align",
    "ColumnKind",
    "ColumnSpec",
    "Overflow",
    "ReportEmitter",
    "ReportHeader",
    "ReportLayout",
]

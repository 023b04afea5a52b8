"""
ReportEmitter -- pure fixed-width report line formatting.

Contract:
    Given a ``ReportLayout`` (title, columns, line width) the emitter turns a
    header, detail rows and summary rows into lines of exactly
    ``line_width`` characters.  No I/O; writers decide where lines go.

Invariants enforced:
    - Every emitted line has exactly ``line_width`` characters.
    - Text overflow truncates; numeric overflow fills the cell with ``*``
      (a truncated amount would print a wrong number).
    - Decimals are rendered through ``FixedDecimal.format`` only.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Any

from cardbatch_kernel.domain.fixed_decimal import FixedDecimal
from cardbatch_kernel.exceptions import ReportLayoutError

DEFAULT_LINE_WIDTH = 133


class ColumnKind(str, Enum):
    TEXT = "text"
    DECIMAL = "decimal"
    INT = "int"
    DATE = "date"


class Align(str, Enum):
    LEFT = "left"
    RIGHT = "right"


class Overflow(str, Enum):
    TRUNCATE = "truncate"
    FILL = "fill"


@dataclass(frozen=True)
class ColumnSpec:
    """One report column.  ``align``/``overflow`` default by kind."""

    name: str
    width: int
    kind: ColumnKind = ColumnKind.TEXT
    align: Align | None = None
    scale: int = 2
    overflow: Overflow | None = None
    heading: str | None = None

    def __post_init__(self) -> None:
        if self.width <= 0:
            raise ReportLayoutError(f"column {self.name}: width must be positive")
        if self.kind != ColumnKind.TEXT and self.overflow == Overflow.TRUNCATE:
            raise ReportLayoutError(f"column {self.name}: numbers cannot be truncated")

    @property
    def effective_align(self) -> Align:
        if self.align is not None:
            return self.align
        if self.kind in (ColumnKind.DECIMAL, ColumnKind.INT):
            return Align.RIGHT
        return Align.LEFT

    @property
    def effective_overflow(self) -> Overflow:
        if self.overflow is not None:
            return self.overflow
        return Overflow.TRUNCATE if self.kind == ColumnKind.TEXT else Overflow.FILL


@dataclass(frozen=True)
class ReportLayout:
    title: str
    columns: tuple[ColumnSpec, ...]
    line_width: int = DEFAULT_LINE_WIDTH
    separator: str = " "

    def __post_init__(self) -> None:
        if not self.columns:
            raise ReportLayoutError("a report needs at least one column")
        used = sum(c.width for c in self.columns) + len(self.separator) * (len(self.columns) - 1)
        if used > self.line_width:
            raise ReportLayoutError(
                f"columns need {used} characters, line width is {self.line_width}"
            )
        names = [c.name for c in self.columns]
        if len(set(names)) != len(names):
            raise ReportLayoutError("duplicate column names")

    def offset_of(self, name: str) -> int:
        offset = 0
        for column in self.columns:
            if column.name == name:
                return offset
            offset += column.width + len(self.separator)
        raise ReportLayoutError(f"unknown column {name}")


@dataclass(frozen=True)
class ReportHeader:
    """Run information printed in the title line."""

    start_date: date
    end_date: date
    run_label: str = ""


class ReportEmitter:
    """Formats report lines for one ReportLayout."""

    def __init__(self, layout: ReportLayout) -> None:
        self._layout = layout

    @property
    def layout(self) -> ReportLayout:
        return self._layout

    @property
    def line_width(self) -> int:
        return self._layout.line_width

    def emit_header(self, header: ReportHeader) -> list[str]:
        """Title line, column headings and a rule line."""
        title = (
            f"{self._layout.title}  "
            f"DATE RANGE: {header.start_date.isoformat()} TO {header.end_date.isoformat()}"
        )
        if header.run_label:
            title = f"{title}  {header.run_label}"
        headings = self._layout.separator.join(
            self._fit_text(
                column.heading if column.heading is not None else column.name.upper(),
                column.width,
                column.effective_align,
            )
            for column in self._layout.columns
        )
        return [
            self._pad(title),
            self._pad(headings),
            "-" * self.line_width,
        ]

    def emit_detail(self, record: Mapping[str, Any]) -> str:
        cells = [
            self._render(column, record.get(column.name)) for column in self._layout.columns
        ]
        return self._pad(self._layout.separator.join(cells))

    def emit_summary(self, label: str, values: Mapping[str, Any]) -> str:
        """Label at the left, each value under its own column.

        The label is truncated so it never overwrites the first value column.
        """
        cells = [
            self._render(column, values[column.name])
            if column.name in values
            else " " * column.width
            for column in self._layout.columns
        ]
        line = self._pad(self._layout.separator.join(cells))
        value_offsets = [self._layout.offset_of(name) for name in values]
        room = min(value_offsets) - 1 if value_offsets else self.line_width
        label = label[: max(room, 0)]
        return label + line[len(label):]

    def emit_text(self, text: str, centered: bool = False) -> str:
        """Free text line, truncated to the line width."""
        text = text[: self.line_width]
        if centered:
            return text.center(self.line_width)
        return text.ljust(self.line_width)

    def emit_rule(self, char: str = "-") -> str:
        return char * self.line_width

    def emit_blank(self) -> str:
        return " " * self.line_width

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    def _pad(self, text: str) -> str:
        return text[: self.line_width].ljust(self.line_width)

    def _render(self, column: ColumnSpec, value: Any) -> str:
        text = self._to_text(column, value)
        if len(text) > column.width:
            if column.effective_overflow == Overflow.FILL:
                return "*" * column.width
            return text[: column.width]
        return self._fit_text(text, column.width, column.effective_align)

    @staticmethod
    def _fit_text(text: str, width: int, align: Align) -> str:
        text = text[:width]
        return text.rjust(width) if align == Align.RIGHT else text.ljust(width)

    @staticmethod
    def _to_text(column: ColumnSpec, value: Any) -> str:
        if value is None:
            return ""
        if column.kind == ColumnKind.DECIMAL:
            if not isinstance(value, FixedDecimal):
                raise ReportLayoutError(
                    f"column {column.name} needs FixedDecimal, got {type(value).__name__}"
                )
            return value.format(column.scale)
        if column.kind == ColumnKind.INT:
            if isinstance(value, bool) or not isinstance(value, int):
                raise ReportLayoutError(
                    f"column {column.name} needs int, got {type(value).__name__}"
                )
            return str(value)
        if column.kind == ColumnKind.DATE:
            if not isinstance(value, date):
                raise ReportLayoutError(
                    f"column {column.name} needs date, got {type(value).__name__}"
                )
            return value.isoformat()
        return str(value)

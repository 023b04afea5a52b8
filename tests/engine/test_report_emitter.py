"""
Tests for fixed-width report line formatting.
"""

from datetime import date

import pytest

from cardbatch_engine.report.emitter import (
    Align,
    ColumnKind,
    ColumnSpec,
    Overflow,
    ReportEmitter,
    ReportHeader,
    ReportLayout,
)
from cardbatch_kernel.domain.fixed_decimal import FixedDecimal
from cardbatch_kernel.exceptions import ReportLayoutError

LAYOUT = ReportLayout(
    title="TEST REPORT",
    columns=(
        ColumnSpec("name", 8),
        ColumnSpec("count", 4, ColumnKind.INT),
        ColumnSpec("amount", 10, ColumnKind.DECIMAL),
    ),
    line_width=40,
)


@pytest.fixture
def emitter() -> ReportEmitter:
    return ReportEmitter(LAYOUT)


class TestLayout:
    def test_columns_must_fit(self):
        with pytest.raises(ReportLayoutError):
            ReportLayout("T", (ColumnSpec("a", 30), ColumnSpec("b", 30)), line_width=40)

    def test_numbers_cannot_truncate(self):
        with pytest.raises(ReportLayoutError):
            ColumnSpec("amount", 5, ColumnKind.DECIMAL, overflow=Overflow.TRUNCATE)

    def test_duplicate_columns(self):
        with pytest.raises(ReportLayoutError):
            ReportLayout("T", (ColumnSpec("a", 3), ColumnSpec("a", 3)))


class TestEmitter:
    def test_every_line_has_line_width(self, emitter):
        lines = emitter.emit_header(ReportHeader(date(2024, 1, 1), date(2024, 1, 31)))
        lines.append(emitter.emit_detail({"name": "x", "count": 1}))
        lines.append(emitter.emit_summary("TOTAL", {"amount": FixedDecimal.parse("1.00", 2, 9)}))
        lines.append(emitter.emit_rule("="))
        lines.append(emitter.emit_blank())
        assert all(len(line) == 40 for line in lines)

    def test_header(self, emitter):
        title, headings, rule = emitter.emit_header(
            ReportHeader(date(2024, 1, 1), date(2024, 1, 31), run_label="RUN 1"),
        )
        assert title.startswith("TEST REPORT  DATE RANGE: 2024-01-01 TO 2024-01-31")
        assert headings.startswith("NAME     COUN ")
        assert rule == "-" * 40

    def test_detail_alignment(self, emitter):
        line = emitter.emit_detail(
            {"name": "abc", "count": 7, "amount": FixedDecimal.parse("-12.50", 2, 9)},
        )
        assert line[:8] == "abc     "
        assert line[9:13] == "   7"
        assert line[14:24] == "    -12.50"

    def test_text_truncates(self, emitter):
        assert emitter.emit_detail({"name": "abcdefghijkl"})[:8] == "abcdefgh"

    def test_free_text_lines(self, emitter):
        assert emitter.emit_text("Account ID : 1") == "Account ID : 1".ljust(40)
        assert emitter.emit_text("x" * 50) == "x" * 40
        centered = emitter.emit_text("END", centered=True)
        assert len(centered) == 40
        assert centered.strip() == "END"
        assert centered.index("END") == 18

    def test_amount_overflow_fills_with_stars(self, emitter):
        line = emitter.emit_detail({"amount": FixedDecimal.parse("123456789.00", 2, 9)})
        assert line[14:24] == "*" * 10

    def test_decimal_column_requires_fixed_decimal(self, emitter):
        with pytest.raises(ReportLayoutError):
            emitter.emit_detail({"amount": 12})

    def test_summary_label_never_overwrites_values(self, emitter):
        line = emitter.emit_summary(
            "A VERY LONG TOTAL LABEL", {"amount": FixedDecimal.parse("5.00", 2, 9)},
        )
        assert line[14:24] == "      5.00"
        assert line.startswith("A VERY LONG T")

    def test_explicit_alignment(self):
        layout = ReportLayout("T", (ColumnSpec("code", 6, align=Align.RIGHT),), line_width=6)
        assert ReportEmitter(layout).emit_detail({"code": "ab"}) == "    ab"

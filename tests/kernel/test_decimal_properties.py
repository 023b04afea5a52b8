"""
Property tests for FixedDecimal and the zoned/packed field codecs.

Uses hypothesis to explore the full range of S9(9)V99 values.
"""

from decimal import Decimal

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from cardbatch_kernel.codec import Record, decode, encode, packed, sequential_layout, zoned
from cardbatch_kernel.domain.fixed_decimal import FixedDecimal
from cardbatch_kernel.exceptions import DecimalOverflowError

LIMIT = 10**11 - 1  # S9(9)V99

mantissas = st.integers(min_value=-LIMIT, max_value=LIMIT)


def fd(mantissa: int) -> FixedDecimal:
    return FixedDecimal(mantissa, 2, 9)


AMOUNTS = sequential_layout(
    "AMOUNTS",
    (
        zoned("zoned_amount", 11, scale=2, signed=True),
        packed("packed_amount", 6, scale=2, signed=True),
    ),
)


class TestArithmeticProperties:
    @given(mantissas, mantissas)
    def test_add_matches_integer_arithmetic_or_overflows(self, a, b):
        total = a + b
        if abs(total) > LIMIT:
            with pytest.raises(DecimalOverflowError):
                fd(a) + fd(b)
        else:
            assert (fd(a) + fd(b)).mantissa == total

    @given(mantissas, mantissas)
    def test_add_negation_is_subtract(self, a, b):
        zero = FixedDecimal.zero(2, 9)
        try:
            expected = fd(a) - fd(b)
        except DecimalOverflowError:
            return
        assert fd(a) + (zero - fd(b)) == expected

    @given(mantissas)
    def test_format_parse_round_trip(self, m):
        value = fd(m)
        assert FixedDecimal.parse(value.format(), 2, 9) == value

    @given(mantissas)
    def test_matches_decimal(self, m):
        assert fd(m).to_decimal() == Decimal(m).scaleb(-2)

    @given(mantissas, st.integers(min_value=1, max_value=10_000))
    def test_divide_half_up_matches_decimal(self, m, divisor):
        expected = (Decimal(m).scaleb(-2) / Decimal(divisor)).quantize(
            Decimal("0.01"), rounding="ROUND_HALF_UP",
        )
        assert fd(m).divide(divisor).to_decimal() == expected

    @given(mantissas, mantissas)
    def test_ordering_is_total_and_exact(self, a, b):
        assert (fd(a) < fd(b)) == (a < b)
        assert (fd(a) == fd(b)) == (a == b)


class TestFieldCodecProperties:
    @settings(max_examples=200)
    @given(mantissas)
    def test_zoned_and_packed_round_trip(self, m):
        record = Record.build(AMOUNTS, zoned_amount=fd(m), packed_amount=fd(m))
        data = encode(record)
        assert len(data) == AMOUNTS.record_length
        decoded = decode(AMOUNTS, data)
        assert decoded["zoned_amount"] == fd(m)
        assert decoded["packed_amount"] == fd(m)
        assert encode(decoded) == data

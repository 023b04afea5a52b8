"""
Tests for the fixed-width record codec and the built-in record layouts.
"""

from datetime import date

import pytest

from cardbatch_kernel.codec import (
    Record,
    alpha,
    date_field,
    decode,
    encode,
    packed,
    sequential_layout,
    zoned,
)
from cardbatch_kernel.codec.layout import FieldSpec, FieldType, RecordLayout
from cardbatch_kernel.codec.layouts import (
    ACCOUNT,
    BUILTIN_LAYOUTS,
    CARD,
    CARD_XREF,
    CATEGORY_BALANCE,
    CUSTOMER,
    DAILY_TRANSACTION,
    DISCLOSURE_GROUP,
)
from cardbatch_kernel.domain.fixed_decimal import FixedDecimal
from cardbatch_kernel.exceptions import (
    MalformedRecordError,
    RecordEncodingError,
    RecordLayoutError,
)

SAMPLE = sequential_layout(
    "SAMPLE",
    (
        alpha("code", 4),
        zoned("count", 3),
        zoned("amount", 7, scale=2, signed=True),
        packed("packed_amount", 4, scale=2),
        date_field("posted", nullable=True),
        date_field("compact", length=8),
    ),
    key_fields=("code",),
)


def sample_bytes(amount: bytes = b"001234{", packed_bytes: bytes = b"\x00\x12\x34\x5c") -> bytes:
    return b"AB  " + b"042" + amount + packed_bytes + b"2024-01-15" + b"20240131"


# =============================================================================
# Layout validation
# =============================================================================


class TestLayout:
    def test_builtin_record_lengths(self):
        assert DAILY_TRANSACTION.record_length == 350
        assert ACCOUNT.record_length == 300
        assert CARD.record_length == 150
        assert CARD_XREF.record_length == 50
        assert CATEGORY_BALANCE.record_length == 50
        assert DISCLOSURE_GROUP.record_length == 50
        assert CUSTOMER.record_length == 500
        assert set(BUILTIN_LAYOUTS) >= {"DAILY_TRANSACTION", "ACCOUNT", "CARD"}

    def test_gap_is_rejected(self):
        with pytest.raises(RecordLayoutError):
            RecordLayout(
                "BROKEN",
                (
                    FieldSpec("a", 0, 2, FieldType.ALPHANUMERIC),
                    FieldSpec("b", 3, 2, FieldType.ALPHANUMERIC),
                ),
            )

    def test_overlap_is_rejected(self):
        with pytest.raises(RecordLayoutError):
            RecordLayout(
                "BROKEN",
                (
                    FieldSpec("a", 0, 2, FieldType.ALPHANUMERIC),
                    FieldSpec("b", 1, 2, FieldType.ALPHANUMERIC),
                ),
            )

    def test_unknown_key_field_is_rejected(self):
        with pytest.raises(RecordLayoutError):
            sequential_layout("BROKEN", (alpha("a", 2),), key_fields=("missing",))

    def test_scale_larger_than_digits_is_rejected(self):
        with pytest.raises(RecordLayoutError):
            sequential_layout("BROKEN", (zoned("a", 2, scale=3),))


# =============================================================================
# Decoding
# =============================================================================


class TestDecode:
    def test_decode_typed_values(self):
        record = decode(SAMPLE, sample_bytes())
        assert record["code"] == "AB"
        assert record["count"] == 42
        assert record["amount"] == FixedDecimal.parse("123.40", 2, 5)
        assert record["packed_amount"] == FixedDecimal.parse("123.45", 2, 5)
        assert record["posted"] == date(2024, 1, 15)
        assert record["compact"] == date(2024, 1, 31)
        assert record.key_ref == "AB"

    def test_negative_overpunch(self):
        record = decode(SAMPLE, sample_bytes(amount=b"001234R"))
        assert record["amount"].format() == "-123.49"

    def test_negative_packed_sign(self):
        record = decode(SAMPLE, sample_bytes(packed_bytes=b"\x00\x12\x34\x5d"))
        assert record["packed_amount"].format() == "-123.45"

    def test_blank_nullable_date_is_none(self):
        data = sample_bytes()
        data = data[:18] + b" " * 10 + data[28:]
        assert decode(SAMPLE, data)["posted"] is None

    def test_wrong_length(self):
        with pytest.raises(MalformedRecordError) as exc_info:
            decode(SAMPLE, sample_bytes() + b"X")
        assert exc_info.value.field_name is None

    def test_non_digit_names_field_and_offset(self):
        data = sample_bytes(amount=b"00X234{")
        with pytest.raises(MalformedRecordError) as exc_info:
            decode(SAMPLE, data)
        assert exc_info.value.field_name == "amount"
        assert exc_info.value.offset == 7

    def test_error_message_never_contains_raw_bytes(self):
        data = sample_bytes(amount=b"SECRET{")
        with pytest.raises(MalformedRecordError) as exc_info:
            decode(SAMPLE, data)
        assert "SECRET" not in str(exc_info.value)

    def test_invalid_overpunch(self):
        with pytest.raises(MalformedRecordError):
            decode(SAMPLE, sample_bytes(amount=b"001234Z"))

    def test_invalid_packed_nibble(self):
        with pytest.raises(MalformedRecordError):
            decode(SAMPLE, sample_bytes(packed_bytes=b"\x00\x1a\x34\x5c"))

    def test_invalid_calendar_date(self):
        data = sample_bytes()
        data = data[:18] + b"2024-02-30" + data[28:]
        with pytest.raises(MalformedRecordError) as exc_info:
            decode(SAMPLE, data)
        assert exc_info.value.field_name == "posted"

    def test_blank_required_date(self):
        data = sample_bytes()[:-8] + b" " * 8
        with pytest.raises(MalformedRecordError):
            decode(SAMPLE, data)


# =============================================================================
# Encoding
# =============================================================================


class TestEncode:
    def test_round_trip_is_byte_exact(self):
        data = sample_bytes()
        assert encode(decode(SAMPLE, data)) == data

    def test_decode_encode_decode_is_stable(self):
        data = sample_bytes(amount=b"0012345")  # unsigned zone in sign position
        first = decode(SAMPLE, data)
        assert decode(SAMPLE, encode(first)) == first

    def test_negative_zero_normalizes(self):
        data = sample_bytes(amount=b"000000}")
        assert encode(decode(SAMPLE, data))[7:14] == b"000000{"

    def test_build_defaults_blank_fields(self):
        record = Record.build(SAMPLE, code="ZZ", compact=date(2024, 2, 1))
        data = encode(record)
        assert len(data) == SAMPLE.record_length
        assert decode(SAMPLE, data) == record

    def test_text_too_long(self):
        record = Record.build(SAMPLE, code="TOOLONG", compact=date(2024, 2, 1))
        with pytest.raises(RecordEncodingError):
            encode(record)

    def test_amount_too_wide(self):
        record = Record.build(
            SAMPLE,
            amount=FixedDecimal.parse("100000.00", 2, 9),
            compact=date(2024, 2, 1),
        )
        with pytest.raises(RecordEncodingError):
            encode(record)

    def test_excess_precision_is_not_rounded(self):
        record = Record.build(
            SAMPLE,
            amount=FixedDecimal.parse("1.005", 3, 9),
            compact=date(2024, 2, 1),
        )
        with pytest.raises(RecordEncodingError):
            encode(record)

    def test_unknown_field_rejected(self):
        with pytest.raises(RecordEncodingError):
            Record.build(SAMPLE, nope="x")

    def test_replace_returns_new_record(self):
        record = Record.build(SAMPLE, code="AA", compact=date(2024, 2, 1))
        changed = record.replace(code="BB")
        assert record["code"] == "AA"
        assert changed["code"] == "BB"

    def test_daily_transaction_round_trip(self):
        record = Record.build(
            DAILY_TRANSACTION,
            transaction_id="0000000000000001",
            type_code="01",
            category_code=1,
            source="POS TERM",
            description="Purchase",
            amount=FixedDecimal.parse("-52.10", 2, 9),
            merchant_id=123456789,
            card_number="4111111111111111",
            origin_timestamp="2024-01-15 10:00:00.000000",
        )
        data = encode(record)
        assert len(data) == 350
        assert decode(DAILY_TRANSACTION, data) == record

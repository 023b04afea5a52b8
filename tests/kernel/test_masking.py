"""Tests for card number redaction and job-key hashing."""

from datetime import date
from decimal import Decimal

from cardbatch_kernel.utils.hashing import canonicalize_json, hash_payload
from cardbatch_kernel.utils.masking import (
    MAX_MESSAGE_LENGTH,
    key_ref,
    mask_card_number,
    sanitize_message,
)


class TestMasking:
    def test_mask_card_number(self):
        assert mask_card_number("4111111111111111") == "4111********1111"

    def test_mask_short_value_fully(self):
        assert mask_card_number("1234") == "****"

    def test_sanitize_masks_embedded_numbers(self):
        text = "card 4111111111111111 not in xref"
        assert sanitize_message(text) == "card 4111********1111 not in xref"

    def test_sanitize_leaves_other_numbers(self):
        assert sanitize_message("account 00000000001") == "account 00000000001"

    def test_sanitize_truncates(self):
        result = sanitize_message("x" * 2000)
        assert len(result) == MAX_MESSAGE_LENGTH
        assert result.endswith("...")

    def test_key_ref_masks_card_number_parts_only(self):
        assert key_ref(("account_id", "card_number"), (9, "5000000000000009")) == (
            "9/5000********0009"
        )
        assert key_ref(("transaction_id",), ("0000000000000002",)) == "0000000000000002"


class TestHashing:
    def test_key_order_does_not_matter(self):
        assert hash_payload({"a": 1, "b": "x"}) == hash_payload({"b": "x", "a": 1})

    def test_typed_values_render_consistently(self):
        assert canonicalize_json(
            {"d": date(2024, 1, 15), "n": Decimal("1.50")}
        ) == '{"d":"2024-01-15","n":"1.50"}'

    def test_different_values_differ(self):
        assert hash_payload({"processing_date": "2024-01-15"}) != hash_payload(
            {"processing_date": "2024-01-16"}
        )

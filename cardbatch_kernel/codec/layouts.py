"""
Built-in record layouts of the card-account batch files.

Each layout reproduces the byte positions of the corresponding copybook:

    DAILY_TRANSACTION / TRANSACTION   350 bytes  (CVTRA05Y / CVTRA06Y)
    ACCOUNT                           300 bytes  (CVACT01Y)
    CARD                              150 bytes  (CVACT02Y)
    CARD_XREF                          50 bytes  (CVACT03Y)
    CATEGORY_BALANCE                   50 bytes  (CVTRA01Y)
    DISCLOSURE_GROUP                   50 bytes  (CVTRA02Y)
    CUSTOMER                          500 bytes  (CVCUS01Y)

Monetary fields are signed zoned decimals with two implied decimals.
"""

from __future__ import annotations

from cardbatch_kernel.codec.layout import (
    RecordLayout,
    alpha,
    date_field,
    sequential_layout,
    zoned,
)

_TRANSACTION_FIELDS = (
    alpha("transaction_id", 16),
    alpha("type_code", 2),
    zoned("category_code", 4),
    alpha("source", 10),
    alpha("description", 100),
    zoned("amount", 11, scale=2, signed=True),
    zoned("merchant_id", 9),
    alpha("merchant_name", 50),
    alpha("merchant_city", 50),
    alpha("merchant_zip", 10),
    alpha("card_number", 16),
    alpha("origin_timestamp", 26),
    alpha("processed_timestamp", 26),
    alpha("filler", 20),
)

DAILY_TRANSACTION: RecordLayout = sequential_layout(
    "DAILY_TRANSACTION", _TRANSACTION_FIELDS, key_fields=("transaction_id",)
)

TRANSACTION: RecordLayout = sequential_layout(
    "TRANSACTION", _TRANSACTION_FIELDS, key_fields=("transaction_id",)
)

ACCOUNT: RecordLayout = sequential_layout(
    "ACCOUNT",
    (
        zoned("account_id", 11),
        alpha("active_status", 1),
        zoned("current_balance", 12, scale=2, signed=True),
        zoned("credit_limit", 12, scale=2, signed=True),
        zoned("cash_credit_limit", 12, scale=2, signed=True),
        date_field("open_date", nullable=True),
        date_field("expiration_date", nullable=True),
        date_field("reissue_date", nullable=True),
        zoned("current_cycle_credit", 12, scale=2, signed=True),
        zoned("current_cycle_debit", 12, scale=2, signed=True),
        alpha("address_zip", 10),
        alpha("group_id", 10),
        alpha("filler", 178),
    ),
    key_fields=("account_id",),
)

CARD: RecordLayout = sequential_layout(
    "CARD",
    (
        alpha("card_number", 16),
        zoned("account_id", 11),
        zoned("cvv_code", 3),
        alpha("embossed_name", 50),
        date_field("expiration_date", nullable=True),
        alpha("active_status", 1),
        alpha("filler", 59),
    ),
    key_fields=("card_number",),
)

CARD_XREF: RecordLayout = sequential_layout(
    "CARD_XREF",
    (
        alpha("card_number", 16),
        zoned("customer_id", 9),
        zoned("account_id", 11),
        alpha("filler", 14),
    ),
    key_fields=("card_number",),
)

CATEGORY_BALANCE: RecordLayout = sequential_layout(
    "CATEGORY_BALANCE",
    (
        zoned("account_id", 11),
        alpha("type_code", 2),
        zoned("category_code", 4),
        zoned("balance", 11, scale=2, signed=True),
        alpha("filler", 22),
    ),
    key_fields=("account_id", "type_code", "category_code"),
)

DISCLOSURE_GROUP: RecordLayout = sequential_layout(
    "DISCLOSURE_GROUP",
    (
        alpha("group_id", 10),
        alpha("type_code", 2),
        zoned("category_code", 4),
        zoned("interest_rate", 6, scale=2, signed=True),
        alpha("filler", 28),
    ),
    key_fields=("group_id", "type_code", "category_code"),
)

CUSTOMER: RecordLayout = sequential_layout(
    "CUSTOMER",
    (
        zoned("customer_id", 9),
        alpha("first_name", 25),
        alpha("middle_name", 25),
        alpha("last_name", 25),
        alpha("address_line_1", 50),
        alpha("address_line_2", 50),
        alpha("address_line_3", 50),
        alpha("state_code", 2),
        alpha("country_code", 3),
        alpha("zip_code", 10),
        alpha("phone_number_1", 15),
        alpha("phone_number_2", 15),
        zoned("ssn", 9),
        alpha("government_issued_id", 20),
        date_field("date_of_birth", nullable=True),
        alpha("eft_account_id", 10),
        alpha("primary_card_holder", 1),
        zoned("fico_score", 3),
        alpha("filler", 168),
    ),
    key_fields=("customer_id",),
)

BUILTIN_LAYOUTS: dict[str, RecordLayout] = {
    layout.name: layout
    for layout in (
        DAILY_TRANSACTION,
        TRANSACTION,
        ACCOUNT,
        CARD,
        CARD_XREF,
        CATEGORY_BALANCE,
        DISCLOSURE_GROUP,
        CUSTOMER,
    )
}

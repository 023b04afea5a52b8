"""
ORM models for the card-account domain tables.

Contract:
    One table per master file the nightly jobs read or upsert into.  Every
    table has a UUID surrogate primary key and a UNIQUE natural key, which is
    the upsert target that makes replayed chunks idempotent.

Architecture: cardbatch_jobs.  Imports from cardbatch_kernel.db only.

Invariants enforced:
    - Monetary columns are FixedDecimalType with the copybook's field size
      (S9(10)V99 account amounts, S9(9)V99 transaction amounts and category
      balances, S9(4)V99 interest rates).
    - Transaction timestamps are kept as the 26-character text of the
      record layout so the stored value round-trips byte for byte.
"""

from __future__ import annotations

from datetime import date

from sqlalchemy import BigInteger, Date, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from cardbatch_kernel.db.base import TrackedBase
from cardbatch_kernel.db.types import FixedDecimalType
from cardbatch_kernel.domain.fixed_decimal import FixedDecimal

# Copybook field sizes (integer digits, scale)
ACCOUNT_AMOUNT = (10, 2)
TRANSACTION_AMOUNT = (9, 2)
INTEREST_RATE = (4, 2)


class Account(TrackedBase):
    """Account master record (ACCTDATA)."""

    __tablename__ = "accounts"

    __table_args__ = (
        UniqueConstraint("account_id", name="uq_accounts_account_id"),
    )

    account_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    active_status: Mapped[str] = mapped_column(String(1), nullable=False, default="Y")
    current_balance: Mapped[FixedDecimal] = mapped_column(
        FixedDecimalType(*ACCOUNT_AMOUNT), nullable=False,
    )
    credit_limit: Mapped[FixedDecimal] = mapped_column(
        FixedDecimalType(*ACCOUNT_AMOUNT), nullable=False,
    )
    cash_credit_limit: Mapped[FixedDecimal] = mapped_column(
        FixedDecimalType(*ACCOUNT_AMOUNT), nullable=False,
    )
    open_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    expiration_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    reissue_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    current_cycle_credit: Mapped[FixedDecimal] = mapped_column(
        FixedDecimalType(*ACCOUNT_AMOUNT), nullable=False,
    )
    current_cycle_debit: Mapped[FixedDecimal] = mapped_column(
        FixedDecimalType(*ACCOUNT_AMOUNT), nullable=False,
    )
    address_zip: Mapped[str] = mapped_column(String(10), nullable=False, default="")
    group_id: Mapped[str] = mapped_column(String(10), nullable=False, default="")


class Card(TrackedBase):
    """Card master record (CARDDATA)."""

    __tablename__ = "cards"

    __table_args__ = (
        UniqueConstraint("card_number", name="uq_cards_card_number"),
        Index("ix_cards_account_id", "account_id"),
    )

    card_number: Mapped[str] = mapped_column(String(16), nullable=False)
    account_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    cvv_code: Mapped[int] = mapped_column(Integer, nullable=False)
    embossed_name: Mapped[str] = mapped_column(String(50), nullable=False)
    expiration_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    active_status: Mapped[str] = mapped_column(String(1), nullable=False, default="Y")


class CardXref(TrackedBase):
    """Card -> customer/account cross reference (CARDXREF)."""

    __tablename__ = "card_xrefs"

    __table_args__ = (
        UniqueConstraint("card_number", name="uq_card_xrefs_card_number"),
        Index("ix_card_xrefs_account_id", "account_id"),
    )

    card_number: Mapped[str] = mapped_column(String(16), nullable=False)
    customer_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    account_id: Mapped[int] = mapped_column(BigInteger, nullable=False)


class Transaction(TrackedBase):
    """Posted transaction (TRANSACT)."""

    __tablename__ = "transactions"

    __table_args__ = (
        UniqueConstraint("transaction_id", name="uq_transactions_transaction_id"),
        Index("ix_transactions_card_number", "card_number"),
        Index("ix_transactions_processed_ts", "processed_timestamp"),
    )

    transaction_id: Mapped[str] = mapped_column(String(16), nullable=False)
    type_code: Mapped[str] = mapped_column(String(2), nullable=False)
    category_code: Mapped[int] = mapped_column(Integer, nullable=False)
    source: Mapped[str] = mapped_column(String(10), nullable=False, default="")
    description: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    amount: Mapped[FixedDecimal] = mapped_column(
        FixedDecimalType(*TRANSACTION_AMOUNT), nullable=False,
    )
    merchant_id: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    merchant_name: Mapped[str] = mapped_column(String(50), nullable=False, default="")
    merchant_city: Mapped[str] = mapped_column(String(50), nullable=False, default="")
    merchant_zip: Mapped[str] = mapped_column(String(10), nullable=False, default="")
    card_number: Mapped[str] = mapped_column(String(16), nullable=False)
    origin_timestamp: Mapped[str] = mapped_column(String(26), nullable=False)
    processed_timestamp: Mapped[str] = mapped_column(String(26), nullable=False)


class CategoryBalance(TrackedBase):
    """Balance per account, transaction type and category (TCATBALF)."""

    __tablename__ = "transaction_category_balances"

    __table_args__ = (
        UniqueConstraint(
            "account_id", "type_code", "category_code",
            name="uq_transaction_category_balances_key",
        ),
    )

    account_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    type_code: Mapped[str] = mapped_column(String(2), nullable=False)
    category_code: Mapped[int] = mapped_column(Integer, nullable=False)
    balance: Mapped[FixedDecimal] = mapped_column(
        FixedDecimalType(*TRANSACTION_AMOUNT), nullable=False,
    )


class DisclosureGroup(TrackedBase):
    """Interest rate per account group, type and category (DISCGRP)."""

    __tablename__ = "disclosure_groups"

    __table_args__ = (
        UniqueConstraint(
            "group_id", "type_code", "category_code",
            name="uq_disclosure_groups_key",
        ),
    )

    group_id: Mapped[str] = mapped_column(String(10), nullable=False)
    type_code: Mapped[str] = mapped_column(String(2), nullable=False)
    category_code: Mapped[int] = mapped_column(Integer, nullable=False)
    interest_rate: Mapped[FixedDecimal] = mapped_column(
        FixedDecimalType(*INTEREST_RATE), nullable=False,
    )


class Customer(TrackedBase):
    """Customer master record (CUSTDATA), without SSN and government id."""

    __tablename__ = "customers"

    __table_args__ = (
        UniqueConstraint("customer_id", name="uq_customers_customer_id"),
    )

    customer_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    first_name: Mapped[str] = mapped_column(String(25), nullable=False, default="")
    middle_name: Mapped[str] = mapped_column(String(25), nullable=False, default="")
    last_name: Mapped[str] = mapped_column(String(25), nullable=False, default="")
    address_line_1: Mapped[str] = mapped_column(String(50), nullable=False, default="")
    address_line_2: Mapped[str] = mapped_column(String(50), nullable=False, default="")
    address_line_3: Mapped[str] = mapped_column(String(50), nullable=False, default="")
    state_code: Mapped[str] = mapped_column(String(2), nullable=False, default="")
    country_code: Mapped[str] = mapped_column(String(3), nullable=False, default="")
    zip_code: Mapped[str] = mapped_column(String(10), nullable=False, default="")
    phone_number_1: Mapped[str] = mapped_column(String(15), nullable=False, default="")
    phone_number_2: Mapped[str] = mapped_column(String(15), nullable=False, default="")
    date_of_birth: Mapped[date | None] = mapped_column(Date, nullable=True)
    eft_account_id: Mapped[str] = mapped_column(String(10), nullable=False, default="")
    primary_card_holder: Mapped[str] = mapped_column(String(1), nullable=False, default="Y")
    fico_score: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

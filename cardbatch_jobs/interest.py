"""
interest_calculation -- monthly interest on transaction category balances.

Reads category balances in (account, type, category) order.  For each
balance the rate comes from the disclosure group of the account, falling
back to the ``DEFAULT`` group; a missing DEFAULT rate aborts the step.

    monthly interest = balance * rate / 1200      (round-half-up, 2 decimals)

A non-zero interest produces one system transaction (type 01, category 5)
with id ``YYYYMMDD`` of the processing date + an 8-digit sequence.  The
sequence lives in the step's running values so a restarted step continues
it.  Every account seen gets the interest added to its current balance and
its cycle credit/debit reset to zero.

Parameters:
    processing_date (date, required)
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from cardbatch_engine.steps.base import ChunkContext, JobDefinition, StepDefinition, StepScope
from cardbatch_engine.steps.readers import KeysetQueryReader
from cardbatch_jobs.common import PROCESSING_DATE, format_timestamp
from cardbatch_jobs.orm import (
    TRANSACTION_AMOUNT,
    Account,
    CardXref,
    CategoryBalance,
    DisclosureGroup,
    Transaction,
)
from cardbatch_jobs.posting import REASON_ACCOUNT_NOT_FOUND, REASON_INVALID_CARD
from cardbatch_kernel.domain.fixed_decimal import ROUND_HALF_UP, FixedDecimal
from cardbatch_kernel.exceptions import ConstraintViolationError, TransientIOError
from cardbatch_kernel.logging_config import get_logger

logger = get_logger("jobs.interest")

JOB_NAME = "interest_calculation"

DEFAULT_GROUP = "DEFAULT"
INTEREST_TYPE_CODE = "01"
INTEREST_CATEGORY_CODE = 5
INTEREST_SOURCE = "System"
MONTHS_PER_YEAR_PERCENT = 1200

# Intermediate product field, wide enough for any S9(9)V99 * S9(4)V99
_WORK_INTEGER_DIGITS = 15


def monthly_interest(balance: FixedDecimal, rate: FixedDecimal) -> FixedDecimal:
    """``balance * rate / 1200`` at two decimals, in a transaction amount field.

    Raises DecimalOverflowError when the interest does not fit S9(9)V99.
    """
    product = balance.with_field(_WORK_INTEGER_DIGITS).multiply(rate, scale=4)
    interest = product.divide(MONTHS_PER_YEAR_PERCENT, scale=2, rounding=ROUND_HALF_UP)
    return interest.with_field(TRANSACTION_AMOUNT[0])


def transaction_id_for(processing_date: date, suffix: int) -> str:
    return f"{processing_date:%Y%m%d}{suffix:08d}"


@dataclass(frozen=True)
class InterestInstruction:
    account_id: int
    interest: FixedDecimal
    transaction: dict[str, Any] | None


class InterestProcessor:
    """Looks up the rate of one category balance and computes its interest."""

    def __init__(self, scope: StepScope) -> None:
        self._clock = scope.clock
        self._processing_date: date = scope.parameters["processing_date"]

    def process(self, balance: CategoryBalance, chunk: ChunkContext) -> InterestInstruction:
        session = chunk.session
        account_ref = f"{balance.account_id:011d}"

        account = session.execute(
            select(Account).where(Account.account_id == balance.account_id)
        ).scalar_one_or_none()
        if account is None:
            raise ConstraintViolationError(
                account_ref, REASON_ACCOUNT_NOT_FOUND, "account record not found",
            )

        rate = self._rate(session, account.group_id, balance)
        zero = FixedDecimal.zero(TRANSACTION_AMOUNT[1], TRANSACTION_AMOUNT[0])
        if rate.is_zero:
            return InterestInstruction(balance.account_id, zero, None)

        interest = monthly_interest(balance.balance, rate)
        if interest.is_zero:
            return InterestInstruction(balance.account_id, zero, None)

        xref = session.execute(
            select(CardXref)
            .where(CardXref.account_id == balance.account_id)
            .order_by(CardXref.card_number)
            .limit(1)
        ).scalar_one_or_none()
        if xref is None:
            raise ConstraintViolationError(
                account_ref, REASON_INVALID_CARD, "no card cross reference for account",
            )

        suffix = int(chunk.values.get("next_suffix", 0)) + 1
        chunk.values["next_suffix"] = suffix
        now = format_timestamp(self._clock.now())
        transaction = {
            "transaction_id": transaction_id_for(self._processing_date, suffix),
            "type_code": INTEREST_TYPE_CODE,
            "category_code": INTEREST_CATEGORY_CODE,
            "source": INTEREST_SOURCE,
            "description": f"Int. for a/c {account_ref}",
            "amount": interest,
            "merchant_id": 0,
            "merchant_name": "",
            "merchant_city": "",
            "merchant_zip": "",
            "card_number": xref.card_number,
            "origin_timestamp": now,
            "processed_timestamp": now,
        }
        return InterestInstruction(balance.account_id, interest, transaction)

    @staticmethod
    def _rate(session: Any, group_id: str, balance: CategoryBalance) -> FixedDecimal:
        for group in (group_id, DEFAULT_GROUP):
            row = session.execute(
                select(DisclosureGroup).where(
                    DisclosureGroup.group_id == group,
                    DisclosureGroup.type_code == balance.type_code,
                    DisclosureGroup.category_code == balance.category_code,
                )
            ).scalar_one_or_none()
            if row is not None:
                if group != group_id:
                    logger.info(
                        "disclosure_group_defaulted",
                        extra={
                            "group_id": group_id,
                            "type_code": balance.type_code,
                            "category_code": balance.category_code,
                        },
                    )
                return row.interest_rate
        raise LookupError(
            f"no disclosure group rate for {group_id}/{balance.type_code}/"
            f"{balance.category_code} and no {DEFAULT_GROUP} fallback"
        )


class InterestWriter:
    """Posts interest transactions and applies interest to the accounts."""

    def open(self, checkpoint: dict[str, Any] | None) -> None:
        pass

    def write(self, items: list[InterestInstruction], chunk: ChunkContext) -> None:
        session = chunk.session
        try:
            for item in items:
                if item.transaction is not None:
                    self._upsert_transaction(session, item.transaction)
                account = session.execute(
                    select(Account).where(Account.account_id == item.account_id)
                ).scalar_one()
                account.current_balance = account.current_balance + item.interest
                account.current_cycle_credit = FixedDecimal.zero(
                    2, account.current_cycle_credit.max_integer_digits,
                )
                account.current_cycle_debit = FixedDecimal.zero(
                    2, account.current_cycle_debit.max_integer_digits,
                )
            session.flush()
        except OperationalError as exc:
            raise TransientIOError("apply interest", str(exc.orig)) from exc

    @staticmethod
    def _upsert_transaction(session: Any, row: dict[str, Any]) -> None:
        existing = session.execute(
            select(Transaction).where(Transaction.transaction_id == row["transaction_id"])
        ).scalar_one_or_none()
        if existing is None:
            session.add(Transaction(**row))
            return
        for name, value in row.items():
            setattr(existing, name, value)

    def checkpoint(self) -> dict[str, Any]:
        return {}

    def on_commit(self) -> None:
        pass

    def on_rollback(self) -> None:
        pass

    def close(self) -> None:
        pass


def interest_calculation_job() -> JobDefinition:
    def reader(scope: StepScope) -> KeysetQueryReader:
        return KeysetQueryReader(
            scope.session_factory,
            CategoryBalance,
            ("account_id", "type_code", "category_code"),
        )

    return JobDefinition(
        name=JOB_NAME,
        steps=(
            StepDefinition(
                name="compute_interest",
                reader_factory=reader,
                processor_factory=InterestProcessor,
                writer_factory=lambda scope: InterestWriter(),
                description="compute monthly interest per category balance",
            ),
        ),
        parameters=(PROCESSING_DATE,),
        processing_window_minutes=60,
        description="Monthly interest calculation",
    )

"""
daily_posting -- validate and post the daily transaction file.

For every daily transaction record:

    1. Look up the card cross reference      (reject 100: invalid card number)
    2. Look up the account                   (reject 101: account not found)
    3. Credit limit check on the cycle totals (reject 102: over limit)
    4. Expiration check on the origin date   (reject 103: account expired)

When both 3 and 4 fail the record is rejected with 103.  A valid record is
posted: the transaction row is upserted with the processed timestamp, its
amount is added to the category balance (created when missing) and to the
account's current balance, and to the cycle credit (amount >= 0) or cycle
debit (amount < 0).

Rejections raise ConstraintViolationError, which the default fault policy
skips and records with the reason code.  Items of one chunk see the effect
of earlier items of the same chunk through a pending-delta overlay.

Parameters:
    processing_date (date, required)
    input_file (string, required)
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from cardbatch_engine.domain.parameters import ParameterSpec, ParameterType
from cardbatch_engine.steps.base import ChunkContext, JobDefinition, StepDefinition, StepScope
from cardbatch_engine.steps.readers import FixedWidthFileReader
from cardbatch_jobs.common import PROCESSING_DATE, format_timestamp, record_row, timestamp_date
from cardbatch_jobs.orm import Account, CardXref, CategoryBalance, Transaction
from cardbatch_kernel.codec import Record
from cardbatch_kernel.codec.layouts import DAILY_TRANSACTION
from cardbatch_kernel.domain.fixed_decimal import FixedDecimal
from cardbatch_kernel.exceptions import (
    ConstraintViolationError,
    MalformedRecordError,
    TransientIOError,
)
from cardbatch_kernel.logging_config import get_logger

logger = get_logger("jobs.posting")

JOB_NAME = "daily_posting"

REASON_INVALID_CARD = 100
REASON_ACCOUNT_NOT_FOUND = 101
REASON_OVERLIMIT = 102
REASON_EXPIRED = 103


@dataclass(frozen=True)
class PostingInstruction:
    """A validated transaction ready to be posted."""

    record: Record
    account_id: int


@dataclass
class _PendingDelta:
    credit: FixedDecimal
    debit: FixedDecimal


class TransactionPostingProcessor:
    """Validates daily transactions against xref and account master data."""

    def __init__(self, scope: StepScope) -> None:
        self._clock = scope.clock
        self._pending: dict[int, _PendingDelta] = {}
        self._seen: set[str] = set()

    # Chunk listener hooks

    def before_chunk(self, chunk: ChunkContext) -> None:
        self._reset()

    def after_commit(self, chunk: ChunkContext) -> None:
        self._reset()

    def on_chunk_error(self, chunk: ChunkContext, exc: BaseException) -> None:
        self._reset()

    def _reset(self) -> None:
        self._pending = {}
        self._seen = set()

    def process(self, record: Record, chunk: ChunkContext) -> PostingInstruction | None:
        session = chunk.session
        transaction_id = record["transaction_id"]

        if transaction_id in self._seen or session.execute(
            select(Transaction.id).where(Transaction.transaction_id == transaction_id)
        ).first() is not None:
            logger.info("transaction_already_posted", extra={"transaction_id": transaction_id})
            return None

        xref = session.execute(
            select(CardXref).where(CardXref.card_number == record["card_number"])
        ).scalar_one_or_none()
        if xref is None:
            raise ConstraintViolationError(
                transaction_id, REASON_INVALID_CARD, "invalid card number found",
            )

        account = session.execute(
            select(Account).where(Account.account_id == xref.account_id)
        ).scalar_one_or_none()
        if account is None:
            raise ConstraintViolationError(
                transaction_id, REASON_ACCOUNT_NOT_FOUND, "account record not found",
            )

        amount: FixedDecimal = record["amount"]
        delta = self._pending.get(account.account_id)
        cycle_credit = account.current_cycle_credit
        cycle_debit = account.current_cycle_debit
        if delta is not None:
            cycle_credit = cycle_credit + delta.credit
            cycle_debit = cycle_debit + delta.debit

        reason = None
        if account.credit_limit < cycle_credit - cycle_debit + amount:
            reason = (REASON_OVERLIMIT, "overlimit transaction")
        if account.expiration_date is not None and (
            account.expiration_date < self._origin_date(record)
        ):
            reason = (REASON_EXPIRED, "transaction received after account expiration")
        if reason is not None:
            raise ConstraintViolationError(transaction_id, *reason)

        zero = FixedDecimal.zero(amount.scale, amount.max_integer_digits)
        if delta is None:
            delta = self._pending[account.account_id] = _PendingDelta(zero, zero)
        if amount.is_negative:
            delta.debit = delta.debit + amount
        else:
            delta.credit = delta.credit + amount
        self._seen.add(transaction_id)

        processed = record.replace(
            processed_timestamp=format_timestamp(self._clock.now()),
        )
        return PostingInstruction(record=processed, account_id=account.account_id)

    @staticmethod
    def _origin_date(record: Record) -> date:
        try:
            return timestamp_date(record["origin_timestamp"])
        except ValueError:
            field = record.layout.field("origin_timestamp")
            raise MalformedRecordError(
                record.layout.name, field.name, field.offset, "origin timestamp is not a date",
            ) from None


class PostingWriter:
    """Upserts the transaction and applies its amount to the balances."""

    def open(self, checkpoint: dict[str, Any] | None) -> None:
        pass

    def write(self, items: list[PostingInstruction], chunk: ChunkContext) -> None:
        session = chunk.session
        try:
            for item in items:
                self._post(session, item)
            session.flush()
        except OperationalError as exc:
            raise TransientIOError("post transactions", str(exc.orig)) from exc

    def _post(self, session: Any, item: PostingInstruction) -> None:
        record = item.record
        row = record_row(record)
        transaction = session.execute(
            select(Transaction).where(Transaction.transaction_id == row["transaction_id"])
        ).scalar_one_or_none()
        if transaction is None:
            session.add(Transaction(**row))
        else:
            for name, value in row.items():
                setattr(transaction, name, value)

        amount: FixedDecimal = record["amount"]
        balance = session.execute(
            select(CategoryBalance).where(
                CategoryBalance.account_id == item.account_id,
                CategoryBalance.type_code == record["type_code"],
                CategoryBalance.category_code == record["category_code"],
            )
        ).scalar_one_or_none()
        if balance is None:
            session.add(
                CategoryBalance(
                    account_id=item.account_id,
                    type_code=record["type_code"],
                    category_code=record["category_code"],
                    balance=amount,
                )
            )
        else:
            balance.balance = balance.balance + amount

        account = session.execute(
            select(Account).where(Account.account_id == item.account_id)
        ).scalar_one()
        account.current_balance = account.current_balance + amount
        if amount.is_negative:
            account.current_cycle_debit = account.current_cycle_debit + amount
        else:
            account.current_cycle_credit = account.current_cycle_credit + amount

    def checkpoint(self) -> dict[str, Any]:
        return {}

    def on_commit(self) -> None:
        pass

    def on_rollback(self) -> None:
        pass

    def close(self) -> None:
        pass


def daily_posting_job() -> JobDefinition:
    def reader(scope: StepScope) -> FixedWidthFileReader:
        return FixedWidthFileReader(Path(str(scope.parameters["input_file"])), DAILY_TRANSACTION)

    return JobDefinition(
        name=JOB_NAME,
        steps=(
            StepDefinition(
                name="post_transactions",
                reader_factory=reader,
                processor_factory=TransactionPostingProcessor,
                writer_factory=lambda scope: PostingWriter(),
                description="validate and post daily transactions",
            ),
        ),
        parameters=(
            PROCESSING_DATE,
            ParameterSpec("input_file", ParameterType.STRING),
        ),
        processing_window_minutes=120,
        description="Daily transaction posting",
    )

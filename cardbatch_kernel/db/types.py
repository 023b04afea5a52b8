"""
Module: cardbatch_kernel.db.types
Responsibility: Column types for fixed-point money and short codes.
Architecture position: Kernel > DB.  Imported by every model that persists a
    monetary amount or rate.

Invariants enforced:
    - A FixedDecimal column round-trips exactly: the stored value is the
      canonical text (SQLite) or NUMERIC(p, s) (PostgreSQL), never a float.
    - Reloaded values carry the column's declared field (integer digits and
      scale), so arithmetic on them overflows exactly where the copybook
      field would.
"""

from decimal import Decimal

from sqlalchemy import Numeric, String
from sqlalchemy.types import TypeDecorator

from cardbatch_kernel.domain.fixed_decimal import FixedDecimal


class FixedDecimalType(TypeDecorator):
    """
    Persist a FixedDecimal declared as ``S9(integer_digits)V9(scale)``.

    Contract:
        Binding rejects anything but FixedDecimal/None.  On PostgreSQL the
        column is NUMERIC(integer_digits + scale, scale); elsewhere the
        canonical decimal string is stored.
    """

    impl = String(40)
    cache_ok = True

    def __init__(self, integer_digits: int = 9, scale: int = 2):
        super().__init__()
        self.integer_digits = integer_digits
        self.scale = scale

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(
                Numeric(self.integer_digits + self.scale, self.scale, asdecimal=True)
            )
        return dialect.type_descriptor(String(40))

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if not isinstance(value, FixedDecimal):
            raise TypeError(
                f"FixedDecimalType expects FixedDecimal, got {type(value).__name__}"
            )
        rescaled = value.rescale(self.scale)
        if rescaled != value:
            raise ValueError(
                f"{value} has more than {self.scale} fractional digits"
            )
        text = rescaled.format()
        if dialect.name == "postgresql":
            return Decimal(text)
        return text

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if isinstance(value, Decimal):
            return FixedDecimal.from_decimal(value, self.scale, self.integer_digits)
        return FixedDecimal.parse(str(value), self.scale, self.integer_digits)


"""
FixedDecimal -- signed fixed-point numbers with COBOL field semantics.

Responsibility:
    The single representation of monetary and rate values in the batch
    engine.  A value is a scaled integer (``mantissa * 10**-scale``) bound to
    a receiving field of ``max_integer_digits`` integer digits, which is how
    a ``PIC S9(n)V9(s)`` field (zoned or COMP-3) behaves on the mainframe.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.  Imported by the
    record codec, the ORM type decorator, the report emitter and the jobs.

Invariants enforced:
    - No floats: float inputs raise TypeError at every entry point.
    - Add/subtract are exact.  Multiply/divide round exactly once, at the
      target scale, with an explicit rounding mode (ROUND_HALF_UP default).
    - Overflow of the receiving field raises DecimalOverflowError; high-order
      digits are never truncated.
    - Equality and ordering are exact on numeric value (2.50 == 2.5).

Failure modes:
    - DecimalOverflowError when a result exceeds the receiving field.
    - InvalidDecimalError when text/Decimal input has more significant
      fractional digits than the declared scale.
    - DecimalDivisionByZeroError on division by zero.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from decimal import ROUND_DOWN, ROUND_HALF_EVEN, ROUND_HALF_UP, Decimal
from typing import Union

from cardbatch_kernel.exceptions import (
    DecimalDivisionByZeroError,
    DecimalOverflowError,
    InvalidDecimalError,
)

__all__ = [
    "FixedDecimal",
    "ROUND_DOWN",
    "ROUND_HALF_EVEN",
    "ROUND_HALF_UP",
    "SUPPORTED_ROUNDING",
]

SUPPORTED_ROUNDING = frozenset({ROUND_HALF_UP, ROUND_HALF_EVEN, ROUND_DOWN})

DEFAULT_SCALE = 2
DEFAULT_INTEGER_DIGITS = 9

_NUMBER_RE = re.compile(r"^([+-])?(\d*)(?:\.(\d*))?$")

Operand = Union["FixedDecimal", int]


def _round_div(numerator: int, denominator: int, rounding: str) -> int:
    """Integer division rounded per ``rounding``; ties are judged on magnitude."""
    if rounding not in SUPPORTED_ROUNDING:
        raise ValueError(f"Unsupported rounding mode: {rounding}")
    negative = (numerator < 0) != (denominator < 0)
    quotient, remainder = divmod(abs(numerator), abs(denominator))
    twice = remainder * 2
    if rounding == ROUND_HALF_UP:
        if twice >= abs(denominator) and remainder:
            quotient += 1
    elif rounding == ROUND_HALF_EVEN:
        if twice > abs(denominator) or (
            twice == abs(denominator) and quotient % 2 == 1
        ):
            quotient += 1
    return -quotient if negative else quotient


def _rescale_mantissa(mantissa: int, from_scale: int, to_scale: int, rounding: str) -> int:
    if to_scale >= from_scale:
        return mantissa * 10 ** (to_scale - from_scale)
    return _round_div(mantissa, 10 ** (from_scale - to_scale), rounding)


def _render(mantissa: int, scale: int) -> str:
    digits = str(abs(mantissa)).rjust(scale + 1, "0")
    sign = "-" if mantissa < 0 else ""
    if scale == 0:
        return f"{sign}{digits}"
    return f"{sign}{digits[:-scale]}.{digits[-scale:]}"


@dataclass(frozen=True, slots=True, eq=False)
class FixedDecimal:
    """
    Fixed-point value bound to a receiving field.

    Contract:
        ``mantissa`` is the integer value in units of ``10**-scale``.
        ``max_integer_digits`` is the integer capacity of the field the value
        lives in; construction fails if the value does not fit.

    Guarantees:
        - Immutable and hashable; hash agrees with numeric equality.
        - Results of binary operations take the LEFT operand's field
          (the receiving field of a COBOL ``COMPUTE``).
        - Mixed scales in add/subtract widen to the larger scale.

    Non-goals:
        - No implicit float conversion in either direction.
        - No ``/`` operator: division always states its target scale and
          rounding through ``divide()``.
    """

    mantissa: int
    scale: int = DEFAULT_SCALE
    max_integer_digits: int = DEFAULT_INTEGER_DIGITS

    def __post_init__(self) -> None:
        if isinstance(self.mantissa, bool) or not isinstance(self.mantissa, int):
            raise TypeError(
                f"FixedDecimal mantissa must be int, got {type(self.mantissa).__name__}"
            )
        if isinstance(self.scale, bool) or not isinstance(self.scale, int) or self.scale < 0:
            raise ValueError(f"Invalid scale: {self.scale!r}")
        if (
            isinstance(self.max_integer_digits, bool)
            or not isinstance(self.max_integer_digits, int)
            or self.max_integer_digits < 0
        ):
            raise ValueError(f"Invalid max_integer_digits: {self.max_integer_digits!r}")
        if abs(self.mantissa) >= 10 ** (self.max_integer_digits + self.scale):
            raise DecimalOverflowError(
                _render(self.mantissa, self.scale),
                self.max_integer_digits,
                self.scale,
            )

    # -------------------------------------------------------------------------
    # Construction
    # -------------------------------------------------------------------------

    @classmethod
    def zero(
        cls,
        scale: int = DEFAULT_SCALE,
        max_integer_digits: int = DEFAULT_INTEGER_DIGITS,
    ) -> FixedDecimal:
        return cls(0, scale, max_integer_digits)

    @classmethod
    def parse(
        cls,
        text: str,
        scale: int = DEFAULT_SCALE,
        max_integer_digits: int = DEFAULT_INTEGER_DIGITS,
    ) -> FixedDecimal:
        """
        Parse canonical decimal text (``-123.45``, ``+7``, ``0.5``).

        Fractional digits beyond ``scale`` are accepted only when they are
        zeros; anything else would require rounding and is rejected.

        Raises:
            InvalidDecimalError: malformed text or excess precision.
            DecimalOverflowError: value does not fit the field.
        """
        if not isinstance(text, str):
            raise TypeError(f"Expected str, got {type(text).__name__}")
        match = _NUMBER_RE.match(text.strip())
        if match is None:
            raise InvalidDecimalError(text, "not a decimal number")
        sign, whole, frac = match.group(1), match.group(2), match.group(3) or ""
        if not whole and not frac:
            raise InvalidDecimalError(text, "no digits")
        if len(frac) > scale:
            if frac[scale:].strip("0"):
                raise InvalidDecimalError(
                    text, f"more than {scale} fractional digits"
                )
            frac = frac[:scale]
        mantissa = int((whole or "0") + frac.ljust(scale, "0"))
        if sign == "-":
            mantissa = -mantissa
        return cls(mantissa, scale, max_integer_digits)

    @classmethod
    def from_decimal(
        cls,
        value: Decimal,
        scale: int = DEFAULT_SCALE,
        max_integer_digits: int = DEFAULT_INTEGER_DIGITS,
    ) -> FixedDecimal:
        """Exact conversion from ``Decimal``; excess precision is an error."""
        if isinstance(value, float):
            raise TypeError("float is not accepted for fixed-point values")
        if not isinstance(value, Decimal):
            raise TypeError(f"Expected Decimal, got {type(value).__name__}")
        if not value.is_finite():
            raise InvalidDecimalError(str(value), "not a finite number")
        sign, digits, exponent = value.as_tuple()
        mantissa = int("".join(str(d) for d in digits) or "0")
        shift = exponent + scale
        if shift >= 0:
            mantissa *= 10**shift
        else:
            divisor = 10 ** (-shift)
            if mantissa % divisor:
                raise InvalidDecimalError(
                    str(value), f"more than {scale} fractional digits"
                )
            mantissa //= divisor
        if sign:
            mantissa = -mantissa
        return cls(mantissa, scale, max_integer_digits)

    # -------------------------------------------------------------------------
    # Arithmetic
    # -------------------------------------------------------------------------

    def _coerce(self, other: Operand) -> FixedDecimal:
        if isinstance(other, FixedDecimal):
            return other
        if isinstance(other, bool) or isinstance(other, float):
            raise TypeError(
                f"Cannot combine FixedDecimal with {type(other).__name__}"
            )
        if isinstance(other, int):
            digits = max(len(str(abs(other))), 1)
            return FixedDecimal(other, 0, digits)
        raise TypeError(f"Cannot combine FixedDecimal with {type(other).__name__}")

    def add(self, other: Operand) -> FixedDecimal:
        other = self._coerce(other)
        scale = max(self.scale, other.scale)
        mantissa = (
            self.mantissa * 10 ** (scale - self.scale)
            + other.mantissa * 10 ** (scale - other.scale)
        )
        return FixedDecimal(mantissa, scale, self.max_integer_digits)

    def subtract(self, other: Operand) -> FixedDecimal:
        return self.add(self._coerce(other).negate())

    def multiply(
        self,
        other: Operand,
        scale: int | None = None,
        rounding: str = ROUND_HALF_UP,
    ) -> FixedDecimal:
        """Exact product rounded once to ``scale`` (default: this value's scale)."""
        other = self._coerce(other)
        target = self.scale if scale is None else scale
        product = self.mantissa * other.mantissa
        mantissa = _rescale_mantissa(
            product, self.scale + other.scale, target, rounding
        )
        return FixedDecimal(mantissa, target, self.max_integer_digits)

    def divide(
        self,
        other: Operand,
        scale: int | None = None,
        rounding: str = ROUND_HALF_UP,
    ) -> FixedDecimal:
        """Quotient rounded once to ``scale`` (default: this value's scale)."""
        other = self._coerce(other)
        if other.mantissa == 0:
            raise DecimalDivisionByZeroError(self.format())
        target = self.scale if scale is None else scale
        numerator = self.mantissa * 10 ** (other.scale + target)
        denominator = other.mantissa * 10**self.scale
        mantissa = _round_div(numerator, denominator, rounding)
        return FixedDecimal(mantissa, target, self.max_integer_digits)

    def negate(self) -> FixedDecimal:
        return FixedDecimal(-self.mantissa, self.scale, self.max_integer_digits)

    def __abs__(self) -> FixedDecimal:
        return FixedDecimal(abs(self.mantissa), self.scale, self.max_integer_digits)

    def rescale(self, scale: int, rounding: str = ROUND_HALF_UP) -> FixedDecimal:
        mantissa = _rescale_mantissa(self.mantissa, self.scale, scale, rounding)
        return FixedDecimal(mantissa, scale, self.max_integer_digits)

    def with_field(self, max_integer_digits: int) -> FixedDecimal:
        """Move the value into a field of a different integer capacity."""
        return FixedDecimal(self.mantissa, self.scale, max_integer_digits)

    def __add__(self, other: Operand) -> FixedDecimal:
        return self.add(other)

    def __sub__(self, other: Operand) -> FixedDecimal:
        return self.subtract(other)

    def __mul__(self, other: Operand) -> FixedDecimal:
        return self.multiply(other)

    def __neg__(self) -> FixedDecimal:
        return self.negate()

    # -------------------------------------------------------------------------
    # Comparison
    # -------------------------------------------------------------------------

    def compare(self, other: Operand) -> int:
        """Return -1, 0 or 1.  Exact; never epsilon-based."""
        other = self._coerce(other)
        scale = max(self.scale, other.scale)
        left = self.mantissa * 10 ** (scale - self.scale)
        right = other.mantissa * 10 ** (scale - other.scale)
        return (left > right) - (left < right)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, bool) or not isinstance(other, (FixedDecimal, int)):
            return NotImplemented
        return self.compare(other) == 0

    def __hash__(self) -> int:
        return hash(self.to_decimal())

    def __lt__(self, other: Operand) -> bool:
        return self.compare(other) < 0

    def __le__(self, other: Operand) -> bool:
        return self.compare(other) <= 0

    def __gt__(self, other: Operand) -> bool:
        return self.compare(other) > 0

    def __ge__(self, other: Operand) -> bool:
        return self.compare(other) >= 0

    @property
    def is_zero(self) -> bool:
        return self.mantissa == 0

    @property
    def is_negative(self) -> bool:
        return self.mantissa < 0

    @property
    def sign(self) -> int:
        return (self.mantissa > 0) - (self.mantissa < 0)

    # -------------------------------------------------------------------------
    # Conversion
    # -------------------------------------------------------------------------

    def format(self, scale: int | None = None) -> str:
        """Canonical text, e.g. ``-1234.50``.  Rescaling down rounds half-up."""
        if scale is None or scale == self.scale:
            return _render(self.mantissa, self.scale)
        return _render(
            _rescale_mantissa(self.mantissa, self.scale, scale, ROUND_HALF_UP),
            scale,
        )

    def to_decimal(self) -> Decimal:
        return Decimal(_render(self.mantissa, self.scale))

    def __str__(self) -> str:
        return self.format()

    def __repr__(self) -> str:
        return (
            f"FixedDecimal('{self.format()}', scale={self.scale}, "
            f"max_integer_digits={self.max_integer_digits})"
        )

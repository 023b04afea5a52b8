"""
Pure domain layer.

Fixed-point decimal arithmetic and the injectable clock.  NO dependencies on
the ORM, the database or I/O.
"""

from cardbatch_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from cardbatch_kernel.domain.fixed_decimal import (
    ROUND_DOWN,
    ROUND_HALF_EVEN,
    ROUND_HALF_UP,
    FixedDecimal,
)

__all__ = [
    "Clock",
    "DeterministicClock",
    "SystemClock",
    "FixedDecimal",
    "ROUND_DOWN",
    "ROUND_HALF_EVEN",
    "ROUND_HALF_UP",
]

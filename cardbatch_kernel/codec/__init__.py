"""
Fixed-width record codec.

    from cardbatch_kernel.codec import decode, encode
    from cardbatch_kernel.codec.layouts import DAILY_TRANSACTION

    record = decode(DAILY_TRANSACTION, line)
    assert encode(record) == line
"""

from cardbatch_kernel.codec.layout import (
    FieldSpec,
    FieldType,
    RecordLayout,
    alpha,
    date_field,
    packed,
    sequential_layout,
    zoned,
)
from cardbatch_kernel.codec.record_codec import Record, decode, encode

__all__ = [
    "FieldSpec",
    "FieldType",
    "Record",
    "RecordLayout",
    "alpha",
    "date_field",
    "decode",
    "encode",
    "packed",
    "sequential_layout",
    "zoned",
]

"""
Record codec -- fixed-width bytes <-> typed immutable records.

Contract:
    ``decode(layout, data)`` returns a ``Record`` or raises
    ``MalformedRecordError`` naming the first invalid field and its offset.
    ``encode(record)`` is the exact inverse: for canonical input,
    ``encode(decode(layout, b)) == b`` byte for byte.

Non-canonical inputs (accepted on decode, normalized on encode):
    - negative zero (``}`` overpunch, ``D`` packed sign with zero digits)
      re-encodes as positive zero;
    - an unsigned zone digit in the sign position of a signed zoned field
      re-encodes with the positive overpunch character.

Architecture: cardbatch_kernel/codec.  Zero I/O; readers and writers in
    cardbatch_engine.steps own the files.
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from types import MappingProxyType
from typing import Any

from cardbatch_kernel.codec.fields import blank_value, decode_field, encode_field
from cardbatch_kernel.codec.layout import RecordLayout
from cardbatch_kernel.exceptions import MalformedRecordError, RecordEncodingError
from cardbatch_kernel.utils.masking import key_ref


class Record(Mapping[str, Any]):
    """
    Typed, immutable view of one fixed-width record.

    Guarantees:
        - Holds exactly one value per layout field (filler included, so the
          record re-encodes to the bytes it came from).
        - ``key`` is the natural key used for upserts and error references.
    """

    __slots__ = ("_layout", "_values")

    def __init__(self, layout: RecordLayout, values: Mapping[str, Any]):
        missing = [name for name in layout.field_names if name not in values]
        unknown = [name for name in values if name not in layout]
        if missing or unknown:
            raise RecordEncodingError(
                layout.name,
                ",".join(missing or unknown),
                "missing field" if missing else "unknown field",
            )
        self._layout = layout
        self._values = MappingProxyType(
            {name: values[name] for name in layout.field_names}
        )

    @classmethod
    def build(cls, layout: RecordLayout, **values: Any) -> Record:
        """Create a record, defaulting unspecified fields to blanks/zeros."""
        full = {spec.name: blank_value(spec) for spec in layout.fields}
        full.update(values)
        return cls(layout, full)

    @property
    def layout(self) -> RecordLayout:
        return self._layout

    @property
    def key(self) -> tuple[Any, ...]:
        return tuple(self._values[name] for name in self._layout.key_fields)

    @property
    def key_ref(self) -> str:
        """Printable natural key for logs and failure records; card numbers masked."""
        return key_ref(self._layout.key_fields, self.key) or self._layout.name

    def replace(self, **changes: Any) -> Record:
        values = dict(self._values)
        values.update(changes)
        return Record(self._layout, values)

    def as_dict(self) -> dict[str, Any]:
        return dict(self._values)

    def __getitem__(self, name: str) -> Any:
        return self._values[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Record):
            return NotImplemented
        return self._layout.name == other._layout.name and dict(self._values) == dict(
            other._values
        )

    def __hash__(self) -> int:
        return hash((self._layout.name, self.key))

    def __repr__(self) -> str:
        return f"Record({self._layout.name}, key={self.key_ref})"


def decode(layout: RecordLayout, data: bytes | str) -> Record:
    """Decode one record.  ``data`` excludes any line terminator."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    if len(data) != layout.record_length:
        raise MalformedRecordError(
            layout.name,
            None,
            None,
            f"record length {len(data)}, expected {layout.record_length}",
        )
    values: dict[str, Any] = {}
    for spec in layout.fields:
        values[spec.name] = decode_field(spec, data[spec.offset:spec.end], layout.name)
    return Record(layout, values)


def encode(record: Record) -> bytes:
    """Encode a record to exactly ``layout.record_length`` bytes."""
    layout = record.layout
    return b"".join(
        encode_field(spec, record[spec.name], layout.name) for spec in layout.fields
    )

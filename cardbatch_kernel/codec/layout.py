"""
Record layout specifications.

Contract:
    A ``RecordLayout`` is an ordered tuple of ``FieldSpec`` covering every byte
    of a fixed-width record exactly once.  Filler areas are declared as
    alphanumeric fields so that decode/encode can round-trip them.

Architecture: cardbatch_kernel/codec.  Pure data, zero I/O.

Invariants enforced:
    - Fields are contiguous from offset 0 with no gaps or overlaps.
    - Field names are unique; key fields exist in the layout.
    - Numeric scales fit inside the digit capacity of the field.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from cardbatch_kernel.exceptions import RecordLayoutError


class FieldType(str, Enum):
    """Physical representation of a field."""

    NUMERIC_ZONED = "numeric-zoned"  # PIC 9 / S9 DISPLAY, trailing overpunch sign
    NUMERIC_PACKED = "numeric-packed"  # COMP-3
    ALPHANUMERIC = "alphanumeric"  # PIC X
    DATE = "date"  # YYYYMMDD (8) or YYYY-MM-DD (10)


DATE_FORMATS = {8: "%Y%m%d", 10: "%Y-%m-%d"}


@dataclass(frozen=True)
class FieldSpec:
    """One field of a fixed-width record."""

    name: str
    offset: int
    length: int
    field_type: FieldType
    scale: int = 0
    signed: bool = False
    nullable: bool = False

    def __post_init__(self) -> None:
        if self.length <= 0:
            raise RecordLayoutError(self.name, "length must be positive")
        if self.offset < 0:
            raise RecordLayoutError(self.name, "offset must not be negative")
        if self.scale < 0 or self.scale > self.digits:
            raise RecordLayoutError(
                self.name, f"scale {self.scale} does not fit {self.digits} digits"
            )
        if self.field_type == FieldType.DATE and self.length not in DATE_FORMATS:
            raise RecordLayoutError(self.name, "date fields are 8 or 10 bytes")
        if self.field_type in (FieldType.ALPHANUMERIC, FieldType.DATE) and (
            self.scale or self.signed
        ):
            raise RecordLayoutError(self.name, "scale/sign apply to numeric fields only")

    @property
    def end(self) -> int:
        return self.offset + self.length

    @property
    def digits(self) -> int:
        """Total decimal digit capacity of the field."""
        if self.field_type == FieldType.NUMERIC_PACKED:
            return 2 * self.length - 1
        return self.length

    @property
    def integer_digits(self) -> int:
        return self.digits - self.scale

    @property
    def is_numeric(self) -> bool:
        return self.field_type in (FieldType.NUMERIC_ZONED, FieldType.NUMERIC_PACKED)

    @property
    def decodes_to_int(self) -> bool:
        """Unsigned integral zoned fields decode to ``int``; the rest to FixedDecimal."""
        return (
            self.field_type == FieldType.NUMERIC_ZONED
            and self.scale == 0
            and not self.signed
        )


@dataclass(frozen=True)
class RecordLayout:
    """
    Ordered, contiguous description of one record type.

    Guarantees:
        - ``record_length`` equals the sum of all field lengths.
        - ``key_fields`` names the natural key used for idempotent upserts
          and for error references (never the raw bytes).
    """

    name: str
    fields: tuple[FieldSpec, ...]
    key_fields: tuple[str, ...] = ()
    _by_name: dict[str, FieldSpec] = field(
        default_factory=dict, init=False, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        if not self.fields:
            raise RecordLayoutError(self.name, "layout has no fields")
        expected_offset = 0
        for spec in self.fields:
            if spec.offset != expected_offset:
                kind = "gap" if spec.offset > expected_offset else "overlap"
                raise RecordLayoutError(
                    self.name, f"{kind} before field {spec.name} at offset {spec.offset}"
                )
            if spec.name in self._by_name:
                raise RecordLayoutError(self.name, f"duplicate field {spec.name}")
            self._by_name[spec.name] = spec
            expected_offset = spec.end
        for key in self.key_fields:
            if key not in self._by_name:
                raise RecordLayoutError(self.name, f"unknown key field {key}")

    @property
    def record_length(self) -> int:
        return self.fields[-1].end

    @property
    def field_names(self) -> tuple[str, ...]:
        return tuple(spec.name for spec in self.fields)

    @property
    def has_packed_fields(self) -> bool:
        return any(s.field_type == FieldType.NUMERIC_PACKED for s in self.fields)

    def field(self, name: str) -> FieldSpec:
        try:
            return self._by_name[name]
        except KeyError:
            raise KeyError(
                f"Layout {self.name} has no field '{name}'"
            ) from None

    def __contains__(self, name: object) -> bool:
        return name in self._by_name


# ---------------------------------------------------------------------------
# Layout construction helpers
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FieldDraft:
    """A field without an offset; offsets are assigned by ``sequential_layout``."""

    name: str
    length: int
    field_type: FieldType = FieldType.ALPHANUMERIC
    scale: int = 0
    signed: bool = False
    nullable: bool = False


def alpha(name: str, length: int) -> FieldDraft:
    """PIC X(length)."""
    return FieldDraft(name, length)


def zoned(name: str, length: int, scale: int = 0, signed: bool = False) -> FieldDraft:
    """PIC 9(n) / S9(n)V9(s) DISPLAY."""
    return FieldDraft(name, length, FieldType.NUMERIC_ZONED, scale, signed)


def packed(name: str, length: int, scale: int = 0, signed: bool = True) -> FieldDraft:
    """COMP-3 occupying ``length`` bytes."""
    return FieldDraft(name, length, FieldType.NUMERIC_PACKED, scale, signed)


def date_field(name: str, length: int = 10, nullable: bool = False) -> FieldDraft:
    return FieldDraft(name, length, FieldType.DATE, nullable=nullable)


def sequential_layout(
    name: str,
    drafts: list[FieldDraft] | tuple[FieldDraft, ...],
    key_fields: tuple[str, ...] = (),
) -> RecordLayout:
    """Build a RecordLayout assigning offsets in declaration order."""
    offset = 0
    specs: list[FieldSpec] = []
    for draft in drafts:
        specs.append(
            FieldSpec(
                name=draft.name,
                offset=offset,
                length=draft.length,
                field_type=draft.field_type,
                scale=draft.scale,
                signed=draft.signed,
                nullable=draft.nullable,
            )
        )
        offset += draft.length
    return RecordLayout(name=name, fields=tuple(specs), key_fields=key_fields)

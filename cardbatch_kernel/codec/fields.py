"""
Field-level encoders and decoders for fixed-width records.

Zoned decimal (DISPLAY) fields carry their sign as an overpunch on the last
byte, using the ASCII convention of mainframe file transfers:

    positive 0-9 -> { A B C D E F G H I
    negative 0-9 -> } J K L M N O P Q R

Packed decimal (COMP-3) holds two BCD digits per byte with the sign in the
low nibble of the last byte: C positive, D negative, F unsigned.

Every decoder raises ``MalformedRecordError`` naming the field and its byte
offset.  Raw field bytes never appear in the error.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Any

from cardbatch_kernel.codec.layout import DATE_FORMATS, FieldSpec, FieldType
from cardbatch_kernel.domain.fixed_decimal import FixedDecimal
from cardbatch_kernel.exceptions import MalformedRecordError, RecordEncodingError

_POSITIVE_OVERPUNCH = "{ABCDEFGHI"
_NEGATIVE_OVERPUNCH = "}JKLMNOPQR"
_OVERPUNCH_DECODE: dict[int, tuple[int, int]] = {}
for _digit, _char in enumerate(_POSITIVE_OVERPUNCH):
    _OVERPUNCH_DECODE[ord(_char)] = (1, _digit)
for _digit, _char in enumerate(_NEGATIVE_OVERPUNCH):
    _OVERPUNCH_DECODE[ord(_char)] = (-1, _digit)
for _digit in range(10):
    # Unsigned zone on a signed field: accepted as positive, re-encoded as overpunch
    _OVERPUNCH_DECODE[ord("0") + _digit] = (1, _digit)

_SIGN_POSITIVE = 0x0C
_SIGN_NEGATIVE = 0x0D
_SIGN_UNSIGNED = 0x0F

_DIGITS = frozenset(b"0123456789")


def _malformed(layout_name: str, spec: FieldSpec, reason: str) -> MalformedRecordError:
    return MalformedRecordError(layout_name, spec.name, spec.offset, reason)


def _numeric_value(spec: FieldSpec, mantissa: int) -> int | FixedDecimal:
    if spec.decodes_to_int:
        return mantissa
    return FixedDecimal(mantissa, spec.scale, spec.integer_digits)


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------


def decode_zoned(spec: FieldSpec, raw: bytes, layout_name: str) -> int | FixedDecimal:
    body, last = raw[:-1], raw[-1]
    if any(b not in _DIGITS for b in body):
        raise _malformed(layout_name, spec, "non-digit in zoned numeric")
    if spec.signed:
        decoded = _OVERPUNCH_DECODE.get(last)
        if decoded is None:
            raise _malformed(layout_name, spec, "invalid overpunch sign")
        sign, last_digit = decoded
    else:
        if last not in _DIGITS:
            raise _malformed(layout_name, spec, "non-digit in unsigned zoned numeric")
        sign, last_digit = 1, last - ord("0")
    mantissa = int(body.decode("ascii") or "0") * 10 + last_digit
    return _numeric_value(spec, sign * mantissa)


def decode_packed(spec: FieldSpec, raw: bytes, layout_name: str) -> FixedDecimal:
    digits: list[int] = []
    for byte in raw[:-1]:
        digits.append(byte >> 4)
        digits.append(byte & 0x0F)
    digits.append(raw[-1] >> 4)
    sign_nibble = raw[-1] & 0x0F
    if any(d > 9 for d in digits):
        raise _malformed(layout_name, spec, "invalid BCD digit in packed decimal")
    if spec.signed:
        if sign_nibble not in (_SIGN_POSITIVE, _SIGN_NEGATIVE):
            raise _malformed(layout_name, spec, "invalid packed sign nibble")
    elif sign_nibble != _SIGN_UNSIGNED:
        raise _malformed(layout_name, spec, "unsigned packed field must use F sign")
    mantissa = 0
    for d in digits:
        mantissa = mantissa * 10 + d
    if sign_nibble == _SIGN_NEGATIVE:
        mantissa = -mantissa
    return FixedDecimal(mantissa, spec.scale, spec.integer_digits)


def decode_alphanumeric(spec: FieldSpec, raw: bytes, layout_name: str) -> str:
    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError:
        raise _malformed(layout_name, spec, "invalid UTF-8 text") from None
    return text.rstrip(" ")


def decode_date(spec: FieldSpec, raw: bytes, layout_name: str) -> date | None:
    if raw.strip(b" ") == b"":
        if spec.nullable:
            return None
        raise _malformed(layout_name, spec, "date is blank")
    try:
        return datetime.strptime(raw.decode("ascii"), DATE_FORMATS[spec.length]).date()
    except (UnicodeDecodeError, ValueError):
        raise _malformed(layout_name, spec, "invalid calendar date") from None


def decode_field(spec: FieldSpec, raw: bytes, layout_name: str) -> Any:
    """Decode one field's bytes into its typed value."""
    if spec.field_type == FieldType.ALPHANUMERIC:
        return decode_alphanumeric(spec, raw, layout_name)
    if spec.field_type == FieldType.NUMERIC_ZONED:
        return decode_zoned(spec, raw, layout_name)
    if spec.field_type == FieldType.NUMERIC_PACKED:
        return decode_packed(spec, raw, layout_name)
    return decode_date(spec, raw, layout_name)


# ---------------------------------------------------------------------------
# Encoding
# ---------------------------------------------------------------------------


def _field_mantissa(spec: FieldSpec, value: Any, layout_name: str) -> int:
    """Bring ``value`` to the field's scale without rounding."""
    if isinstance(value, bool) or isinstance(value, float):
        raise RecordEncodingError(
            layout_name, spec.name, f"unsupported numeric type {type(value).__name__}"
        )
    if isinstance(value, int):
        mantissa = value * 10**spec.scale
    elif isinstance(value, FixedDecimal):
        if value.scale > spec.scale:
            drop = 10 ** (value.scale - spec.scale)
            if value.mantissa % drop:
                raise RecordEncodingError(
                    layout_name, spec.name,
                    f"value has more than {spec.scale} fractional digits",
                )
            mantissa = value.mantissa // drop
        else:
            mantissa = value.mantissa * 10 ** (spec.scale - value.scale)
    else:
        raise RecordEncodingError(
            layout_name, spec.name, f"unsupported numeric type {type(value).__name__}"
        )
    if mantissa < 0 and not spec.signed:
        raise RecordEncodingError(layout_name, spec.name, "negative value in unsigned field")
    if abs(mantissa) >= 10**spec.digits:
        raise RecordEncodingError(
            layout_name, spec.name, f"value exceeds {spec.digits} digits"
        )
    return mantissa


def encode_zoned(spec: FieldSpec, value: Any, layout_name: str) -> bytes:
    mantissa = _field_mantissa(spec, value, layout_name)
    text = str(abs(mantissa)).rjust(spec.length, "0")
    if spec.signed:
        table = _NEGATIVE_OVERPUNCH if mantissa < 0 else _POSITIVE_OVERPUNCH
        text = text[:-1] + table[int(text[-1])]
    return text.encode("ascii")


def encode_packed(spec: FieldSpec, value: Any, layout_name: str) -> bytes:
    mantissa = _field_mantissa(spec, value, layout_name)
    digits = str(abs(mantissa)).rjust(spec.digits, "0")
    if not spec.signed:
        sign = _SIGN_UNSIGNED
    else:
        sign = _SIGN_NEGATIVE if mantissa < 0 else _SIGN_POSITIVE
    nibbles = [int(d) for d in digits] + [sign]
    return bytes(
        (nibbles[i] << 4) | nibbles[i + 1] for i in range(0, len(nibbles), 2)
    )


def encode_alphanumeric(spec: FieldSpec, value: Any, layout_name: str) -> bytes:
    if value is None:
        value = ""
    if not isinstance(value, str):
        raise RecordEncodingError(
            layout_name, spec.name, f"expected str, got {type(value).__name__}"
        )
    data = value.encode("utf-8")
    if len(data) > spec.length:
        raise RecordEncodingError(
            layout_name, spec.name, f"text longer than {spec.length} bytes"
        )
    return data.ljust(spec.length, b" ")


def encode_date(spec: FieldSpec, value: Any, layout_name: str) -> bytes:
    if value is None:
        if not spec.nullable:
            raise RecordEncodingError(layout_name, spec.name, "date is required")
        return b" " * spec.length
    if isinstance(value, datetime) or not isinstance(value, date):
        raise RecordEncodingError(
            layout_name, spec.name, f"expected date, got {type(value).__name__}"
        )
    if spec.length == 8:
        text = f"{value.year:04d}{value.month:02d}{value.day:02d}"
    else:
        text = f"{value.year:04d}-{value.month:02d}-{value.day:02d}"
    return text.encode("ascii")


def encode_field(spec: FieldSpec, value: Any, layout_name: str) -> bytes:
    """Encode one typed value into exactly ``spec.length`` bytes."""
    if spec.field_type == FieldType.ALPHANUMERIC:
        return encode_alphanumeric(spec, value, layout_name)
    if spec.field_type == FieldType.NUMERIC_ZONED:
        return encode_zoned(spec, value, layout_name)
    if spec.field_type == FieldType.NUMERIC_PACKED:
        return encode_packed(spec, value, layout_name)
    return encode_date(spec, value, layout_name)


def blank_value(spec: FieldSpec) -> Any:
    """Default value for a field the caller did not supply."""
    if spec.field_type == FieldType.ALPHANUMERIC:
        return ""
    if spec.field_type == FieldType.DATE:
        return None
    if spec.field_type == FieldType.NUMERIC_ZONED:
        return _numeric_value(spec, 0)
    return FixedDecimal(0, spec.scale, spec.integer_digits)

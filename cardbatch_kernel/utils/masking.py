"""
Redaction helpers for log payloads, failure records and item references.

Card numbers are shown as first four + last four digits.  Failure messages
are bounded so a pathological exception cannot bloat the metadata tables.

A 16-digit transaction id is indistinguishable from a card number inside
free text, so ``mask_card_numbers`` masks both.  Natural-key references are
masked by field name instead, which keeps transaction ids readable there.
"""

import re
from collections.abc import Iterable

MAX_MESSAGE_LENGTH = 500

CARD_NUMBER_FIELDS = frozenset({"card_number"})

_CARD_NUMBER_RE = re.compile(r"\b(\d{4})\d{8}(\d{4})\b")


def mask_card_number(card_number: str) -> str:
    """``4111111111111111`` -> ``4111********1111``."""
    digits = card_number.strip()
    if len(digits) < 8:
        return "*" * len(digits)
    return digits[:4] + "*" * (len(digits) - 8) + digits[-4:]


def mask_card_numbers(text: str) -> str:
    """Mask every embedded 16-digit number in free text."""
    return _CARD_NUMBER_RE.sub(lambda m: f"{m.group(1)}********{m.group(2)}", text)


def sanitize_message(text: str, limit: int = MAX_MESSAGE_LENGTH) -> str:
    """Mask embedded 16-digit card numbers and truncate to ``limit`` chars."""
    masked = mask_card_numbers(text)
    if len(masked) > limit:
        return masked[: limit - 3] + "..."
    return masked


def key_ref(names: Iterable[str], values: Iterable[object]) -> str:
    """Join natural-key parts with ``/``, masking card-number parts."""
    return "/".join(
        mask_card_number(str(value)) if name in CARD_NUMBER_FIELDS else str(value)
        for name, value in zip(names, values)
    )

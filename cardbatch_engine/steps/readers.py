"""
Item readers: fixed-width sequential files and keyset-paged tables.

Both readers are cursors with an extractable/restorable position token, so
a restarted step continues exactly after the last committed chunk.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, BinaryIO, Callable

from sqlalchemy import select, tuple_
from sqlalchemy.orm import Session, sessionmaker

from cardbatch_kernel.codec import Record, RecordLayout, decode
from cardbatch_kernel.exceptions import MalformedRecordError
from cardbatch_kernel.logging_config import get_logger
from cardbatch_kernel.utils.masking import key_ref

logger = get_logger("engine.readers")

FRAMING_LINES = "lines"
FRAMING_FIXED = "fixed"


class FixedWidthFileReader:
    """Decodes one Record per fixed-width record of a sequential file.

    ``record_framing``:
        - ``lines``: newline-terminated records (``\\n`` or ``\\r\\n``).
        - ``fixed``: exactly ``layout.record_length`` bytes per record, no
          separators.  Required when the layout has packed fields, whose
          bytes may contain newline values.

    Position token: ``{"offset": <bytes consumed>, "line": <records read>}``.
    """

    def __init__(
        self,
        path: str | Path,
        layout: RecordLayout,
        record_framing: str = FRAMING_LINES,
    ) -> None:
        if record_framing not in (FRAMING_LINES, FRAMING_FIXED):
            raise ValueError(f"unknown record framing {record_framing!r}")
        if record_framing == FRAMING_LINES and layout.has_packed_fields:
            raise ValueError(
                f"layout {layout.name} has packed fields; use fixed framing"
            )
        self._path = Path(path)
        self._layout = layout
        self._framing = record_framing
        self._file: BinaryIO | None = None
        self._offset = 0
        self._line = 0

    def open(self, position: dict[str, Any] | None) -> None:
        self._file = self._path.open("rb")
        if position:
            self._offset = int(position.get("offset", 0))
            self._line = int(position.get("line", 0))
            self._file.seek(self._offset)
        logger.info(
            "file_reader_opened",
            extra={
                "path": str(self._path),
                "layout": self._layout.name,
                "resume_offset": self._offset,
                "resume_line": self._line,
            },
        )

    def read(self) -> Record | None:
        if self._file is None:
            raise RuntimeError("reader is not open")
        if self._framing == FRAMING_FIXED:
            raw = self._file.read(self._layout.record_length)
            if not raw:
                return None
            self._advance(len(raw))
            if len(raw) != self._layout.record_length:
                raise MalformedRecordError(
                    self._layout.name,
                    None,
                    None,
                    f"truncated record of {len(raw)} bytes, "
                    f"expected {self._layout.record_length}",
                )
            return decode(self._layout, raw)

        raw = self._file.readline()
        if not raw:
            return None
        self._advance(len(raw))
        return decode(self._layout, raw.rstrip(b"\r\n"))

    def position(self) -> dict[str, Any]:
        return {"offset": self._offset, "line": self._line}

    @property
    def current_ref(self) -> str:
        return f"line {self._line}"

    def close(self) -> None:
        if self._file is not None:
            self._file.close()
            self._file = None

    def _advance(self, size: int) -> None:
        self._offset += size
        self._line += 1


class KeysetQueryReader:
    """Reads ORM rows in natural-key order, one page per short transaction.

    Rows are returned detached; processors that change them re-load them in
    the chunk session.  Position token: ``{"last_key": [...]}``.  The item
    reference is the key, card numbers masked, unless ``ref`` names the row.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        model: type,
        key_columns: tuple[str, ...],
        filters: tuple[Any, ...] = (),
        page_size: int = 500,
        ref: Callable[[Any], str] | None = None,
    ) -> None:
        if not key_columns:
            raise ValueError("key_columns must not be empty")
        self._session_factory = session_factory
        self._model = model
        self._key_columns = key_columns
        self._filters = filters
        self._page_size = page_size
        self._ref = ref
        self._buffer: list[Any] = []
        self._last_key: tuple[Any, ...] | None = None
        self._last_row: Any = None
        self._exhausted = False

    def open(self, position: dict[str, Any] | None) -> None:
        if position and position.get("last_key") is not None:
            self._last_key = tuple(position["last_key"])

    def read(self) -> Any | None:
        if not self._buffer and not self._exhausted:
            self._fetch_page()
        if not self._buffer:
            return None
        row = self._buffer.pop(0)
        self._last_key = self._key_of(row)
        self._last_row = row
        return row

    def position(self) -> dict[str, Any]:
        return {"last_key": list(self._last_key) if self._last_key is not None else None}

    @property
    def current_ref(self) -> str:
        if self._last_key is None:
            return "start"
        if self._ref is not None and self._last_row is not None:
            return self._ref(self._last_row)
        return key_ref(self._key_columns, self._last_key)

    def close(self) -> None:
        self._buffer = []

    def _key_of(self, row: Any) -> tuple[Any, ...]:
        return tuple(getattr(row, name) for name in self._key_columns)

    def _fetch_page(self) -> None:
        columns = [getattr(self._model, name) for name in self._key_columns]
        stmt = select(self._model).where(*self._filters)
        if self._last_key is not None:
            if len(columns) == 1:
                stmt = stmt.where(columns[0] > self._last_key[0])
            else:
                stmt = stmt.where(tuple_(*columns) > tuple_(*self._last_key))
        stmt = stmt.order_by(*columns).limit(self._page_size)

        session = self._session_factory()
        try:
            rows = session.execute(stmt).scalars().all()
            session.expunge_all()
        finally:
            session.close()

        self._buffer = list(rows)
        if len(rows) < self._page_size:
            self._exhausted = True


class EmptyReader:
    """Reader of an optional input that is absent."""

    def open(self, position: dict[str, Any] | None) -> None:
        pass

    def read(self) -> None:
        return None

    def position(self) -> dict[str, Any]:
        return {}

    @property
    def current_ref(self) -> str:
        return "empty"

    def close(self) -> None:
        pass

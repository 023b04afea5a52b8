"""
Item writers: natural-key upserts and restartable report files.

Both writers are replayable.  Re-writing a chunk after a rollback, or after
a crash between the write and the commit, never duplicates output: rows are
upserted by natural key, and report files are truncated back to the offset
recorded by the last committed chunk.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, BinaryIO, Callable

from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from cardbatch_engine.steps.base import ChunkContext
from cardbatch_kernel.exceptions import ReportLayoutError, TransientIOError
from cardbatch_kernel.logging_config import get_logger

logger = get_logger("engine.writers")


class UpsertWriter:
    """Select-then-update-or-insert by natural key inside the chunk session.

    ``to_row(item)`` returns the column values for one item, including the
    natural-key columns.
    """

    def __init__(
        self,
        model: type,
        key_columns: tuple[str, ...],
        to_row: Callable[[Any], dict[str, Any]],
    ) -> None:
        if not key_columns:
            raise ValueError("key_columns must not be empty")
        self._model = model
        self._key_columns = key_columns
        self._to_row = to_row

    def open(self, checkpoint: dict[str, Any] | None) -> None:
        pass

    def write(self, items: list[Any], chunk: ChunkContext) -> None:
        session = chunk.session
        try:
            for item in items:
                row = self._to_row(item)
                key_filter = [
                    getattr(self._model, name) == row[name] for name in self._key_columns
                ]
                existing = session.execute(
                    select(self._model).where(*key_filter)
                ).scalar_one_or_none()
                if existing is None:
                    session.add(self._model(**row))
                else:
                    for name, value in row.items():
                        if name not in self._key_columns:
                            setattr(existing, name, value)
            session.flush()
        except OperationalError as exc:
            raise TransientIOError(
                f"upsert {self._model.__tablename__}", str(exc.orig)
            ) from exc

    def checkpoint(self) -> dict[str, Any]:
        return {}

    def on_commit(self) -> None:
        pass

    def on_rollback(self) -> None:
        pass

    def close(self) -> None:
        pass


LineSource = Callable[[Any, ChunkContext], list[str]]


class ReportFileWriter:
    """Appends report lines; the file's byte offset is part of the checkpoint.

    Items are report lines (``str``) or lists of lines.  ``header`` lines are
    written before the first item of a fresh report; ``footer`` lines are
    written by ``finish()`` in the step's final chunk.  Every line must be
    exactly ``emitter.line_width`` characters.

    On restart ``open()`` truncates the file to the committed offset, so lines
    appended by a chunk that never committed disappear before appending again.
    """

    def __init__(
        self,
        path: str | Path,
        emitter: Any,
        header: LineSource | None = None,
        footer: LineSource | None = None,
    ) -> None:
        self._path = Path(path)
        self._emitter = emitter
        self._header = header
        self._footer = footer
        self._file: BinaryIO | None = None
        self._offset = 0
        self._committed_offset = 0
        self._header_written = False
        self._committed_header_written = False

    def open(self, checkpoint: dict[str, Any] | None) -> None:
        offset = int(checkpoint.get("offset", 0)) if checkpoint else 0
        if offset > 0:
            self._file = self._path.open("r+b")
            self._file.truncate(offset)
            self._file.seek(offset)
            self._header_written = bool(checkpoint.get("header_written", True))
        else:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._file = self._path.open("wb")
        self._offset = self._committed_offset = offset
        self._committed_header_written = self._header_written
        logger.info(
            "report_writer_opened",
            extra={"path": str(self._path), "resume_offset": offset},
        )

    def write(self, items: list[Any], chunk: ChunkContext) -> None:
        lines: list[str] = []
        if not self._header_written and self._header is not None:
            lines.extend(self._header(self._emitter, chunk))
        for item in items:
            if isinstance(item, str):
                lines.append(item)
            else:
                lines.extend(item)
        self._append(lines)
        self._header_written = True

    def finish(self, chunk: ChunkContext) -> None:
        """Write header (for an empty report) and footer lines."""
        lines: list[str] = []
        if not self._header_written and self._header is not None:
            lines.extend(self._header(self._emitter, chunk))
        if self._footer is not None:
            lines.extend(self._footer(self._emitter, chunk))
        self._append(lines)
        self._header_written = True

    def checkpoint(self) -> dict[str, Any]:
        return {"offset": self._offset, "header_written": self._header_written}

    def on_commit(self) -> None:
        self._committed_offset = self._offset
        self._committed_header_written = self._header_written

    def on_rollback(self) -> None:
        if self._file is None:
            return
        self._file.truncate(self._committed_offset)
        self._file.seek(self._committed_offset)
        self._offset = self._committed_offset
        self._header_written = self._committed_header_written

    def close(self) -> None:
        if self._file is not None:
            self._file.close()
            self._file = None

    def _append(self, lines: list[str]) -> None:
        if self._file is None:
            raise RuntimeError("writer is not open")
        if not lines:
            return
        width = self._emitter.line_width
        for line in lines:
            if len(line) != width:
                raise ReportLayoutError(
                    f"report line is {len(line)} characters, expected {width}"
                )
        data = "".join(line + "\n" for line in lines).encode("utf-8")
        self._file.write(data)
        self._file.flush()
        os.fsync(self._file.fileno())
        self._offset += len(data)

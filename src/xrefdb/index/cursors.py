"""Forward-only query cursors over the cross-reference store.

One generic Cursor class covers every query; what differs between the
entities, references and parameters cursors is only the row mapper.  Rows are
pulled from the underlying ``sqlite3.Cursor`` one at a time, so a cursor never
holds more than the current row.
"""

from __future__ import annotations

import sqlite3
from typing import Callable, Generic, Iterator, TypeVar

from xrefdb.index.errors import CursorExhaustedError
from xrefdb.index.schema import (
    EntityInfo,
    ParameterInfo,
    ParameterMode,
    Reference,
    SourceLocation,
)

T = TypeVar("T")

RowMapper = Callable[[sqlite3.Row], T]


class Cursor(Generic[T]):
    """Single-pass cursor: ``has_element()``, ``current()``, ``advance()``.

    Also iterable.  ``validate`` is called before every operation and raises
    when the store handle the cursor borrows has gone away; ``on_close`` runs
    once, when the cursor is exhausted or closed.
    """

    def __init__(
        self,
        rows: sqlite3.Cursor | None,
        mapper: RowMapper[T],
        validate: Callable[[], None] | None = None,
        on_close: Callable[[Cursor[T]], None] | None = None,
    ) -> None:
        self._rows = rows
        self._mapper = mapper
        self._validate = validate
        self._on_close = on_close
        self._row: sqlite3.Row | None = None
        self._value: T | None = None
        self._closed = False
        self._fetch()

    @classmethod
    def empty(cls) -> Cursor[T]:
        return cls(None, lambda row: row)  # type: ignore[arg-type, return-value]

    @property
    def closed(self) -> bool:
        return self._closed

    def has_element(self) -> bool:
        self._check()
        return self._row is not None

    def current(self) -> T:
        """Return the element under the cursor.

        Raises CursorExhaustedError when ``has_element()`` is False.
        """
        self._check()
        if self._row is None:
            raise CursorExhaustedError("cursor has no current element")
        if self._value is None:
            self._value = self._mapper(self._row)
        return self._value

    def advance(self) -> None:
        """Move to the next element; a no-op once exhausted."""
        self._check()
        if self._row is not None:
            self._fetch()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._row = None
        self._value = None
        if self._rows is not None:
            try:
                self._rows.close()
            except sqlite3.ProgrammingError:
                # Connection already closed
                pass
            self._rows = None
        if self._on_close is not None:
            self._on_close(self)

    def __iter__(self) -> Iterator[T]:
        while self.has_element():
            yield self.current()
            self.advance()

    def __enter__(self) -> Cursor[T]:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    # ── Internal helpers ──────────────────────────────────────────────────────

    def _check(self) -> None:
        if self._validate is not None and not self._closed:
            self._validate()

    def _fetch(self) -> None:
        self._value = None
        self._row = self._rows.fetchone() if self._rows is not None else None
        if self._row is None:
            self.close()


# ── Row mappers ───────────────────────────────────────────────────────────────

def row_to_entity(row: sqlite3.Row) -> EntityInfo:
    return EntityInfo(
        id=row["id"],
        name=row["name"],
        kind=row["kind"],
        location=SourceLocation(row["path"], row["decl_line"], row["decl_column"]),
    )


def row_to_reference(row: sqlite3.Row) -> Reference:
    return Reference(
        entity=row["entity_id"],
        location=SourceLocation(row["path"], row["line"], row["col"]),
        kind=row["kind"],
        scope=row["scope_id"],
    )


def row_to_parameter(row: sqlite3.Row) -> ParameterInfo:
    return ParameterInfo(
        parameter=row["parameter_id"],
        mode=ParameterMode(row["mode"]),
        ordinal=row["ordinal"],
    )

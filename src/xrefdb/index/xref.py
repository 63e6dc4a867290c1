"""XrefIndex — public facade over one cross-reference store.

Queries hand out forward-only cursors that borrow the store's connection.
The facade keeps a single writer: an update cannot start while a cursor is
open, and a cursor cannot be opened while an update runs.  ``release()``
closes the connection; cursors created before it raise StaleCursorError.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import weakref
from pathlib import Path
from typing import Any, Callable, Iterable, TypeVar

from xrefdb.core.config import XrefConfig
from xrefdb.index.builder import ArtifactLike, CancelCheck, ProgressCallback, UpdateStats
from xrefdb.index.cursors import (
    Cursor,
    RowMapper,
    row_to_entity,
    row_to_parameter,
    row_to_reference,
)
from xrefdb.index.db import XrefDatabase
from xrefdb.index.errors import StaleCursorError, StoreBusyError, StoreConnectionError
from xrefdb.index.lifecycle import DatabaseLifecycle, LifecycleReport
from xrefdb.index.parser import normalize_path
from xrefdb.index.schema import (
    EMPTY_DECLARATION,
    NO_ENTITY,
    EntityDeclaration,
    EntityInfo,
    FileRecord,
    IndexStats,
    ParameterInfo,
    Reference,
    SourceLocation,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class XrefIndex:
    """Cross-reference queries and updates over one ``XrefDatabase``."""

    def __init__(self, config: XrefConfig | None = None) -> None:
        self._config = config or XrefConfig()
        self._db: XrefDatabase | None = None
        self._generation = 0
        self._write_lock = threading.Lock()
        self._updating = False
        self._cursors: weakref.WeakSet[Cursor[Any]] = weakref.WeakSet()
        self._last_report: LifecycleReport | None = None

    @classmethod
    def open(cls, path: Path | str, config: XrefConfig | None = None) -> XrefIndex:
        """Open (or create) the store at *path* and set it up."""
        index = cls(config)
        index.setup(XrefDatabase(path, config=index._config.store))
        return index

    # ── Handle ────────────────────────────────────────────────────────────────

    def setup(self, db: XrefDatabase) -> None:
        """Attach *db*; a previously attached store is released first."""
        if self._db is not None:
            self.release()
        self._db = db
        logger.debug("Index set up on %s", db.path)

    def release(self) -> None:
        """Close the store.  Outstanding cursors become stale."""
        if self._db is None:
            return
        self._generation += 1
        self._cursors = weakref.WeakSet()
        self._db.close()
        logger.debug("Index released %s", self._db.path)
        self._db = None

    @property
    def db(self) -> XrefDatabase:
        if self._db is None:
            raise StoreConnectionError("index has no store, call setup() first")
        return self._db

    @property
    def last_report(self) -> LifecycleReport | None:
        return self._last_report

    @property
    def open_cursors(self) -> int:
        return sum(1 for c in self._cursors if not c.closed)

    def __enter__(self) -> XrefIndex:
        return self

    def __exit__(self, *_: object) -> None:
        self.release()

    # ── Updates ───────────────────────────────────────────────────────────────

    def update_index(
        self,
        files: Iterable[ArtifactLike],
        include_runtime_files: bool = True,
        seed_path: Path | str | None = None,
        output_path: Path | str | None = None,
        should_cancel: CancelCheck | None = None,
        progress_callback: ProgressCallback | None = None,
    ) -> UpdateStats:
        """Bring the store in sync with *files*.

        Raises StoreBusyError if another update runs or a cursor is open,
        and BuildError subclasses if the store cannot be updated at all.
        """
        db = self.db
        if not self._write_lock.acquire(blocking=False):
            raise StoreBusyError("another update is running")
        try:
            if self.open_cursors:
                raise StoreBusyError(f"{self.open_cursors} cursors are still open")
            self._updating = True
            lifecycle = DatabaseLifecycle(db, self._config)
            stats, self._last_report = lifecycle.run(
                files,
                include_runtime_files=include_runtime_files,
                seed_path=seed_path,
                output_path=output_path,
                should_cancel=should_cancel,
                progress_callback=progress_callback,
            )
            return stats
        finally:
            self._updating = False
            self._write_lock.release()

    # ── Queries ───────────────────────────────────────────────────────────────

    def get_entity(
        self,
        name: str,
        file: str | Path | FileRecord,
        line: int = -1,
        column: int = -1,
    ) -> int | None:
        """Return the id of the entity declared as *name* in *file*, or None.

        *file* may be a full path or a trailing part of one; matching is on
        path segment boundaries.  ``line`` and ``column`` filter unless -1.
        When several entities match, the first by (path, line, column) wins.
        """
        self._check_readable()
        path = file.path if isinstance(file, FileRecord) else normalize_path(file)
        rows = self._query(lambda db: db.query_entities(name, path, line, column))
        try:
            row = rows.fetchone()
        finally:
            rows.close()
        return row["id"] if row else None

    def declaration(self, entity: int | None) -> EntityDeclaration:
        """Return name, kind and location of *entity* (empty when unknown)."""
        self._check_readable()
        if entity is None or entity == NO_ENTITY:
            return EMPTY_DECLARATION
        row = self._query(lambda db: db.get_entity_row(entity))
        if row is None:
            return EMPTY_DECLARATION
        return EntityDeclaration(
            name=row["name"],
            kind=row["kind"],
            location=SourceLocation(row["path"], row["decl_line"], row["decl_column"]),
        )

    def references(self, entity: int | None) -> Cursor[Reference]:
        if entity is None or entity == NO_ENTITY:
            self._check_readable()
            return Cursor.empty()
        return self._cursor(lambda db: db.query_references(entity), row_to_reference)

    def parameters(self, entity: int | None) -> Cursor[ParameterInfo]:
        if entity is None or entity == NO_ENTITY:
            self._check_readable()
            return Cursor.empty()
        return self._cursor(lambda db: db.query_parameters(entity), row_to_parameter)

    def entities(
        self,
        name: str | None = None,
        file: str | Path | FileRecord | None = None,
        kind: str | None = None,
    ) -> Cursor[EntityInfo]:
        """All entities matching the filters, in get_entity's preference order."""
        path = None
        if file is not None:
            path = file.path if isinstance(file, FileRecord) else normalize_path(file)
        return self._cursor(
            lambda db: db.query_entities(name=name, file=path, kind=kind), row_to_entity
        )

    def stats(self) -> IndexStats:
        self._check_readable()
        return self._query(lambda db: db.get_stats())

    # ── Internal helpers ──────────────────────────────────────────────────────

    def _check_readable(self) -> None:
        if self._db is None:
            raise StaleCursorError("index has been released")
        if self._updating:
            raise StoreBusyError("an update is running")

    def _query(self, fn: Callable[[XrefDatabase], T]) -> T:
        try:
            return fn(self.db)
        except sqlite3.Error as exc:
            raise StoreConnectionError(f"query on {self.db.path} failed: {exc}") from exc

    def _cursor(
        self,
        execute: Callable[[XrefDatabase], sqlite3.Cursor],
        mapper: RowMapper[T],
    ) -> Cursor[T]:
        self._check_readable()
        generation = self._generation

        def validate() -> None:
            if generation != self._generation or self._db is None:
                raise StaleCursorError("cursor used after its index was released")

        cursor: Cursor[T] = Cursor(
            self._query(execute),
            mapper,
            validate=validate,
            on_close=self._cursors.discard,
        )
        if not cursor.closed:
            self._cursors.add(cursor)
        return cursor


__all__ = ["XrefIndex"]

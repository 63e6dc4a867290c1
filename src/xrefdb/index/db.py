"""SQLite database layer for the cross-reference index.

XrefDatabase is a thin wrapper around one sqlite3 connection.  It handles only
persistence: opening/validating the schema, transactions, bulk copy between
stores and the row-level reads and writes the builder and the query layer
need.  Linking logic lives in EntityKeyResolver and IncrementalIndexBuilder.
"""

from __future__ import annotations

import logging
import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterable, Iterator

from xrefdb.core.config import StoreConfig
from xrefdb.index.errors import SchemaError, StoreConnectionError
from xrefdb.index.schema import (
    NO_ENTITY,
    REQUIRED_TABLES,
    SCHEMA_SQL,
    SCHEMA_VERSION,
    ArtifactRecord,
    EntityKey,
    FileRecord,
    IndexStats,
)

logger = logging.getLogger(__name__)

MEMORY_PATH = ":memory:"

_META_SCHEMA_VERSION = "schema_version"
_META_LAST_INDEXED = "last_indexed_at"

# (table, link column, pending key column prefix)
_LINKS = (
    ("entity_refs", "entity_id", "pending_"),
    ("entity_refs", "scope_id", "pending_scope_"),
    ("parameters", "parameter_id", "pending_"),
)

# Segment-boundary suffix match in either direction between a stored path
# and the :file parameter.
_FILE_MATCH_SQL = """
(
    f.path = :file
    OR substr(f.path, -(length(:file) + 1)) = '/' || :file
    OR substr(:file, -(length(f.path) + 1)) = '/' || f.path
)
"""


class XrefDatabase:
    """SQLite-backed store for cross-reference data.

    Parameters
    ----------
    db_path:
        Database file, or ``":memory:"`` for a transient store.
    readonly:
        Open an existing file without write access (seed stores).
    config:
        Pragmas applied to the connection.
    """

    def __init__(
        self,
        db_path: Path | str,
        readonly: bool = False,
        config: StoreConfig | None = None,
    ) -> None:
        self._path = str(db_path)
        self._readonly = readonly
        self._config = config or StoreConfig()
        self._tx_depth = 0
        self._conn = self._connect()
        try:
            self._configure()
            self._ensure_schema()
        except sqlite3.DatabaseError as exc:
            self._conn.close()
            raise StoreConnectionError(f"cannot use store {self._path}: {exc}") from exc
        except SchemaError:
            self._conn.close()
            raise

    @classmethod
    def in_memory(cls, config: StoreConfig | None = None) -> XrefDatabase:
        return cls(MEMORY_PATH, config=config)

    # ── Connection ────────────────────────────────────────────────────────────

    def _connect(self) -> sqlite3.Connection:
        try:
            if self._readonly:
                uri = Path(self._path).resolve().as_uri() + "?mode=ro"
                conn = sqlite3.connect(uri, uri=True, check_same_thread=False)
            else:
                if self._path != MEMORY_PATH:
                    Path(self._path).parent.mkdir(parents=True, exist_ok=True)
                conn = sqlite3.connect(self._path, check_same_thread=False)
        except (sqlite3.Error, OSError) as exc:
            raise StoreConnectionError(f"cannot open store {self._path}: {exc}") from exc
        # Transactions are explicit, see transaction()
        conn.isolation_level = None
        conn.row_factory = sqlite3.Row
        return conn

    def _configure(self) -> None:
        self._conn.execute("PRAGMA foreign_keys=ON")
        if self._readonly or self.is_memory:
            return
        self._conn.execute(f"PRAGMA journal_mode={self._config.journal_mode}")
        self._conn.execute(f"PRAGMA synchronous={self._config.synchronous}")

    @property
    def path(self) -> str:
        return self._path

    @property
    def is_memory(self) -> bool:
        return self._path == MEMORY_PATH

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    @property
    def connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StoreConnectionError(f"store {self._path} is closed")
        return self._conn

    # ── Schema ────────────────────────────────────────────────────────────────

    def _table_names(self) -> set[str]:
        rows = self._conn.execute(
            "SELECT name FROM sqlite_master WHERE type = 'table' AND name NOT LIKE 'sqlite_%'"
        ).fetchall()
        return {r["name"] for r in rows}

    def _ensure_schema(self) -> None:
        """Create the schema on an empty store, validate it otherwise."""
        tables = self._table_names()
        if not tables:
            if self._readonly:
                raise SchemaError(f"store {self._path} has no cross-reference schema")
            self._apply_schema()
            return
        self.check_schema(tables)

    def _apply_schema(self) -> None:
        """Apply DDL statements (idempotent — uses CREATE IF NOT EXISTS)."""
        self._conn.executescript(SCHEMA_SQL)
        self.set_meta(_META_SCHEMA_VERSION, str(SCHEMA_VERSION))

    def check_schema(self, tables: set[str] | None = None) -> None:
        """Raise SchemaError unless the store holds the current schema."""
        tables = self._table_names() if tables is None else tables
        if "index_meta" not in tables:
            raise SchemaError(f"store {self._path} is not a cross-reference index")
        version = self.get_meta(_META_SCHEMA_VERSION)
        if version != str(SCHEMA_VERSION):
            raise SchemaError(
                f"store {self._path} has schema version {version!r}, expected {SCHEMA_VERSION}"
            )
        missing = REQUIRED_TABLES - tables
        if missing:
            raise SchemaError(f"store {self._path} is missing tables: {', '.join(sorted(missing))}")

    def has_content(self) -> bool:
        """Return True if any file has been recorded."""
        row = self.connection.execute("SELECT 1 FROM files LIMIT 1").fetchone()
        return row is not None

    # ── Transactions and bulk copy ────────────────────────────────────────────

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Group statements into one transaction; nested calls join the outer one."""
        conn = self.connection
        if self._tx_depth == 0:
            conn.execute("BEGIN")
        self._tx_depth += 1
        try:
            yield
        except BaseException:
            self._tx_depth -= 1
            if self._tx_depth == 0:
                conn.execute("ROLLBACK")
            raise
        else:
            self._tx_depth -= 1
            if self._tx_depth == 0:
                conn.execute("COMMIT")

    def copy_to(self, target: XrefDatabase) -> None:
        """Replace *target*'s content with a page-level copy of this store."""
        if target._readonly:
            raise StoreConnectionError(f"cannot copy into read-only store {target.path}")
        started = time.perf_counter()
        try:
            self.connection.backup(target.connection)
        except sqlite3.Error as exc:
            raise StoreConnectionError(
                f"bulk copy {self._path} -> {target.path} failed: {exc}"
            ) from exc
        logger.debug(
            "Copied %s -> %s in %.3fs", self._path, target.path, time.perf_counter() - started
        )

    def execute(self, sql: str, params: Any = ()) -> sqlite3.Cursor:
        """Run one statement and return its (lazy) cursor."""
        return self.connection.execute(sql, params)

    # ── Files ─────────────────────────────────────────────────────────────────

    def upsert_file(self, record: FileRecord) -> int:
        """Insert or update a file record. Returns the row id."""
        self.connection.execute(
            """
            INSERT INTO files (path, kind, stamp, checksum, is_runtime)
            VALUES (:path, :kind, :stamp, :checksum, :is_runtime)
            ON CONFLICT(path) DO UPDATE SET
                kind       = CASE WHEN excluded.kind = 'artifact' THEN 'artifact' ELSE files.kind END,
                stamp      = CASE WHEN excluded.stamp != '' THEN excluded.stamp ELSE files.stamp END,
                checksum   = CASE WHEN excluded.checksum != '' THEN excluded.checksum ELSE files.checksum END,
                is_runtime = excluded.is_runtime
            """,
            {
                "path": record.path,
                "kind": record.kind,
                "stamp": record.stamp,
                "checksum": record.checksum,
                "is_runtime": int(record.is_runtime),
            },
        )
        # lastrowid is unreliable for ON CONFLICT DO UPDATE
        return self._get_file_id(record.path)

    def ensure_file(self, path: str) -> int:
        """Return the id for *path*, creating a bare source row if needed."""
        self.connection.execute(
            "INSERT OR IGNORE INTO files (path) VALUES (?)", (path,)
        )
        return self._get_file_id(path)

    def update_file_stamp(self, path: str, stamp: str, checksum: str) -> int:
        """Record the stamp an artifact saw for a dependency; leaves kind and flags alone."""
        file_id = self.ensure_file(path)
        self.connection.execute(
            "UPDATE files SET stamp = ?, checksum = ? WHERE id = ?",
            (stamp, checksum, file_id),
        )
        return file_id

    def get_file_by_path(self, path: str) -> FileRecord | None:
        row = self.connection.execute(
            "SELECT * FROM files WHERE path = ?", (path,)
        ).fetchone()
        return _row_to_file(row) if row else None

    def get_file_id(self, path: str) -> int | None:
        row = self.connection.execute(
            "SELECT id FROM files WHERE path = ?", (path,)
        ).fetchone()
        return row["id"] if row else None

    def list_files(self, kind: str | None = None) -> list[FileRecord]:
        """Return every file (optionally of one kind) ordered by path."""
        if kind is None:
            rows = self.connection.execute("SELECT * FROM files ORDER BY path").fetchall()
        else:
            rows = self.connection.execute(
                "SELECT * FROM files WHERE kind = ? ORDER BY path", (kind,)
            ).fetchall()
        return [_row_to_file(r) for r in rows]

    # ── Artifacts ─────────────────────────────────────────────────────────────

    def get_artifact(self, file_id: int) -> ArtifactRecord | None:
        row = self.connection.execute(
            "SELECT * FROM artifacts WHERE file_id = ?", (file_id,)
        ).fetchone()
        return _row_to_artifact(row) if row else None

    def list_artifact_stamps(self) -> dict[str, tuple[float, str]]:
        """Return {artifact path: (mtime, checksum)} for every merged artifact."""
        rows = self.connection.execute(
            """
            SELECT f.path, a.mtime, a.checksum
            FROM artifacts a JOIN files f ON f.id = a.file_id
            """
        ).fetchall()
        return {r["path"]: (r["mtime"], r["checksum"]) for r in rows}

    def record_artifact(self, file_id: int, unit_name: str, mtime: float, checksum: str) -> None:
        self.connection.execute(
            """
            INSERT INTO artifacts (file_id, unit_name, mtime, checksum, indexed_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(file_id) DO UPDATE SET
                unit_name  = excluded.unit_name,
                mtime      = excluded.mtime,
                checksum   = excluded.checksum,
                indexed_at = excluded.indexed_at
            """,
            (file_id, unit_name, mtime, checksum, time.time()),
        )

    def touch_artifact(self, file_id: int, mtime: float) -> None:
        """Refresh the stored mtime of an artifact whose content did not change."""
        self.connection.execute(
            "UPDATE artifacts SET mtime = ? WHERE file_id = ?", (mtime, file_id)
        )

    def replace_dependencies(
        self,
        artifact_id: int,
        dependencies: Iterable[tuple[int, str, str]],
    ) -> None:
        """Replace the (file_id, stamp, checksum) dependency rows of an artifact."""
        self.connection.execute(
            "DELETE FROM artifact_deps WHERE artifact_id = ?", (artifact_id,)
        )
        self.connection.executemany(
            """
            INSERT OR REPLACE INTO artifact_deps (artifact_id, file_id, stamp, checksum)
            VALUES (?, ?, ?, ?)
            """,
            [(artifact_id, fid, stamp, checksum) for fid, stamp, checksum in dependencies],
        )

    def query_dependencies(self, artifact_id: int) -> list[tuple[str, str, str]]:
        """Return (path, stamp, checksum) for each dependency of an artifact."""
        rows = self.connection.execute(
            """
            SELECT f.path, d.stamp, d.checksum
            FROM artifact_deps d JOIN files f ON f.id = d.file_id
            WHERE d.artifact_id = ?
            ORDER BY f.path
            """,
            (artifact_id,),
        ).fetchall()
        return [(r["path"], r["stamp"], r["checksum"]) for r in rows]

    def purge_artifact(self, artifact_id: int) -> None:
        """Remove every row produced by an artifact (entities themselves stay)."""
        conn = self.connection
        conn.execute("DELETE FROM parameters WHERE artifact_id = ?", (artifact_id,))
        conn.execute("DELETE FROM entity_refs WHERE artifact_id = ?", (artifact_id,))
        conn.execute("DELETE FROM declarations WHERE artifact_id = ?", (artifact_id,))
        conn.execute("DELETE FROM artifact_deps WHERE artifact_id = ?", (artifact_id,))
        conn.execute("DELETE FROM artifacts WHERE file_id = ?", (artifact_id,))

    # ── Entities ──────────────────────────────────────────────────────────────

    def upsert_entity(self, name: str, kind: str, file_id: int, line: int, column: int) -> int:
        """Insert an entity or update its kind; the id of an existing key never changes."""
        self.connection.execute(
            """
            INSERT INTO entities (name, kind, decl_file_id, decl_line, decl_column)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(name, decl_file_id, decl_line, decl_column) DO UPDATE SET
                kind = excluded.kind
            """,
            (name, kind, file_id, line, column),
        )
        row = self.connection.execute(
            """
            SELECT id FROM entities
            WHERE name = ? AND decl_file_id = ? AND decl_line = ? AND decl_column = ?
            """,
            (name, file_id, line, column),
        ).fetchone()
        return row["id"]

    def find_entity(self, key: EntityKey) -> int | None:
        """Look up an entity by exact key; an empty name matches by location."""
        if key.name:
            row = self.connection.execute(
                """
                SELECT e.id FROM entities e JOIN files f ON f.id = e.decl_file_id
                WHERE e.name = ? AND f.path = ? AND e.decl_line = ? AND e.decl_column = ?
                """,
                (key.name, key.file, key.line, key.column),
            ).fetchone()
        else:
            row = self.connection.execute(
                """
                SELECT e.id FROM entities e JOIN files f ON f.id = e.decl_file_id
                WHERE f.path = ? AND e.decl_line = ? AND e.decl_column = ?
                ORDER BY e.id LIMIT 1
                """,
                (key.file, key.line, key.column),
            ).fetchone()
        return row["id"] if row else None

    def insert_declarations(self, rows: Iterable[tuple[int, int, bool]]) -> None:
        """Bulk-insert (entity_id, artifact_id, library_level) ownership rows."""
        self.connection.executemany(
            """
            INSERT OR REPLACE INTO declarations (entity_id, artifact_id, library_level)
            VALUES (?, ?, ?)
            """,
            [(eid, aid, int(level)) for eid, aid, level in rows],
        )

    def insert_references(self, rows: Iterable[dict[str, Any]]) -> None:
        """Bulk-insert reference rows (see entity_refs columns)."""
        self.connection.executemany(
            """
            INSERT INTO entity_refs (
                entity_id, artifact_id, file_id, line, col, kind, scope_id,
                pending_name, pending_file, pending_line, pending_column,
                pending_scope_name, pending_scope_file, pending_scope_line, pending_scope_column
            )
            VALUES (
                :entity_id, :artifact_id, :file_id, :line, :col, :kind, :scope_id,
                :pending_name, :pending_file, :pending_line, :pending_column,
                :pending_scope_name, :pending_scope_file, :pending_scope_line, :pending_scope_column
            )
            """,
            list(rows),
        )

    def insert_parameters(self, rows: Iterable[dict[str, Any]]) -> None:
        """Bulk-insert parameter rows (see parameters columns)."""
        self.connection.executemany(
            """
            INSERT OR REPLACE INTO parameters (
                owner_id, ordinal, parameter_id, mode, artifact_id,
                pending_name, pending_file, pending_line, pending_column
            )
            VALUES (
                :owner_id, :ordinal, :parameter_id, :mode, :artifact_id,
                :pending_name, :pending_file, :pending_line, :pending_column
            )
            """,
            list(rows),
        )

    # ── Store-wide maintenance ────────────────────────────────────────────────

    def detach_undeclared(self) -> int:
        """Turn links to entities that lost their declaration back into pending keys."""
        conn = self.connection
        undeclared = "SELECT id FROM entities WHERE id NOT IN (SELECT entity_id FROM declarations)"
        detached = 0
        for table, column, prefix in _LINKS:
            cur = conn.execute(
                f"""
                UPDATE {table} SET
                    {prefix}name   = (SELECT name FROM entities WHERE id = {table}.{column}),
                    {prefix}file   = (SELECT decl_file_id FROM entities WHERE id = {table}.{column}),
                    {prefix}line   = (SELECT decl_line FROM entities WHERE id = {table}.{column}),
                    {prefix}column = (SELECT decl_column FROM entities WHERE id = {table}.{column}),
                    {column} = NULL
                WHERE {column} IN ({undeclared})
                """
            )
            detached += cur.rowcount
        conn.execute(f"DELETE FROM parameters WHERE owner_id IN ({undeclared})")
        return detached

    def prune_orphan_entities(self) -> int:
        """Delete entities without a declaration.  Call detach_undeclared() first."""
        cur = self.connection.execute(
            "DELETE FROM entities WHERE id NOT IN (SELECT entity_id FROM declarations)"
        )
        return cur.rowcount

    def relink_pending(self) -> int:
        """Resolve pending reference targets, scopes and parameters that now exist."""
        conn = self.connection
        relinked = 0
        for table, column, prefix in _LINKS:
            match = f"""
                SELECT e.id FROM entities e
                WHERE e.decl_file_id = {table}.{prefix}file
                  AND e.decl_line = {table}.{prefix}line
                  AND e.decl_column = {table}.{prefix}column
                  AND ({table}.{prefix}name = '' OR e.name = {table}.{prefix}name)
                ORDER BY e.id LIMIT 1
            """
            cur = conn.execute(
                f"""
                UPDATE {table} SET
                    {column} = ({match}),
                    {prefix}name = NULL, {prefix}file = NULL,
                    {prefix}line = NULL, {prefix}column = NULL
                WHERE {column} IS NULL
                  AND {prefix}file IS NOT NULL
                  AND EXISTS ({match})
                """
            )
            relinked += cur.rowcount
        return relinked

    # ── Queries ───────────────────────────────────────────────────────────────

    def query_entities(
        self,
        name: str | None = None,
        file: str | None = None,
        line: int = -1,
        column: int = -1,
        kind: str | None = None,
    ) -> sqlite3.Cursor:
        """Return a lazy cursor over matching entities, first by (file, line, column)."""
        clauses: list[str] = []
        params: dict[str, Any] = {}

        if name is not None:
            clauses.append("e.name = :name")
            params["name"] = name
        if file is not None:
            clauses.append(_FILE_MATCH_SQL)
            params["file"] = file
        if line != -1:
            clauses.append("e.decl_line = :line")
            params["line"] = line
        if column != -1:
            clauses.append("e.decl_column = :column")
            params["column"] = column
        if kind is not None:
            clauses.append("e.kind = :kind")
            params["kind"] = kind

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        return self.connection.execute(
            f"""
            SELECT e.id, e.name, e.kind, f.path, e.decl_line, e.decl_column
            FROM entities e JOIN files f ON f.id = e.decl_file_id
            {where}
            ORDER BY f.path, e.decl_line, e.decl_column, e.id
            """,
            params,
        )

    def get_entity_row(self, entity_id: int) -> sqlite3.Row | None:
        if entity_id == NO_ENTITY:
            return None
        return self.connection.execute(
            """
            SELECT e.id, e.name, e.kind, f.path, e.decl_line, e.decl_column
            FROM entities e JOIN files f ON f.id = e.decl_file_id
            WHERE e.id = ?
            """,
            (entity_id,),
        ).fetchone()

    def query_references(self, entity_id: int) -> sqlite3.Cursor:
        """Return a lazy cursor over an entity's references in source order."""
        return self.connection.execute(
            """
            SELECT r.entity_id, f.path, r.line, r.col, r.kind, r.scope_id
            FROM entity_refs r JOIN files f ON f.id = r.file_id
            WHERE r.entity_id = ?
            ORDER BY f.path, r.line, r.col, r.id
            """,
            (entity_id,),
        )

    def query_parameters(self, entity_id: int) -> sqlite3.Cursor:
        """Return a lazy cursor over a subprogram's parameters in ordinal order."""
        return self.connection.execute(
            """
            SELECT parameter_id, mode, ordinal
            FROM parameters
            WHERE owner_id = ?
            ORDER BY ordinal
            """,
            (entity_id,),
        )

    # ── Meta ──────────────────────────────────────────────────────────────────

    def set_meta(self, key: str, value: str) -> None:
        """Upsert a metadata key-value pair."""
        self.connection.execute(
            "INSERT INTO index_meta (key, value) VALUES (?, ?)"
            " ON CONFLICT(key) DO UPDATE SET value = excluded.value",
            (key, value),
        )

    def get_meta(self, key: str) -> str | None:
        row = self.connection.execute(
            "SELECT value FROM index_meta WHERE key = ?", (key,)
        ).fetchone()
        return row["value"] if row else None

    def mark_indexed(self) -> None:
        self.set_meta(_META_LAST_INDEXED, str(time.time()))

    # ── Stats ─────────────────────────────────────────────────────────────────

    def get_stats(self) -> IndexStats:
        """Return aggregate statistics about the current index."""
        conn = self.connection

        def count(sql: str) -> int:
            return conn.execute(sql).fetchone()[0]

        last_indexed_str = self.get_meta(_META_LAST_INDEXED)
        kind_rows = conn.execute(
            "SELECT kind, COUNT(*) AS cnt FROM entities GROUP BY kind"
        ).fetchall()

        return IndexStats(
            total_files=count("SELECT COUNT(*) FROM files"),
            total_artifacts=count("SELECT COUNT(*) FROM artifacts"),
            total_entities=count("SELECT COUNT(*) FROM entities"),
            total_references=count("SELECT COUNT(*) FROM entity_refs WHERE entity_id IS NOT NULL"),
            total_parameters=count("SELECT COUNT(*) FROM parameters"),
            pending_references=count("SELECT COUNT(*) FROM entity_refs WHERE entity_id IS NULL"),
            last_indexed_at=float(last_indexed_str) if last_indexed_str else None,
            entities_by_kind={r["kind"]: r["cnt"] for r in kind_rows},
        )

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    def close(self) -> None:
        """Close the database connection (idempotent)."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None  # type: ignore[assignment]

    def __enter__(self) -> XrefDatabase:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"XrefDatabase({self._path!r})"

    # ── Internal helpers ──────────────────────────────────────────────────────

    def _get_file_id(self, path: str) -> int:
        row = self.connection.execute(
            "SELECT id FROM files WHERE path = ?", (path,)
        ).fetchone()
        return row["id"] if row else 0


# ── Row mappers ───────────────────────────────────────────────────────────────

def _row_to_file(row: sqlite3.Row) -> FileRecord:
    return FileRecord(
        id=row["id"],
        path=row["path"],
        kind=row["kind"],
        stamp=row["stamp"],
        checksum=row["checksum"],
        is_runtime=bool(row["is_runtime"]),
    )


def _row_to_artifact(row: sqlite3.Row) -> ArtifactRecord:
    return ArtifactRecord(
        file_id=row["file_id"],
        unit_name=row["unit_name"],
        mtime=row["mtime"],
        checksum=row["checksum"],
        indexed_at=row["indexed_at"],
    )

"""SQLite schema DDL and immutable dataclass models for the cross-reference index."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import NamedTuple


SCHEMA_VERSION = 1

# Sentinel used internally for "no entity"; never matches a stored id.
NO_ENTITY = -1


# ── DDL ───────────────────────────────────────────────────────────────────────

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS index_meta (
    key   TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS files (
    id         INTEGER PRIMARY KEY AUTOINCREMENT,
    path       TEXT    NOT NULL UNIQUE,
    kind       TEXT    NOT NULL DEFAULT 'source',
    stamp      TEXT    NOT NULL DEFAULT '',
    checksum   TEXT    NOT NULL DEFAULT '',
    is_runtime INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS artifacts (
    file_id    INTEGER PRIMARY KEY REFERENCES files(id) ON DELETE CASCADE,
    unit_name  TEXT    NOT NULL DEFAULT '',
    mtime      REAL    NOT NULL,
    checksum   TEXT    NOT NULL,
    indexed_at REAL    NOT NULL
);

CREATE TABLE IF NOT EXISTS artifact_deps (
    artifact_id INTEGER NOT NULL REFERENCES files(id) ON DELETE CASCADE,
    file_id     INTEGER NOT NULL REFERENCES files(id) ON DELETE CASCADE,
    stamp       TEXT    NOT NULL,
    checksum    TEXT    NOT NULL,
    PRIMARY KEY (artifact_id, file_id)
);

CREATE TABLE IF NOT EXISTS entities (
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    name         TEXT    NOT NULL,
    kind         TEXT    NOT NULL,
    decl_file_id INTEGER NOT NULL REFERENCES files(id),
    decl_line    INTEGER NOT NULL,
    decl_column  INTEGER NOT NULL,
    UNIQUE (name, decl_file_id, decl_line, decl_column)
);

CREATE INDEX IF NOT EXISTS idx_entities_name ON entities(name);
CREATE INDEX IF NOT EXISTS idx_entities_loc  ON entities(decl_file_id, decl_line, decl_column);

CREATE TABLE IF NOT EXISTS declarations (
    entity_id     INTEGER PRIMARY KEY REFERENCES entities(id),
    artifact_id   INTEGER NOT NULL REFERENCES files(id),
    library_level INTEGER NOT NULL DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_declarations_artifact ON declarations(artifact_id);

CREATE TABLE IF NOT EXISTS entity_refs (
    id             INTEGER PRIMARY KEY AUTOINCREMENT,
    entity_id      INTEGER REFERENCES entities(id),
    artifact_id    INTEGER NOT NULL REFERENCES files(id),
    file_id        INTEGER NOT NULL REFERENCES files(id),
    line           INTEGER NOT NULL,
    col            INTEGER NOT NULL,
    kind           TEXT    NOT NULL,
    scope_id       INTEGER REFERENCES entities(id),
    pending_name   TEXT,
    pending_file   INTEGER REFERENCES files(id),
    pending_line   INTEGER,
    pending_column INTEGER,
    pending_scope_name   TEXT,
    pending_scope_file   INTEGER REFERENCES files(id),
    pending_scope_line   INTEGER,
    pending_scope_column INTEGER
);

CREATE INDEX IF NOT EXISTS idx_refs_entity   ON entity_refs(entity_id);
CREATE INDEX IF NOT EXISTS idx_refs_artifact ON entity_refs(artifact_id);
CREATE INDEX IF NOT EXISTS idx_refs_pending  ON entity_refs(pending_file, pending_line, pending_column);

CREATE TABLE IF NOT EXISTS parameters (
    owner_id       INTEGER NOT NULL REFERENCES entities(id),
    ordinal        INTEGER NOT NULL,
    parameter_id   INTEGER REFERENCES entities(id),
    mode           TEXT    NOT NULL,
    artifact_id    INTEGER NOT NULL REFERENCES files(id),
    pending_name   TEXT,
    pending_file   INTEGER REFERENCES files(id),
    pending_line   INTEGER,
    pending_column INTEGER,
    PRIMARY KEY (owner_id, ordinal)
);

CREATE INDEX IF NOT EXISTS idx_parameters_artifact ON parameters(artifact_id);
"""

REQUIRED_TABLES = frozenset({
    "index_meta",
    "files",
    "artifacts",
    "artifact_deps",
    "entities",
    "declarations",
    "entity_refs",
    "parameters",
})

# Valid values for FileRecord.kind
FILE_KINDS = frozenset({"source", "artifact"})


class ParameterMode(str, Enum):
    IN = "in"
    OUT = "out"
    IN_OUT = "in-out"
    ACCESS = "access"


# ── Keys and locations ────────────────────────────────────────────────────────

class SourceLocation(NamedTuple):
    """A (file, line, column) position.  Lines and columns are 1-based."""

    file: str
    line: int
    column: int


class EntityKey(NamedTuple):
    """Textual identity of a declaration, used before ids are assigned.

    An empty ``name`` means only the location is known.
    """

    name: str
    file: str
    line: int
    column: int

    @property
    def location(self) -> SourceLocation:
        return SourceLocation(self.file, self.line, self.column)


# ── Dataclass models ──────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ArtifactFile:
    """One artifact handed to the index by the project model."""

    path: str
    is_runtime: bool = False


@dataclass(frozen=True)
class FileRecord:
    """Immutable representation of a file row (source or artifact)."""

    path: str           # POSIX-normalized
    kind: str = "source"  # see FILE_KINDS
    stamp: str = ""
    checksum: str = ""
    is_runtime: bool = False
    id: int = 0         # 0 = not yet persisted


@dataclass(frozen=True)
class ArtifactRecord:
    """Bookkeeping for the artifact that produced a file's current rows."""

    file_id: int
    unit_name: str
    mtime: float
    checksum: str
    indexed_at: float


@dataclass(frozen=True)
class EntityInfo:
    id: int
    name: str
    kind: str
    location: SourceLocation


@dataclass(frozen=True)
class EntityDeclaration:
    """Name and defining location of an entity."""

    name: str
    kind: str
    location: SourceLocation

    @property
    def is_empty(self) -> bool:
        return not self.name


EMPTY_DECLARATION = EntityDeclaration(name="", kind="", location=SourceLocation("", 0, 0))


@dataclass(frozen=True)
class Reference:
    """A use site of an entity."""

    entity: int
    location: SourceLocation
    kind: str
    scope: int | None = None   # enclosing entity, None at library level


@dataclass(frozen=True)
class ParameterInfo:
    parameter: int | None      # None while the parameter's declaration is unknown
    mode: ParameterMode
    ordinal: int               # 1-based


@dataclass(frozen=True)
class IndexStats:
    """Snapshot statistics of the cross-reference index."""

    total_files: int
    total_artifacts: int
    total_entities: int
    total_references: int
    total_parameters: int
    pending_references: int
    last_indexed_at: float | None   # Unix timestamp, None if never indexed
    entities_by_kind: dict[str, int] = field(default_factory=dict)

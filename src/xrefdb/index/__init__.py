"""Cross-reference index — SQLite-backed entity/reference store built from compiler artifacts."""

from xrefdb.index.builder import FileError, IncrementalIndexBuilder, UpdatePlan, UpdateStats
from xrefdb.index.cursors import Cursor
from xrefdb.index.db import XrefDatabase
from xrefdb.index.errors import (
    ArtifactError,
    ArtifactIOError,
    ArtifactParseError,
    BuildError,
    CursorExhaustedError,
    SchemaError,
    StaleCursorError,
    StoreBusyError,
    StoreConnectionError,
    XrefError,
)
from xrefdb.index.lifecycle import DatabaseLifecycle, LifecycleReport, StageOutcome
from xrefdb.index.parser import ArtifactParser, ParsedUnit, parse_artifact
from xrefdb.index.resolver import EntityKeyResolver
from xrefdb.index.schema import (
    EMPTY_DECLARATION,
    NO_ENTITY,
    ArtifactFile,
    EntityDeclaration,
    EntityInfo,
    FileRecord,
    IndexStats,
    ParameterInfo,
    ParameterMode,
    Reference,
    SourceLocation,
)
from xrefdb.index.xref import XrefIndex

__all__ = [
    "EMPTY_DECLARATION",
    "NO_ENTITY",
    "ArtifactError",
    "ArtifactFile",
    "ArtifactIOError",
    "ArtifactParseError",
    "ArtifactParser",
    "BuildError",
    "Cursor",
    "CursorExhaustedError",
    "DatabaseLifecycle",
    "EntityDeclaration",
    "EntityInfo",
    "EntityKeyResolver",
    "FileError",
    "FileRecord",
    "IncrementalIndexBuilder",
    "IndexStats",
    "LifecycleReport",
    "ParameterInfo",
    "ParameterMode",
    "ParsedUnit",
    "Reference",
    "SchemaError",
    "SourceLocation",
    "StageOutcome",
    "StaleCursorError",
    "StoreBusyError",
    "StoreConnectionError",
    "UpdatePlan",
    "UpdateStats",
    "XrefDatabase",
    "XrefError",
    "XrefIndex",
    "parse_artifact",
]

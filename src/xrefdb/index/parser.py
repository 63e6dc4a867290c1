"""Parser for compiler cross-reference artifact files.

An artifact describes one compilation unit: the source files it owns, the
files it depends on (with their time stamps and checksums) and, per file, the
entities declared there together with every place they are referenced.

The format is line oriented.  Header records start with a capital letter and
a space::

    V "XREF 1.0"
    U pkg%b pkg.adb 1f2e3d4c
    D pkg.adb 20240105103000 1f2e3d4c pkg%b
    D pkg.ads 20240105102900 0a0b0c0d pkg%s

Cross-reference sections open with ``X <dep-index> <file>`` and list one
entity per line::

    X 2 pkg.ads
    5U14*Do_It 5>22 5<35 1|10b14 1|20t4
    5i22 A
    5f35 B

``<line><kind><col><level><name>`` declares the entity, then every reference
is ``[<dep-index>|]<line><ref-kind><col>``.  A ``<dep-index>|`` prefix switches
the current file for the rest of the line.  Lines starting with ``.`` continue
the previous entity line.

ArtifactParser never touches the store.  Malformed input raises
ArtifactParseError carrying the partial result parsed so far.
"""

from __future__ import annotations

import hashlib
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import NoReturn, Sequence

from xrefdb.index.errors import ArtifactIOError, ArtifactParseError
from xrefdb.index.schema import EntityKey, ParameterMode, SourceLocation

logger = logging.getLogger(__name__)

# ── Record patterns ───────────────────────────────────────────────────────────

_VERSION_RE = re.compile(r'^"([^"]*)"$')
_STAMP_RE = re.compile(r"^\d{14}$")
_CHECKSUM_RE = re.compile(r"^[0-9a-fA-F]{8}$")
_ENTITY_RE = re.compile(r"^(\d+)([A-Za-z+])(\d+)([* ])(\S+)(.*)$")
_REF_RE = re.compile(r"^(?:(\d+)\|)?(\d+)([^\d\s|])(\d+)$")

# Header records that carry nothing the index stores.
_IGNORED_RECORDS = frozenset({"A", "W"})
_KNOWN_RECORDS = frozenset({"V", "U", "D", "X"}) | _IGNORED_RECORDS

# ── Kind tables ───────────────────────────────────────────────────────────────

ENTITY_KINDS: dict[str, str] = {
    "K": "package",
    "U": "procedure",
    "V": "function",
    "I": "integer-type",
    "i": "integer-object",
    "F": "float-type",
    "f": "float-object",
    "E": "enumeration-type",
    "e": "enumeration-literal",
    "R": "record-type",
    "r": "record-object",
    "A": "array-type",
    "a": "array-object",
    "P": "access-type",
    "p": "access-object",
    "B": "boolean-type",
    "b": "boolean-object",
    "T": "task-type",
    "t": "task-object",
    "L": "label",
    "X": "exception",
    "Z": "generic-formal-type",
    "z": "generic-formal-object",
    "y": "abstract-function",
    "x": "abstract-procedure",
    "+": "private-type",
}

REFERENCE_KINDS: dict[str, str] = {
    "r": "read",
    "m": "write",
    "s": "call",
    "R": "dispatching-call",
    "b": "body",
    "c": "completion",
    "e": "end-of-spec",
    "t": "end-of-body",
    "l": "label",
    "w": "with",
    "i": "implicit",
    "k": "parent",
    "p": "primitive",
    "x": "type-extension",
    "d": "discriminant",
    "o": "own-variable",
    "z": "generic-formal",
}

PARAMETER_TAGS: dict[str, ParameterMode] = {
    ">": ParameterMode.IN,
    "<": ParameterMode.OUT,
    "=": ParameterMode.IN_OUT,
    "^": ParameterMode.ACCESS,
}

_SCOPE_OPENERS = frozenset({"body"})
_SCOPE_CLOSERS = frozenset({"end-of-spec", "end-of-body"})


# ── Parsed unit model ─────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Dependency:
    path: str
    stamp: str
    checksum: str
    unit_name: str = ""


@dataclass(frozen=True)
class DeclarationRecord:
    key: EntityKey
    kind: str
    library_level: bool = False
    owned: bool = True   # declared in a source file this unit owns


@dataclass(frozen=True)
class ReferenceRecord:
    target: EntityKey
    location: SourceLocation
    kind: str
    scope: EntityKey | None = None


@dataclass(frozen=True)
class ParameterRecord:
    owner: EntityKey
    parameter: EntityKey   # name is "" when the declaration is not in this unit
    mode: ParameterMode
    ordinal: int           # 1-based


@dataclass(frozen=True)
class ParsedUnit:
    """Everything one artifact says, with targets expressed as keys."""

    path: str
    unit_name: str = ""
    version: str = ""
    checksum: str = ""
    source_files: tuple[str, ...] = ()
    dependencies: tuple[Dependency, ...] = ()
    declarations: tuple[DeclarationRecord, ...] = ()
    references: tuple[ReferenceRecord, ...] = ()
    parameters: tuple[ParameterRecord, ...] = ()

    @property
    def owned_declarations(self) -> tuple[DeclarationRecord, ...]:
        return tuple(d for d in self.declarations if d.owned)


# ── Public API ────────────────────────────────────────────────────────────────

def normalize_path(path: str | Path) -> str:
    """Return *path* with forward slashes, as stored in the index."""
    return str(path).replace("\\", "/")


def checksum_bytes(data: bytes) -> str:
    return hashlib.sha1(data).hexdigest()


class ArtifactParser:
    """Turn artifact files into ParsedUnit values.

    Usage::

        parser = ArtifactParser()
        unit = parser.parse_file(Path("obj/pkg.ali"))
    """

    def parse_file(self, path: str | Path) -> ParsedUnit:
        """Read and parse one artifact file.

        Raises ArtifactIOError when the file cannot be read and
        ArtifactParseError when its content is malformed.
        """
        display = normalize_path(path)
        try:
            with open(path, "rb") as fh:
                data = fh.read()
        except OSError as exc:
            raise ArtifactIOError(display, f"cannot read artifact: {exc}") from exc
        return self.parse_bytes(data, display)

    def parse_bytes(self, data: bytes, path: str) -> ParsedUnit:
        try:
            text = data.decode("utf-8")
        except UnicodeDecodeError as exc:
            line = data[: exc.start].count(b"\n") + 1
            raise ArtifactParseError(path, line, "artifact is not valid UTF-8") from exc
        unit = parse_artifact(text, path, checksum=checksum_bytes(data))
        logger.debug(
            "Parsed %s (%s): %d declarations, %d references, %d parameters",
            path, unit.unit_name or "?", len(unit.declarations),
            len(unit.references), len(unit.parameters),
        )
        return unit


def parse_artifact(text: str, path: str, checksum: str = "") -> ParsedUnit:
    """Parse artifact *text*; *path* only labels errors and the result."""
    return _UnitBuilder(path, checksum).feed(text)


# ── Internal helpers ──────────────────────────────────────────────────────────

@dataclass
class _EntityLine:
    """State of the entity line currently receiving references."""

    key: EntityKey
    current_file: str
    parameter_count: int = 0


@dataclass
class _UnitBuilder:
    path: str
    checksum: str
    version: str | None = None
    unit_name: str = ""
    source_files: list[str] = field(default_factory=list)
    dependencies: list[Dependency] = field(default_factory=list)
    declarations: dict[EntityKey, DeclarationRecord] = field(default_factory=dict)
    references: list[ReferenceRecord] = field(default_factory=list)
    # (owner, parameter location, mode, ordinal)
    raw_parameters: list[tuple[EntityKey, SourceLocation, ParameterMode, int]] = field(
        default_factory=list
    )
    section_file: str | None = None
    entity: _EntityLine | None = None
    lineno: int = 0

    def feed(self, text: str) -> ParsedUnit:
        for lineno, raw in enumerate(text.splitlines(), start=1):
            self.lineno = lineno
            if not raw.strip() or raw.startswith("--"):
                continue
            self._record(raw.rstrip())

        if self.version is None:
            self._fail("missing version header")
        return self.freeze()

    # ── Records ───────────────────────────────────────────────────────────────

    def _record(self, line: str) -> None:
        tag = line[0]

        if self.version is None and tag != "V":
            self._fail(f"expected version header, got {tag!r} record")

        if tag.isdigit():
            self._entity_line(line)
            return
        if tag == ".":
            self._continuation(line[1:])
            return
        if tag not in _KNOWN_RECORDS:
            self._fail(f"unknown record type {tag!r}")
        if len(line) < 3 or line[1] != " ":
            self._fail(f"truncated {tag} record")

        body = line[2:].strip()
        if tag == "V":
            self._version(body)
        elif tag == "U":
            self._unit(body)
        elif tag == "D":
            self._dependency(body)
        elif tag == "X":
            self._section(body)
        # A and W records are accepted and ignored.

    def _version(self, body: str) -> None:
        if self.version is not None:
            self._fail("duplicate version header")
        m = _VERSION_RE.match(body)
        if not m:
            self._fail(f"malformed version {body!r}")
        self.version = m.group(1)

    def _unit(self, body: str) -> None:
        fields = body.split()
        if len(fields) != 3:
            self._fail("unit record needs <unit> <source-file> <checksum>")
        unit, source, checksum = fields
        self._check_checksum(checksum)
        if not self.unit_name:
            self.unit_name = unit
        source = normalize_path(source)
        if source not in self.source_files:
            self.source_files.append(source)

    def _dependency(self, body: str) -> None:
        fields = body.split()
        if len(fields) not in (3, 4):
            self._fail("dependency record needs <file> <stamp> <checksum> [<unit>]")
        if not _STAMP_RE.match(fields[1]):
            self._fail(f"malformed time stamp {fields[1]!r}")
        self._check_checksum(fields[2])
        self.dependencies.append(Dependency(
            path=normalize_path(fields[0]),
            stamp=fields[1],
            checksum=fields[2].lower(),
            unit_name=fields[3] if len(fields) == 4 else "",
        ))

    def _section(self, body: str) -> None:
        fields = body.split()
        if len(fields) != 2:
            self._fail("xref section needs <dep-index> <file>")
        dep = self._dependency_at(fields[0])
        file = normalize_path(fields[1])
        if dep.path != file:
            self._fail(f"section file {file!r} does not match dependency {fields[0]} ({dep.path!r})")
        self.section_file = file
        self.entity = None

    def _entity_line(self, line: str) -> None:
        if self.section_file is None:
            self._fail("entity line outside an xref section")
        m = _ENTITY_RE.match(line)
        if not m:
            self._fail("truncated entity line")
        decl_line, kind_char, decl_col, level, name, rest = m.groups()

        key = EntityKey(name, self.section_file, int(decl_line), int(decl_col))
        # A later line for the same key wins
        self.declarations[key] = DeclarationRecord(
            key=key,
            kind=ENTITY_KINDS.get(kind_char, "unknown"),
            library_level=level == "*",
        )
        self.entity = _EntityLine(key=key, current_file=self.section_file)
        self._references(self.entity, rest.split())

    def _continuation(self, rest: str) -> None:
        if self.entity is None:
            self._fail("continuation line without an entity line")
        self._references(self.entity, rest.split())

    def _references(self, entity: _EntityLine, tokens: list[str]) -> None:
        for token in tokens:
            m = _REF_RE.match(token)
            if not m:
                self._fail(f"malformed reference {token!r}")
            dep_index, line, kind_char, col = m.groups()
            if dep_index is not None:
                entity.current_file = self._dependency_at(dep_index).path
            location = SourceLocation(entity.current_file, int(line), int(col))

            mode = PARAMETER_TAGS.get(kind_char)
            if mode is not None:
                entity.parameter_count += 1
                self.raw_parameters.append(
                    (entity.key, location, mode, entity.parameter_count)
                )
                continue

            kind = REFERENCE_KINDS.get(kind_char)
            if kind is None:
                self._fail(f"unknown reference kind {kind_char!r} in {token!r}")
            self.references.append(ReferenceRecord(
                target=entity.key,
                location=location,
                kind=kind,
            ))

    # ── Validation ────────────────────────────────────────────────────────────

    def _dependency_at(self, text: str) -> Dependency:
        index = int(text)
        if not 1 <= index <= len(self.dependencies):
            self._fail(f"unknown dependency index {index}")
        return self.dependencies[index - 1]

    def _check_checksum(self, text: str) -> None:
        if not _CHECKSUM_RE.match(text):
            self._fail(f"malformed checksum {text!r}")

    def _fail(self, message: str) -> NoReturn:
        raise ArtifactParseError(self.path, self.lineno, message, partial=self.freeze())

    # ── Result assembly ───────────────────────────────────────────────────────

    def freeze(self) -> ParsedUnit:
        owned_files = set(self.source_files)
        declarations = tuple(
            DeclarationRecord(
                key=d.key,
                kind=d.kind,
                library_level=d.library_level,
                owned=d.key.file in owned_files,
            )
            for d in self.declarations.values()
        )
        return ParsedUnit(
            path=self.path,
            unit_name=self.unit_name,
            version=self.version or "",
            checksum=self.checksum,
            source_files=tuple(self.source_files),
            dependencies=tuple(self.dependencies),
            declarations=declarations,
            references=tuple(self._scoped_references()),
            parameters=tuple(self._named_parameters()),
        )

    def _named_parameters(self) -> list[ParameterRecord]:
        by_location = {key.location: key for key in self.declarations}
        result: list[ParameterRecord] = []
        for owner, location, mode, ordinal in self.raw_parameters:
            parameter = by_location.get(location) or EntityKey("", *location)
            result.append(ParameterRecord(owner=owner, parameter=parameter, mode=mode, ordinal=ordinal))
        return result

    def _scoped_references(self) -> list[ReferenceRecord]:
        ranges = _scope_ranges(self.declarations, self.references)
        if not ranges:
            return list(self.references)

        result: list[ReferenceRecord] = []
        for ref in self.references:
            scope = _innermost_scope(ranges.get(ref.location.file, ()), ref.location)
            result.append(ReferenceRecord(
                target=ref.target,
                location=ref.location,
                kind=ref.kind,
                scope=scope,
            ))
        return result


_Position = tuple[int, int]


def _scope_ranges(
    declarations: dict[EntityKey, DeclarationRecord],
    references: list[ReferenceRecord],
) -> dict[str, list[tuple[_Position, _Position, EntityKey]]]:
    """Return per-file (start, end, owner) ranges sorted by start.

    A range opens at the entity's declaration or at a body reference in the
    same file, and closes at the next end-of-spec/end-of-body reference.
    """
    starts: dict[tuple[EntityKey, str], list[_Position]] = {}
    ends: dict[tuple[EntityKey, str], list[_Position]] = {}

    for ref in references:
        slot = (ref.target, ref.location.file)
        pos = (ref.location.line, ref.location.column)
        if ref.kind in _SCOPE_OPENERS:
            starts.setdefault(slot, []).append(pos)
        elif ref.kind in _SCOPE_CLOSERS:
            ends.setdefault(slot, []).append(pos)

    ranges: dict[str, list[tuple[_Position, _Position, EntityKey]]] = {}
    for (owner, file), end_positions in ends.items():
        candidates = list(starts.get((owner, file), []))
        if owner in declarations and owner.file == file:
            candidates.append((owner.line, owner.column))
        candidates.sort()
        for end in sorted(end_positions):
            # Pair each end with the closest unused opener before it
            opener = None
            for pos in reversed(candidates):
                if pos < end:
                    opener = pos
                    break
            if opener is None:
                continue
            candidates.remove(opener)
            ranges.setdefault(file, []).append((opener, end, owner))

    for file_ranges in ranges.values():
        file_ranges.sort(key=lambda r: r[0])
    return ranges


def _innermost_scope(
    ranges: Sequence[tuple[_Position, _Position, EntityKey]],
    location: SourceLocation,
) -> EntityKey | None:
    pos = (location.line, location.column)
    best: EntityKey | None = None
    for start, end, owner in ranges:
        if start >= pos:
            break
        # Boundaries belong to the enclosing scope
        if pos < end:
            best = owner
    return best

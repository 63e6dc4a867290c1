"""Tests for ArtifactParser — artifact text to ParsedUnit."""

from __future__ import annotations

import hashlib
from pathlib import Path

import pytest

from xrefdb.index.errors import ArtifactIOError, ArtifactParseError
from xrefdb.index.parser import ArtifactParser, ParsedUnit, parse_artifact
from xrefdb.index.schema import EntityKey, ParameterMode, SourceLocation


HEADER = """\
V "XREF 1.0"
U pkg%s pkg.ads 0a0b0c0d
D pkg.ads 20240105102900 0a0b0c0d pkg%s
D main.adb 20240105103100 11223344 main%b
"""


@pytest.fixture()
def parser() -> ArtifactParser:
    return ArtifactParser()


def _parse(body: str, header: str = HEADER) -> ParsedUnit:
    return parse_artifact(header + body, "obj/pkg.ali")


def _decl(unit: ParsedUnit, name: str):
    return next(d for d in unit.declarations if d.key.name == name)


# ── Header records ────────────────────────────────────────────────────────────


class TestHeader:
    def test_version_and_unit(self) -> None:
        unit = _parse("")
        assert unit.version == "XREF 1.0"
        assert unit.unit_name == "pkg%s"
        assert unit.source_files == ("pkg.ads",)

    def test_dependencies_in_order(self) -> None:
        unit = _parse("")
        assert [d.path for d in unit.dependencies] == ["pkg.ads", "main.adb"]
        assert unit.dependencies[0].stamp == "20240105102900"
        assert unit.dependencies[1].unit_name == "main%b"

    def test_dependency_without_unit(self) -> None:
        unit = _parse("D extra.ads 20240105102900 0a0b0c0d\n")
        assert unit.dependencies[-1].unit_name == ""

    def test_backslash_paths_normalized(self) -> None:
        text = 'V "XREF 1.0"\nU pkg%s src\\pkg.ads 0a0b0c0d\nD src\\pkg.ads 20240105102900 0a0b0c0d\n'
        unit = parse_artifact(text, "pkg.ali")
        assert unit.source_files == ("src/pkg.ads",)
        assert unit.dependencies[0].path == "src/pkg.ads"

    def test_multiple_units_share_artifact(self) -> None:
        unit = _parse("U pkg%b pkg.adb 1f2e3d4c\n")
        assert unit.unit_name == "pkg%s"
        assert unit.source_files == ("pkg.ads", "pkg.adb")

    def test_ignored_records(self) -> None:
        unit = _parse("A -O2\nW ada.text_io%s a-textio.adb a-textio.ali\n")
        assert unit.declarations == ()

    def test_blank_and_comment_lines(self) -> None:
        unit = _parse("\n-- generated\n\nX 1 pkg.ads\n1K9*Pkg\n")
        assert [d.key.name for d in unit.declarations] == ["Pkg"]


# ── Entities and references ───────────────────────────────────────────────────


class TestEntities:
    def test_library_level_declaration(self) -> None:
        unit = _parse("X 1 pkg.ads\n1K9*Pkg\n")
        decl = _decl(unit, "Pkg")
        assert decl.key == EntityKey("Pkg", "pkg.ads", 1, 9)
        assert decl.kind == "package"
        assert decl.library_level is True
        assert decl.owned is True

    def test_local_declaration(self) -> None:
        unit = _parse("X 1 pkg.ads\n3i22 A\n")
        decl = _decl(unit, "A")
        assert decl.kind == "integer-object"
        assert decl.library_level is False

    def test_unknown_entity_kind(self) -> None:
        unit = _parse("X 1 pkg.ads\n4Q5 Odd\n")
        assert _decl(unit, "Odd").kind == "unknown"

    def test_declarations_in_other_files_not_owned(self) -> None:
        unit = _parse("X 2 main.adb\n3U11*Main\n")
        assert _decl(unit, "Main").owned is False
        assert unit.owned_declarations == ()

    def test_references_default_to_section_file(self) -> None:
        unit = _parse("X 1 pkg.ads\n3U14*Do_It 10e4\n")
        ref = unit.references[0]
        assert ref.target == EntityKey("Do_It", "pkg.ads", 3, 14)
        assert ref.location == SourceLocation("pkg.ads", 10, 4)
        assert ref.kind == "end-of-spec"

    def test_dependency_prefix_is_sticky(self) -> None:
        unit = _parse("X 1 pkg.ads\n3U14*Do_It 2|5s7 6s7 1|9r2\n")
        files = [r.location.file for r in unit.references]
        assert files == ["main.adb", "main.adb", "pkg.ads"]

    def test_continuation_line(self) -> None:
        unit = _parse("X 1 pkg.ads\n3U14*Do_It 2|5s7\n.6s7 7s7\n")
        lines = [(r.location.file, r.location.line) for r in unit.references]
        assert lines == [("main.adb", 5), ("main.adb", 6), ("main.adb", 7)]

    def test_continuation_resets_at_new_section(self) -> None:
        with pytest.raises(ArtifactParseError, match="continuation"):
            _parse("X 1 pkg.ads\n3U14*Do_It\nX 2 main.adb\n.6s7\n")

    def test_continuation_before_any_entity(self) -> None:
        with pytest.raises(ArtifactParseError, match="continuation") as exc_info:
            _parse("X 1 pkg.ads\n.6s7\n")
        assert exc_info.value.line == 6

    def test_continuation_keeps_entity_state(self) -> None:
        unit = _parse("X 1 pkg.ads\n3U14*Do_It 3>22\n.2|5s7 3<35\n")
        assert [(p.ordinal, p.parameter.file) for p in unit.parameters] == [(1, "pkg.ads"), (2, "main.adb")]
        assert [r.location.file for r in unit.references] == ["main.adb"]

    def test_parameters_in_order(self) -> None:
        unit = _parse("X 1 pkg.ads\n3U14*Do_It 3>22 3<35\n3i22 A\n3f35 B\n")
        params = [(p.parameter.name, p.mode, p.ordinal) for p in unit.parameters]
        assert params == [("A", ParameterMode.IN, 1), ("B", ParameterMode.OUT, 2)]
        assert all(p.owner.name == "Do_It" for p in unit.parameters)

    def test_parameter_tags_are_not_references(self) -> None:
        unit = _parse("X 1 pkg.ads\n3U14*Do_It 3=22 3^35\n")
        assert unit.references == ()
        assert [p.mode for p in unit.parameters] == [ParameterMode.IN_OUT, ParameterMode.ACCESS]

    def test_parameter_declared_elsewhere_keeps_location_only(self) -> None:
        unit = _parse("X 1 pkg.ads\n3U14*Do_It 3>22\n")
        assert unit.parameters[0].parameter == EntityKey("", "pkg.ads", 3, 22)


# ── Scopes ────────────────────────────────────────────────────────────────────


class TestScopes:
    BODY = (
        "X 1 pkg.ads\n"
        "1K9*Pkg 12e5\n"
        "3U14*Do_It 10e4\n"
        "5i7 X 6m7 11r3\n"
    )

    def test_innermost_scope_wins(self) -> None:
        unit = _parse(self.BODY)
        by_line = {r.location.line: r for r in unit.references}
        assert by_line[6].scope == EntityKey("Do_It", "pkg.ads", 3, 14)
        assert by_line[11].scope == EntityKey("Pkg", "pkg.ads", 1, 9)

    def test_boundary_belongs_to_enclosing_scope(self) -> None:
        unit = _parse(self.BODY)
        by_line = {r.location.line: r for r in unit.references}
        assert by_line[10].scope == EntityKey("Pkg", "pkg.ads", 1, 9)
        assert by_line[12].scope is None

    def test_body_reference_opens_scope(self) -> None:
        unit = _parse("X 2 main.adb\n3U11*Main 20b4 30t5\n25i7 Y 26m7\n")
        ref = next(r for r in unit.references if r.location.line == 26)
        assert ref.scope == EntityKey("Main", "main.adb", 3, 11)

    def test_no_ranges_means_no_scope(self) -> None:
        unit = _parse("X 1 pkg.ads\n3U14*Do_It 2|5s7\n")
        assert unit.references[0].scope is None


# ── Errors ────────────────────────────────────────────────────────────────────


class TestErrors:
    def test_missing_version(self) -> None:
        with pytest.raises(ArtifactParseError, match="version") as exc_info:
            parse_artifact("U pkg%s pkg.ads 0a0b0c0d\n", "pkg.ali")
        assert exc_info.value.line == 1

    def test_empty_file(self) -> None:
        with pytest.raises(ArtifactParseError, match="missing version"):
            parse_artifact("", "pkg.ali")

    def test_duplicate_version(self) -> None:
        with pytest.raises(ArtifactParseError, match="duplicate"):
            _parse('V "XREF 2.0"\n')

    def test_unknown_record_reports_line(self) -> None:
        with pytest.raises(ArtifactParseError) as exc_info:
            _parse("X 1 pkg.ads\n1K9*Pkg\nQ what\n")
        assert exc_info.value.line == 7
        assert exc_info.value.kind == "parse"
        assert exc_info.value.path == "obj/pkg.ali"

    def test_partial_result_attached(self) -> None:
        with pytest.raises(ArtifactParseError) as exc_info:
            _parse("X 1 pkg.ads\n1K9*Pkg\n3U14*Do_It 5?9\n")
        partial = exc_info.value.partial
        assert partial is not None
        assert {d.key.name for d in partial.declarations} == {"Pkg", "Do_It"}

    def test_malformed_stamp(self) -> None:
        with pytest.raises(ArtifactParseError, match="time stamp"):
            _parse("D x.ads 2024 0a0b0c0d\n")

    def test_malformed_checksum(self) -> None:
        with pytest.raises(ArtifactParseError, match="checksum"):
            _parse("U x%s x.ads nothex!!\n")

    def test_section_must_match_dependency(self) -> None:
        with pytest.raises(ArtifactParseError, match="does not match"):
            _parse("X 1 main.adb\n")

    def test_unknown_dependency_index(self) -> None:
        with pytest.raises(ArtifactParseError, match="unknown dependency index 9"):
            _parse("X 1 pkg.ads\n3U14*Do_It 9|5s7\n")

    def test_entity_outside_section(self) -> None:
        with pytest.raises(ArtifactParseError, match="outside"):
            _parse("1K9*Pkg\n")

    def test_truncated_entity_line(self) -> None:
        with pytest.raises(ArtifactParseError, match="truncated"):
            _parse("X 1 pkg.ads\n12\n")

    def test_malformed_reference(self) -> None:
        with pytest.raises(ArtifactParseError, match="malformed reference"):
            _parse("X 1 pkg.ads\n3U14*Do_It 5s\n")

    def test_unknown_reference_kind(self) -> None:
        with pytest.raises(ArtifactParseError, match="unknown reference kind"):
            _parse("X 1 pkg.ads\n3U14*Do_It 5#7\n")


# ── File access ───────────────────────────────────────────────────────────────


class TestParseFile:
    def test_parse_file(self, parser: ArtifactParser, tmp_path: Path) -> None:
        path = tmp_path / "pkg.ali"
        data = (HEADER + "X 1 pkg.ads\n1K9*Pkg\n").encode("utf-8")
        path.write_bytes(data)
        unit = parser.parse_file(path)
        assert unit.path == path.as_posix()
        assert unit.checksum == hashlib.sha1(data).hexdigest()

    def test_missing_file(self, parser: ArtifactParser, tmp_path: Path) -> None:
        with pytest.raises(ArtifactIOError) as exc_info:
            parser.parse_file(tmp_path / "gone.ali")
        assert exc_info.value.kind == "io"

    def test_invalid_utf8(self, parser: ArtifactParser, tmp_path: Path) -> None:
        path = tmp_path / "bad.ali"
        path.write_bytes(b'V "XREF 1.0"\nU \xff\xfe\n')
        with pytest.raises(ArtifactParseError) as exc_info:
            parser.parse_file(path)
        assert exc_info.value.line == 2

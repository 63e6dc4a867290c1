"""Tests for xrefdb.__main__ — CLI entry point dispatch and sub-commands."""

from __future__ import annotations

import sqlite3
from pathlib import Path
from unittest.mock import patch

import pytest

from xrefdb.__main__ import _collect_artifacts, _parse_update_flags, main


# ── main() dispatch ───────────────────────────────────────────────────────────


class TestMainDispatch:
    def test_update_dispatches_to_run_update(self) -> None:
        with patch("xrefdb.__main__._run_update") as mock_update:
            with patch("sys.argv", ["xrefdb", "update", "--db", "x.db"]):
                main()
            mock_update.assert_called_once_with(["--db", "x.db"])

    def test_find_dispatches_to_run_find(self) -> None:
        with patch("xrefdb.__main__._run_find") as mock_find:
            main(["find", "--db", "x.db", "Foo", "foo.ads"])
            mock_find.assert_called_once_with(["--db", "x.db", "Foo", "foo.ads"])

    def test_help_exits_zero(self, capsys) -> None:
        with pytest.raises(SystemExit) as exc_info:
            main(["--help"])
        assert exc_info.value.code == 0
        assert "Usage: xrefdb update" in capsys.readouterr().out

    def test_no_args_prints_help(self) -> None:
        with pytest.raises(SystemExit) as exc_info:
            main([])
        assert exc_info.value.code == 0

    def test_unknown_command_exits_with_error(self) -> None:
        with pytest.raises(SystemExit) as exc_info:
            main(["serve"])
        assert exc_info.value.code == 1


# ── _parse_update_flags ───────────────────────────────────────────────────────


class TestParseUpdateFlags:
    def test_all_flags(self) -> None:
        f = _parse_update_flags([
            "--db", "x.db", "--seed", "seed.db", "--output", "out.db",
            "--runtime", "rts", "--no-runtime", "obj", "extra.ali",
        ])
        assert f.db == Path("x.db")
        assert f.seed == Path("seed.db")
        assert f.output == Path("out.db")
        assert f.runtime_dirs == [Path("rts")]
        assert f.include_runtime is False
        assert f.inputs == [Path("obj"), Path("extra.ali")]

    def test_missing_db_exits(self) -> None:
        with pytest.raises(SystemExit) as exc_info:
            _parse_update_flags(["obj"])
        assert exc_info.value.code == 1

    def test_unknown_flag_exits(self) -> None:
        with pytest.raises(SystemExit) as exc_info:
            _parse_update_flags(["--db", "x.db", "--fast"])
        assert exc_info.value.code == 1


class TestCollectArtifacts:
    def test_directories_searched_recursively(self, tmp_path: Path) -> None:
        (tmp_path / "sub").mkdir()
        (tmp_path / "a.ali").write_text("", encoding="utf-8")
        (tmp_path / "sub" / "b.ALI").write_text("", encoding="utf-8")
        (tmp_path / "notes.txt").write_text("", encoding="utf-8")
        found = _collect_artifacts([tmp_path], [".ali"], is_runtime=True)
        assert [Path(f.path).name for f in found] == ["a.ali", "b.ALI"]
        assert all(f.is_runtime for f in found)

    def test_files_taken_as_given(self, tmp_path: Path) -> None:
        found = _collect_artifacts([tmp_path / "x.dat"], [".ali"], is_runtime=False)
        assert [f.path for f in found] == [str(tmp_path / "x.dat")]


# ── update / find ─────────────────────────────────────────────────────────────


class TestCommands:
    @pytest.fixture()
    def db_path(self, tmp_path: Path, artifact_dir: Path, pkg_ali: Path, main_ali: Path) -> Path:
        path = tmp_path / "xref.db"
        main(["update", "--db", str(path), str(artifact_dir)])
        return path

    def test_update_summary(self, tmp_path: Path, artifact_dir: Path, pkg_ali: Path, main_ali: Path, capsys) -> None:
        main(["update", "--db", str(tmp_path / "xref.db"), str(artifact_dir)])
        out = capsys.readouterr().out
        assert "Done: +2 added, 0 updated" in out
        assert "5 entities" in out

    def test_update_reports_errors(self, tmp_path: Path, write_artifact, capsys) -> None:
        write_artifact("broken.ali", 'V "XREF 1.0"\nQ nope\n')
        main(["update", "--db", str(tmp_path / "xref.db"), str(tmp_path / "obj")])
        assert "parse error" in capsys.readouterr().out

    def test_find(self, db_path: Path, capsys) -> None:
        capsys.readouterr()
        main(["find", "--db", str(db_path), "Do_It", "pkg.ads"])
        out = capsys.readouterr().out.splitlines()
        assert out[0] == "Do_It (procedure) pkg.ads:3:14"
        assert "  param 1: A in" in out
        assert "  param 2: B out" in out
        assert sum("main.adb:" in line for line in out) == 2

    def test_find_uses_store_config(self, db_path: Path, tmp_path: Path, monkeypatch, capsys) -> None:
        (tmp_path / ".xrefdb").mkdir(exist_ok=True)
        (tmp_path / ".xrefdb" / "config.yaml").write_text(
            "store:\n  journal_mode: DELETE\n", encoding="utf-8"
        )
        monkeypatch.chdir(tmp_path)
        capsys.readouterr()
        main(["find", "--db", str(db_path), "Do_It", "pkg.ads"])
        assert capsys.readouterr().out.startswith("Do_It (procedure)")
        conn = sqlite3.connect(db_path)
        try:
            assert conn.execute("PRAGMA journal_mode").fetchone()[0] == "delete"
        finally:
            conn.close()

    def test_find_unknown_entity(self, db_path: Path) -> None:
        with pytest.raises(SystemExit) as exc_info:
            main(["find", "--db", str(db_path), "Nope", "pkg.ads"])
        assert exc_info.value.code == 1

    def test_find_missing_index(self, tmp_path: Path) -> None:
        with pytest.raises(SystemExit) as exc_info:
            main(["find", "--db", str(tmp_path / "none.db"), "Do_It", "pkg.ads"])
        assert exc_info.value.code == 1
        assert not (tmp_path / "none.db").exists()

    def test_find_bad_line(self, db_path: Path) -> None:
        with pytest.raises(SystemExit) as exc_info:
            main(["find", "--db", str(db_path), "Do_It", "pkg.ads", "three"])
        assert exc_info.value.code == 1

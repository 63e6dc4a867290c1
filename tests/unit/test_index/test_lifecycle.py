"""Tests for DatabaseLifecycle — bootstrap, staging, commit and export stages."""

from __future__ import annotations

import sqlite3
from pathlib import Path

import pytest

from xrefdb.core.config import IndexConfig, XrefConfig
from xrefdb.index.builder import IncrementalIndexBuilder
from xrefdb.index.db import XrefDatabase
from xrefdb.index.errors import SchemaError
from xrefdb.index.lifecycle import STAGES, DatabaseLifecycle


def _dump(db: XrefDatabase) -> dict[str, list[tuple]]:
    tables = {
        "files": "SELECT path, kind, stamp, is_runtime FROM files",
        "entities": "SELECT id, name, kind, decl_line, decl_column FROM entities",
        "refs": "SELECT entity_id, line, col, kind, scope_id FROM entity_refs",
        "params": "SELECT owner_id, ordinal, parameter_id, mode FROM parameters",
        "artifacts": "SELECT file_id, unit_name, mtime, checksum FROM artifacts",
    }
    return {
        name: sorted(tuple(row) for row in db.execute(sql))
        for name, sql in tables.items()
    }


@pytest.fixture()
def seed_path(tmp_path: Path, pkg_ali: Path, main_ali: Path) -> Path:
    path = tmp_path / "seed" / "xref.db"
    with XrefDatabase(path) as seed:
        IncrementalIndexBuilder(seed).update([pkg_ali, main_ali])
    return path


def _staged_config(threshold: int) -> XrefConfig:
    return XrefConfig(index=IndexConfig(memory_threshold=threshold))


# ── Bootstrap ─────────────────────────────────────────────────────────────────


class TestBootstrap:
    def test_seed_copied_into_empty_target(
        self, db: XrefDatabase, seed_path: Path, pkg_ali: Path, main_ali: Path
    ) -> None:
        stats, report = DatabaseLifecycle(db).run([pkg_ali, main_ali], seed_path=seed_path)
        assert report.ran("bootstrap")
        assert (stats.added, stats.updated, stats.up_to_date) == (0, 0, 2)
        with XrefDatabase(seed_path, readonly=True) as seed:
            assert _dump(db) == _dump(seed)

    def test_skipped_without_seed(self, db: XrefDatabase, pkg_ali: Path) -> None:
        _, report = DatabaseLifecycle(db).run([pkg_ali])
        assert report.outcome("bootstrap").reason == "no seed"

    def test_skipped_when_target_has_content(
        self, db: XrefDatabase, seed_path: Path, write_unit
    ) -> None:
        IncrementalIndexBuilder(db).update([write_unit("other")])
        _, report = DatabaseLifecycle(db).run([], seed_path=seed_path)
        assert not report.ran("bootstrap")
        assert db.get_stats().total_entities == 1

    def test_skipped_when_seed_is_target(self, db: XrefDatabase) -> None:
        _, report = DatabaseLifecycle(db).run([], seed_path=db.path)
        assert report.outcome("bootstrap").reason == "seed is the target"

    def test_missing_seed_skipped(self, db: XrefDatabase, tmp_path: Path) -> None:
        _, report = DatabaseLifecycle(db).run([], seed_path=tmp_path / "nope.db")
        assert not report.ran("bootstrap")

    def test_bad_seed_schema(self, db: XrefDatabase, tmp_path: Path) -> None:
        bad = tmp_path / "bad.db"
        conn = sqlite3.connect(bad)
        conn.execute("CREATE TABLE notes (body TEXT)")
        conn.commit()
        conn.close()
        with pytest.raises(SchemaError):
            DatabaseLifecycle(db).run([], seed_path=bad)


# ── Staging ───────────────────────────────────────────────────────────────────


class TestStaging:
    def test_large_batch_staged_in_memory(
        self, tmp_path: Path, pkg_ali: Path, main_ali: Path
    ) -> None:
        path = tmp_path / "target.db"
        with XrefDatabase(path) as target:
            stats, report = DatabaseLifecycle(target, _staged_config(1)).run([pkg_ali, main_ali])
            assert stats.staged_in_memory is True
            assert report.ran("stage") and report.ran("commit")
            assert report.outcome("update").reason == "in memory"
        with XrefDatabase(path) as reopened:
            assert reopened.get_stats().total_entities == 5

    def test_staged_result_matches_direct(
        self, db: XrefDatabase, tmp_path: Path, pkg_ali: Path, main_ali: Path
    ) -> None:
        DatabaseLifecycle(db, _staged_config(0)).run([pkg_ali, main_ali])
        with XrefDatabase(tmp_path / "direct.db") as direct:
            DatabaseLifecycle(direct, _staged_config(100)).run([pkg_ali, main_ali])
            assert _dump(direct) == _dump(db)

    def test_small_batch_not_staged(self, db: XrefDatabase, pkg_ali: Path) -> None:
        stats, report = DatabaseLifecycle(db, _staged_config(5)).run([pkg_ali])
        assert stats.staged_in_memory is False
        assert not report.ran("stage")
        assert report.outcome("commit").reason == "not staged"

    def test_memory_target_never_staged(self, pkg_ali: Path) -> None:
        with XrefDatabase.in_memory() as target:
            stats, report = DatabaseLifecycle(target, _staged_config(0)).run([pkg_ali])
            assert not report.ran("stage")
            assert stats.added == 1

    def test_report_lists_every_stage(self, db: XrefDatabase) -> None:
        _, report = DatabaseLifecycle(db).run([])
        assert tuple(s.name for s in report.stages) == STAGES
        with pytest.raises(KeyError):
            report.outcome("deploy")


# ── Export ────────────────────────────────────────────────────────────────────


class TestExport:
    def test_export_copies_target(
        self, db: XrefDatabase, tmp_path: Path, pkg_ali: Path, main_ali: Path
    ) -> None:
        output = tmp_path / "out.db"
        _, report = DatabaseLifecycle(db).run([pkg_ali, main_ali], output_path=output)
        assert report.ran("export")
        with XrefDatabase(output, readonly=True) as exported:
            assert _dump(exported) == _dump(db)

    def test_export_to_target_skipped(self, db: XrefDatabase) -> None:
        _, report = DatabaseLifecycle(db).run([], output_path=db.path)
        assert report.outcome("export").reason == "output is the target"

    def test_export_to_missing_directory_skipped(self, db: XrefDatabase, tmp_path: Path) -> None:
        _, report = DatabaseLifecycle(db).run([], output_path=tmp_path / "no" / "out.db")
        assert not report.ran("export")
        assert not (tmp_path / "no").exists()

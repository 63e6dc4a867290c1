"""Integration tests: several update rounds through XrefIndex.

Exercises seed bootstrap, in-memory staging, export and incremental
re-merges together, checking the answers queries give after each round.
"""

from __future__ import annotations

from pathlib import Path
from typing import Callable

from xrefdb.core.config import IndexConfig, XrefConfig
from xrefdb.index.schema import ArtifactFile
from xrefdb.index.xref import XrefIndex


def _call_lines(index: XrefIndex) -> list[int]:
    do_it = index.get_entity("Do_It", "pkg.ads")
    with index.references(do_it) as cursor:
        return [r.location.line for r in cursor if r.kind == "call"]


class TestUpdateFlow:
    def test_seed_stage_export_rounds(
        self,
        tmp_path: Path,
        pkg_ali: Path,
        main_ali: Path,
        write_unit: Callable[..., Path],
        write_artifact: Callable[..., Path],
    ) -> None:
        runtime = [write_unit(f"rts{i}") for i in range(3)]
        files = [pkg_ali, main_ali] + [ArtifactFile(str(p), is_runtime=True) for p in runtime]
        config = XrefConfig(index=IndexConfig(memory_threshold=2, parse_workers=2))

        # Round 1: build a seed from scratch, staged in memory
        seed = tmp_path / "seed.db"
        with XrefIndex.open(seed, config) as index:
            first = index.update_index(files)
            assert first.staged_in_memory
            assert first.added == 5
            assert _call_lines(index) == [5, 6]

        # Round 2: a new project store bootstraps from the seed and exports
        target = tmp_path / "project" / "xref.db"
        exported = tmp_path / "export.db"
        with XrefIndex.open(target, config) as index:
            second = index.update_index(files, seed_path=seed, output_path=exported)
            assert second.up_to_date == 5
            assert not second.staged_in_memory
            assert index.last_report.ran("bootstrap")
            assert index.last_report.ran("export")

        # Round 3: one edited artifact, runtime excluded
        write_artifact(
            "main.ali",
            main_ali.read_text(encoding="utf-8").replace("1|6s7", "1|6s7 1|7s7"),
        )
        with XrefIndex.open(target, config) as index:
            third = index.update_index(files, include_runtime_files=False)
            assert (third.updated, third.up_to_date, third.runtime_skipped) == (1, 1, 3)
            assert _call_lines(index) == [5, 6, 7]
            assert index.stats().total_artifacts == 5

        # The exported copy still reflects round 2
        with XrefIndex.open(exported, config) as index:
            assert _call_lines(index) == [5, 6]
            assert index.get_entity("Rts0", "rts0.ads") is not None

"""DatabaseLifecycle — seed, stage, update, commit and export a target store.

One update moves data between up to four stores:

  seed     read-only store copied into an empty target (bootstrap)
  target   the store the caller opened
  memory   transient store used when many artifacts are stale (stage/commit)
  output   copy of the target written after the update (export)

Every copy is a page-level ``XrefDatabase.copy_to``.  Each stage reports
whether it ran and why in a StageOutcome.
"""

from __future__ import annotations

import dataclasses
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from xrefdb.core.config import XrefConfig
from xrefdb.index.builder import (
    ArtifactLike,
    CancelCheck,
    IncrementalIndexBuilder,
    ProgressCallback,
    UpdateStats,
)
from xrefdb.index.db import XrefDatabase
from xrefdb.index.parser import ArtifactParser

logger = logging.getLogger(__name__)

STAGES = ("bootstrap", "stage", "update", "commit", "export")


@dataclass(frozen=True)
class StageOutcome:
    name: str
    ran: bool
    reason: str = ""


@dataclass(frozen=True)
class LifecycleReport:
    stages: tuple[StageOutcome, ...]

    def outcome(self, name: str) -> StageOutcome:
        for stage in self.stages:
            if stage.name == name:
                return stage
        raise KeyError(name)

    def ran(self, name: str) -> bool:
        return self.outcome(name).ran


class DatabaseLifecycle:
    """Run one update of *target* through the lifecycle stages.

    The target stays owned by the caller; seed, memory and output stores are
    opened and closed here.
    """

    def __init__(
        self,
        target: XrefDatabase,
        config: XrefConfig | None = None,
        parser: ArtifactParser | None = None,
    ) -> None:
        self._target = target
        self._config = config or XrefConfig()
        self._parser = parser or ArtifactParser()

    def run(
        self,
        files: Iterable[ArtifactLike],
        include_runtime_files: bool = True,
        seed_path: Path | str | None = None,
        output_path: Path | str | None = None,
        should_cancel: CancelCheck | None = None,
        progress_callback: ProgressCallback | None = None,
    ) -> tuple[UpdateStats, LifecycleReport]:
        outcomes = [self.bootstrap(seed_path)]

        builder = IncrementalIndexBuilder(self._target, self._config.index, self._parser)
        plan = builder.plan(files, include_runtime_files=include_runtime_files)

        threshold = self._config.index.memory_threshold
        if self._target.is_memory:
            outcomes.append(StageOutcome("stage", False, "target is already in memory"))
        elif len(plan.stale) <= threshold:
            outcomes.append(StageOutcome(
                "stage", False, f"{len(plan.stale)} stale artifacts, threshold {threshold}"
            ))
        else:
            outcomes.append(StageOutcome(
                "stage", True, f"{len(plan.stale)} stale artifacts, threshold {threshold}"
            ))

        if not outcomes[-1].ran:
            stats = builder.apply(
                plan, should_cancel=should_cancel, progress_callback=progress_callback
            )
            outcomes.append(StageOutcome("update", True))
            outcomes.append(StageOutcome("commit", False, "not staged"))
        else:
            with XrefDatabase.in_memory(self._config.store) as memory:
                self._target.copy_to(memory)
                staged = IncrementalIndexBuilder(memory, self._config.index, self._parser)
                stats = staged.apply(
                    plan, should_cancel=should_cancel, progress_callback=progress_callback
                )
                outcomes.append(StageOutcome("update", True, "in memory"))
                memory.copy_to(self._target)
                outcomes.append(StageOutcome("commit", True))
            stats = dataclasses.replace(stats, staged_in_memory=True)
            logger.info("Committed in-memory update to %s", self._target.path)

        outcomes.append(self.export(output_path))

        report = LifecycleReport(stages=tuple(outcomes))
        logger.info(
            "Lifecycle: %s",
            ", ".join(f"{s.name}={'ran' if s.ran else 'skipped'}" for s in report.stages),
        )
        return stats, report

    # ── Stages ────────────────────────────────────────────────────────────────

    def bootstrap(self, seed_path: Path | str | None) -> StageOutcome:
        """Copy *seed_path* into the target when the target holds nothing yet."""
        if seed_path is None:
            return StageOutcome("bootstrap", False, "no seed")
        if self._target.has_content():
            return StageOutcome("bootstrap", False, "target already has content")
        if _same_store(seed_path, self._target):
            return StageOutcome("bootstrap", False, "seed is the target")
        if not Path(seed_path).is_file():
            return StageOutcome("bootstrap", False, f"seed {seed_path} not found")

        # Opening read-only validates the seed's schema
        with XrefDatabase(seed_path, readonly=True, config=self._config.store) as seed:
            seed.copy_to(self._target)
        logger.info("Bootstrapped %s from seed %s", self._target.path, seed_path)
        return StageOutcome("bootstrap", True)

    def export(self, output_path: Path | str | None) -> StageOutcome:
        """Copy the target to *output_path* after an update."""
        if output_path is None:
            return StageOutcome("export", False, "no output")
        if _same_store(output_path, self._target):
            return StageOutcome("export", False, "output is the target")
        parent = Path(output_path).resolve().parent
        if not parent.is_dir() or not os.access(parent, os.W_OK):
            logger.warning("Cannot export to %s: directory not writable", output_path)
            return StageOutcome("export", False, f"{parent} is not a writable directory")

        with XrefDatabase(output_path, config=self._config.store) as output:
            self._target.copy_to(output)
        logger.info("Exported %s to %s", self._target.path, output_path)
        return StageOutcome("export", True)


def _same_store(path: Path | str, db: XrefDatabase) -> bool:
    if db.is_memory:
        return False
    return Path(path).resolve() == Path(db.path).resolve()


__all__ = ["STAGES", "DatabaseLifecycle", "LifecycleReport", "StageOutcome"]

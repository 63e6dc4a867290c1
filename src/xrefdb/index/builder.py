"""IncrementalIndexBuilder — merge artifact files into the cross-reference store.

An update runs in two steps:

  plan()   compare each artifact's mtime (then content checksum) with what
           the store recorded, and sort the artifacts into stale, up to
           date, skipped runtime and unreadable
  apply()  parse the stale artifacts, then in one transaction purge their
           old rows, resolve the whole batch with EntityKeyResolver, insert
           the new rows, relink pending targets and prune orphaned entities

update() runs both against the builder's store.  DatabaseLifecycle calls
them separately so that apply() can run against an in-memory copy.

Per-artifact failures are collected in UpdateStats and never abort the
batch.  A failing artifact keeps no rows and no stamp, so the next update
retries it.
"""

from __future__ import annotations

import logging
import os
import sqlite3
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, Union

from xrefdb.core.config import IndexConfig
from xrefdb.index.db import XrefDatabase
from xrefdb.index.errors import ArtifactError, ArtifactIOError, StoreConnectionError
from xrefdb.index.parser import (
    ArtifactParser,
    DeclarationRecord,
    ParsedUnit,
    checksum_bytes,
    normalize_path,
)
from xrefdb.index.resolver import EntityKeyResolver, ResolvedUnit
from xrefdb.index.schema import ArtifactFile, EntityKey, FileRecord, IndexStats

logger = logging.getLogger(__name__)

ArtifactLike = Union[ArtifactFile, str, Path]
ProgressCallback = Callable[[int, int, str], None]
CancelCheck = Callable[[], bool]


@dataclass(frozen=True)
class FileError:
    """A per-artifact failure reported in UpdateStats."""

    path: str
    kind: str       # "io" or "parse"
    message: str
    line: int = 0

    @classmethod
    def from_exception(cls, exc: ArtifactError) -> FileError:
        return cls(
            path=exc.path,
            kind=exc.kind,
            message=getattr(exc, "reason", exc.message),
            line=getattr(exc, "line", 0),
        )


@dataclass(frozen=True)
class StaleArtifact:
    artifact: ArtifactFile
    mtime: float
    is_new: bool


@dataclass(frozen=True)
class UpdatePlan:
    """What an update has to do, computed against one store."""

    stale: tuple[StaleArtifact, ...] = ()
    up_to_date: tuple[str, ...] = ()
    touched: tuple[tuple[str, float], ...] = ()   # unchanged content, new mtime
    runtime_skipped: tuple[str, ...] = ()
    errors: tuple[FileError, ...] = ()


@dataclass(frozen=True)
class UpdateStats:
    """Summary returned after an update."""

    added: int
    updated: int
    up_to_date: int
    runtime_skipped: int
    cancelled: int
    errors: tuple[FileError, ...]
    stats: IndexStats
    relinked: int = 0
    pruned: int = 0
    staged_in_memory: bool = False

    @property
    def parse_errors(self) -> tuple[FileError, ...]:
        return tuple(e for e in self.errors if e.kind == "parse")

    @property
    def merged(self) -> int:
        return self.added + self.updated


class IncrementalIndexBuilder:
    """Keep a store in sync with a set of artifact files.

    Parameters
    ----------
    db:
        Open ``XrefDatabase`` instance (caller owns lifecycle).
    config:
        Thread count for parsing; defaults to ``IndexConfig()``.
    """

    def __init__(
        self,
        db: XrefDatabase,
        config: IndexConfig | None = None,
        parser: ArtifactParser | None = None,
    ) -> None:
        self._db = db
        self._config = config or IndexConfig()
        self._parser = parser or ArtifactParser()

    @property
    def db(self) -> XrefDatabase:
        return self._db

    # ── Public API ────────────────────────────────────────────────────────────

    def update(
        self,
        files: Iterable[ArtifactLike],
        include_runtime_files: bool = True,
        should_cancel: CancelCheck | None = None,
        progress_callback: ProgressCallback | None = None,
    ) -> UpdateStats:
        """Plan and apply in one go against this builder's store."""
        plan = self.plan(files, include_runtime_files=include_runtime_files)
        return self.apply(plan, should_cancel=should_cancel, progress_callback=progress_callback)

    def plan(
        self,
        files: Iterable[ArtifactLike],
        include_runtime_files: bool = True,
    ) -> UpdatePlan:
        """Decide which artifacts need reparsing."""
        try:
            self._db.check_schema()
            stored = self._db.list_artifact_stamps()
        except sqlite3.Error as exc:
            raise StoreConnectionError(f"cannot read store {self._db.path}: {exc}") from exc

        stale: list[StaleArtifact] = []
        up_to_date: list[str] = []
        touched: list[tuple[str, float]] = []
        runtime_skipped: list[str] = []
        errors: list[FileError] = []
        seen: set[str] = set()

        for item in files:
            artifact = _as_artifact(item)
            if artifact.path in seen:
                continue
            seen.add(artifact.path)

            if artifact.is_runtime and not include_runtime_files:
                runtime_skipped.append(artifact.path)
                continue

            try:
                mtime = os.stat(artifact.path).st_mtime
            except OSError as exc:
                errors.append(_io_error(artifact.path, exc))
                continue

            previous = stored.get(artifact.path)
            if previous is None:
                stale.append(StaleArtifact(artifact, mtime, is_new=True))
                continue

            stored_mtime, stored_checksum = previous
            if mtime == stored_mtime:
                up_to_date.append(artifact.path)
                continue

            try:
                checksum = _file_checksum(artifact.path)
            except OSError as exc:
                errors.append(_io_error(artifact.path, exc))
                continue
            if checksum == stored_checksum:
                logger.debug("Unchanged content, refreshing stamp: %s", artifact.path)
                up_to_date.append(artifact.path)
                touched.append((artifact.path, mtime))
            else:
                stale.append(StaleArtifact(artifact, mtime, is_new=False))

        for error in errors:
            logger.warning("Cannot index %s: %s", error.path, error.message)
        return UpdatePlan(
            stale=tuple(stale),
            up_to_date=tuple(up_to_date),
            touched=tuple(touched),
            runtime_skipped=tuple(runtime_skipped),
            errors=tuple(errors),
        )

    def apply(
        self,
        plan: UpdatePlan,
        should_cancel: CancelCheck | None = None,
        progress_callback: ProgressCallback | None = None,
    ) -> UpdateStats:
        """Parse the plan's stale artifacts and merge them as one batch."""
        parsed, failed, cancelled = self._parse_all(plan.stale, should_cancel, progress_callback)
        errors = list(plan.errors) + [FileError.from_exception(exc) for _, exc in failed]
        for _, exc in failed:
            logger.warning("Discarding %s", exc)

        try:
            with self._db.transaction():
                for stale in [s for s, _ in parsed] + [s for s, _ in failed]:
                    file_id = self._db.get_file_id(stale.artifact.path)
                    if file_id is not None:
                        self._db.purge_artifact(file_id)

                for path, mtime in plan.touched:
                    file_id = self._db.get_file_id(path)
                    if file_id is not None:
                        self._db.touch_artifact(file_id, mtime)

                resolver = EntityKeyResolver(register=self._register, lookup=self._db.find_entity)
                batch = resolver.resolve(unit for _, unit in parsed)
                for (stale, _), resolved in zip(parsed, batch.units):
                    self._store_unit(stale, resolved)

                self._db.detach_undeclared()
                pruned = self._db.prune_orphan_entities()
                relinked = self._db.relink_pending()
                if parsed or failed or plan.touched:
                    self._db.mark_indexed()
        except sqlite3.Error as exc:
            raise StoreConnectionError(f"merge into {self._db.path} failed: {exc}") from exc

        added = sum(1 for s, _ in parsed if s.is_new)
        result = UpdateStats(
            added=added,
            updated=len(parsed) - added,
            up_to_date=len(plan.up_to_date),
            runtime_skipped=len(plan.runtime_skipped),
            cancelled=cancelled,
            errors=tuple(errors),
            stats=self._db.get_stats(),
            relinked=relinked,
            pruned=pruned,
        )
        logger.info(
            "Update: +%d updated=%d up-to-date=%d errors=%d cancelled=%d | "
            "%d entities %d references (%d pending)",
            result.added, result.updated, result.up_to_date, len(result.errors),
            result.cancelled, result.stats.total_entities,
            result.stats.total_references, result.stats.pending_references,
        )
        return result

    # ── Parsing ───────────────────────────────────────────────────────────────

    def _parse_all(
        self,
        stale: tuple[StaleArtifact, ...],
        should_cancel: CancelCheck | None,
        progress_callback: ProgressCallback | None,
    ) -> tuple[
        list[tuple[StaleArtifact, ParsedUnit]],
        list[tuple[StaleArtifact, ArtifactError]],
        int,
    ]:
        """Parse stale artifacts in order; stop early when *should_cancel* says so."""
        parsed: list[tuple[StaleArtifact, ParsedUnit]] = []
        failed: list[tuple[StaleArtifact, ArtifactError]] = []
        if not stale:
            return parsed, failed, 0

        workers = min(self._config.parse_workers, len(stale))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="xref-parse") as pool:
            futures: list[Future[ParsedUnit]] = [
                pool.submit(self._parser.parse_file, s.artifact.path) for s in stale
            ]
            for i, (item, future) in enumerate(zip(stale, futures)):
                if should_cancel is not None and should_cancel():
                    for pending in futures[i:]:
                        pending.cancel()
                    cancelled = len(stale) - i
                    logger.info("Update cancelled, %d artifacts not merged", cancelled)
                    return parsed, failed, cancelled

                _report_progress(progress_callback, i + 1, len(stale), item.artifact.path)
                try:
                    parsed.append((item, future.result()))
                except ArtifactError as exc:
                    failed.append((item, exc))

        return parsed, failed, 0

    # ── Merging ───────────────────────────────────────────────────────────────

    def _register(self, decl: DeclarationRecord) -> int:
        file_id = self._db.ensure_file(decl.key.file)
        return self._db.upsert_entity(
            decl.key.name, decl.kind, file_id, decl.key.line, decl.key.column
        )

    def _store_unit(self, stale: StaleArtifact, resolved: ResolvedUnit) -> None:
        db = self._db
        unit = resolved.unit
        artifact = stale.artifact

        artifact_id = db.upsert_file(FileRecord(
            path=artifact.path,
            kind="artifact",
            checksum=unit.checksum,
            is_runtime=artifact.is_runtime,
        ))

        dep_by_path = {d.path: d for d in unit.dependencies}
        for source in unit.source_files:
            dep = dep_by_path.get(source)
            db.upsert_file(FileRecord(
                path=source,
                kind="source",
                stamp=dep.stamp if dep else "",
                checksum=dep.checksum if dep else "",
                is_runtime=artifact.is_runtime,
            ))
        db.replace_dependencies(
            artifact_id,
            [
                (db.update_file_stamp(d.path, d.stamp, d.checksum), d.stamp, d.checksum)
                for d in unit.dependencies
            ],
        )

        db.insert_declarations(
            (entity_id, artifact_id, decl.library_level)
            for entity_id, decl in resolved.declarations
        )

        file_ids: dict[str, int] = {}

        def file_id(path: str) -> int:
            if path not in file_ids:
                file_ids[path] = db.ensure_file(path)
            return file_ids[path]

        db.insert_references(
            {
                "entity_id": ref.target,
                "artifact_id": artifact_id,
                "file_id": file_id(ref.location.file),
                "line": ref.location.line,
                "col": ref.location.column,
                "kind": ref.kind,
                "scope_id": ref.scope,
                **_pending_columns(ref.pending, file_id),
                **_pending_columns(ref.scope_pending, file_id, prefix="pending_scope_"),
            }
            for ref in resolved.references
        )
        db.insert_parameters(
            {
                "owner_id": param.owner,
                "ordinal": param.ordinal,
                "parameter_id": param.parameter,
                "mode": param.mode.value,
                "artifact_id": artifact_id,
                **_pending_columns(param.pending, file_id),
            }
            for param in resolved.parameters
        )

        db.record_artifact(artifact_id, unit.unit_name, stale.mtime, unit.checksum)
        logger.debug(
            "Merged %s: %d declarations, %d references",
            artifact.path, len(resolved.declarations), len(resolved.references),
        )


# ── Internal helpers ──────────────────────────────────────────────────────────

def _as_artifact(item: ArtifactLike) -> ArtifactFile:
    # Artifacts are keyed by absolute path so one file has one record.
    if isinstance(item, ArtifactFile):
        return ArtifactFile(path=_artifact_path(item.path), is_runtime=item.is_runtime)
    return ArtifactFile(path=_artifact_path(item))


def _artifact_path(path: str | Path) -> str:
    return normalize_path(Path(path).resolve())


def _file_checksum(path: str) -> str:
    with open(path, "rb") as fh:
        return checksum_bytes(fh.read())


def _io_error(path: str, exc: OSError) -> FileError:
    return FileError.from_exception(ArtifactIOError(path, f"cannot read artifact: {exc}"))


def _pending_columns(
    key: EntityKey | None,
    file_id: Callable[[str], int],
    prefix: str = "pending_",
) -> dict[str, object]:
    if key is None:
        return {f"{prefix}name": None, f"{prefix}file": None, f"{prefix}line": None, f"{prefix}column": None}
    return {
        f"{prefix}name": key.name,
        f"{prefix}file": file_id(key.file),
        f"{prefix}line": key.line,
        f"{prefix}column": key.column,
    }


def _report_progress(callback: ProgressCallback | None, i: int, n: int, path: str) -> None:
    if callback is None:
        return
    try:
        callback(i, n, path)
    except Exception as exc:
        logger.debug("Progress callback error: %s", exc)


__all__ = [
    "FileError",
    "IncrementalIndexBuilder",
    "StaleArtifact",
    "UpdatePlan",
    "UpdateStats",
]

"""xrefdb command line: build and query a cross-reference index."""

from __future__ import annotations

import logging
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from xrefdb.index.schema import ArtifactFile

_HELP = """\
Usage: xrefdb update --db <path> [--seed <path>] [--output <path>]
                     [--runtime <dir>] [--no-runtime] <artifact-or-dir>...
       xrefdb find --db <path> <name> <file> [<line> [<column>]]

update options:
  --db <path>        Index database to update (created if missing)
  --seed <path>      Copy this index into --db first when --db is empty
  --output <path>    Copy the updated index to this path
  --runtime <dir>    Directory of runtime-library artifacts
  --no-runtime       Skip runtime-library artifacts

Directories are searched recursively for artifact files.

Examples:
  xrefdb update --db obj/xref.db obj/
  xrefdb find --db obj/xref.db Put src/io.adb 12
"""


@dataclass
class UpdateFlags:
    """Flags parsed from the command line for ``xrefdb update``."""

    db: Path | None = None
    seed: Path | None = None
    output: Path | None = None
    runtime_dirs: list[Path] = field(default_factory=list)
    include_runtime: bool = True
    inputs: list[Path] = field(default_factory=list)


def main(argv: list[str] | None = None) -> None:
    """Entry point for the xrefdb CLI."""
    args = sys.argv[1:] if argv is None else argv

    if not args or "--help" in args or "-h" in args:
        print(_HELP)
        sys.exit(0)

    _configure_logging()
    if args[0] == "update":
        _run_update(args[1:])
    elif args[0] == "find":
        _run_find(args[1:])
    else:
        print(f"Unknown command: {args[0]}")
        print("Run 'xrefdb --help' for usage.")
        sys.exit(1)


def _configure_logging() -> None:
    from xrefdb.core.config import EnvSettings

    level = EnvSettings().log_level.upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(levelname)s %(name)s: %(message)s",
    )


def _parse_update_flags(args: list[str]) -> UpdateFlags:
    """Parse update sub-command flags from argv."""
    flags = UpdateFlags()
    i = 0
    while i < len(args):
        arg = args[i]
        if arg == "--db" and i + 1 < len(args):
            flags.db = Path(args[i + 1])
            i += 2
        elif arg == "--seed" and i + 1 < len(args):
            flags.seed = Path(args[i + 1])
            i += 2
        elif arg == "--output" and i + 1 < len(args):
            flags.output = Path(args[i + 1])
            i += 2
        elif arg == "--runtime" and i + 1 < len(args):
            flags.runtime_dirs.append(Path(args[i + 1]))
            i += 2
        elif arg == "--no-runtime":
            flags.include_runtime = False
            i += 1
        elif arg.startswith("--"):
            print(f"Unknown argument: {arg}")
            print("Run 'xrefdb --help' for usage.")
            sys.exit(1)
        else:
            flags.inputs.append(Path(arg))
            i += 1
    if flags.db is None:
        print("Missing --db <path>")
        sys.exit(1)
    return flags


def _collect_artifacts(paths: list[Path], suffixes: list[str], is_runtime: bool) -> list[ArtifactFile]:
    """Expand directories into the artifact files they contain."""
    from xrefdb.index.schema import ArtifactFile

    found: list[ArtifactFile] = []
    for path in paths:
        if path.is_dir():
            candidates = sorted(
                p for p in path.rglob("*") if p.is_file() and p.suffix.lower() in suffixes
            )
        else:
            candidates = [path]
        found.extend(ArtifactFile(path=str(p), is_runtime=is_runtime) for p in candidates)
    return found


def _run_update(args: list[str]) -> None:
    """Parse update flags and bring the index in sync with the given artifacts."""
    flags = _parse_update_flags(args)

    from xrefdb.core.config import load_config
    from xrefdb.index.errors import BuildError
    from xrefdb.index.xref import XrefIndex

    config = load_config()
    suffixes = config.index.artifact_suffixes
    files = _collect_artifacts(flags.inputs, suffixes, is_runtime=False)
    files += _collect_artifacts(flags.runtime_dirs, suffixes, is_runtime=True)

    def _progress(i: int, n: int, name: str) -> None:
        print(f"\r  [{i}/{n}] {Path(name).name:<50}", end="", flush=True)

    print(f"Updating {flags.db} from {len(files)} artifacts...")
    try:
        with XrefIndex.open(flags.db, config) as index:
            result = index.update_index(
                files,
                include_runtime_files=flags.include_runtime,
                seed_path=flags.seed,
                output_path=flags.output,
                progress_callback=_progress,
            )
    except BuildError as exc:
        print(f"\nUpdate failed: {exc}")
        sys.exit(1)

    if result.merged:
        print()  # newline after progress

    s = result.stats
    print(
        f"\nDone: +{result.added} added, {result.updated} updated, "
        f"{result.up_to_date} up to date, {result.runtime_skipped} runtime skipped"
        + (" (staged in memory)" if result.staged_in_memory else "")
    )
    print(
        f"Total: {s.total_artifacts} artifacts · {s.total_entities} entities · "
        f"{s.total_references} references · {s.pending_references} pending"
    )
    for error in result.errors:
        where = f":{error.line}" if error.line else ""
        print(f"  {error.kind} error: {error.path}{where}: {error.message}")


def _run_find(args: list[str]) -> None:
    """Look up one entity and print its declaration and references."""
    db_path: Path | None = None
    positional: list[str] = []

    i = 0
    while i < len(args):
        if args[i] == "--db" and i + 1 < len(args):
            db_path = Path(args[i + 1])
            i += 2
        elif args[i].startswith("--"):
            print(f"Unknown argument: {args[i]}")
            print("Usage: xrefdb find --db <path> <name> <file> [<line> [<column>]]")
            sys.exit(1)
        else:
            positional.append(args[i])
            i += 1

    if db_path is None or not 2 <= len(positional) <= 4:
        print("Usage: xrefdb find --db <path> <name> <file> [<line> [<column>]]")
        sys.exit(1)
    try:
        numbers = [int(n) for n in positional[2:]]
    except ValueError:
        print(f"Line and column must be numbers: {' '.join(positional[2:])}")
        sys.exit(1)
    line, column = (numbers + [-1, -1])[:2]
    if not db_path.is_file():
        print(f"No index at {db_path}")
        sys.exit(1)

    from xrefdb.core.config import load_config
    from xrefdb.index.errors import BuildError
    from xrefdb.index.xref import XrefIndex

    config = load_config()
    try:
        with XrefIndex.open(db_path, config) as index:
            entity = index.get_entity(positional[0], positional[1], line, column)
            if entity is None:
                print(f"No entity {positional[0]} in {positional[1]}")
                sys.exit(1)

            decl = index.declaration(entity)
            loc = decl.location
            print(f"{decl.name} ({decl.kind}) {loc.file}:{loc.line}:{loc.column}")
            with index.parameters(entity) as params:
                for param in params:
                    name = index.declaration(param.parameter).name or "?"
                    print(f"  param {param.ordinal}: {name} {param.mode.value}")
            with index.references(entity) as refs:
                for ref in refs:
                    rloc = ref.location
                    print(f"  {ref.kind:<16} {rloc.file}:{rloc.line}:{rloc.column}")
    except BuildError as exc:
        print(f"Cannot read index: {exc}")
        sys.exit(1)


if __name__ == "__main__":
    main()

"""Shared test fixtures for xrefdb."""

from __future__ import annotations

import itertools
import os
from pathlib import Path
from typing import Callable, Iterator

import pytest

from xrefdb.index.db import XrefDatabase

# Package spec declaring procedure Do_It (A : in, B : out).
PKG_ALI = """\
V "XREF 1.0"
U pkg%s pkg.ads 0a0b0c0d
D pkg.ads 20240105102900 0a0b0c0d pkg%s
X 1 pkg.ads
1K9*Pkg 12e5
3U14*Do_It 3>22 3<35 10e4
3i22 A
3f35 B
"""

# Main procedure calling Pkg.Do_It twice from its body.
MAIN_ALI = """\
V "XREF 1.0"
U main%b main.adb 11223344
D main.adb 20240105103100 11223344 main%b
D pkg.ads 20240105102900 0a0b0c0d pkg%s
X 1 main.adb
3U11*Main 8t5
X 2 pkg.ads
1K9*Pkg 1|1w6
3U14*Do_It 1|5s7 1|6s7
"""


def simple_artifact(unit: str, line: int = 1) -> str:
    """Artifact of a unit that declares one library-level package."""
    return (
        'V "XREF 1.0"\n'
        f"U {unit}%s {unit}.ads 0a0b0c0d\n"
        f"D {unit}.ads 20240105102900 0a0b0c0d {unit}%s\n"
        f"X 1 {unit}.ads\n"
        f"{line}K9*{unit.capitalize()}\n"
    )


WriteArtifact = Callable[..., Path]


@pytest.fixture()
def artifact_dir(tmp_path: Path) -> Path:
    path = tmp_path / "obj"
    path.mkdir()
    return path


@pytest.fixture()
def write_artifact(artifact_dir: Path) -> WriteArtifact:
    """Write an artifact file with a distinct, increasing mtime per write."""
    clock = itertools.count(1_700_000_000, 10)

    def _write(name: str, text: str, mtime: float | None = None) -> Path:
        path = artifact_dir / name
        path.write_text(text, encoding="utf-8")
        stamp = next(clock) if mtime is None else mtime
        os.utime(path, (stamp, stamp))
        return path

    return _write


@pytest.fixture()
def db(tmp_path: Path) -> Iterator[XrefDatabase]:
    database = XrefDatabase(tmp_path / ".xrefdb" / "xref.db")
    yield database
    database.close()


@pytest.fixture()
def pkg_ali(write_artifact: WriteArtifact) -> Path:
    return write_artifact("pkg.ali", PKG_ALI)


@pytest.fixture()
def main_ali(write_artifact: WriteArtifact) -> Path:
    return write_artifact("main.ali", MAIN_ALI)


@pytest.fixture()
def write_unit(write_artifact: WriteArtifact) -> Callable[..., Path]:
    """Write ``<unit>.ali`` declaring package <Unit> at *line*."""

    def _write(unit: str, line: int = 1, mtime: float | None = None) -> Path:
        return write_artifact(f"{unit}.ali", simple_artifact(unit, line), mtime=mtime)

    return _write

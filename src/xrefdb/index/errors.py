"""Exception hierarchy for the cross-reference index.

Per-artifact failures (``ArtifactIOError``, ``ArtifactParseError``) are
collected by the builder and reported in ``UpdateStats``; ``BuildError``
subclasses abort the whole update and propagate to the caller.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from xrefdb.index.parser import ParsedUnit


class XrefError(Exception):
    """Base class for every error raised by xrefdb."""


# ── Per-artifact errors ───────────────────────────────────────────────────────

class ArtifactError(XrefError):
    """An artifact file could not be turned into a ParsedUnit."""

    kind = "error"

    def __init__(self, path: str, message: str) -> None:
        super().__init__(f"{path}: {message}")
        self.path = path
        self.message = message


class ArtifactIOError(ArtifactError):
    kind = "io"


class ArtifactParseError(ArtifactError):
    """Malformed artifact content.

    ``partial`` holds whatever parsed cleanly before the offending line.
    """

    kind = "parse"

    def __init__(
        self,
        path: str,
        line: int,
        message: str,
        partial: ParsedUnit | None = None,
    ) -> None:
        super().__init__(path, f"line {line}: {message}")
        self.line = line
        self.reason = message
        self.partial = partial


# ── Fatal build errors ────────────────────────────────────────────────────────

class BuildError(XrefError):
    """An update could not run at all."""


class SchemaError(BuildError):
    """The store exists but lacks the cross-reference schema."""


class StoreConnectionError(BuildError):
    """The backing store could not be opened or failed mid-operation."""


# ── Usage errors ──────────────────────────────────────────────────────────────

class StoreBusyError(XrefError):
    """A write was attempted while another write or a cursor is active."""


class StaleCursorError(XrefError):
    """The cursor's store handle was released."""


class CursorExhaustedError(XrefError):
    """``current()`` was called on a cursor with no element."""

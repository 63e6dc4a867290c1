"""EntityKeyResolver — turn textual entity keys into stable ids for one batch.

Linking runs in two passes over every ParsedUnit of a merge batch:

  pass 1  register every owned declaration (the ``register`` callback returns
          its id) and freeze the results into a KeyTable
  pass 2  map each reference target, enclosing scope and parameter through
          the table

Keys the batch does not declare fall back to the ``lookup`` callback, which is
how declarations already merged into the store are found.  A key nobody
declares is not an error: the reference keeps its key as *pending* and is
linked later, once the declaring artifact is merged.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Iterable, Mapping

from xrefdb.index.parser import DeclarationRecord, ParsedUnit
from xrefdb.index.schema import EntityKey, ParameterMode, SourceLocation

logger = logging.getLogger(__name__)

RegisterFn = Callable[[DeclarationRecord], int]
LookupFn = Callable[[EntityKey], "int | None"]


@dataclass(frozen=True)
class ResolvedReference:
    target: int | None
    pending: EntityKey | None   # set when target is None
    location: SourceLocation
    kind: str
    scope: int | None
    scope_pending: EntityKey | None = None   # set when the scope is not known yet


@dataclass(frozen=True)
class ResolvedParameter:
    owner: int
    parameter: int | None
    pending: EntityKey | None
    mode: ParameterMode
    ordinal: int


@dataclass(frozen=True)
class ResolvedUnit:
    unit: ParsedUnit
    declarations: tuple[tuple[int, DeclarationRecord], ...]
    references: tuple[ResolvedReference, ...]
    parameters: tuple[ResolvedParameter, ...]


@dataclass(frozen=True)
class ResolvedBatch:
    units: tuple[ResolvedUnit, ...]
    unresolved: int   # references and parameters left pending


class KeyTable:
    """Lookup table of declaration keys registered in pass 1.

    The batch entries never change after construction; answers obtained from
    the fallback are cached.
    """

    def __init__(
        self,
        entries: Mapping[EntityKey, int],
        fallback: LookupFn | None = None,
    ) -> None:
        self._by_key = dict(entries)
        self._by_location: dict[SourceLocation, int] = {}
        for key, entity_id in self._by_key.items():
            self._by_location.setdefault(key.location, entity_id)
        self._fallback = fallback
        self._cache: dict[EntityKey, int | None] = {}

    def __len__(self) -> int:
        return len(self._by_key)

    def __contains__(self, key: object) -> bool:
        return key in self._by_key

    def lookup(self, key: EntityKey) -> int | None:
        """Return the id for *key*; an empty name matches by location only."""
        if key.name:
            hit = self._by_key.get(key)
        else:
            hit = self._by_location.get(key.location)
        if hit is not None or self._fallback is None:
            return hit
        if key not in self._cache:
            self._cache[key] = self._fallback(key)
        return self._cache[key]


class EntityKeyResolver:
    """Resolve one merge batch.

    Parameters
    ----------
    register:
        Called once per owned declaration in pass 1; returns the entity id
        (creating the entity if needed).
    lookup:
        Fallback for keys not declared in the batch; returns an id or None.
    """

    def __init__(self, register: RegisterFn, lookup: LookupFn | None = None) -> None:
        self._register = register
        self._lookup = lookup

    def build_table(self, units: Iterable[ParsedUnit]) -> KeyTable:
        """Pass 1: register every owned declaration of every unit."""
        entries: dict[EntityKey, int] = {}
        for unit in units:
            for decl in unit.owned_declarations:
                entries[decl.key] = self._register(decl)
        return KeyTable(entries, fallback=self._lookup)

    def resolve(self, units: Iterable[ParsedUnit]) -> ResolvedBatch:
        units = tuple(units)
        table = self.build_table(units)

        resolved: list[ResolvedUnit] = []
        unresolved = 0
        for unit in units:
            result = self._resolve_unit(unit, table)
            unresolved += sum(1 for r in result.references if r.target is None)
            unresolved += sum(1 for p in result.parameters if p.parameter is None)
            resolved.append(result)

        logger.debug(
            "Resolved %d units against %d keys, %d targets pending",
            len(units), len(table), unresolved,
        )
        return ResolvedBatch(units=tuple(resolved), unresolved=unresolved)

    # ── Pass 2 ────────────────────────────────────────────────────────────────

    @staticmethod
    def _resolve_unit(unit: ParsedUnit, table: KeyTable) -> ResolvedUnit:
        owned = unit.owned_declarations
        declarations = tuple((table.lookup(d.key), d) for d in owned)

        references: list[ResolvedReference] = []
        for ref in unit.references:
            target = table.lookup(ref.target)
            scope = table.lookup(ref.scope) if ref.scope is not None else None
            references.append(ResolvedReference(
                target=target,
                pending=None if target is not None else ref.target,
                location=ref.location,
                kind=ref.kind,
                scope=scope,
                scope_pending=ref.scope if ref.scope is not None and scope is None else None,
            ))

        # Parameters belong to the artifact that owns the subprogram
        owned_keys = {d.key for d in owned}
        parameters: list[ResolvedParameter] = []
        for param in unit.parameters:
            if param.owner not in owned_keys:
                continue
            owner = table.lookup(param.owner)
            target = table.lookup(param.parameter)
            parameters.append(ResolvedParameter(
                owner=owner,  # type: ignore[arg-type]  # owned keys are always registered
                parameter=target,
                pending=None if target is not None else param.parameter,
                mode=param.mode,
                ordinal=param.ordinal,
            ))

        return ResolvedUnit(
            unit=unit,
            declarations=declarations,  # type: ignore[arg-type]
            references=tuple(references),
            parameters=tuple(parameters),
        )

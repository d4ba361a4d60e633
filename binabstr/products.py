"""
binabstr.products
=================

Facts derived from a converged analysis: cross references, call edges and
the per-location classification of a Store.

Everything here is filled in by the reporting pass that runs once per
function context after its fixpoint has converged, through a
:class:`Recorder`.  During fixpoint iteration the engine uses a disabled
recorder, so intermediate states never leak into the products.
"""

from __future__ import annotations

import enum
from collections import defaultdict
from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, FrozenSet, Iterable, List, Optional, Set, Tuple

from binabstr.errors import Diagnostic, DiagnosticKind
from binabstr.ir import ProgramPoint
from binabstr.lattice import AbstractValue, ValueKind
from binabstr.store import (
    HeapCell,
    Location,
    MemoryLocation,
    RegionKind,
    Register,
    StackSlot,
    Store,
)

if TYPE_CHECKING:
    from binabstr.fixpoint import FunctionResult

__all__ = [
    "Access",
    "CallKind",
    "StackXref",
    "MemXref",
    "CodeXref",
    "CallEdge",
    "Recorder",
    "LocationClass",
    "Classification",
    "classify_value",
    "classify_store",
]


class Access(enum.Enum):
    READ  = "read"
    WRITE = "write"


class CallKind(enum.Enum):
    DIRECT     = "direct"
    INDIRECT   = "indirect"
    SUMMARY    = "summary"
    EXTERNAL   = "external"
    OPAQUE     = "opaque"
    UNRESOLVED = "unresolved"


# ---------------------------------------------------------------------------
# Cross references
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class StackXref:
    point: ProgramPoint
    frame: str
    offset: int
    size: int
    access: Access


@dataclass(frozen=True)
class MemXref:
    point: ProgramPoint
    region: RegionKind
    base: str
    offset: int
    size: int
    access: Access


@dataclass(frozen=True)
class CodeXref:
    point: ProgramPoint
    target: str
    kind: CallKind


@dataclass(frozen=True)
class CallEdge:
    caller: str
    point: ProgramPoint
    callee: str
    kind: CallKind
    callee_context: Optional[str] = None


# ---------------------------------------------------------------------------
# Recorder
# ---------------------------------------------------------------------------

class Recorder:
    """Collects the products of one reporting pass."""

    def __init__(self, function: str, context: str, enabled: bool = True) -> None:
        self.function = function
        self.context = context
        self.enabled = enabled
        self.diagnostics: Set[Diagnostic] = set()
        self.stack_xrefs: Set[StackXref] = set()
        self.mem_xrefs: Set[MemXref] = set()
        self.code_xrefs: Set[CodeXref] = set()
        self.call_edges: Set[CallEdge] = set()
        self.indirect_targets: Dict[ProgramPoint, Set[str]] = defaultdict(set)
        self.wild_writes: Set[ProgramPoint] = set()
        self._callees: Dict[int, "FunctionResult"] = {}

    @classmethod
    def disabled(cls) -> "Recorder":
        return cls("", "", enabled=False)

    def diagnose(self, kind: DiagnosticKind, point: Optional[ProgramPoint], message: str) -> None:
        if self.enabled:
            self.diagnostics.add(Diagnostic(
                kind=kind,
                function=self.function,
                message=message,
                point=point,
                context=self.context,
            ))

    def access(self, point: ProgramPoint, loc: MemoryLocation, size: int, access: Access) -> None:
        if not self.enabled:
            return
        if isinstance(loc, StackSlot):
            self.stack_xrefs.add(StackXref(point, loc.frame, loc.offset, size, access))
        elif isinstance(loc, HeapCell):
            self.mem_xrefs.add(MemXref(point, RegionKind.HEAP, loc.alloc, loc.offset, size, access))
        else:
            self.mem_xrefs.add(MemXref(point, RegionKind.GLOBAL, "", loc.address, size, access))

    def call(
        self,
        point: ProgramPoint,
        callee: str,
        kind: CallKind,
        result: Optional["FunctionResult"] = None,
    ) -> None:
        if not self.enabled:
            return
        self.code_xrefs.add(CodeXref(point, callee, kind))
        self.call_edges.add(CallEdge(
            caller=self.context,
            point=point,
            callee=callee,
            kind=kind,
            callee_context=result.context.label if result is not None else None,
        ))
        if result is not None:
            self._callees.setdefault(id(result), result)

    def wild_write(self, point: ProgramPoint) -> None:
        """A store at *point* whose address is not known."""
        if self.enabled:
            self.wild_writes.add(point)

    def indirect(self, point: ProgramPoint, targets: Iterable[str]) -> None:
        if self.enabled:
            self.indirect_targets[point].update(targets)

    @property
    def callees(self) -> Tuple["FunctionResult", ...]:
        return tuple(self._callees.values())

    def sorted_diagnostics(self) -> Tuple[Diagnostic, ...]:
        return tuple(sorted(self.diagnostics, key=Diagnostic.sort_key))

    def frozen_targets(self) -> Dict[ProgramPoint, FrozenSet[str]]:
        return {p: frozenset(t) for p, t in self.indirect_targets.items()}


# ---------------------------------------------------------------------------
# Location classification
# ---------------------------------------------------------------------------

class LocationClass(enum.Enum):
    CONSTANT       = "constant"
    STACK_VARIABLE = "stack_variable"
    HEAP_OBJECT    = "heap_object"
    CODE_POINTER   = "code_pointer"
    REGISTER_ALIAS = "register_alias"
    UNKNOWN        = "unknown"
    UNDEFINED      = "undefined"


@dataclass(frozen=True)
class Classification:
    kind: LocationClass
    value: AbstractValue
    base: Optional[str] = None
    offset: Optional[int] = None
    aliases: Tuple[str, ...] = ()


_KIND_TO_CLASS = {
    ValueKind.CONST: LocationClass.CONSTANT,
    ValueKind.STACK_REF: LocationClass.STACK_VARIABLE,
    ValueKind.HEAP_REF: LocationClass.HEAP_OBJECT,
    ValueKind.FUNC_PTR: LocationClass.CODE_POINTER,
    ValueKind.TOP: LocationClass.UNKNOWN,
    ValueKind.UNDEFINED: LocationClass.UNDEFINED,
}


def classify_value(value: AbstractValue) -> Classification:
    kind = _KIND_TO_CLASS[value.kind]
    if value.is_ref:
        return Classification(kind, value, base=value.base, offset=value.offset)
    return Classification(kind, value)


def classify_store(store: Store) -> Dict[Location, Classification]:
    """
    Classify every location of *store*.  Registers holding the same
    reference as another register are reported as register aliases.
    """
    by_ref: Dict[AbstractValue, List[str]] = defaultdict(list)
    for loc, v in store.items():
        if isinstance(loc, Register) and v.is_ref:
            by_ref[v].append(loc.name)

    result: Dict[Location, Classification] = {}
    for loc, v in store.items():
        c = classify_value(v)
        if isinstance(loc, Register) and v.is_ref and len(by_ref[v]) > 1:
            others = tuple(sorted(n for n in by_ref[v] if n != loc.name))
            c = Classification(
                LocationClass.REGISTER_ALIAS, v,
                base=v.base, offset=v.offset, aliases=others,
            )
        result[loc] = c
    return result

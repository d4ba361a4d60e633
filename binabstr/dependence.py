"""
binabstr.dependence
===================

Memory dependences recovered after the fixpoint: which writes may have
produced the bytes a later read observes.

The pass only reads the reporting products of each context (its memory
cross references, unknown-address stores and callee results).  It walks
the blocks of a context with a :class:`DefState` that maps every written
cell to the points that may have written it last.

Transfer rules
--------------
* A point that writes exactly one cell updates that cell strongly and
  every other cell it overlaps weakly.  A point recorded with several
  write cells updates all of them weakly.
* A store through an unknown address may have written anything.  It joins
  the definitions of every known cell and of every cell not written yet,
  and kills nothing.
* A call continues the walk in each callee context the reporting pass
  used, starting from the caller's current state.  On return the callee's
  frame is dropped.  Opaque and external calls leave the state unchanged.

A read at point ``r`` of a cell yields one :class:`MemDependence`
``(w, r)`` for every write point ``w`` that may define one of its bytes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, FrozenSet, Hashable, List, Optional, Set, Tuple

from binabstr.cfg import FunctionCFG
from binabstr.fixpoint import FunctionResult
from binabstr.ir import Program, ProgramPoint, Return
from binabstr.products import Access
from binabstr.store import RegionKind

logger = logging.getLogger(__name__)

__all__ = ["MemDependence", "DefState", "DependencePass", "memory_dependences"]

Cell = Tuple[RegionKind, str, int]
Defs = FrozenSet[ProgramPoint]


@dataclass(frozen=True, order=True)
class MemDependence:
    """The read at ``read`` may observe a value stored at ``write``."""
    write: ProgramPoint
    read: ProgramPoint

    def __str__(self) -> str:
        return f"{self.write} -> {self.read}"


# ═══════════════════════════════════════════════════════════════════════════
# §1  DEFINITION STATE
# ═══════════════════════════════════════════════════════════════════════════

class DefState:
    """Last possible writers of each cell, plus the unknown-address stores
    that may have written any cell not listed."""

    __slots__ = ("cells", "anywhere")

    def __init__(
        self,
        cells: Optional[Dict[Cell, Tuple[int, Defs]]] = None,
        anywhere: Defs = frozenset(),
    ) -> None:
        self.cells: Dict[Cell, Tuple[int, Defs]] = dict(cells or {})
        self.anywhere = anywhere

    def copy(self) -> "DefState":
        return DefState(self.cells, self.anywhere)

    def key(self) -> Hashable:
        return frozenset(self.cells.items()), self.anywhere

    def __eq__(self, other: object) -> bool:
        return isinstance(other, DefState) and self.key() == other.key()

    def join(self, other: "DefState") -> "DefState":
        cells: Dict[Cell, Tuple[int, Defs]] = {}
        for cell in self.cells.keys() | other.cells.keys():
            mine = self.cells.get(cell)
            theirs = other.cells.get(cell)
            if mine is None:
                cells[cell] = (theirs[0], theirs[1] | self.anywhere)
            elif theirs is None:
                cells[cell] = (mine[0], mine[1] | other.anywhere)
            else:
                cells[cell] = (max(mine[0], theirs[0]), mine[1] | theirs[1])
        return DefState(cells, self.anywhere | other.anywhere)

    def _overlapping(self, region: RegionKind, base: str, offset: int, size: int) -> List[Cell]:
        return [
            c for c, (n, _) in self.cells.items()
            if c[0] is region and c[1] == base and c[2] < offset + size and offset < c[2] + n
        ]

    # ----- transfer ---------------------------------------------------------

    def defs_of(self, cell: Cell, size: int) -> Defs:
        """Every write that may define a byte of ``[offset, offset+size)``."""
        region, base, offset = cell
        defs: Set[ProgramPoint] = set()
        covered = offset
        for c in sorted(self._overlapping(region, base, offset, size), key=lambda c: c[2]):
            n, d = self.cells[c]
            defs.update(d)
            if c[2] > covered:
                defs.update(self.anywhere)
            covered = max(covered, c[2] + n)
        if covered < offset + size:
            defs.update(self.anywhere)
        return frozenset(defs)

    def write(self, cell: Cell, size: int, point: ProgramPoint, strong: bool = True) -> None:
        region, base, offset = cell
        for c in self._overlapping(region, base, offset, size):
            if c != cell:
                n, d = self.cells[c]
                self.cells[c] = (n, d | {point})
        old = self.cells.get(cell)
        if old is None:
            defs = frozenset({point}) if strong else self.anywhere | {point}
            self.cells[cell] = (size, defs)
        elif strong and old[0] <= size:
            self.cells[cell] = (size, frozenset({point}))
        else:
            self.cells[cell] = (max(old[0], size), old[1] | {point})

    def write_anywhere(self, point: ProgramPoint) -> None:
        for c, (n, d) in list(self.cells.items()):
            self.cells[c] = (n, d | {point})
        self.anywhere = self.anywhere | {point}

    def drop_frame(self, frame: str) -> None:
        for c in [c for c in self.cells if c[0] is RegionKind.STACK and c[1] == frame]:
            del self.cells[c]


# ═══════════════════════════════════════════════════════════════════════════
# §2  PASS
# ═══════════════════════════════════════════════════════════════════════════

_Accesses = Dict[ProgramPoint, Tuple[List[Tuple[Cell, int]], List[Tuple[Cell, int]]]]


def _index_accesses(result: FunctionResult) -> _Accesses:
    out: _Accesses = {}
    for x in result.stack_xrefs:
        reads, writes = out.setdefault(x.point, ([], []))
        (reads if x.access is Access.READ else writes).append(((RegionKind.STACK, x.frame, x.offset), x.size))
    for m in result.mem_xrefs:
        reads, writes = out.setdefault(m.point, ([], []))
        (reads if m.access is Access.READ else writes).append(((m.region, m.base, m.offset), m.size))
    return out


def _callees_by_point(result: FunctionResult) -> Dict[ProgramPoint, List[FunctionResult]]:
    by_label: Dict[str, List[FunctionResult]] = {}
    for r in result.callees:
        by_label.setdefault(r.context.label, []).append(r)
    out: Dict[ProgramPoint, List[FunctionResult]] = {}
    for edge in sorted(result.call_edges, key=lambda e: (e.point, e.callee)):
        if edge.callee_context is not None:
            out.setdefault(edge.point, []).extend(by_label.get(edge.callee_context, ()))
    return out


class DependencePass:
    """Collects :class:`MemDependence` pairs over a tree of results.

    One pass may be run over several roots; walks of the same context from
    the same state are shared.
    """

    def __init__(self, program: Program) -> None:
        self.program = program
        self.pairs: Set[MemDependence] = set()
        self._memo: Dict[Tuple[int, Hashable], Optional[DefState]] = {}
        self._active: Set[int] = set()

    def run(self, result: FunctionResult, entry: Optional[DefState] = None) -> Optional[DefState]:
        """Walk *result* from *entry*; the state at its returns, or ``None``
        if it never returns."""
        entry = entry or DefState()
        key = (id(result), entry.key())
        if key in self._memo:
            return self._memo[key]
        if id(result) in self._active:
            logger.debug("%s: re-entered while walking dependences", result.context.label)
            return entry
        self._active.add(id(result))
        try:
            out = self._walk(result, entry)
        finally:
            self._active.discard(id(result))
        self._memo[key] = out
        return out

    def sorted_pairs(self) -> List[MemDependence]:
        return sorted(self.pairs)

    # ----- internals --------------------------------------------------------

    def _walk(self, result: FunctionResult, entry: DefState) -> Optional[DefState]:
        fn = self.program.function(result.function)
        if fn is None or fn.entry is None:
            return entry
        cfg = FunctionCFG(fn)
        order = [label for label in cfg.reverse_postorder() if label in result.block_in]
        accesses = _index_accesses(result)
        calls = _callees_by_point(result)

        block_in: Dict[str, DefState] = {fn.entry: entry}
        exit_state: Optional[DefState] = None
        changed = True
        while changed:
            changed = False
            for label in order:
                state = block_in.get(label)
                if state is None:
                    continue
                out = self._block(result, label, state.copy(), accesses, calls)
                if out is None:
                    continue
                block = fn.block(label)
                if isinstance(block.terminator, Return):
                    exit_state = out if exit_state is None else exit_state.join(out)
                for succ in cfg.successors_of(label):
                    if succ not in result.block_in:
                        continue
                    old = block_in.get(succ)
                    new = out if old is None else old.join(out)
                    if old is None or new != old:
                        block_in[succ] = new
                        changed = True
        return exit_state

    def _block(
        self,
        result: FunctionResult,
        label: str,
        state: DefState,
        accesses: _Accesses,
        calls: Dict[ProgramPoint, List[FunctionResult]],
    ) -> Optional[DefState]:
        block = self.program.function(result.function).block(label)
        for index in range(len(block.statements) + 1):
            point = ProgramPoint(result.function, label, index)
            reads, writes = accesses.get(point, ((), ()))
            for cell, size in reads:
                for w in state.defs_of(cell, size):
                    self.pairs.add(MemDependence(w, point))
            callees = calls.get(point)
            if callees:
                state = self._call(state, callees)
                if state is None:
                    return None
            if point in result.wild_writes:
                state.write_anywhere(point)
            for cell, size in writes:
                state.write(cell, size, point, strong=len(writes) == 1)
        return state

    def _call(self, state: DefState, callees: List[FunctionResult]) -> Optional[DefState]:
        joined: Optional[DefState] = None
        for callee in callees:
            out = self.run(callee, state)
            if out is None:
                continue
            out = out.copy()
            out.drop_frame(callee.context.frame_id)
            joined = out if joined is None else joined.join(out)
        return joined


def memory_dependences(program: Program, *results: FunctionResult) -> List[MemDependence]:
    """Dependence pairs of the given root results, sorted."""
    dp = DependencePass(program)
    for r in results:
        dp.run(r)
    return dp.sorted_pairs()

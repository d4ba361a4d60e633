"""
binabstr.evaluator
==================

Transfer functions: expression evaluation and the effect of one basic block
on a Store.

Memory semantics
----------------
* ``StackRef``/``HeapRef``/``Const`` addresses designate a single cell
  (stack slot, heap cell, global cell).
* Heap accesses are checked against the object's size fact; an access
  outside it is reported as ``OutOfBoundsAccess`` and still performed.  An
  out-of-bounds read of a cell nobody wrote yields ``Top``.
* A global cell nobody wrote reads from the program's data image (function
  entries become ``FuncPtr``), otherwise ``Top``.
* A store through any other address (``Top``, a function pointer, ...) may
  hit any memory: every memory cell becomes ``Top``.

Branches
--------
A condition with a known truth value follows one edge; a ``Top`` condition
follows both, and the successor Stores are later joined at the merge point.
An ``Undefined`` condition follows neither: the block has not yet seen a
value for it, and a later visit with a defined value picks the edges.
Loads and stores through an ``Undefined`` address are skipped the same way.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, List, Optional, Tuple

from binabstr.errors import DiagnosticKind
from binabstr.ir import (
    Assign,
    BasicBlock,
    BinOp,
    Branch,
    Call,
    Cast,
    Cmp,
    Expr,
    FnRef,
    Function,
    Imm,
    Ite,
    Jump,
    Load,
    MemStore,
    Nop,
    ProgramPoint,
    Reg,
    Return,
    UnOp,
)
from binabstr.lattice import (
    TOP,
    UNDEFINED,
    AbstractValue,
    binop,
    cast,
    compare,
    ite,
    truth,
    unop,
)
from binabstr.products import Access, Recorder
from binabstr.store import GlobalCell, HeapCell, Register, StackSlot, Store

if TYPE_CHECKING:
    from binabstr.analysis import AnalysisSession
    from binabstr.contexts import CallContext

logger = logging.getLogger(__name__)

__all__ = ["BlockOutcome", "Evaluator"]


@dataclass
class BlockOutcome:
    """Result of running one block: Stores for feasible successors and,
    for a return block, the exit Store and returned value."""
    successors: List[Tuple[str, Store]] = field(default_factory=list)
    exit: Optional[Tuple[Store, AbstractValue]] = None


class Evaluator:
    """Transfer functions for one function under one call context."""

    def __init__(
        self,
        session: "AnalysisSession",
        function: Function,
        context: "CallContext",
    ) -> None:
        self.session = session
        self.program = session.program
        self.cc = session.cc
        self.function = function
        self.context = context

    # ----- expressions ------------------------------------------------------

    def eval(self, expr: Expr, store: Store, point: ProgramPoint, rec: Recorder) -> AbstractValue:
        if isinstance(expr, Reg):
            return store.read(Register(expr.name))
        if isinstance(expr, Imm):
            return AbstractValue.const(expr.value, expr.width)
        if isinstance(expr, BinOp):
            return binop(
                expr.op,
                self.eval(expr.lhs, store, point, rec),
                self.eval(expr.rhs, store, point, rec),
            )
        if isinstance(expr, Cmp):
            return compare(
                expr.op,
                self.eval(expr.lhs, store, point, rec),
                self.eval(expr.rhs, store, point, rec),
            )
        if isinstance(expr, UnOp):
            return unop(expr.op, self.eval(expr.operand, store, point, rec))
        if isinstance(expr, Load):
            addr = self.eval(expr.addr, store, point, rec)
            return self.load(addr, expr.width // 8, store, point, rec)
        if isinstance(expr, Cast):
            return cast(self.eval(expr.operand, store, point, rec), expr.width, expr.signed)
        if isinstance(expr, FnRef):
            return AbstractValue.func_ptr({expr.name})
        if isinstance(expr, Ite):
            return ite(
                self.eval(expr.cond, store, point, rec),
                self.eval(expr.then, store, point, rec),
                self.eval(expr.other, store, point, rec),
            )
        raise TypeError(f"not an IR expression: {expr!r}")

    # ----- memory -----------------------------------------------------------

    def _check_heap(self, addr: AbstractValue, nbytes: int, store: Store,
                    point: ProgramPoint, rec: Recorder) -> bool:
        obj = store.allocation(addr.base)
        if obj is None or not obj.out_of_bounds(addr.offset, nbytes):
            return False
        rec.diagnose(
            DiagnosticKind.OUT_OF_BOUNDS_ACCESS,
            point,
            f"{nbytes}-byte access at offset {addr.offset} of {addr.base} "
            f"(size {obj.size_fact!r})",
        )
        return True

    def load(self, addr: AbstractValue, nbytes: int, store: Store,
             point: ProgramPoint, rec: Recorder) -> AbstractValue:
        if addr.is_stack_ref:
            loc = StackSlot(addr.base, addr.offset)
            rec.access(point, loc, nbytes, Access.READ)
            return store.read_sized(loc, nbytes)
        if addr.is_heap_ref:
            oob = self._check_heap(addr, nbytes, store, point, rec)
            loc = HeapCell(addr.base, addr.offset)
            rec.access(point, loc, nbytes, Access.READ)
            v = store.read_sized(loc, nbytes)
            return TOP if oob and v.is_undefined else v
        if addr.is_const:
            loc = GlobalCell(addr.literal)
            rec.access(point, loc, nbytes, Access.READ)
            v = store.read_sized(loc, nbytes)
            if v.is_undefined:
                return self._read_image(addr.literal, nbytes)
            return v
        if addr.is_undefined:
            return UNDEFINED
        return TOP

    def _read_image(self, address: int, nbytes: int) -> AbstractValue:
        item = self.program.data_at(address)
        if item is None:
            return TOP
        if item.size == nbytes:
            return item.value
        if item.size > nbytes and item.value.is_const:
            return cast(item.value, nbytes * 8)
        return TOP

    def store_value(self, addr: AbstractValue, value: AbstractValue, nbytes: int,
                    store: Store, point: ProgramPoint, rec: Recorder) -> None:
        if addr.is_stack_ref:
            loc = StackSlot(addr.base, addr.offset)
        elif addr.is_heap_ref:
            self._check_heap(addr, nbytes, store, point, rec)
            loc = HeapCell(addr.base, addr.offset)
        elif addr.is_const:
            loc = GlobalCell(addr.literal)
        elif addr.is_undefined:
            return
        else:
            logger.debug("%s: store through %r at %s", self.context.label, addr, point)
            rec.wild_write(point)
            store.havoc_everything()
            return
        rec.access(point, loc, nbytes, Access.WRITE)
        if value.is_const and value.width != nbytes * 8:
            value = cast(value, nbytes * 8)
        store.write(loc, value, nbytes)

    # ----- blocks -----------------------------------------------------------

    def exec_block(self, block: BasicBlock, store: Store, rec: Recorder) -> BlockOutcome:
        """
        Apply *block* to *store* (consumed) and return the outgoing states.
        A call that never returns ends the block with no successors.
        """
        name = self.function.name
        for i, stmt in enumerate(block.statements):
            point = block.point(name, i)
            if isinstance(stmt, Assign):
                store.write(Register(stmt.dest), self.eval(stmt.expr, store, point, rec))
            elif isinstance(stmt, MemStore):
                addr = self.eval(stmt.addr, store, point, rec)
                value = self.eval(stmt.value, store, point, rec)
                self.store_value(addr, value, stmt.width // 8, store, point, rec)
            elif isinstance(stmt, Call):
                post = self.session.calls.handle(stmt, store, self, point, rec)
                if post is None:
                    return BlockOutcome()
                store = post
            elif not isinstance(stmt, Nop):
                raise TypeError(f"not an IR statement: {stmt!r}")

        term = block.terminator
        point = block.point(name, len(block.statements))
        if isinstance(term, Jump):
            return BlockOutcome(successors=[(term.target, store)])
        if isinstance(term, Branch):
            cond = self.eval(term.cond, store, point, rec)
            if cond.is_undefined:
                return BlockOutcome()
            taken = truth(cond)
            if term.then_label == term.else_label or taken is True:
                return BlockOutcome(successors=[(term.then_label, store)])
            if taken is False:
                return BlockOutcome(successors=[(term.else_label, store)])
            return BlockOutcome(successors=[
                (term.then_label, store.copy()),
                (term.else_label, store),
            ])
        if isinstance(term, Return):
            if term.value is None:
                rv = store.read(Register(self.cc.return_register))
            else:
                rv = self.eval(term.value, store, point, rec)
            return BlockOutcome(exit=(store, rv))
        raise TypeError(f"not an IR terminator: {term!r}")

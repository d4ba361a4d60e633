"""
binabstr.fixpoint
=================

Intraprocedural worklist fixpoint over one function under one call context.

Algorithm
---------
1. The entry block's in-Store is the caller-supplied entry Store.
2. Pop a block, run its transfer function on a copy of its in-Store, and
   merge each outgoing Store into the successor's in-Store.  A successor is
   re-enqueued only when its in-Store strictly changed.
3. At loop heads (targets of DFS back edges) the merge is a widening once the
   head has been visited more than ``widening_delay`` times.
4. After convergence, one reporting pass re-runs every reached block on its
   final in-Store with a live :class:`~binabstr.products.Recorder`.  Exit
   Stores, diagnostics, cross references and the callee results used are
   taken from that pass only, so they do not depend on the worklist order.

Cancellation is checked before each block; a cancelled run raises
:class:`~binabstr.errors.AnalysisCancelled` with every in-Store either fully
merged or untouched.
"""

from __future__ import annotations

import enum
import heapq
import logging
import time
from collections import Counter, deque
from dataclasses import dataclass, field
from typing import (
    TYPE_CHECKING,
    Dict,
    FrozenSet,
    Iterator,
    List,
    Optional,
    Set,
    Tuple,
)

from binabstr.cfg import FunctionCFG
from binabstr.contexts import CallContext
from binabstr.errors import Diagnostic
from binabstr.evaluator import Evaluator
from binabstr.ir import Function, ProgramPoint
from binabstr.lattice import UNDEFINED, AbstractValue, join_all
from binabstr.products import (
    CallEdge,
    Classification,
    CodeXref,
    MemXref,
    Recorder,
    StackXref,
    classify_store,
)
from binabstr.store import Location, Store

if TYPE_CHECKING:
    from binabstr.analysis import AnalysisSession

logger = logging.getLogger(__name__)

__all__ = ["WorklistStrategy", "FunctionResult", "FixpointEngine"]


class WorklistStrategy(enum.Enum):
    FIFO = "fifo"
    LIFO = "lifo"
    RPO  = "rpo"


# ===========================================================================
# RESULT
# ===========================================================================

@dataclass
class FunctionResult:
    """Converged analysis of one function under one call context."""
    function: str
    context: CallContext
    entry_store: Store
    block_in: Dict[str, Store]
    exit_store: Optional[Store]
    return_value: AbstractValue
    diagnostics: Tuple[Diagnostic, ...] = ()
    stack_xrefs: FrozenSet[StackXref] = frozenset()
    mem_xrefs: FrozenSet[MemXref] = frozenset()
    code_xrefs: FrozenSet[CodeXref] = frozenset()
    call_edges: FrozenSet[CallEdge] = frozenset()
    callees: Tuple["FunctionResult", ...] = ()
    indirect_targets: Dict[ProgramPoint, FrozenSet[str]] = field(default_factory=dict)
    wild_writes: FrozenSet[ProgramPoint] = frozenset()
    iterations: int = 0
    converged: bool = True
    elapsed_seconds: float = 0.0

    @property
    def returns(self) -> bool:
        return self.exit_store is not None

    def walk(self) -> Iterator["FunctionResult"]:
        """This result and every callee result it used, each once."""
        seen: Set[int] = set()
        stack = [self]
        while stack:
            r = stack.pop()
            if id(r) in seen:
                continue
            seen.add(id(r))
            yield r
            stack.extend(reversed(r.callees))

    def all_diagnostics(self) -> List[Diagnostic]:
        diags = {d for r in self.walk() for d in r.diagnostics}
        return sorted(diags, key=Diagnostic.sort_key)

    def classify(self) -> Dict[Location, Classification]:
        if self.exit_store is None:
            return {}
        return classify_store(self.exit_store)

    def __repr__(self) -> str:
        return (
            f"FunctionResult({self.context.label}, return={self.return_value!r}, "
            f"blocks={len(self.block_in)}, iterations={self.iterations})"
        )


# ===========================================================================
# ENGINE
# ===========================================================================

class FixpointEngine:
    """Worklist solver for one (function, context, entry Store)."""

    def __init__(
        self,
        session: "AnalysisSession",
        function: Function,
        context: CallContext,
        entry_store: Store,
    ) -> None:
        config = session.config
        self.session = session
        self.function = function
        self.context = context
        self.entry_store = entry_store
        self.strategy = WorklistStrategy(config.strategy)
        self.widening_delay = config.widening_delay
        self.max_iterations = config.max_iterations
        self.cfg = FunctionCFG(function)
        self._loop_heads = self.cfg.loop_heads()
        self._order = self.cfg.reverse_postorder()
        self._rank = {label: i for i, label in enumerate(self._order)}

    # ----- worklist ---------------------------------------------------------

    def _push(self, worklist, queued: Set[str], label: str) -> None:
        if label in queued:
            return
        queued.add(label)
        if self.strategy is WorklistStrategy.RPO:
            heapq.heappush(worklist, (self._rank.get(label, len(self._rank)), label))
        else:
            worklist.append(label)

    def _pop(self, worklist, queued: Set[str]) -> str:
        if self.strategy is WorklistStrategy.RPO:
            _, label = heapq.heappop(worklist)
        elif self.strategy is WorklistStrategy.LIFO:
            label = worklist.pop()
        else:
            label = worklist.popleft()
        queued.discard(label)
        return label

    # ----- solve ------------------------------------------------------------

    def run(self) -> FunctionResult:
        self.session.validate(self.function)
        t0 = time.monotonic()
        fn = self.function
        ev = Evaluator(self.session, fn, self.context)
        silent = Recorder.disabled()

        block_in: Dict[str, Store] = {fn.entry: self.entry_store.copy()}
        visits: Counter = Counter()
        worklist = [] if self.strategy is WorklistStrategy.RPO else deque()
        queued: Set[str] = set()
        self._push(worklist, queued, fn.entry)

        iterations = 0
        converged = True
        while worklist:
            self.session.cancel.check()
            if iterations >= self.max_iterations:
                logger.warning(
                    "%s: no fixpoint after %d iterations; results are partial",
                    self.context.label, iterations,
                )
                converged = False
                break
            label = self._pop(worklist, queued)
            iterations += 1
            visits[label] += 1
            outcome = ev.exec_block(fn.block(label), block_in[label].copy(), silent)
            for succ, out in outcome.successors:
                if self._merge(block_in, visits, succ, out):
                    self._push(worklist, queued, succ)

        result = self._report(ev, block_in)
        result.iterations = iterations
        result.converged = converged
        result.elapsed_seconds = time.monotonic() - t0
        logger.debug(
            "%s: %d iteration(s), return %r",
            self.context.label, iterations, result.return_value,
        )
        return result

    def _merge(self, block_in: Dict[str, Store], visits: Counter,
               succ: str, out: Store) -> bool:
        old = block_in.get(succ)
        if old is None:
            block_in[succ] = out
            return True
        if succ in self._loop_heads and visits[succ] > self.widening_delay:
            widened = old.widen(out)
            if widened == old:
                return False
            block_in[succ] = widened
            return True
        return out.merge_into(old)

    def _report(self, ev: Evaluator, block_in: Dict[str, Store]) -> FunctionResult:
        rec = Recorder(self.function.name, self.context.label)
        exits: List[Tuple[Store, AbstractValue]] = []
        for label in self._order:
            if label not in block_in:
                continue
            outcome = ev.exec_block(self.function.block(label), block_in[label].copy(), rec)
            if outcome.exit is not None:
                exits.append(outcome.exit)

        exit_store: Optional[Store] = None
        for store, _ in exits:
            exit_store = store if exit_store is None else exit_store.join(store)
        return_value = join_all(rv for _, rv in exits) if exits else UNDEFINED

        return FunctionResult(
            function=self.function.name,
            context=self.context,
            entry_store=self.entry_store,
            block_in=block_in,
            exit_store=exit_store,
            return_value=return_value,
            diagnostics=rec.sorted_diagnostics(),
            stack_xrefs=frozenset(rec.stack_xrefs),
            mem_xrefs=frozenset(rec.mem_xrefs),
            code_xrefs=frozenset(rec.code_xrefs),
            call_edges=frozenset(rec.call_edges),
            callees=rec.callees,
            indirect_targets=rec.frozen_targets(),
            wild_writes=frozenset(rec.wild_writes),
        )

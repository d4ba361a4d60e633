"""
binabstr.analysis
=================

Analysis driver: one :class:`AnalysisSession` per run holds everything the
per-function engines share (the program, calling convention, memo cache,
allocation registry, call handler, cancellation token).

Entry points
------------
``analyze_function(program, name, config=None, args=None)``
    Analyse one function as a root, with optional argument values.

``analyze_program(program, entries=None, config=None, cancel=None)``
    Analyse every entry point.  Entries whose statically reachable sets
    overlap are grouped and analysed in one task; with ``max_workers > 1``
    the groups run on a thread pool.  Results do not depend on the number
    of workers or on scheduling order.

A function that fails validation is reported as a ``MalformedInput``
diagnostic and analysed as if it were never reached; the rest of the
program is still analysed.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, List, Optional, Sequence, Set, Union

from binabstr.callgraph import CallGraph, build_resolved_callgraph, build_static_callgraph
from binabstr.config import AnalysisConfig
from binabstr.contexts import CallContext, ContextCache
from binabstr.dependence import DependencePass, MemDependence
from binabstr.errors import AnalysisCancelled, Diagnostic, DiagnosticKind, MalformedInput
from binabstr.fixpoint import FixpointEngine, FunctionResult
from binabstr.frames import StackFrameModel, get_convention
from binabstr.heap import AllocationObject, AllocationRegistry, HeapModel
from binabstr.interproc import CallHandler
from binabstr.ir import Function, Program, ProgramPoint
from binabstr.lattice import TOP, AbstractValue
from binabstr.resolver import IndirectCallResolver
from binabstr.store import Store

logger = logging.getLogger(__name__)

__all__ = [
    "CancellationToken",
    "AnalysisSession",
    "ProgramResult",
    "analyze_function",
    "analyze_program",
]

ArgValue = Union[AbstractValue, int]


class CancellationToken:
    """Cooperative cancellation, checked between block iterations."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def check(self) -> None:
        if self._event.is_set():
            raise AnalysisCancelled("analysis cancelled")


# ═══════════════════════════════════════════════════════════════════════════
# §1  SESSION
# ═══════════════════════════════════════════════════════════════════════════

class AnalysisSession:
    """Run-scoped state shared by every function analysis of one run."""

    def __init__(
        self,
        program: Program,
        config: Optional[AnalysisConfig] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> None:
        self.config = config or AnalysisConfig()
        self.program = program.with_signatures(self.config.extra_signatures())
        self.cc = get_convention(self.config.calling_convention or program.calling_convention)
        self.frames = StackFrameModel(self.cc)
        self.registry = AllocationRegistry()
        self.heap = HeapModel(self.registry)
        self.cache: ContextCache[FunctionResult] = ContextCache()
        self.cancel = cancel or CancellationToken()
        self.calls = CallHandler(self)
        self.resolver = IndirectCallResolver(self)
        self._validated: Dict[str, Optional[MalformedInput]] = {}
        self._lock = threading.Lock()

    def validate(self, fn: Function) -> None:
        """Raise the (cached) validation error of *fn*, if any."""
        with self._lock:
            if fn.name not in self._validated:
                try:
                    fn.validate(self.program)
                    self._validated[fn.name] = None
                except MalformedInput as exc:
                    logger.warning("malformed function %s: %s", fn.name, exc)
                    self._validated[fn.name] = exc
            error = self._validated[fn.name]
        if error is not None:
            raise error

    # ----- per-context analyses ---------------------------------------------

    def analyze_context(self, fn: Function, ctx: CallContext, entry: Store) -> FunctionResult:
        """Memoized fixpoint of *fn* under *ctx* from *entry*."""
        key = (fn.name, ctx.label, entry.key())

        def compute() -> FunctionResult:
            logger.debug("analysing %s", ctx.label)
            return FixpointEngine(self, fn, ctx, entry).run()

        return self.cache.get_or_compute(key, compute)

    def analyze_summary(self, fn: Function, ctx: CallContext) -> FunctionResult:
        """The shared summary of *fn*: ``Top`` arguments over ``Top`` memory."""
        entry = Store()
        entry.havoc_everything()
        bindings = self.frames.classify_args([TOP] * fn.params, ctx.frame_id)
        self.frames.enter(entry, self.frames.build_frame(bindings, ctx.frame_id), bindings)
        return self.analyze_context(fn, ctx, entry)

    def analyze_entry(self, name: str, args: Optional[Sequence[ArgValue]] = None) -> FunctionResult:
        fn = self.program.function(name)
        if fn is None:
            raise MalformedInput(f"no function named {name!r}", function=name)
        ctx = CallContext.root(name)
        values = [_as_value(a) for a in (args or ())]
        bindings = self.frames.classify_args(values, ctx.frame_id, expected=fn.params)
        entry = Store()
        self.frames.enter(entry, self.frames.build_frame(bindings, ctx.frame_id), bindings)
        return self.analyze_context(fn, ctx, entry)


def _as_value(arg: ArgValue) -> AbstractValue:
    if isinstance(arg, AbstractValue):
        return arg
    return AbstractValue.const(arg)


# ═══════════════════════════════════════════════════════════════════════════
# §2  PROGRAM RESULT
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class ProgramResult:
    """Everything one :func:`analyze_program` run recovered."""
    results: Dict[str, FunctionResult] = field(default_factory=dict)
    contexts: Dict[str, FunctionResult] = field(default_factory=dict)
    callgraph: Optional[CallGraph] = None
    indirect_targets: Dict[ProgramPoint, FrozenSet[str]] = field(default_factory=dict)
    diagnostics: List[Diagnostic] = field(default_factory=list)
    allocations: Dict[str, AllocationObject] = field(default_factory=dict)
    dependences: List[MemDependence] = field(default_factory=list)
    elapsed_seconds: float = 0.0

    def result(self, name: str) -> Optional[FunctionResult]:
        return self.results.get(name)

    def return_value(self, name: str) -> AbstractValue:
        r = self.results.get(name)
        if r is None:
            raise KeyError(name)
        return r.return_value

    def diagnostics_of(self, kind: DiagnosticKind) -> List[Diagnostic]:
        return [d for d in self.diagnostics if d.kind is kind]

    @property
    def ok(self) -> bool:
        return not any(d.fatal for d in self.diagnostics)

    def summary(self) -> str:
        lines = [
            f"Entries analysed:   {len(self.results)}",
            f"Contexts:           {len(self.contexts)}",
            f"Indirect sites:     {len(self.indirect_targets)}",
            f"Allocation sites:   {len(self.allocations)}",
            f"Dependences:        {len(self.dependences)}",
            f"Diagnostics:        {len(self.diagnostics)}",
            f"Elapsed:            {self.elapsed_seconds:.3f}s",
        ]
        for d in self.diagnostics:
            lines.append(f"  {d}")
        return "\n".join(lines)


# ═══════════════════════════════════════════════════════════════════════════
# §3  DRIVERS
# ═══════════════════════════════════════════════════════════════════════════

def analyze_function(
    program: Program,
    name: str,
    config: Optional[AnalysisConfig] = None,
    args: Optional[Sequence[ArgValue]] = None,
) -> FunctionResult:
    """Analyse *name* as a root with the given argument values."""
    session = AnalysisSession(program, config)
    return session.analyze_entry(name, args)


def _default_entries(program: Program, cg: CallGraph) -> List[str]:
    if program.entries:
        return list(program.entries)
    roots = [n.name for n in cg.roots]
    return roots or sorted(program.functions)


def _group_entries(entries: Sequence[str], cg: CallGraph, program: Program) -> List[List[str]]:
    """Partition *entries* so that entries sharing a reachable function
    body land in the same group (union-find over reachable sets)."""
    parent = {e: e for e in entries}

    def find(x: str) -> str:
        while parent[x] != x:
            parent[x] = parent[parent[x]]
            x = parent[x]
        return x

    owner: Dict[str, str] = {}
    for e in entries:
        for fn in cg.reachable_from(e):
            if not program.has_body(fn):
                continue
            if fn in owner:
                ra, rb = find(owner[fn]), find(e)
                if ra != rb:
                    parent[rb] = ra
            else:
                owner[fn] = e

    groups: Dict[str, List[str]] = {}
    for e in entries:
        groups.setdefault(find(e), []).append(e)
    return list(groups.values())


def _run_group(session: AnalysisSession, group: Iterable[str]) -> Dict[str, Union[FunctionResult, Diagnostic]]:
    out: Dict[str, Union[FunctionResult, Diagnostic]] = {}
    for name in group:
        try:
            out[name] = session.analyze_entry(name)
        except MalformedInput as exc:
            out[name] = Diagnostic(
                kind=DiagnosticKind.MALFORMED_INPUT,
                function=name,
                message=str(exc),
                context=name,
            )
    return out


def analyze_program(
    program: Program,
    entries: Optional[Iterable[str]] = None,
    config: Optional[AnalysisConfig] = None,
    cancel: Optional[CancellationToken] = None,
) -> ProgramResult:
    """Analyse every entry point of *program*."""
    t0 = time.monotonic()
    session = AnalysisSession(program, config, cancel)
    static_cg = build_static_callgraph(session.program)
    names = list(dict.fromkeys(entries)) if entries is not None else _default_entries(session.program, static_cg)
    groups = _group_entries(names, static_cg, session.program)
    logger.info(
        "analysing %d entr%s in %d group(s) with %d worker(s)",
        len(names), "y" if len(names) == 1 else "ies", len(groups), session.config.max_workers,
    )

    outcomes: Dict[str, Union[FunctionResult, Diagnostic]] = {}
    if session.config.max_workers > 1 and len(groups) > 1:
        with ThreadPoolExecutor(max_workers=session.config.max_workers) as pool:
            futures = [pool.submit(_run_group, session, g) for g in groups]
            for fut in futures:
                outcomes.update(fut.result())
    else:
        for g in groups:
            outcomes.update(_run_group(session, g))

    result = ProgramResult()
    diags: Set[Diagnostic] = set()
    for name in names:
        outcome = outcomes[name]
        if isinstance(outcome, Diagnostic):
            diags.add(outcome)
            continue
        result.results[name] = outcome
        for r in outcome.walk():
            result.contexts.setdefault(r.context.label, r)

    edges = set()
    targets: Dict[ProgramPoint, Set[str]] = {}
    for r in result.contexts.values():
        diags.update(r.diagnostics)
        edges.update(r.call_edges)
        for point, ts in r.indirect_targets.items():
            targets.setdefault(point, set()).update(ts)

    result.callgraph = build_resolved_callgraph(session.program, edges)
    result.indirect_targets = {p: frozenset(t) for p, t in sorted(targets.items())}
    result.diagnostics = sorted(diags, key=Diagnostic.sort_key)
    result.allocations = session.registry.snapshot()

    deps = DependencePass(session.program)
    for r in result.results.values():
        deps.run(r)
    result.dependences = deps.sorted_pairs()
    result.elapsed_seconds = time.monotonic() - t0
    logger.info(
        "analysis finished: %d context(s), %d diagnostic(s), %d cache hit(s) in %.3fs",
        len(result.contexts), len(result.diagnostics), session.cache.hits, result.elapsed_seconds,
    )
    return result

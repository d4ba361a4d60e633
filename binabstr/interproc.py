"""
binabstr.interproc
==================

Interprocedural call handling: direct calls, external routines, the
recursion cutoff and the opaque-call model.

Direct call
-----------
The callee gets a clone context ``caller/site:callee``.  Its entry Store is
the caller's memory (registers dropped) plus the argument bindings from the
stack-frame model and the callee stack pointer.  Its joined exit Store comes
back as the caller's memory, minus the callee frame; caller registers
survive except the convention's clobbered set; the destination register
receives the return value.  Because the callee worked on the caller's own
memory, writes made through pointer arguments are visible after the call.

Recursion cutoff
----------------
A callee already present ``clone_depth`` (K) times on the call string is not
cloned again.  The call goes to the callee's shared summary: one analysis
with ``Top`` arguments and ``Top`` memory, memoized for every such call.  The
summary's effects are folded back conservatively (opaque havoc through the
arguments, heap objects it created, joined global writes, its return value).
Inside a summary, a call back into a function whose summary is being
computed is an opaque call.

Opaque call
-----------
Returns ``Top``, overwrites with ``Top`` every region reachable from a
pointer argument, clobbers caller-saved registers.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Optional, Sequence

from binabstr.contexts import CallContext
from binabstr.errors import DiagnosticKind, MalformedInput
from binabstr.ir import Call, Function, ProgramPoint
from binabstr.lattice import TOP, AbstractValue, join
from binabstr.products import CallKind, Recorder
from binabstr.store import GlobalCell, HeapCell, Register, Store

if TYPE_CHECKING:
    from binabstr.analysis import AnalysisSession
    from binabstr.evaluator import Evaluator

logger = logging.getLogger(__name__)

__all__ = ["CallHandler"]


class CallHandler:
    """Applies the effect of call statements to a caller Store."""

    def __init__(self, session: "AnalysisSession") -> None:
        self.session = session
        self.program = session.program
        self.frames = session.frames
        self.heap = session.heap
        self.cc = session.cc

    # ═══ §1  ENTRY POINT ═══════════════════════════════════════════════════

    def handle(
        self,
        call: Call,
        store: Store,
        ev: "Evaluator",
        point: ProgramPoint,
        rec: Recorder,
    ) -> Optional[Store]:
        """
        Store after *call*, or ``None`` when the call never returns.
        *store* is not modified.
        """
        args = [ev.eval(a, store, point, rec) for a in call.args]
        if call.is_direct:
            return self.call_named(call.target, call, args, store, ev, point, rec, CallKind.DIRECT)
        if call.target is None:
            target = TOP
        else:
            target = ev.eval(call.target, store, point, rec)
        return self.session.resolver.dispatch(target, call, args, store, ev, point, rec)

    def call_named(
        self,
        name: str,
        call: Call,
        args: Sequence[AbstractValue],
        store: Store,
        ev: "Evaluator",
        point: ProgramPoint,
        rec: Recorder,
        kind: CallKind,
    ) -> Optional[Store]:
        """Call a routine the program declares (with a body or external)."""
        fn = self.program.function(name)
        if fn is not None:
            return self._call_body(fn, call, args, store, ev.context, point, rec, kind)
        signature = self.program.signature(name)
        obj = self.heap.on_call(signature, args, ev.context.label, point, record=rec.enabled)
        rec.call(point, name, CallKind.EXTERNAL)
        if obj is None:
            return self.opaque(store, args, call)
        post = store.copy()
        post.add_allocation(obj)
        self.frames.clobber(post)
        self._set_result(post, call, AbstractValue.heap_ref(obj.alloc_id, 0))
        return post

    # ═══ §2  BODIES: CLONE OR SUMMARY ═════════════════════════════════════

    def _call_body(
        self,
        fn: Function,
        call: Call,
        args: Sequence[AbstractValue],
        store: Store,
        ctx: CallContext,
        point: ProgramPoint,
        rec: Recorder,
        kind: CallKind,
    ) -> Optional[Store]:
        if fn.name in ctx.summary_of:
            rec.diagnose(
                DiagnosticKind.RECURSION_LIMIT_EXCEEDED,
                point,
                f"recursive call to {fn.name} inside its own summary; modelled as opaque",
            )
            rec.call(point, fn.name, CallKind.OPAQUE)
            return self.opaque(store, args, call)
        if ctx.occurrences(fn.name) >= self.session.config.clone_depth:
            return self._call_summary(fn, call, args, store, ctx, point, rec)
        return self._call_clone(fn, call, args, store, ctx, point, rec, kind)

    def _call_clone(
        self,
        fn: Function,
        call: Call,
        args: Sequence[AbstractValue],
        store: Store,
        ctx: CallContext,
        point: ProgramPoint,
        rec: Recorder,
        kind: CallKind,
    ) -> Optional[Store]:
        child = ctx.extend(fn.name, point.site)
        try:
            bindings = self.frames.classify_args(
                args, child.frame_id, call.stack_offsets, expected=fn.params,
            )
            frame = self.frames.build_frame(bindings, child.frame_id)
            entry = store.memory_copy()
            self.frames.enter(entry, frame, bindings)
            result = self.session.analyze_context(fn, child, entry)
        except MalformedInput as exc:
            return self._malformed(exc, fn.name, call, args, store, point, rec)

        rec.call(point, fn.name, kind, result)
        if result.exit_store is None:
            return None
        post = result.exit_store.memory_copy()
        post.drop_frame(frame.frame_id)
        self._restore_registers(post, store)
        ret = result.return_value
        if ret.is_stack_ref and ret.base == frame.frame_id:
            ret = TOP
        self._set_result(post, call, ret)
        return post

    def _call_summary(
        self,
        fn: Function,
        call: Call,
        args: Sequence[AbstractValue],
        store: Store,
        ctx: CallContext,
        point: ProgramPoint,
        rec: Recorder,
    ) -> Optional[Store]:
        sctx = CallContext.summary(fn.name, ctx.summary_of)
        rec.diagnose(
            DiagnosticKind.RECURSION_LIMIT_EXCEEDED,
            point,
            f"{fn.name} already cloned {self.session.config.clone_depth} time(s) "
            f"on this call string; using {sctx.label}",
        )
        try:
            result = self.session.analyze_summary(fn, sctx)
        except MalformedInput as exc:
            return self._malformed(exc, fn.name, call, args, store, point, rec)

        rec.call(point, fn.name, CallKind.SUMMARY, result)
        if result.exit_store is None:
            return None
        post = self.opaque(store, args, call)
        exit_store = result.exit_store
        for obj in exit_store.allocations().values():
            post.add_allocation(obj)
        for loc, value in exit_store.items():
            if isinstance(loc, (HeapCell, GlobalCell)):
                post.write(loc, join(post.read(loc), value), exit_store.size_of(loc))
        ret = result.return_value
        if ret.is_stack_ref:
            ret = TOP
        self._set_result(post, call, ret)
        return post

    def _malformed(self, exc: MalformedInput, callee: str, call: Call,
                   args: Sequence[AbstractValue], store: Store,
                   point: ProgramPoint, rec: Recorder) -> Store:
        logger.warning("%s: callee %s is malformed: %s", point, callee, exc)
        rec.diagnose(DiagnosticKind.MALFORMED_INPUT, point, f"callee {callee}: {exc}")
        rec.call(point, callee, CallKind.OPAQUE)
        return self.opaque(store, args, call)

    # ═══ §3  STORE PLUMBING ═══════════════════════════════════════════════

    def opaque(self, store: Store, args: Sequence[AbstractValue], call: Call) -> Store:
        """Effect of a call to code with no available body."""
        post = store.copy()
        post.havoc_reachable(args)
        self.frames.clobber(post)
        self._set_result(post, call, TOP)
        return post

    def _restore_registers(self, post: Store, caller: Store) -> None:
        for name, value in caller.registers().items():
            post.write(Register(name), value)
        self.frames.clobber(post)

    def _set_result(self, post: Store, call: Call, value: AbstractValue) -> None:
        post.write(Register(self.cc.return_register), value)
        if call.dest is not None:
            post.write(Register(call.dest), value)

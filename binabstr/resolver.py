"""
binabstr.resolver
=================

Indirect-call resolution.

The target expression of an indirect call is evaluated in the current
Store.  A ``FuncPtr`` with a finite target set is dispatched to every
target; a constant that is the entry address of a known function is
dispatched to that function.  Anything else falls back to the call's
declared candidate list; with no candidates the call is unresolved,
reported once and modelled as opaque.  A target that is a declared
external routine (no body) is an opaque call plus the same diagnostic,
unless it is a recognized allocator.

Each target is analysed as a separate callee on its own copy of the
caller's Store, and the resulting Stores are joined.  Targets that
never return drop out of the join.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, List, Optional, Sequence, Tuple

from binabstr.errors import DiagnosticKind
from binabstr.heap import is_allocator
from binabstr.ir import Call, ProgramPoint
from binabstr.lattice import AbstractValue
from binabstr.products import CallKind, Recorder
from binabstr.store import Store

if TYPE_CHECKING:
    from binabstr.analysis import AnalysisSession
    from binabstr.evaluator import Evaluator

logger = logging.getLogger(__name__)

__all__ = ["Resolution", "IndirectCallResolver"]


@dataclass(frozen=True)
class Resolution:
    targets: Tuple[str, ...]
    source: str  # "value", "address", "candidates" or "none"

    @property
    def resolved(self) -> bool:
        return bool(self.targets)


class IndirectCallResolver:

    def __init__(self, session: "AnalysisSession") -> None:
        self.session = session
        self.program = session.program

    def resolve(self, value: AbstractValue, call: Call) -> Resolution:
        """Possible targets of *call* when its target evaluates to *value*."""
        if value.is_func_ptr and not value.is_unknown_target and value.targets:
            return Resolution(tuple(sorted(value.targets)), "value")
        if value.is_const:
            name = self.program.function_at(value.literal)
            if name is not None:
                return Resolution((name,), "address")
        if call.candidates:
            return Resolution(tuple(sorted(set(call.candidates))), "candidates")
        return Resolution((), "none")

    def dispatch(
        self,
        value: AbstractValue,
        call: Call,
        args: Sequence[AbstractValue],
        store: Store,
        ev: "Evaluator",
        point: ProgramPoint,
        rec: Recorder,
    ) -> Optional[Store]:
        handler = self.session.calls
        res = self.resolve(value, call)
        if not res.resolved:
            rec.diagnose(
                DiagnosticKind.UNRESOLVED_INDIRECT_TARGET,
                point,
                f"indirect call through {value!r} has no known target",
            )
            rec.call(point, "<unknown>", CallKind.UNRESOLVED)
            return handler.opaque(store, args, call)

        posts: List[Store] = []
        for name in res.targets:
            signature = self.program.signature(name)
            if self.program.has_body(name) or is_allocator(signature):
                post = handler.call_named(
                    name, call, args, store.copy(), ev, point, rec, CallKind.INDIRECT,
                )
            elif signature is not None:
                rec.diagnose(
                    DiagnosticKind.UNRESOLVED_INDIRECT_TARGET,
                    point,
                    f"indirect call target {name} has no body; modelled as opaque",
                )
                post = handler.call_named(
                    name, call, args, store.copy(), ev, point, rec, CallKind.INDIRECT,
                )
            else:
                rec.diagnose(
                    DiagnosticKind.UNRESOLVED_INDIRECT_TARGET,
                    point,
                    f"indirect call target {name} is not part of the program",
                )
                rec.call(point, name, CallKind.OPAQUE)
                post = handler.opaque(store, args, call)
            if post is not None:
                posts.append(post)
        rec.indirect(point, res.targets)
        logger.debug("%s: indirect call -> %s (%s)", point, ", ".join(res.targets), res.source)

        if not posts:
            return None
        joined = posts[0]
        for post in posts[1:]:
            joined = joined.join(post)
        return joined

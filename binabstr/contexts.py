"""
binabstr.contexts
=================

Call contexts (call strings with a recursion count) and the run-wide memo
cache of per-context function results.

A context is either

* a **root** (``function`` analysed as an entry point),
* a **clone** (``caller`` context + call site), or
* a **summary**: a shared, context-insensitive analysis of a function,
  reached when a call string already holds the callee ``K`` times.
  ``summary_of`` lists every function whose summary is being computed
  along this chain; a recursive call back into one of them is opaque.

The label of a context doubles as the frame id of its activation and as
the prefix of the allocation ids it creates.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from functools import cached_property
from typing import Any, Callable, Dict, FrozenSet, Generic, Hashable, List, Optional, TypeVar

logger = logging.getLogger(__name__)

__all__ = ["CallContext", "ContextCache"]

T = TypeVar("T")


# ═══════════════════════════════════════════════════════════════════════════
# §1  CALL CONTEXTS
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class CallContext:
    function: str
    caller: Optional["CallContext"] = None
    call_site: Optional[str] = None
    clone_depth: int = 0
    summary_of: FrozenSet[str] = field(default_factory=frozenset)
    is_summary: bool = False

    @classmethod
    def root(cls, function: str) -> "CallContext":
        return cls(function=function)

    @classmethod
    def summary(cls, function: str, summary_of: FrozenSet[str] = frozenset()) -> "CallContext":
        return cls(
            function=function,
            summary_of=frozenset(summary_of) | {function},
            is_summary=True,
        )

    def extend(self, callee: str, call_site: str) -> "CallContext":
        """The clone context of *callee* called from this context."""
        return CallContext(
            function=callee,
            caller=self,
            call_site=call_site,
            clone_depth=self.clone_depth + 1,
            summary_of=self.summary_of,
        )

    @cached_property
    def label(self) -> str:
        if self.is_summary:
            others = sorted(self.summary_of - {self.function})
            suffix = f"[{','.join(others)}]" if others else ""
            return f"{self.function}#summary{suffix}"
        if self.caller is None:
            return self.function
        return f"{self.caller.label}/{self.call_site}:{self.function}"

    @property
    def frame_id(self) -> str:
        return self.label

    def chain(self) -> List[str]:
        """Functions on the call string, innermost first, up to the root or
        summary that started it."""
        names = []
        ctx: Optional[CallContext] = self
        while ctx is not None:
            names.append(ctx.function)
            ctx = ctx.caller
        return names

    def occurrences(self, function: str) -> int:
        return sum(1 for name in self.chain() if name == function)

    def __repr__(self) -> str:
        return f"CallContext({self.label})"


# ═══════════════════════════════════════════════════════════════════════════
# §2  MEMO CACHE
# ═══════════════════════════════════════════════════════════════════════════

class _Slot:
    __slots__ = ("done", "value", "error", "owner")

    def __init__(self, owner: int) -> None:
        self.done = threading.Event()
        self.value: Any = None
        self.error: Optional[BaseException] = None
        self.owner = owner


class ContextCache(Generic[T]):
    """
    Insert-or-fetch cache with one writer per key.

    The first thread to ask for a key computes it; concurrent requesters
    block until the writer publishes.  A writer that raises publishes the
    exception to the waiters and leaves the key uncached, so a later request
    retries.
    """

    def __init__(self) -> None:
        self._slots: Dict[Hashable, _Slot] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get_or_compute(self, key: Hashable, compute: Callable[[], T]) -> T:
        me = threading.get_ident()
        with self._lock:
            slot = self._slots.get(key)
            owner = slot is None
            if owner:
                slot = _Slot(me)
                self._slots[key] = slot
                self.misses += 1
            else:
                self.hits += 1

        if not owner:
            if slot.owner == me and not slot.done.is_set():
                raise RuntimeError(f"re-entrant computation of cache key {key!r}")
            slot.done.wait()
            if slot.error is not None:
                raise slot.error
            return slot.value

        try:
            value = compute()
        except BaseException as exc:
            with self._lock:
                self._slots.pop(key, None)
            slot.error = exc
            slot.done.set()
            raise
        slot.value = value
        slot.done.set()
        return value

    def peek(self, key: Hashable) -> Optional[T]:
        with self._lock:
            slot = self._slots.get(key)
        if slot is None or not slot.done.is_set():
            return None
        return slot.value

    def values(self) -> List[T]:
        with self._lock:
            slots = list(self._slots.values())
        return [s.value for s in slots if s.done.is_set() and s.error is None]

    def __len__(self) -> int:
        with self._lock:
            return len(self._slots)

    def __contains__(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._slots

    def clear(self) -> None:
        with self._lock:
            self._slots.clear()

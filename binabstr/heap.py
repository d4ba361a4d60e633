"""
binabstr.heap
=============

Allocation-site heap model.

Every call to a recognized allocation routine yields an
:class:`AllocationObject` named after the call site *and* the calling
context (``"<context>@<site>"``).  Two static call sites never share an
object; one site reached under different contexts may, and one site
executed repeatedly (inside a loop) always does, with its size facts
joined.

Size facts are ``Const(n)``, ``Top`` or a :class:`SizeRange`.  Joining two
different constant sizes gives a range; widening a growing range gives
``Top``.

The run-scoped :class:`AllocationRegistry` collects every object the final
reporting passes observed.  It is shared between worker threads and guards
itself with a lock.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, replace
from typing import Dict, Iterator, List, Optional, Sequence, Union

from binabstr.ir import ProgramPoint, Signature
from binabstr.lattice import TOP, AbstractValue, binop

logger = logging.getLogger(__name__)

__all__ = [
    "SizeRange",
    "SizeFact",
    "AllocationObject",
    "HeapModel",
    "AllocationRegistry",
    "is_allocator",
    "join_size",
    "widen_size",
]


# ---------------------------------------------------------------------------
# 1. Size facts
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SizeRange:
    lo: int
    hi: int

    def __repr__(self) -> str:
        return f"Range({self.lo}, {self.hi})"


SizeFact = Union[AbstractValue, SizeRange]


def _bounds(fact: SizeFact) -> Optional[tuple]:
    if isinstance(fact, SizeRange):
        return fact.lo, fact.hi
    if fact.is_const:
        return fact.literal, fact.literal
    return None


def join_size(a: SizeFact, b: SizeFact) -> SizeFact:
    if a == b:
        return a
    ba, bb = _bounds(a), _bounds(b)
    if ba is None or bb is None:
        return TOP
    return SizeRange(min(ba[0], bb[0]), max(ba[1], bb[1]))


def widen_size(old: SizeFact, new: SizeFact) -> SizeFact:
    joined = join_size(old, new)
    return old if joined == old else TOP


# ---------------------------------------------------------------------------
# 2. Allocation objects
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AllocationObject:
    alloc_id: str
    size_fact: SizeFact
    live_from: ProgramPoint

    @property
    def size(self) -> Optional[int]:
        """Concrete byte size, when known exactly."""
        if isinstance(self.size_fact, AbstractValue) and self.size_fact.is_const:
            return self.size_fact.literal
        return None

    def join(self, other: "AllocationObject") -> "AllocationObject":
        fact = join_size(self.size_fact, other.size_fact)
        return self if fact == self.size_fact else replace(self, size_fact=fact)

    def widen(self, other: "AllocationObject") -> "AllocationObject":
        fact = widen_size(self.size_fact, other.size_fact)
        return self if fact == self.size_fact else replace(self, size_fact=fact)

    def out_of_bounds(self, offset: int, nbytes: int) -> bool:
        """
        True when ``[offset, offset + nbytes)`` is definitely outside the
        object.  Ranged sizes only flag accesses beyond the upper bound.
        """
        if offset < 0:
            return True
        bounds = _bounds(self.size_fact)
        if bounds is None:
            return False
        return offset + nbytes > bounds[1]


def is_allocator(signature: Optional[Signature]) -> bool:
    """Pointer-like return and exactly one size-bearing parameter."""
    if signature is None or not signature.returns_pointer:
        return False
    return sum(1 for p in signature.params if p == "size") == 1


# ---------------------------------------------------------------------------
# 3. Heap model
# ---------------------------------------------------------------------------

class HeapModel:
    """Recognizes allocation calls and names the objects they create."""

    def __init__(self, registry: Optional["AllocationRegistry"] = None) -> None:
        self.registry = registry

    @staticmethod
    def allocation_id(context_label: str, point: ProgramPoint) -> str:
        return f"{context_label}@{point.site}"

    def on_call(
        self,
        signature: Optional[Signature],
        args: Sequence[AbstractValue],
        context_label: str,
        point: ProgramPoint,
        record: bool = False,
    ) -> Optional[AllocationObject]:
        """
        Return the object allocated by this call, or ``None`` when
        *signature* is not an allocation routine.  ``record`` publishes the
        object to the run registry.
        """
        if not is_allocator(signature):
            return None
        size = self._size_argument(signature, args)
        obj = AllocationObject(
            alloc_id=self.allocation_id(context_label, point),
            size_fact=size if size.is_const else TOP,
            live_from=point,
        )
        if record and self.registry is not None:
            self.registry.record(obj)
        return obj

    @staticmethod
    def _size_argument(signature: Signature, args: Sequence[AbstractValue]) -> AbstractValue:
        size: Optional[AbstractValue] = None
        for kind, arg in zip(signature.params, args):
            if kind in ("size", "count"):
                size = arg if size is None else binop("mul", size, arg)
        if size is None or len(args) < len(signature.params):
            return TOP
        return size


# ---------------------------------------------------------------------------
# 4. Registry
# ---------------------------------------------------------------------------

class AllocationRegistry:
    """Thread-safe, run-scoped table ``alloc_id -> AllocationObject``."""

    def __init__(self) -> None:
        self._objects: Dict[str, AllocationObject] = {}
        self._lock = threading.Lock()

    def record(self, obj: AllocationObject) -> AllocationObject:
        with self._lock:
            old = self._objects.get(obj.alloc_id)
            merged = obj if old is None else old.join(obj)
            self._objects[obj.alloc_id] = merged
        if old is None:
            logger.debug("allocation %s size=%r", obj.alloc_id, obj.size_fact)
        return merged

    def get(self, alloc_id: str) -> Optional[AllocationObject]:
        with self._lock:
            return self._objects.get(alloc_id)

    def snapshot(self) -> Dict[str, AllocationObject]:
        with self._lock:
            return dict(sorted(self._objects.items()))

    def ids(self) -> List[str]:
        with self._lock:
            return sorted(self._objects)

    def __iter__(self) -> Iterator[AllocationObject]:
        return iter(self.snapshot().values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._objects)

    def __contains__(self, alloc_id: str) -> bool:
        with self._lock:
            return alloc_id in self._objects

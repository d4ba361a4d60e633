"""
binabstr.store
==============

Locations and the per-program-point Store.

Locations
---------
    Register(name)
    StackSlot(frame, offset)     byte offset into an activation's frame
    HeapCell(alloc, offset)      byte offset into an allocation object
    GlobalCell(address)          absolute address in the data image

Memory locations belong to a *region* ``(RegionKind, base)``: one per stack
frame, one per allocation object, and a single global region.

The Store
---------
A mutable map ``Location -> AbstractValue`` plus the allocation objects live
at this point and the set of *havocked* regions (regions an opaque call may
have overwritten; their unwritten cells read as ``Top``).  Every other
unwritten location reads as ``Undefined``.

Memory cells remember the byte size of the write that created them.  A write
that partially overlaps another cell turns that cell into ``Top``; a narrower
read of a constant cell truncates it (little-endian), any other mismatched
read is ``Top``.

Stores are compared and memoized through :meth:`Store.key`, a hashable
snapshot; the Store itself is unhashable because it is mutable.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import (
    Dict,
    FrozenSet,
    Iterable,
    Iterator,
    List,
    Optional,
    Set,
    Tuple,
    Union,
)

from binabstr.heap import AllocationObject
from binabstr.lattice import (
    TOP,
    UNDEFINED,
    AbstractValue,
    cast,
    join,
    widen,
)

__all__ = [
    "RegionKind",
    "Region",
    "Register",
    "StackSlot",
    "HeapCell",
    "GlobalCell",
    "Location",
    "MemoryLocation",
    "GLOBAL_REGION",
    "location_of",
    "region_of",
    "Store",
    "StoreKey",
]


# ---------------------------------------------------------------------------
# 1. Locations
# ---------------------------------------------------------------------------

class RegionKind(enum.Enum):
    STACK  = "stack"
    HEAP   = "heap"
    GLOBAL = "global"


Region = Tuple[RegionKind, str]

GLOBAL_REGION: Region = (RegionKind.GLOBAL, "")


@dataclass(frozen=True)
class Register:
    name: str

    def __repr__(self) -> str:
        return f"%{self.name}"


@dataclass(frozen=True)
class StackSlot:
    frame: str
    offset: int

    @property
    def region(self) -> Region:
        return (RegionKind.STACK, self.frame)

    def __repr__(self) -> str:
        return f"stack[{self.frame}{self.offset:+d}]"


@dataclass(frozen=True)
class HeapCell:
    alloc: str
    offset: int

    @property
    def region(self) -> Region:
        return (RegionKind.HEAP, self.alloc)

    def __repr__(self) -> str:
        return f"heap[{self.alloc}{self.offset:+d}]"


@dataclass(frozen=True)
class GlobalCell:
    address: int

    @property
    def offset(self) -> int:
        return self.address

    @property
    def region(self) -> Region:
        return GLOBAL_REGION

    def __repr__(self) -> str:
        return f"mem[{self.address:#x}]"


MemoryLocation = Union[StackSlot, HeapCell, GlobalCell]
Location = Union[Register, StackSlot, HeapCell, GlobalCell]


def location_of(address: AbstractValue) -> Optional[MemoryLocation]:
    """The memory cell an address value designates, if it is precise."""
    if address.is_stack_ref:
        return StackSlot(address.base, address.offset)
    if address.is_heap_ref:
        return HeapCell(address.base, address.offset)
    if address.is_const:
        return GlobalCell(address.literal)
    return None


def region_of(value: AbstractValue) -> Optional[Region]:
    if value.is_stack_ref:
        return (RegionKind.STACK, value.base)
    if value.is_heap_ref:
        return (RegionKind.HEAP, value.base)
    return None


StoreKey = Tuple[
    FrozenSet[Tuple[Location, AbstractValue]],
    FrozenSet[Tuple[Location, int]],
    FrozenSet[Tuple[str, AllocationObject]],
    FrozenSet[Region],
    bool,
]


# ---------------------------------------------------------------------------
# 2. Store
# ---------------------------------------------------------------------------

class Store:
    """Mapping from Location to AbstractValue at one program point."""

    __slots__ = ("_values", "_sizes", "_heap", "_havoc", "_havoc_all")

    __hash__ = None  # mutable

    def __init__(self) -> None:
        self._values: Dict[Location, AbstractValue] = {}
        self._sizes: Dict[Location, int] = {}
        self._heap: Dict[str, AllocationObject] = {}
        self._havoc: Set[Region] = set()
        self._havoc_all = False

    def copy(self) -> "Store":
        s = Store()
        s._values = dict(self._values)
        s._sizes = dict(self._sizes)
        s._heap = dict(self._heap)
        s._havoc = set(self._havoc)
        s._havoc_all = self._havoc_all
        return s

    def memory_copy(self) -> "Store":
        """A copy without registers."""
        s = self.copy()
        for loc in [k for k in s._values if isinstance(k, Register)]:
            del s._values[loc]
        return s

    # -- Read / Write --------------------------------------------------------

    def _is_havocked(self, loc: Location) -> bool:
        if isinstance(loc, Register):
            return False
        return self._havoc_all or loc.region in self._havoc

    def read(self, loc: Location) -> AbstractValue:
        """Value at *loc*; ``Undefined`` when never written."""
        v = self._values.get(loc)
        if v is not None:
            return v
        return TOP if self._is_havocked(loc) else UNDEFINED

    def size_of(self, loc: Location) -> Optional[int]:
        return self._sizes.get(loc)

    def read_sized(self, loc: MemoryLocation, nbytes: int) -> AbstractValue:
        """Memory read of *nbytes* starting at *loc*."""
        v = self._values.get(loc)
        if v is not None:
            size = self._sizes.get(loc, nbytes)
            if size == nbytes:
                return v
            if size > nbytes and v.is_const:
                return cast(v, nbytes * 8)
            return TOP
        if self._overlapping(loc, nbytes):
            return TOP
        return self.read(loc)

    def write(self, loc: Location, value: AbstractValue, size: Optional[int] = None) -> None:
        """Bind *loc* to *value*; memory writes default to word size."""
        if isinstance(loc, Register):
            if value.is_undefined:
                self._values.pop(loc, None)
            else:
                self._values[loc] = value
            return
        size = size or 8
        for other in self._overlapping(loc, size):
            self._values[other] = TOP
        if value.is_undefined and not self._is_havocked(loc):
            self._values.pop(loc, None)
            self._sizes.pop(loc, None)
        else:
            self._values[loc] = value
            self._sizes[loc] = size

    def _overlapping(self, loc: MemoryLocation, nbytes: int) -> List[MemoryLocation]:
        region = loc.region
        lo, hi = loc.offset, loc.offset + nbytes
        hits = []
        for other, size in self._sizes.items():
            if other == loc or other.region != region:
                continue
            if other.offset < hi and lo < other.offset + size:
                hits.append(other)
        return hits

    # -- Introspection -------------------------------------------------------

    def locations(self) -> FrozenSet[Location]:
        return frozenset(self._values)

    def items(self) -> Iterator[Tuple[Location, AbstractValue]]:
        return iter(self._values.items())

    def registers(self) -> Dict[str, AbstractValue]:
        return {
            loc.name: v for loc, v in self._values.items() if isinstance(loc, Register)
        }

    def cells(self, region: Region) -> List[Tuple[MemoryLocation, AbstractValue]]:
        return [
            (loc, v) for loc, v in self._values.items()
            if not isinstance(loc, Register) and loc.region == region
        ]

    def regions(self) -> Set[Region]:
        return {loc.region for loc in self._values if not isinstance(loc, Register)}

    @property
    def havocked(self) -> FrozenSet[Region]:
        return frozenset(self._havoc)

    @property
    def havocked_everywhere(self) -> bool:
        return self._havoc_all

    def __len__(self) -> int:
        return len(self._values)

    def __contains__(self, loc: Location) -> bool:
        return loc in self._values

    # -- Heap objects --------------------------------------------------------

    def allocation(self, alloc_id: str) -> Optional[AllocationObject]:
        return self._heap.get(alloc_id)

    def allocations(self) -> Dict[str, AllocationObject]:
        return dict(self._heap)

    def add_allocation(self, obj: AllocationObject) -> None:
        old = self._heap.get(obj.alloc_id)
        self._heap[obj.alloc_id] = obj if old is None else old.join(obj)

    # -- Havoc / frames ------------------------------------------------------

    def havoc_region(self, region: Region) -> None:
        for loc, _ in self.cells(region):
            self._values[loc] = TOP
        self._havoc.add(region)

    def havoc_everything(self) -> None:
        """Effect of a store through an unknown address."""
        for loc in self._values:
            if not isinstance(loc, Register):
                self._values[loc] = TOP
        self._havoc_all = True

    def havoc_reachable(self, roots: Iterable[AbstractValue]) -> Set[Region]:
        """
        Overwrite with ``Top`` every region reachable from the references in
        *roots*, following references stored in those regions.
        """
        seen: Set[Region] = set()
        work = [r for r in map(region_of, roots) if r is not None]
        while work:
            region = work.pop()
            if region in seen:
                continue
            seen.add(region)
            for _, v in self.cells(region):
                nxt = region_of(v)
                if nxt is not None and nxt not in seen:
                    work.append(nxt)
        for region in seen:
            self.havoc_region(region)
        return seen

    def drop_frame(self, frame: str) -> None:
        """Discard every slot of *frame* once its activation ends."""
        region = (RegionKind.STACK, frame)
        for loc in [k for k in self._values
                    if isinstance(k, StackSlot) and k.frame == frame]:
            del self._values[loc]
            self._sizes.pop(loc, None)
        self._havoc.discard(region)

    # -- Lattice operations --------------------------------------------------

    def _combine(self, other: "Store", widening: bool) -> "Store":
        result = Store()
        result._havoc = self._havoc | other._havoc
        result._havoc_all = self._havoc_all or other._havoc_all
        for loc in set(self._values) | set(other._values):
            a, b = self.read(loc), other.read(loc)
            v = widen(a, b) if widening else join(a, b)
            sa, sb = self._sizes.get(loc), other._sizes.get(loc)
            if sa is not None and sb is not None and sa != sb:
                v = TOP
            if v.is_undefined:
                continue
            result._values[loc] = v
            sizes = [s for s in (sa, sb) if s is not None]
            if sizes:
                result._sizes[loc] = max(sizes)
        for alloc_id in set(self._heap) | set(other._heap):
            a_obj, b_obj = self._heap.get(alloc_id), other._heap.get(alloc_id)
            if a_obj is None or b_obj is None:
                result._heap[alloc_id] = a_obj or b_obj
            elif widening:
                result._heap[alloc_id] = a_obj.widen(b_obj)
            else:
                result._heap[alloc_id] = a_obj.join(b_obj)
        return result

    def join(self, other: "Store") -> "Store":
        """Pointwise join."""
        return self._combine(other, widening=False)

    def widen(self, other: "Store") -> "Store":
        """Pointwise widening of ``self`` (old) by *other* (new)."""
        return self._combine(other, widening=True)

    def leq(self, other: "Store") -> bool:
        return self.join(other) == other

    def merge_into(self, successor: "Store") -> bool:
        """Join this Store into *successor* in place; True if it changed."""
        merged = successor.join(self)
        if merged.key() == successor.key():
            return False
        successor.assign(merged)
        return True

    def assign(self, other: "Store") -> None:
        """Replace this Store's contents with *other*'s."""
        self._values = dict(other._values)
        self._sizes = dict(other._sizes)
        self._heap = dict(other._heap)
        self._havoc = set(other._havoc)
        self._havoc_all = other._havoc_all

    def key(self) -> StoreKey:
        return (
            frozenset(self._values.items()),
            frozenset(self._sizes.items()),
            frozenset(self._heap.items()),
            frozenset(self._havoc),
            self._havoc_all,
        )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Store):
            return NotImplemented
        return self.key() == other.key()

    def __repr__(self) -> str:
        entries = ", ".join(f"{k!r}: {v!r}" for k, v in sorted(
            self._values.items(), key=lambda kv: repr(kv[0])
        ))
        return f"Store({{{entries}}})"

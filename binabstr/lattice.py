"""
binabstr.lattice
================

The value domain every Store cell holds:

    Undefined                  bottom; nothing written yet
    Top                        any value
    Const(width, literal)      a known bit-vector
    StackRef(frame, offset)    address ``offset`` bytes into a stack frame
    HeapRef(alloc, offset)     address ``offset`` bytes into a heap object
    FuncPtr(targets|Unknown)   one of a finite set of callables, or unknown

The lattice is flat apart from ``FuncPtr``, whose target sets are ordered by
inclusion (``Unknown`` sits just below ``Top``).  Target sets are drawn from
the finite set of program symbols, so every ascending chain is finite.

Arithmetic is exact on constants, two's-complement at the operand width, and
exact on ``ref +/- const``.  Operations are strict in ``Undefined``: any
undefined operand gives ``Undefined``, so every transfer stays monotone.
Everything else collapses to ``Top``.

Usage
-----
    from binabstr.lattice import AbstractValue, join, binop

    a = AbstractValue.const(3)
    b = AbstractValue.heap_ref("main@0x10", 0)
    binop("add", b, a)          # HeapRef(main@0x10, +3)
    join(a, AbstractValue.const(4))   # Top
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import FrozenSet, Iterable, Optional

__all__ = [
    "WORD_BITS",
    "ValueKind",
    "AbstractValue",
    "UNDEFINED",
    "TOP",
    "join",
    "join_all",
    "widen",
    "leq",
    "binop",
    "unop",
    "compare",
    "cast",
    "ite",
    "truth",
    "mask",
    "to_signed",
    "BINARY_OPS",
    "UNARY_OPS",
    "COMPARE_OPS",
]

WORD_BITS = 64


def mask(value: int, width: int) -> int:
    return value & ((1 << width) - 1)


def to_signed(value: int, width: int) -> int:
    value = mask(value, width)
    if width and value >> (width - 1):
        return value - (1 << width)
    return value


# ---------------------------------------------------------------------------
# 1. Values
# ---------------------------------------------------------------------------

class ValueKind(enum.Enum):
    UNDEFINED = "undefined"
    TOP       = "top"
    CONST     = "const"
    STACK_REF = "stack_ref"
    HEAP_REF  = "heap_ref"
    FUNC_PTR  = "func_ptr"


_REF_KINDS = frozenset({ValueKind.STACK_REF, ValueKind.HEAP_REF})


@dataclass(frozen=True)
class AbstractValue:
    """
    One lattice element.

    Only the fields relevant to ``kind`` are meaningful: ``width``/``literal``
    for constants, ``base``/``offset`` for references, ``targets`` for
    function pointers (``None`` meaning *Unknown*).  Always build values
    through the classmethod constructors so literals are masked to width.
    """
    kind: ValueKind
    width: int = 0
    literal: int = 0
    base: str = ""
    offset: int = 0
    targets: Optional[FrozenSet[str]] = None

    # -- Constructors --------------------------------------------------------

    @classmethod
    def undefined(cls) -> "AbstractValue":
        return UNDEFINED

    @classmethod
    def top(cls) -> "AbstractValue":
        return TOP

    @classmethod
    def const(cls, literal: int, width: int = WORD_BITS) -> "AbstractValue":
        if width <= 0:
            raise ValueError(f"constant width must be positive, got {width}")
        return cls(kind=ValueKind.CONST, width=width, literal=mask(literal, width))

    @classmethod
    def stack_ref(cls, frame: str, offset: int = 0) -> "AbstractValue":
        return cls(kind=ValueKind.STACK_REF, base=frame, offset=offset)

    @classmethod
    def heap_ref(cls, alloc: str, offset: int = 0) -> "AbstractValue":
        return cls(kind=ValueKind.HEAP_REF, base=alloc, offset=offset)

    @classmethod
    def func_ptr(cls, targets: Optional[Iterable[str]] = None) -> "AbstractValue":
        """``FuncPtr`` over *targets*; ``None`` builds ``FuncPtr(Unknown)``."""
        return cls(
            kind=ValueKind.FUNC_PTR,
            targets=None if targets is None else frozenset(targets),
        )

    # -- Predicates ----------------------------------------------------------

    @property
    def is_undefined(self) -> bool:
        return self.kind is ValueKind.UNDEFINED

    @property
    def is_top(self) -> bool:
        return self.kind is ValueKind.TOP

    @property
    def is_const(self) -> bool:
        return self.kind is ValueKind.CONST

    @property
    def is_ref(self) -> bool:
        return self.kind in _REF_KINDS

    @property
    def is_stack_ref(self) -> bool:
        return self.kind is ValueKind.STACK_REF

    @property
    def is_heap_ref(self) -> bool:
        return self.kind is ValueKind.HEAP_REF

    @property
    def is_func_ptr(self) -> bool:
        return self.kind is ValueKind.FUNC_PTR

    @property
    def is_unknown_target(self) -> bool:
        return self.kind is ValueKind.FUNC_PTR and self.targets is None

    @property
    def signed(self) -> int:
        """The constant's literal read as a two's-complement integer."""
        return to_signed(self.literal, self.width)

    def shifted(self, delta: int) -> "AbstractValue":
        """A reference moved by *delta* bytes."""
        return AbstractValue(kind=self.kind, base=self.base, offset=self.offset + delta)

    # -- Lattice operations --------------------------------------------------

    def join(self, other: "AbstractValue") -> "AbstractValue":
        return join(self, other)

    def widen(self, other: "AbstractValue") -> "AbstractValue":
        return widen(self, other)

    def leq(self, other: "AbstractValue") -> bool:
        return leq(self, other)

    def __repr__(self) -> str:
        k = self.kind
        if k is ValueKind.CONST:
            return f"Const({self.width}, {self.literal:#x})"
        if k is ValueKind.STACK_REF:
            return f"StackRef({self.base}, {self.offset:+d})"
        if k is ValueKind.HEAP_REF:
            return f"HeapRef({self.base}, {self.offset:+d})"
        if k is ValueKind.FUNC_PTR:
            if self.targets is None:
                return "FuncPtr(Unknown)"
            return "FuncPtr({" + ", ".join(sorted(self.targets)) + "})"
        return k.value.capitalize()


UNDEFINED = AbstractValue(kind=ValueKind.UNDEFINED)
TOP = AbstractValue(kind=ValueKind.TOP)


# ---------------------------------------------------------------------------
# 2. Join / widen / order
# ---------------------------------------------------------------------------

def join(a: AbstractValue, b: AbstractValue) -> AbstractValue:
    """Least upper bound."""
    if a.kind is ValueKind.UNDEFINED:
        return b
    if b.kind is ValueKind.UNDEFINED:
        return a
    if a.kind is ValueKind.TOP or b.kind is ValueKind.TOP:
        return TOP
    if a == b:
        return a
    if a.kind is ValueKind.FUNC_PTR and b.kind is ValueKind.FUNC_PTR:
        if a.targets is None or b.targets is None:
            return AbstractValue.func_ptr(None)
        return AbstractValue.func_ptr(a.targets | b.targets)
    return TOP


def join_all(values: Iterable[AbstractValue]) -> AbstractValue:
    result = UNDEFINED
    for v in values:
        result = join(result, v)
        if result.is_top:
            break
    return result


def widen(old: AbstractValue, new: AbstractValue) -> AbstractValue:
    """
    Widening at loop headers.

    A constant or an offset that changes between iterations goes straight to
    ``Top``; function-pointer sets keep growing by union since they are
    bounded by the program's symbols.
    """
    joined = join(old, new)
    if joined == old or old.kind is ValueKind.UNDEFINED:
        return joined
    if joined.kind is ValueKind.FUNC_PTR:
        return joined
    return TOP


def leq(a: AbstractValue, b: AbstractValue) -> bool:
    """Partial order: a ⊑ b."""
    return join(a, b) == b


# ---------------------------------------------------------------------------
# 3. Arithmetic transfer
# ---------------------------------------------------------------------------

BINARY_OPS = frozenset({
    "add", "sub", "mul", "udiv", "sdiv", "umod", "smod",
    "and", "or", "xor", "shl", "shr", "sar",
})

UNARY_OPS = frozenset({"not", "neg"})

COMPARE_OPS = frozenset({"eq", "ne", "ult", "ule", "slt", "sle"})


def _sdiv(x: int, y: int) -> int:
    q = abs(x) // abs(y)
    return -q if (x < 0) != (y < 0) else q


def _const_binop(op: str, a: AbstractValue, b: AbstractValue) -> AbstractValue:
    width = max(a.width, b.width)
    x, y = a.literal, b.literal
    sx, sy = to_signed(x, width), to_signed(y, width)

    if op == "add":
        r = x + y
    elif op == "sub":
        r = x - y
    elif op == "mul":
        r = x * y
    elif op in ("udiv", "umod", "sdiv", "smod"):
        if y == 0:
            return TOP
        if op == "udiv":
            r = x // y
        elif op == "umod":
            r = x % y
        elif op == "sdiv":
            r = _sdiv(sx, sy)
        else:
            r = sx - sy * _sdiv(sx, sy)
    elif op == "and":
        r = x & y
    elif op == "or":
        r = x | y
    elif op == "xor":
        r = x ^ y
    elif op == "shl":
        r = x << y if y < width else 0
    elif op == "shr":
        r = x >> y if y < width else 0
    elif op == "sar":
        r = sx >> min(y, width - 1)
    else:
        raise ValueError(f"unknown binary operator {op!r}")
    return AbstractValue.const(r, width)


def binop(op: str, a: AbstractValue, b: AbstractValue) -> AbstractValue:
    """Abstract ``a <op> b``."""
    if op not in BINARY_OPS:
        raise ValueError(f"unknown binary operator {op!r}")
    if a.is_undefined or b.is_undefined:
        return UNDEFINED
    if a.is_const and b.is_const:
        return _const_binop(op, a, b)
    if op == "add":
        if a.is_ref and b.is_const:
            return a.shifted(b.signed)
        if b.is_ref and a.is_const:
            return b.shifted(a.signed)
    elif op == "sub":
        if a.is_ref and b.is_const:
            return a.shifted(-b.signed)
        if a.is_ref and b.is_ref and a.kind is b.kind and a.base == b.base:
            return AbstractValue.const(a.offset - b.offset, WORD_BITS)
    return TOP


def unop(op: str, a: AbstractValue) -> AbstractValue:
    if op not in UNARY_OPS:
        raise ValueError(f"unknown unary operator {op!r}")
    if a.is_undefined:
        return UNDEFINED
    if not a.is_const:
        return TOP
    if op == "not":
        return AbstractValue.const(~a.literal, a.width)
    return AbstractValue.const(-a.literal, a.width)


def compare(op: str, a: AbstractValue, b: AbstractValue) -> AbstractValue:
    """Abstract comparison; a 1-bit ``Const`` when decidable, else ``Top``."""
    if op not in COMPARE_OPS:
        raise ValueError(f"unknown comparison {op!r}")
    if a.is_undefined or b.is_undefined:
        return UNDEFINED
    if a.is_const and b.is_const:
        width = max(a.width, b.width)
        if op in ("slt", "sle"):
            x, y = to_signed(a.literal, width), to_signed(b.literal, width)
        else:
            x, y = a.literal, b.literal
    elif a.is_ref and b.is_ref and a.kind is b.kind and a.base == b.base:
        x, y = a.offset, b.offset
    else:
        return TOP

    if op == "eq":
        r = x == y
    elif op == "ne":
        r = x != y
    elif op in ("ult", "slt"):
        r = x < y
    else:
        r = x <= y
    return AbstractValue.const(int(r), 1)


def cast(a: AbstractValue, width: int, signed: bool = False) -> AbstractValue:
    """Truncate or extend *a* to *width* bits."""
    if width <= 0:
        raise ValueError(f"cast width must be positive, got {width}")
    if a.is_undefined:
        return UNDEFINED
    if a.is_const:
        if width <= a.width or not signed:
            return AbstractValue.const(a.literal, width)
        return AbstractValue.const(to_signed(a.literal, a.width), width)
    if (a.is_ref or a.is_func_ptr) and width >= WORD_BITS:
        return a
    return TOP


def ite(cond: AbstractValue, then: AbstractValue, other: AbstractValue) -> AbstractValue:
    if cond.is_undefined:
        return UNDEFINED
    t = truth(cond)
    if t is None:
        return join(then, other)
    return then if t else other


def truth(cond: AbstractValue) -> Optional[bool]:
    """
    Concrete truth of a branch condition, or ``None`` when both outcomes
    are possible.  References and function pointers are non-null.
    """
    if cond.is_const:
        return cond.literal != 0
    if cond.is_ref or cond.is_func_ptr:
        return True
    return None

"""
binabstr.ir
===========

The lifted, architecture-neutral program representation the engine consumes.

A :class:`Program` is a set of :class:`Function` objects (each a control-flow
graph of :class:`BasicBlock` objects), the external routine signatures, an
initialized data image and the name of the calling convention.  Blocks hold
straight-line statements and end in exactly one terminator.

Expressions
-----------
    Reg(name)                    register read
    Imm(value, width)            constant
    BinOp(op, lhs, rhs)          add sub mul udiv sdiv umod smod and or xor
                                 shl shr sar
    UnOp(op, operand)            not neg
    Cmp(op, lhs, rhs)            eq ne ult ule slt sle  (1-bit result)
    Load(addr, width)            memory read of ``width`` bits
    Cast(operand, width, signed) truncation / zero- or sign-extension
    FnRef(name)                  address of a function
    Ite(cond, then, other)       if-then-else value

Statements
----------
    Assign(dest, expr)
    MemStore(addr, value, width)
    Call(target, args, dest, candidates, stack_offsets)
    Nop()

Terminators
-----------
    Jump(target)    Branch(cond, then_label, else_label)    Return(value)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import (
    Dict,
    Iterable,
    Iterator,
    List,
    Optional,
    Set,
    Tuple,
    Union,
)

from binabstr.errors import MalformedInput
from binabstr.lattice import (
    BINARY_OPS,
    COMPARE_OPS,
    UNARY_OPS,
    WORD_BITS,
    AbstractValue,
)

__all__ = [
    "ProgramPoint",
    "Expr", "Reg", "Imm", "BinOp", "UnOp", "Cmp", "Load", "Cast", "FnRef", "Ite",
    "Stmt", "Assign", "MemStore", "Call", "Nop",
    "Terminator", "Jump", "Branch", "Return",
    "BasicBlock", "Function", "Signature", "DataItem", "Program",
    "iter_subexprs",
]


@dataclass(frozen=True, order=True)
class ProgramPoint:
    """A statement position: ``index`` is the statement's slot in the block,
    the terminator sits at ``len(statements)``."""
    function: str
    block: str
    index: int
    address: Optional[int] = field(default=None, compare=False)

    @property
    def site(self) -> str:
        """Stable name of this point inside its function."""
        if self.address is not None:
            return f"{self.address:#x}"
        return f"{self.block}:{self.index}"

    def __str__(self) -> str:
        return f"{self.function}:{self.block}:{self.index}"


# ═══════════════════════════════════════════════════════════════════════════
# EXPRESSIONS
# ═══════════════════════════════════════════════════════════════════════════

class Expr:
    """Base class of IR expressions."""

    __slots__ = ()


@dataclass(frozen=True)
class Reg(Expr):
    name: str


@dataclass(frozen=True)
class Imm(Expr):
    value: int
    width: int = WORD_BITS

    def __post_init__(self) -> None:
        if self.width <= 0:
            raise MalformedInput(f"constant width must be positive, got {self.width}")


@dataclass(frozen=True)
class BinOp(Expr):
    op: str
    lhs: Expr
    rhs: Expr

    def __post_init__(self) -> None:
        if self.op not in BINARY_OPS:
            raise MalformedInput(f"unknown binary operator {self.op!r}")


@dataclass(frozen=True)
class UnOp(Expr):
    op: str
    operand: Expr

    def __post_init__(self) -> None:
        if self.op not in UNARY_OPS:
            raise MalformedInput(f"unknown unary operator {self.op!r}")


@dataclass(frozen=True)
class Cmp(Expr):
    op: str
    lhs: Expr
    rhs: Expr

    def __post_init__(self) -> None:
        if self.op not in COMPARE_OPS:
            raise MalformedInput(f"unknown comparison {self.op!r}")


@dataclass(frozen=True)
class Load(Expr):
    addr: Expr
    width: int = WORD_BITS

    def __post_init__(self) -> None:
        if self.width <= 0 or self.width % 8:
            raise MalformedInput(f"load width must be a positive multiple of 8, got {self.width}")


@dataclass(frozen=True)
class Cast(Expr):
    operand: Expr
    width: int
    signed: bool = False

    def __post_init__(self) -> None:
        if self.width <= 0:
            raise MalformedInput(f"cast width must be positive, got {self.width}")


@dataclass(frozen=True)
class FnRef(Expr):
    name: str


@dataclass(frozen=True)
class Ite(Expr):
    cond: Expr
    then: Expr
    other: Expr


def iter_subexprs(expr: Expr) -> Iterator[Expr]:
    """Pre-order walk over *expr* and its operands."""
    stack = [expr]
    while stack:
        e = stack.pop()
        yield e
        if isinstance(e, (BinOp, Cmp)):
            stack.extend((e.rhs, e.lhs))
        elif isinstance(e, UnOp):
            stack.append(e.operand)
        elif isinstance(e, Cast):
            stack.append(e.operand)
        elif isinstance(e, Load):
            stack.append(e.addr)
        elif isinstance(e, Ite):
            stack.extend((e.other, e.then, e.cond))


# ═══════════════════════════════════════════════════════════════════════════
# STATEMENTS AND TERMINATORS
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Assign:
    dest: str
    expr: Expr
    address: Optional[int] = None

    def exprs(self) -> Tuple[Expr, ...]:
        return (self.expr,)


@dataclass(frozen=True)
class MemStore:
    addr: Expr
    value: Expr
    width: int = WORD_BITS
    address: Optional[int] = None

    def __post_init__(self) -> None:
        if self.width <= 0 or self.width % 8:
            raise MalformedInput(f"store width must be a positive multiple of 8, got {self.width}")

    def exprs(self) -> Tuple[Expr, ...]:
        return (self.addr, self.value)


@dataclass(frozen=True)
class Call:
    """
    A call.  ``target`` is a function name for a direct call, an expression
    for an indirect one, or ``None`` when only ``candidates`` are known.
    ``stack_offsets`` optionally pins the callee-frame offset of each stack
    argument.  ``dest`` defaults to the convention's return register.
    """
    target: Union[str, Expr, None]
    args: Tuple[Expr, ...] = ()
    dest: Optional[str] = None
    candidates: Tuple[str, ...] = ()
    stack_offsets: Optional[Tuple[int, ...]] = None
    address: Optional[int] = None

    @property
    def is_direct(self) -> bool:
        return isinstance(self.target, str)

    def exprs(self) -> Tuple[Expr, ...]:
        if isinstance(self.target, Expr):
            return (self.target,) + tuple(self.args)
        return tuple(self.args)


@dataclass(frozen=True)
class Nop:
    address: Optional[int] = None

    def exprs(self) -> Tuple[Expr, ...]:
        return ()


Stmt = Union[Assign, MemStore, Call, Nop]


@dataclass(frozen=True)
class Jump:
    target: str
    address: Optional[int] = None

    def successors(self) -> Tuple[str, ...]:
        return (self.target,)

    def exprs(self) -> Tuple[Expr, ...]:
        return ()


@dataclass(frozen=True)
class Branch:
    cond: Expr
    then_label: str
    else_label: str
    address: Optional[int] = None

    def successors(self) -> Tuple[str, ...]:
        if self.then_label == self.else_label:
            return (self.then_label,)
        return (self.then_label, self.else_label)

    def exprs(self) -> Tuple[Expr, ...]:
        return (self.cond,)


@dataclass(frozen=True)
class Return:
    value: Optional[Expr] = None
    address: Optional[int] = None

    def successors(self) -> Tuple[str, ...]:
        return ()

    def exprs(self) -> Tuple[Expr, ...]:
        return () if self.value is None else (self.value,)


Terminator = Union[Jump, Branch, Return]


@dataclass(frozen=True)
class BasicBlock:
    label: str
    statements: Tuple[Stmt, ...]
    terminator: Terminator

    def successors(self) -> Tuple[str, ...]:
        return self.terminator.successors()

    def point(self, function: str, index: int) -> ProgramPoint:
        if index < len(self.statements):
            addr = self.statements[index].address
        else:
            addr = self.terminator.address
        return ProgramPoint(function, self.label, index, addr)


# ═══════════════════════════════════════════════════════════════════════════
# FUNCTIONS AND PROGRAMS
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Signature:
    """
    An external routine's shape.  Parameter kinds are free-form tags; the
    heap model looks for ``"size"`` (and an optional ``"count"``), a
    ``"ptr"`` return marks a pointer-like result.
    """
    name: str
    params: Tuple[str, ...] = ()
    returns: str = "int"

    @property
    def returns_pointer(self) -> bool:
        return self.returns == "ptr"


@dataclass
class Function:
    name: str
    blocks: List[BasicBlock]
    params: int = 0
    address: Optional[int] = None
    entry: Optional[str] = None

    def __post_init__(self) -> None:
        self.blocks = list(self.blocks)
        if self.entry is None and self.blocks:
            self.entry = self.blocks[0].label
        self._by_label: Dict[str, BasicBlock] = {}
        for b in self.blocks:
            self._by_label.setdefault(b.label, b)

    def block(self, label: str) -> BasicBlock:
        try:
            return self._by_label[label]
        except KeyError:
            raise MalformedInput(f"no block labelled {label!r}", function=self.name) from None

    def has_block(self, label: str) -> bool:
        return label in self._by_label

    @property
    def labels(self) -> List[str]:
        return [b.label for b in self.blocks]

    def calls(self) -> Iterator[Tuple[ProgramPoint, Call]]:
        for b in self.blocks:
            for i, stmt in enumerate(b.statements):
                if isinstance(stmt, Call):
                    yield b.point(self.name, i), stmt

    def exprs(self) -> Iterator[Expr]:
        for b in self.blocks:
            for stmt in b.statements:
                yield from stmt.exprs()
            yield from b.terminator.exprs()

    def validate(self, program: Optional["Program"] = None) -> None:
        """Raise :class:`MalformedInput` on a structurally invalid CFG."""
        if not self.blocks:
            raise MalformedInput("function has no blocks", function=self.name)
        if self.entry not in self._by_label:
            raise MalformedInput(f"entry block {self.entry!r} missing", function=self.name)
        if len(self._by_label) != len(self.blocks):
            seen: Set[str] = set()
            for b in self.blocks:
                if b.label in seen:
                    raise MalformedInput(f"duplicate block label {b.label!r}", function=self.name)
                seen.add(b.label)
        for b in self.blocks:
            for succ in b.successors():
                if succ not in self._by_label:
                    raise MalformedInput(
                        f"block {b.label!r} jumps to unknown label {succ!r}",
                        function=self.name,
                    )
        for point, call in self.calls():
            if call.target is None and not call.candidates:
                raise MalformedInput(
                    f"call at {point.site} has no callee reference and no candidate set",
                    function=self.name,
                )
            if program is not None and call.is_direct and not program.knows(call.target):
                raise MalformedInput(
                    f"call at {point.site} to undeclared routine {call.target!r}",
                    function=self.name,
                )


@dataclass(frozen=True)
class DataItem:
    """One initialized word of the data image."""
    address: int
    width: int
    value: AbstractValue

    @property
    def size(self) -> int:
        return self.width // 8


@dataclass
class Program:
    functions: Dict[str, Function] = field(default_factory=dict)
    externals: Dict[str, Signature] = field(default_factory=dict)
    data: Dict[int, DataItem] = field(default_factory=dict)
    calling_convention: str = "x86_64"
    entries: List[str] = field(default_factory=list)

    @classmethod
    def build(
        cls,
        functions: Iterable[Function],
        externals: Iterable[Signature] = (),
        data: Iterable[DataItem] = (),
        calling_convention: str = "x86_64",
        entries: Iterable[str] = (),
    ) -> "Program":
        return cls(
            functions={f.name: f for f in functions},
            externals={s.name: s for s in externals},
            data={d.address: d for d in data},
            calling_convention=calling_convention,
            entries=list(entries),
        )

    def function(self, name: str) -> Optional[Function]:
        return self.functions.get(name)

    def has_body(self, name: str) -> bool:
        return name in self.functions

    def knows(self, name: str) -> bool:
        return name in self.functions or name in self.externals

    def signature(self, name: str) -> Optional[Signature]:
        return self.externals.get(name)

    def function_at(self, address: int) -> Optional[str]:
        for f in self.functions.values():
            if f.address == address:
                return f.name
        return None

    def data_at(self, address: int) -> Optional[DataItem]:
        return self.data.get(address)

    def address_taken(self) -> Set[str]:
        """Functions whose address escapes into code or data."""
        taken: Set[str] = set()
        for f in self.functions.values():
            for e in f.exprs():
                for sub in iter_subexprs(e):
                    if isinstance(sub, FnRef):
                        taken.add(sub.name)
        for item in self.data.values():
            if item.value.is_func_ptr and item.value.targets:
                taken.update(item.value.targets)
        return taken

    def with_signatures(self, signatures: Iterable[Signature]) -> "Program":
        """A copy whose external table also holds *signatures* (existing
        declarations win)."""
        merged = {s.name: s for s in signatures}
        merged.update(self.externals)
        return Program(
            functions=self.functions,
            externals=merged,
            data=self.data,
            calling_convention=self.calling_convention,
            entries=list(self.entries),
        )

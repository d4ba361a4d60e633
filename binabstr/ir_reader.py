"""
binabstr.ir_reader
==================

Reader for the textual form of the lifted IR.

The surface syntax is a small S-expression language::

    ; comments run to the end of the line
    (program
      (cc x86_64)
      (extern malloc (size) ptr)
      (data 0x4000 64 (fn handler))
      (entry main)
      (function main (params 0) (addr 0x401000)
        (block entry
          (set rdi 16)
          (insn 0x401008 (call malloc (args rdi) (dest rax)))
          (store rax 7 32)
          (br (ult rax 4) loop done))
        (block loop (jmp entry))
        (block done (ret (load rax 32)))))

Expressions
-----------
    42, -1, 0x10         word-size constant
    rax                  register (any bare symbol)
    (const V W)          constant of width W
    (OP A B)             add sub mul udiv sdiv umod smod and or xor shl shr sar
    (OP A)               not neg
    (CMP A B)            eq ne ult ule slt sle  (1-bit result)
    (load ADDR [W])      W-bit little-endian load (default 64)
    (cast E W)           zero-extend / truncate;  (sext E W) sign-extends
    (fn NAME)            address of a function
    (ite C A B)          select

Statements
----------
    (set R E)                                  register assignment
    (store ADDR VALUE [W])                     W-bit memory store
    (call [TARGET] (args ...) (dest R) (candidates F ...) (stack-offsets O ...))
    (nop)
    (insn ADDR STMT)                           attach an instruction address

A call TARGET that is a bare symbol naming a function or external of the
program is a direct call; any other target is an indirect call through the
value of that expression.

Terminators: ``(jmp L)``, ``(br C THEN ELSE)``, ``(ret [E])``.

Any syntax or structure error raises :class:`~binabstr.errors.MalformedInput`
carrying the character offset of the offending form.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set, Tuple, Union

from parsimonious.exceptions import ParseError, VisitationError
from parsimonious.grammar import Grammar
from parsimonious.nodes import NodeVisitor

from binabstr.errors import MalformedInput
from binabstr.ir import (
    Assign,
    BasicBlock,
    BinOp,
    Branch,
    Call,
    Cast,
    Cmp,
    DataItem,
    Expr,
    FnRef,
    Function,
    Imm,
    Ite,
    Jump,
    Load,
    MemStore,
    Nop,
    Program,
    Reg,
    Return,
    Signature,
    UnOp,
)
from binabstr.lattice import BINARY_OPS, COMPARE_OPS, UNARY_OPS, WORD_BITS, AbstractValue

logger = logging.getLogger(__name__)

__all__ = ["IR_GRAMMAR", "Symbol", "SExpr", "read_sexprs", "parse_program", "load_program"]


# ═══════════════════════════════════════════════════════════════════
#  PART 1 - GRAMMAR (Parsimonious PEG)
# ═══════════════════════════════════════════════════════════════════

IR_GRAMMAR = Grammar(r'''
    document    = _ items
    item        = expr _
    expr        = list / atom
    list        = "(" _ items ")"
    items       = item*
    atom        = string / number / symbol

    string      = ~r'"[^"]*"'
    number      = ~r'-?(?:0[xX][0-9a-fA-F]+|[0-9]+)(?![^\s()";])'
    symbol      = ~r'[^\s()";]+'

    _           = (whitespace / comment)*
    whitespace  = ~r'\s+'
    comment     = ~r';[^\n]*'
''')


class Symbol(str):
    """A bare word of the IR text."""
    pos: int = -1


class SExpr(list):
    """A parenthesized form; remembers where it starts in the text."""
    pos: int = -1


# ═══════════════════════════════════════════════════════════════════
#  PART 2 - PARSE TREE → NESTED FORMS
# ═══════════════════════════════════════════════════════════════════

class SExprBuilder(NodeVisitor):
    """Turns the parse tree into nested :class:`SExpr` / atoms."""

    def generic_visit(self, node, visited_children):
        """Default: return children or node text."""
        if visited_children:
            if len(visited_children) == 1:
                return visited_children[0]
            return visited_children
        return node.text.strip()

    def visit_document(self, node, visited_children):
        _, items = visited_children
        return items

    def visit_items(self, node, visited_children):
        return list(visited_children)

    def visit_item(self, node, visited_children):
        expr, _ = visited_children
        return expr

    def visit_expr(self, node, visited_children):
        return visited_children[0]

    def visit_list(self, node, visited_children):
        _, _, items, _ = visited_children
        form = SExpr(items)
        form.pos = node.start
        return form

    def visit_atom(self, node, visited_children):
        return visited_children[0]

    def visit_string(self, node, visited_children):
        return node.text[1:-1]

    def visit_number(self, node, visited_children):
        text = node.text
        return int(text, 16) if "x" in text.lower() else int(text, 10)

    def visit_symbol(self, node, visited_children):
        sym = Symbol(node.text)
        sym.pos = node.start
        return sym


def read_sexprs(text: str) -> List[Any]:
    """Parse *text* into a list of top-level forms."""
    try:
        tree = IR_GRAMMAR.parse(text)
    except ParseError as exc:
        raise MalformedInput(
            f"IR syntax error at line {exc.line()}, column {exc.column()}",
            position=exc.pos,
        ) from exc
    try:
        return SExprBuilder().visit(tree)
    except VisitationError as exc:
        raise MalformedInput(f"cannot read IR text: {exc}") from exc


# ═══════════════════════════════════════════════════════════════════
#  PART 3 - FORMS → IR
# ═══════════════════════════════════════════════════════════════════

def _pos(form: Any) -> Optional[int]:
    pos = getattr(form, "pos", -1)
    return pos if pos >= 0 else None


def _head(form: Any) -> Optional[str]:
    if isinstance(form, SExpr) and form and isinstance(form[0], Symbol):
        return str(form[0])
    return None


class _ProgramReader:
    """Builds a :class:`Program` from the forms of one document."""

    CALL_OPTIONS = ("args", "dest", "candidates", "stack-offsets")

    def __init__(self) -> None:
        self.routines: Set[str] = set()
        self.function: Optional[str] = None

    def fail(self, message: str, form: Any) -> MalformedInput:
        return MalformedInput(message, function=self.function, position=_pos(form))

    # ----- atoms ------------------------------------------------------------

    def int_of(self, form: Any, what: str) -> int:
        if isinstance(form, int) and not isinstance(form, bool):
            return form
        raise self.fail(f"expected {what} (an integer), got {form!r}", form)

    def name_of(self, form: Any, what: str) -> str:
        if isinstance(form, (Symbol, str)) and not isinstance(form, SExpr):
            return str(form)
        raise self.fail(f"expected {what} (a name), got {form!r}", form)

    def arity(self, form: SExpr, lo: int, hi: Optional[int] = None) -> None:
        n = len(form) - 1
        hi = lo if hi is None else hi
        if not lo <= n <= hi:
            want = str(lo) if lo == hi else f"{lo}-{hi}"
            raise self.fail(f"({form[0]} ...) takes {want} operand(s), got {n}", form)

    # ----- expressions ------------------------------------------------------

    def expr(self, form: Any) -> Expr:
        if isinstance(form, int):
            return Imm(form)
        if isinstance(form, Symbol):
            return Reg(str(form))
        head = _head(form)
        if head is None:
            raise self.fail(f"not an expression: {form!r}", form)
        try:
            return self._compound(head, form)
        except MalformedInput as exc:
            if exc.position is None:
                raise self.fail(exc.args[0], form) from None
            raise

    def _compound(self, head: str, form: SExpr) -> Expr:
        if head == "const":
            self.arity(form, 2)
            return Imm(self.int_of(form[1], "constant"), self.int_of(form[2], "width"))
        if head == "load":
            self.arity(form, 1, 2)
            width = self.int_of(form[2], "width") if len(form) > 2 else WORD_BITS
            return Load(self.expr(form[1]), width)
        if head in ("cast", "sext"):
            self.arity(form, 2)
            return Cast(self.expr(form[1]), self.int_of(form[2], "width"), signed=head == "sext")
        if head == "fn":
            self.arity(form, 1)
            return FnRef(self.name_of(form[1], "function name"))
        if head == "ite":
            self.arity(form, 3)
            return Ite(self.expr(form[1]), self.expr(form[2]), self.expr(form[3]))
        if head in BINARY_OPS:
            self.arity(form, 2)
            return BinOp(head, self.expr(form[1]), self.expr(form[2]))
        if head in COMPARE_OPS:
            self.arity(form, 2)
            return Cmp(head, self.expr(form[1]), self.expr(form[2]))
        if head in UNARY_OPS:
            self.arity(form, 1)
            return UnOp(head, self.expr(form[1]))
        raise self.fail(f"unknown operator {head!r}", form)

    # ----- statements -------------------------------------------------------

    def statement(self, form: Any, address: Optional[int] = None):
        head = _head(form)
        if head == "insn":
            self.arity(form, 2)
            return self.statement(form[2], self.int_of(form[1], "instruction address"))
        if head == "set":
            self.arity(form, 2)
            return Assign(self.name_of(form[1], "register"), self.expr(form[2]), address)
        if head == "store":
            self.arity(form, 2, 3)
            width = self.int_of(form[3], "width") if len(form) > 3 else WORD_BITS
            try:
                return MemStore(self.expr(form[1]), self.expr(form[2]), width, address)
            except MalformedInput as exc:
                raise self.fail(exc.args[0], form) from None
        if head == "call":
            return self.call(form, address)
        if head == "nop":
            self.arity(form, 0)
            return Nop(address)
        if head == "jmp":
            self.arity(form, 1)
            return Jump(self.name_of(form[1], "label"), address)
        if head == "br":
            self.arity(form, 3)
            return Branch(
                self.expr(form[1]),
                self.name_of(form[2], "label"),
                self.name_of(form[3], "label"),
                address,
            )
        if head == "ret":
            self.arity(form, 0, 1)
            return Return(self.expr(form[1]) if len(form) > 1 else None, address)
        raise self.fail(f"not a statement: {form!r}", form)

    def call(self, form: SExpr, address: Optional[int]) -> Call:
        rest = list(form[1:])
        target: Union[str, Expr, None] = None
        if rest and _head(rest[0]) not in self.CALL_OPTIONS:
            first = rest.pop(0)
            if isinstance(first, Symbol) and str(first) in self.routines:
                target = str(first)
            else:
                target = self.expr(first)

        options: Dict[str, SExpr] = {}
        for opt in rest:
            name = _head(opt)
            if name not in self.CALL_OPTIONS:
                raise self.fail(f"unknown call option {opt!r}", opt)
            if name in options:
                raise self.fail(f"duplicate call option ({name} ...)", opt)
            options[name] = opt

        args = tuple(self.expr(a) for a in options["args"][1:]) if "args" in options else ()
        dest = None
        if "dest" in options:
            self.arity(options["dest"], 1)
            dest = self.name_of(options["dest"][1], "register")
        candidates = tuple(
            self.name_of(c, "candidate") for c in options.get("candidates", [None])[1:]
        )
        offsets = None
        if "stack-offsets" in options:
            offsets = tuple(self.int_of(o, "stack offset") for o in options["stack-offsets"][1:])
        return Call(target, args, dest, candidates, offsets, address)

    # ----- top level --------------------------------------------------------

    def block(self, form: SExpr) -> BasicBlock:
        if len(form) < 3:
            raise self.fail("a block needs a label and a terminator", form)
        label = self.name_of(form[1], "block label")
        items = [self.statement(f) for f in form[2:]]
        *body, term = items
        if not isinstance(term, (Jump, Branch, Return)):
            raise self.fail(f"block {label!r} does not end with jmp, br or ret", form)
        for stmt in body:
            if isinstance(stmt, (Jump, Branch, Return)):
                raise self.fail(f"terminator in the middle of block {label!r}", form)
        return BasicBlock(label, tuple(body), term)

    def function_(self, form: SExpr) -> Function:
        name = self.name_of(form[1], "function name") if len(form) > 1 else None
        if name is None:
            raise self.fail("function without a name", form)
        self.function = name
        params, address, entry = 0, None, None
        blocks: List[BasicBlock] = []
        for item in form[2:]:
            head = _head(item)
            if head == "params":
                self.arity(item, 1)
                params = self.int_of(item[1], "parameter count")
            elif head == "addr":
                self.arity(item, 1)
                address = self.int_of(item[1], "address")
            elif head == "entry":
                self.arity(item, 1)
                entry = self.name_of(item[1], "label")
            elif head == "block":
                blocks.append(self.block(item))
            else:
                raise self.fail(f"unexpected form in function: {item!r}", item)
        self.function = None
        return Function(name, blocks, params=params, address=address, entry=entry)

    def extern(self, form: SExpr) -> Signature:
        self.arity(form, 1, 3)
        name = self.name_of(form[1], "routine name")
        params: Tuple[str, ...] = ()
        returns = "int"
        if len(form) > 2:
            if not isinstance(form[2], SExpr):
                raise self.fail("extern parameters must be a list", form)
            params = tuple(self.name_of(p, "parameter kind") for p in form[2])
        if len(form) > 3:
            returns = self.name_of(form[3], "return kind")
        return Signature(name, params, returns)

    def data(self, form: SExpr) -> DataItem:
        self.arity(form, 3)
        address = self.int_of(form[1], "data address")
        width = self.int_of(form[2], "data width")
        if width <= 0 or width % 8:
            raise self.fail(f"data width must be a positive multiple of 8, got {width}", form)
        raw = form[3]
        if _head(raw) == "fn":
            self.arity(raw, 1)
            value = AbstractValue.func_ptr({self.name_of(raw[1], "function name")})
        else:
            value = AbstractValue.const(self.int_of(raw, "data value"), width)
        return DataItem(address, width, value)

    def program(self, forms: List[Any]) -> Program:
        if len(forms) != 1 or _head(forms[0]) != "program":
            raise MalformedInput("IR text must hold exactly one (program ...) form",
                                 position=_pos(forms[0]) if forms else None)
        body = forms[0][1:]
        for item in body:
            if _head(item) in ("function", "extern") and len(item) > 1:
                self.routines.add(self.name_of(item[1], "routine name"))

        handlers: Dict[str, Callable[[SExpr], Any]] = {
            "function": self.function_,
            "extern": self.extern,
            "data": self.data,
        }
        collected: Dict[str, List[Any]] = {k: [] for k in handlers}
        cc = "x86_64"
        entries: List[str] = []
        for item in body:
            head = _head(item)
            if head in handlers:
                collected[head].append(handlers[head](item))
            elif head == "cc":
                self.arity(item, 1)
                cc = self.name_of(item[1], "calling convention")
            elif head == "entry":
                entries.extend(self.name_of(e, "entry name") for e in item[1:])
            else:
                raise self.fail(f"unexpected top-level form: {item!r}", item)

        names = [f.name for f in collected["function"]]
        dupes = sorted({n for n in names if names.count(n) > 1})
        if dupes:
            raise MalformedInput(f"function(s) defined twice: {', '.join(dupes)}")
        return Program.build(
            collected["function"],
            externals=collected["extern"],
            data=collected["data"],
            calling_convention=cc,
            entries=entries,
        )


def parse_program(text: str) -> Program:
    """Read a :class:`Program` from IR text."""
    program = _ProgramReader().program(read_sexprs(text))
    logger.debug(
        "read program: %d function(s), %d external(s), %d data item(s)",
        len(program.functions), len(program.externals), len(program.data),
    )
    return program


def load_program(path: Union[str, Path]) -> Program:
    """Read a :class:`Program` from an IR file."""
    return parse_program(Path(path).read_text(encoding="utf-8"))

# tests/test_ir_reader.py
"""
Tests for the IR text reader: S-expression grammar, program structure and
error positions.
"""

import pytest

from binabstr.errors import MalformedInput
from binabstr.ir import (
    Assign,
    BinOp,
    Branch,
    Call,
    Cast,
    Cmp,
    FnRef,
    Imm,
    Load,
    MemStore,
    Nop,
    Reg,
    Return,
)
from binabstr.ir_reader import SExpr, Symbol, load_program, parse_program, read_sexprs
from binabstr.lattice import AbstractValue
from tests.conftest import INDIRECT_CALLS, STRAIGHT_LINE, thirty_arguments


def _main_statements(text):
    return parse_program(text).function("main").blocks[0].statements


def _wrap(*stmts):
    body = " ".join(stmts)
    return f"(program (extern malloc (size) ptr) (function f (block b (ret 0)))" \
           f" (function main (block entry {body} (ret 0))))"


# ── S-expressions ────────────────────────────────────────────────

class TestSExpressions:

    def test_atoms(self):
        forms = read_sexprs('(a -1 0x10 010 "hi there") ; trailing comment')
        assert forms == [["a", -1, 16, 10, "hi there"]]
        assert isinstance(forms[0], SExpr)
        assert isinstance(forms[0][0], Symbol)

    def test_nested_positions(self):
        forms = read_sexprs("(a\n  (b c))")
        assert forms[0].pos == 0
        assert forms[0][1].pos == 5
        assert forms[0][1][1].pos == 8

    def test_empty_list(self):
        assert read_sexprs("()") == [[]]

    def test_symbol_with_digits(self):
        forms = read_sexprs("(r12 0x4000abc)")
        assert forms[0][0] == "r12"
        assert forms[0][1] == 0x4000ABC

    def test_unbalanced(self):
        with pytest.raises(MalformedInput, match="line"):
            read_sexprs("(program (function main")

    def test_stray_close(self):
        with pytest.raises(MalformedInput) as info:
            read_sexprs("(a))")
        assert info.value.position is not None


# ── Expressions and statements ───────────────────────────────────

class TestStatements:

    def test_straight_line(self):
        stmts = _main_statements(STRAIGHT_LINE)
        assert stmts[0] == Assign("rax", Imm(3))
        assert stmts[1] == Assign("rbx", BinOp("add", Reg("rax"), Imm(4)))

    def test_expression_forms(self):
        stmts = _main_statements(_wrap(
            "(set rax (const 255 8))",
            "(set rax (load rbx 32))",
            "(set rax (sext rax 64))",
            "(set rax (fn f))",
            "(set rax (ult rax 3))",
        ))
        assert stmts[0].expr == Imm(255, 8)
        assert stmts[1].expr == Load(Reg("rbx"), 32)
        assert stmts[2].expr == Cast(Reg("rax"), 64, signed=True)
        assert stmts[3].expr == FnRef("f")
        assert stmts[4].expr == Cmp("ult", Reg("rax"), Imm(3))

    def test_store_and_nop(self):
        stmts = _main_statements(_wrap("(store rsp 7 8)", "(nop)"))
        assert stmts[0] == MemStore(Reg("rsp"), Imm(7), 8)
        assert isinstance(stmts[1], Nop)

    def test_instruction_address(self):
        stmts = _main_statements(_wrap("(insn 0x401000 (set rax 1))"))
        assert stmts[0].address == 0x401000

    def test_direct_call_to_declared_routine(self):
        stmts = _main_statements(_wrap("(call malloc (args 16) (dest rbx))", "(call f)"))
        assert stmts[0] == Call("malloc", (Imm(16),), "rbx")
        assert stmts[1].is_direct

    def test_call_through_register(self):
        stmts = _main_statements(_wrap("(call rbx (dest r12))"))
        assert stmts[0].target == Reg("rbx")
        assert not stmts[0].is_direct

    def test_call_with_candidates_only(self):
        stmts = _main_statements(_wrap("(call (candidates f main) (stack-offsets 16 32))"))
        call = stmts[0]
        assert call.target is None
        assert call.candidates == ("f", "main")
        assert call.stack_offsets == (16, 32)

    def test_terminators(self):
        prog = parse_program("""
            (program (function main
              (block a (br (eq rdi 0) b c))
              (block b (jmp c))
              (block c (ret))))
        """)
        fn = prog.function("main")
        assert isinstance(fn.block("a").terminator, Branch)
        assert fn.block("c").terminator == Return(None)
        assert fn.entry == "a"


# ── Top-level forms ──────────────────────────────────────────────

class TestProgram:

    def test_program_forms(self):
        prog = parse_program("""
            (program
              (cc hexagon)
              (entry main)
              (extern calloc (count size) ptr)
              (data 0x5000 32 7)
              (function main (params 2) (addr 0x401000) (entry start)
                (block other (ret 0))
                (block start (jmp other))))
        """)
        assert prog.calling_convention == "hexagon"
        assert prog.entries == ["main"]
        assert prog.externals["calloc"].params == ("count", "size")
        assert prog.data_at(0x5000).value == AbstractValue.const(7, 32)
        fn = prog.function("main")
        assert (fn.params, fn.address, fn.entry) == (2, 0x401000, "start")
        assert prog.function_at(0x401000) == "main"

    def test_function_pointer_data(self):
        prog = parse_program(INDIRECT_CALLS)
        item = prog.data_at(0x4000)
        assert item.value == AbstractValue.func_ptr({"three"})
        assert item.size == 8
        assert prog.address_taken() == {"three"}

    def test_generated_program(self):
        prog = parse_program(thirty_arguments())
        assert prog.function("sum30").params == 30
        assert len(prog.function("sum30").blocks[0].statements) == 31

    def test_load_program(self, tmp_path):
        path = tmp_path / "prog.ir"
        path.write_text(STRAIGHT_LINE, encoding="utf-8")
        assert "main" in load_program(path).functions


# ── Errors ───────────────────────────────────────────────────────

class TestErrors:

    def test_not_a_program(self):
        with pytest.raises(MalformedInput, match="exactly one"):
            parse_program("(function main (block a (ret)))")

    def test_duplicate_function(self):
        text = "(program (function f (block a (ret))) (function f (block a (ret))))"
        with pytest.raises(MalformedInput, match="defined twice"):
            parse_program(text)

    def test_unknown_operator_has_position(self):
        text = "(program (function main (block a (set rax (rotl rax 1)) (ret))))"
        with pytest.raises(MalformedInput) as info:
            parse_program(text)
        assert info.value.position == text.index("(rotl")
        assert info.value.function == "main"
        assert "rotl" in str(info.value)

    def test_block_without_terminator(self):
        with pytest.raises(MalformedInput, match="does not end"):
            parse_program("(program (function main (block a (set rax 1))))")

    def test_terminator_in_middle(self):
        with pytest.raises(MalformedInput, match="middle"):
            parse_program("(program (function main (block a (ret) (ret))))")

    def test_bad_store_width(self):
        with pytest.raises(MalformedInput, match="multiple of 8"):
            parse_program("(program (function main (block a (store rsp 1 12) (ret))))")

    @pytest.mark.parametrize("expr,message", [
        ("(const 1 0)", "constant width"),
        ("(cast rax 0)", "cast width"),
        ("(sext rax 0)", "cast width"),
    ])
    def test_zero_width_has_position(self, expr, message):
        text = f"(program (function main (block a (set rax {expr}) (ret))))"
        with pytest.raises(MalformedInput, match=message) as info:
            parse_program(text)
        assert info.value.position == text.index(expr)
        assert info.value.function == "main"

    def test_wrong_arity(self):
        with pytest.raises(MalformedInput, match="takes 2"):
            parse_program("(program (function main (block a (set rax) (ret))))")

    def test_unknown_call_option(self):
        with pytest.raises(MalformedInput, match="unknown call option"):
            parse_program("(program (function main (block a (call rbx (using 1)) (ret))))")

    def test_unexpected_top_level(self):
        with pytest.raises(MalformedInput, match="top-level"):
            parse_program("(program (section text))")

# tests/test_interproc.py
"""
Tests for call handling: clone contexts, argument passing, register
clobbering, heap allocation, opaque calls and the recursion cutoff.
"""

import pytest

from binabstr.analysis import analyze_function
from binabstr.config import AnalysisConfig
from binabstr.errors import DiagnosticKind
from binabstr.ir import BasicBlock, Call, Function, Imm, Program, ProgramPoint, Reg, Return
from binabstr.lattice import TOP, AbstractValue
from binabstr.store import HeapCell, Register
from tests.conftest import (
    HEAP_ALIASING,
    MUTUAL_RECURSION,
    OUT_OF_BOUNDS,
    RECURSIVE,
    const,
    run,
    thirty_arguments,
)


WRITE_THROUGH_POINTER = """
(program
  (function main
    (block entry
      (set rsp (sub rsp 8))
      (store rsp 1)
      (call setter (args rsp))
      (ret (load rsp))))
  (function setter (params 1)
    (block entry (store rdi 9) (ret))))
"""

CLOBBERED_REGISTERS = """
(program
  (function main
    (block entry
      (set rbx 11)
      (set rcx 12)
      (call leaf)
      (set rdi rcx)
      (ret rbx)))
  (function leaf
    (block entry (set rbx 99) (ret 0))))
"""

ESCAPING_STACK_ADDRESS = """
(program
  (function main
    (block entry (call frame_addr (dest rbx)) (ret rbx)))
  (function frame_addr
    (block entry (ret (sub rsp 8)))))
"""

OPAQUE_EXTERN = """
(program
  (extern malloc (size) ptr)
  (extern consume (ptr) void)
  (function main
    (block entry
      (call malloc (args 16) (dest rbx))
      (store rbx 5)
      (set rsp (sub rsp 8))
      (store rsp 6)
      (call consume (args rbx))
      (set r12 (load rbx))
      (ret (load rsp)))))
"""

SAME_CALLEE_TWICE = """
(program
  (function main
    (block entry
      (call twice (args 3) (dest rbx))
      (call twice (args 4) (dest r12))
      (ret (add rbx r12))))
  (function twice (params 1)
    (block entry (ret (add rdi rdi)))))
"""


FLAG_OR_COMPLEMENT = """
(program
  (extern rand)
  (function main
    (block entry
      (set rsp (sub rsp 8))
      (store rsp 0)
      (call rand (dest rbx))
      (br rbx set_one keep))
    (block set_one (store rsp 1) (jmp pick))
    (block keep (jmp pick))
    (block pick (call rand (dest r12)) (br r12 plain flipped))
    (block plain (ret (load rsp)))
    (block flipped (ret (not (load rsp))))))
"""

FILL_THEN_OVERREAD = """
(program
  (extern malloc (size) ptr)
  (function main
    (block entry (call malloc (args 5) (dest rbx)) (set rcx 0) (jmp head))
    (block head (br (ult rcx 5) body done))
    (block body (store (add rbx rcx) 7 8) (set rcx (add rcx 1)) (jmp head))
    (block done (ret (load (add rbx 5) 8)))))
"""

NESTED_WRITERS = """
(program
  (extern malloc (size) ptr)
  (function main
    (block entry
      (call malloc (args 16) (dest rbx))
      (call level_0 (args rbx))
      (ret (add (load rbx) (load (add rbx 8))))))
  (function level_0 (params 1)
    (block entry
      (set rbx rdi)
      (call level_1 (args rdi))
      (store rbx 30)
      (ret)))
  (function level_1 (params 1)
    (block entry (store (add rdi 8) 12) (ret))))
"""


def _contexts(result):
    return set(result.contexts)


# ── Clones ───────────────────────────────────────────────────────

class TestClones:

    def test_each_call_site_gets_a_context(self):
        result = run(SAME_CALLEE_TWICE)
        assert result.return_value("main") == const(14)
        assert _contexts(result) == {"main", "main/entry:0:twice", "main/entry:1:twice"}

    def test_contexts_keep_their_own_return(self):
        result = run(SAME_CALLEE_TWICE)
        assert result.contexts["main/entry:0:twice"].return_value == const(6)
        assert result.contexts["main/entry:1:twice"].return_value == const(8)

    def test_write_through_pointer_argument(self):
        result = run(WRITE_THROUGH_POINTER)
        assert result.return_value("main") == const(9)

    def test_caller_saved_registers_are_clobbered(self):
        r = run(CLOBBERED_REGISTERS).result("main")
        exit_regs = r.exit_store.registers()
        assert exit_regs["rdi"] is TOP
        assert r.return_value == const(11)

    def test_callee_stack_address_does_not_escape(self):
        assert run(ESCAPING_STACK_ADDRESS).return_value("main") is TOP

    def test_unknown_flag_or_its_complement_is_top(self):
        assert run(FLAG_OR_COMPLEMENT).return_value("main") is TOP

    def test_thirty_arguments(self):
        result = run(thirty_arguments())
        assert result.return_value("main") == const(435)
        callee = result.contexts["main/entry:0:sum30"]
        offsets = sorted(x.offset for x in callee.stack_xrefs)
        assert offsets == [8 * (j + 1) for j in range(24)]


# ── Heap ─────────────────────────────────────────────────────────

class TestHeap:

    def test_aliasing_through_callee(self):
        result = run(HEAP_ALIASING)
        assert result.return_value("main") == const(8)
        assert list(result.allocations) == ["main@entry:0"]
        assert result.allocations["main@entry:0"].size == 16

    def test_callee_sees_heap_reference(self):
        result = run(HEAP_ALIASING)
        init = result.contexts["main/entry:1:init"]
        assert init.entry_store.read(Register("rdi")) == AbstractValue.heap_ref("main@entry:0", 0)
        assert init.entry_store.allocation("main@entry:0") is not None
        writes = {(x.base, x.offset) for x in init.mem_xrefs}
        assert writes == {("main@entry:0", 0), ("main@entry:0", 8)}

    def test_out_of_bounds_access(self):
        result = run(OUT_OF_BOUNDS)
        oob = result.diagnostics_of(DiagnosticKind.OUT_OF_BOUNDS_ACCESS)
        assert len(oob) == 2
        assert {d.point.index for d in oob} == {1, 2}
        assert result.return_value("main") == AbstractValue.const(7, 8)
        assert result.ok

    def test_overread_after_filling_loop(self):
        result = run(FILL_THEN_OVERREAD)
        assert result.allocations["main@entry:0"].size == 5
        oob = result.diagnostics_of(DiagnosticKind.OUT_OF_BOUNDS_ACCESS)
        assert [d.point for d in oob] == [ProgramPoint("main", "done", 0)]
        assert not result.return_value("main").is_undefined
        assert result.ok

    def test_aliasing_through_nested_calls(self):
        result = run(NESTED_WRITERS)
        assert result.return_value("main") == const(42)
        inner = [r for label, r in result.contexts.items() if label.endswith(":level_1")]
        assert len(inner) == 1
        assert {(x.base, x.offset) for x in inner[0].mem_xrefs} == {("main@entry:0", 8)}

    def test_opaque_call_havocs_reachable_memory(self):
        r = run(OPAQUE_EXTERN).result("main")
        assert r.exit_store.read(HeapCell("main@entry:0", 0)) is TOP
        assert r.return_value == const(6)

    def test_allocator_from_configured_signature(self):
        program = Program.build([
            Function("main", [BasicBlock(
                "entry",
                (Call("my_alloc", (Imm(32),), "rbx"),),
                Return(Reg("rbx")),
            )]),
        ])
        config = AnalysisConfig(signatures={"my_alloc": {"params": ["size"], "returns": "ptr"}})
        r = analyze_function(program, "main", config)
        assert r.return_value == AbstractValue.heap_ref("main@entry:0", 0)
        assert r.exit_store.allocation("main@entry:0").size == 32

    def test_allocation_in_callee_context(self):
        program = Program.build(
            [
                Function("main", [BasicBlock(
                    "entry", (Call("make", (), "rbx"),), Return(Reg("rbx")),
                )]),
                Function("make", [BasicBlock(
                    "entry", (Call("malloc", (Imm(8),)),), Return(Reg("rax")),
                )]),
            ],
        )
        config = AnalysisConfig(signatures={"malloc": {"params": ["size"], "returns": "ptr"}})
        r = analyze_function(program, "main", config)
        expected = AbstractValue.heap_ref("main/entry:0:make@entry:0", 0)
        assert r.return_value == expected
        assert r.callees[0].return_value == expected


# ── Recursion ────────────────────────────────────────────────────

class TestRecursion:

    def test_cutoff_reports_and_gives_top(self):
        result = run(RECURSIVE)
        assert result.return_value("main") is TOP
        assert result.diagnostics_of(DiagnosticKind.RECURSION_LIMIT_EXCEEDED)
        assert "fact#summary" in result.contexts

    def test_deep_enough_clones_are_exact(self):
        result = run(RECURSIVE, clone_depth=8)
        assert result.return_value("main") == const(120)
        assert not result.diagnostics_of(DiagnosticKind.RECURSION_LIMIT_EXCEEDED)
        assert "fact#summary" not in result.contexts

    @pytest.mark.parametrize("depth", [1, 2, 3, 4])
    def test_clone_count_bounded(self, depth):
        result = run(RECURSIVE, clone_depth=depth)
        for label in result.contexts:
            assert label.count(":fact") <= depth

    def test_mutual_recursion_terminates(self):
        result = run(MUTUAL_RECURSION)
        assert result.return_value("main") == const(0)
        assert result.diagnostics_of(DiagnosticKind.RECURSION_LIMIT_EXCEEDED)
        assert any(label.startswith("ping#summary") for label in result.contexts)

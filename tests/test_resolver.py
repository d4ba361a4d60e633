# tests/test_resolver.py
"""Tests for indirect-call target resolution and dispatch."""

from binabstr.errors import DiagnosticKind
from binabstr.ir import Call, ProgramPoint
from binabstr.lattice import TOP, AbstractValue
from binabstr.resolver import IndirectCallResolver
from tests.conftest import INDIRECT_CALLS, const, run, session_for


TABLE_DISPATCH = """
(program
  (data 0x5000 64 (fn one))
  (data 0x5008 64 (fn two))
  (function main (params 1)
    (block entry (br (eq rdi 0) first second))
    (block first  (set rbx (load 0x5000)) (jmp go))
    (block second (set rbx (load 0x5008)) (jmp go))
    (block go (call rbx (dest rax)) (ret rax)))
  (function one (block entry (ret 1)))
  (function two (block entry (ret 2))))
"""

BY_ADDRESS = """
(program
  (function main
    (block entry (call 0x401000 (dest rbx)) (ret rbx)))
  (function target (addr 0x401000)
    (block entry (ret 77))))
"""

CANDIDATES = """
(program
  (function main (params 1)
    (block entry (call (candidates seven also_seven) (dest rbx)) (ret rbx)))
  (function seven (block entry (ret 7)))
  (function also_seven (block entry (ret 7))))
"""

UNRESOLVED = """
(program
  (function main (params 1)
    (block entry
      (set rsp (sub rsp 8))
      (store rsp 3)
      (call rdi (args rsp))
      (ret (load rsp)))))
"""

THREE_ENTRY_TABLE = """
(program
  (data 0x6000 64 (fn f0))
  (data 0x6008 64 (fn f1))
  (data 0x6010 64 (fn f2))
  (function main
    (block entry
      (set r14 0x6000)
      (call (load (add r14 (mul 0 8))) (dest rbx))
      (call (load (add r14 (mul 1 8))) (dest r12))
      (call (load (add r14 (mul 2 8))) (dest r13))
      (ret (add rbx (add r12 r13)))))
  (function f0 (block entry (ret 0)))
  (function f1 (block entry (ret 1)))
  (function f2 (block entry (ret 2))))
"""

EXTERNALS_THROUGH_POINTERS = """
(program
  (extern rand)
  (extern malloc (size) ptr)
  (function main
    (block entry
      (set rbx (fn rand))
      (call rbx (dest r12))
      (set rbx (fn malloc))
      (call rbx (args 8) (dest r13))
      (ret r12))))
"""

NOT_IN_PROGRAM = """
(program
  (function main
    (block entry (call (fn ghost) (dest rbx)) (ret rbx))))
"""


class TestResolve:

    def _resolver(self, text=INDIRECT_CALLS):
        return IndirectCallResolver(session_for(text))

    def test_function_pointer_value(self):
        res = self._resolver().resolve(AbstractValue.func_ptr({"three"}), Call(None))
        assert res.targets == ("three",)
        assert res.source == "value"

    def test_constant_address(self):
        res = self._resolver(BY_ADDRESS).resolve(const(0x401000), Call(None))
        assert res.targets == ("target",)
        assert res.source == "address"

    def test_candidates_fallback(self):
        res = self._resolver().resolve(TOP, Call(None, candidates=("b", "a", "b")))
        assert res.targets == ("a", "b")
        assert res.source == "candidates"

    def test_unknown_target_ignores_value_set(self):
        res = self._resolver().resolve(AbstractValue.func_ptr(None), Call(None))
        assert not res.resolved
        assert res.source == "none"


class TestDispatch:

    def test_code_pointer_through_register_and_memory(self):
        result = run(INDIRECT_CALLS)
        assert result.return_value("main") == const(3)
        targets = list(result.indirect_targets.values())
        assert targets == [frozenset({"three"}), frozenset({"three"})]
        assert not result.diagnostics_of(DiagnosticKind.UNRESOLVED_INDIRECT_TARGET)

    def test_function_table_joins_targets(self):
        result = run(TABLE_DISPATCH)
        assert result.return_value("main") is TOP
        point = ProgramPoint("main", "go", 0)
        assert result.indirect_targets[point] == {"one", "two"}
        assert {"main/go:0:one", "main/go:0:two"} <= set(result.contexts)

    def test_function_table_with_known_index(self):
        session = session_for(TABLE_DISPATCH)
        assert session.analyze_entry("main", [0]).return_value == const(1)

    def test_each_table_index_resolves_exactly(self):
        result = run(THREE_ENTRY_TABLE)
        assert result.return_value("main") == const(3)
        assert result.indirect_targets == {
            ProgramPoint("main", "entry", 1): frozenset({"f0"}),
            ProgramPoint("main", "entry", 2): frozenset({"f1"}),
            ProgramPoint("main", "entry", 3): frozenset({"f2"}),
        }
        assert not result.diagnostics

    def test_call_by_address(self):
        assert run(BY_ADDRESS).return_value("main") == const(77)

    def test_candidate_set(self):
        result = run(CANDIDATES)
        assert result.return_value("main") == const(7)
        assert set(result.indirect_targets[ProgramPoint("main", "entry", 0)]) == {
            "seven", "also_seven",
        }

    def test_unresolved_call_is_opaque(self):
        result = run(UNRESOLVED)
        diags = result.diagnostics_of(DiagnosticKind.UNRESOLVED_INDIRECT_TARGET)
        assert len(diags) == 1
        assert diags[0].point == ProgramPoint("main", "entry", 2)
        assert result.return_value("main") is TOP

    def test_external_target_is_opaque_and_reported(self):
        result = run(EXTERNALS_THROUGH_POINTERS)
        assert result.return_value("main") is TOP
        diags = result.diagnostics_of(DiagnosticKind.UNRESOLVED_INDIRECT_TARGET)
        assert [d.point for d in diags] == [ProgramPoint("main", "entry", 1)]
        assert "rand" in diags[0].message
        assert result.indirect_targets[ProgramPoint("main", "entry", 3)] == {"malloc"}
        assert list(result.allocations) == ["main@entry:3"]

    def test_target_outside_program(self):
        result = run(NOT_IN_PROGRAM)
        assert result.return_value("main") is TOP
        diags = result.diagnostics_of(DiagnosticKind.UNRESOLVED_INDIRECT_TARGET)
        assert "ghost" in diags[0].message

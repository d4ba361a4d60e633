# tests/test_dependence.py
"""
Tests for binabstr.dependence: write-to-read pairs derived after the
fixpoint from the recorded cross references and callee results.
"""

from binabstr.analysis import analyze_function
from binabstr.dependence import DefState, MemDependence, memory_dependences
from binabstr.ir import ProgramPoint
from binabstr.ir_reader import parse_program
from binabstr.store import RegionKind
from tests.conftest import HEAP_ALIASING, STRAIGHT_LINE, run


def dep(write, read):
    return MemDependence(ProgramPoint(*write), ProgramPoint(*read))


# ── Fixture programs ─────────────────────────────────────────────

# A buffer filled in a loop at an unknown index, then read back at fixed
# offsets (one of them past the end).
LOOP_OFFSETS = """
(program
  (extern malloc (size) ptr)
  (extern rand)
  (function main
    (block entry (call malloc (args 5) (dest rbx)) (set r12 0) (jmp head))
    (block head (br (ult r12 5) body done))
    (block body
      (call rand (dest rax))
      (store (add rbx r12) rax 8)
      (set r12 (add r12 1))
      (jmp head))
    (block done
      (ret (or (load rbx 8) (or (load (add rbx 1) 8) (load (add rbx 5) 8)))))))
"""

# Two nested callees each write one half of the caller's buffer.
REF_ACROSS_PROCS = """
(program
  (extern malloc (size) ptr)
  (function main
    (block entry
      (call malloc (args 16) (dest rbx))
      (call level_0 (args rbx))
      (ret (and (load rbx) (load (add rbx 8))))))
  (function level_0 (params 1)
    (block entry
      (set r12 rdi)
      (call level_1 (args rdi))
      (store r12 30)
      (ret)))
  (function level_1 (params 1)
    (block entry (store (add rdi 8) 12) (ret))))
"""

OVERWRITTEN_SLOT = """
(program
  (function main
    (block entry
      (set rsp (sub rsp 8))
      (store rsp 1)
      (store rsp 2)
      (ret (load rsp)))))
"""

SLOT_THEN_UNKNOWN_STORE = """
(program
  (function main (params 1)
    (block entry
      (set rsp (sub rsp 8))
      (store rsp 1)
      (store rdi 2)
      (ret (load rsp)))))
"""

SLOT_ON_BOTH_ARMS = """
(program
  (extern rand)
  (function main
    (block entry (set rsp (sub rsp 8)) (call rand (dest rbx)) (br rbx left right))
    (block left  (store rsp 1) (jmp done))
    (block right (store rsp 2) (jmp done))
    (block done  (ret (load rsp)))))
"""

CALLEE_READS_CALLER_SLOT = """
(program
  (function main
    (block entry
      (set rsp (sub rsp 8))
      (store rsp 5)
      (call peek (args rsp) (dest rax))
      (ret rax)))
  (function peek (params 1)
    (block entry (ret (load rdi)))))
"""


# ── Definition state ─────────────────────────────────────────────

class TestDefState:

    P0 = ProgramPoint("f", "entry", 0)
    P1 = ProgramPoint("f", "entry", 1)
    P2 = ProgramPoint("f", "entry", 2)
    CELL = (RegionKind.HEAP, "a", 0)

    def test_unwritten_cell_has_no_writers(self):
        assert DefState().defs_of(self.CELL, 8) == frozenset()

    def test_exact_write_is_strong(self):
        s = DefState()
        s.write(self.CELL, 8, self.P0)
        s.write(self.CELL, 8, self.P1)
        assert s.defs_of(self.CELL, 8) == {self.P1}

    def test_partial_overlap_is_weak(self):
        s = DefState()
        s.write(self.CELL, 8, self.P0)
        s.write((RegionKind.HEAP, "a", 4), 4, self.P1)
        assert s.defs_of(self.CELL, 8) == {self.P0, self.P1}
        assert s.defs_of((RegionKind.HEAP, "a", 4), 4) == {self.P0, self.P1}

    def test_unknown_store_reaches_every_cell(self):
        s = DefState()
        s.write(self.CELL, 8, self.P0)
        s.write_anywhere(self.P1)
        assert s.defs_of(self.CELL, 8) == {self.P0, self.P1}
        assert s.defs_of((RegionKind.GLOBAL, "", 0x100), 8) == {self.P1}
        s.write(self.CELL, 8, self.P2)
        assert s.defs_of(self.CELL, 8) == {self.P2}

    def test_uncovered_bytes_see_unknown_stores(self):
        s = DefState()
        s.write_anywhere(self.P0)
        s.write(self.CELL, 4, self.P1)
        assert s.defs_of(self.CELL, 8) == {self.P0, self.P1}

    def test_join_keeps_writers_of_both_sides(self):
        a, b = DefState(), DefState()
        a.write(self.CELL, 8, self.P0)
        b.write(self.CELL, 8, self.P1)
        assert a.join(b).defs_of(self.CELL, 8) == {self.P0, self.P1}

    def test_join_with_missing_cell_adds_unknown_stores(self):
        a, b = DefState(), DefState()
        a.write(self.CELL, 8, self.P0)
        b.write_anywhere(self.P1)
        assert a.join(b).defs_of(self.CELL, 8) == {self.P0, self.P1}

    def test_drop_frame_only_removes_that_frame(self):
        s = DefState()
        s.write((RegionKind.STACK, "main/entry:1:f", -8), 8, self.P0)
        s.write((RegionKind.STACK, "main", -8), 8, self.P1)
        s.drop_frame("main/entry:1:f")
        assert list(s.cells) == [(RegionKind.STACK, "main", -8)]


# ── Pairs over whole programs ────────────────────────────────────

class TestDependences:

    def test_no_memory_no_pairs(self):
        assert run(STRAIGHT_LINE).dependences == []

    def test_writes_in_nested_callees(self):
        result = run(REF_ACROSS_PROCS)
        assert set(result.dependences) == {
            dep(("level_0", "entry", 2), ("main", "entry", 2)),
            dep(("level_1", "entry", 0), ("main", "entry", 2)),
        }

    def test_loop_at_unknown_index(self):
        result = run(LOOP_OFFSETS)
        assert result.dependences == [dep(("main", "body", 1), ("main", "done", 0))]

    def test_later_store_kills_earlier(self):
        assert run(OVERWRITTEN_SLOT).dependences == [
            dep(("main", "entry", 2), ("main", "entry", 3)),
        ]

    def test_unknown_store_does_not_kill(self):
        assert set(run(SLOT_THEN_UNKNOWN_STORE).dependences) == {
            dep(("main", "entry", 1), ("main", "entry", 3)),
            dep(("main", "entry", 2), ("main", "entry", 3)),
        }

    def test_branch_arms_both_reach(self):
        assert set(run(SLOT_ON_BOTH_ARMS).dependences) == {
            dep(("main", "left", 0), ("main", "done", 0)),
            dep(("main", "right", 0), ("main", "done", 0)),
        }

    def test_callee_reads_caller_write(self):
        assert run(CALLEE_READS_CALLER_SLOT).dependences == [
            dep(("main", "entry", 1), ("peek", "entry", 0)),
        ]

    def test_memory_dependences_of_single_root(self):
        program = parse_program(HEAP_ALIASING)
        root = analyze_function(program, "main")
        assert memory_dependences(program, root) == [
            dep(("init", "entry", 0), ("main", "entry", 2)),
            dep(("init", "entry", 1), ("main", "entry", 2)),
        ]

    def test_pairs_are_sorted_and_unique(self):
        deps = run(LOOP_OFFSETS).dependences
        assert deps == sorted(set(deps))

    def test_str(self):
        d = dep(("init", "entry", 0), ("main", "entry", 2))
        assert str(d) == "init:entry:0 -> main:entry:2"

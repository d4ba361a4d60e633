# tests/test_store.py
"""
Tests for Store: sized memory cells, havoc, frames and the pointwise
lattice operations.
"""

from binabstr.heap import AllocationObject, SizeRange
from binabstr.ir import ProgramPoint
from binabstr.lattice import TOP, UNDEFINED, AbstractValue
from binabstr.store import (
    GLOBAL_REGION,
    GlobalCell,
    HeapCell,
    Register,
    RegionKind,
    StackSlot,
    Store,
    location_of,
)
from tests.conftest import const


POINT = ProgramPoint("main", "entry", 0)


def _alloc(alloc_id, size):
    return AllocationObject(alloc_id, size, POINT)


# ── Reads and writes ─────────────────────────────────────────────

class TestReadWrite:

    def test_unwritten_is_undefined(self):
        s = Store()
        assert s.read(Register("rax")) is UNDEFINED
        assert s.read(StackSlot("main", 8)) is UNDEFINED

    def test_register_roundtrip(self):
        s = Store()
        s.write(Register("rax"), const(1))
        assert s.read(Register("rax")) == const(1)
        assert s.registers() == {"rax": const(1)}

    def test_undefined_register_write_removes(self):
        s = Store()
        s.write(Register("rax"), const(1))
        s.write(Register("rax"), UNDEFINED)
        assert Register("rax") not in s

    def test_memory_default_size_is_word(self):
        s = Store()
        s.write(HeapCell("a", 0), const(5))
        assert s.size_of(HeapCell("a", 0)) == 8

    def test_narrow_read_truncates_constant(self):
        s = Store()
        s.write(GlobalCell(0x1000), const(0x1122334455667788), 8)
        assert s.read_sized(GlobalCell(0x1000), 1) == const(0x88, 8)

    def test_wider_read_is_top(self):
        s = Store()
        s.write(GlobalCell(0x1000), const(7, 8), 1)
        assert s.read_sized(GlobalCell(0x1000), 8) is TOP

    def test_partial_overlap_makes_cell_top(self):
        s = Store()
        s.write(HeapCell("a", 0), const(1), 8)
        s.write(HeapCell("a", 4), const(2, 32), 4)
        assert s.read(HeapCell("a", 0)) is TOP
        assert s.read(HeapCell("a", 4)) == const(2, 32)

    def test_read_inside_other_cell_is_top(self):
        s = Store()
        s.write(StackSlot("main", 0), const(1), 8)
        assert s.read_sized(StackSlot("main", 4), 4) is TOP

    def test_cells_in_other_regions_do_not_overlap(self):
        s = Store()
        s.write(HeapCell("a", 0), const(1))
        s.write(HeapCell("b", 0), const(2))
        assert s.read(HeapCell("a", 0)) == const(1)

    def test_location_of(self):
        assert location_of(AbstractValue.stack_ref("f", 16)) == StackSlot("f", 16)
        assert location_of(AbstractValue.heap_ref("a", 4)) == HeapCell("a", 4)
        assert location_of(const(0x4000)) == GlobalCell(0x4000)
        assert location_of(TOP) is None


# ── Havoc and frames ─────────────────────────────────────────────

class TestHavoc:

    def test_havoc_everything(self):
        s = Store()
        s.write(Register("rbx"), const(1))
        s.write(HeapCell("a", 0), const(2))
        s.havoc_everything()
        assert s.read(HeapCell("a", 0)) is TOP
        assert s.read(GlobalCell(0x10)) is TOP
        assert s.read(Register("rbx")) == const(1)
        assert s.havocked_everywhere

    def test_havoc_reachable_follows_stored_pointers(self):
        s = Store()
        s.write(HeapCell("a", 0), AbstractValue.heap_ref("b", 0))
        s.write(HeapCell("b", 8), const(3))
        s.write(HeapCell("c", 0), const(4))
        regions = s.havoc_reachable([AbstractValue.heap_ref("a", 0), const(9)])
        assert regions == {(RegionKind.HEAP, "a"), (RegionKind.HEAP, "b")}
        assert s.read(HeapCell("b", 8)) is TOP
        assert s.read(HeapCell("b", 64)) is TOP
        assert s.read(HeapCell("c", 0)) == const(4)

    def test_drop_frame(self):
        s = Store()
        s.write(StackSlot("main/entry:0:f", 8), const(1))
        s.write(StackSlot("main", 8), const(2))
        s.drop_frame("main/entry:0:f")
        assert StackSlot("main/entry:0:f", 8) not in s
        assert s.read(StackSlot("main", 8)) == const(2)

    def test_memory_copy_drops_registers(self):
        s = Store()
        s.write(Register("rax"), const(1))
        s.write(GlobalCell(0x10), const(2))
        m = s.memory_copy()
        assert m.registers() == {}
        assert m.read(GlobalCell(0x10)) == const(2)
        assert GLOBAL_REGION in m.regions()


# ── Lattice operations ───────────────────────────────────────────

class TestStoreLattice:

    def test_join_pointwise(self):
        a, b = Store(), Store()
        a.write(Register("rax"), const(1))
        b.write(Register("rax"), const(1))
        a.write(Register("rbx"), const(1))
        b.write(Register("rbx"), const(2))
        a.write(Register("rcx"), const(3))
        j = a.join(b)
        assert j.read(Register("rax")) == const(1)
        assert j.read(Register("rbx")) is TOP
        assert j.read(Register("rcx")) == const(3)

    def test_join_of_mismatched_sizes_is_top(self):
        a, b = Store(), Store()
        a.write(HeapCell("x", 0), const(1, 8), 1)
        b.write(HeapCell("x", 0), const(1, 8), 4)
        assert a.join(b).read(HeapCell("x", 0)) is TOP

    def test_join_keeps_havoc(self):
        a, b = Store(), Store()
        b.havoc_region((RegionKind.HEAP, "x"))
        a.write(HeapCell("x", 0), const(1))
        assert a.join(b).read(HeapCell("x", 0)) is TOP

    def test_join_allocation_sizes(self):
        a, b = Store(), Store()
        a.add_allocation(_alloc("x", const(4)))
        b.add_allocation(_alloc("x", const(16)))
        obj = a.join(b).allocation("x")
        assert obj.size_fact == SizeRange(4, 16)

    def test_widen_allocation_sizes(self):
        a, b = Store(), Store()
        a.add_allocation(_alloc("x", const(4)))
        b.add_allocation(_alloc("x", const(16)))
        assert a.widen(b).allocation("x").size_fact is TOP

    def test_merge_into_reports_change(self):
        succ, pred = Store(), Store()
        pred.write(Register("rax"), const(1))
        assert pred.merge_into(succ)
        assert not pred.merge_into(succ)
        assert succ.read(Register("rax")) == const(1)

    def test_leq(self):
        a, b = Store(), Store()
        a.write(Register("rax"), const(1))
        b.write(Register("rax"), TOP)
        assert a.leq(b)
        assert not b.leq(a)

    def test_equal_stores_share_key(self):
        a, b = Store(), Store()
        for s in (a, b):
            s.write(HeapCell("x", 0), const(1))
        assert a == b
        assert a.key() == b.key()
        assert hash(a.key()) == hash(b.key())

    def test_copy_is_independent(self):
        a = Store()
        a.write(Register("rax"), const(1))
        b = a.copy()
        b.write(Register("rax"), const(2))
        assert a.read(Register("rax")) == const(1)

"""
binabstr.frames
===============

Calling conventions and the stack-frame model.

Arguments are bound in source order: the first ``len(arg_registers)`` go to
the convention's argument registers, every further one to a slot of the
*callee's* frame at a strictly increasing offset.  By default the ``j``-th
stack argument lives at ``stack_arg_base + j * slot_size`` (on x86-64 the
return address occupies ``[rsp]``, so the first stack argument is at
``rsp + 8``).  A lifter that knows better can pin the offsets per call site.

On entry the callee's stack pointer register holds ``StackRef(frame, 0)``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from binabstr.errors import ConfigError, MalformedInput
from binabstr.lattice import TOP, AbstractValue
from binabstr.store import Location, Register, StackSlot, Store

__all__ = [
    "CallingConvention",
    "CONVENTIONS",
    "get_convention",
    "StackFrame",
    "StackFrameModel",
]


@dataclass(frozen=True)
class CallingConvention:
    name: str
    arg_registers: Tuple[str, ...]
    return_register: str
    stack_pointer: str
    stack_arg_base: int
    slot_size: int
    caller_saved: Tuple[str, ...] = ()

    @property
    def clobbered(self) -> Tuple[str, ...]:
        """Registers whose value does not survive a call."""
        if self.return_register in self.caller_saved:
            return self.caller_saved
        return self.caller_saved + (self.return_register,)


CONVENTIONS: Dict[str, CallingConvention] = {
    "x86_64": CallingConvention(
        name="x86_64",
        arg_registers=("rdi", "rsi", "rdx", "rcx", "r8", "r9"),
        return_register="rax",
        stack_pointer="rsp",
        stack_arg_base=8,
        slot_size=8,
        caller_saved=("rax", "rcx", "rdx", "rsi", "rdi", "r8", "r9", "r10", "r11"),
    ),
    "cdecl32": CallingConvention(
        name="cdecl32",
        arg_registers=(),
        return_register="eax",
        stack_pointer="esp",
        stack_arg_base=4,
        slot_size=4,
        caller_saved=("eax", "ecx", "edx"),
    ),
    "hexagon": CallingConvention(
        name="hexagon",
        arg_registers=("r0", "r1", "r2", "r3", "r4", "r5"),
        return_register="r0",
        stack_pointer="r29",
        stack_arg_base=0,
        slot_size=4,
        caller_saved=tuple(f"r{i}" for i in range(16)) + ("r28",),
    ),
}


def get_convention(name: str) -> CallingConvention:
    try:
        return CONVENTIONS[name]
    except KeyError:
        raise ConfigError(
            f"unknown calling convention {name!r}; "
            f"expected one of {', '.join(sorted(CONVENTIONS))}"
        ) from None


@dataclass(frozen=True)
class StackFrame:
    """One activation's frame and the stack-passed arguments bound in it."""
    frame_id: str
    arg_slots: Tuple[Tuple[int, AbstractValue], ...] = ()

    def slot(self, offset: int) -> Optional[AbstractValue]:
        for off, value in self.arg_slots:
            if off == offset:
                return value
        return None


class StackFrameModel:
    """Binds call arguments to callee Locations under one convention."""

    def __init__(self, convention: CallingConvention) -> None:
        self.cc = convention

    def stack_offsets(
        self,
        count: int,
        call_site_offsets: Optional[Sequence[int]] = None,
    ) -> List[int]:
        if call_site_offsets is None:
            return [self.cc.stack_arg_base + j * self.cc.slot_size for j in range(count)]
        offsets = list(call_site_offsets)
        if len(offsets) != count:
            raise MalformedInput(
                f"{count} stack argument(s) but {len(offsets)} call-site offset(s)"
            )
        for prev, cur in zip(offsets, offsets[1:]):
            if cur <= prev:
                raise MalformedInput(
                    f"stack argument offsets must strictly increase ({prev} then {cur})"
                )
        return offsets

    def classify_args(
        self,
        args: Sequence[AbstractValue],
        frame_id: str,
        call_site_offsets: Optional[Sequence[int]] = None,
        expected: Optional[int] = None,
    ) -> List[Tuple[Location, AbstractValue]]:
        """
        Ordered ``(Location, value)`` bindings for *args*.

        ``expected`` is the callee's declared parameter count; missing
        arguments are bound to ``Top``.
        """
        values = list(args)
        if expected is not None and expected > len(values):
            values.extend([TOP] * (expected - len(values)))
        n_reg = len(self.cc.arg_registers)
        reg_values, stack_values = values[:n_reg], values[n_reg:]
        if call_site_offsets is not None and not stack_values:
            if list(call_site_offsets):
                raise MalformedInput("call-site stack offsets given but no stack arguments")
        offsets = self.stack_offsets(len(stack_values), call_site_offsets if stack_values else None)

        bindings: List[Tuple[Location, AbstractValue]] = [
            (Register(reg), v) for reg, v in zip(self.cc.arg_registers, reg_values)
        ]
        bindings.extend(
            (StackSlot(frame_id, off), v) for off, v in zip(offsets, stack_values)
        )
        return bindings

    def build_frame(
        self,
        bindings: Sequence[Tuple[Location, AbstractValue]],
        frame_id: str,
    ) -> StackFrame:
        return StackFrame(
            frame_id=frame_id,
            arg_slots=tuple(
                (loc.offset, v) for loc, v in bindings if isinstance(loc, StackSlot)
            ),
        )

    def enter(self, store: Store, frame: StackFrame,
              bindings: Sequence[Tuple[Location, AbstractValue]]) -> None:
        """Write *bindings* and the callee stack pointer into *store*."""
        for loc, value in bindings:
            if isinstance(loc, StackSlot):
                store.write(loc, value, self.cc.slot_size)
            else:
                store.write(loc, value)
        store.write(Register(self.cc.stack_pointer), AbstractValue.stack_ref(frame.frame_id, 0))

    def clobber(self, store: Store) -> None:
        for reg in self.cc.clobbered:
            store.write(Register(reg), TOP)

"""
binabstr.errors
===============

Exceptions and non-fatal diagnostics produced by the engine.

Two families live here:

* **Exceptions**: :class:`AnalysisError` and its subclasses.  They are
  raised for conditions that abort work: structurally invalid input
  (:class:`MalformedInput`), a cancelled run (:class:`AnalysisCancelled`)
  and bad configuration (:class:`ConfigError`).
* **Diagnostics**: :class:`Diagnostic` records.  Non-fatal conditions are
  accumulated as diagnostics and returned next to the results, so the caller
  decides how to present them.  The fixpoint never stops because of one.

A ``MalformedInput`` raised while analysing one function is converted into a
``MALFORMED_INPUT`` diagnostic by whoever catches it (the call handler for a
callee, the driver for an entry point); the rest of the run continues.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from binabstr.ir import ProgramPoint

__all__ = [
    "AnalysisError",
    "MalformedInput",
    "AnalysisCancelled",
    "ConfigError",
    "DiagnosticKind",
    "Diagnostic",
]


# ═══════════════════════════════════════════════════════════════════════════
# EXCEPTION CLASSES
# ═══════════════════════════════════════════════════════════════════════════

class AnalysisError(Exception):
    """Base exception for all engine errors."""


class MalformedInput(AnalysisError):
    """
    The supplied CFG, signature table or IR text violates a structural
    invariant (e.g. a call with neither a callee reference nor a candidate
    set).  Fatal to the affected function only.
    """

    def __init__(
        self,
        message: str,
        function: Optional[str] = None,
        position: Optional[int] = None,
    ) -> None:
        self.function = function
        self.position = position
        super().__init__(message)

    def __str__(self) -> str:
        msg = self.args[0]
        if self.function is not None:
            msg = f"{self.function}: {msg}"
        if self.position is not None:
            msg = f"{msg} (at offset {self.position})"
        return msg


class AnalysisCancelled(AnalysisError):
    """Raised between block iterations once cancellation was requested."""


class ConfigError(AnalysisError):
    """An invalid configuration value."""


# ═══════════════════════════════════════════════════════════════════════════
# DIAGNOSTICS
# ═══════════════════════════════════════════════════════════════════════════

class DiagnosticKind(enum.Enum):
    UNRESOLVED_INDIRECT_TARGET = "UnresolvedIndirectTarget"
    RECURSION_LIMIT_EXCEEDED = "RecursionLimitExceeded"
    OUT_OF_BOUNDS_ACCESS = "OutOfBoundsAccess"
    MALFORMED_INPUT = "MalformedInput"

    @property
    def fatal(self) -> bool:
        return self is DiagnosticKind.MALFORMED_INPUT


@dataclass(frozen=True)
class Diagnostic:
    """
    One non-fatal finding (or a recorded fatal one for a single function).

    Use :meth:`sort_key` to order a diagnostics list; the order is stable
    across worklist orders and thread schedules.
    """
    kind: DiagnosticKind
    function: str
    message: str
    point: Optional["ProgramPoint"] = None
    context: str = ""

    @property
    def fatal(self) -> bool:
        return self.kind.fatal

    def sort_key(self) -> tuple:
        where = (self.point.block, self.point.index) if self.point else ("", -1)
        return (self.function, where, self.kind.value, self.context, self.message)

    def to_dict(self) -> dict:
        d = {
            "kind": self.kind.value,
            "function": self.function,
            "message": self.message,
        }
        if self.context:
            d["context"] = self.context
        if self.point is not None:
            d["block"] = self.point.block
            d["index"] = self.point.index
            if self.point.address is not None:
                d["address"] = hex(self.point.address)
        return d

    def __str__(self) -> str:
        where = self.function
        if self.point is not None:
            where = str(self.point)
        return f"{where}: {self.kind.value}: {self.message}"

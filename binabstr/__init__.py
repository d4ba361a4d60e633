"""
binabstr - Abstract Interpretation over Lifted Binary Code
==========================================================

A context-sensitive, interprocedural abstract interpreter for functions
lifted from machine code into a small register/memory IR.  For every
program point it recovers an over-approximation of register and memory
contents: constants, stack and heap references with byte offsets, and the
functions a code pointer may name.

Core modules
------------
lattice
    The abstract value lattice (Undefined, Top, Const, StackRef, HeapRef,
    FuncPtr) with exact bit-vector transfer functions.
ir / ir_reader
    The lifted IR and its S-expression text form.
store
    Locations and the per-point Store (registers, stack slots, heap and
    global cells).
heap / frames
    Allocation-site heap model and calling-convention stack frames.
cfg / fixpoint / evaluator
    Per-function CFG facts, the worklist fixpoint engine and the block
    transfer functions.
contexts / interproc / resolver
    Call contexts with a recursion bound, call handling and indirect-call
    resolution.
callgraph / products
    Static and resolved call graphs; cross references and location
    classification.
dependence
    Write-to-read memory dependences derived from the reporting products.
analysis / config
    Run driver (parallel entry groups, cancellation) and configuration.

Quick start
-----------
>>> from binabstr import parse_program, analyze_program
>>> prog = parse_program('''
... (program (function main (block entry (set rax 3) (ret rax))))''')
>>> analyze_program(prog).return_value("main")
Const(64, 0x3)
"""

from __future__ import annotations

import importlib
import logging
import sys
from typing import List

# ---------------------------------------------------------------------------
# Package metadata
# ---------------------------------------------------------------------------

__version__ = "0.1.0"
__all__: List[str] = []          # populated below

_log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Internal registry: (module_name, list_of_names_to_re-export)
# ---------------------------------------------------------------------------

_CORE_MODULES = {
    "errors": [
        "AnalysisError",
        "MalformedInput",
        "AnalysisCancelled",
        "ConfigError",
        "Diagnostic",
        "DiagnosticKind",
    ],
    "lattice": [
        "AbstractValue",
        "ValueKind",
        "TOP",
        "UNDEFINED",
        "join",
        "widen",
        "leq",
    ],
    "ir": [
        "ProgramPoint",
        "BasicBlock",
        "Function",
        "Signature",
        "DataItem",
        "Program",
    ],
    "ir_reader": [
        "parse_program",
        "load_program",
    ],
    "store": [
        "Register",
        "StackSlot",
        "HeapCell",
        "GlobalCell",
        "Store",
    ],
    "heap": [
        "AllocationObject",
        "HeapModel",
        "AllocationRegistry",
    ],
    "frames": [
        "CallingConvention",
        "StackFrameModel",
        "get_convention",
    ],
    "contexts": [
        "CallContext",
        "ContextCache",
    ],
    "fixpoint": [
        "FixpointEngine",
        "FunctionResult",
        "WorklistStrategy",
    ],
    "callgraph": [
        "CallGraph",
        "build_static_callgraph",
        "build_resolved_callgraph",
        "callgraph_summary",
    ],
    "products": [
        "CallKind",
        "LocationClass",
        "classify_store",
    ],
    "dependence": [
        "MemDependence",
        "memory_dependences",
    ],
    "config": [
        "AnalysisConfig",
        "load_config",
    ],
    "analysis": [
        "AnalysisSession",
        "CancellationToken",
        "ProgramResult",
        "analyze_function",
        "analyze_program",
    ],
}

# ---------------------------------------------------------------------------
# Import helper
# ---------------------------------------------------------------------------

def _import_names(module_rel_name: str, names: List[str]) -> None:
    """Import *names* from a submodule and bind them in the package namespace.

    Parameters
    ----------
    module_rel_name:
        Module name relative to this package (e.g. ``"lattice"``).
    names:
        Public symbols to re-export.
    """
    fq_name = f"{__name__}.{module_rel_name}"
    try:
        mod = importlib.import_module(fq_name)
    except ImportError as exc:
        raise ImportError(
            f"binabstr: required submodule '{module_rel_name}' failed to import: {exc}"
        ) from exc

    current_module = sys.modules[__name__]
    for name in names:
        if not hasattr(mod, name):
            raise AttributeError(f"binabstr.{module_rel_name} does not export '{name}'")
        setattr(current_module, name, getattr(mod, name))
        __all__.append(name)

    # binabstr.lattice.AbstractValue works as well as binabstr.AbstractValue
    setattr(current_module, module_rel_name, mod)
    if module_rel_name not in __all__:
        __all__.append(module_rel_name)


for _mod, _names in _CORE_MODULES.items():
    _import_names(_mod, _names)

del _mod, _names

# ---------------------------------------------------------------------------
# Package-level utilities
# ---------------------------------------------------------------------------

def list_submodules() -> List[str]:
    """Return the names of all re-exported submodules."""
    return sorted(_CORE_MODULES)


def package_info() -> dict:
    """Version and module metadata, for logging inside host tools."""
    return {
        "version": __version__,
        "python": sys.version.split()[0],
        "modules": list_submodules(),
    }


_log.debug("binabstr %s loaded (%d modules)", __version__, len(_CORE_MODULES))

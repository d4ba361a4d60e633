#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
binabstr/__main__.py
====================

Command-line front end.

Usage
-----
    python -m binabstr <command> [options] <ir-file>

Commands
--------
    analyze     Run the analysis and print return values and diagnostics
    check       Parse and validate an IR file (no analysis)
    callgraph   Print the static call graph of an IR file
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import textwrap
from pathlib import Path
from typing import Any, Dict, Optional, Sequence

from binabstr import __version__
from binabstr.analysis import ProgramResult, analyze_program
from binabstr.callgraph import build_static_callgraph, callgraph_summary
from binabstr.config import AnalysisConfig, load_config
from binabstr.errors import AnalysisError, MalformedInput
from binabstr.ir import Program
from binabstr.ir_reader import parse_program


def _read_program(path: str) -> Program:
    if path == "-":
        return parse_program(sys.stdin.read())
    return parse_program(Path(path).read_text(encoding="utf-8"))


def _configure_logging(verbose: int) -> None:
    level = logging.WARNING
    if verbose == 1:
        level = logging.INFO
    elif verbose > 1:
        level = logging.DEBUG
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")


def _config_from_args(args: argparse.Namespace) -> AnalysisConfig:
    config = load_config(Path(args.config) if args.config else None)
    changes: Dict[str, Any] = {}
    for key in ("clone_depth", "widening_delay", "strategy", "max_workers", "calling_convention"):
        value = getattr(args, key, None)
        if value is not None:
            changes[key] = value
    return config.replace(**changes) if changes else config


def _result_to_dict(result: ProgramResult) -> Dict[str, Any]:
    return {
        "entries": {
            name: {
                "return": repr(r.return_value),
                "returns": r.returns,
                "iterations": r.iterations,
                "converged": r.converged,
            }
            for name, r in sorted(result.results.items())
        },
        "contexts": sorted(result.contexts),
        "indirect_targets": {
            str(point): sorted(targets) for point, targets in result.indirect_targets.items()
        },
        "allocations": {
            alloc_id: repr(obj.size_fact) for alloc_id, obj in sorted(result.allocations.items())
        },
        "dependences": [
            {"write": str(dep.write), "read": str(dep.read)} for dep in result.dependences
        ],
        "diagnostics": [d.to_dict() for d in result.diagnostics],
        "elapsed_seconds": round(result.elapsed_seconds, 6),
    }


# ═══════════════════════════════════════════════════════════════════════════
# COMMANDS
# ═══════════════════════════════════════════════════════════════════════════

def cmd_analyze(args: argparse.Namespace) -> int:
    """Handle the 'analyze' command."""
    program = _read_program(args.input)
    config = _config_from_args(args)
    result = analyze_program(program, entries=args.entry or None, config=config)

    if args.json:
        json.dump(_result_to_dict(result), sys.stdout, indent=2)
        sys.stdout.write("\n")
    else:
        for name, r in sorted(result.results.items()):
            sys.stdout.write(f"{name}: return {r.return_value!r}\n")
        for point, targets in result.indirect_targets.items():
            sys.stdout.write(f"{point}: calls {', '.join(sorted(targets))}\n")
        for d in result.diagnostics:
            sys.stdout.write(f"{d}\n")
    return 0 if result.ok else 1


def cmd_check(args: argparse.Namespace) -> int:
    """Handle the 'check' command (parse + validate, no analysis)."""
    program = _read_program(args.input)
    failures = 0
    for fn in program.functions.values():
        try:
            fn.validate(program)
        except MalformedInput as exc:
            sys.stderr.write(f"error: {exc}\n")
            failures += 1
    if failures:
        return 1
    if not args.quiet:
        sys.stderr.write(
            f"{args.input}: {len(program.functions)} function(s), "
            f"{len(program.externals)} external(s) OK\n"
        )
    return 0


def cmd_callgraph(args: argparse.Namespace) -> int:
    """Handle the 'callgraph' command."""
    program = _read_program(args.input)
    sys.stdout.write(callgraph_summary(build_static_callgraph(program)) + "\n")
    return 0


# ═══════════════════════════════════════════════════════════════════════════
# ARGUMENT PARSER
# ═══════════════════════════════════════════════════════════════════════════

def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for the binabstr CLI."""
    parser = argparse.ArgumentParser(
        prog="binabstr",
        description="Abstract interpretation over lifted binary code",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=textwrap.dedent("""\
            examples:
              %(prog)s analyze prog.ir
              %(prog)s analyze prog.ir --entry main --workers 4 --json
              %(prog)s check prog.ir
              %(prog)s callgraph prog.ir
        """),
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-v", "--verbose", action="count", default=0,
                        help="more logging (-v info, -vv debug)")

    subparsers = parser.add_subparsers(
        dest="command",
        title="commands",
        metavar="<command>",
    )

    # ── analyze ──────────────────────────────────────────────────────────
    p_analyze = subparsers.add_parser("analyze", help="run the analysis")
    p_analyze.add_argument("input", help="IR file ('-' for stdin)")
    p_analyze.add_argument("-e", "--entry", action="append",
                           help="entry function (repeatable; default: the program's entries)")
    p_analyze.add_argument("-c", "--config", help="configuration file")
    p_analyze.add_argument("-k", "--clone-depth", dest="clone_depth", type=int,
                           help="clones per function on one call string")
    p_analyze.add_argument("--widening-delay", dest="widening_delay", type=int)
    p_analyze.add_argument("--strategy", choices=("rpo", "fifo", "lifo"))
    p_analyze.add_argument("-j", "--workers", dest="max_workers", type=int)
    p_analyze.add_argument("--cc", dest="calling_convention",
                           help="calling convention (x86_64, cdecl32, hexagon)")
    p_analyze.add_argument("--json", action="store_true", help="JSON output")
    p_analyze.set_defaults(func=cmd_analyze)

    # ── check ────────────────────────────────────────────────────────────
    p_check = subparsers.add_parser("check", help="parse and validate an IR file")
    p_check.add_argument("input", help="IR file ('-' for stdin)")
    p_check.add_argument("-q", "--quiet", action="store_true")
    p_check.set_defaults(func=cmd_check)

    # ── callgraph ────────────────────────────────────────────────────────
    p_cg = subparsers.add_parser("callgraph", help="print the static call graph")
    p_cg.add_argument("input", help="IR file ('-' for stdin)")
    p_cg.set_defaults(func=cmd_callgraph)

    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main entry point; returns the process exit code."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    _configure_logging(args.verbose)
    try:
        return args.func(args)
    except AnalysisError as exc:
        sys.stderr.write(f"error: {exc}\n")
        return 1
    except KeyboardInterrupt:
        sys.stderr.write("\nInterrupted.\n")
        return 130
    except BrokenPipeError:
        devnull = os.open(os.devnull, os.O_WRONLY)
        os.dup2(devnull, sys.stdout.fileno())
        return 0
    except OSError as exc:
        sys.stderr.write(f"error: {exc}\n")
        return 1


if __name__ == "__main__":
    sys.exit(main())

# tests/conftest.py
"""
Shared fixtures: small lifted programs written in the IR text form, and
helpers to analyse them.
"""

import pytest

from binabstr.analysis import AnalysisSession, analyze_program
from binabstr.config import AnalysisConfig
from binabstr.ir_reader import parse_program
from binabstr.lattice import AbstractValue


def const(value, width=64):
    return AbstractValue.const(value, width)


def run(text, entries=None, **config):
    """Parse *text* and analyse it with the given config overrides."""
    return analyze_program(parse_program(text), entries=entries, config=AnalysisConfig(**config))


def session_for(text, **config):
    return AnalysisSession(parse_program(text), AnalysisConfig(**config))


# ── Fixture programs ─────────────────────────────────────────────

STRAIGHT_LINE = """
(program
  (function main
    (block entry
      (set rax 3)
      (set rbx (add rax 4))
      (ret rbx))))
"""

BRANCH_JOIN = """
(program
  (function main (params 1)
    (block entry (br (eq rdi 0) left right))
    (block left  (set rax 1) (jmp done))
    (block right (set rax 2) (jmp done))
    (block done  (ret rax))))
"""

BRANCH_SAME = """
(program
  (function main (params 1)
    (block entry (br (eq rdi 0) left right))
    (block left  (set rax 7) (jmp done))
    (block right (set rax 7) (jmp done))
    (block done  (ret rax))))
"""

COUNTING_LOOP = """
(program
  (function main
    (block entry (set rcx 0) (set rax 5) (jmp head))
    (block head  (br (ult rcx 10) body exit))
    (block body  (set rcx (add rcx 1)) (jmp head))
    (block exit  (ret rax))))
"""

HEAP_ALIASING = """
(program
  (extern malloc (size) ptr)
  (function main
    (block entry
      (call malloc (args 16) (dest rbx))
      (call init (args rbx))
      (ret (and (load rbx) (load (add rbx 8))))))
  (function init (params 1)
    (block entry
      (store rdi 12)
      (store (add rdi 8) 10)
      (ret))))
"""

OUT_OF_BOUNDS = """
(program
  (extern malloc (size) ptr)
  (function main
    (block entry
      (call malloc (args 4) (dest rbx))
      (store (add rbx 5) 7 8)
      (ret (load (add rbx 5) 8)))))
"""

INDIRECT_CALLS = """
(program
  (data 0x4000 64 (fn three))
  (function main
    (block entry
      (set rbx (fn three))
      (call rbx (dest r12))
      (call (load 0x4000) (dest r13))
      (ret (udiv (add r12 r13) 2))))
  (function three
    (block entry (ret 3))))
"""

RECURSIVE = """
(program
  (function main
    (block entry
      (call fact (args 5) (dest rax))
      (ret rax)))
  (function fact (params 1)
    (block entry (br (eq rdi 0) base step))
    (block base  (ret 1))
    (block step
      (set rbx rdi)
      (call fact (args (sub rdi 1)) (dest rax))
      (ret (mul rax rbx)))))
"""

MUTUAL_RECURSION = """
(program
  (function main
    (block entry (call ping (args 4)) (ret 0)))
  (function ping (params 1)
    (block entry (br (eq rdi 0) done again))
    (block again (call pong (args (sub rdi 1))) (jmp done))
    (block done  (ret rdi)))
  (function pong (params 1)
    (block entry (call ping (args rdi)) (ret 1))))
"""


def thirty_arguments():
    """``main`` calls ``sum30(0, 1, ..., 29)``; the callee adds every argument."""
    regs = ["rdi", "rsi", "rdx", "rcx", "r8", "r9"]
    terms = list(regs) + [f"(load (add rsp {8 * (j + 1)}))" for j in range(24)]
    body = "(set rax 0)\n" + "\n".join(f"      (set rax (add rax {t}))" for t in terms)
    args = " ".join(str(i) for i in range(30))
    return f"""
(program
  (function main
    (block entry
      (call sum30 (args {args}) (dest rax))
      (ret rax)))
  (function sum30 (params 30)
    (block entry
      {body}
      (ret rax))))
"""


INDEPENDENT_ENTRIES = """
(program
  (extern malloc (size) ptr)
  (entry a b c)
  (function a
    (block entry (call helper_a (args 2) (dest rax)) (ret rax)))
  (function helper_a (params 1)
    (block entry (ret (mul rdi 21))))
  (function b
    (block entry
      (call malloc (args 8) (dest rbx))
      (store rbx (fn helper_b))
      (call (load rbx) (dest rax))
      (ret rax)))
  (function helper_b
    (block entry (ret 99)))
  (function c
    (block entry (call c_loop (args 3) (dest rax)) (ret rax)))
  (function c_loop (params 1)
    (block entry (br (eq rdi 0) out again))
    (block again (call c_loop (args (sub rdi 1))) (jmp out))
    (block out (ret 0))))
"""


@pytest.fixture
def straight_line():
    return parse_program(STRAIGHT_LINE)


@pytest.fixture
def heap_program():
    return parse_program(HEAP_ALIASING)


@pytest.fixture
def indirect_program():
    return parse_program(INDIRECT_CALLS)

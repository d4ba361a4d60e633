"""
binabstr.cfg
============

Graph queries over one :class:`~binabstr.ir.Function`: successor and
predecessor maps, reverse post-order, DFS back edges and loop heads.
Traversals are iterative and follow successor order, so every query is
deterministic for a given function.
"""

from __future__ import annotations

from typing import Dict, List, Set, Tuple

from binabstr.ir import Function

__all__ = ["FunctionCFG"]


class FunctionCFG:
    """Intraprocedural control flow graph for a single function."""

    def __init__(self, function: Function) -> None:
        self.function = function
        self.entry = function.entry
        self._succ: Dict[str, Tuple[str, ...]] = {}
        self._pred: Dict[str, List[str]] = {b.label: [] for b in function.blocks}
        for b in function.blocks:
            succs = b.successors()
            self._succ[b.label] = succs
            for s in succs:
                self._pred.setdefault(s, []).append(b.label)
        self._rpo: List[str] = []
        self._back_edges: List[Tuple[str, str]] = []
        self._dfs()

    # ----- queries ----------------------------------------------------------

    def successors_of(self, label: str) -> Tuple[str, ...]:
        return self._succ.get(label, ())

    def predecessors_of(self, label: str) -> List[str]:
        return list(self._pred.get(label, ()))

    def reverse_postorder(self) -> List[str]:
        """Blocks reachable from the entry, in reverse post-order."""
        return list(self._rpo)

    def reachable(self) -> Set[str]:
        return set(self._rpo)

    def back_edges(self) -> List[Tuple[str, str]]:
        """Edges closing a cycle in the DFS from the entry."""
        return list(self._back_edges)

    def loop_heads(self) -> Set[str]:
        return {dst for _, dst in self._back_edges}

    def exits(self) -> List[str]:
        return [label for label in self._rpo if not self._succ.get(label)]

    # ----- DFS --------------------------------------------------------------

    def _dfs(self) -> None:
        if self.entry is None:
            return
        visited: Set[str] = {self.entry}
        on_stack: Set[str] = {self.entry}
        postorder: List[str] = []
        stack = [(self.entry, iter(self._succ.get(self.entry, ())))]
        while stack:
            node, it = stack[-1]
            advanced = False
            for succ in it:
                if succ in on_stack:
                    self._back_edges.append((node, succ))
                elif succ not in visited:
                    visited.add(succ)
                    on_stack.add(succ)
                    stack.append((succ, iter(self._succ.get(succ, ()))))
                    advanced = True
                    break
            if not advanced:
                stack.pop()
                on_stack.discard(node)
                postorder.append(node)
        postorder.reverse()
        self._rpo = postorder

    def __repr__(self) -> str:
        return (
            f"FunctionCFG(function={self.function.name!r}, "
            f"blocks={len(self.function.blocks)}, reachable={len(self._rpo)})"
        )

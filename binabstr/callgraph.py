"""
binabstr.callgraph
==================

Call graphs over a lifted :class:`~binabstr.ir.Program`.

Two graphs are built:

``build_static_callgraph``
    From the IR alone, before any analysis.  Direct calls give one edge;
    an indirect call with a declared candidate set gives one edge per
    candidate; an indirect call without one may reach any address-taken
    function and the synthetic UNKNOWN node.  Used to group entry points
    whose analyses can share work.

``build_resolved_callgraph``
    From the call edges recorded by an analysis run.  Indirect edges carry
    exactly the targets the value analysis found at each site.  Calls
    redirected to a shared summary point at the original function's node.

Nodes are keyed by routine name; the UNKNOWN node stands for calls whose
target could not be determined.

Public API
----------
    NodeKind            - function, external or unknown
    CallGraphNode       - a node in the call graph
    CallGraphEdge       - a directed edge (call site)
    CallGraph           - the whole-program call graph
    build_static_callgraph / build_resolved_callgraph
    callgraph_summary, find_recursive_functions, unreachable_functions
"""

from __future__ import annotations

import enum
from collections import OrderedDict, deque
from typing import Any, Deque, Dict, Iterable, List, Optional, Set

from binabstr.ir import FnRef, Program, ProgramPoint
from binabstr.products import CallEdge, CallKind

__all__ = [
    "NodeKind",
    "CallGraphNode",
    "CallGraphEdge",
    "CallGraph",
    "build_static_callgraph",
    "build_resolved_callgraph",
    "callgraph_summary",
    "find_recursive_functions",
    "unreachable_functions",
]

UNKNOWN_NODE = "<unknown>"


# ---------------------------------------------------------------------------
# Node kinds
# ---------------------------------------------------------------------------

class NodeKind(enum.Enum):
    """Classification of a call-graph node."""

    FUNCTION = "function"      # has a body in the program
    EXTERNAL = "external"      # declared signature only
    UNKNOWN  = "unknown"       # synthetic sink for unresolved calls


# ---------------------------------------------------------------------------
# CallGraphNode
# ---------------------------------------------------------------------------

class CallGraphNode:
    """A node in the call graph.

    Attributes
    ----------
    name : str
        Routine name (``<unknown>`` for the synthetic node).
    kind : NodeKind
        What this node represents.
    out_edges : list[CallGraphEdge]
        Outgoing call edges (this function calls ...).
    in_edges : list[CallGraphEdge]
        Incoming call edges (... calls this function).
    """

    __slots__ = ("name", "kind", "out_edges", "in_edges")

    def __init__(self, name: str, kind: NodeKind = NodeKind.FUNCTION) -> None:
        self.name: str = name
        self.kind: NodeKind = kind
        self.out_edges: List[CallGraphEdge] = []
        self.in_edges: List[CallGraphEdge] = []

    @property
    def callees(self) -> List[CallGraphNode]:
        return [e.callee for e in self.out_edges]

    @property
    def callers(self) -> List[CallGraphNode]:
        return [e.caller for e in self.in_edges]

    @property
    def is_leaf(self) -> bool:
        return len(self.out_edges) == 0

    @property
    def is_root(self) -> bool:
        return len(self.in_edges) == 0

    @property
    def is_recursive(self) -> bool:
        """Does this function call itself (directly)?"""
        return any(e.callee is self for e in self.out_edges)

    def __repr__(self) -> str:
        return f"CallGraphNode({self.name!r}, kind={self.kind.value})"

    def __hash__(self) -> int:
        return hash(self.name)

    def __eq__(self, other) -> bool:
        if isinstance(other, CallGraphNode):
            return self.name == other.name
        return NotImplemented


# ---------------------------------------------------------------------------
# CallGraphEdge
# ---------------------------------------------------------------------------

class CallGraphEdge:
    """A call site ``caller -> callee``, annotated with how it was resolved."""

    __slots__ = ("caller", "callee", "point", "kind")

    def __init__(
        self,
        caller: CallGraphNode,
        callee: CallGraphNode,
        point: Optional[ProgramPoint] = None,
        kind: CallKind = CallKind.DIRECT,
    ) -> None:
        self.caller = caller
        self.callee = callee
        self.point = point
        self.kind = kind

    def __repr__(self) -> str:
        loc = f" @ {self.point.site}" if self.point is not None else ""
        return f"CallGraphEdge({self.caller.name} -> {self.callee.name}, {self.kind.value}{loc})"

    def __hash__(self) -> int:
        return hash((self.caller.name, self.callee.name, self.point, self.kind))

    def __eq__(self, other) -> bool:
        if isinstance(other, CallGraphEdge):
            return (
                self.caller.name == other.caller.name
                and self.callee.name == other.callee.name
                and self.point == other.point
                and self.kind is other.kind
            )
        return NotImplemented


# ---------------------------------------------------------------------------
# CallGraph
# ---------------------------------------------------------------------------

class CallGraph:
    """Whole-program call graph.

    Attributes
    ----------
    nodes : OrderedDict[str, CallGraphNode]
        All nodes, keyed by name.
    edges : list[CallGraphEdge]
        All edges, each (caller, callee, point, kind) at most once.
    unknown : CallGraphNode
        The synthetic UNKNOWN sink node.
    """

    def __init__(self) -> None:
        self.nodes: OrderedDict[str, CallGraphNode] = OrderedDict()
        self.edges: List[CallGraphEdge] = []
        self._edge_set: Set[CallGraphEdge] = set()
        self.unknown = CallGraphNode(UNKNOWN_NODE, NodeKind.UNKNOWN)
        self.nodes[UNKNOWN_NODE] = self.unknown

    # ----- node / edge management -------------------------------------------

    def get_or_create_node(self, name: str, kind: NodeKind = NodeKind.FUNCTION) -> CallGraphNode:
        node = self.nodes.get(name)
        if node is None:
            node = CallGraphNode(name, kind)
            self.nodes[name] = node
        return node

    def add_edge(
        self,
        caller: CallGraphNode,
        callee: CallGraphNode,
        point: Optional[ProgramPoint] = None,
        kind: CallKind = CallKind.DIRECT,
    ) -> CallGraphEdge:
        """Create a call edge and wire it up (idempotent)."""
        edge = CallGraphEdge(caller, callee, point, kind)
        if edge in self._edge_set:
            return edge
        self._edge_set.add(edge)
        self.edges.append(edge)
        caller.out_edges.append(edge)
        callee.in_edges.append(edge)
        return edge

    def node(self, name: str) -> Optional[CallGraphNode]:
        return self.nodes.get(name)

    @property
    def roots(self) -> List[CallGraphNode]:
        """Function nodes with no callers."""
        return [n for n in self.nodes.values() if n.is_root and n.kind == NodeKind.FUNCTION]

    @property
    def leaves(self) -> List[CallGraphNode]:
        """Nodes with no callees (excluding UNKNOWN)."""
        return [n for n in self.nodes.values() if n.is_leaf and n.kind != NodeKind.UNKNOWN]

    # ----- whole-graph queries ----------------------------------------------

    def transitive_callees(self, node: CallGraphNode) -> Set[CallGraphNode]:
        """Return all nodes transitively reachable from *node*."""
        visited: Set[CallGraphNode] = set()
        worklist: Deque[CallGraphNode] = deque(node.callees)
        while worklist:
            n = worklist.popleft()
            if n in visited:
                continue
            visited.add(n)
            worklist.extend(n.callees)
        return visited

    def reachable_from(self, name: str) -> Set[str]:
        """Names of *name* and every routine it may transitively call."""
        node = self.nodes.get(name)
        if node is None:
            return {name}
        return {name} | {n.name for n in self.transitive_callees(node)}

    def is_recursive(self, node: CallGraphNode) -> bool:
        """Is *node* part of a (possibly indirect) recursive cycle?"""
        return node in self.transitive_callees(node)

    def strongly_connected_components(self) -> List[List[CallGraphNode]]:
        """Compute SCCs using Tarjan's algorithm.

        Returns a list of SCCs in reverse topological order (callees before
        callers).  The DFS keeps its own stack, so call chains of any depth
        are handled.
        """
        counter = 0
        stack: List[CallGraphNode] = []
        lowlink: Dict[str, int] = {}
        index: Dict[str, int] = {}
        on_stack: Set[str] = set()
        result: List[List[CallGraphNode]] = []

        for root in list(self.nodes.values()):
            if root.name in index:
                continue
            index[root.name] = lowlink[root.name] = counter
            counter += 1
            stack.append(root)
            on_stack.add(root.name)
            work = [(root, iter(root.callees))]
            while work:
                v, callees = work[-1]
                descended = False
                for w in callees:
                    if w.name not in index:
                        index[w.name] = lowlink[w.name] = counter
                        counter += 1
                        stack.append(w)
                        on_stack.add(w.name)
                        work.append((w, iter(w.callees)))
                        descended = True
                        break
                    if w.name in on_stack:
                        lowlink[v.name] = min(lowlink[v.name], index[w.name])
                if descended:
                    continue

                work.pop()
                if work:
                    parent = work[-1][0]
                    lowlink[parent.name] = min(lowlink[parent.name], lowlink[v.name])
                if lowlink[v.name] == index[v.name]:
                    scc: List[CallGraphNode] = []
                    while True:
                        w = stack.pop()
                        on_stack.discard(w.name)
                        scc.append(w)
                        if w is v:
                            break
                    result.append(scc)
        return result

    def bottom_up_order(self) -> List[CallGraphNode]:
        """Callees before callers."""
        return [node for scc in self.strongly_connected_components() for node in scc]

    # ----- statistics -------------------------------------------------------

    def statistics(self) -> Dict[str, Any]:
        """Return a dict with summary statistics."""
        by_kind = {k: 0 for k in CallKind}
        for e in self.edges:
            by_kind[e.kind] += 1
        sccs = self.strongly_connected_components()
        return {
            "functions": sum(1 for n in self.nodes.values() if n.kind == NodeKind.FUNCTION),
            "external_functions": sum(1 for n in self.nodes.values() if n.kind == NodeKind.EXTERNAL),
            "total_nodes": len(self.nodes),
            "total_edges": len(self.edges),
            **{f"{k.value}_calls": v for k, v in by_kind.items()},
            "recursive_sccs": sum(1 for scc in sccs if len(scc) > 1),
            "self_recursive_functions": sum(1 for n in self.nodes.values() if n.is_recursive),
            "root_functions": len(self.roots),
            "leaf_functions": len(self.leaves),
        }

    def __repr__(self) -> str:
        return f"CallGraph(nodes={len(self.nodes)}, edges={len(self.edges)})"


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------

def _add_routines(cg: CallGraph, program: Program) -> None:
    for name in program.functions:
        cg.get_or_create_node(name, NodeKind.FUNCTION)
    for name in program.externals:
        cg.get_or_create_node(name, NodeKind.EXTERNAL)


def _routine_node(cg: CallGraph, program: Program, name: str) -> CallGraphNode:
    if program.has_body(name):
        return cg.get_or_create_node(name, NodeKind.FUNCTION)
    if program.signature(name) is not None:
        return cg.get_or_create_node(name, NodeKind.EXTERNAL)
    return cg.unknown


def build_static_callgraph(program: Program) -> CallGraph:
    """Conservative call graph from the IR alone."""
    cg = CallGraph()
    _add_routines(cg, program)
    taken = sorted(program.address_taken())
    for fn in program.functions.values():
        caller = cg.nodes[fn.name]
        for point, call in fn.calls():
            if call.is_direct:
                cg.add_edge(caller, _routine_node(cg, program, call.target), point, CallKind.DIRECT)
            elif isinstance(call.target, FnRef):
                cg.add_edge(caller, _routine_node(cg, program, call.target.name), point, CallKind.INDIRECT)
            elif call.candidates:
                for name in call.candidates:
                    cg.add_edge(caller, _routine_node(cg, program, name), point, CallKind.INDIRECT)
            else:
                for name in taken:
                    cg.add_edge(caller, _routine_node(cg, program, name), point, CallKind.INDIRECT)
                cg.add_edge(caller, cg.unknown, point, CallKind.UNRESOLVED)
    return cg


def build_resolved_callgraph(program: Program, edges: Iterable[CallEdge]) -> CallGraph:
    """Call graph of the calls an analysis run actually resolved."""
    cg = CallGraph()
    _add_routines(cg, program)
    for edge in sorted(edges, key=lambda e: (e.point, e.callee, e.kind.value)):
        caller = cg.get_or_create_node(edge.point.function)
        if edge.kind is CallKind.UNRESOLVED:
            callee = cg.unknown
        else:
            callee = _routine_node(cg, program, edge.callee)
        cg.add_edge(caller, callee, edge.point, edge.kind)
    return cg


# ---------------------------------------------------------------------------
# Convenience utilities
# ---------------------------------------------------------------------------

def callgraph_summary(cg: CallGraph) -> str:
    """Return a human-readable multi-line summary."""
    stats = cg.statistics()
    lines = [
        "Call Graph Summary",
        f"  Functions (defined):  {stats['functions']}",
        f"  External functions:   {stats['external_functions']}",
        f"  Total edges:          {stats['total_edges']}",
        f"  Direct calls:         {stats['direct_calls']}",
        f"  Indirect calls:       {stats['indirect_calls']}",
        f"  Summary calls:        {stats['summary_calls']}",
        f"  Unresolved calls:     {stats['unresolved_calls']}",
        f"  Recursive SCCs:       {stats['recursive_sccs']}",
        f"  Self-recursive funcs: {stats['self_recursive_functions']}",
        f"  Root functions:       {stats['root_functions']}",
        f"  Leaf functions:       {stats['leaf_functions']}",
        "",
        "Functions:",
    ]
    for node in cg.nodes.values():
        if node.kind == NodeKind.UNKNOWN:
            continue
        callee_names = sorted({e.callee.name for e in node.out_edges})
        caller_names = sorted({e.caller.name for e in node.in_edges})
        lines.append(
            f"  {node.name} ({node.kind.value}): "
            f"calls [{', '.join(callee_names)}], "
            f"called by [{', '.join(caller_names)}]"
        )
    return "\n".join(lines)


def find_recursive_functions(cg: CallGraph) -> List[Set[CallGraphNode]]:
    """Return a list of sets of mutually-recursive functions.

    Singleton sets indicate direct self-recursion.
    """
    result: List[Set[CallGraphNode]] = []
    for scc in cg.strongly_connected_components():
        if len(scc) == 1:
            if scc[0].is_recursive:
                result.append({scc[0]})
        else:
            result.append(set(scc))
    return result


def unreachable_functions(cg: CallGraph, entries: Iterable[str]) -> List[CallGraphNode]:
    """Function nodes not reachable from any of *entries*."""
    reachable: Set[str] = set()
    for name in entries:
        reachable |= cg.reachable_from(name)
    return [
        n for n in cg.nodes.values()
        if n.name not in reachable and n.kind == NodeKind.FUNCTION
    ]

"""Cross-module call graph over an arena-indexed function table.

Functions from every module in a batch are stored in one flat list; edges and
adjacency lists refer to arena indices. Enables:
  - worklist propagation in the escape-analysis fixpoint (callers of a node)
  - detection of calls into functions outside the batch
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Iterable

from hydra.analyzer.ir import iter_calls
from hydra.analyzer.model import Function, FunctionId, Module


@dataclass
class CallEdge:
    """A directed edge in the call graph."""
    caller: int
    callee: int
    cross_module: bool = False


@dataclass
class CallGraph:
    """Arena of functions plus directed call edges."""
    functions: list[Function] = field(default_factory=list)
    index: dict[FunctionId, int] = field(default_factory=dict)
    edges: list[CallEdge] = field(default_factory=list)
    # Callees referenced by some body but absent from the batch
    external: dict[FunctionId, int] = field(default_factory=dict)
    _outgoing: dict[int, list[int]] = field(default_factory=lambda: defaultdict(list))
    _incoming: dict[int, list[int]] = field(default_factory=lambda: defaultdict(list))

    def add_function(self, func: Function) -> int:
        idx = self.index.get(func.id)
        if idx is not None:
            return idx
        idx = len(self.functions)
        self.functions.append(func)
        self.index[func.id] = idx
        return idx

    def add_edge(self, caller: int, callee: int) -> None:
        if callee in self._outgoing[caller]:
            return
        cross = self.functions[caller].module_id != self.functions[callee].module_id
        self.edges.append(CallEdge(caller, callee, cross))
        self._outgoing[caller].append(callee)
        self._incoming[callee].append(caller)

    def callers_of(self, idx: int) -> list[int]:
        return self._incoming.get(idx, [])

    def callees_of(self, idx: int) -> list[int]:
        return self._outgoing.get(idx, [])

    def is_external(self, idx: int) -> bool:
        return idx in self._external_indices

    @property
    def _external_indices(self) -> set[int]:
        return set(self.external.values())

    def __len__(self) -> int:
        return len(self.functions)

    @property
    def has_cycles(self) -> bool:
        """True if some function can reach itself through calls."""
        color = [0] * len(self.functions)  # 0 white, 1 grey, 2 black
        for root in range(len(self.functions)):
            if color[root]:
                continue
            stack: list[tuple[int, int]] = [(root, 0)]
            color[root] = 1
            while stack:
                node, child = stack[-1]
                callees = self.callees_of(node)
                if child < len(callees):
                    stack[-1] = (node, child + 1)
                    nxt = callees[child]
                    if color[nxt] == 1:
                        return True
                    if color[nxt] == 0:
                        color[nxt] = 1
                        stack.append((nxt, 0))
                else:
                    color[node] = 2
                    stack.pop()
        return False


class CallGraphBuilder:
    """Build a call graph from a batch of modules."""

    def build(self, modules: Iterable[Module]) -> CallGraph:
        graph = CallGraph()
        modules = list(modules)

        # 1. Add all function nodes
        for module in modules:
            for func in module.functions.values():
                graph.add_function(func)

        # 2. Add call edges; callees outside the batch become stub nodes
        for module in modules:
            for func in module.functions.values():
                if func.body is None:
                    continue
                caller = graph.index[func.id]
                for call in iter_calls(func.body):
                    callee = graph.index.get(call.callee)
                    if callee is None:
                        callee = self._external_stub(graph, call.callee)
                    graph.add_edge(caller, callee)
        return graph

    @staticmethod
    def _external_stub(graph: CallGraph, fid: FunctionId) -> int:
        stub = Function(module_id=fid.module_id, name=fid.name, confidence=0.0)
        idx = graph.add_function(stub)
        graph.external[fid] = idx
        return idx

"""
Dependency Graph Builder.

Scans every resource's inputs for references to other resources' outputs,
adds ordering-only `depends_on` edges, and validates the result is a DAG.
`build_graph` is a pure function: no provider or state access.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set
import heapq
import logging
from .errors import CycleError, DuplicateNodeError, UnresolvedReferenceError
from .resource import ResourceNode

logger = logging.getLogger(__name__)


@dataclass
class Graph:
    """
    A validated resource dependency graph.

    Attributes:
        nodes: Nodes in declaration order
        edges: node_id -> ids it depends on (must be applied first)
    """
    nodes: List[ResourceNode]
    edges: Dict[str, Set[str]] = field(default_factory=dict)
    node_map: Dict[str, ResourceNode] = field(default_factory=dict)
    _order: Dict[str, int] = field(default_factory=dict, repr=False)

    def __post_init__(self):
        self.node_map = {node.id: node for node in self.nodes}
        self._order = {node.id: idx for idx, node in enumerate(self.nodes)}
        for node in self.nodes:
            self.edges.setdefault(node.id, set())

    def get(self, node_id: str) -> Optional[ResourceNode]:
        return self.node_map.get(node_id)

    def dependencies(self, node_id: str) -> Set[str]:
        """Direct dependencies of a node."""
        return set(self.edges.get(node_id, ()))

    def dependents(self, node_id: str) -> Set[str]:
        """Nodes that directly depend on `node_id`."""
        return {nid for nid, deps in self.edges.items() if node_id in deps}

    def topological_order(self) -> List[ResourceNode]:
        """
        Dependencies before dependents; independent nodes keep declaration order.

        Kahn's algorithm with a heap keyed on declaration index.
        """
        in_degree = {nid: len(deps) for nid, deps in self.edges.items()}
        dependents: Dict[str, List[str]] = {nid: [] for nid in self.edges}
        for nid, deps in self.edges.items():
            for dep in deps:
                dependents[dep].append(nid)

        ready = [(self._order[nid], nid) for nid, deg in in_degree.items() if deg == 0]
        heapq.heapify(ready)
        result: List[ResourceNode] = []
        while ready:
            _, current = heapq.heappop(ready)
            result.append(self.node_map[current])
            for nid in dependents[current]:
                in_degree[nid] -= 1
                if in_degree[nid] == 0:
                    heapq.heappush(ready, (self._order[nid], nid))

        if len(result) != len(self.nodes):
            # build_graph rejects cycles, so this only triggers on hand-built graphs
            raise CycleError(_find_cycle(self.nodes, self.edges) or [])
        return result

    def levels(self) -> List[List[str]]:
        """Group nodes into levels; nodes in one level are mutually independent."""
        level_of: Dict[str, int] = {}
        levels: List[List[str]] = []
        for node in self.topological_order():
            deps = self.edges[node.id]
            level = max((level_of[d] for d in deps), default=-1) + 1
            level_of[node.id] = level
            while len(levels) <= level:
                levels.append([])
            levels[level].append(node.id)
        return levels

    def __len__(self) -> int:
        return len(self.nodes)

    def __repr__(self) -> str:
        edge_count = sum(len(d) for d in self.edges.values())
        return f"Graph(nodes={len(self.nodes)}, edges={edge_count})"


def build_graph(nodes: Iterable[ResourceNode]) -> Graph:
    """
    Build and validate the dependency graph.

    Raises:
        DuplicateNodeError: two nodes share an id
        UnresolvedReferenceError: a reference or depends_on names an undeclared node
        CycleError: the references form a cycle (the full path is reported)
    """
    nodes = list(nodes)
    ids: Set[str] = set()
    for node in nodes:
        if node.id in ids:
            raise DuplicateNodeError(node.id)
        ids.add(node.id)

    edges: Dict[str, Set[str]] = {}
    for node in nodes:
        deps: Set[str] = set()
        for ref in node.references():
            if ref.node_id == node.id:
                raise CycleError([node.id, node.id])
            if ref.node_id not in ids:
                raise UnresolvedReferenceError(node.id, ref.node_id)
            deps.add(ref.node_id)
        for dep in node.depends_on:
            if dep == node.id:
                raise CycleError([node.id, node.id])
            if dep not in ids:
                raise UnresolvedReferenceError(node.id, dep)
            deps.add(dep)
        edges[node.id] = deps

    cycle = _find_cycle(nodes, edges)
    if cycle:
        raise CycleError(cycle)

    graph = Graph(nodes=nodes, edges=edges)
    logger.debug(f"Built {graph!r}")
    return graph


def _find_cycle(nodes: List[ResourceNode], edges: Dict[str, Set[str]]) -> Optional[List[str]]:
    """Depth-first search for a back-edge; returns the cycle path or None."""
    WHITE, GREY, BLACK = 0, 1, 2
    color = {node.id: WHITE for node in nodes}
    order = {node.id: idx for idx, node in enumerate(nodes)}

    for root in nodes:
        if color[root.id] != WHITE:
            continue
        path: List[str] = [root.id]
        color[root.id] = GREY
        stack = [iter(sorted(edges.get(root.id, ()), key=order.get))]
        while stack:
            child = next(stack[-1], None)
            if child is None:
                stack.pop()
                color[path.pop()] = BLACK
                continue
            if color[child] == GREY:
                start = path.index(child)
                return path[start:] + [child]
            if color[child] == WHITE:
                color[child] = GREY
                path.append(child)
                stack.append(iter(sorted(edges.get(child, ()), key=order.get)))
    return None

"""Dependency resolution and graph building for eltflow."""

import heapq
import logging
from collections import defaultdict, deque
from typing import Dict, Iterable, List, Optional, Set, Union

from eltflow.compiler import Compiler
from eltflow.exceptions import CycleError, DuplicateNameError, UnresolvedReferenceError
from eltflow.models import Model, Source

logger = logging.getLogger(__name__)

Node = Union[Model, Source]


class DependencyGraph:
    """Represents the dependency graph of models and sources."""

    def __init__(self):
        """Initialize empty dependency graph."""
        self._nodes: Dict[str, Node] = {}
        # Maps node name -> set of node names it depends on
        self._dependencies: Dict[str, Set[str]] = defaultdict(set)
        # Maps node name -> set of node names that depend on it
        self._dependents: Dict[str, Set[str]] = defaultdict(set)

    def add_node(self, node: Node, dependencies: Iterable[str] = ()):
        """Add a node and its dependencies to the graph.

        Args:
            node: Model or Source to add
            dependencies: Names of the nodes this node depends on
        """
        name = node.node_name
        self._nodes[name] = node
        self._dependencies[name] = set(dependencies)

        for dep in self._dependencies[name]:
            self._dependents[dep].add(name)

    def __contains__(self, name: str) -> bool:
        return name in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def get_node(self, name: str) -> Node:
        return self._nodes[name]

    def get_dependencies(self, name: str) -> Set[str]:
        """Get direct dependencies of a node."""
        return set(self._dependencies.get(name, set()))

    def get_dependents(self, name: str) -> Set[str]:
        """Get nodes that depend directly on this node."""
        return set(self._dependents.get(name, set()))

    def get_all_nodes(self) -> Set[str]:
        return set(self._nodes)

    def models(self) -> List[Model]:
        return [n for _, n in sorted(self._nodes.items()) if isinstance(n, Model)]

    def sources(self) -> List[Source]:
        return [n for _, n in sorted(self._nodes.items()) if isinstance(n, Source)]

    def upstream(self, name: str) -> Set[str]:
        """All nodes ``name`` transitively depends on."""
        return self._walk(name, self._dependencies)

    def downstream(self, name: str) -> Set[str]:
        """All nodes that transitively depend on ``name``."""
        return self._walk(name, self._dependents)

    def _walk(self, start: str, edges: Dict[str, Set[str]]) -> Set[str]:
        seen: Set[str] = set()
        queue = deque(edges.get(start, ()))
        while queue:
            node = queue.popleft()
            if node in seen or node not in self._nodes:
                continue
            seen.add(node)
            queue.extend(edges.get(node, ()))
        return seen

    def detect_cycles(self) -> List[List[str]]:
        """Detect cycles in the dependency graph.

        Returns:
            List of cycles, each a list of node names with the first node repeated at the end
        """
        cycles = []
        visited = set()
        rec_stack = set()

        def dfs(node: str, path: List[str]) -> None:
            if node in rec_stack:
                cycle_start = path.index(node)
                cycles.append(path[cycle_start:] + [node])
                return

            if node in visited:
                return

            visited.add(node)
            rec_stack.add(node)
            path.append(node)

            for dep in sorted(self._dependencies.get(node, set())):
                if dep in self._nodes:
                    dfs(dep, path)

            rec_stack.remove(node)
            path.pop()

        for name in sorted(self._nodes):
            if name not in visited:
                dfs(name, [])

        return cycles

    def topological_sort(self) -> List[str]:
        """Order nodes so every node comes after all of its dependencies.

        Ties are broken alphabetically so the order is stable between runs.

        Raises:
            CycleError: If cycles are detected
        """
        cycles = self.detect_cycles()
        if cycles:
            raise CycleError(cycles[0])

        in_degree = {name: 0 for name in self._nodes}
        for name in self._nodes:
            for dep in self._dependencies.get(name, set()):
                if dep in self._nodes:
                    in_degree[name] += 1

        heap = [name for name, degree in in_degree.items() if degree == 0]
        heapq.heapify(heap)
        result = []

        while heap:
            node = heapq.heappop(heap)
            result.append(node)

            for dependent in self._dependents.get(node, set()):
                if dependent in self._nodes:
                    in_degree[dependent] -= 1
                    if in_degree[dependent] == 0:
                        heapq.heappush(heap, dependent)

        return result

    def subgraph(self, names: Iterable[str]) -> 'DependencyGraph':
        """Graph restricted to ``names``; edges to nodes outside it are dropped."""
        keep = set(names)
        sub = DependencyGraph()
        for name in sorted(keep):
            deps = {d for d in self._dependencies.get(name, set()) if d in keep}
            sub.add_node(self._nodes[name], deps)
        return sub

    def select(self, selected: Iterable[str]) -> 'DependencyGraph':
        """Selected nodes plus everything they depend on."""
        to_execute = set()
        for name in selected:
            if name in self._nodes:
                to_execute.add(name)
                to_execute |= self.upstream(name)
        return self.subgraph(to_execute)

    def get_execution_order(self, select: Optional[Set[str]] = None) -> List[str]:
        """Get execution order for selected nodes (including dependencies).

        Args:
            select: Optional set of node names to execute. If None, all nodes.
        """
        if select is None:
            return self.topological_sort()
        return self.select(select).topological_sort()


def load(sources: Iterable[Source], models: Iterable[Model], compiler: Optional[Compiler] = None) -> DependencyGraph:
    """Build a validated dependency graph from declarations.

    Args:
        sources: Declared sources
        models: Declared models; disabled models are left out of the graph
        compiler: Compiler used to discover references, default has no macros or vars

    Returns:
        An acyclic DependencyGraph

    Raises:
        DuplicateNameError: If two declarations share a name
        UnresolvedReferenceError: If a model references an undeclared model or source
        CycleError: If the references form a cycle
        ParseError: If a template cannot be rendered
    """
    compiler = compiler or Compiler()
    sources = list(sources)
    models = list(models)

    seen: Dict[str, Optional[str]] = {}
    for decl in [*sources, *models]:
        name = decl.node_name
        if name in seen:
            locations = [loc for loc in (seen[name], decl.path) if loc]
            raise DuplicateNameError(name, locations)
        seen[name] = decl.path

    enabled = [m for m in models if m.enabled]
    model_names = {m.name for m in enabled}
    source_names = {s.node_name for s in sources}

    graph = DependencyGraph()
    for src in sources:
        graph.add_node(src)

    for model in enabled:
        refs, srcs = compiler.extract_references(model.sql, model.name)
        for ref_name in sorted(refs):
            if ref_name not in model_names:
                raise UnresolvedReferenceError(ref_name, model.name)
        for src_name in sorted(srcs):
            if src_name not in source_names:
                raise UnresolvedReferenceError(src_name, model.name)
        graph.add_node(model, refs | srcs)

    cycles = graph.detect_cycles()
    if cycles:
        raise CycleError(cycles[0])

    logger.debug(f'Loaded graph with {len(enabled)} models and {len(sources)} sources')
    return graph

# kestrel/assets/graph.py
from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass
from graphlib import TopologicalSorter
from typing import Dict, Iterable, List, Optional, Set

from kestrel.assets.errors import CyclicDependencyError
from kestrel.assets.handle import AssetId
from kestrel.assets.path import AssetPath


@dataclass(frozen=True, slots=True)
class DependencyEdge:
    dependent: AssetId
    dependency: AssetId
    path: Optional[AssetPath] = None
    required: bool = True


class DependencyGraph:
    """
    Directed graph of dependent -> dependency between AssetIds.

    Forward edges decide when a dependent may finish loading, reverse edges
    decide what to revisit on reload. Edges that would close a cycle are
    rejected with CyclicDependencyError.
    """

    def __init__(self) -> None:
        self._forward: Dict[AssetId, Dict[AssetId, DependencyEdge]] = {}
        self._reverse: Dict[AssetId, Set[AssetId]] = {}
        self._lock = threading.Lock()

    def add_edge(
        self,
        dependent: AssetId,
        dependency: AssetId,
        path: Optional[AssetPath] = None,
        required: bool = True,
    ) -> DependencyEdge:
        edge = DependencyEdge(dependent, dependency, path, required)
        with self._lock:
            self._check_cycle(edge)
            self._link(edge)
        return edge

    def set_dependencies(
        self, dependent: AssetId, edges: Iterable[DependencyEdge]
    ) -> None:
        """Replace every outgoing edge of ``dependent``; all or nothing."""
        edges = list(edges)
        for edge in edges:
            if edge.dependent != dependent:
                raise ValueError(f"Edge {edge} does not start at {dependent}")

        with self._lock:
            previous = list(self._forward.get(dependent, {}).values())
            self._unlink_outgoing(dependent)
            try:
                for edge in edges:
                    self._check_cycle(edge)
                    self._link(edge)
            except CyclicDependencyError:
                self._unlink_outgoing(dependent)
                for edge in previous:
                    self._link(edge)
                raise

    def dependencies_of(self, asset_id: AssetId) -> Set[AssetId]:
        with self._lock:
            return set(self._forward.get(asset_id, {}))

    def edges_of(self, asset_id: AssetId) -> List[DependencyEdge]:
        with self._lock:
            return list(self._forward.get(asset_id, {}).values())

    def dependents_of(self, asset_id: AssetId) -> Set[AssetId]:
        with self._lock:
            return set(self._reverse.get(asset_id, ()))

    def transitive_dependents(self, roots: Iterable[AssetId]) -> Set[AssetId]:
        """Everything that depends on ``roots``, directly or not."""
        with self._lock:
            visited: Set[AssetId] = set()
            pending = deque(roots)
            while pending:
                node = pending.popleft()
                for dependent in self._reverse.get(node, ()):
                    if dependent not in visited:
                        visited.add(dependent)
                        pending.append(dependent)
            return visited

    def reload_order(self, nodes: Iterable[AssetId]) -> List[AssetId]:
        """Order ``nodes`` so every dependency comes before its dependents."""
        nodes = set(nodes)
        sorter: TopologicalSorter = TopologicalSorter()
        with self._lock:
            for node in nodes:
                deps = [d for d in self._forward.get(node, {}) if d in nodes]
                sorter.add(node, *deps)
        return list(sorter.static_order())

    def remove_node(self, asset_id: AssetId) -> None:
        with self._lock:
            self._unlink_outgoing(asset_id)
            for dependent in self._reverse.pop(asset_id, set()):
                outgoing = self._forward.get(dependent)
                if outgoing is not None:
                    outgoing.pop(asset_id, None)
                    if not outgoing:
                        del self._forward[dependent]

    def __contains__(self, asset_id: object) -> bool:
        with self._lock:
            return asset_id in self._forward or asset_id in self._reverse

    def __len__(self) -> int:
        with self._lock:
            return sum(len(edges) for edges in self._forward.values())

    # Callers hold self._lock for everything below.

    def _link(self, edge: DependencyEdge) -> None:
        self._forward.setdefault(edge.dependent, {})[edge.dependency] = edge
        self._reverse.setdefault(edge.dependency, set()).add(edge.dependent)

    def _unlink_outgoing(self, dependent: AssetId) -> None:
        for dependency in self._forward.pop(dependent, {}):
            incoming = self._reverse.get(dependency)
            if incoming is not None:
                incoming.discard(dependent)
                if not incoming:
                    del self._reverse[dependency]

    def _check_cycle(self, edge: DependencyEdge) -> None:
        if edge.dependent == edge.dependency:
            raise CyclicDependencyError(
                f"{edge.dependent} depends on itself",
                cycle=(edge.dependent, edge.dependent),
                path=edge.path,
                asset_id=edge.dependent,
            )

        trail = self._find_path(edge.dependency, edge.dependent)
        if trail is not None:
            cycle = [edge.dependent, *trail]
            raise CyclicDependencyError(
                "Dependency cycle: " + " -> ".join(str(n) for n in cycle),
                cycle=cycle,
                path=edge.path,
                asset_id=edge.dependent,
            )

    def _find_path(self, start: AssetId, goal: AssetId) -> Optional[List[AssetId]]:
        parents: Dict[AssetId, Optional[AssetId]] = {start: None}
        pending = deque([start])
        while pending:
            node = pending.popleft()
            if node == goal:
                trail: List[AssetId] = []
                current: Optional[AssetId] = node
                while current is not None:
                    trail.append(current)
                    current = parents[current]
                return list(reversed(trail))
            for nxt in self._forward.get(node, {}):
                if nxt not in parents:
                    parents[nxt] = node
                    pending.append(nxt)
        return None

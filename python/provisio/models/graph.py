"""
provisio/models/graph.py

ResourceGraph: declared resources stored in an arena (a list, in declaration
order) with an address index and dependency edges held as arena indices rather
than live object references.
"""

from __future__ import annotations

import heapq
from typing import Dict, Iterable, List, Optional

from provisio.errors import CycleError, DuplicateNameError, UnresolvedReferenceError
from provisio.models.resource import Resource


class ResourceGraph:
    """Directed acyclic graph of resources; an edge a -> b means a depends on b."""

    def __init__(self, resources: Iterable[Resource] = ()) -> None:
        self.nodes: List[Resource] = []
        self.index: Dict[str, int] = {}
        self.deps: List[List[int]] = []
        for resource in resources:
            self.add(resource)
        self.link()

    def add(self, resource: Resource) -> None:
        """Append a resource to the arena. Raises DuplicateNameError on a clash."""
        existing = self.index.get(resource.address)
        if existing is not None:
            first = self.nodes[existing]
            where = f"{first.source}:{first.line}" if first.source else "elsewhere"
            raise DuplicateNameError(
                f"declared twice (first declared at {where})",
                source=resource.source,
                line=resource.line,
                address=resource.address,
            )
        resource.index = len(self.nodes)
        self.index[resource.address] = resource.index
        self.nodes.append(resource)
        self.deps.append([])

    def link(self) -> None:
        """(Re)build dependency edges from each resource's references."""
        self.deps = []
        for node in self.nodes:
            edges: List[int] = []
            for address in node.references():
                target = self.index.get(address)
                if target is None:
                    raise UnresolvedReferenceError(
                        f"reference to undeclared resource '{address}'",
                        source=node.source,
                        line=node.line,
                        address=node.address,
                    )
                edges.append(target)
            self.deps.append(edges)

    def __len__(self) -> int:
        return len(self.nodes)

    def __contains__(self, address: object) -> bool:
        return address in self.index

    def get(self, address: str) -> Resource:
        return self.nodes[self.index[address]]

    def find(self, address: str) -> Optional[Resource]:
        idx = self.index.get(address)
        return None if idx is None else self.nodes[idx]

    def dependencies(self, address: str) -> List[str]:
        return [self.nodes[i].address for i in self.deps[self.index[address]]]

    def dependents(self, address: str) -> List[str]:
        target = self.index[address]
        return [
            self.nodes[i].address for i, edges in enumerate(self.deps) if target in edges
        ]

    def topological_order(self) -> List[Resource]:
        """Order resources so each appears after everything it references.

        Kahn's algorithm; among ready nodes the earliest declared goes first.

        Raises:
            CycleError: If the graph contains a cycle.
        """
        remaining = [len(set(edges)) for edges in self.deps]
        dependents: List[List[int]] = [[] for _ in self.nodes]
        for idx, edges in enumerate(self.deps):
            for target in set(edges):
                dependents[target].append(idx)

        ready = [idx for idx, count in enumerate(remaining) if count == 0]
        heapq.heapify(ready)
        order: List[Resource] = []
        while ready:
            idx = heapq.heappop(ready)
            order.append(self.nodes[idx])
            for dependent in dependents[idx]:
                remaining[dependent] -= 1
                if remaining[dependent] == 0:
                    heapq.heappush(ready, dependent)

        if len(order) != len(self.nodes):
            raise CycleError(self._find_cycle())
        return order

    def _find_cycle(self) -> List[str]:
        """Return one concrete cycle as a list of addresses (first repeated last)."""
        WHITE, GREY, BLACK = 0, 1, 2
        color = [WHITE] * len(self.nodes)
        stack: List[int] = []

        def visit(idx: int) -> Optional[List[int]]:
            color[idx] = GREY
            stack.append(idx)
            for target in self.deps[idx]:
                if color[target] == GREY:
                    return stack[stack.index(target) :] + [target]
                if color[target] == WHITE:
                    found = visit(target)
                    if found:
                        return found
            stack.pop()
            color[idx] = BLACK
            return None

        for start in range(len(self.nodes)):
            if color[start] == WHITE:
                found = visit(start)
                if found:
                    return [self.nodes[i].address for i in found]
        return []

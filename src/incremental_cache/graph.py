# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Dependency graph with forward and reverse adjacency.

An edge dependent -> dependency means the dependent's cached result is only
valid while the dependency is up to date.

Representation:
- Items live in a dense arena indexed by integer handles
- Adjacency is stored as handle lists (forward: dependencies, reverse: dependents)
- A single string id -> handle table is kept at the boundary

Handles of removed items are recycled through a free list, so the arena does
not grow without bound over long sessions.

Dependency extraction (discovering edges from content) is not part of the
graph; see incremental_cache.extractors.
"""

import logging
from typing import Dict, Iterable, Iterator, List, Optional, Set, Tuple

from incremental_cache.models import validate_item_id

logger = logging.getLogger(__name__)


class DependencyGraph:
    """Directed "depends-on" graph between item identifiers.

    NOT thread-safe: owned by exactly one scheduler for the duration of a run.

    Usage:
        graph = DependencyGraph()
        graph.add_edge("page.md", "logo.png")
        graph.dependents_of("logo.png")  # ["page.md"]
        graph.topological_order(["page.md", "logo.png"])  # ["logo.png", "page.md"]
    """

    def __init__(self) -> None:
        """Initialize empty graph."""
        self._ids: List[Optional[str]] = []  # handle -> id (None for freed slots)
        self._handles: Dict[str, int] = {}  # id -> handle
        self._forward: List[List[int]] = []  # handle -> dependency handles
        self._reverse: List[List[int]] = []  # handle -> dependent handles
        self._free: List[int] = []

    # ------------------------------------------------------------------
    # Arena management
    # ------------------------------------------------------------------

    def _handle(self, item_id: str) -> int:
        handle = self._handles.get(item_id)
        if handle is not None:
            return handle

        validate_item_id(item_id)
        if self._free:
            handle = self._free.pop()
            self._ids[handle] = item_id
        else:
            handle = len(self._ids)
            self._ids.append(item_id)
            self._forward.append([])
            self._reverse.append([])
        self._handles[item_id] = handle
        return handle

    def _release_if_isolated(self, handle: int) -> None:
        if self._forward[handle] or self._reverse[handle]:
            return
        item_id = self._ids[handle]
        if item_id is None:
            return
        del self._handles[item_id]
        self._ids[handle] = None
        self._free.append(handle)

    def _id(self, handle: int) -> str:
        item_id = self._ids[handle]
        assert item_id is not None
        return item_id

    def __contains__(self, item_id: object) -> bool:
        return item_id in self._handles

    def __len__(self) -> int:
        return len(self._handles)

    # ------------------------------------------------------------------
    # Edges
    # ------------------------------------------------------------------

    def add_edge(self, dependent: str, dependency: str) -> None:
        """Add a dependent -> dependency edge. Idempotent.

        Raises:
            ValueError: If either id is invalid or the edge is a self-loop.
        """
        if dependent == dependency:
            raise ValueError(f"Item cannot depend on itself: {dependent}")

        src = self._handle(dependent)
        dst = self._handle(dependency)
        if dst in self._forward[src]:
            return
        self._forward[src].append(dst)
        self._reverse[dst].append(src)

    def remove_edge(self, dependent: str, dependency: str) -> None:
        """Remove a single edge if present."""
        src = self._handles.get(dependent)
        dst = self._handles.get(dependency)
        if src is None or dst is None or dst not in self._forward[src]:
            return
        self._forward[src].remove(dst)
        self._reverse[dst].remove(src)
        self._release_if_isolated(src)
        self._release_if_isolated(dst)

    def set_dependencies(self, dependent: str, dependencies: Iterable[str]) -> None:
        """Replace the full dependency set of an item.

        Self-references are dropped; order of first appearance is kept.
        """
        src = self._handle(dependent)
        old = self._forward[src]
        self._forward[src] = []
        for dst in old:
            self._reverse[dst].remove(src)

        for dependency in dependencies:
            if dependency == dependent:
                continue
            dst = self._handle(dependency)
            if dst in self._forward[src]:
                continue
            self._forward[src].append(dst)
            self._reverse[dst].append(src)

        for dst in old:
            self._release_if_isolated(dst)
        self._release_if_isolated(src)

    def remove_item(self, item_id: str) -> None:
        """Remove an item and every edge touching it."""
        handle = self._handles.get(item_id)
        if handle is None:
            return

        neighbours = set(self._forward[handle]) | set(self._reverse[handle])
        for dst in self._forward[handle]:
            self._reverse[dst].remove(handle)
        for src in self._reverse[handle]:
            self._forward[src].remove(handle)
        self._forward[handle] = []
        self._reverse[handle] = []
        self._release_if_isolated(handle)
        for other in neighbours:
            self._release_if_isolated(other)

    def clear(self) -> None:
        """Remove all items and edges."""
        self._ids.clear()
        self._handles.clear()
        self._forward.clear()
        self._reverse.clear()
        self._free.clear()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def dependencies_of(self, item_id: str) -> List[str]:
        """Direct dependencies of an item, in insertion order."""
        handle = self._handles.get(item_id)
        if handle is None:
            return []
        return [self._id(dst) for dst in self._forward[handle]]

    def dependents_of(self, item_id: str) -> List[str]:
        """Items that directly depend on the given item."""
        handle = self._handles.get(item_id)
        if handle is None:
            return []
        return [self._id(src) for src in self._reverse[handle]]

    def edges(self) -> Iterator[Tuple[str, str]]:
        """Iterate over all (dependent, dependency) edges."""
        for handle, deps in enumerate(self._forward):
            if self._ids[handle] is None:
                continue
            for dst in deps:
                yield self._id(handle), self._id(dst)

    def copy_dependencies(self) -> Dict[str, List[str]]:
        """Snapshot of the forward adjacency, for persistence.

        Returns:
            Dict mapping item id -> list of dependency ids (items with no
            dependencies are omitted).
        """
        return {
            self._id(handle): [self._id(dst) for dst in deps]
            for handle, deps in enumerate(self._forward)
            if deps and self._ids[handle] is not None
        }

    def load_dependencies(self, dependencies: Dict[str, List[str]]) -> None:
        """Rebuild the graph from a persisted forward adjacency."""
        self.clear()
        for dependent, deps in dependencies.items():
            self.set_dependencies(dependent, deps)

    def transitive_dependents(self, item_id: str) -> Set[str]:
        """All items that depend on item_id directly or transitively."""
        return self._reachable(item_id, self._reverse)

    def transitive_dependencies(self, item_id: str) -> Set[str]:
        """All items item_id depends on directly or transitively."""
        return self._reachable(item_id, self._forward)

    def _reachable(self, item_id: str, adjacency: List[List[int]]) -> Set[str]:
        start = self._handles.get(item_id)
        if start is None:
            return set()

        visited: Set[int] = {start}
        queue: List[int] = [start]
        while queue:
            current = queue.pop()
            for nxt in adjacency[current]:
                if nxt not in visited:
                    visited.add(nxt)
                    queue.append(nxt)

        visited.discard(start)
        return {self._id(handle) for handle in visited}

    def topological_order(
        self,
        ids: Iterable[str],
        cycles: Optional[List[Tuple[str, str]]] = None,
    ) -> List[str]:
        """Order ids so each appears after every in-set item it depends on.

        Dependencies are followed transitively, including through items
        outside the set: with a -> m -> b and only a and b given, b comes
        first. Out-of-set items are traversed but never emitted.

        Single explicit depth-first traversal with one shared visited set for
        the whole call. Roots are taken in input order and dependencies in
        insertion order, so the result is deterministic.

        When a dependency is reached while it is still on the traversal stack
        (a cycle), the edge is not followed: every participant is visited
        exactly once and the call always terminates, but the relative order of
        genuinely cyclic items is not a valid topological order. Each ignored
        edge is logged as a warning and appended to ``cycles`` when given; edges
        closing a cycle among out-of-set items only are skipped silently.

        Args:
            ids: Items to order. Duplicates are ignored.
            cycles: Optional list collecting ignored (dependent, dependency) edges.

        Returns:
            Ordered list containing each distinct id exactly once.
        """
        batch = list(dict.fromkeys(ids))
        in_batch: Set[int] = {self._handles[i] for i in batch if i in self._handles}

        order: List[str] = []
        visited: Set[int] = set()
        on_stack: Set[int] = set()

        for root in batch:
            root_handle = self._handles.get(root)
            if root_handle is None:
                # No edges at all: nothing to order against
                order.append(root)
                continue
            if root_handle in visited:
                continue

            visited.add(root_handle)
            on_stack.add(root_handle)
            stack: List[Tuple[int, Iterator[int]]] = [
                (root_handle, iter(self._forward[root_handle]))
            ]

            while stack:
                current, deps = stack[-1]
                descended = False
                for dep in deps:
                    if dep in on_stack:
                        if dep not in in_batch:
                            continue
                        edge = (self._id(current), self._id(dep))
                        logger.warning(
                            f"Dependency cycle detected, ignoring edge {edge[0]} -> {edge[1]} "
                            "for ordering"
                        )
                        if cycles is not None:
                            cycles.append(edge)
                        continue
                    if dep in visited:
                        continue
                    visited.add(dep)
                    on_stack.add(dep)
                    stack.append((dep, iter(self._forward[dep])))
                    descended = True
                    break

                if not descended:
                    stack.pop()
                    on_stack.discard(current)
                    if current in in_batch:
                        order.append(self._id(current))

        return order

    def validate_graph(self) -> Tuple[bool, List[str]]:
        """Validate forward/reverse index consistency.

        Returns:
            Tuple of (is_valid, error_messages).
        """
        errors: List[str] = []

        for handle, deps in enumerate(self._forward):
            item_id = self._ids[handle]
            if item_id is None:
                if deps or self._reverse[handle]:
                    errors.append(f"Freed handle {handle} still has edges")
                continue
            if self._handles.get(item_id) != handle:
                errors.append(f"Index inconsistency: {item_id} not mapped to handle {handle}")
            if len(set(deps)) != len(deps):
                errors.append(f"Duplicate dependency edges for {item_id}")
            for dst in deps:
                if handle not in self._reverse[dst]:
                    errors.append(
                        f"Index inconsistency: {item_id} -> {self._ids[dst]} "
                        "not in dependents index"
                    )
            for src in self._reverse[handle]:
                if handle not in self._forward[src]:
                    errors.append(
                        f"Index inconsistency: {item_id} <- {self._ids[src]} "
                        "not in dependencies index"
                    )

        return len(errors) == 0, errors

# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Invalidation tracking for the incremental scheduler.

Decides, per item, whether its cached result can be reused, and cascades
staleness from freshly computed items to their dependents.

Staleness check order for one item:
1. Fingerprint absent -> deleted
2. No CacheEntry -> new
3. Content hash differs -> content-changed
4. Metadata hash differs -> metadata-changed
5. Already marked dirty in this pass, or carries a persisted staleness mark
   -> that reason
6. Any tracked recorded dependency needs processing -> dependency-changed:<id>
7. Otherwise up-to-date

Verdicts are memoized per scheduling pass. The dependency walk is an
explicit stack, so deep chains cannot hit the recursion limit, and a
dependency that is still being evaluated (a cycle) is skipped rather than
re-entered.
"""

import logging
from collections import deque
from typing import Dict, Iterable, Iterator, List, Optional, Set

from incremental_cache.fingerprint import Fingerprinter
from incremental_cache.graph import DependencyGraph
from incremental_cache.models import StalenessCheck, StalenessReason
from incremental_cache.storage import CacheStore

logger = logging.getLogger(__name__)


class _Frame:
    __slots__ = ("item_id", "own", "deps", "pending")

    def __init__(self, item_id: str, own: StalenessCheck, deps: Iterator[str]) -> None:
        self.item_id = item_id
        self.own = own
        self.deps = deps
        self.pending: Optional[str] = None  # Dependency currently being evaluated


class InvalidationTracker:
    """Per-pass staleness decisions backed by a CacheStore and Fingerprinter.

    Call begin_pass() once per scheduling pass; it resets the memo and the
    dirty set while keeping persisted staleness marks in the store.

    Usage:
        tracker = InvalidationTracker(store, graph, fingerprinter)
        tracker.begin_pass(["a", "b"])
        check = tracker.needs_processing("a")
        if check.needed:
            ...
            tracker.cascade("a")
    """

    def __init__(
        self,
        store: CacheStore,
        graph: DependencyGraph,
        fingerprinter: Fingerprinter,
    ) -> None:
        self.store = store
        self.graph = graph
        self.fingerprinter = fingerprinter

        self._memo: Dict[str, StalenessCheck] = {}
        self._dirty: Dict[str, str] = {}  # id -> reason
        self._batch: Set[str] = set()

    def begin_pass(self, batch_ids: Iterable[str]) -> None:
        """Reset per-pass state for a new scheduling pass."""
        self._memo = {}
        self._dirty = {}
        self._batch = set(batch_ids)

    @property
    def dirty_set(self) -> Dict[str, str]:
        """Items marked dirty in the current pass, with their reason codes."""
        return dict(self._dirty)

    def mark_dirty(self, item_id: str, reason: str) -> None:
        """Mark an item dirty for the rest of the pass.

        The first reason recorded for an item wins.
        """
        self._dirty.setdefault(item_id, reason)
        self._memo.pop(item_id, None)

    def forget(self, item_id: str) -> None:
        """Drop the memoized verdict for an item."""
        self._memo.pop(item_id, None)

    def tracked_dependencies(self, item_id: str) -> List[str]:
        """Recorded dependencies that participate in staleness checks.

        A dependency is tracked if it has a CacheEntry or is named in the
        current batch; anything else is external and ignored.
        """
        entry = self.store.get(item_id)
        if entry is None:
            return []
        return [
            dep
            for dep in entry.dependencies
            if dep != item_id and (dep in self._batch or self.store.get(dep) is not None)
        ]

    def _check_own(self, item_id: str) -> StalenessCheck:
        """Staleness of the item itself, ignoring its dependencies."""
        current = self.fingerprinter.fingerprint(item_id)
        if current is None:
            return StalenessCheck(True, StalenessReason.DELETED, None)

        entry = self.store.get(item_id)
        if entry is None:
            return StalenessCheck(True, StalenessReason.NEW, current)
        if entry.fingerprint.content_hash != current.content_hash:
            return StalenessCheck(True, StalenessReason.CONTENT_CHANGED, current)
        if entry.fingerprint.meta_hash != current.meta_hash:
            return StalenessCheck(True, StalenessReason.METADATA_CHANGED, current)

        reason = self._dirty.get(item_id) or self.store.stale_reason(item_id)
        if reason is not None:
            return StalenessCheck(True, reason, current)

        return StalenessCheck(False, StalenessReason.UP_TO_DATE, current)

    def needs_processing(self, item_id: str) -> StalenessCheck:
        """Decide whether an item must be recomputed.

        Args:
            item_id: Item identifier.

        Returns:
            StalenessCheck with the verdict, reason code and the current
            fingerprint (None when the item is absent).
        """
        cached = self._memo.get(item_id)
        if cached is not None:
            return cached

        in_progress: Set[str] = set()
        stack: List[_Frame] = []

        def push(current_id: str) -> None:
            in_progress.add(current_id)
            own = self._check_own(current_id)
            deps: Iterator[str] = (
                iter(()) if own.needed else iter(self.tracked_dependencies(current_id))
            )
            stack.append(_Frame(current_id, own, deps))

        def finish(frame: _Frame, check: StalenessCheck) -> None:
            stack.pop()
            in_progress.discard(frame.item_id)
            self._memo[frame.item_id] = check

        push(item_id)
        while stack:
            frame = stack[-1]

            if frame.own.needed:
                finish(frame, frame.own)
                continue

            # Resume after a dependency finished evaluating
            if frame.pending is not None:
                dep_check = self._memo[frame.pending]
                if dep_check.needed:
                    finish(
                        frame,
                        StalenessCheck(
                            True,
                            StalenessReason.dependency_changed(frame.pending),
                            frame.own.fingerprint,
                        ),
                    )
                    continue
                frame.pending = None

            verdict: Optional[StalenessCheck] = None
            descended = False
            for dep in frame.deps:
                dep_check = self._memo.get(dep)
                if dep_check is not None:
                    if dep_check.needed:
                        verdict = StalenessCheck(
                            True,
                            StalenessReason.dependency_changed(dep),
                            frame.own.fingerprint,
                        )
                        break
                    continue
                if dep in in_progress:
                    # Cycle: evaluated further up the stack
                    continue
                frame.pending = dep
                push(dep)
                descended = True
                break

            if descended:
                continue
            finish(frame, verdict or frame.own)

        result = self._memo[item_id]
        logger.debug(f"Staleness of {item_id}: needed={result.needed} reason={result.reason}")
        return result

    def cascade(self, item_id: str) -> List[str]:
        """Mark every transitive dependent of item_id dirty.

        Each dependent gets reason dependency-changed:<direct parent> both in
        the pass-local dirty set and as a persisted mark in the store, so a
        dependent outside the current batch is reprocessed on a later pass.
        Items already dirty in this pass are not revisited.

        Returns:
            Ids newly marked dirty, in breadth-first order.
        """
        marked: List[str] = []
        queue = deque([item_id])
        seen: Set[str] = {item_id}

        while queue:
            current = queue.popleft()
            for dependent in self.graph.dependents_of(current):
                if dependent in seen or dependent in self._dirty:
                    continue
                seen.add(dependent)
                reason = StalenessReason.dependency_changed(current)
                self._dirty[dependent] = reason
                self._memo.pop(dependent, None)
                self.store.mark_stale(dependent, reason)
                marked.append(dependent)
                queue.append(dependent)

        if marked:
            logger.debug(f"Cascade from {item_id} marked {len(marked)} dependents dirty")
        return marked

# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Incremental scheduler: orchestrates one batch of items.

Algorithm for process(ids, compute_step, options):
1. Order the batch topologically (dependencies before dependents)
2. For each id in order, ask the InvalidationTracker whether it is stale
   - Up to date: report the stored result as a cache hit
   - Deleted: cascade to dependents, drop its entry and edges
   - Otherwise: read content, invoke compute_step, store a new CacheEntry,
     replace its dependency edges and cascade to its dependents
3. Flush the store every flush_interval recomputations and once at the end

Guarantees:
- compute_step runs at most once per id per process() call
- An id is never computed before its in-batch dependencies
- A failed compute never touches the item's last-good CacheEntry
"""

import logging
import time
from typing import Any, Callable, Iterable, List, Optional

from incremental_cache.fingerprint import Fingerprinter
from incremental_cache.graph import DependencyGraph
from incremental_cache.invalidation import InvalidationTracker
from incremental_cache.metrics import CacheMetrics
from incremental_cache.models import (
    BatchResult,
    CacheEntry,
    ItemError,
    ItemOutcome,
    ProcessOptions,
    StalenessCheck,
    StalenessReason,
    validate_item_id,
)
from incremental_cache.storage import CacheStore, pattern_predicate

logger = logging.getLogger(__name__)

# (item_id, content) -> result
ComputeStep = Callable[[str, Any], Any]

# (item_id, content) -> dependency ids
DependencyResolver = Callable[[str, Any], Iterable[str]]

DEFAULT_FLUSH_INTERVAL = 10


class IncrementalScheduler:
    """Decides what to recompute for a batch and records the outcome.

    Owns one DependencyGraph and one InvalidationTracker; shares the
    CacheStore with nobody else for the duration of a run.

    When a dependency_resolver is given, each recomputed item's dependency
    set is replaced with what the resolver returns. Without one, edges are
    managed by the caller through scheduler.graph.

    Usage:
        store = JsonCacheStore(index_path)
        store.load()
        scheduler = IncrementalScheduler(store, FileFingerprinter(), dependency_resolver=resolve)
        batch = scheduler.process(paths, summarize_file, ProcessOptions(continue_on_error=True))
    """

    def __init__(
        self,
        store: CacheStore,
        fingerprinter: Fingerprinter,
        graph: Optional[DependencyGraph] = None,
        dependency_resolver: Optional[DependencyResolver] = None,
        flush_interval: int = DEFAULT_FLUSH_INTERVAL,
    ) -> None:
        """Initialize the scheduler.

        Args:
            store: Cache store, already loaded.
            fingerprinter: Fingerprinter for the item type.
            graph: Existing graph to use. If None, the graph is rebuilt from
                   the store's persisted edges.
            dependency_resolver: Optional automatic dependency discovery.
            flush_interval: Save the store after this many recomputations.

        Raises:
            ValueError: If flush_interval is not positive.
        """
        if flush_interval <= 0:
            raise ValueError(f"flush_interval must be positive, got {flush_interval}")

        self.store = store
        self.fingerprinter = fingerprinter
        self.dependency_resolver = dependency_resolver
        self.flush_interval = flush_interval

        if graph is None:
            graph = DependencyGraph()
            graph.load_dependencies(store.get_dependencies())
        self.graph = graph
        self.tracker = InvalidationTracker(store, graph, fingerprinter)

    def reload(self) -> bool:
        """Reload the store and rebuild the graph from it."""
        loaded = self.store.load()
        self.graph.load_dependencies(self.store.get_dependencies())
        return loaded

    def flush(self) -> bool:
        """Write graph edges into the store and persist it."""
        self.store.set_dependencies(self.graph.copy_dependencies())
        return self.store.save()

    def get_result(self, item_id: str) -> Any:
        """Last successfully computed result of an item, or None."""
        entry = self.store.get(item_id)
        return entry.result if entry is not None else None

    def process(
        self,
        ids: Iterable[str],
        compute_step: ComputeStep,
        options: Optional[ProcessOptions] = None,
    ) -> BatchResult:
        """Process a batch of items, recomputing only stale ones.

        Args:
            ids: Item identifiers. Duplicates are processed once.
            compute_step: Called as compute_step(item_id, content) for each
                         stale item; failures are signaled by raising.
            options: Pass options. Defaults to ProcessOptions().

        Returns:
            BatchResult with per-item outcomes, errors, pass metrics and the
            dependency edges ignored because of cycles.

        Raises:
            ValueError: If any id is empty or contains control characters.
        """
        options = options or ProcessOptions()
        batch = list(dict.fromkeys(ids))
        for item_id in batch:
            validate_item_id(item_id)

        result = BatchResult()
        order = self.graph.topological_order(batch, cycles=result.cycles)
        logger.debug(f"Processing order: {order}")

        self.tracker.begin_pass(order)
        pass_metrics = CacheMetrics()
        since_flush = 0

        try:
            for item_id in order:
                check = self._check(item_id, options.force)

                if not check.needed:
                    self._serve_from_cache(item_id, result, pass_metrics, options)
                    continue

                self.tracker.mark_dirty(item_id, check.reason)

                if check.reason == StalenessReason.DELETED:
                    if not self._handle_deleted(item_id, result, pass_metrics, options):
                        if not options.continue_on_error:
                            result.aborted = True
                            break
                    continue

                if self._compute(item_id, check, compute_step, result, pass_metrics, options):
                    since_flush += 1
                    if since_flush >= self.flush_interval:
                        self.flush()
                        since_flush = 0
                elif not options.continue_on_error:
                    result.aborted = True
                    break
        finally:
            self.store.metrics.merge(pass_metrics)
            self.flush()

        if result.aborted:
            logger.warning(
                f"Batch aborted after {len(result.errors)} error(s); "
                f"{len(order) - len(result.results) - len(result.errors)} item(s) not processed"
            )

        result.metrics = pass_metrics.to_dict()
        logger.info(
            f"Processed batch of {len(order)} items: "
            f"{pass_metrics.cache_hits} hits, {pass_metrics.cache_misses} misses, "
            f"{pass_metrics.items_removed} removed, {pass_metrics.errors} errors"
        )
        return result

    def _check(self, item_id: str, force: bool) -> StalenessCheck:
        if not force:
            return self.tracker.needs_processing(item_id)
        fingerprint = self.fingerprinter.fingerprint(item_id)
        if fingerprint is None:
            return StalenessCheck(True, StalenessReason.DELETED, None)
        return StalenessCheck(True, StalenessReason.FORCED, fingerprint)

    def _report(self, outcome: ItemOutcome, result: BatchResult, options: ProcessOptions) -> None:
        result.results.append(outcome)
        if options.on_progress is not None:
            options.on_progress(outcome)

    def _serve_from_cache(
        self,
        item_id: str,
        result: BatchResult,
        pass_metrics: CacheMetrics,
        options: ProcessOptions,
    ) -> None:
        entry = self.store.get(item_id)
        assert entry is not None
        pass_metrics.record_hit()
        logger.debug(f"Cache hit: {item_id}")
        self._report(
            ItemOutcome(
                item_id=item_id,
                result=entry.result,
                from_cache=True,
                reason=StalenessReason.UP_TO_DATE,
                dependencies=list(entry.dependencies),
            ),
            result,
            options,
        )

    def _handle_deleted(
        self,
        item_id: str,
        result: BatchResult,
        pass_metrics: CacheMetrics,
        options: ProcessOptions,
    ) -> bool:
        """Drop a vanished item. Returns False if it was never cached."""
        if not self._remove(item_id):
            pass_metrics.errors += 1
            result.errors.append(ItemError(item_id, "item not found"))
            logger.warning(f"Item not found and not cached: {item_id}")
            return False

        pass_metrics.record_removal()
        logger.info(f"Removed deleted item from cache: {item_id}")
        self._report(
            ItemOutcome(
                item_id=item_id,
                result=None,
                from_cache=False,
                reason=StalenessReason.DELETED,
            ),
            result,
            options,
        )
        return True

    def _remove(self, item_id: str) -> bool:
        if self.store.get(item_id) is None:
            self.graph.remove_item(item_id)
            return False
        self.tracker.cascade(item_id)
        self.store.delete(item_id)
        self.graph.remove_item(item_id)
        self.tracker.forget(item_id)
        return True

    def _compute(
        self,
        item_id: str,
        check: StalenessCheck,
        compute_step: ComputeStep,
        result: BatchResult,
        pass_metrics: CacheMetrics,
        options: ProcessOptions,
    ) -> bool:
        """Recompute one stale item. Returns False on failure."""
        start = time.perf_counter()
        try:
            content = self.fingerprinter.read(item_id)
            value = compute_step(item_id, content)
            dependencies: Optional[List[str]] = None
            if self.dependency_resolver is not None:
                dependencies = list(self.dependency_resolver(item_id, content))
                for dependency in dependencies:
                    validate_item_id(dependency)
                recorded = list(dict.fromkeys(d for d in dependencies if d != item_id))
            else:
                recorded = self.graph.dependencies_of(item_id)

            # Fingerprint from before the read: an edit racing the compute step
            # leaves the entry stale, so it is picked up on the next pass
            fingerprint = check.fingerprint
            assert fingerprint is not None
            self.store.put(
                item_id,
                CacheEntry(
                    item_id=item_id,
                    fingerprint=fingerprint,
                    result=value,
                    dependencies=recorded,
                    computed_at=time.time(),
                ),
            )
        except Exception as e:
            elapsed_ms = (time.perf_counter() - start) * 1000
            pass_metrics.record_failure(elapsed_ms)
            message = str(e) or type(e).__name__
            result.errors.append(ItemError(item_id, message))
            logger.warning(f"Failed to process {item_id} ({check.reason}): {message}")
            return False
        elapsed_ms = (time.perf_counter() - start) * 1000

        if dependencies is not None:
            self.graph.set_dependencies(item_id, dependencies)
        self.tracker.cascade(item_id)
        pass_metrics.record_miss(elapsed_ms)
        logger.debug(f"Recomputed {item_id} ({check.reason}) in {elapsed_ms:.1f}ms")

        self._report(
            ItemOutcome(
                item_id=item_id,
                result=value,
                from_cache=False,
                reason=check.reason,
                processing_time_ms=elapsed_ms,
                dependencies=list(recorded),
            ),
            result,
            options,
        )
        return True

    def clear(self, patterns: Optional[Iterable[str]] = None) -> List[str]:
        """Bust cached entries whose id matches any glob pattern.

        An empty or missing pattern list clears everything.

        Returns:
            Sorted ids of the removed entries.
        """
        pattern_list = list(patterns or [])
        if pattern_list:
            return self.clear_matching(pattern_predicate(pattern_list))

        removed = self.store.clear()
        self.graph.clear()
        self.flush()
        logger.info(f"Cleared all {len(removed)} cache entries")
        return removed

    def clear_matching(self, match: Callable[[str], bool]) -> List[str]:
        """Bust cached entries whose id satisfies a predicate.

        Dependents of removed entries are not invalidated: busting forces
        recomputation of the matched items only.
        """
        removed = self.store.clear(match)
        for item_id in removed:
            # Incoming edges stay so dependents keep ordering after the item
            self.graph.set_dependencies(item_id, [])
        self.flush()
        logger.info(f"Cleared {len(removed)} cache entries")
        return removed

    def remove_items(self, ids: Iterable[str]) -> List[str]:
        """Remove cached items outside of a batch, cascading to dependents.

        Returns:
            Ids that had a CacheEntry and were removed.
        """
        self.tracker.begin_pass([])
        removed = [item_id for item_id in dict.fromkeys(ids) if self._remove(item_id)]
        if removed:
            self.flush()
        return removed

# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Tests for IncrementalScheduler.

Test coverage:
- Idempotence: unchanged batches are served entirely from cache
- Invalidation propagation through dependency edges
- Dependencies computed before dependents
- Cycles terminate and are reported
- Failed items leave their last-good entry untouched
- Persistence round trip through JsonCacheStore
- Deleted items, force, cache busting and periodic flushing
"""

import json
from unittest.mock import Mock

import pytest

from incremental_cache.fingerprint import MappingFingerprinter
from incremental_cache.models import ProcessOptions, StalenessReason
from incremental_cache.scheduler import IncrementalScheduler
from incremental_cache.storage import InMemoryCacheStore, JsonCacheStore


class Workspace:
    """In-memory items with declared dependencies, driven through one scheduler."""

    def __init__(self, items, dependencies=None, store=None, flush_interval=10):
        self.items = dict(items)
        self.dependencies = {k: list(v) for k, v in (dependencies or {}).items()}
        self.fingerprinter = MappingFingerprinter(self.items)
        self.store = store if store is not None else InMemoryCacheStore()
        self.scheduler = IncrementalScheduler(
            self.store,
            self.fingerprinter,
            dependency_resolver=lambda item_id, content: self.dependencies.get(item_id, []),
            flush_interval=flush_interval,
        )
        self.calls = []

    def set(self, item_id, value):
        self.items[item_id] = value
        self.fingerprinter.set(item_id, value)

    def remove(self, item_id):
        self.items.pop(item_id, None)
        self.fingerprinter.remove(item_id)

    def compute(self, item_id, content):
        self.calls.append(item_id)
        return f"{item_id}={content}"

    def process(self, ids=None, options=None, compute=None):
        self.calls = []
        return self.scheduler.process(
            list(self.items) if ids is None else ids, compute or self.compute, options
        )


class TestIdempotence:
    """Unchanged batches are pure cache hits."""

    def test_second_run_is_all_hits(self):
        """Test that processing twice yields identical results from cache."""
        ws = Workspace({"a": 1, "b": 2, "c": 3}, {"a": ["b"]})

        first = ws.process()
        second = ws.process()

        assert ws.calls == []
        assert second.metrics["cache_hits"] == 3
        assert second.metrics["hit_ratio"] == 1.0
        assert {o.item_id: o.result for o in first.results} == {
            o.item_id: o.result for o in second.results
        }
        assert all(o.reason == StalenessReason.UP_TO_DATE for o in second.results)

    def test_duplicate_ids_computed_once(self):
        """Test that compute runs at most once per id per call."""
        ws = Workspace({"a": 1})

        batch = ws.process(["a", "a", "a"])

        assert ws.calls == ["a"]
        assert len(batch.results) == 1


class TestInvalidationPropagation:
    """Changes flow from dependencies to dependents."""

    def test_changed_dependency_reprocesses_dependent(self):
        """Test that A depending on B is recomputed when B changes; C stays cached."""
        ws = Workspace({"A": 1, "B": 1, "C": 1}, {"A": ["B"]})
        ws.process()

        ws.set("B", 2)
        batch = ws.process()

        assert sorted(batch.processed_ids) == ["A", "B"]
        assert batch.cached_ids == ["C"]
        assert batch.result_for("A").reason == "dependency-changed:B"
        assert batch.result_for("B").reason == StalenessReason.CONTENT_CHANGED

    def test_dependent_outside_batch_is_reprocessed_later(self):
        """Test that a cascaded dependent not in the batch is stale on the next pass."""
        ws = Workspace({"A": 1, "B": 1}, {"A": ["B"]})
        ws.process()

        ws.set("B", 2)
        ws.process(["B"])
        assert ws.store.stale_reason("A") == "dependency-changed:B"

        batch = ws.process(["A"])

        assert batch.processed_ids == ["A"]
        assert batch.result_for("A").reason == "dependency-changed:B"
        assert ws.store.stale_reason("A") is None

    def test_transitive_propagation(self):
        """Test that a change reaches dependents of dependents."""
        ws = Workspace({"a": 1, "b": 1, "c": 1}, {"a": ["b"], "b": ["c"]})
        ws.process()

        ws.set("c", 2)
        batch = ws.process()

        assert batch.processed_ids == ["c", "b", "a"]

    def test_dependencies_are_rediscovered(self):
        """Test that edges follow what the resolver reports on recompute."""
        ws = Workspace({"a": 1, "b": 1, "c": 1}, {"a": ["b"]})
        ws.process()

        ws.dependencies["a"] = ["c"]
        ws.set("a", 2)
        ws.process()

        assert ws.scheduler.graph.dependencies_of("a") == ["c"]
        assert ws.store.get("a").dependencies == ["c"]

        ws.set("b", 2)
        batch = ws.process()
        assert batch.processed_ids == ["b"]


class TestOrdering:
    """Dependencies are computed before dependents."""

    def test_dependencies_first(self):
        """Test that compute order respects every in-batch edge."""
        deps = {"page": ["layout", "style"], "layout": ["style"], "style": ["tokens"]}
        ws = Workspace({"page": 1, "layout": 1, "style": 1, "tokens": 1}, deps)
        ws.scheduler.graph.set_dependencies("page", deps["page"])
        ws.scheduler.graph.set_dependencies("layout", deps["layout"])
        ws.scheduler.graph.set_dependencies("style", deps["style"])

        ws.process(["page", "layout", "style", "tokens"])

        for dependent, dependencies in deps.items():
            for dependency in dependencies:
                assert ws.calls.index(dependency) < ws.calls.index(dependent)

    def test_order_follows_edges_through_unbatched_items(self):
        """Test that a -> m -> b computes b before a when m is not in the batch."""
        ws = Workspace({"a": 1, "m": 1, "b": 1}, {"a": ["m"], "m": ["b"]})
        ws.process()
        ws.set("b", 2)

        ws.process(["a", "b"])

        assert ws.calls == ["b", "a"]

    def test_progress_callback_sees_processing_order(self):
        """Test that on_progress receives every outcome in order."""
        ws = Workspace({"a": 1, "b": 1}, {"a": ["b"]})
        ws.scheduler.graph.add_edge("a", "b")
        progress = []

        ws.process(["a", "b"], ProcessOptions(on_progress=lambda o: progress.append(o)))

        assert [p.to_progress_dict()["id"] for p in progress] == ["b", "a"]
        assert all(p.from_cache is False for p in progress)


class TestCycles:
    """Cyclic dependencies terminate."""

    def test_cycle_terminates(self):
        """Test that A<->B are each computed once and the call returns."""
        ws = Workspace({"A": 1, "B": 1}, {"A": ["B"], "B": ["A"]})
        ws.scheduler.graph.add_edge("A", "B")
        ws.scheduler.graph.add_edge("B", "A")

        batch = ws.process(["A", "B"])

        assert sorted(ws.calls) == ["A", "B"]
        assert batch.cycles == [("B", "A")]
        assert batch.errors == []

    def test_cycle_settles_on_second_run(self):
        """Test that an unchanged cycle is served from cache on the next pass."""
        ws = Workspace({"A": 1, "B": 1}, {"A": ["B"], "B": ["A"]})
        ws.process(["A", "B"])
        ws.process(["A", "B"])

        batch = ws.process(["A", "B"])

        assert ws.calls == []
        assert batch.metrics["cache_hits"] == 2


class TestPartialFailure:
    """Failures are isolated per item."""

    def _failing(self, ws, bad):
        def compute(item_id, content):
            if item_id == bad:
                raise RuntimeError(f"cannot compute {item_id}")
            return ws.compute(item_id, content)

        return compute

    def test_failure_keeps_last_good_entry(self):
        """Test that a failed recompute leaves the entry byte-for-byte unchanged."""
        ws = Workspace({"X": 1, "Y": 1, "Z": 1})
        ws.process()
        before = json.dumps(ws.store.get("X").to_dict(), sort_keys=True)

        ws.set("X", 2)
        ws.set("Y", 2)
        batch = ws.process(
            options=ProcessOptions(continue_on_error=True), compute=self._failing(ws, "X")
        )

        assert [e.to_dict() for e in batch.errors] == [{"id": "X", "error": "cannot compute X"}]
        assert json.dumps(ws.store.get("X").to_dict(), sort_keys=True) == before
        assert batch.processed_ids == ["Y"]
        assert batch.cached_ids == ["Z"]
        assert batch.metrics["errors"] == 1

    def test_failed_item_retried_next_pass(self):
        """Test that a failed item stays stale until it succeeds."""
        ws = Workspace({"X": 1})
        ws.process()
        ws.set("X", 2)
        ws.process(options=ProcessOptions(continue_on_error=True), compute=self._failing(ws, "X"))

        batch = ws.process()

        assert batch.processed_ids == ["X"]
        assert batch.result_for("X").result == "X=2"

    def test_abort_without_continue_on_error(self):
        """Test that the remaining batch is skipped after a failure by default."""
        ws = Workspace({"a": 1, "b": 1, "c": 1})

        batch = ws.process(compute=self._failing(ws, "b"))

        assert batch.aborted
        assert ws.calls == ["a"]
        assert ws.store.get("c") is None
        assert len(batch.errors) == 1

    def test_dependent_of_failed_item(self):
        """Test that a dependent of a failed item is still attempted."""
        ws = Workspace({"a": 1, "b": 1}, {"a": ["b"]})
        ws.process()
        ws.set("b", 2)

        batch = ws.process(
            options=ProcessOptions(continue_on_error=True), compute=self._failing(ws, "b")
        )

        assert batch.processed_ids == ["a"]
        assert batch.result_for("a").reason == "dependency-changed:b"

    def test_invalid_dependency_id_is_a_failure(self):
        """Test that a resolver returning a bad id fails only that item."""
        ws = Workspace({"a": 1, "b": 1}, {"a": ["bad\nid"]})

        batch = ws.process(options=ProcessOptions(continue_on_error=True))

        assert [e.item_id for e in batch.errors] == ["a"]
        assert ws.store.get("a") is None
        assert batch.processed_ids == ["b"]

    def test_unserializable_result_is_a_failure(self, tmp_path):
        """Test that a result the store cannot persist fails only its item."""
        index_path = tmp_path / "index.json"
        ws = Workspace({"good": 1, "bad": 1}, store=JsonCacheStore(index_path))
        ws.process()
        before = json.dumps(ws.store.get("bad").to_dict(), sort_keys=True)
        ws.set("good", 2)
        ws.set("bad", 2)

        def compute(item_id, content):
            return object() if item_id == "bad" else ws.compute(item_id, content)

        batch = ws.process(options=ProcessOptions(continue_on_error=True), compute=compute)

        assert [e.item_id for e in batch.errors] == ["bad"]
        assert "not JSON-serializable" in batch.errors[0].error
        assert batch.processed_ids == ["good"]
        assert json.dumps(ws.store.get("bad").to_dict(), sort_keys=True) == before

        reloaded = JsonCacheStore(index_path)
        assert reloaded.load()
        assert reloaded.get("good").result == "good=2"
        assert reloaded.get("bad").result == "bad=1"

    def test_edit_during_compute_is_seen_next_pass(self):
        """Test that an item changed while computing is recomputed on the next pass."""
        ws = Workspace({"a": 1})

        def compute(item_id, content):
            ws.set("a", 2)
            return ws.compute(item_id, content)

        ws.process(compute=compute)
        batch = ws.process()

        assert batch.processed_ids == ["a"]
        assert batch.result_for("a").result == "a=2"


class TestDeletedItems:
    """Items whose source disappeared."""

    def test_deleted_cached_item_is_removed(self):
        """Test that a vanished cached item is dropped and its dependents invalidated."""
        ws = Workspace({"a": 1, "b": 1}, {"a": ["b"]})
        ws.process()

        ws.remove("b")
        batch = ws.process(["b"])

        assert batch.result_for("b").reason == StalenessReason.DELETED
        assert batch.processed_ids == []
        assert ws.store.get("b") is None
        assert "b" not in ws.scheduler.graph
        assert ws.store.stale_reason("a") == "dependency-changed:b"
        assert batch.metrics["items_removed"] == 1

        batch = ws.process(["a"])
        assert batch.result_for("a").reason == "dependency-changed:b"

    def test_unknown_item_is_an_error(self):
        """Test that naming an item that never existed records an error."""
        ws = Workspace({"a": 1})

        batch = ws.process(["ghost", "a"], ProcessOptions(continue_on_error=True))

        assert [e.to_dict() for e in batch.errors] == [{"id": "ghost", "error": "item not found"}]
        assert batch.processed_ids == ["a"]

    def test_remove_items_outside_batch(self):
        """Test removing cached items directly."""
        ws = Workspace({"a": 1, "b": 1}, {"a": ["b"]})
        ws.process()

        removed = ws.scheduler.remove_items(["b", "never-cached"])

        assert removed == ["b"]
        assert ws.store.stale_reason("a") == "dependency-changed:b"


class TestForce:
    """ProcessOptions.force bypasses the cache."""

    def test_force_recomputes_everything(self):
        """Test that every named item is recomputed with reason forced."""
        ws = Workspace({"a": 1, "b": 1})
        ws.process()

        batch = ws.process(options=ProcessOptions(force=True))

        assert sorted(ws.calls) == ["a", "b"]
        assert {o.reason for o in batch.results} == {StalenessReason.FORCED}


class TestValidation:
    """Argument validation."""

    def test_invalid_id_raises(self):
        """Test that malformed ids are rejected before any work."""
        ws = Workspace({"a": 1})

        with pytest.raises(ValueError):
            ws.process(["a", ""])
        assert ws.calls == []

    def test_flush_interval_must_be_positive(self):
        """Test that a non-positive flush interval is rejected."""
        with pytest.raises(ValueError):
            IncrementalScheduler(InMemoryCacheStore(), MappingFingerprinter(), flush_interval=0)


class TestFlushing:
    """Store saves during and after a pass."""

    def test_periodic_and_final_flush(self):
        """Test that the store is saved every flush_interval recomputations and at the end."""
        store = InMemoryCacheStore()
        store.save = Mock(return_value=True)
        ws = Workspace({f"i{n}": n for n in range(5)}, store=store, flush_interval=2)

        ws.process()

        # After items 2 and 4, plus the final flush
        assert store.save.call_count == 3

    def test_flush_after_abort(self):
        """Test that completed work is saved even when the batch aborts."""
        store = InMemoryCacheStore()
        store.save = Mock(return_value=True)
        ws = Workspace({"a": 1, "b": 1}, store=store)

        def compute(item_id, content):
            if item_id == "b":
                raise ValueError("bad")
            return 1

        ws.process(compute=compute)

        assert store.save.call_count == 1
        assert store.get("a") is not None

    def test_failed_save_does_not_abort(self):
        """Test that a failing store save is not fatal to the batch."""
        store = InMemoryCacheStore()
        store.save = Mock(return_value=False)
        ws = Workspace({"a": 1}, store=store)

        batch = ws.process()

        assert batch.processed_ids == ["a"]

    def test_cumulative_metrics(self):
        """Test that pass metrics accumulate in the store."""
        ws = Workspace({"a": 1, "b": 1})
        ws.process()
        ws.process()

        assert ws.store.metrics.cache_hits == 2
        assert ws.store.metrics.cache_misses == 2
        assert ws.store.metrics.hit_ratio == 0.5


class TestClear:
    """Cache busting."""

    def test_clear_all(self):
        """Test that clearing everything forces a cold pass."""
        ws = Workspace({"a": 1, "b": 1}, {"a": ["b"]})
        ws.process()

        removed = ws.scheduler.clear()
        batch = ws.process()

        assert removed == ["a", "b"]
        assert sorted(batch.processed_ids) == ["a", "b"]
        assert all(o.reason == StalenessReason.NEW for o in batch.results)

    def test_clear_by_pattern(self):
        """Test that only matching entries are busted."""
        ws = Workspace({"a.css": 1, "b.css": 1, "c.md": 1}, {"c.md": ["a.css"]})
        ws.process()

        removed = ws.scheduler.clear(["*.css"])
        batch = ws.process()

        assert removed == ["a.css", "b.css"]
        assert sorted(batch.processed_ids) == ["a.css", "b.css", "c.md"]
        assert batch.result_for("c.md").reason == "dependency-changed:a.css"

    def test_clear_no_match(self):
        """Test that a pattern matching nothing removes nothing."""
        ws = Workspace({"a": 1})
        ws.process()

        assert ws.scheduler.clear(["*.none"]) == []
        assert ws.process().cached_ids == ["a"]


class TestPersistenceRoundTrip:
    """A saved index reproduces the same hit/miss behavior."""

    def test_reload_reproduces_behavior(self, tmp_path):
        """Test that a fresh store/scheduler pair behaves like the original one."""
        index_path = tmp_path / "index.json"
        items = {"a": 1, "b": 1, "c": 1}
        deps = {"a": ["b"]}

        original = Workspace(items, deps, store=JsonCacheStore(index_path))
        original.process()

        store = JsonCacheStore(index_path)
        assert store.load()
        fresh = Workspace(items, deps, store=store)
        assert fresh.scheduler.graph.dependencies_of("a") == ["b"]

        original.set("b", 2)
        fresh.set("b", 2)
        expected = original.process()
        actual = fresh.process()

        assert actual.processed_ids == expected.processed_ids
        assert actual.cached_ids == expected.cached_ids
        assert actual.metrics["cache_hits"] == expected.metrics["cache_hits"]


class TestConcreteScenario:
    """new / existing / changed items across two runs."""

    def test_two_runs(self):
        """Test 3 misses on a cold cache, then 1 miss and 2 hits."""
        batch = ["new.item", "existing.item", "changed.item"]
        ws = Workspace({"new.item": "n", "existing.item": "e", "changed.item": "c1"})

        run1 = ws.process(batch)
        assert sorted(run1.processed_ids) == sorted(batch)
        assert run1.metrics["cache_hits"] == 0

        ws.set("changed.item", "c2")
        run2 = ws.process(batch)

        assert run2.processed_ids == ["changed.item"]
        assert run2.cached_ids == ["new.item", "existing.item"]
        assert run2.metrics["cache_hits"] == 2
        assert run2.metrics["cache_misses"] == 1
        assert run2.metrics["hit_ratio"] == pytest.approx(2 / 3, abs=1e-4)

# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Layout-node call site of the incremental cache.

A layout tree is a nested dict:

    {"width": 80, "flexDirection": "row", "children": [{"text": "a"}, {"text": "b"}]}

Flattening assigns each node an item id: the root is "root", children are
"<parent>-child-<index>", and a node carrying its own "id" key keeps it.
A parent depends on each of its children, so children are always computed
first and a changed child invalidates its ancestors.

Fingerprints:
- content hash: the node's layout properties (LAYOUT_PROPERTIES only)
- meta hash: the node's ordered child ids

The geometry computation itself is supplied by the caller as
compute(node_id, props, child_results) -> result.
"""

import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

from incremental_cache.fingerprint import MappingFingerprinter
from incremental_cache.models import BatchResult, ItemOutcome, ProcessOptions
from incremental_cache.scheduler import DEFAULT_FLUSH_INTERVAL, IncrementalScheduler
from incremental_cache.storage import CacheStore, InMemoryCacheStore

logger = logging.getLogger(__name__)

ROOT_ID = "root"

LAYOUT_PROPERTIES = (
    "width",
    "height",
    "padding",
    "paddingX",
    "paddingY",
    "margin",
    "marginX",
    "marginY",
    "flexDirection",
    "justifyContent",
    "alignItems",
    "flexGrow",
    "flexShrink",
    "flexWrap",
    "borderStyle",
    "gap",
    "text",
)

LayoutCompute = Callable[[str, Dict[str, Any], List[Any]], Any]

# node id -> layout props, node id -> ordered child ids
FlatLayout = Tuple[Dict[str, Dict[str, Any]], Dict[str, List[str]]]


def layout_props(node: Dict[str, Any]) -> Dict[str, Any]:
    """The subset of a node's keys that affects layout."""
    return {key: node[key] for key in LAYOUT_PROPERTIES if key in node}


def flatten_layout_tree(tree: Dict[str, Any], root_id: str = ROOT_ID) -> FlatLayout:
    """Flatten a nested layout tree into per-node props and child lists.

    Nodes are listed parent before children, in document order.

    Raises:
        TypeError: If a node or a children list has the wrong type.
        ValueError: If two nodes end up with the same id.
    """
    nodes: Dict[str, Dict[str, Any]] = {}
    children: Dict[str, List[str]] = {}

    if not isinstance(tree, dict):
        raise TypeError(f"Layout tree must be a dict, got {type(tree).__name__}")
    stack: List[Tuple[str, Any]] = [(str(tree.get("id", root_id)), tree)]
    while stack:
        node_id, node = stack.pop()
        if not isinstance(node, dict):
            raise TypeError(f"Layout node {node_id} must be a dict, got {type(node).__name__}")
        if node_id in nodes:
            raise ValueError(f"Duplicate layout node id: {node_id}")

        raw_children = node.get("children") or []
        if isinstance(raw_children, dict):
            raw_children = [raw_children]
        if not isinstance(raw_children, list):
            raise TypeError(f"children of layout node {node_id} must be a list")

        child_ids: List[str] = []
        child_nodes: List[Tuple[str, Any]] = []
        for index, child in enumerate(raw_children):
            if child is None:
                continue
            default_id = f"{node_id}-child-{index}"
            child_id = str(child.get("id", default_id)) if isinstance(child, dict) else default_id
            child_ids.append(child_id)
            child_nodes.append((child_id, child))

        nodes[node_id] = layout_props(node)
        children[node_id] = child_ids
        # Reversed so the first child is popped first
        stack.extend(reversed(child_nodes))

    return nodes, children


class LayoutNodeProcessor:
    """Recomputes only the layout nodes whose props or subtree changed.

    The cache is in-memory by default, so it lives as long as the
    processor; pass a JsonCacheStore to persist it across runs.

    Usage:
        processor = LayoutNodeProcessor()
        batch = processor.process(tree, compute_layout)
        batch.result_for("root").result
    """

    def __init__(
        self,
        store: Optional[CacheStore] = None,
        flush_interval: int = DEFAULT_FLUSH_INTERVAL,
    ) -> None:
        self.store = store if store is not None else InMemoryCacheStore()
        self._children: Dict[str, List[str]] = {}
        self.fingerprinter = MappingFingerprinter(meta_of=self._child_ids)
        self.scheduler = IncrementalScheduler(
            self.store, self.fingerprinter, flush_interval=flush_interval
        )

    def _child_ids(self, node_id: str, props: Any) -> List[str]:
        return self._children.get(node_id, [])

    def process(
        self,
        tree: Dict[str, Any],
        compute: LayoutCompute,
        options: Optional[ProcessOptions] = None,
    ) -> BatchResult:
        """Process a layout tree.

        Nodes cached from an earlier tree but missing from this one are
        dropped from the cache (reported with reason "deleted").

        Args:
            tree: Nested layout tree.
            compute: Called as compute(node_id, props, child_results); child
                    results are in child order (None for a child that failed
                    without a previous result).
            options: Pass options.
        """
        options = options or ProcessOptions()
        nodes, children = flatten_layout_tree(tree)

        self._children = children
        self.fingerprinter.replace_all(nodes)
        graph = self.scheduler.graph
        for node_id, child_ids in children.items():
            graph.set_dependencies(node_id, child_ids)

        vanished = [node_id for node_id in self.store.ids() if node_id not in nodes]
        results: Dict[str, Any] = {}
        user_progress = options.on_progress

        def on_progress(outcome: ItemOutcome) -> None:
            results[outcome.item_id] = outcome.result
            if user_progress is not None:
                user_progress(outcome)

        def compute_step(node_id: str, props: Dict[str, Any]) -> Any:
            child_results = [
                results[child_id] if child_id in results else self.scheduler.get_result(child_id)
                for child_id in children.get(node_id, [])
            ]
            return compute(node_id, props, child_results)

        pass_options = ProcessOptions(
            continue_on_error=options.continue_on_error,
            force=options.force,
            on_progress=on_progress,
        )
        batch = self.scheduler.process(list(nodes) + vanished, compute_step, pass_options)
        logger.debug(
            f"Layout pass: {len(nodes)} nodes, {len(batch.processed_ids)} recomputed, "
            f"{len(vanished)} removed"
        )
        return batch

    def get_metrics(self) -> Dict[str, Any]:
        """Cumulative metrics plus cache size, same shape as the file call site."""
        metrics = self.store.metrics.to_dict()
        metrics["cache_size"] = len(self.store.ids())
        metrics["dependency_count"] = len(self.scheduler.graph.copy_dependencies())
        return metrics

    def clear(self) -> List[str]:
        return self.scheduler.clear()

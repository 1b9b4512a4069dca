# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Storage abstraction for cache entries and dependency edges.

Components:
- CacheStore: Abstract interface for storage backends
- InMemoryCacheStore: Non-durable implementation (layout nodes, tests)
- JsonCacheStore: Durable implementation backed by a JSON index file

The store is the source of truth across process restarts: fingerprints,
results, dependency edges, staleness marks and cumulative metrics are all
reconstructible from it.

Persisted index format:
    {
        "version": "1.0.0",
        "timestamp": "<ISO-8601 UTC>",
        "entries": {"<id>": CacheEntry.to_dict(), ...},
        "dependencies": {"<id>": ["<dependency id>", ...], ...},
        "invalidated": {"<id>": "<reason>", ...},
        "metrics": CacheMetrics.to_dict()
    }

A missing, unparseable or version-mismatched index is not fatal: the store
starts empty (cold cache) and the problem is logged as a warning.
"""

import fnmatch
import json
import logging
import os
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

from incremental_cache.metrics import CacheMetrics
from incremental_cache.models import CacheEntry, validate_item_id

logger = logging.getLogger(__name__)

INDEX_VERSION = "1.0.0"

# Type alias for the persisted index
IndexExport = Dict[str, Any]


def pattern_predicate(patterns: Iterable[str]) -> Callable[[str], bool]:
    """Build a clear() predicate from glob patterns (``*`` and ``?``).

    An empty pattern list matches every id.
    """
    pattern_list = list(patterns)
    if not pattern_list:
        return lambda item_id: True
    return lambda item_id: any(fnmatch.fnmatchcase(item_id, p) for p in pattern_list)


class CacheStore(ABC):
    """Abstract storage interface for cache entries.

    Enables swapping the storage backend without changing scheduling logic.
    """

    @abstractmethod
    def load(self) -> bool:
        """Load persisted state into memory.

        Returns:
            True if persisted state was loaded, False if the store started empty.
        """
        pass

    @abstractmethod
    def save(self) -> bool:
        """Persist the full in-memory state.

        Returns:
            True on success, False if the write failed (logged, never raised).
        """
        pass

    @abstractmethod
    def get(self, item_id: str) -> Optional[CacheEntry]:
        """Get an item's CacheEntry, or None if not cached."""
        pass

    @abstractmethod
    def put(self, item_id: str, entry: CacheEntry) -> None:
        """Store an item's CacheEntry, clearing any staleness mark.

        Raises:
            TypeError: If the store cannot persist the entry's result.
        """
        pass

    @abstractmethod
    def delete(self, item_id: str) -> None:
        """Delete an item's CacheEntry, edges and staleness mark."""
        pass

    @abstractmethod
    def clear(self, match: Optional[Callable[[str], bool]] = None) -> List[str]:
        """Bulk-invalidate entries whose id matches the predicate.

        Args:
            match: Predicate over item ids. None clears everything.

        Returns:
            Sorted ids of the removed entries.
        """
        pass

    @abstractmethod
    def ids(self) -> List[str]:
        """Ids of all cached items."""
        pass

    @abstractmethod
    def mark_stale(self, item_id: str, reason: str) -> None:
        """Record a durable staleness mark for a cached item."""
        pass

    @abstractmethod
    def stale_reason(self, item_id: str) -> Optional[str]:
        """Return the staleness mark of an item, if any."""
        pass

    @abstractmethod
    def get_dependencies(self) -> Dict[str, List[str]]:
        """Persisted forward adjacency of the dependency graph."""
        pass

    @abstractmethod
    def set_dependencies(self, dependencies: Dict[str, List[str]]) -> None:
        """Replace the persisted forward adjacency."""
        pass

    @property
    @abstractmethod
    def metrics(self) -> CacheMetrics:
        """Cumulative metrics across all passes."""
        pass


class InMemoryCacheStore(CacheStore):
    """In-memory store.

    load() and save() are no-ops, so nothing survives the process. Used for
    layout nodes (by default) and as the base of JsonCacheStore.

    NOT thread-safe: Designed for single-threaded use only.
    """

    def __init__(self) -> None:
        """Initialize empty in-memory store."""
        self._entries: Dict[str, CacheEntry] = {}
        self._dependencies: Dict[str, List[str]] = {}
        self._invalidated: Dict[str, str] = {}
        self._metrics = CacheMetrics()

    def load(self) -> bool:
        return False

    def save(self) -> bool:
        return True

    def get(self, item_id: str) -> Optional[CacheEntry]:
        return self._entries.get(item_id)

    def put(self, item_id: str, entry: CacheEntry) -> None:
        validate_item_id(item_id)
        self._entries[item_id] = entry
        self._invalidated.pop(item_id, None)

    def delete(self, item_id: str) -> None:
        self._entries.pop(item_id, None)
        self._invalidated.pop(item_id, None)
        self._dependencies.pop(item_id, None)
        for deps in self._dependencies.values():
            if item_id in deps:
                deps.remove(item_id)

    def clear(self, match: Optional[Callable[[str], bool]] = None) -> List[str]:
        if match is None:
            removed = sorted(self._entries)
            self._entries.clear()
            self._dependencies.clear()
            self._invalidated.clear()
            return removed

        removed = sorted(item_id for item_id in self._entries if match(item_id))
        for item_id in removed:
            self._entries.pop(item_id, None)
            self._invalidated.pop(item_id, None)
            self._dependencies.pop(item_id, None)
        return removed

    def ids(self) -> List[str]:
        return list(self._entries)

    def mark_stale(self, item_id: str, reason: str) -> None:
        if item_id in self._entries:
            self._invalidated[item_id] = reason

    def stale_reason(self, item_id: str) -> Optional[str]:
        return self._invalidated.get(item_id)

    def get_dependencies(self) -> Dict[str, List[str]]:
        return {item_id: list(deps) for item_id, deps in self._dependencies.items()}

    def set_dependencies(self, dependencies: Dict[str, List[str]]) -> None:
        self._dependencies = {item_id: list(deps) for item_id, deps in dependencies.items()}

    @property
    def metrics(self) -> CacheMetrics:
        return self._metrics

    def __len__(self) -> int:
        return len(self._entries)

    def export_index(self) -> IndexExport:
        """Export the full state in the persisted index format."""
        return {
            "version": INDEX_VERSION,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "entries": {item_id: entry.to_dict() for item_id, entry in self._entries.items()},
            "dependencies": self.get_dependencies(),
            "invalidated": dict(self._invalidated),
            "metrics": self._metrics.to_dict(),
        }

    def import_index(self, index: IndexExport) -> None:
        """Replace the in-memory state with a persisted index.

        Raises:
            ValueError: If the index version is not supported or a section is malformed.
            KeyError: If an entry is missing required fields.
        """
        if index.get("version") != INDEX_VERSION:
            raise ValueError(f"Unsupported index version: {index.get('version')!r}")

        raw_entries = _section(index, "entries")
        raw_dependencies = _section(index, "dependencies")
        raw_invalidated = _section(index, "invalidated")
        raw_metrics = _section(index, "metrics")

        entries: Dict[str, CacheEntry] = {}
        for item_id, data in raw_entries.items():
            if not isinstance(data, dict) or not isinstance(data.get("fingerprint"), dict):
                raise ValueError(f"Malformed cache entry for {item_id!r}")
            entries[item_id] = CacheEntry.from_dict(data)

        dependencies: Dict[str, List[str]] = {}
        for item_id, deps in raw_dependencies.items():
            if not isinstance(deps, list) or not all(isinstance(d, str) for d in deps):
                raise ValueError(f"Malformed dependency list for {item_id!r}")
            dependencies[item_id] = list(deps)

        invalidated = {
            item_id: reason
            for item_id, reason in raw_invalidated.items()
            if item_id in entries and isinstance(reason, str)
        }
        metrics = CacheMetrics.from_dict(raw_metrics)

        self._entries = entries
        self._dependencies = dependencies
        self._invalidated = invalidated
        self._metrics = metrics

    def _reset(self) -> None:
        self._entries = {}
        self._dependencies = {}
        self._invalidated = {}
        self._metrics = CacheMetrics()


def _section(index: IndexExport, key: str) -> Dict[str, Any]:
    """Top-level index section; absent sections are empty."""
    value = index.get(key, {})
    if not isinstance(value, dict):
        raise ValueError(f"index field '{key}' must be an object, got {type(value).__name__}")
    return value


class JsonCacheStore(InMemoryCacheStore):
    """Durable store backed by a JSON index file.

    Writes go to a temporary sibling file that is then renamed over the
    index, so an interrupted save never leaves a truncated index behind.
    Concurrent writers from several processes are not supported.

    Usage:
        store = JsonCacheStore(Path(".incremental_cache") / "index.json")
        store.load()
        ...
        store.save()
    """

    def __init__(self, index_path: Path) -> None:
        super().__init__()
        self.index_path = Path(index_path)

    def put(self, item_id: str, entry: CacheEntry) -> None:
        # Rejected here so one bad result cannot make every later save() fail
        try:
            json.dumps(entry.to_dict())
        except (TypeError, ValueError) as e:
            raise TypeError(f"Result for {item_id} is not JSON-serializable: {e}") from e
        super().put(item_id, entry)

    def load(self) -> bool:
        if not self.index_path.exists():
            logger.info(f"No cache index at {self.index_path}, starting with a cold cache")
            self._reset()
            return False

        try:
            with open(self.index_path, encoding="utf-8") as f:
                index = json.load(f)
            if not isinstance(index, dict):
                raise ValueError(f"index must be a JSON object, got {type(index).__name__}")
            self.import_index(index)
        except (OSError, ValueError, KeyError, TypeError) as e:
            # json.JSONDecodeError is a ValueError
            logger.warning(
                f"Failed to load cache index {self.index_path}: {e}, starting with a cold cache"
            )
            self._reset()
            return False

        logger.info(f"Loaded {len(self._entries)} cache entries from {self.index_path}")
        return True

    def save(self) -> bool:
        tmp_path = self.index_path.with_name(self.index_path.name + ".tmp")
        try:
            self.index_path.parent.mkdir(parents=True, exist_ok=True)
            payload = json.dumps(self.export_index(), indent=2)
            with open(tmp_path, "w", encoding="utf-8") as f:
                f.write(payload)
            os.replace(tmp_path, self.index_path)
        except (OSError, TypeError, ValueError) as e:
            # TypeError/ValueError: a cached result is not JSON-serializable
            logger.error(f"Failed to save cache index {self.index_path}: {e}")
            try:
                tmp_path.unlink()
            except OSError:
                pass
            return False

        logger.debug(f"Saved {len(self._entries)} cache entries to {self.index_path}")
        return True

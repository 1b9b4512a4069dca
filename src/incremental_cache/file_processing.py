# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""File-processing call site of the incremental cache.

Items are absolute file paths. Dependencies are discovered from file
content by the suffix-keyed extractor registry, and the cache is persisted
as a JSON index in the project's cache directory.
"""

import logging
import os
from fnmatch import fnmatchcase
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

from incremental_cache.extractors import ExtractorRegistry, default_registry
from incremental_cache.fingerprint import FileFingerprinter
from incremental_cache.models import BatchResult, ProcessOptions
from incremental_cache.scheduler import DEFAULT_FLUSH_INTERVAL, IncrementalScheduler
from incremental_cache.storage import JsonCacheStore

logger = logging.getLogger(__name__)

FileComputeStep = Callable[[str, str], Any]


def summarize_file(path: str, content: str) -> Dict[str, Any]:
    """Default compute step: basic facts about a text file."""
    return {
        "path": path,
        "size": len(content.encode("utf-8")),
        "lines": len(content.splitlines()),
    }


class FileBatchProcessor:
    """Processes batches of project files through the incremental scheduler.

    Usage:
        processor = FileBatchProcessor(project_root / ".incremental_cache")
        batch = processor.process(["README.md", "docs/guide.md"])
        processor.debug_cache()
    """

    def __init__(
        self,
        cache_dir: Path,
        index_filename: str = "index.json",
        project_root: Optional[Path] = None,
        registry: Optional[ExtractorRegistry] = None,
        flush_interval: int = DEFAULT_FLUSH_INTERVAL,
    ) -> None:
        """Initialize the processor and load the persisted index.

        Args:
            cache_dir: Directory holding the JSON index.
            index_filename: Index filename inside cache_dir.
            project_root: Base for relative paths. Defaults to the working directory.
            registry: Extractor registry. Defaults to every built-in extractor.
            flush_interval: Save the index after this many recomputations.
        """
        self.project_root = Path(project_root or Path.cwd()).resolve()
        self.registry = registry or default_registry()
        self.store = JsonCacheStore(Path(cache_dir) / index_filename)
        self.store.load()
        self.scheduler = IncrementalScheduler(
            self.store,
            FileFingerprinter(),
            dependency_resolver=self._resolve_dependencies,
            flush_interval=flush_interval,
        )

    def _resolve_dependencies(self, item_id: str, content: str) -> List[str]:
        # Sorted so edge order, and therefore processing order, is stable
        return sorted(self.registry.extract_for(item_id, content))

    def normalize_path(self, path: str) -> str:
        """Absolute, normalized item id for a path."""
        if not os.path.isabs(path):
            path = os.path.join(str(self.project_root), path)
        return os.path.normpath(path)

    def relative_path(self, item_id: str) -> str:
        """Item id relative to the project root, when it lies inside it."""
        try:
            return str(Path(item_id).relative_to(self.project_root))
        except ValueError:
            return item_id

    def process(
        self,
        paths: Iterable[str],
        compute_step: Optional[FileComputeStep] = None,
        options: Optional[ProcessOptions] = None,
    ) -> BatchResult:
        """Process files, recomputing only the stale ones.

        Args:
            paths: File paths, absolute or relative to the project root.
            compute_step: Called as compute_step(path, text). Defaults to summarize_file.
            options: Pass options.
        """
        ids = [self.normalize_path(p) for p in paths]
        return self.scheduler.process(ids, compute_step or summarize_file, options)

    def dependents_of(self, paths: Iterable[str]) -> List[str]:
        """Transitive dependents of the given files, sorted."""
        dependents = set()
        for path in paths:
            dependents |= self.scheduler.graph.transitive_dependents(self.normalize_path(path))
        return sorted(dependents)

    def remove(self, paths: Iterable[str]) -> List[str]:
        """Drop cached files (e.g. deleted on disk), invalidating their dependents."""
        return self.scheduler.remove_items(self.normalize_path(p) for p in paths)

    def clear(self, patterns: Optional[Iterable[str]] = None) -> List[str]:
        """Bust cached files matching glob patterns; no patterns clears everything.

        A pattern matches when it matches either the absolute path or the
        path relative to the project root.
        """
        pattern_list = list(patterns or [])
        if not pattern_list:
            return self.scheduler.clear()

        def matches(item_id: str) -> bool:
            relative = self.relative_path(item_id)
            return any(
                fnmatchcase(item_id, pattern) or fnmatchcase(relative, pattern)
                for pattern in pattern_list
            )

        return self.scheduler.clear_matching(matches)

    def get_metrics(self) -> Dict[str, Any]:
        """Cumulative metrics plus cache size."""
        metrics = self.store.metrics.to_dict()
        metrics["cache_size"] = len(self.store)
        metrics["dependency_count"] = len(self.scheduler.graph.copy_dependencies())
        return metrics

    def debug_cache(self) -> Dict[str, Any]:
        """Snapshot of the cache state for debugging."""
        dependencies = self.scheduler.graph.copy_dependencies()
        return {
            "cached_items": len(self.store),
            "dependency_count": len(dependencies),
            "hit_ratio": self.store.metrics.hit_ratio,
            "dependencies": {
                item_id: sorted(deps) for item_id, deps in sorted(dependencies.items())
            },
            "stale": {
                item_id: self.store.stale_reason(item_id)
                for item_id in sorted(self.store.ids())
                if self.store.stale_reason(item_id) is not None
            },
        }

    def save(self) -> bool:
        return self.scheduler.flush()

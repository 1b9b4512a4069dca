# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""IncrementalCacheService - business logic layer behind the MCP server.

Owns one store/graph/scheduler per call site and the optional watcher:
- FileBatchProcessor: project files, persisted JSON index
- LayoutNodeProcessor: layout trees, in-memory unless persist_layout_cache
- FileWatcher: records changed paths for process_pending_changes()
- MetricsRecorder: per-batch telemetry under the data root

There is no process-wide cache state: every consumer receives the service
(or one of its processors) explicitly.
"""

import logging
import os
import threading
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set

from incremental_cache.config import Config
from incremental_cache.extractors import ExtractorRegistry
from incremental_cache.file_processing import FileBatchProcessor, FileComputeStep
from incremental_cache.file_watcher import FileWatcher
from incremental_cache.layout import LayoutCompute, LayoutNodeProcessor
from incremental_cache.metrics import MetricsRecorder
from incremental_cache.models import BatchResult, ProcessOptions
from incremental_cache.storage import InMemoryCacheStore, JsonCacheStore

logger = logging.getLogger(__name__)

SITE_FILES = "files"
SITE_LAYOUT = "layout"
SITE_ALL = "all"

_MAX_FILEPATH_LENGTH = 4096


class IncrementalCacheService:
    """Business logic coordinator for incremental processing.

    Supports dependency injection for testing while providing sensible
    defaults for production use.

    Usage:
        service = IncrementalCacheService(Config(), project_root="/path/to/project")
        batch = service.process_files(["README.md"])
        service.shutdown()
    """

    def __init__(
        self,
        config: Config,
        project_root: Optional[str] = None,
        file_watcher: Optional[FileWatcher] = None,
        registry: Optional[ExtractorRegistry] = None,
        metrics_recorder: Optional[MetricsRecorder] = None,
        session_id: Optional[str] = None,
        data_root: Optional[Path] = None,
    ):
        """Initialize the service.

        Args:
            config: Configuration object
            project_root: Base for relative paths and watch root (default: cwd)
            file_watcher: FileWatcher instance (default: creates new watcher)
            registry: Extractor registry (default: every built-in extractor)
            metrics_recorder: MetricsRecorder instance (default: creates one when
                             enable_metrics_logging is on)
            session_id: Session ID for metrics filenames. If None, a UUID is used.
            data_root: Root directory for logs. If None, ~/.incremental_cache/ is used.
        """
        self.config = config
        self._project_root = Path(project_root).resolve() if project_root else Path.cwd().resolve()
        self._cache_path = config.cache_path(self._project_root)

        self.files = FileBatchProcessor(
            cache_dir=self._cache_path,
            index_filename=config.index_filename,
            project_root=self._project_root,
            registry=registry,
            flush_interval=config.flush_interval,
        )

        if config.persist_layout_cache:
            layout_store = JsonCacheStore(self._cache_path / config.layout_index_filename)
            layout_store.load()
        else:
            layout_store = InMemoryCacheStore()
        self.layout = LayoutNodeProcessor(store=layout_store, flush_interval=config.flush_interval)

        ignore_patterns = set(config.ignore_patterns)
        ignore_patterns.add(Path(config.cache_dir).name)
        self._file_watcher = (
            file_watcher
            if file_watcher is not None
            else FileWatcher(
                project_root=str(self._project_root),
                watch_extensions=config.watch_extensions,
                user_ignore_patterns=ignore_patterns,
            )
        )
        self._pending_lock = threading.Lock()
        self._pending_changes: Set[str] = set()
        self._file_watcher.register_change_callback(self._record_change)
        self._watcher_running = False

        if metrics_recorder is not None:
            self._metrics_recorder: Optional[MetricsRecorder] = metrics_recorder
        elif config.enable_metrics_logging:
            self._metrics_recorder = MetricsRecorder(data_root=data_root, session_id=session_id)
        else:
            self._metrics_recorder = None

        logger.info(
            f"IncrementalCacheService initialized with project_root={self._project_root}, "
            f"cache_dir={self._cache_path}"
        )

    @property
    def project_root(self) -> Path:
        return self._project_root

    def _validate_filepath(self, filepath: str) -> None:
        """Validate a caller-supplied path.

        Raises:
            ValueError: If the path is empty, too long or contains control characters.
        """
        if not filepath:
            raise ValueError("Empty filepath")
        if any(ord(c) < 32 for c in filepath):
            raise ValueError("Invalid characters in filepath")
        if len(filepath) > _MAX_FILEPATH_LENGTH:
            raise ValueError(f"Filepath too long: {len(filepath)} > {_MAX_FILEPATH_LENGTH}")

    def _options(
        self, continue_on_error: Optional[bool] = None, force: bool = False
    ) -> ProcessOptions:
        return ProcessOptions(
            continue_on_error=(
                self.config.continue_on_error if continue_on_error is None else continue_on_error
            ),
            force=force,
        )

    def _record_batch(self, site: str, batch: BatchResult) -> None:
        if self._metrics_recorder is None:
            return
        try:
            self._metrics_recorder.record(site, batch.metrics)
        except OSError as e:
            logger.error(f"Failed to write batch metrics: {e}")

    # ------------------------------------------------------------------
    # File processing
    # ------------------------------------------------------------------

    def process_files(
        self,
        paths: Iterable[str],
        compute_step: Optional[FileComputeStep] = None,
        options: Optional[ProcessOptions] = None,
    ) -> BatchResult:
        """Process files through the incremental cache.

        Args:
            paths: File paths, absolute or relative to the project root.
            compute_step: compute_step(path, text); defaults to summarize_file.
            options: Pass options; defaults follow the configuration.
        """
        path_list = list(paths)
        for path in path_list:
            self._validate_filepath(path)
        batch = self.files.process(path_list, compute_step, options or self._options())
        self._record_batch(SITE_FILES, batch)
        return batch

    def discover_files(self, directory: Optional[str] = None) -> List[str]:
        """Supported, non-ignored files below a directory (default: project root)."""
        root = Path(directory) if directory else self._project_root
        if not root.is_absolute():
            root = self._project_root / root

        found: List[str] = []
        for dirpath, dirnames, filenames in os.walk(root):
            dirnames[:] = sorted(
                d
                for d in dirnames
                if not self._file_watcher.should_ignore(os.path.join(dirpath, d))
            )
            for filename in sorted(filenames):
                path = os.path.join(dirpath, filename)
                if not self._file_watcher.is_supported_file(path):
                    continue
                if not self._file_watcher.should_ignore(path):
                    found.append(path)
        return found

    def process_directory(
        self,
        directory: Optional[str] = None,
        compute_step: Optional[FileComputeStep] = None,
        options: Optional[ProcessOptions] = None,
    ) -> BatchResult:
        """Process every supported file below a directory."""
        return self.process_files(self.discover_files(directory), compute_step, options)

    # ------------------------------------------------------------------
    # Layout processing
    # ------------------------------------------------------------------

    def process_layout(
        self,
        tree: Dict[str, Any],
        compute: LayoutCompute,
        options: Optional[ProcessOptions] = None,
    ) -> BatchResult:
        """Process a layout tree; see LayoutNodeProcessor.process()."""
        batch = self.layout.process(tree, compute, options or self._options())
        self._record_batch(SITE_LAYOUT, batch)
        return batch

    # ------------------------------------------------------------------
    # Watch mode
    # ------------------------------------------------------------------

    def _record_change(self, file_path: str) -> None:
        with self._pending_lock:
            self._pending_changes.add(file_path)

    def start_watching(self) -> None:
        """Start the file watcher; changes queue up for process_pending_changes()."""
        if not self._watcher_running:
            self._file_watcher.start()
            self._watcher_running = True

    def stop_watching(self) -> None:
        if self._watcher_running:
            self._file_watcher.stop()
            self._watcher_running = False

    def pending_changes(self) -> List[str]:
        with self._pending_lock:
            return sorted(self._pending_changes)

    def process_pending_changes(
        self, compute_step: Optional[FileComputeStep] = None
    ) -> Optional[BatchResult]:
        """Process changed files and their transitive dependents.

        Vanished files that were never cached are dropped silently. Always
        continues past individual failures.

        Returns:
            BatchResult, or None if nothing changed.
        """
        with self._pending_lock:
            changed = sorted(self._pending_changes)
            self._pending_changes.clear()

        if not changed:
            return None

        batch_paths: List[str] = []
        for path in changed:
            item_id = self.files.normalize_path(path)
            if os.path.exists(item_id) or self.files.store.get(item_id) is not None:
                batch_paths.append(item_id)
        batch_paths.extend(self.files.dependents_of(batch_paths))

        if not batch_paths:
            return None

        logger.info(
            f"Processing {len(changed)} changed file(s), {len(batch_paths)} item(s) in batch"
        )
        return self.process_files(
            batch_paths, compute_step, ProcessOptions(continue_on_error=True)
        )

    # ------------------------------------------------------------------
    # Cache management and introspection
    # ------------------------------------------------------------------

    def clear_cache(
        self, patterns: Optional[List[str]] = None, site: str = SITE_FILES
    ) -> Dict[str, List[str]]:
        """Bust cached entries by glob pattern; no patterns clears everything.

        Args:
            patterns: Glob patterns matched against item ids.
            site: "files", "layout" or "all".

        Returns:
            Removed ids per call site.

        Raises:
            ValueError: If site is unknown.
        """
        if site not in (SITE_FILES, SITE_LAYOUT, SITE_ALL):
            raise ValueError(f"Unknown cache site: {site}")

        removed: Dict[str, List[str]] = {}
        if site in (SITE_FILES, SITE_ALL):
            removed[SITE_FILES] = self.files.clear(patterns)
        if site in (SITE_LAYOUT, SITE_ALL):
            if patterns:
                removed[SITE_LAYOUT] = self.layout.scheduler.clear(patterns)
            else:
                removed[SITE_LAYOUT] = self.layout.clear()
        return removed

    def get_metrics(self) -> Dict[str, Dict[str, Any]]:
        """Cumulative metrics of both call sites, identical shape."""
        return {
            SITE_FILES: self.files.get_metrics(),
            SITE_LAYOUT: self.layout.get_metrics(),
        }

    def debug_cache(self) -> Dict[str, Any]:
        """Cache state snapshot: sizes, hit ratios and dependency lists."""
        snapshot = self.files.debug_cache()
        snapshot["index_path"] = str(self.files.store.index_path)
        snapshot["layout"] = {
            "cached_items": len(self.layout.store.ids()),
            "hit_ratio": self.layout.store.metrics.hit_ratio,
        }
        snapshot["pending_changes"] = self.pending_changes()
        return snapshot

    def shutdown(self) -> None:
        """Stop watching and make a best-effort final save of both caches."""
        logger.info("IncrementalCacheService shutting down...")
        self.stop_watching()

        if not self.files.save():
            logger.error("Final save of the file cache failed")
        if not self.layout.scheduler.flush():
            logger.error("Final save of the layout cache failed")

        logger.info("IncrementalCacheService shutdown complete")

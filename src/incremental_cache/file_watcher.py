# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""File system watcher feeding changed paths to the file-processing call site.

- Watchdog library for cross-platform file watching
- Timestamp-only tracking (no processing on the watcher thread)
- Suffix filter taken from Config.watch_extensions
- .gitignore, hardcoded and user ignore patterns
- Change callbacks on create/modify/delete/move

Processing happens later, on the caller's thread, through
IncrementalCacheService.process_pending_changes(). Callbacks run on the
watchdog thread and must return quickly.

Known Limitations:
- file_event_timestamps grows with every distinct path seen
- Symlinks are followed by watchdog; resolved paths are not checked
  against project_root
"""

import fnmatch
import logging
import time
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Dict, Iterable, List, Optional, Set

from watchdog.events import FileMovedEvent, FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

if TYPE_CHECKING:
    from watchdog.observers.api import BaseObserver

logger = logging.getLogger(__name__)

# Callback signature: (filepath: str) -> None
ChangeCallback = Callable[[str], None]

DEFAULT_WATCH_EXTENSIONS = (".md", ".markdown", ".css", ".js", ".html")


class FileWatcher:
    """Watches a project tree and reports changed files.

    Thread Safety:
    - file_event_timestamps: Simple dict operations protected by GIL

    Usage:
        watcher = FileWatcher(project_root="/path/to/project", watch_extensions=[".md"])
        watcher.register_change_callback(pending.add)
        watcher.start()
        ...
        watcher.stop()
    """

    ALWAYS_IGNORED = {
        ".git",
        "__pycache__",
        ".venv",
        "venv",
        "node_modules",
        ".tox",
        ".pytest_cache",
        ".mypy_cache",
        ".incremental_cache",
    }

    # Sensitive files that should never be watched
    SENSITIVE_PATTERNS = {
        ".env",
        ".env.*",
        "credentials.json",
        "*.key",
        "*.pem",
        "*.p12",
        "*.pfx",
        "*_secret",
        "id_rsa",
        "id_ed25519",
        "secrets.yaml",
        "secrets.yml",
        ".npmrc",
        ".pypirc",
        ".aws",
    }

    def __init__(
        self,
        project_root: str,
        watch_extensions: Optional[Iterable[str]] = None,
        gitignore_path: Optional[str] = None,
        user_ignore_patterns: Optional[Set[str]] = None,
    ):
        """Initialize FileWatcher.

        Args:
            project_root: Root directory to watch.
            watch_extensions: Suffixes to report (with dot, case-insensitive).
            gitignore_path: Path to .gitignore file (defaults to {project_root}/.gitignore)
            user_ignore_patterns: Additional user-configured ignore patterns
        """
        self.project_root = Path(project_root).resolve()
        self.watch_extensions = {
            ext.lower() for ext in (watch_extensions or DEFAULT_WATCH_EXTENSIONS)
        }
        self.gitignore_path = (
            Path(gitignore_path) if gitignore_path else self.project_root / ".gitignore"
        )
        self.user_ignore_patterns = user_ignore_patterns or set()

        self.file_event_timestamps: Dict[str, float] = {}

        self._gitignore_patterns: Set[str] = self._load_gitignore()
        self._change_callbacks: List[ChangeCallback] = []

        self._observer: Optional["BaseObserver"] = None
        self._event_handler = _FileEventHandler(self)

        logger.info(f"FileWatcher initialized for {self.project_root}")
        logger.debug(f"Loaded {len(self._gitignore_patterns)} .gitignore patterns")

    def _load_gitignore(self) -> Set[str]:
        """Load .gitignore patterns; empty lines, comments and overlong lines are skipped."""
        patterns: Set[str] = set()

        if not self.gitignore_path.exists():
            logger.debug(f"No .gitignore found at {self.gitignore_path}")
            return patterns

        try:
            with open(self.gitignore_path, encoding="utf-8") as f:
                for line_num, line in enumerate(f, 1):
                    line = line.strip()
                    if not line or line.startswith("#"):
                        continue
                    if len(line) > 1000:
                        logger.warning(
                            f".gitignore line {line_num}: Pattern too long (>1000 chars), skipping"
                        )
                        continue
                    # "dist/" ignores the directory and everything below it
                    patterns.add(line.rstrip("/"))
        except (FileNotFoundError, PermissionError) as e:
            logger.warning(f"Failed to load .gitignore: {e}")
        except UnicodeDecodeError as e:
            logger.error(f"Failed to decode .gitignore (encoding error): {e}")
        except OSError as e:
            logger.error(f"Failed to read .gitignore: {e}")

        return patterns

    @staticmethod
    def _matches_pattern(path: Path, rel_path_str: str, pattern: str) -> bool:
        if "*" in pattern or "?" in pattern:
            if fnmatch.fnmatch(rel_path_str, pattern) or fnmatch.fnmatch(path.name, pattern):
                return True
            return any(fnmatch.fnmatch(part, pattern) for part in path.parts)
        return path.name == pattern or pattern in path.parts

    def should_ignore(self, file_path: str) -> bool:
        """Check if a file should be ignored.

        Args:
            file_path: Absolute or relative file path

        Returns:
            True if file should be ignored
        """
        path = Path(file_path)
        try:
            rel_path = path.relative_to(self.project_root)
            rel_path_str = str(rel_path)
            rel_parts = Path(rel_path_str)
        except ValueError:
            rel_path_str = str(path)
            rel_parts = path

        for pattern in self.ALWAYS_IGNORED:
            if self._matches_pattern(rel_parts, rel_path_str, pattern):
                return True

        for pattern in self.SENSITIVE_PATTERNS:
            if self._matches_pattern(rel_parts, rel_path_str, pattern):
                logger.debug(f"Ignoring sensitive file/directory: {path.name}")
                return True

        for pattern in self._gitignore_patterns | self.user_ignore_patterns:
            if self._matches_pattern(rel_parts, rel_path_str, pattern):
                return True

        return False

    def is_supported_file(self, file_path: str) -> bool:
        """Check if the file suffix is one of watch_extensions."""
        return Path(file_path).suffix.lower() in self.watch_extensions

    def register_change_callback(self, callback: ChangeCallback) -> None:
        """Register a callback invoked with the path of every changed file.

        Callbacks run synchronously on the watcher thread and should only
        record the path.
        """
        if callback not in self._change_callbacks:
            self._change_callbacks.append(callback)
            logger.debug(f"Registered change callback: {callback}")

    def unregister_change_callback(self, callback: ChangeCallback) -> None:
        if callback in self._change_callbacks:
            self._change_callbacks.remove(callback)
            logger.debug(f"Unregistered change callback: {callback}")

    def _notify_change_callbacks(self, file_path: str) -> None:
        for callback in self._change_callbacks:
            try:
                callback(file_path)
            except Exception as e:
                # One failing callback must not starve the others
                logger.error(f"Change callback failed for {file_path}: {e}")

    def record_change(self, file_path: str) -> bool:
        """Filter a path, timestamp it and notify callbacks.

        Returns:
            True if the path was reported, False if it was filtered out.
        """
        if self.should_ignore(file_path) or not self.is_supported_file(file_path):
            return False
        self.file_event_timestamps[file_path] = time.time()
        self._notify_change_callbacks(file_path)
        return True

    def get_timestamp(self, file_path: str) -> Optional[float]:
        """Last event timestamp for a file, or None if no events recorded."""
        return self.file_event_timestamps.get(file_path)

    def start(self) -> None:
        """Start watching file system.

        Raises:
            RuntimeError: If watcher is already running
        """
        if self._observer is not None and self._observer.is_alive():
            raise RuntimeError("FileWatcher is already running")

        self._observer = Observer()
        self._observer.schedule(  # type: ignore  # watchdog types vary by version
            self._event_handler, str(self.project_root), recursive=True
        )
        self._observer.start()  # type: ignore  # watchdog types vary by version

        logger.info(f"FileWatcher started, monitoring {self.project_root}")

    def stop(self) -> None:
        """Stop watching; blocks until the observer thread terminates (with timeout)."""
        if self._observer is not None and self._observer.is_alive():
            self._observer.stop()  # type: ignore  # watchdog types vary by version
            self._observer.join(timeout=5.0)
            logger.info("FileWatcher stopped")

    def is_running(self) -> bool:
        return self._observer is not None and self._observer.is_alive()


class _FileEventHandler(FileSystemEventHandler):
    """Internal event handler for watchdog; delegates to FileWatcher."""

    def __init__(self, watcher: FileWatcher):
        super().__init__()
        self.watcher = watcher

    def _handle_path(self, file_path: str, event_type: str) -> None:
        if self.watcher.record_change(file_path):
            logger.debug(f"Event: {event_type} - {file_path}")

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._handle_path(str(event.src_path), event.event_type)

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._handle_path(str(event.src_path), event.event_type)

    def on_deleted(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._handle_path(str(event.src_path), event.event_type)

    def on_moved(self, event: FileSystemEvent) -> None:
        """Treated as delete (old path) + create (new path)."""
        if event.is_directory or not isinstance(event, FileMovedEvent):
            return
        self._handle_path(str(event.src_path), "moved_from")
        self._handle_path(str(event.dest_path), "moved_to")

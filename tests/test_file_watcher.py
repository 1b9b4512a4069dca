# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Tests for FileWatcher."""

import time

import pytest
from watchdog.events import (
    DirCreatedEvent,
    FileCreatedEvent,
    FileDeletedEvent,
    FileModifiedEvent,
    FileMovedEvent,
)

from incremental_cache.file_watcher import FileWatcher


class TestFileWatcherFiltering:
    """Tests for FileWatcher ignore rules and suffix filtering."""

    def test_initialization(self, tmp_path):
        """Test FileWatcher initialization."""
        watcher = FileWatcher(project_root=str(tmp_path))

        assert watcher.project_root == tmp_path.resolve()
        assert watcher.file_event_timestamps == {}
        assert not watcher.is_running()

    def test_gitignore_loading(self, tmp_path):
        """Test loading .gitignore patterns."""
        (tmp_path / ".gitignore").write_text(
            """
# Comment line
*.log
dist/
build

# Another comment
temp_*
"""
        )

        watcher = FileWatcher(project_root=str(tmp_path))

        assert watcher._gitignore_patterns == {"*.log", "dist", "build", "temp_*"}

    def test_gitignore_pattern_length_validation(self, tmp_path):
        """Test that overly long gitignore patterns are rejected."""
        valid_pattern = "a" * 1000
        invalid_pattern = "b" * 1001
        (tmp_path / ".gitignore").write_text(f"{valid_pattern}\n{invalid_pattern}\n*.log\n")

        watcher = FileWatcher(project_root=str(tmp_path))

        assert valid_pattern in watcher._gitignore_patterns
        assert invalid_pattern not in watcher._gitignore_patterns
        assert "*.log" in watcher._gitignore_patterns

    def test_should_ignore_always_ignored(self, tmp_path):
        """Test hardcoded always-ignored directories, including the cache itself."""
        watcher = FileWatcher(project_root=str(tmp_path))

        assert watcher.should_ignore(str(tmp_path / ".git" / "config.md"))
        assert watcher.should_ignore(str(tmp_path / "node_modules" / "pkg" / "index.js"))
        assert watcher.should_ignore(str(tmp_path / ".incremental_cache" / "index.json"))
        assert not watcher.should_ignore(str(tmp_path / "docs" / "guide.md"))

    def test_should_ignore_sensitive_files(self, tmp_path):
        """Test that credentials and keys are never reported."""
        watcher = FileWatcher(project_root=str(tmp_path))

        assert watcher.should_ignore(str(tmp_path / ".env"))
        assert watcher.should_ignore(str(tmp_path / ".env.local"))
        assert watcher.should_ignore(str(tmp_path / "certs" / "server.pem"))
        assert watcher.should_ignore(str(tmp_path / "secrets.yml"))

    def test_should_ignore_gitignore_and_user_patterns(self, tmp_path):
        """Test .gitignore and user-configured patterns."""
        (tmp_path / ".gitignore").write_text("dist/\n*.min.js\n")
        watcher = FileWatcher(project_root=str(tmp_path), user_ignore_patterns={"drafts"})

        assert watcher.should_ignore(str(tmp_path / "dist" / "app.js"))
        assert watcher.should_ignore(str(tmp_path / "js" / "vendor.min.js"))
        assert watcher.should_ignore(str(tmp_path / "drafts" / "post.md"))
        assert not watcher.should_ignore(str(tmp_path / "js" / "app.js"))

    def test_is_supported_file(self, tmp_path):
        """Test suffix filtering, case-insensitively."""
        watcher = FileWatcher(project_root=str(tmp_path), watch_extensions=[".md", ".CSS"])

        assert watcher.is_supported_file("README.MD")
        assert watcher.is_supported_file("site.css")
        assert not watcher.is_supported_file("app.js")
        assert not watcher.is_supported_file("Makefile")


class TestFileWatcherChanges:
    """Tests for change recording and callbacks."""

    def test_record_change(self, tmp_path):
        """Test that a supported change is timestamped and reported."""
        watcher = FileWatcher(project_root=str(tmp_path), watch_extensions=[".md"])
        seen = []
        watcher.register_change_callback(seen.append)
        path = str(tmp_path / "a.md")

        before = time.time()
        assert watcher.record_change(path)

        assert seen == [path]
        assert watcher.get_timestamp(path) >= before

    def test_filtered_changes_not_reported(self, tmp_path):
        """Test that ignored and unsupported files are dropped."""
        watcher = FileWatcher(project_root=str(tmp_path), watch_extensions=[".md"])
        seen = []
        watcher.register_change_callback(seen.append)

        assert not watcher.record_change(str(tmp_path / "image.png"))
        assert not watcher.record_change(str(tmp_path / ".git" / "notes.md"))
        assert seen == []
        assert watcher.get_timestamp(str(tmp_path / "image.png")) is None

    def test_callback_registration(self, tmp_path):
        """Test that callbacks register once and can be removed."""
        watcher = FileWatcher(project_root=str(tmp_path), watch_extensions=[".md"])
        seen = []
        watcher.register_change_callback(seen.append)
        watcher.register_change_callback(seen.append)

        watcher.record_change(str(tmp_path / "a.md"))
        watcher.unregister_change_callback(seen.append)
        watcher.record_change(str(tmp_path / "b.md"))

        assert seen == [str(tmp_path / "a.md")]

    def test_failing_callback_does_not_block_others(self, tmp_path, caplog):
        """Test that one failing callback does not stop the rest."""
        watcher = FileWatcher(project_root=str(tmp_path), watch_extensions=[".md"])
        seen = []

        def broken(path):
            raise RuntimeError("callback failure")

        watcher.register_change_callback(broken)
        watcher.register_change_callback(seen.append)

        watcher.record_change(str(tmp_path / "a.md"))

        assert seen == [str(tmp_path / "a.md")]
        assert "callback failure" in caplog.text


class TestFileEventHandler:
    """Tests for routing watchdog events."""

    @pytest.fixture
    def watcher(self, tmp_path):
        watcher = FileWatcher(project_root=str(tmp_path), watch_extensions=[".md"])
        watcher.seen = []
        watcher.register_change_callback(watcher.seen.append)
        return watcher

    def test_create_modify_delete(self, watcher, tmp_path):
        """Test that file events are reported."""
        handler = watcher._event_handler
        path = str(tmp_path / "a.md")

        handler.on_created(FileCreatedEvent(path))
        handler.on_modified(FileModifiedEvent(path))
        handler.on_deleted(FileDeletedEvent(path))

        assert watcher.seen == [path, path, path]

    def test_directory_events_ignored(self, watcher, tmp_path):
        """Test that directory events are not reported."""
        watcher._event_handler.on_created(DirCreatedEvent(str(tmp_path / "docs.md")))

        assert watcher.seen == []

    def test_move_reports_both_paths(self, watcher, tmp_path):
        """Test that a rename reports the old and the new path."""
        old = str(tmp_path / "old.md")
        new = str(tmp_path / "new.md")

        watcher._event_handler.on_moved(FileMovedEvent(old, new))

        assert watcher.seen == [old, new]


class TestFileWatcherLifecycle:
    """Tests for starting and stopping the observer."""

    def test_start_and_stop(self, tmp_path):
        """Test starting and stopping the watcher."""
        watcher = FileWatcher(project_root=str(tmp_path))

        watcher.start()
        try:
            assert watcher.is_running()
        finally:
            watcher.stop()

        assert not watcher.is_running()

    def test_start_already_running(self, tmp_path):
        """Test that starting twice raises RuntimeError."""
        watcher = FileWatcher(project_root=str(tmp_path))
        watcher.start()
        try:
            with pytest.raises(RuntimeError):
                watcher.start()
        finally:
            watcher.stop()

    def test_file_create_event(self, tmp_path):
        """Test that a real file creation reaches the callbacks."""
        watcher = FileWatcher(project_root=str(tmp_path), watch_extensions=[".md"])
        seen = []
        watcher.register_change_callback(seen.append)
        watcher.start()
        try:
            time.sleep(0.1)
            (tmp_path / "new.md").write_text("# New")

            deadline = time.time() + 5.0
            while not seen and time.time() < deadline:
                time.sleep(0.05)
        finally:
            watcher.stop()

        assert str(tmp_path.resolve() / "new.md") in seen

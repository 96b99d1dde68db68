"""
Unit tests for pattern_guard.index.watcher

watchdog events are simulated with MagicMock objects; the observer itself
is patched out in the lifecycle tests.
"""

from __future__ import annotations

import os
import threading
from unittest.mock import MagicMock, patch

import pytest

from pattern_guard.index.models import EventKind, FileEvent
from pattern_guard.index.watcher import KBFileHandler, KBWatcher

ROOT = os.path.abspath(os.path.join(os.sep, "tmp", "project"))


def _p(*parts: str) -> str:
    return os.path.join(ROOT, *parts)


def _event(src: str, dest: str = None, is_directory: bool = False):
    event = MagicMock()
    event.is_directory = is_directory
    event.src_path = src
    event.dest_path = dest
    return event


@pytest.fixture
def received():
    return []


@pytest.fixture
def handler(received):
    return KBFileHandler(received.append, ROOT, debounce_seconds=0)


# ---------------------------------------------------------------------------
# Filtering
# ---------------------------------------------------------------------------

class TestFiltering:

    def test_ignores_directories(self, handler, received):
        handler.on_created(_event(_p("src"), is_directory=True))
        handler.on_deleted(_event(_p("src"), is_directory=True))
        assert received == []

    def test_ignores_skip_dirs_hidden_and_unsupported(self, handler, received):
        handler.on_modified(_event(_p("node_modules", "lib", "index.js")))
        handler.on_modified(_event(_p(".git", "hooks", "pre-commit.py")))
        handler.on_modified(_event(_p("README.md")))
        handler.on_modified(_event(os.path.join(os.sep, "elsewhere", "x.py")))
        assert received == []

    def test_relative_posix_path(self, handler, received):
        handler.on_modified(_event(_p("src", "app.py")))
        assert received == [FileEvent(EventKind.MODIFIED, "src/app.py")]

    def test_applies_include_exclude_and_gitignore(self, tmp_path, received):
        (tmp_path / ".gitignore").write_text("scratch/\n*_pb2.py\n")
        root = str(tmp_path)
        handler = KBFileHandler(
            received.append, root, debounce_seconds=0,
            include=["src/**", "generated/**"], exclude=["generated/**"],
        )
        handler.on_modified(_event(os.path.join(root, "generated", "gen.py")))
        handler.on_modified(_event(os.path.join(root, "src", "scratch", "tmp.py")))
        handler.on_modified(_event(os.path.join(root, "src", "api_pb2.py")))
        handler.on_modified(_event(os.path.join(root, "tools", "build.py")))
        handler.on_modified(_event(os.path.join(root, "src", "app.py")))
        assert received == [FileEvent(EventKind.MODIFIED, "src/app.py")]

    def test_move_into_excluded_dir_is_delete(self, tmp_path, received):
        root = str(tmp_path)
        handler = KBFileHandler(received.append, root, debounce_seconds=0,
                                exclude=["generated/**"])
        handler.on_moved(_event(os.path.join(root, "a.py"),
                                os.path.join(root, "generated", "a.py")))
        assert received == [FileEvent(EventKind.DELETED, "a.py")]


# ---------------------------------------------------------------------------
# Event translation
# ---------------------------------------------------------------------------

class TestTranslation:

    def test_created_and_deleted(self, handler, received):
        handler.on_created(_event(_p("a.py")))
        handler.on_deleted(_event(_p("a.py")))
        assert [e.kind for e in received] == [EventKind.CREATED, EventKind.DELETED]

    def test_move_within_project(self, handler, received):
        handler.on_moved(_event(_p("a.py"), _p("pkg", "b.py")))
        assert received == [FileEvent(EventKind.MOVED, "a.py", "pkg/b.py")]

    def test_move_to_unsupported_is_delete(self, handler, received):
        handler.on_moved(_event(_p("a.py"), _p("a.py.bak")))
        assert received == [FileEvent(EventKind.DELETED, "a.py")]

    def test_move_from_unsupported_is_create(self, handler, received):
        handler.on_moved(_event(_p("a.tmp"), _p("a.py")))
        assert received == [FileEvent(EventKind.CREATED, "a.py")]

    def test_sink_errors_are_logged_not_raised(self):
        sink = MagicMock(side_effect=RuntimeError("boom"))
        handler = KBFileHandler(sink, ROOT, debounce_seconds=0)
        handler.on_modified(_event(_p("a.py")))
        sink.assert_called_once()


# ---------------------------------------------------------------------------
# Debouncing
# ---------------------------------------------------------------------------

class TestDebounce:

    def test_burst_collapses_to_latest(self, received):
        handler = KBFileHandler(received.append, ROOT, debounce_seconds=30)
        handler.on_created(_event(_p("a.py")))
        handler.on_modified(_event(_p("a.py")))
        handler.on_modified(_event(_p("a.py")))
        assert received == []
        assert handler.pending() == ["a.py"]

        handler.flush()
        assert received == [FileEvent(EventKind.MODIFIED, "a.py")]
        assert handler.pending() == []

    def test_delete_cancels_pending_modify(self, received):
        handler = KBFileHandler(received.append, ROOT, debounce_seconds=30)
        handler.on_modified(_event(_p("a.py")))
        handler.on_deleted(_event(_p("a.py")))
        assert received == [FileEvent(EventKind.DELETED, "a.py")]
        handler.flush()
        assert len(received) == 1

    def test_move_cancels_pending_for_both_paths(self, received):
        handler = KBFileHandler(received.append, ROOT, debounce_seconds=30)
        handler.on_modified(_event(_p("a.py")))
        handler.on_modified(_event(_p("b.py")))
        handler.on_moved(_event(_p("a.py"), _p("b.py")))
        assert handler.pending() == []
        assert received == [FileEvent(EventKind.MOVED, "a.py", "b.py")]

    def test_timer_delivers_after_quiet_period(self):
        delivered = threading.Event()
        received = []

        def sink(event):
            received.append(event)
            delivered.set()

        handler = KBFileHandler(sink, ROOT, debounce_seconds=0.05)
        handler.on_modified(_event(_p("a.py")))
        assert delivered.wait(timeout=5)
        assert received == [FileEvent(EventKind.MODIFIED, "a.py")]
        assert handler.pending() == []


# ---------------------------------------------------------------------------
# KBWatcher lifecycle
# ---------------------------------------------------------------------------

class TestKBWatcher:

    def test_initial_state(self, tmp_path):
        watcher = KBWatcher(MagicMock(), str(tmp_path))
        assert not watcher.is_running

    def test_stop_when_not_started(self, tmp_path):
        """stop() should be safe to call before start()."""
        watcher = KBWatcher(MagicMock(), str(tmp_path))
        watcher.stop()
        assert not watcher.is_running

    @patch("pattern_guard.index.watcher.Observer")
    def test_start_schedules_recursive_observer(self, mock_observer_cls, tmp_path):
        observer = mock_observer_cls.return_value
        observer.is_alive.return_value = False
        watcher = KBWatcher(MagicMock(), str(tmp_path))
        watcher.start()
        args, kwargs = observer.schedule.call_args
        assert args[1] == os.path.abspath(str(tmp_path))
        assert kwargs["recursive"] is True
        observer.start.assert_called_once()

    @patch("pattern_guard.index.watcher.Observer")
    def test_stop_flushes_pending(self, mock_observer_cls, tmp_path):
        observer = mock_observer_cls.return_value
        observer.is_alive.return_value = False
        sink = MagicMock()
        watcher = KBWatcher(sink, str(tmp_path), debounce_seconds=30)
        watcher.start()
        watcher.handler.on_modified(_event(str(tmp_path / "a.py")))
        watcher.stop()
        observer.stop.assert_called_once()
        sink.assert_called_once_with(FileEvent(EventKind.MODIFIED, "a.py"))

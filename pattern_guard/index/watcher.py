"""
File watcher for incremental index updates.

Uses watchdog to monitor the repository and turns its events into
:class:`~pattern_guard.index.models.FileEvent` objects for a sink (normally
``PatternGuard.handle_event``).  Bursts of modifications to one file, such as
editor auto-saves, are collapsed: the event is delivered once the file has
been quiet for ``debounce_seconds``.
"""

from __future__ import annotations

import logging
import os
import threading
from typing import Callable, Optional

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from .indexer import ignore_patterns, is_indexable
from .models import EventKind, FileEvent

logger = logging.getLogger(__name__)


class KBFileHandler:
    """
    Watchdog-compatible event handler that emits debounced FileEvents.

    Parameters
    ----------
    sink:
        Callable receiving each :class:`FileEvent`.
    project_root:
        Absolute path to the project root (used to compute relative paths).
    debounce_seconds:
        Quiet period before a created/modified event is delivered.
    include, exclude:
        The indexer's include / exclude globs; events for other paths are
        dropped.
    """

    def __init__(
        self,
        sink: Callable[[FileEvent], object],
        project_root: str,
        debounce_seconds: float = 0.5,
        include: Optional[list[str]] = None,
        exclude: Optional[list[str]] = None,
    ) -> None:
        self._sink = sink
        self._project_root = os.path.abspath(project_root)
        self._debounce = debounce_seconds
        self._include = include
        self._exclude = exclude
        self._timers: dict[str, threading.Timer] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Watchdog event dispatch
    # ------------------------------------------------------------------

    def on_modified(self, event) -> None:  # type: ignore[override]
        if not event.is_directory:
            self._schedule(event.src_path, EventKind.MODIFIED)

    def on_created(self, event) -> None:  # type: ignore[override]
        if not event.is_directory:
            self._schedule(event.src_path, EventKind.CREATED)

    def on_deleted(self, event) -> None:  # type: ignore[override]
        if event.is_directory:
            return
        rel = self._accept(event.src_path)
        if rel is None:
            return
        self._cancel(rel)
        self._deliver(FileEvent(EventKind.DELETED, rel))

    def on_moved(self, event) -> None:  # type: ignore[override]
        if event.is_directory:
            return
        src = self._accept(event.src_path)
        dest = self._accept(event.dest_path)
        if src is not None:
            self._cancel(src)
        if src is not None and dest is not None:
            self._cancel(dest)
            self._deliver(FileEvent(EventKind.MOVED, src, dest))
        elif src is not None:
            self._deliver(FileEvent(EventKind.DELETED, src))
        elif dest is not None:
            self._schedule(event.dest_path, EventKind.CREATED)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _rel_path(self, abs_path: str) -> Optional[str]:
        """Convert *abs_path* to a project-relative POSIX path, or None if outside."""
        try:
            rel = os.path.relpath(abs_path, self._project_root)
        except ValueError:
            return None
        if rel.startswith(".."):
            return None
        return rel.replace(os.sep, "/")

    def _accept(self, abs_path: str) -> Optional[str]:
        """Return the relative path if this file should be processed."""
        rel = self._rel_path(abs_path)
        if rel is None:
            return None
        ignored = ignore_patterns(self._project_root, self._exclude)
        if not is_indexable(rel, self._include, ignored):
            return None
        return rel

    def _schedule(self, abs_path: str, kind: str) -> None:
        rel = self._accept(abs_path)
        if rel is None:
            return
        event = FileEvent(kind, rel)
        if self._debounce <= 0:
            self._deliver(event)
            return
        timer = threading.Timer(self._debounce, self._fire, args=(rel, event))
        timer.daemon = True
        with self._lock:
            previous = self._timers.pop(rel, None)
            if previous is not None:
                previous.cancel()
            self._timers[rel] = timer
        timer.start()

    def _fire(self, rel: str, event: FileEvent) -> None:
        with self._lock:
            timer = self._timers.get(rel)
            if timer is None or timer.args[1] is not event:
                return
            del self._timers[rel]
        self._deliver(event)

    def _cancel(self, rel: str) -> None:
        with self._lock:
            timer = self._timers.pop(rel, None)
        if timer is not None:
            timer.cancel()

    def _deliver(self, event: FileEvent) -> None:
        logger.info("[watcher] %s: %s", event.kind, event.path)
        try:
            self._sink(event)
        except Exception as exc:
            logger.warning("[watcher] Error processing %s: %s", event.path, exc)

    def flush(self) -> None:
        """Deliver every pending debounced event immediately."""
        with self._lock:
            pending = list(self._timers.items())
            self._timers.clear()
        for rel, timer in sorted(pending):
            timer.cancel()
            self._deliver(timer.args[1])

    def pending(self) -> list[str]:
        with self._lock:
            return sorted(self._timers)


class _WatchdogAdapter(FileSystemEventHandler):
    """Adapt a :class:`KBFileHandler` to watchdog's interface."""

    def __init__(self, handler: KBFileHandler) -> None:
        super().__init__()
        self._h = handler

    def on_modified(self, event):
        self._h.on_modified(event)

    def on_created(self, event):
        self._h.on_created(event)

    def on_deleted(self, event):
        self._h.on_deleted(event)

    def on_moved(self, event):
        self._h.on_moved(event)


class KBWatcher:
    """
    High-level wrapper around watchdog that monitors a project directory.

    Usage::

        watcher = KBWatcher(engine.handle_event, project_root="/path/to/project")
        watcher.start_background()
        ...
        watcher.stop()

    Parameters
    ----------
    sink:
        Callable receiving each :class:`FileEvent`.
    project_root:
        Directory to watch.
    debounce_seconds:
        Quiet period before a modification is delivered.
    include, exclude:
        Path globs forwarded to :class:`KBFileHandler`.
    """

    def __init__(
        self,
        sink: Callable[[FileEvent], object],
        project_root: str,
        debounce_seconds: float = 0.5,
        include: Optional[list[str]] = None,
        exclude: Optional[list[str]] = None,
    ) -> None:
        self._project_root = os.path.abspath(project_root)
        self._observer: Optional[object] = None
        self._handler = KBFileHandler(sink, project_root, debounce_seconds, include, exclude)
        self._started = threading.Event()

    @property
    def handler(self) -> KBFileHandler:
        return self._handler

    @property
    def is_running(self) -> bool:
        return self._observer is not None

    def start(self) -> None:
        """
        Start watching the project directory.

        Blocks until :meth:`stop` is called.  For non-blocking use, call
        :meth:`start_background` instead.
        """
        observer = Observer()
        observer.schedule(_WatchdogAdapter(self._handler), self._project_root, recursive=True)
        observer.start()
        self._observer = observer
        self._started.set()
        logger.info("[watcher] Watching %s", self._project_root)

        try:
            while observer.is_alive():
                observer.join(timeout=1)
        except KeyboardInterrupt:
            observer.stop()
        observer.join()

    def start_background(self, wait: float = 5.0) -> None:
        """Start the watcher in a background daemon thread."""
        t = threading.Thread(target=self.start, daemon=True, name="pattern-guard-watcher")
        t.start()
        self._started.wait(timeout=wait)

    def stop(self) -> None:
        """Stop the observer and deliver any pending debounced events."""
        observer = self._observer
        self._observer = None
        if observer is not None:
            observer.stop()  # type: ignore[union-attr]
            logger.info("[watcher] Stopped")
        self._handler.flush()

"""
File watcher for incremental index updates.

Uses watchdog to monitor the project directory.  Events for indexable
files are buffered; each event restarts a short debounce timer, and when
the timer fires the whole batch goes to :meth:`Indexer.scan_paths` in one
call.  Scans are serialized, so a burst of editor saves never runs two
scans over the same stores at once.
"""

from __future__ import annotations

import logging
import os
import threading
from typing import Optional

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from .indexer import _SKIP_DIRS, is_source_file

logger = logging.getLogger(__name__)

DEFAULT_DEBOUNCE_SECONDS = 0.4


class CodeFileHandler(FileSystemEventHandler):
    """
    Watchdog event handler that buffers changed and removed paths.

    Parameters
    ----------
    watcher:
        Owning :class:`CodeWatcher`; receives the buffered paths.
    """

    def __init__(self, watcher: "CodeWatcher") -> None:
        super().__init__()
        self._watcher = watcher

    def on_modified(self, event) -> None:
        if not event.is_directory:
            self._watcher.record(event.src_path, removed=False)

    def on_created(self, event) -> None:
        if not event.is_directory:
            self._watcher.record(event.src_path, removed=False)

    def on_deleted(self, event) -> None:
        if not event.is_directory:
            self._watcher.record(event.src_path, removed=True)

    def on_moved(self, event) -> None:
        if not event.is_directory:
            self._watcher.record(event.src_path, removed=True)
            self._watcher.record(event.dest_path, removed=False)


class CodeWatcher:
    """
    Keep an :class:`Indexer` up to date while files change.

    Usage::

        watcher = CodeWatcher(indexer)
        watcher.start()   # non-blocking
        ...
        watcher.stop()

    Parameters
    ----------
    indexer:
        Configured :class:`~codekb.local.indexer.Indexer`.
    debounce_seconds:
        Quiet period after the last event before a scan runs.
    """

    def __init__(self, indexer, debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS) -> None:
        self._indexer = indexer
        self._project_root = os.path.abspath(indexer.project_root)
        self._debounce = debounce_seconds
        self._overrides = indexer.config.EXTENSION_OVERRIDES

        self._lock = threading.Lock()
        self._scan_lock = threading.Lock()
        self._changed: set[str] = set()
        self._removed: set[str] = set()
        self._timer: Optional[threading.Timer] = None
        self._observer: Optional[Observer] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start watching the project directory in a background thread."""
        if self._observer is not None:
            return
        observer = Observer()
        observer.schedule(CodeFileHandler(self), self._project_root, recursive=True)
        observer.daemon = True
        observer.start()
        self._observer = observer
        logger.info("[watcher] Watching %s", self._project_root)

    def stop(self) -> None:
        """Stop the observer and flush any buffered events."""
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None
        self.flush()
        logger.info("[watcher] Stopped")

    @property
    def is_running(self) -> bool:
        return self._observer is not None and self._observer.is_alive()

    # ------------------------------------------------------------------
    # Event buffering
    # ------------------------------------------------------------------

    def record(self, abs_path: str, removed: bool) -> None:
        """Buffer one event and restart the debounce timer."""
        rel_path = self._rel_path(abs_path)
        if rel_path is None or self._should_ignore(rel_path):
            return
        with self._lock:
            if removed:
                self._changed.discard(rel_path)
                self._removed.add(rel_path)
            else:
                self._removed.discard(rel_path)
                self._changed.add(rel_path)
            if self._timer is not None:
                self._timer.cancel()
            self._timer = threading.Timer(self._debounce, self.flush)
            self._timer.daemon = True
            self._timer.start()

    def flush(self) -> None:
        """Scan every buffered path now."""
        with self._lock:
            changed, self._changed = self._changed, set()
            removed, self._removed = self._removed, set()
            timer, self._timer = self._timer, None
        if timer is not None and timer is not threading.current_thread():
            timer.cancel()
        if not changed and not removed:
            return

        with self._scan_lock:
            logger.info("[watcher] %d changed, %d removed", len(changed), len(removed))
            try:
                result = self._indexer.scan_paths(sorted(changed), sorted(removed))
            except Exception as exc:
                logger.error("[watcher] Scan failed: %s", exc)
                return
            for path, error in result.failures.items():
                logger.warning("[watcher] %s not indexed: %s", path, error)

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

    def _should_ignore(self, rel_path: str) -> bool:
        parts = rel_path.split("/")
        if any(p in _SKIP_DIRS or p.startswith(".") for p in parts[:-1]):
            return True
        return not is_source_file(rel_path, self._overrides)

"""Filesystem watching: initial scan, debouncing, and live notifications.

``FileWatcher`` owns a ``watchdog`` observer scheduled on the two watched
root *directories* with ``recursive=True``, so nested file modifications
are reported on every platform backend.

Every raw notification goes through ``ChangeDebouncer`` which keeps one
``threading.Timer`` per path.  A new notification for a path cancels the
pending timer and starts a fresh one; only when a timer expires undisturbed
is the path classified and emitted.  One logical write usually fires
several events (create, modify, close).

The *emit* callback runs on a timer thread (or the caller's thread during
the initial scan) and must be cheap; the monitor passes a
``loop.call_soon_threadsafe`` shim that enqueues onto the aggregator queue.
"""

import logging
import os
import threading
from pathlib import Path
from typing import Callable

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from teamwatch.classify import ChangeType, FileChange, classify_path

logger = logging.getLogger(__name__)

DEFAULT_DEBOUNCE_SECONDS = 0.1

# Event types that can change a file's content.  "opened" and
# "closed_no_write" fire on plain reads and are dropped.
_RELEVANT_EVENTS = frozenset({"created", "modified", "deleted", "moved", "closed"})

# Initial-scan ordering: a team's config before its inboxes and tasks.
_SCAN_ORDER = {ChangeType.TEAM_CONFIG: 0, ChangeType.INBOX: 1, ChangeType.TASK: 2}

Emit = Callable[[FileChange], None]


class WatchRootError(RuntimeError):
    """A watched root directory is missing or cannot be read."""


# ---------------------------------------------------------------------------
# Debouncer
# ---------------------------------------------------------------------------

class ChangeDebouncer:
    """Coalesce bursts of notifications per path into one classified event."""

    def __init__(
        self,
        classify: Callable[[str], FileChange],
        emit: Emit,
        delay: float = DEFAULT_DEBOUNCE_SECONDS,
    ) -> None:
        self.classify = classify
        self.emit = emit
        self.delay = delay
        self._lock = threading.Lock()
        self._pending: dict[str, tuple[object, threading.Timer]] = {}
        self._closed = False

    def notify(self, path: str) -> None:
        """Record a raw notification for *path*, restarting its timer."""
        with self._lock:
            if self._closed:
                return
            previous = self._pending.pop(path, None)
            if previous is not None:
                previous[1].cancel()
            token = object()
            timer = threading.Timer(self.delay, self._fire, args=(path, token))
            timer.daemon = True
            self._pending[path] = (token, timer)
            timer.start()

    def _fire(self, path: str, token: object) -> None:
        # Emitting under the lock keeps cancel_all() a hard barrier: once it
        # returns, no timer can still be mid-emit.
        with self._lock:
            entry = self._pending.get(path)
            if self._closed or entry is None or entry[0] is not token:
                return
            del self._pending[path]
            change = self.classify(path)
            if change.ignored:
                return
            try:
                self.emit(change)
            except Exception:
                logger.exception("Failed to emit change for %s", path)

    def pending(self) -> int:
        """Number of paths with a timer still running."""
        with self._lock:
            return len(self._pending)

    def cancel_all(self) -> None:
        """Cancel every pending timer; no event is emitted afterwards."""
        with self._lock:
            self._closed = True
            for _token, timer in self._pending.values():
                timer.cancel()
            self._pending.clear()


# ---------------------------------------------------------------------------
# watchdog bridge
# ---------------------------------------------------------------------------

class _TreeEventHandler(FileSystemEventHandler):
    """Forward file-level watchdog events to the debouncer."""

    def __init__(self, debouncer: ChangeDebouncer) -> None:
        super().__init__()
        self.debouncer = debouncer

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory or event.event_type not in _RELEVANT_EVENTS:
            return
        path = event.dest_path if event.event_type == "moved" else event.src_path
        if path:
            self.debouncer.notify(os.fsdecode(path))


# ---------------------------------------------------------------------------
# Watcher
# ---------------------------------------------------------------------------

class FileWatcher:
    """Scan and then watch the teams and tasks roots.

    Usage::

        watcher = FileWatcher(teams_root, tasks_root, emit=queue_put)
        watcher.start()     # synchronous initial scan, then live watching
        ...
        watcher.stop()      # no emit() calls after this returns
    """

    def __init__(
        self,
        teams_root: Path,
        tasks_root: Path,
        emit: Emit,
        debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS,
    ) -> None:
        self.teams_root = Path(teams_root)
        self.tasks_root = Path(tasks_root)
        self.emit = emit
        self.debouncer = ChangeDebouncer(self.classify, emit, delay=debounce_seconds)
        self._observer: Observer | None = None

    @property
    def running(self) -> bool:
        return self._observer is not None

    def classify(self, path: str | Path) -> FileChange:
        return classify_path(path, self.teams_root, self.tasks_root)

    def _check_roots(self) -> None:
        # The tree belongs to the agent runtime; it is never created or written here.
        for root in (self.teams_root, self.tasks_root):
            if not root.exists():
                raise WatchRootError(f"Watched root does not exist: {root}")
            if not root.is_dir() or not os.access(root, os.R_OK | os.X_OK):
                raise WatchRootError(f"Watched root is not a readable directory: {root}")

    def scan(self) -> list[FileChange]:
        """Enumerate every recognised file currently under both roots.

        Ordered so that, within the result, team configs precede inboxes
        and inboxes precede tasks.
        """
        changes: list[FileChange] = []
        for root in (self.teams_root, self.tasks_root):
            if not root.is_dir():
                continue
            for dirpath, _dirnames, filenames in os.walk(root):
                for filename in filenames:
                    change = self.classify(Path(dirpath) / filename)
                    if not change.ignored:
                        changes.append(change)
        changes.sort(key=lambda c: (_SCAN_ORDER[c.type], c.path))
        return changes

    def start(self) -> None:
        """Run the initial scan, then begin live recursive watching.

        Raises:
            WatchRootError: If a root directory is missing or unreadable.
        """
        if self._observer is not None:
            return
        self._check_roots()

        initial = self.scan()
        logger.info(
            "Initial scan found %d file(s) | teams_root=%s | tasks_root=%s",
            len(initial), self.teams_root, self.tasks_root,
        )
        for change in initial:
            self.emit(change)

        handler = _TreeEventHandler(self.debouncer)
        observer = Observer()
        observer.schedule(handler, str(self.teams_root), recursive=True)
        observer.schedule(handler, str(self.tasks_root), recursive=True)
        observer.daemon = True
        observer.start()
        self._observer = observer
        logger.info("Watching %s and %s (recursive)", self.teams_root, self.tasks_root)

    def stop(self, timeout: float = 5.0) -> None:
        """Cancel pending debounce timers and release the watch handle."""
        self.debouncer.cancel_all()
        observer, self._observer = self._observer, None
        if observer is None:
            return
        observer.stop()
        observer.join(timeout=timeout)
        logger.info("File watcher stopped")

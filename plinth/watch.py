"""Watch mode for Plinth.

Watches the input tree with watchdog and re-runs the incremental build when
files change. Bursts of events (an editor saving several files, a compiler
writing temporaries) collapse into a single rebuild, and rebuilds never
overlap.

Key classes:
- Debouncer: Coalesces triggers into serialized callback runs.
- Watcher: Connects filesystem events to the builder.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .errors import PlinthError
from .utils import matches_any

if TYPE_CHECKING:
    from .build import Builder, BuildResult

logger = logging.getLogger(__name__)

# Editor and compiler temporaries that never trigger a rebuild
IGNORED_NAMES = ("*.tmp", "*~", ".#*", "*.swp", "*.swx", ".DS_Store")
IGNORED_DIRS = frozenset({".sass-cache", ".git", "node_modules"})


class Debouncer:
    """Runs a callback once per burst of triggers.

    Each ``trigger`` restarts the delay timer. At most one callback runs at a
    time; triggers arriving while it runs set a single pending flag, which
    causes exactly one follow-up run.

    Attributes:
        callback: Function to run.
        delay: Quiet period in seconds before the callback fires.
    """

    def __init__(self, callback: Callable[[], object], delay: float = 0.1):
        self.callback = callback
        self.delay = delay
        self._lock = threading.Lock()
        self._timer: threading.Timer | None = None
        self._running = False
        self._pending = False

    @property
    def running(self) -> bool:
        return self._running

    def trigger(self) -> None:
        """Schedule a run after the quiet period."""
        with self._lock:
            if self._running:
                self._pending = True
                return
            if self._timer is not None:
                self._timer.cancel()
            self._timer = threading.Timer(self.delay, self._fire)
            self._timer.daemon = True
            self._timer.start()

    def flush(self) -> bool:
        """Run a scheduled callback now instead of waiting for the timer.

        Returns:
            True if a run was scheduled and has now happened.
        """
        with self._lock:
            timer = self._timer
            self._timer = None
        if timer is None:
            return False
        timer.cancel()
        self._fire()
        return True

    def cancel(self) -> None:
        """Drop any scheduled or pending run."""
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            self._pending = False

    def _fire(self) -> None:
        with self._lock:
            self._timer = None
            if self._running:
                self._pending = True
                return
            self._running = True
        try:
            while True:
                self.callback()
                with self._lock:
                    if not self._pending:
                        break
                    self._pending = False
        finally:
            with self._lock:
                self._running = False


class Watcher:
    """Rebuilds the site when files under the input root change.

    Created and modified files trigger a debounced incremental rebuild.
    Deleted files have their outputs removed right away. A move is handled
    as a delete of the old path plus a rebuild.

    Attributes:
        builder: Builder used for every rebuild.
        on_rebuild: Called with the BuildResult after each successful rebuild.
        debouncer: Debouncer serializing the rebuilds.
    """

    def __init__(
        self,
        builder: Builder,
        on_rebuild: Callable[[BuildResult], object] | None = None,
        delay: float = 0.1,
    ):
        self.builder = builder
        self.on_rebuild = on_rebuild
        self.debouncer = Debouncer(self.rebuild, delay)
        self._observer: Observer | None = None

    @property
    def input_dir(self) -> Path:
        return self.builder.config.input

    @property
    def output_dir(self) -> Path:
        return self.builder.config.output

    def rebuild(self) -> BuildResult | None:
        """Run one incremental build, logging failures instead of raising.

        Returns:
            The BuildResult, or None if the build failed.
        """
        logger.info("Change detected; rebuilding...")
        try:
            result = self.builder.run(full=False)
        except (PlinthError, OSError) as exc:
            logger.error("Rebuild failed: %s", exc)
            return None
        if self.on_rebuild is not None:
            self.on_rebuild(result)
        return result

    def relative(self, path: str | os.PathLike) -> str | None:
        """Map an event path to an input-relative identity.

        Returns:
            POSIX path relative to the input root, or None for paths outside
            it, inside the output directory, or matching temporary files.
        """
        absolute = Path(os.fsdecode(path)).resolve()
        try:
            absolute.relative_to(self.output_dir.resolve())
            return None
        except ValueError:
            pass
        try:
            rel = absolute.relative_to(self.input_dir.resolve())
        except ValueError:
            return None
        if not rel.parts or IGNORED_DIRS.intersection(rel.parts):
            return None
        if matches_any(rel.name, IGNORED_NAMES):
            return None
        return rel.as_posix()

    def handle_change(self, path: str | os.PathLike) -> None:
        """Schedule a rebuild for a created or modified file."""
        rel = self.relative(path)
        if rel is None:
            return
        logger.debug("Changed %s", rel)
        self.debouncer.trigger()

    def handle_delete(self, path: str | os.PathLike) -> None:
        """Remove the outputs of a deleted file."""
        rel = self.relative(path)
        if rel is None:
            return
        logger.debug("Deleted %s", rel)
        self.builder.remove_output(rel)

    def handle_move(self, src: str | os.PathLike, dest: str | os.PathLike) -> None:
        self.handle_delete(src)
        if self.relative(dest) is not None:
            self.debouncer.trigger()

    def start(self) -> None:
        """Start observing the input root in a background thread."""
        if self._observer is not None:
            return
        observer = Observer()
        observer.schedule(_ChangeHandler(self), str(self.input_dir), recursive=True)
        observer.start()
        self._observer = observer
        logger.info("Watching %s for changes", self.input_dir)

    def stop(self) -> None:
        """Stop observing and drop any scheduled rebuild."""
        self.debouncer.cancel()
        if self._observer is not None:
            self._observer.stop()
            self._observer.join()
            self._observer = None

    def run_forever(self) -> None:  # pragma: no cover - integration path
        """Watch until interrupted with Ctrl+C."""
        self.start()
        try:
            while True:
                time.sleep(1)
        except KeyboardInterrupt:
            logger.info("Stopping watcher")
        finally:
            self.stop()


class _ChangeHandler(FileSystemEventHandler):
    def __init__(self, watcher: Watcher):
        super().__init__()
        self.watcher = watcher

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self.watcher.handle_change(event.src_path)

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self.watcher.handle_change(event.src_path)

    def on_deleted(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self.watcher.handle_delete(event.src_path)

    def on_moved(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self.watcher.handle_move(event.src_path, event.dest_path)

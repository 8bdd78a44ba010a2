"""
Watcher - Keeps the corpus current between full reindexes.

Uses watchdog for cross-platform file system monitoring. Newly observed
paths that exist are appended to the live index (which the matcher tails);
paths that no longer exist are remembered in `removed_files` and stripped
from every result set until the next consolidation.
"""

import asyncio
import logging
import os
from pathlib import Path
from typing import Callable, IO, List, Optional, Set

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .config import EngineConfig
from .corpus import CorpusStore, is_under, read_paths
from .errors import IOFailure, handle_error
from .ignore import IgnoreMatcher


logger = logging.getLogger(__name__)


class _EventHandler(FileSystemEventHandler):
    """Forwards every relevant event path to the watcher."""

    def __init__(self, watcher: "Watcher"):
        self.watcher = watcher

    def on_created(self, event: FileSystemEvent):
        self.watcher._dispatch(event.src_path)

    def on_modified(self, event: FileSystemEvent):
        self.watcher._dispatch(event.src_path)

    def on_deleted(self, event: FileSystemEvent):
        self.watcher._dispatch(event.src_path)

    def on_moved(self, event: FileSystemEvent):
        self.watcher._dispatch(event.src_path)
        self.watcher._dispatch(event.dest_path)


class Watcher:
    """
    File system watcher feeding the live index.

    Events arrive on the watchdog thread and are handed to the event loop
    that called `start()`; all state changes happen there, so the live
    index has exactly one writer.
    """

    def __init__(
        self,
        config: EngineConfig,
        store: CorpusStore,
        on_removed: Optional[Callable[[str], None]] = None,
    ):
        self.config = config
        self.store = store
        self.on_removed = on_removed

        self.removed_files: Set[str] = set()
        self.seen_paths: Set[str] = set()

        self._ignore = IgnoreMatcher(config.ignore_file, config.home)
        self._observer = None
        self._live_file: Optional[IO[str]] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._running = False

    @property
    def live_index(self) -> Path:
        return self.config.live_index

    @property
    def running(self) -> bool:
        return self._running

    def start(self, roots: List[Path] | None = None):
        """
        Start watching, replacing any previous subscription.

        Resets `removed_files` and `seen_paths` and truncates the live index,
        so callers must consolidate first.

        Args:
            roots: Directories to watch (default: config.watch_roots)
        """
        self.stop()

        roots = roots or self.config.watch_roots
        self.removed_files.clear()
        self.seen_paths.clear()
        self._ignore.reload()

        try:
            self._live_file = open(self.live_index, "w", encoding="utf-8", errors="surrogateescape")
        except OSError as e:
            handle_error(IOFailure(str(e)), self.live_index, "open live index")
            return

        try:
            self._loop = asyncio.get_running_loop()
        except RuntimeError:
            self._loop = None

        self._observer = Observer()
        handler = _EventHandler(self)
        for root in roots:
            if root.exists():
                self._observer.schedule(handler, str(root), recursive=True)
                logger.info(f"Watching: {root}")
            else:
                logger.warning(f"Watch root not found: {root}")

        self._running = True
        self._observer.start()
        logger.info("File watcher started")

    def stop(self):
        """Stop watching. Stopping a stopped watcher is a no-op."""
        if not self._running and self._observer is None and self._live_file is None:
            return

        self._running = False

        if self._observer:
            self._observer.stop()
            self._observer.join(timeout=2)
            self._observer = None

        if self._live_file:
            self._live_file.close()
            self._live_file = None

        logger.info("File watcher stopped")

    def _dispatch(self, path: str):
        """Called on the watchdog thread."""
        loop = self._loop
        if loop is None:
            self.record(path)
            return
        if loop.is_closed():
            return
        loop.call_soon_threadsafe(self.record, path)

    def _should_skip(self, path: str) -> bool:
        if self.store.is_hard_ignored(path):
            return True
        if is_under(path, str(self.config.home)):
            return self._ignore.is_ignored(path, is_dir=os.path.isdir(path))
        return False

    def record(self, path: str):
        """
        Record one observed path.

        Existing, unseen paths are appended to the live index; missing paths
        move into `removed_files` and are reported through `on_removed`.
        """
        if not self._running or self._should_skip(path):
            return

        if os.path.lexists(path):
            self.removed_files.discard(path)
            if path in self.seen_paths:
                return
            self.seen_paths.add(path)
            self._append(path)
        else:
            self.seen_paths.discard(path)
            if path in self.removed_files:
                return
            self.removed_files.add(path)
            logger.debug(f"Removed: {path}")
            if self.on_removed:
                self.on_removed(path)

    def _append(self, path: str):
        if self._live_file is None:
            return
        try:
            self._live_file.write(path + "\n")
            self._live_file.flush()
        except OSError as e:
            handle_error(IOFailure(str(e)), self.live_index, "append live index")

    async def consolidate(self) -> dict:
        """
        Fold the live index into the scope corpora.

        Stops the watcher first; the caller restarts it afterwards so the
        restart happens-after consolidation. Live entries are deduplicated,
        existence-checked and appended to their scope's corpus, then the
        live index is truncated and the seen/removed sets reset.

        Returns:
            Number of paths appended per scope id
        """
        self.stop()
        if not self.live_index.exists():
            return {}

        try:
            appended = await asyncio.to_thread(self._consolidate_sync)
        except (IOFailure, OSError) as e:
            handle_error(e, self.live_index, "consolidate")
            return {}

        self.removed_files.clear()
        self.seen_paths.clear()
        return appended

    def _consolidate_sync(self) -> dict:
        entries = list(dict.fromkeys(read_paths(self.live_index)))
        appended = self.store.merge(entries)
        with open(self.live_index, "w"):
            pass
        logger.info(f"Consolidated live index: {len(entries)} entries, appended {appended}")
        return appended

    def get_pending_count(self) -> int:
        """Number of paths appended to the live index since start."""
        return len(self.seen_paths)

"""
Engine - Wiring and lifecycle of the search engine.

One Engine is constructed at startup and handed to every consumer. It owns
all components and exposes deterministic setters: each setter performs its
side effect (matcher restart, query resend, suspend) before returning.

Startup:
    kill stale instance -> listen for notifications -> kill stray matchers
    -> wait for filesystem access -> start_index (cold / warm / fresh)
"""

import asyncio
import logging
import os
from enum import Enum
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Set

from .client import MatcherClient
from .config import EngineConfig
from .corpus import CorpusStore
from .errors import NetworkChannelFailure, PermissionDenied, handle_error
from .filters import FilterStore
from .models import FolderFilter, MatchResult, QuickFilter, SortDirection, SortKey, VolumeFilter
from .notifier import ResultNotifier
from .orchestrator import Orchestrator
from .query import QueryRouter
from .scanner import Scanner
from .supervisor import CorpusSelection, MatcherSupervisor
from .volumes import MountMonitor, VolumeIndexManager
from .watcher import Watcher


logger = logging.getLogger(__name__)


class EngineState(Enum):
    """Coarse state shown instead of results when search is unavailable."""
    IDLE = "idle"
    WAITING = "waiting"         # filesystem access not granted yet
    INDEXING = "indexing"       # search paused
    READY = "ready"
    STOPPED = "stopped"


class Engine:
    """
    The search engine.

    Usage:
        engine = Engine(EngineConfig.from_env())
        await engine.start()
        await engine.set_query("invoice pdf")
        ...
        await engine.cleanup()
    """

    def __init__(self, config: Optional[EngineConfig] = None):
        self.config = config or EngineConfig.from_env()
        self.operation = ""

        self.store = CorpusStore(self.config)
        self.filters = FilterStore(self.config.home)

        self.scanner = Scanner(self.config, self.store)
        self.volume_scanner = Scanner(self.config, self.store)
        self.volumes = VolumeIndexManager(
            self.config, self.store, self.volume_scanner, on_status=self._set_status
        )

        self.watcher = Watcher(self.config, self.store, on_removed=self._on_removed)
        self.supervisor = MatcherSupervisor(self.config, self.select_corpus)
        self.orchestrator = Orchestrator(
            self.config,
            self.store,
            self.scanner,
            self.watcher,
            self.supervisor,
            volumes=self.volumes,
            has_access=self.has_access,
            on_status=self._set_status,
        )

        self.client = MatcherClient(self.config, api_key=lambda: self.supervisor.api_key)
        self.router = QueryRouter(
            self.config,
            self.store,
            self.filters,
            self.client,
            self.supervisor,
            removed_files=lambda: self.watcher.removed_files,
            volumes=self.volumes,
            is_indexing=lambda: self.orchestrator.indexing,
        )
        self.notifier = ResultNotifier(self.config.notify_port, self.router.fetch_results)
        self.mount_monitor = MountMonitor(self.config, self._on_mounts_changed)

        self._started = False
        self._stopped = False
        self._waiting_for_access = False
        self._access_task: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()

    # ═══════════════════════════════════════════════════════════════════════
    # STATE
    # ═══════════════════════════════════════════════════════════════════════

    @property
    def state(self) -> EngineState:
        if self._stopped:
            return EngineState.STOPPED
        if self._waiting_for_access:
            return EngineState.WAITING
        if self.orchestrator.indexing:
            return EngineState.INDEXING
        if self._started:
            return EngineState.READY
        return EngineState.IDLE

    @property
    def results(self) -> List[MatchResult]:
        return self.router.results

    def _set_status(self, message: str) -> None:
        self.operation = message

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def has_access(self) -> bool:
        """Whether the access probe path can be read."""
        probe = self.config.access_probe_path
        try:
            if probe.is_dir():
                os.listdir(probe)
            else:
                with open(probe, "rb"):
                    pass
        except OSError:
            return False
        return True

    # ═══════════════════════════════════════════════════════════════════════
    # LIFECYCLE
    # ═══════════════════════════════════════════════════════════════════════

    async def start(self) -> None:
        """Start listening, then index or wait for filesystem access."""
        self._stopped = False
        self.supervisor.kill_stale_instance()

        try:
            await self.notifier.start()
        except NetworkChannelFailure as e:
            handle_error(e, "notification listener", "start")

        self.supervisor.force_stop_matchers()
        self.volumes.refresh_volumes()
        self.mount_monitor.start()

        if not self.has_access():
            handle_error(PermissionDenied(str(self.config.access_probe_path)),
                         self.config.access_probe_path, "start")
            self._waiting_for_access = True
            self._set_status("Waiting for filesystem access")
            self._access_task = asyncio.create_task(self._wait_for_access())
            return

        await self._start_index()

    async def _wait_for_access(self) -> None:
        while not self.has_access():
            await asyncio.sleep(self.config.access_poll_interval)
        logger.info("Filesystem access granted")
        self._waiting_for_access = False
        self._set_status("")
        await self._start_index()

    async def _start_index(self) -> None:
        self._started = True
        await self.orchestrator.start_index()

    async def wait_ready(self, timeout: float = 10.0) -> bool:
        """Wait for pending indexing and for the matcher to answer."""
        if self._access_task is not None:
            await self._access_task
        await self.orchestrator.wait_idle()
        return await self.client.wait_ready(timeout)

    async def refresh(self, full_reindex: bool = False, pause_search: bool = True) -> None:
        await self.orchestrator.refresh(full_reindex=full_reindex, pause_search=pause_search)

    async def cleanup(self) -> None:
        """Stop everything this engine started. Safe to call twice."""
        self._stopped = True
        self._waiting_for_access = False
        if self._access_task is not None:
            self._access_task.cancel()
            self._access_task = None
        for task in list(self._tasks):
            task.cancel()

        self.orchestrator.stop()
        self.volume_scanner.stop_all()
        self.mount_monitor.stop()
        self.watcher.stop()
        self.router.cancel()

        await self.supervisor.stop_server()
        await self.notifier.stop()
        await self.client.aclose()
        logger.info("Engine stopped")

    # ═══════════════════════════════════════════════════════════════════════
    # CORPUS SELECTION
    # ═══════════════════════════════════════════════════════════════════════

    def select_corpus(self) -> CorpusSelection:
        """
        Corpus files, folder prefixes and initial query for the next matcher.

        A volume filter narrows the input to that volume's corpus (or the
        local corpora for the root volume); a folder filter alone narrows it
        through the text-filter prefilter.
        """
        volume_filter = self.filters.volume_filter
        local = [c.file_path for c in self.store.local_corpora() if c.exists]

        if volume_filter is None:
            files = local + [c.file_path for c in self.volumes.volume_corpora()]
        elif volume_filter.volume == self.config.root_dir:
            files = local
        else:
            corpus = self.volumes.corpus_for(volume_filter.volume)
            files = [corpus.file_path] if corpus.exists else []

        prefixes = []
        folder_filter = self.filters.folder_filter
        if folder_filter is not None and volume_filter is None:
            prefixes = [str(f) for f in folder_filter.folders]

        initial_query = ""
        if self.router.has_query():
            initial_query = self.router.construct_query(self.router.query)

        return CorpusSelection(files=files, prefixes=prefixes, initial_query=initial_query)

    # ═══════════════════════════════════════════════════════════════════════
    # SETTERS
    # ═══════════════════════════════════════════════════════════════════════

    async def set_query(self, text: str) -> None:
        await self.router.send_query(text)

    async def set_folder_filter(self, folder_filter: Optional[FolderFilter]) -> None:
        if folder_filter == self.filters.folder_filter:
            return
        self.filters.folder_filter = folder_filter
        if self.filters.volume_filter is None:
            await self.supervisor.restart_server()
        await self.router.send_query(self.router.query)

    async def set_quick_filter(self, quick_filter: Optional[QuickFilter]) -> None:
        if quick_filter == self.filters.quick_filter:
            return
        self.filters.quick_filter = quick_filter
        await self.router.send_query(self.router.query)

    async def set_volume_filter(self, volume_filter: Optional[VolumeFilter]) -> None:
        if volume_filter == self.filters.volume_filter:
            return
        self.filters.volume_filter = volume_filter
        await self.supervisor.restart_server()
        await self.router.send_query(self.router.query)

    async def clear_filters(self) -> None:
        corpus_changed = (
            self.filters.folder_filter is not None or self.filters.volume_filter is not None
        )
        self.filters.clear()
        if corpus_changed:
            await self.supervisor.restart_server()
        await self.router.send_query(self.router.query)

    async def save_folder_filter(
        self,
        filter_id: str,
        folders: Sequence[Path],
        key: Optional[str] = None,
        original_id: str = "",
    ) -> Optional[FolderFilter]:
        """Save a folder filter and make it the active one."""
        saved = self.filters.save_folder_filter(filter_id, folders, key, original_id)
        if saved is not None:
            self.filters.folder_filter = None
            await self.set_folder_filter(saved)
        return saved

    async def save_quick_filter(
        self,
        filter_id: str,
        query: str,
        key: Optional[str] = None,
        original_id: str = "",
    ) -> Optional[QuickFilter]:
        """Save a quick filter and make it the active one."""
        saved = self.filters.save_quick_filter(filter_id, query, key, original_id)
        if saved is not None:
            self.filters.quick_filter = None
            await self.set_quick_filter(saved)
        return saved

    async def delete_folder_filter(self, filter_id: str) -> None:
        if self.filters.delete_folder_filter(filter_id):
            if self.filters.volume_filter is None:
                await self.supervisor.restart_server()
            await self.router.send_query(self.router.query)

    async def delete_quick_filter(self, filter_id: str) -> None:
        if self.filters.delete_quick_filter(filter_id):
            await self.router.send_query(self.router.query)

    def volume_filters(self) -> List[VolumeFilter]:
        return self.filters.volume_filters(self.config.root_dir, self.volumes.enabled_volumes)

    def set_sort(self, key: SortKey, direction: Optional[SortDirection] = None) -> List[MatchResult]:
        return self.router.set_sort(key, direction)

    async def set_max_results(self, count: int) -> List[MatchResult]:
        return await self.router.set_max_results(count)

    async def set_search_scopes(self, scopes: Iterable[str]) -> None:
        """Change the enabled local scopes; indexes any scope that has no corpus."""
        scopes = list(dict.fromkeys(scopes))
        if scopes == self.config.search_scopes:
            return
        self.config.search_scopes = scopes
        await self.supervisor.restart_server()
        if self.store.index_is_stale() and not self.orchestrator.background_indexing:
            self._spawn(self.orchestrator.refresh(full_reindex=False, pause_search=False))

    async def set_volume_enabled(self, volume: Path, enabled: bool) -> None:
        self.volumes.set_volume_enabled(volume, enabled)
        filtered = self.filters.volume_filter
        if not enabled and filtered is not None and filtered.volume == volume:
            self.filters.volume_filter = None
        await self.supervisor.restart_server()
        if enabled and volume in self.volumes.stale_volumes():
            self._spawn(self._index_volumes([volume]))

    def set_visible(self, visible: bool) -> None:
        """Suspend the matcher while nothing is shown, resume when shown."""
        if visible:
            self.supervisor.resume()
        else:
            self.supervisor.suspend()

    def set_pinned(self, pinned: bool) -> None:
        self.supervisor.pinned = pinned
        if pinned:
            self.supervisor.resume()

    # ═══════════════════════════════════════════════════════════════════════
    # EVENTS
    # ═══════════════════════════════════════════════════════════════════════

    def _on_removed(self, path: str) -> None:
        self.router.discard(path)

    def _on_mounts_changed(self) -> None:
        if self._stopped:
            return
        self._spawn(self._handle_mount_change())

    async def _handle_mount_change(self) -> None:
        before = set(self.volumes.volumes)
        after = set(self.volumes.refresh_volumes())
        if before == after:
            return
        logger.info(f"Volumes changed: +{sorted(map(str, after - before))} -{sorted(map(str, before - after))}")

        filtered = self.filters.volume_filter
        if filtered is not None and filtered.volume != self.config.root_dir and filtered.volume not in after:
            self.filters.volume_filter = None

        if before - after:
            await self.supervisor.restart_server()
        if not self.volumes.indexing:
            await self._index_volumes(self.volumes.stale_volumes())

    async def _index_volumes(self, volumes: List[Path]) -> None:
        results = await self.volumes.index_volumes(volumes)
        if any(r.success for r in results):
            await self.supervisor.restart_server()

"""
Orchestrator - Index lifecycle for the local scopes.

Decides between cold start, warm start and fresh start, runs one
enumeration process per scope concurrently, and keeps corpora fresh:

- Cold: no corpus at all -> enumerate, search paused until done
- Warm: stale corpus -> serve the old corpus while enumerating
- Fresh: consolidate pending live entries and serve immediately

An hourly timer re-evaluates staleness and reindexes in the background.
"""

import asyncio
import inspect
import logging
import time
from typing import Awaitable, Callable, List, Optional, Union

from .config import EngineConfig
from .corpus import CorpusStore
from .models import EnumerationResult, IndexingStats, Scope
from .scanner import Scanner, thread_budget
from .supervisor import MatcherSupervisor
from .volumes import VolumeIndexManager
from .watcher import Watcher


logger = logging.getLogger(__name__)

Callback = Callable[[], Union[None, Awaitable[None]]]


async def _call(callback: Optional[Callback]) -> None:
    if callback is None:
        return
    result = callback()
    if inspect.isawaitable(result):
        await result


class Orchestrator:
    """
    Owner of corpus production and freshness.

    Every corpus write goes through the CorpusStore this orchestrator owns;
    enumeration processes only ever write their own temp files.
    """

    def __init__(
        self,
        config: EngineConfig,
        store: CorpusStore,
        scanner: Scanner,
        watcher: Watcher,
        supervisor: MatcherSupervisor,
        volumes: Optional[VolumeIndexManager] = None,
        has_access: Callable[[], bool] = lambda: True,
        on_status: Optional[Callable[[str], None]] = None,
    ):
        self.config = config
        self.store = store
        self.scanner = scanner
        self.watcher = watcher
        self.supervisor = supervisor
        self.volumes = volumes
        self.has_access = has_access
        self.on_status = on_status

        self.indexing = False             # search paused while True
        self.background_indexing = False
        self.operation = ""

        self._index_task: Optional[asyncio.Task] = None
        self._staleness_task: Optional[asyncio.Task] = None

    def _status(self, message: str) -> None:
        self.operation = message
        if self.on_status:
            self.on_status(message)

    # ═══════════════════════════════════════════════════════════════════════
    # STARTUP
    # ═══════════════════════════════════════════════════════════════════════

    async def start_index(self) -> None:
        """Pick cold / warm / fresh start, then start the staleness timer."""
        self.config.ensure_ignore_file()

        if self.store.index_is_stale():
            exists = self.store.index_exists()
            if exists:
                logger.info("Warm start: serving stale corpus while reindexing")
                await self.supervisor.start_server()
            else:
                logger.info("Cold start: no corpus, search paused until indexed")
                self.indexing = True
                self._status("Indexing files")

            self._index_task = asyncio.create_task(self.index_files(
                self.store.stale_scopes(),
                pause_search=not exists,
                on_finish=self._watch_and_restart,
            ))
        else:
            logger.info("Fresh start: consolidating live index")
            await self.watcher.consolidate()
            self.watcher.start()
            await self.supervisor.start_server()

        self.start_staleness_timer()

    async def _watch_and_restart(self) -> None:
        self.watcher.start()
        await self.supervisor.restart_server()

    async def wait_idle(self) -> None:
        """Wait for the indexing run started by start_index/refresh, if any."""
        if self._index_task is not None:
            await asyncio.shield(self._index_task)

    # ═══════════════════════════════════════════════════════════════════════
    # INDEXING
    # ═══════════════════════════════════════════════════════════════════════

    async def index_files(
        self,
        scopes: Optional[List[Scope]] = None,
        pause_search: bool = True,
        on_finish: Optional[Callback] = None,
    ) -> IndexingStats:
        """
        Enumerate scopes concurrently and promote their corpora.

        One scope failing never aborts the others. `on_finish` fires once,
        after every process has exited (join barrier), whatever the outcome.

        Args:
            scopes: Scopes to enumerate (default: all enabled local scopes)
            pause_search: Suppress queries and fetches while running
            on_finish: Sync or async completion callback

        Returns:
            Statistics about the run
        """
        scopes = self.store.enabled_local_scopes() if scopes is None else scopes
        start_time = time.monotonic()
        stats = IndexingStats()

        self.scanner.stop_all()
        if not scopes:
            logger.debug("No folders to index")
            try:
                await _call(on_finish)
            finally:
                self.indexing = False
                self._status("")
            return stats

        threads = thread_budget(self.config.cpu_count, 3)
        logger.info(f"Indexing {len(scopes)} scopes with {threads} threads each")

        self.background_indexing = True
        if pause_search and not self.indexing:
            self.indexing = True
            self._status("Indexing files")

        try:
            outcomes = await asyncio.gather(
                *(self.scanner.enumerate(scope, threads) for scope in scopes),
                return_exceptions=True,
            )

            for scope, outcome in zip(scopes, outcomes):
                if isinstance(outcome, BaseException):
                    logger.error(f"Indexing {scope} raised: {outcome}")
                    outcome = EnumerationResult(scope=scope, success=False)
                if outcome.success:
                    stats.scopes_indexed.append(scope.scope_id)
                    stats.paths_indexed += outcome.line_count
                    self._status(f"Indexed {scope.label}")
                else:
                    stats.scopes_failed.append(scope.scope_id)
                    self._status(f"Failed to index {scope.label}")

            stats.duration_seconds = time.monotonic() - start_time
            logger.info(f"Indexing complete: {stats}")

            await _call(on_finish)
        finally:
            self.indexing = False
            self.background_indexing = False
            self._status("")

        return stats

    async def refresh(self, full_reindex: bool = False, pause_search: bool = True) -> None:
        """
        Reindex on demand.

        A full reindex enumerates every enabled scope regardless of age;
        otherwise only stale scopes are enumerated and the live index is
        consolidated afterwards.
        """
        if self.indexing or not self.has_access():
            return

        # A paused reindex replaces a background run instead of racing it
        await self._cancel_index_task()

        scopes = self.store.enabled_local_scopes() if full_reindex else self.store.stale_scopes()
        if pause_search:
            self.indexing = True
            self._status("Reindexing all files" if full_reindex else "Reindexing changed files")

        self.watcher.stop()

        async def after_index():
            if not full_reindex:
                await self.watcher.consolidate()
            self.watcher.start()
            await self.supervisor.restart_server()

        task = self._index_task = asyncio.create_task(
            self.index_files(scopes, pause_search=pause_search, on_finish=after_index)
        )
        try:
            await task
        except asyncio.CancelledError:
            if task is self._index_task:
                raise
            logger.info("Reindex superseded by a newer run")

    async def _cancel_index_task(self) -> None:
        """Cancel the running index task and wait until it has unwound."""
        task, self._index_task = self._index_task, None
        if task is None or task.done():
            return
        task.cancel()
        await asyncio.wait([task])

    # ═══════════════════════════════════════════════════════════════════════
    # STALENESS TIMER
    # ═══════════════════════════════════════════════════════════════════════

    def start_staleness_timer(self) -> None:
        self.stop_staleness_timer()
        self._staleness_task = asyncio.create_task(self._staleness_loop())

    def stop_staleness_timer(self) -> None:
        if self._staleness_task:
            self._staleness_task.cancel()
            self._staleness_task = None

    async def _staleness_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.staleness_check_interval)
            try:
                await self.check_staleness()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Staleness check failed: {e}")

    async def check_staleness(self) -> None:
        """Reindex stale local scopes and volumes without pausing search."""
        if self.store.index_is_stale() and not self.background_indexing:
            logger.info("Local corpus is stale, reindexing in background")
            await self.refresh(full_reindex=False, pause_search=False)

        if self.volumes is not None and not self.volumes.indexing:
            results = await self.volumes.index_stale_volumes()
            if any(r.success for r in results):
                await self.supervisor.restart_server()

    # ═══════════════════════════════════════════════════════════════════════
    # TEARDOWN
    # ═══════════════════════════════════════════════════════════════════════

    def stop(self) -> None:
        self.stop_staleness_timer()
        if self._index_task and not self._index_task.done():
            self._index_task.cancel()
        self._index_task = None
        self.scanner.stop_all()

"""
Query Router - From user intent to matcher queries, and matcher output to results.

Flow:
1. send_query(text): build the effective query (quick filter, folder
   alternation for mixed filters, ~/ expansion), debounce, push it over
   the control channel
2. The matcher pings the notifier on every result change
3. fetch_results(): pull the match list, truncate, strip removed and
   hard-ignored paths, drop out-of-scope paths, dedupe, stat, sort

Sorting is a pure re-order of the fetched set and never re-queries.
"""

import asyncio
import logging
import re
from typing import Callable, Iterable, List, Optional, Set

from .config import EngineConfig
from .corpus import CorpusStore, is_under
from .errors import ErrorAction, NetworkChannelFailure, handle_error
from .filters import FilterStore
from .models import DEFAULT_SORT_DIRECTIONS, MatchResult, SortDirection, SortKey
from .volumes import VolumeIndexManager


logger = logging.getLogger(__name__)

# `~/` at the start of a search term, optionally behind an fzf operator
_HOME_PREFIX = re.compile(r"(^|[\s^'!])~/")

# Line breaks and other control characters would cut the action body short
_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")


def _by_name(m: MatchResult):
    return m.name.lower()


def _by_path(m: MatchResult):
    return m.parent.lower()


def _by_size(m: MatchResult):
    return m.size


def _by_modified(m: MatchResult):
    return m.modified


def _by_kind(m: MatchResult):
    return (m.kind, m.name.lower())


_SORT_FIELDS = {
    SortKey.NAME: _by_name,
    SortKey.PATH: _by_path,
    SortKey.SIZE: _by_size,
    SortKey.MODIFIED_DATE: _by_modified,
    SortKey.KIND: _by_kind,
}


def escape_query(text: str) -> str:
    """Neutralize characters that cannot travel inside a change-query body."""
    return _CONTROL_CHARS.sub(" ", text)


def sort_results(
    results: Iterable[MatchResult],
    key: SortKey = SortKey.RELEVANCE,
    direction: Optional[SortDirection] = None,
) -> List[MatchResult]:
    """
    Re-order an already fetched match set.

    Relevance keeps (or reverses) the matcher's order. Every other key uses
    a stable sort, so applying the same key twice yields the same order.
    """
    direction = direction or DEFAULT_SORT_DIRECTIONS[key]
    results = list(results)
    if key == SortKey.RELEVANCE:
        return results if direction == SortDirection.DESCENDING else results[::-1]
    return sorted(results, key=_SORT_FIELDS[key], reverse=direction == SortDirection.DESCENDING)


class QueryRouter:
    """
    Owns the query text, the fetched match set and the sort settings.

    Only one query delivery and one fetch are in flight at a time; a newer
    call cancels the older one.
    """

    def __init__(
        self,
        config: EngineConfig,
        store: CorpusStore,
        filters: FilterStore,
        client,
        supervisor,
        removed_files: Callable[[], Set[str]] = set,
        volumes: Optional[VolumeIndexManager] = None,
        is_indexing: Callable[[], bool] = lambda: False,
    ):
        self.config = config
        self.store = store
        self.filters = filters
        self.client = client
        self.supervisor = supervisor
        self.removed_files = removed_files
        self.volumes = volumes
        self.is_indexing = is_indexing

        self.query = ""
        self.no_query = True
        self.scored_results: List[MatchResult] = []
        self.results: List[MatchResult] = []
        self.sort_key = SortKey.RELEVANCE
        self.sort_direction = DEFAULT_SORT_DIRECTIONS[SortKey.RELEVANCE]
        self.max_results = config.max_results

        self._query_task: Optional[asyncio.Task] = None
        self._fetch_task: Optional[asyncio.Task] = None

    # ═══════════════════════════════════════════════════════════════════════
    # QUERIES
    # ═══════════════════════════════════════════════════════════════════════

    def has_query(self) -> bool:
        return bool(self.query) or self.filters.any_active()

    def construct_query(self, text: str) -> str:
        """
        Effective query text sent to the matcher.

        The folder filter is normally applied through corpus selection; its
        `^folder` alternation is embedded here only when a volume filter is
        active as well, since the volume already decides the corpus.
        """
        parts = []
        quick = self.filters.quick_filter
        if quick is not None:
            parts.append(quick.query)

        folder = self.filters.folder_filter
        if folder is not None and self.filters.volume_filter is not None:
            parts.append(" | ".join(f"^{f}" for f in folder.folders))

        parts.append(text)
        query = " ".join(p for p in parts if p)

        home = str(self.config.home)
        return _HOME_PREFIX.sub(lambda m: f"{m.group(1)}{home}/", query)

    def _clear(self) -> None:
        self.no_query = True
        self.scored_results = []
        self.results = []

    async def send_query(self, text: str) -> None:
        """
        Push a new query to the matcher.

        An empty query with no active filter never reaches the matcher and
        empties the results. Nothing is sent while indexing.
        """
        self.query = text
        if self._query_task is not None and not self._query_task.done():
            self._query_task.cancel()

        if not self.has_query():
            self._query_task = None
            self._clear()
            return

        if self.is_indexing():
            logger.debug("Indexing files, skipping query")
            return

        task = self._query_task = asyncio.create_task(
            self._deliver(escape_query(self.construct_query(text)))
        )
        try:
            await task
        except asyncio.CancelledError:
            if task is self._query_task:
                raise

    async def _deliver(self, query: str) -> None:
        await asyncio.sleep(self.config.query_debounce_ms / 1000)
        try:
            await self.client.change_query(query)
        except NetworkChannelFailure as e:
            if handle_error(e, "control channel", "send_query") == ErrorAction.RESTART:
                await asyncio.shield(self.supervisor.restart_server())

    # ═══════════════════════════════════════════════════════════════════════
    # RESULTS
    # ═══════════════════════════════════════════════════════════════════════

    async def fetch_results(self) -> List[MatchResult]:
        """Refresh `results` from the matcher (skipped while indexing)."""
        if self._fetch_task is not None and not self._fetch_task.done():
            self._fetch_task.cancel()

        if self.is_indexing():
            logger.debug("Indexing files, skipping fetch")
            return self.results

        task = self._fetch_task = asyncio.create_task(self._fetch())
        try:
            return await task
        except asyncio.CancelledError:
            if task is self._fetch_task:
                raise
            return self.results

    async def _fetch(self) -> List[MatchResult]:
        try:
            paths = await self.client.fetch_matches(self.max_results)
        except NetworkChannelFailure as e:
            handle_error(e, "control channel", "fetch_results")
            if not self.supervisor.running:
                await asyncio.shield(self.supervisor.restart_server())
            return self.results

        if not self.has_query():
            self._clear()
            return self.results

        matches = await asyncio.to_thread(self.filter_matches, paths)
        self.scored_results = matches
        self.results = sort_results(matches, self.sort_key, self.sort_direction)
        self.no_query = False
        return self.results

    def filter_matches(self, paths: List[str]) -> List[MatchResult]:
        """
        Turn raw matcher lines into displayable results.

        Keeps the matcher's relevance order; the first occurrence of a path
        wins. Paths that no longer exist are dropped.
        """
        removed = self.removed_files()
        seen = set()
        matches = []
        for path in paths[:self.max_results]:
            if path in seen:
                continue
            seen.add(path)

            bare = path.rstrip("/") or path
            if self.store.is_hard_ignored(bare):
                continue
            if path in removed or bare in removed:
                continue
            if not self.in_enabled_scope(bare):
                continue

            match = MatchResult.from_path(path, self._is_external(bare))
            if match is not None:
                matches.append(match)
        return matches

    def _is_external(self, path: str) -> bool:
        return self.volumes is not None and self.volumes.is_on_external_volume(path)

    def in_enabled_scope(self, path: str) -> bool:
        if self._is_external(path):
            return any(is_under(path, str(v)) for v in self.volumes.enabled_volumes)
        scope = self.store.local_scope_for_path(path)
        return scope.kind.value in self.config.search_scopes

    def discard(self, path: str) -> None:
        """Strip a path the watcher saw disappear from the displayed results."""
        bare = path.rstrip("/")
        if not any(m.path.rstrip("/") == bare for m in self.scored_results):
            return
        self.scored_results = [m for m in self.scored_results if m.path.rstrip("/") != bare]
        self.results = [m for m in self.results if m.path.rstrip("/") != bare]

    # ═══════════════════════════════════════════════════════════════════════
    # SETTINGS
    # ═══════════════════════════════════════════════════════════════════════

    def set_sort(self, key: SortKey, direction: Optional[SortDirection] = None) -> List[MatchResult]:
        self.sort_key = key
        self.sort_direction = direction or DEFAULT_SORT_DIRECTIONS[key]
        self.results = sort_results(self.scored_results, self.sort_key, self.sort_direction)
        return self.results

    async def set_max_results(self, count: int) -> List[MatchResult]:
        count = max(1, count)
        if count == self.max_results:
            return self.results
        self.max_results = count
        if not self.has_query():
            return self.results
        return await self.fetch_results()

    def cancel(self) -> None:
        for task in (self._query_task, self._fetch_task):
            if task is not None and not task.done():
                task.cancel()
        self._query_task = None
        self._fetch_task = None

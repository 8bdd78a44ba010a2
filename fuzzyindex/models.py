"""
Data Models - Type definitions shared across the engine.

These dataclasses represent scopes and their corpus files, the matches
coming back from the matcher, sort settings and the user filters that
are combined with the raw query text.
"""

import os
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import List, Optional, Tuple


class ScopeKind(Enum):
    """Kind of search domain."""
    HOME = "home"
    LIBRARY = "library"
    ROOT = "root"
    VOLUME = "volume"


@dataclass(frozen=True)
class Scope:
    """
    A named search domain.

    Local scopes (home, library, root) are identified by their kind alone;
    volume scopes carry the mount point they enumerate.
    """
    kind: ScopeKind
    root: Path
    name: str = ""

    @property
    def scope_id(self) -> str:
        if self.kind == ScopeKind.VOLUME:
            return f"volume:{self.name}"
        return self.kind.value

    @property
    def is_volume(self) -> bool:
        return self.kind == ScopeKind.VOLUME

    @property
    def label(self) -> str:
        """Human readable name used in status messages."""
        if self.is_volume:
            return f"volume: {self.name}"
        return f"{self.kind.value.capitalize()} folder"

    def __str__(self) -> str:
        return self.scope_id


@dataclass
class ScopeCorpus:
    """
    The corpus file of one scope.

    One absolute path per line. The file's mtime is the timestamp of the
    last full enumeration; consolidation appends entries but keeps it.
    """
    scope: Scope
    file_path: Path

    @property
    def exists(self) -> bool:
        return self.file_path.exists()

    @property
    def last_write_timestamp(self) -> Optional[float]:
        try:
            return self.file_path.stat().st_mtime
        except OSError:
            return None

    def is_stale(self, freshness_window: float, now: Optional[float] = None) -> bool:
        """Absent or older than the freshness window."""
        timestamp = self.last_write_timestamp
        if timestamp is None:
            return True
        now = time.time() if now is None else now
        return now - timestamp > freshness_window


class SortKey(Enum):
    """Field the fetched match set is ordered by."""
    RELEVANCE = "relevance"
    NAME = "name"
    PATH = "path"
    SIZE = "size"
    MODIFIED_DATE = "modifiedDate"
    KIND = "kind"


class SortDirection(Enum):
    ASCENDING = "ascending"
    DESCENDING = "descending"


DEFAULT_SORT_DIRECTIONS = {
    SortKey.RELEVANCE: SortDirection.DESCENDING,
    SortKey.NAME: SortDirection.ASCENDING,
    SortKey.PATH: SortDirection.ASCENDING,
    SortKey.SIZE: SortDirection.DESCENDING,
    SortKey.MODIFIED_DATE: SortDirection.DESCENDING,
    SortKey.KIND: SortDirection.ASCENDING,
}


@dataclass(frozen=True)
class MatchResult:
    """
    A single result decoded from the matcher response.

    Size and modification time are captured once at fetch time, so sorting
    the same match set twice never observes different values.
    """
    path: str
    is_on_external_volume: bool = False
    cached_is_dir: bool = False
    size: int = 0
    modified: float = 0.0

    @classmethod
    def from_path(cls, path: str, is_on_external_volume: bool = False) -> Optional["MatchResult"]:
        """Stat the path; returns None when it no longer exists."""
        try:
            st = os.stat(path)
        except OSError:
            return None
        is_dir = os.path.isdir(path)
        return cls(
            path=path,
            is_on_external_volume=is_on_external_volume,
            cached_is_dir=is_dir,
            size=0 if is_dir else st.st_size,
            modified=st.st_mtime,
        )

    @property
    def name(self) -> str:
        return os.path.basename(self.path.rstrip("/")) or self.path

    @property
    def parent(self) -> str:
        return os.path.dirname(self.path.rstrip("/"))

    @property
    def kind(self) -> str:
        if self.cached_is_dir:
            return "folder"
        ext = os.path.splitext(self.name)[1].lower()
        return ext.lstrip(".") or "file"


@dataclass(frozen=True)
class FolderFilter:
    """Restricts results to paths under any of the given folders."""
    id: str
    folders: Tuple[Path, ...]
    key: Optional[str] = None

    def with_key(self, key: Optional[str]) -> "FolderFilter":
        return replace(self, key=key)


@dataclass(frozen=True)
class QuickFilter:
    """A query fragment prepended to the user's query."""
    id: str
    query: str
    key: Optional[str] = None

    def with_key(self, key: Optional[str]) -> "QuickFilter":
        return replace(self, key=key)


@dataclass(frozen=True)
class VolumeFilter:
    """Restricts the matcher corpus to a single volume."""
    id: str
    volume: Path
    key: Optional[str] = None

    def with_key(self, key: Optional[str]) -> "VolumeFilter":
        return replace(self, key=key)


@dataclass
class EnumerationResult:
    """Outcome of one scope's enumeration process."""
    scope: Scope
    success: bool
    line_count: int = 0
    duration_seconds: float = 0.0
    error: Optional[Exception] = None


@dataclass
class IndexingStats:
    """Statistics from an indexing run."""
    scopes_indexed: List[str] = field(default_factory=list)
    scopes_failed: List[str] = field(default_factory=list)
    paths_indexed: int = 0
    duration_seconds: float = 0.0

    def __str__(self) -> str:
        return (
            f"Indexed {len(self.scopes_indexed)} scopes "
            f"({self.paths_indexed} paths, "
            f"{len(self.scopes_failed)} failed) "
            f"in {self.duration_seconds:.1f}s"
        )

"""
Corpus Store - Per-scope path list files.

Each scope owns one newline-delimited file of absolute paths inside the
index folder. Files are never edited in place: new content is written to a
temp file in the same folder and renamed over the old one, so readers
(the matcher's `cat`) never observe a partial corpus.
"""

import hashlib
import logging
import os
import shutil
import uuid
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set

from .config import EngineConfig
from .errors import IOFailure
from .models import Scope, ScopeCorpus, ScopeKind


logger = logging.getLogger(__name__)


def is_under(path: str, folder: str) -> bool:
    """True if `path` is `folder` or inside it (string prefix on components)."""
    folder = folder.rstrip("/")
    if not folder:
        return path.startswith("/")
    return path == folder or path.startswith(folder + "/")


def read_paths(file_path: Path) -> List[str]:
    """Read a corpus or live index, skipping blank lines."""
    with open(file_path, "r", encoding="utf-8", errors="surrogateescape") as f:
        return [line.rstrip("\n") for line in f if line.strip()]


class CorpusStore:
    """
    Owner of the corpus files.

    Resolves scopes to files, answers staleness questions and performs the
    only writes corpus files ever see: promotion of a finished enumeration
    and merging of consolidated live-index entries.
    """

    def __init__(self, config: EngineConfig):
        self.config = config

    # --- Scopes ---

    def local_scope(self, kind: ScopeKind) -> Scope:
        if kind == ScopeKind.HOME:
            return Scope(ScopeKind.HOME, self.config.home)
        if kind == ScopeKind.LIBRARY:
            return Scope(ScopeKind.LIBRARY, self.config.home / "Library")
        if kind == ScopeKind.ROOT:
            return Scope(ScopeKind.ROOT, self.config.root_dir)
        raise ValueError(f"Not a local scope: {kind}")

    def enabled_local_scopes(self) -> List[Scope]:
        """Local scopes enabled in the configuration, in a stable order."""
        scopes = []
        for kind in (ScopeKind.HOME, ScopeKind.LIBRARY, ScopeKind.ROOT):
            if kind.value in self.config.search_scopes:
                scopes.append(self.local_scope(kind))
        return scopes

    @staticmethod
    def volume_scope(mount_point: Path) -> Scope:
        return Scope(ScopeKind.VOLUME, Path(mount_point), Path(mount_point).name)

    def corpus(self, scope: Scope) -> ScopeCorpus:
        if scope.is_volume:
            # Mount path digest keeps same-named volumes apart
            digest = hashlib.sha1(str(scope.root).encode("utf-8", "surrogateescape")).hexdigest()[:8]
            filename = f"{scope.name.replace(' ', '-')}-{digest}.index"
            return ScopeCorpus(scope=scope, file_path=self.config.volume_index_dir / filename)
        return ScopeCorpus(scope=scope, file_path=self.config.index_dir / f"{scope.kind.value}.index")

    def local_corpora(self) -> List[ScopeCorpus]:
        return [self.corpus(s) for s in self.enabled_local_scopes()]

    # --- Staleness ---

    def index_exists(self) -> bool:
        return any(c.exists for c in self.local_corpora())

    def index_is_stale(self, now: Optional[float] = None) -> bool:
        window = self.config.freshness_window
        return any(c.is_stale(window, now) for c in self.local_corpora())

    def stale_scopes(self, now: Optional[float] = None) -> List[Scope]:
        window = self.config.freshness_window
        return [c.scope for c in self.local_corpora() if c.is_stale(window, now)]

    # --- Membership ---

    def scope_contains(self, scope: Scope, path: str) -> bool:
        """Whether `path` belongs to the part of the tree `scope` enumerates."""
        home = str(self.config.home)
        library = str(self.config.home / "Library")
        if scope.kind == ScopeKind.HOME:
            return is_under(path, home) and not is_under(path, library)
        if scope.kind == ScopeKind.LIBRARY:
            return is_under(path, library)
        if scope.kind == ScopeKind.ROOT:
            return is_under(path, str(self.config.root_dir)) and not is_under(path, home)
        return is_under(path, str(scope.root))

    def local_scope_for_path(self, path: str) -> Scope:
        """Partition a path into home / home-library / elsewhere."""
        for kind in (ScopeKind.LIBRARY, ScopeKind.HOME):
            scope = self.local_scope(kind)
            if self.scope_contains(scope, path):
                return scope
        return self.local_scope(ScopeKind.ROOT)

    def is_hard_ignored(self, path: str) -> bool:
        """Index files, their temp files and the pid file never show up as results."""
        if path == str(self.config.pid_file):
            return True
        return is_under(path, str(self.config.index_dir))

    # --- Writes ---

    def new_temp_file(self) -> Path:
        """Create an empty, uniquely named, owner-only temp file."""
        temp = self.config.temp_dir / f"{uuid.uuid4().hex}.index"
        fd = os.open(temp, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
        os.close(fd)
        return temp

    def promote(self, temp_file: Path, corpus: ScopeCorpus) -> None:
        """Atomically replace a scope's corpus with a finished temp file."""
        try:
            os.replace(temp_file, corpus.file_path)
        except OSError as e:
            self.discard(temp_file)
            raise IOFailure(f"Cannot promote {temp_file} to {corpus.file_path}: {e}") from e
        logger.debug(f"Promoted {temp_file.name} -> {corpus.file_path.name}")

    @staticmethod
    def discard(temp_file: Path) -> None:
        try:
            temp_file.unlink()
        except FileNotFoundError:
            pass

    def merge(self, paths: Iterable[str]) -> Dict[str, int]:
        """
        Append paths into the corpus of the local scope each belongs to.

        Entries are deduplicated against the corpus and each other and
        existence-checked. Scopes whose corpus does not exist yet are
        skipped (a full enumeration will produce them). The corpus mtime is
        preserved so consolidation never makes a stale corpus look fresh.

        Returns:
            Number of paths appended per scope id
        """
        partitions: Dict[Scope, List[str]] = {}
        for path in paths:
            scope = self.local_scope_for_path(path)
            partitions.setdefault(scope, []).append(path)

        enabled = set(self.enabled_local_scopes())
        appended: Dict[str, int] = {}
        for scope, entries in partitions.items():
            corpus = self.corpus(scope)
            if scope not in enabled or not corpus.exists:
                logger.debug(f"Skipping {len(entries)} live entries for {scope}: no corpus")
                continue
            appended[scope.scope_id] = self._append_unique(corpus, entries)
        return appended

    def _append_unique(self, corpus: ScopeCorpus, entries: List[str]) -> int:
        try:
            st = corpus.file_path.stat()
            known: Set[str] = set(read_paths(corpus.file_path))
        except OSError as e:
            raise IOFailure(f"Cannot read {corpus.file_path}: {e}") from e

        new_entries: List[str] = []
        for path in entries:
            if path in known or not os.path.lexists(path):
                continue
            known.add(path)
            new_entries.append(path)

        if not new_entries:
            return 0

        temp = self.new_temp_file()
        try:
            shutil.copyfile(corpus.file_path, temp)
            with open(temp, "rb+") as f:
                f.seek(0, os.SEEK_END)
                if f.tell() > 0:
                    f.seek(-1, os.SEEK_END)
                    if f.read(1) != b"\n":
                        f.write(b"\n")
                f.write(("\n".join(new_entries) + "\n").encode("utf-8", "surrogateescape"))
            os.utime(temp, ns=(st.st_atime_ns, st.st_mtime_ns))
        except OSError as e:
            self.discard(temp)
            raise IOFailure(f"Cannot append to {corpus.file_path}: {e}") from e

        self.promote(temp, corpus)
        logger.info(f"Consolidated {len(new_entries)} paths into {corpus.scope}")
        return len(new_entries)

"""
Ignore Policy - gitignore-style patterns for paths under the home folder.

The same ignore file is handed to the enumerator (`--ignore-file`) and
applied here to watcher events, so the live index drops exactly what a
full enumeration would have skipped.
"""

import logging
from pathlib import Path
from typing import List, Optional

import pathspec


logger = logging.getLogger(__name__)


class IgnoreMatcher:
    """Matches absolute paths under `base` against a gitignore-syntax file."""

    def __init__(self, ignore_file: Path, base: Path):
        self.ignore_file = ignore_file
        self.base = base
        self._patterns: List[str] = []
        self._spec: Optional[pathspec.PathSpec] = None
        self.reload()

    def reload(self) -> None:
        """Re-read the ignore file; a missing or unreadable file ignores nothing."""
        try:
            lines = self.ignore_file.read_text(encoding="utf-8", errors="ignore").splitlines()
        except OSError as e:
            logger.debug(f"No ignore patterns loaded from {self.ignore_file}: {e}")
            self._patterns = []
            self._spec = None
            return

        self._patterns = [
            line.strip() for line in lines
            if line.strip() and not line.strip().startswith("#")
        ]
        self._spec = pathspec.PathSpec.from_lines("gitwildmatch", self._patterns)
        logger.debug(f"Loaded {len(self._patterns)} ignore patterns from {self.ignore_file}")

    def is_ignored(self, path: str, is_dir: bool = False) -> bool:
        if self._spec is None:
            return False
        try:
            rel = Path(path).relative_to(self.base).as_posix()
        except ValueError:
            return False
        if rel in ("", "."):
            return False
        if self._spec.match_file(rel):
            return True
        return is_dir and self._spec.match_file(f"{rel}/")

    @property
    def pattern_count(self) -> int:
        return len(self._patterns)

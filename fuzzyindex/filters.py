"""
Filter Store - Saved folder, quick and volume filters plus the active ones.

Filters are combined (AND) with the raw query text. At most one filter of
each kind is active at a time and stays active until cleared. Hotkeys are
single lowercase characters; a hotkey belongs to at most one filter of a kind.
"""

import logging
from pathlib import Path
from typing import List, Optional, Sequence

from .models import FolderFilter, QuickFilter, VolumeFilter


logger = logging.getLogger(__name__)


def default_folder_filters(home: Path) -> List[FolderFilter]:
    return [
        FolderFilter(
            id="Applications",
            folders=(Path("/Applications"), Path("/System/Applications")),
            key="a",
        ),
        FolderFilter(id="Home", folders=(home,), key="h"),
        FolderFilter(
            id="Documents",
            folders=(home / "Documents", home / "Desktop", home / "Downloads"),
            key="d",
        ),
    ]


def default_quick_filters() -> List[QuickFilter]:
    return [
        QuickFilter(id="PDFs", query=".pdf$", key="p"),
        QuickFilter(id="Folders only", query="/$", key="f"),
    ]


def _normalize_key(key: Optional[str]) -> Optional[str]:
    if not key:
        return None
    return key[0].lower()


def _save(filters: list, new, original_id: str = "") -> list:
    """
    Insert `new`, replacing the filter being edited (by original id, or by
    the new id) and stealing its hotkey from any other filter.
    """
    replaced_id = original_id or new.id
    kept = []
    for f in filters:
        if f.id in (replaced_id, new.id):
            continue
        if new.key is not None and f.key == new.key:
            logger.debug(f"Hotkey {new.key!r} moved from {f.id!r} to {new.id!r}")
            f = f.with_key(None)
        kept.append(f)
    return kept + [new]


class FilterStore:
    """
    Saved filters and the active selection.

    Mutations are plain method calls; the engine performs the side effects
    (matcher restart, query resend) after calling them.
    """

    def __init__(
        self,
        home: Path,
        folder_filters: Optional[Sequence[FolderFilter]] = None,
        quick_filters: Optional[Sequence[QuickFilter]] = None,
    ):
        self.folder_filters: List[FolderFilter] = list(
            default_folder_filters(home) if folder_filters is None else folder_filters
        )
        self.quick_filters: List[QuickFilter] = list(
            default_quick_filters() if quick_filters is None else quick_filters
        )

        self.folder_filter: Optional[FolderFilter] = None
        self.quick_filter: Optional[QuickFilter] = None
        self.volume_filter: Optional[VolumeFilter] = None

    def any_active(self) -> bool:
        return (
            self.folder_filter is not None
            or self.quick_filter is not None
            or self.volume_filter is not None
        )

    def clear(self) -> None:
        self.folder_filter = None
        self.quick_filter = None
        self.volume_filter = None

    # --- Lookup ---

    def used_keys(self) -> set:
        return {f.key for f in self.folder_filters + self.quick_filters if f.key}

    def suggest_key(self, filter_id: str) -> Optional[str]:
        """First character of the name not already used as a hotkey."""
        used = self.used_keys()
        for char in filter_id.lower():
            if char.isalnum() and char not in used:
                return char
        return None

    def folder_filter_for_key(self, key: str) -> Optional[FolderFilter]:
        key = _normalize_key(key)
        return next((f for f in self.folder_filters if f.key == key), None)

    def quick_filter_for_key(self, key: str) -> Optional[QuickFilter]:
        key = _normalize_key(key)
        return next((f for f in self.quick_filters if f.key == key), None)

    # --- Saving ---

    def save_folder_filter(
        self,
        filter_id: str,
        folders: Sequence[Path],
        key: Optional[str] = None,
        original_id: str = "",
    ) -> Optional[FolderFilter]:
        """
        Create or edit a folder filter.

        Returns:
            The saved filter, or None when the name or folder list is empty
        """
        if not filter_id or not folders:
            return None
        new = FolderFilter(
            id=filter_id,
            folders=tuple(Path(f) for f in folders),
            key=_normalize_key(key),
        )
        self.folder_filters = _save(self.folder_filters, new, original_id)
        if self.folder_filter is not None and self.folder_filter.id in (original_id, filter_id):
            self.folder_filter = new
        return new

    def save_quick_filter(
        self,
        filter_id: str,
        query: str,
        key: Optional[str] = None,
        original_id: str = "",
    ) -> Optional[QuickFilter]:
        """
        Create or edit a quick filter.

        Returns:
            The saved filter, or None when the name or query is empty
        """
        query = query.strip()
        if not filter_id or not query:
            return None
        new = QuickFilter(id=filter_id, query=query, key=_normalize_key(key))
        self.quick_filters = _save(self.quick_filters, new, original_id)
        if self.quick_filter is not None and self.quick_filter.id in (original_id, filter_id):
            self.quick_filter = new
        return new

    # --- Deleting ---

    def delete_folder_filter(self, filter_id: str) -> bool:
        """Delete a folder filter; returns True if it was the active one."""
        self.folder_filters = [f for f in self.folder_filters if f.id != filter_id]
        if self.folder_filter is not None and self.folder_filter.id == filter_id:
            self.folder_filter = None
            return True
        return False

    def delete_quick_filter(self, filter_id: str) -> bool:
        """Delete a quick filter; returns True if it was the active one."""
        self.quick_filters = [f for f in self.quick_filters if f.id != filter_id]
        if self.quick_filter is not None and self.quick_filter.id == filter_id:
            self.quick_filter = None
            return True
        return False

    # --- Volumes ---

    @staticmethod
    def volume_filters(root: Path, volumes: Sequence[Path]) -> List[VolumeFilter]:
        """One filter per searchable volume, root first; hotkeys 0-9."""
        filters = []
        for i, volume in enumerate([root] + list(volumes)):
            name = "Root" if volume == root else volume.name
            filters.append(VolumeFilter(
                id=name,
                volume=volume,
                key=str(i) if i <= 9 else None,
            ))
        return filters

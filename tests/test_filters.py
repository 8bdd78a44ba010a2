"""
Filter Store Tests - Saved filters, hotkeys and the active selection.
"""

from pathlib import Path

from fuzzyindex.filters import FilterStore


HOME = Path("/Users/me")


class TestDefaults:
    """Tests for the built-in filters."""

    def test_default_folder_filters(self):
        store = FilterStore(HOME)

        assert [(f.id, f.key) for f in store.folder_filters] == [
            ("Applications", "a"), ("Home", "h"), ("Documents", "d"),
        ]
        assert store.folder_filter_for_key("d").folders == (
            HOME / "Documents", HOME / "Desktop", HOME / "Downloads",
        )

    def test_default_quick_filters(self):
        store = FilterStore(HOME)

        assert store.quick_filter_for_key("P").query == ".pdf$"
        assert store.quick_filter_for_key("f").query == "/$"
        assert store.quick_filter_for_key("z") is None

    def test_nothing_active_initially(self):
        assert not FilterStore(HOME).any_active()


class TestSaving:
    """Tests for creating and editing filters."""

    def test_hotkey_moves_to_new_filter(self):
        """A hotkey belongs to at most one filter of a kind."""
        store = FilterStore(HOME)

        store.save_folder_filter("Projects", [HOME / "src"], key="H")

        assert store.folder_filter_for_key("h").id == "Projects"
        home = next(f for f in store.folder_filters if f.id == "Home")
        assert home.key is None

    def test_edit_by_original_id_renames(self):
        store = FilterStore(HOME)

        store.save_quick_filter("Portable docs", ".pdf$", key="p", original_id="PDFs")

        assert [f.id for f in store.quick_filters] == ["Folders only", "Portable docs"]

    def test_editing_active_filter_updates_selection(self):
        store = FilterStore(HOME)
        store.quick_filter = store.quick_filter_for_key("p")

        saved = store.save_quick_filter("PDFs", r"\.pdf$", key="p")

        assert store.quick_filter == saved
        assert store.quick_filter.query == r"\.pdf$"

    def test_empty_name_or_content_rejected(self):
        store = FilterStore(HOME)

        assert store.save_folder_filter("", [HOME]) is None
        assert store.save_folder_filter("Nothing", []) is None
        assert store.save_quick_filter("Blank", "   ") is None
        assert len(store.folder_filters) == 3
        assert len(store.quick_filters) == 2

    def test_suggest_key_skips_used(self):
        store = FilterStore(HOME)

        assert store.suggest_key("Downloads") == "o"
        assert store.suggest_key("Music") == "m"
        assert store.suggest_key("adh") is None


class TestDeleting:
    """Tests for deleting filters."""

    def test_delete_active_clears_it(self):
        store = FilterStore(HOME)
        store.folder_filter = store.folder_filter_for_key("h")

        assert store.delete_folder_filter("Home") is True
        assert store.folder_filter is None
        assert store.folder_filter_for_key("h") is None

    def test_delete_inactive_keeps_selection(self):
        store = FilterStore(HOME)
        store.quick_filter = store.quick_filter_for_key("f")

        assert store.delete_quick_filter("PDFs") is False
        assert store.quick_filter.id == "Folders only"


class TestVolumeFilters:
    """Tests for the per-volume filter list."""

    def test_root_first_with_digit_keys(self):
        volumes = [Path(f"/Volumes/Disk{i}") for i in range(11)]

        filters = FilterStore.volume_filters(Path("/"), volumes)

        assert filters[0].id == "Root"
        assert filters[0].key == "0"
        assert filters[1].id == "Disk0"
        assert filters[9].key == "9"
        assert filters[10].key is None
        assert len(filters) == 12

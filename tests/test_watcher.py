"""
Watcher Tests - Verify live index recording and consolidation.

Tests:
- Recording new paths (idempotent) and removed paths
- Ignore file and hard-ignore filtering
- Start/stop idempotence
- Consolidation into scope corpora
- Real file system events
"""

import asyncio

import pytest

from fuzzyindex.corpus import read_paths
from fuzzyindex.ignore import IgnoreMatcher
from fuzzyindex.models import ScopeKind
from fuzzyindex.watcher import Watcher


class TestIgnoreMatcher:
    """Tests for gitignore-style ignore patterns."""

    def test_matches_relative_to_base(self, test_config):
        test_config.ignore_file.write_text("# comment\nnode_modules/\n*.pyc\n")
        matcher = IgnoreMatcher(test_config.ignore_file, test_config.home)

        home = test_config.home
        assert matcher.pattern_count == 2
        assert matcher.is_ignored(str(home / "proj" / "node_modules" / "x.js"))
        assert matcher.is_ignored(str(home / "proj" / "node_modules"), is_dir=True)
        assert matcher.is_ignored(str(home / "a.pyc"))
        assert not matcher.is_ignored(str(home / "a.py"))
        assert not matcher.is_ignored("/elsewhere/a.pyc")

    def test_missing_file_ignores_nothing(self, test_config):
        matcher = IgnoreMatcher(test_config.home / "absent", test_config.home)
        assert matcher.pattern_count == 0
        assert not matcher.is_ignored(str(test_config.home / "a.pyc"))


class TestWatcher:
    """Tests for the Watcher class."""

    @pytest.fixture
    def removed(self):
        return []

    @pytest.fixture
    def watcher(self, test_config, store, removed):
        test_config.ensure_ignore_file()
        w = Watcher(test_config, store, on_removed=removed.append)
        yield w
        w.stop()

    def test_watcher_creates(self, watcher):
        """Watcher initializes stopped."""
        assert not watcher.running
        assert watcher.get_pending_count() == 0

    def test_records_new_path_once(self, watcher, sample_files):
        """An existing path is appended to the live index exactly once."""
        watcher.start()
        path = str(sample_files["notes"])

        watcher.record(path)
        watcher.record(path)

        assert read_paths(watcher.live_index) == [path]
        assert watcher.get_pending_count() == 1

    def test_records_removed_path(self, watcher, sample_files, removed):
        """A missing path goes to removed_files and is reported once."""
        watcher.start()
        path = str(sample_files["notes"])
        watcher.record(path)
        sample_files["notes"].unlink()

        watcher.record(path)
        watcher.record(path)

        assert path in watcher.removed_files
        assert path not in watcher.seen_paths
        assert removed == [path]

    def test_recreated_path_leaves_removed(self, watcher, test_config):
        """A path that comes back is no longer considered removed."""
        watcher.start()
        path = test_config.home / "flaky.txt"
        watcher.record(str(path))
        assert str(path) in watcher.removed_files

        path.write_text("back")
        watcher.record(str(path))

        assert str(path) not in watcher.removed_files
        assert read_paths(watcher.live_index) == [str(path)]

    def test_skips_ignored_paths(self, watcher, test_config):
        """Ignore-file matches under home are dropped before recording."""
        watcher.start()
        ignored = test_config.home / "proj" / "node_modules" / "pkg.json"
        ignored.parent.mkdir(parents=True)
        ignored.write_text("{}")

        watcher.record(str(ignored))

        assert watcher.get_pending_count() == 0

    def test_skips_hard_ignored(self, watcher, test_config):
        """Writes to the index folder never feed back into the live index."""
        watcher.start()
        watcher.record(str(test_config.live_index))
        watcher.record(str(test_config.pid_file))

        assert watcher.get_pending_count() == 0
        assert watcher.removed_files == set()

    def test_ignores_events_when_stopped(self, watcher, sample_files):
        watcher.record(str(sample_files["notes"]))
        assert watcher.get_pending_count() == 0

    def test_stop_is_idempotent(self, watcher):
        watcher.stop()
        watcher.start()
        watcher.stop()
        watcher.stop()
        assert not watcher.running

    def test_start_resets_state(self, watcher, sample_files, test_config):
        """Starting again truncates the live index and clears both sets."""
        watcher.start()
        watcher.record(str(sample_files["notes"]))
        watcher.record(str(test_config.home / "gone"))

        watcher.start()

        assert watcher.running
        assert read_paths(watcher.live_index) == []
        assert watcher.seen_paths == set()
        assert watcher.removed_files == set()

    @pytest.mark.asyncio
    async def test_consolidate(self, watcher, store, sample_files):
        """Live entries move into the scope corpus and the live index empties."""
        home = store.corpus(store.local_scope(ScopeKind.HOME))
        home.file_path.write_text(f"{sample_files['notes']}\n")

        watcher.start()
        watcher.record(str(sample_files["notes"]))
        watcher.record(str(sample_files["report"]))

        appended = await watcher.consolidate()

        assert appended == {"home": 1}
        assert read_paths(home.file_path) == [str(sample_files["notes"]), str(sample_files["report"])]
        assert read_paths(watcher.live_index) == []
        assert not watcher.running
        assert watcher.seen_paths == set()

    @pytest.mark.asyncio
    async def test_observes_real_events(self, watcher, test_config):
        """Files created on disk reach the live index through watchdog."""
        watcher.start()
        created = test_config.home / "Documents" / "fresh.txt"
        created.write_text("new")

        for _ in range(100):
            if str(created) in watcher.seen_paths:
                break
            await asyncio.sleep(0.05)

        assert str(created) in watcher.seen_paths
        assert str(created) in read_paths(watcher.live_index)

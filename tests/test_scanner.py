"""
Scanner Tests - Verify enumeration subprocess handling.

Tests:
- Argument construction per scope
- Thread budget
- Successful enumeration promotes the corpus
- Spawn failures and failing enumerators leave the corpus untouched
- Temp files never outlive a run
"""

import asyncio
from unittest.mock import patch

import pytest

from fuzzyindex.corpus import read_paths
from fuzzyindex.errors import IOFailure
from fuzzyindex.models import ScopeKind
from fuzzyindex.scanner import Scanner, thread_budget

from conftest import write_script


class TestThreadBudget:
    """Tests for the per-process thread budget."""

    def test_divides_cores(self):
        assert thread_budget(6, 2) == 3
        assert thread_budget(12, 3) == 4

    def test_never_below_one(self):
        assert thread_budget(2, 3) == 1
        assert thread_budget(0, 3) == 1
        assert thread_budget(4, 0) == 4


class TestBuildArgs:
    """Tests for enumerator arguments."""

    def test_home_excludes_library(self, store, test_config):
        scanner = Scanner(test_config, store)
        args = scanner.build_args(store.local_scope(ScopeKind.HOME), 2)

        assert args[:3] == ["-uu", "-j", "2"]
        assert "--one-file-system" in args
        assert args[args.index("--ignore-file") + 1] == str(test_config.ignore_file)
        assert args[args.index("--exclude") + 1] == "/Library"
        assert args[-2:] == [".", str(test_config.home)]

    def test_root_excludes_home(self, store, test_config):
        scanner = Scanner(test_config, store)
        args = scanner.build_args(store.local_scope(ScopeKind.ROOT), 1)

        assert args[args.index("--exclude") + 1] == "/home"
        assert args[-1] == str(test_config.root_dir)


class TestEnumerate:
    """Tests for running the enumerator."""

    @pytest.mark.asyncio
    async def test_enumerates_into_corpus(self, store, test_config, sample_files):
        """A successful run replaces the corpus and leaves no temp file."""
        scanner = Scanner(test_config, store)
        scope = store.local_scope(ScopeKind.HOME)

        result = await scanner.enumerate(scope, 2)

        assert result.success
        paths = read_paths(store.corpus(scope).file_path)
        assert str(sample_files["report"]) in paths
        assert str(sample_files["notes"]) in paths
        assert result.line_count == len(paths)
        assert list(test_config.temp_dir.iterdir()) == []
        assert scanner.running_count == 0

    @pytest.mark.asyncio
    async def test_missing_root_is_skipped(self, store, test_config):
        """An unmounted volume is never enumerated."""
        scanner = Scanner(test_config, store)
        scope = store.volume_scope(test_config.volume_roots[0] / "Gone")

        result = await scanner.enumerate(scope, 1)

        assert not result.success
        assert not store.corpus(scope).exists

    @pytest.mark.asyncio
    async def test_spawn_failure_keeps_previous_corpus(self, store, test_config):
        """A missing binary fails the scope without touching its corpus."""
        test_config.enumerator_binary = str(test_config.home / "no-such-fd")
        scanner = Scanner(test_config, store)
        scope = store.local_scope(ScopeKind.HOME)
        corpus = store.corpus(scope)
        corpus.file_path.write_text("/previous\n")

        result = await scanner.enumerate(scope, 1)

        assert not result.success
        assert result.error is not None
        assert read_paths(corpus.file_path) == ["/previous"]
        assert list(test_config.temp_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_failing_enumerator_without_output(self, store, test_config, fake_bin):
        """A non-zero exit with no output is a failure."""
        test_config.enumerator_binary = str(write_script(fake_bin / "fd-broken", "#!/bin/sh\nexit 1\n"))
        scanner = Scanner(test_config, store)
        scope = store.local_scope(ScopeKind.HOME)

        result = await scanner.enumerate(scope, 1)

        assert not result.success
        assert not store.corpus(scope).exists

    @pytest.mark.asyncio
    async def test_partial_output_is_kept(self, store, test_config, fake_bin):
        """Permission errors mid-walk still produce a usable corpus."""
        script = '#!/bin/sh\necho /partial/a\necho /partial/b\nexit 1\n'
        test_config.enumerator_binary = str(write_script(fake_bin / "fd-partial", script))
        scanner = Scanner(test_config, store)
        scope = store.local_scope(ScopeKind.HOME)

        result = await scanner.enumerate(scope, 1)

        assert result.success
        assert read_paths(store.corpus(scope).file_path) == ["/partial/a", "/partial/b"]


class TestTempFileCleanup:
    """Tests for runs that end before promotion."""

    @pytest.mark.asyncio
    async def test_cancelled_run_kills_process_and_removes_temp(self, store, test_config, fake_bin):
        test_config.enumerator_binary = str(write_script(fake_bin / "fd-hang", "#!/bin/sh\nexec sleep 30\n"))
        scanner = Scanner(test_config, store)
        scope = store.local_scope(ScopeKind.HOME)

        task = asyncio.create_task(scanner.enumerate(scope, 1))
        for _ in range(100):
            if scanner.running_count:
                break
            await asyncio.sleep(0.01)
        process = next(iter(scanner._running))

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert await asyncio.wait_for(process.wait(), 5) < 0
        assert scanner.running_count == 0
        assert list(test_config.temp_dir.iterdir()) == []
        assert not store.corpus(scope).exists

    @pytest.mark.asyncio
    async def test_read_error_after_exit_is_a_failure(self, store, test_config, sample_files):
        scanner = Scanner(test_config, store)
        scope = store.local_scope(ScopeKind.HOME)

        with patch("fuzzyindex.scanner._count_lines", side_effect=OSError("disk gone")):
            result = await scanner.enumerate(scope, 1)

        assert not result.success
        assert isinstance(result.error, IOFailure)
        assert list(test_config.temp_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_temp_file_creation_error_is_a_failure(self, store, test_config):
        scanner = Scanner(test_config, store)
        scope = store.local_scope(ScopeKind.HOME)

        with patch.object(store, "new_temp_file", side_effect=OSError("no space left")):
            result = await scanner.enumerate(scope, 1)

        assert not result.success
        assert scanner.running_count == 0

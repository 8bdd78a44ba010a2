"""
Engine Tests - Corpus selection, setters and startup states.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from fuzzyindex.engine import Engine, EngineState
from fuzzyindex.models import FolderFilter, QuickFilter, ScopeKind, VolumeFilter


@pytest.fixture
def engine(test_config):
    engine = Engine(test_config)
    engine.supervisor.restart_server = AsyncMock(return_value=True)
    engine.supervisor.force_stop_matchers = MagicMock(return_value=0)
    engine.client.change_query = AsyncMock()
    return engine


@pytest.fixture
def corpora(engine, test_config):
    """Local corpora plus one indexed volume."""
    home = engine.store.corpus(engine.store.local_scope(ScopeKind.HOME)).file_path
    root = engine.store.corpus(engine.store.local_scope(ScopeKind.ROOT)).file_path
    home.write_text(f"{test_config.home}/notes.txt\n")
    root.write_text(f"{test_config.root_dir}/opt\n")

    volume = test_config.volume_roots[0] / "Backup"
    volume.mkdir()
    engine.volumes.volumes = [volume]
    volume_corpus = engine.volumes.corpus_for(volume).file_path
    volume_corpus.write_text(f"{volume}/photo.jpg\n")
    return {"home": home, "root": root, "volume": volume_corpus, "mount": volume}


class TestSelectCorpus:
    """Tests for what the next matcher reads."""

    def test_everything_without_filters(self, engine, corpora):
        selection = engine.select_corpus()

        assert sorted(selection.files) == sorted([corpora["home"], corpora["root"], corpora["volume"]])
        assert selection.prefixes == []
        assert selection.initial_query == ""

    def test_folder_filter_becomes_prefilter(self, engine, corpora, test_config):
        docs = test_config.home / "Documents"
        engine.filters.folder_filter = FolderFilter(id="Docs", folders=(docs,))

        selection = engine.select_corpus()

        assert selection.prefixes == [str(docs)]
        assert corpora["volume"] in selection.files

    def test_root_volume_filter_uses_local_corpora(self, engine, corpora, test_config):
        engine.filters.volume_filter = VolumeFilter(id="Root", volume=test_config.root_dir)
        engine.filters.folder_filter = FolderFilter(id="Docs", folders=(test_config.home,))

        selection = engine.select_corpus()

        assert sorted(selection.files) == sorted([corpora["home"], corpora["root"]])
        assert selection.prefixes == []

    def test_volume_filter_uses_volume_corpus(self, engine, corpora):
        engine.filters.volume_filter = VolumeFilter(id="Backup", volume=corpora["mount"])

        assert engine.select_corpus().files == [corpora["volume"]]

    def test_disabled_volume_not_searched(self, engine, corpora):
        engine.volumes.set_volume_enabled(corpora["mount"], False)

        assert corpora["volume"] not in engine.select_corpus().files

    def test_initial_query_carries_filters(self, engine, corpora):
        engine.router.query = "report"
        engine.filters.quick_filter = QuickFilter(id="PDFs", query=".pdf$")

        assert engine.select_corpus().initial_query == ".pdf$ report"


class TestSetters:
    """Tests for setter side effects."""

    @pytest.mark.asyncio
    async def test_folder_filter_restarts_and_resends(self, engine, test_config):
        await engine.set_folder_filter(FolderFilter(id="Home", folders=(test_config.home,)))

        engine.supervisor.restart_server.assert_awaited_once()
        engine.client.change_query.assert_awaited_once_with("")

    @pytest.mark.asyncio
    async def test_quick_filter_only_resends(self, engine):
        await engine.set_query("report")
        await engine.set_quick_filter(QuickFilter(id="PDFs", query=".pdf$"))

        engine.supervisor.restart_server.assert_not_awaited()
        assert engine.client.change_query.await_args.args == (".pdf$ report",)

    @pytest.mark.asyncio
    async def test_same_filter_is_a_no_op(self, engine):
        quick = QuickFilter(id="PDFs", query=".pdf$")
        await engine.set_quick_filter(quick)
        await engine.set_quick_filter(quick)

        assert engine.client.change_query.await_count == 1

    @pytest.mark.asyncio
    async def test_save_activates_filter(self, engine, test_config):
        saved = await engine.save_folder_filter("Docs", [test_config.home / "Documents"], key="o")

        assert engine.filters.folder_filter == saved
        engine.supervisor.restart_server.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_delete_active_filter_clears_it(self, engine):
        await engine.save_quick_filter("Text", ".txt$", key="t")

        await engine.delete_quick_filter("Text")

        assert engine.filters.quick_filter is None
        assert not engine.filters.any_active()

    @pytest.mark.asyncio
    async def test_clear_filters_restarts_when_corpus_changed(self, engine, test_config):
        engine.filters.volume_filter = VolumeFilter(id="Root", volume=test_config.root_dir)

        await engine.clear_filters()

        engine.supervisor.restart_server.assert_awaited_once()
        assert not engine.filters.any_active()

    @pytest.mark.asyncio
    async def test_search_scopes_restart(self, engine, corpora):
        await engine.set_search_scopes(["home", "home"])

        assert engine.config.search_scopes == ["home"]
        engine.supervisor.restart_server.assert_awaited_once()

    def test_visibility_suspends_and_resumes(self, engine):
        engine.supervisor.suspend = MagicMock()
        engine.supervisor.resume = MagicMock()

        engine.set_visible(False)
        engine.set_visible(True)

        engine.supervisor.suspend.assert_called_once()
        engine.supervisor.resume.assert_called_once()

    def test_volume_filters_list(self, engine, corpora, test_config):
        filters = engine.volume_filters()

        assert [f.volume for f in filters] == [test_config.root_dir, corpora["mount"]]


class TestMountChanges:
    """Tests for volumes appearing and disappearing."""

    @pytest.mark.asyncio
    async def test_unmount_drops_volume_filter(self, engine, corpora):
        engine.filters.volume_filter = VolumeFilter(id="Backup", volume=corpora["mount"])
        engine.volumes.index_volumes = AsyncMock(return_value=[])

        with patch("fuzzyindex.volumes.list_volumes", return_value=[]):
            await engine._handle_mount_change()

        assert engine.filters.volume_filter is None
        engine.supervisor.restart_server.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_unchanged_mounts_do_nothing(self, engine, corpora):
        engine.volumes.index_volumes = AsyncMock(return_value=[])

        with patch("fuzzyindex.volumes.list_volumes", return_value=[corpora["mount"]]):
            await engine._handle_mount_change()

        engine.volumes.index_volumes.assert_not_awaited()
        engine.supervisor.restart_server.assert_not_awaited()


class TestStartup:
    """Tests for the access gate."""

    @pytest.mark.asyncio
    async def test_waits_for_filesystem_access(self, engine, test_config, temp_dir):
        probe = temp_dir / "probe"
        test_config.access_probe_path = probe
        engine.orchestrator.start_index = AsyncMock()

        try:
            await engine.start()
            assert engine.state == EngineState.WAITING
            assert engine.operation == "Waiting for filesystem access"
            engine.orchestrator.start_index.assert_not_awaited()

            probe.mkdir()
            for _ in range(100):
                if engine.state != EngineState.WAITING:
                    break
                await asyncio.sleep(0.02)

            assert engine.state == EngineState.READY
            engine.orchestrator.start_index.assert_awaited_once()
        finally:
            await engine.cleanup()

        assert engine.state == EngineState.STOPPED

    @pytest.mark.asyncio
    async def test_cleanup_twice(self, engine):
        await engine.cleanup()
        await engine.cleanup()

        assert engine.state == EngineState.STOPPED

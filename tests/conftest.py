"""
Test Configuration - Shared fixtures for engine tests.

Uses pytest fixtures to create isolated test environments: a fake root
with a home folder inside it, a private index folder and shell-script
stand-ins for the enumerator and the matcher.
"""

import shutil
import socket
import stat
import tempfile
from pathlib import Path
from typing import Generator

import pytest

from fuzzyindex.config import EngineConfig
from fuzzyindex.corpus import CorpusStore


FAKE_ENUMERATOR = """#!/bin/sh
# Prints every path below the last argument, like `fd . ROOT`
for last; do :; done
find "$last" -mindepth 1
"""

FAKE_MATCHER = """#!/bin/sh
# Stays alive like an interactive matcher, ignoring its input
exec sleep 60
"""


def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def write_script(path: Path, content: str) -> Path:
    path.write_text(content)
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    tmp = tempfile.mkdtemp(prefix="fuzzyindex_test_")
    # Resolve to handle macOS /var -> /private/var symlink
    resolved = Path(tmp).resolve()
    yield resolved
    shutil.rmtree(str(resolved), ignore_errors=True)


@pytest.fixture
def fake_bin(temp_dir: Path) -> Path:
    """Folder holding fake `fd` and `fzf` executables."""
    bin_dir = temp_dir / "bin"
    bin_dir.mkdir()
    write_script(bin_dir / "fd", FAKE_ENUMERATOR)
    write_script(bin_dir / "fzf", FAKE_MATCHER)
    return bin_dir


@pytest.fixture
def test_config(temp_dir: Path, fake_bin: Path) -> EngineConfig:
    """Create an isolated test configuration."""
    root = temp_dir / "root"
    home = root / "home"
    (home / "Documents").mkdir(parents=True)
    (root / "opt").mkdir()
    volume_root = temp_dir / "volumes"
    volume_root.mkdir()

    return EngineConfig(
        home=home,
        root_dir=root,
        index_dir=temp_dir / "index",
        ignore_file=home / ".fsignore",
        pid_file=temp_dir / "matcher.pid",
        enumerator_binary=str(fake_bin / "fd"),
        matcher_binary=str(fake_bin / "fzf"),
        search_scopes=["home", "root"],
        watch_roots=[home],
        volume_roots=[volume_root],
        control_port=free_port(),
        notify_port=free_port(),
        query_debounce_ms=1,
        termination_timeout=0.5,
        access_probe_path=home,
        access_poll_interval=0.05,
        cpu_count=6,
    )


@pytest.fixture
def store(test_config: EngineConfig) -> CorpusStore:
    return CorpusStore(test_config)


@pytest.fixture
def sample_files(test_config: EngineConfig) -> dict[str, Path]:
    """Create sample files in home and outside of it."""
    home = test_config.home
    files = {}

    files["report"] = home / "Documents" / "report.pdf"
    files["report"].write_text("pdf")

    files["notes"] = home / "notes.txt"
    files["notes"].write_text("some notes")

    files["tool"] = test_config.root_dir / "opt" / "tool.sh"
    files["tool"].write_text("#!/bin/sh\n")

    return files

"""
Engine Configuration - Centralized settings for the search engine.

Uses environment variables with sensible defaults. All paths are resolved
to absolute paths for reliability. Policy constants (freshness windows,
battery threshold, ports) live here so they can be tuned per install.
"""

import getpass
import os
import random
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Set


def _default_index_dir() -> Path:
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Caches" / "fuzzyindex"
    if cache_home := os.environ.get("XDG_CACHE_HOME"):
        return Path(cache_home) / "fuzzyindex"
    return Path.home() / ".cache" / "fuzzyindex"


def _default_scopes() -> List[str]:
    if sys.platform == "darwin":
        return ["root", "home", "library"]
    return ["root", "home"]


def _default_watch_roots() -> List[Path]:
    if sys.platform == "darwin":
        return [Path(p) for p in ("/Users", "/usr/local", "/opt", "/Applications", "/tmp")]
    return [Path.home(), Path("/usr/local"), Path("/opt"), Path("/tmp")]


def _default_volume_roots() -> List[Path]:
    if sys.platform == "darwin":
        return [Path("/Volumes")]
    return [Path("/media"), Path("/mnt"), Path("/run/media")]


def _default_access_probe() -> Path:
    # Full Disk Access is required to read this folder on macOS
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Safari"
    return Path.home()


DEFAULT_IGNORE_PATTERNS = """\
# Patterns in gitignore syntax, relative to the home folder
.git/
.hg/
.svn/
node_modules/
__pycache__/
.venv/
.cache/
.npm/
.Trash/
*.pyc
.DS_Store
Library/Caches/
Library/Containers/*/Data/Library/Caches/
Library/Logs/
"""


@dataclass
class EngineConfig:
    """
    Configuration for the search engine.

    Corpus files default to the user cache folder. External tools are looked
    up on PATH unless an absolute path is given.
    """

    # --- Paths ---
    home: Path = field(default_factory=Path.home)
    root_dir: Path = field(default_factory=lambda: Path("/"))
    index_dir: Path = field(default_factory=_default_index_dir)
    ignore_file: Path = field(default_factory=lambda: Path.home() / ".fsignore")
    pid_file: Path = field(
        default_factory=lambda: Path(f"/tmp/fuzzyindex-{getpass.getuser()}.pid")
    )

    # --- External tools ---
    enumerator_binary: str = "fd"
    matcher_binary: str = "fzf"
    text_filter_binary: str = "rg"
    shell: str = "/bin/sh"

    # --- Scopes ---
    search_scopes: List[str] = field(default_factory=_default_scopes)
    watch_roots: List[Path] = field(default_factory=_default_watch_roots)
    volume_roots: List[Path] = field(default_factory=_default_volume_roots)
    disabled_volumes: Set[Path] = field(default_factory=set)
    volume_reindex_intervals: Dict[Path, float] = field(default_factory=dict)

    # --- Staleness policy ---
    freshness_window_hours: float = 72.0
    volume_freshness_window_hours: float = 24.0 * 7
    battery_threshold: int = 30
    staleness_check_interval: float = 60.0 * 60

    # --- Query pipeline ---
    max_results: int = 30
    query_debounce_ms: int = 30
    control_port: int = 7272
    notify_port: int = field(default_factory=lambda: random.randint(10000, 60000))
    request_timeout: float = 2.0

    # --- Matcher process ---
    port_in_use_exit_code: int = 2
    termination_timeout: float = 1.0
    termination_poll_interval: float = 0.01
    terminal_rows: int = 20
    terminal_cols: int = 80

    # --- Access ---
    access_probe_path: Path = field(default_factory=_default_access_probe)
    access_poll_interval: float = 1.0

    cpu_count: int = field(default_factory=lambda: os.cpu_count() or 1)

    def __post_init__(self):
        """Ensure all paths are absolute and the index folder exists."""
        self.home = Path(self.home).expanduser().resolve()
        self.root_dir = Path(self.root_dir).expanduser().resolve()
        self.index_dir = Path(self.index_dir).expanduser().resolve()
        self.ignore_file = Path(self.ignore_file).expanduser().resolve()
        self.pid_file = Path(self.pid_file).expanduser()
        self.access_probe_path = Path(self.access_probe_path).expanduser()
        self.watch_roots = [Path(p).expanduser() for p in self.watch_roots]
        self.volume_roots = [Path(p).expanduser() for p in self.volume_roots]
        self.disabled_volumes = {Path(p) for p in self.disabled_volumes}

        self.index_dir.mkdir(parents=True, exist_ok=True, mode=0o700)
        self.temp_dir.mkdir(parents=True, exist_ok=True, mode=0o700)
        self.volume_index_dir.mkdir(parents=True, exist_ok=True, mode=0o700)

    @property
    def temp_dir(self) -> Path:
        """Scratch folder for in-progress corpora (same volume as index_dir)."""
        return self.index_dir / "tmp"

    @property
    def volume_index_dir(self) -> Path:
        return self.index_dir / "volumes"

    @property
    def live_index(self) -> Path:
        return self.index_dir / "live.index"

    @property
    def freshness_window(self) -> float:
        return self.freshness_window_hours * 3600

    @property
    def volume_freshness_window(self) -> float:
        return self.volume_freshness_window_hours * 3600

    def ensure_ignore_file(self) -> None:
        """Write the default ignore patterns if the user has no ignore file."""
        if self.ignore_file.exists():
            return
        self.ignore_file.parent.mkdir(parents=True, exist_ok=True)
        self.ignore_file.write_text(DEFAULT_IGNORE_PATTERNS)

    @classmethod
    def from_env(cls) -> "EngineConfig":
        """
        Create config from environment variables.

        Supported env vars:
            FUZZYINDEX_INDEX_DIR: Folder holding the corpus files
            FUZZYINDEX_SCOPES: Comma-separated scopes (home, library, root)
            FUZZYINDEX_WATCH_ROOTS: Comma-separated list of paths
            FUZZYINDEX_FD: Directory enumeration binary
            FUZZYINDEX_FZF: Fuzzy matcher binary
            FUZZYINDEX_RG: Text filter binary
            FUZZYINDEX_MAX_RESULTS: Maximum results fetched per query
            FUZZYINDEX_FRESHNESS_HOURS: Local corpus freshness window
            FUZZYINDEX_BATTERY_THRESHOLD: Percent below which volumes are deferred
        """
        kwargs = {}

        if index_dir := os.environ.get("FUZZYINDEX_INDEX_DIR"):
            kwargs["index_dir"] = Path(index_dir)

        if scopes := os.environ.get("FUZZYINDEX_SCOPES"):
            kwargs["search_scopes"] = [s.strip() for s in scopes.split(",") if s.strip()]

        if roots := os.environ.get("FUZZYINDEX_WATCH_ROOTS"):
            kwargs["watch_roots"] = [Path(p.strip()) for p in roots.split(",")]

        if fd := os.environ.get("FUZZYINDEX_FD"):
            kwargs["enumerator_binary"] = fd

        if fzf := os.environ.get("FUZZYINDEX_FZF"):
            kwargs["matcher_binary"] = fzf

        if rg := os.environ.get("FUZZYINDEX_RG"):
            kwargs["text_filter_binary"] = rg

        if max_results := os.environ.get("FUZZYINDEX_MAX_RESULTS"):
            kwargs["max_results"] = int(max_results)

        if hours := os.environ.get("FUZZYINDEX_FRESHNESS_HOURS"):
            kwargs["freshness_window_hours"] = float(hours)

        if threshold := os.environ.get("FUZZYINDEX_BATTERY_THRESHOLD"):
            kwargs["battery_threshold"] = int(threshold)

        return cls(**kwargs)

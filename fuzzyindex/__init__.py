"""
fuzzyindex - Incremental file search driven by an external fuzzy matcher.

Modules:
    - config: Centralized configuration
    - errors: Error taxonomy and handling policies
    - models: Scopes, corpora, matches, filters
    - corpus: Per-scope corpus files (atomic promote, merge)
    - scanner: Directory enumeration subprocesses (fd)
    - orchestrator: Index lifecycle and staleness
    - watcher: Real-time change detection feeding the live index
    - ignore: gitignore-style ignore file
    - volumes: External volume corpora, battery deferral, mount monitoring
    - terminal: PTY hosting for the matcher
    - supervisor: Matcher subprocess lifecycle (fzf)
    - client: Matcher control channel (HTTP)
    - notifier: Result-ready notification listener
    - query: Query construction and the result pipeline
    - filters: Folder, quick and volume filters
    - engine: Wiring and lifecycle

Data Flow:
    fd -> corpus files --+
    watcher -> live index -+-> cat/tail -> fzf --listen <-> client
                                           |
                                           +-> nc -> notifier -> fetch -> results

Usage:
    from fuzzyindex import Engine, EngineConfig

    engine = Engine(EngineConfig.from_env())
    await engine.start()
    await engine.set_query("report pdf")
"""

from .config import EngineConfig
from .engine import Engine

__all__ = ["Engine", "EngineConfig"]

"""
Scanner - Directory enumeration through an external process.

Each scope is enumerated by one `fd` process writing one path per line
into a temp file next to the corpus. Only a finished, successful run is
promoted over the scope's corpus; anything else leaves the previous
corpus untouched.
"""

import asyncio
import logging
import signal
import time
from pathlib import Path
from typing import List, Set

from .config import EngineConfig
from .corpus import CorpusStore
from .errors import IOFailure, SubprocessSpawnFailure, handle_error
from .models import EnumerationResult, Scope, ScopeKind


logger = logging.getLogger(__name__)


def thread_budget(cores: int, share: int) -> int:
    """Threads one enumeration process may use when `share` processes split `cores`."""
    return max(1, cores // max(1, share))


def _count_lines(path: Path) -> int:
    count = 0
    with open(path, "rb") as f:
        while chunk := f.read(1 << 20):
            count += chunk.count(b"\n")
    return count


def _kill(process: asyncio.subprocess.Process) -> None:
    if process.returncode is None:
        try:
            process.send_signal(signal.SIGKILL)
        except ProcessLookupError:
            pass


class Scanner:
    """
    Spawns and tracks enumeration processes.

    All processes started through one Scanner can be killed together with
    `stop_all()` (a new indexing run or engine cleanup does this).
    """

    def __init__(self, config: EngineConfig, store: CorpusStore):
        self.config = config
        self.store = store
        self._running: Set[asyncio.subprocess.Process] = set()

    def build_args(self, scope: Scope, threads: int) -> List[str]:
        """Arguments for one scope: threads, ignore file, excludes, root."""
        args = [
            "-uu",
            "-j", str(threads),
            "--one-file-system",
            "--ignore-file", str(self.config.ignore_file),
        ]
        for pattern in self._excludes(scope):
            args += ["--exclude", pattern]
        args += [".", str(scope.root)]
        return args

    def _excludes(self, scope: Scope) -> List[str]:
        # Anchored patterns are relative to the search root
        home = self.config.home
        if scope.kind == ScopeKind.HOME:
            return ["/Library"]
        if scope.kind == ScopeKind.ROOT:
            try:
                return ["/" + str(home.relative_to(scope.root))]
            except ValueError:
                return []
        return []

    async def _spawn(self, args: List[str], stdout) -> asyncio.subprocess.Process:
        return await asyncio.create_subprocess_exec(
            self.config.enumerator_binary,
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=stdout,
            stderr=asyncio.subprocess.DEVNULL,
        )

    async def enumerate(self, scope: Scope, threads: int) -> EnumerationResult:
        """
        Enumerate one scope into its corpus.

        Args:
            scope: Scope to enumerate
            threads: Thread budget passed to the enumerator

        Returns:
            EnumerationResult; on failure the previous corpus is untouched
        """
        start_time = time.monotonic()
        corpus = self.store.corpus(scope)

        if not scope.root.exists():
            # Unmounted volume or missing folder: nothing to enumerate
            logger.warning(f"Scope root not found, skipping: {scope.root}")
            return EnumerationResult(scope=scope, success=False)

        temp_file = None
        promoted = False
        try:
            temp_file = self.store.new_temp_file()
            args = self.build_args(scope, threads)
            logger.debug(f"Enumerating {scope} with {threads} threads: {args}")

            with open(temp_file, "wb") as out:
                try:
                    process = await self._spawn(args, out)
                except OSError as e:
                    raise SubprocessSpawnFailure(self.config.enumerator_binary, str(e)) from e

                self._running.add(process)
                try:
                    returncode = await process.wait()
                except asyncio.CancelledError:
                    _kill(process)
                    raise
                finally:
                    self._running.discard(process)

            line_count = _count_lines(temp_file)
            if returncode < 0 or (returncode > 0 and line_count == 0):
                logger.error(f"Enumeration of {scope} failed with code {returncode}")
                return EnumerationResult(
                    scope=scope,
                    success=False,
                    duration_seconds=time.monotonic() - start_time,
                )
            if returncode > 0:
                logger.warning(f"Enumeration of {scope} exited with {returncode}, keeping partial output")

            self.store.promote(temp_file, corpus)
            promoted = True
        except SubprocessSpawnFailure as e:
            handle_error(e, scope, "enumerate")
            return EnumerationResult(scope=scope, success=False, error=e)
        except IOFailure as e:
            handle_error(e, corpus.file_path, "promote")
            return EnumerationResult(scope=scope, success=False, error=e)
        except OSError as e:
            failure = IOFailure(str(e))
            handle_error(failure, scope, "enumerate")
            return EnumerationResult(scope=scope, success=False, error=failure)
        finally:
            if temp_file is not None and not promoted:
                self.store.discard(temp_file)

        duration = time.monotonic() - start_time
        logger.info(f"Indexed {scope}: {line_count} paths in {duration:.1f}s")
        return EnumerationResult(
            scope=scope,
            success=True,
            line_count=line_count,
            duration_seconds=duration,
        )

    def stop_all(self) -> None:
        """Kill every enumeration process still running."""
        for process in list(self._running):
            _kill(process)
        self._running.clear()

    @property
    def running_count(self) -> int:
        return len(self._running)

"""
Matcher Supervisor - Lifecycle of the external fuzzy matcher.

Owns exactly one matcher subprocess at a time, hosted in a PTY:

    { cat <corpora> ; tail -f <live index> ; } [| rg <folder prefixes>] | fzf --listen ...

The matcher is restarted when it crashes, killed system-wide when it
reports that its control port is taken (a stray instance), and paused
with SIGSTOP while the UI is hidden so the loaded corpus survives.
"""

import asyncio
import logging
import os
import shlex
import signal
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional

import psutil

from .config import EngineConfig
from .errors import SubprocessCrash, SubprocessSpawnFailure, handle_error
from .terminal import PtyHandle, spawn_in_pty


logger = logging.getLogger(__name__)

_INTENTIONAL_CODES = {
    -signal.SIGTERM, -signal.SIGKILL,
    128 + signal.SIGTERM, 128 + signal.SIGKILL,
}

_QUICK_CRASH_SECONDS = 1.0
_MAX_QUICK_CRASHES = 3

_REGEX_META = set("\\.+*?()|[]{}^$#&-~")


def _regex_escape(text: str) -> str:
    return "".join("\\" + c if c in _REGEX_META else c for c in text)


@dataclass
class CorpusSelection:
    """What the next matcher instance loads."""
    files: List[Path] = field(default_factory=list)
    prefixes: List[str] = field(default_factory=list)
    initial_query: str = ""


class MatcherSupervisor:
    """
    Supervisor of the matcher subprocess.

    start/stop/restart are serialized through one lock; `restart_server()`
    is the only way the loaded corpus changes.
    """

    def __init__(
        self,
        config: EngineConfig,
        select_corpus: Callable[[], CorpusSelection],
    ):
        self.config = config
        self.select_corpus = select_corpus
        self.api_key = str(uuid.uuid4())

        self.pinned = False
        self.suspended = False

        self._handle: Optional[PtyHandle] = None
        self._lock = asyncio.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._restart_task: Optional[asyncio.Task] = None
        self._started_at = 0.0
        self._quick_crashes = 0

    # --- State ---

    @property
    def running(self) -> bool:
        return self._handle is not None and self._handle.running

    @property
    def pid(self) -> Optional[int]:
        return self._handle.pid if self._handle else None

    # --- Command ---

    def build_command(self, selection: CorpusSelection) -> str:
        """Shell pipeline feeding the corpus and live tail into the matcher."""
        files = " ".join(shlex.quote(str(p)) for p in selection.files)
        cat = f"/bin/cat {files}" if files else ":"
        tail = f"tail -n +1 -f {shlex.quote(str(self.config.live_index))}"
        pipeline = f"{{ {cat} ; {tail} ; }}"

        if selection.prefixes:
            patterns = " ".join(
                "-e " + shlex.quote("^" + _regex_escape(p.rstrip("/")) + "(/|$)")
                for p in selection.prefixes
            )
            pipeline += f" | {shlex.quote(self.config.text_filter_binary)} --no-config --line-buffered {patterns}"

        notify = f"result:execute-silent(nc -w 1 127.0.0.1 {self.config.notify_port} </dev/null)"
        matcher_args = [
            f"--height={self.config.terminal_rows}",
            "--border=none",
            "--no-info",
            "--no-hscroll",
            "--no-unicode",
            "--no-mouse",
            "--no-separator",
            "--no-scrollbar",
            "--no-color",
            "--no-bold",
            "--no-clear",
            "--scheme=path",
            "--bind", notify,
            f"--listen=localhost:{self.config.control_port}",
            f"--query={selection.initial_query}",
        ]
        matcher = " ".join(shlex.quote(a) for a in [self.config.matcher_binary] + matcher_args)
        return f"{pipeline} | {matcher}"

    def build_env(self) -> dict:
        env = dict(os.environ)
        env.update({
            "TERM": "xterm-256color",
            "FZF_API_KEY": self.api_key,
            "FZF_COLUMNS": str(self.config.terminal_cols),
            "FZF_LINES": str(self.config.terminal_rows),
        })
        return env

    # --- Lifecycle ---

    async def start_server(self) -> bool:
        async with self._lock:
            return await self._start_locked()

    async def stop_server(self) -> None:
        async with self._lock:
            await self._stop_locked()

    async def restart_server(self) -> bool:
        async with self._lock:
            await self._stop_locked()
            return await self._start_locked()

    async def _start_locked(self) -> bool:
        if self.running:
            logger.debug(f"Matcher already running with PID {self.pid}")
            return True

        self._loop = asyncio.get_running_loop()
        selection = self.select_corpus()
        command = self.build_command(selection)
        logger.debug(f"Starting matcher: {command}")

        try:
            handle = await asyncio.to_thread(
                spawn_in_pty,
                [self.config.shell, "-c", command],
                self.build_env(),
                self.config.terminal_rows,
                self.config.terminal_cols,
                self._on_exit_thread,
            )
        except SubprocessSpawnFailure as e:
            handle_error(e, "matcher", "start_server")
            return False

        self._handle = handle
        self.suspended = False
        if not handle.running:
            logger.error(f"Failed to start matcher server (exit code {handle.process.returncode})")
            return False

        self._started_at = time.monotonic()
        logger.info(f"Matcher started with PID {handle.pid}")
        self._write_pid_file(handle.pid)
        return True

    async def _stop_locked(self) -> None:
        handle = self._handle
        if handle is None:
            return
        handle.intentional_stop = True
        await asyncio.to_thread(self._terminate, handle)
        self._handle = None
        self.suspended = False
        logger.info(f"Matcher {handle.pid} stopped")

    def _terminate(self, handle: PtyHandle) -> None:
        """Blocking: TERM the group, poll briefly, then KILL whatever is left."""
        handle.signal_group(signal.SIGTERM)
        handle.signal_group(signal.SIGCONT)

        deadline = time.monotonic() + self.config.termination_timeout
        while time.monotonic() < deadline:
            if handle.process.poll() is not None:
                break
            time.sleep(self.config.termination_poll_interval)

        handle.signal_group(signal.SIGKILL)
        self.force_stop_matchers()
        handle.close()

    def _write_pid_file(self, pid: int) -> None:
        try:
            self.config.pid_file.write_text(str(pid))
        except OSError as e:
            handle_error(e, self.config.pid_file, "write pid file")

    # --- Exit handling ---

    def _on_exit_thread(self, handle: PtyHandle, returncode: int) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(self.handle_exit, handle, returncode)

    def handle_exit(self, handle: PtyHandle, returncode: int) -> None:
        """
        React to the matcher exiting.

        Intentional termination does nothing; the port-in-use code kills
        stray matchers without restarting; anything else restarts.
        """
        if handle is not self._handle:
            return
        logger.debug(f"Matcher {handle.pid} exited with code {returncode}")

        if handle.intentional_stop or returncode in _INTENTIONAL_CODES:
            return

        if returncode == self.config.port_in_use_exit_code:
            logger.warning("Matcher control port in use, killing stray matchers")
            self._handle = None
            self.force_stop_matchers()
            return

        handle_error(SubprocessCrash(returncode), "matcher", "handle_exit")
        self._handle = None

        if time.monotonic() - self._started_at < _QUICK_CRASH_SECONDS:
            self._quick_crashes += 1
        else:
            self._quick_crashes = 0
        if self._quick_crashes >= _MAX_QUICK_CRASHES:
            logger.error(f"Matcher crashed {self._quick_crashes} times right after start, not restarting")
            return
        self._restart_task = asyncio.ensure_future(self.restart_server())

    # --- Suspend / resume ---

    def suspend(self) -> None:
        """Pause the matcher's process group (keeps the loaded corpus)."""
        if self.pinned or self.suspended or not self.running:
            return
        if self._handle.signal_group(signal.SIGSTOP):
            self.suspended = True
            logger.debug(f"Suspended matcher {self.pid}")

    def resume(self) -> None:
        if not self.suspended:
            return
        self.suspended = False
        if self._handle is not None and self._handle.signal_group(signal.SIGCONT):
            logger.debug(f"Resumed matcher {self.pid}")

    # --- Stray processes ---

    def _is_our_matcher(self, cmdline: List[str]) -> bool:
        name = os.path.basename(self.config.matcher_binary)
        listen = f"--listen=localhost:{self.config.control_port}"
        head = [os.path.basename(arg) for arg in cmdline[:2]]
        return name in head and listen in cmdline

    def force_stop_matchers(self) -> int:
        """Kill every matcher of this user listening on our control port."""
        own_pid = os.getpid()
        killed = 0
        for proc in psutil.process_iter(["pid", "cmdline", "uids"]):
            try:
                info = proc.info
                if info["pid"] == own_pid or not info["cmdline"]:
                    continue
                if info["uids"] and info["uids"].real != os.getuid():
                    continue
                if self._is_our_matcher(info["cmdline"]):
                    proc.kill()
                    killed += 1
            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                continue
        if killed:
            logger.debug(f"Force-killed {killed} matcher processes")
        return killed

    def kill_stale_instance(self) -> bool:
        """Kill the matcher recorded in the pid file by a previous launch."""
        try:
            old_pid = int(self.config.pid_file.read_text().strip())
        except (OSError, ValueError):
            return False
        if old_pid == self.pid or old_pid == os.getpid():
            return False

        try:
            proc = psutil.Process(old_pid)
            cmdline = " ".join(proc.cmdline())
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            return False
        if os.path.basename(self.config.matcher_binary) not in cmdline:
            return False

        logger.debug(f"Killing old matcher process: {old_pid}")
        try:
            os.killpg(old_pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            try:
                proc.kill()
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                return False
        return True

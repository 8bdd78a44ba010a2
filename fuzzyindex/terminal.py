"""
Terminal - Host a process inside a pseudo-terminal.

The matcher is an interactive TUI that insists on a terminal. It is
spawned as the leader of a new session with the PTY slave as its
controlling terminal, so the whole pipeline (shell, cat, tail, matcher)
shares one process group that can be stopped, continued or killed at once.
"""

import collections
import fcntl
import logging
import os
import signal
import struct
import subprocess
import termios
import threading
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, List, Optional

from .errors import SubprocessSpawnFailure


logger = logging.getLogger(__name__)


@dataclass
class PtyHandle:
    """
    A process plus the PTY master descriptor it was spawned with.

    `pid` is also the process group id. `close()` releases the master
    descriptor directly; it is safe to call more than once.
    """
    process: subprocess.Popen
    master_fd: int
    intentional_stop: bool = False
    output_tail: Deque[bytes] = field(default_factory=lambda: collections.deque(maxlen=32))
    _closed: bool = False
    _lock: threading.Lock = field(default_factory=threading.Lock)

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def running(self) -> bool:
        return self.process.poll() is None

    def signal_group(self, sig: int) -> bool:
        """Send `sig` to the whole process group. False if it is gone."""
        try:
            os.killpg(self.pid, sig)
            return True
        except (ProcessLookupError, PermissionError):
            return False

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        try:
            os.close(self.master_fd)
        except OSError:
            pass


def _make_controlling_tty():
    # Runs in the child after setsid(); stdin is the PTY slave
    fcntl.ioctl(0, termios.TIOCSCTTY, 0)


def spawn_in_pty(
    argv: List[str],
    env: Dict[str, str],
    rows: int = 20,
    cols: int = 80,
    on_exit: Optional[Callable[[PtyHandle, int], None]] = None,
) -> PtyHandle:
    """
    Spawn `argv` in a fresh PTY and start its drain and wait threads.

    Args:
        argv: Command to run
        env: Full environment for the child
        rows, cols: Terminal geometry reported to the child
        on_exit: Called from the wait thread with (handle, returncode)

    Returns:
        PtyHandle for the running process

    Raises:
        SubprocessSpawnFailure: If the PTY or process could not be created
    """
    try:
        master_fd, slave_fd = os.openpty()
    except OSError as e:
        raise SubprocessSpawnFailure(argv[0], f"openpty failed: {e}") from e

    try:
        fcntl.ioctl(slave_fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))
        process = subprocess.Popen(
            argv,
            stdin=slave_fd,
            stdout=slave_fd,
            stderr=slave_fd,
            env=env,
            start_new_session=True,
            preexec_fn=_make_controlling_tty,
            close_fds=True,
        )
    except OSError as e:
        os.close(master_fd)
        raise SubprocessSpawnFailure(argv[0], str(e)) from e
    finally:
        os.close(slave_fd)

    handle = PtyHandle(process=process, master_fd=master_fd)

    threading.Thread(
        target=_drain, args=(handle,), name=f"pty-drain-{process.pid}", daemon=True
    ).start()
    threading.Thread(
        target=_wait, args=(handle, on_exit), name=f"pty-wait-{process.pid}", daemon=True
    ).start()

    return handle


def _drain(handle: PtyHandle) -> None:
    """Read the PTY until the slave side closes, keeping a short tail for logs."""
    while True:
        try:
            data = os.read(handle.master_fd, 4096)
        except OSError:
            break
        if not data:
            break
        handle.output_tail.append(data)


def _wait(handle: PtyHandle, on_exit: Optional[Callable[[PtyHandle, int], None]]) -> None:
    returncode = handle.process.wait()
    if returncode not in (0, -signal.SIGTERM, -signal.SIGKILL):
        tail = b"".join(handle.output_tail)[-512:]
        logger.debug(f"Process {handle.pid} output tail: {tail!r}")
    handle.close()
    if on_exit:
        on_exit(handle, returncode)

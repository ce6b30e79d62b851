"""Child processes running on a pseudo-terminal.

This is the process-launch capability underneath both adapters: it forks a
command onto a fresh PTY, exposes the master side as a non-blocking async
byte stream, and handles resize and hangup.
"""

import asyncio
import fcntl
import logging
import os
import pty
import re
import signal
import struct
import termios
from typing import AsyncIterator, Optional

from .errors import ProcessClosedError

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 65536

_BARE_LF_RE = re.compile(rb"(?<!\r)\n")


def clean_env(extra: Optional[dict] = None) -> dict[str, str]:
    """Return a copy of os.environ suitable for a terminal child.

    TMUX is removed so a nested `tmux attach` is allowed.
    """
    env = os.environ.copy()
    env.pop("TMUX", None)
    env["TERM"] = "xterm-256color"
    if extra:
        env.update(extra)
    return env


def split_incomplete_utf8(data: bytes) -> tuple[bytes, bytes]:
    """Split a trailing, incomplete UTF-8 sequence off the end of `data`.

    Returns (complete, tail). Invalid input is passed through untouched so a
    binary stream can never stall.
    """
    for back in range(1, min(4, len(data)) + 1):
        byte = data[-back]
        if byte & 0xC0 == 0x80:
            continue
        if byte & 0xE0 == 0xC0:
            needed = 2
        elif byte & 0xF0 == 0xE0:
            needed = 3
        elif byte & 0xF8 == 0xF0:
            needed = 4
        else:
            return data, b""
        if back < needed:
            return data[:-back], data[-back:]
        return data, b""
    return data, b""


class EolNormalizer:
    """Rewrites bare LF as CRLF, remembering a CR that ended the previous chunk."""

    def __init__(self):
        self._last_was_cr = False

    def feed(self, data: bytes) -> bytes:
        if not data:
            return data
        if self._last_was_cr and data.startswith(b"\n"):
            out = b"\n" + _BARE_LF_RE.sub(b"\r\n", data[1:])
        else:
            out = _BARE_LF_RE.sub(b"\r\n", data)
        self._last_was_cr = data.endswith(b"\r")
        return out


def set_winsize(fd: int, cols: int, rows: int) -> None:
    """Apply a window size to a PTY via TIOCSWINSZ."""
    winsize = struct.pack("HHHH", rows, cols, 0, 0)
    fcntl.ioctl(fd, termios.TIOCSWINSZ, winsize)


class PtyProcess:
    """
    A single command running on its own PTY.

    Output is read with loop.add_reader() on the non-blocking master fd and
    handed to exactly one consumer through output(). Chunks never split a
    UTF-8 character.
    """

    def __init__(
        self,
        argv: list[str],
        cwd: Optional[str] = None,
        env: Optional[dict] = None,
        cols: int = 80,
        rows: int = 24,
        normalize_eol: bool = False,
        kill_grace_seconds: float = 0.5,
        label: str = "pty",
    ):
        self.argv = argv
        self.cwd = cwd
        self.env = env if env is not None else clean_env()
        self.cols = cols
        self.rows = rows
        self.kill_grace_seconds = kill_grace_seconds
        self.label = label

        self.master_fd: Optional[int] = None
        self._proc: Optional[asyncio.subprocess.Process] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._queue: asyncio.Queue = asyncio.Queue()
        self._pending = b""
        self._normalizer = EolNormalizer() if normalize_eol else None
        self._eof = False
        self._closed = False

    @property
    def pid(self) -> Optional[int]:
        return self._proc.pid if self._proc else None

    @property
    def returncode(self) -> Optional[int]:
        return self._proc.returncode if self._proc else None

    @property
    def alive(self) -> bool:
        return self._proc is not None and not self._closed and not self._eof

    async def start(self) -> None:
        """Fork the command onto a new PTY.

        Raises:
            OSError: If the PTY could not be allocated or exec failed
        """
        if self._proc is not None:
            raise RuntimeError(f"PTY already started: {self.label}")

        master_fd, slave_fd = pty.openpty()
        try:
            set_winsize(master_fd, self.cols, self.rows)
            self._proc = await asyncio.create_subprocess_exec(
                *self.argv,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                cwd=self.cwd,
                env=self.env,
                start_new_session=True,
            )
        except BaseException:
            os.close(master_fd)
            raise
        finally:
            os.close(slave_fd)

        self.master_fd = master_fd
        os.set_blocking(master_fd, False)
        self._loop = asyncio.get_running_loop()
        self._loop.add_reader(master_fd, self._on_readable)
        logger.info(f"Started {self.label}: pid={self._proc.pid}, argv={self.argv}")

    def _on_readable(self) -> None:
        try:
            data = os.read(self.master_fd, READ_CHUNK_SIZE)
        except BlockingIOError:
            return
        except OSError:
            # EIO once every slave fd is closed, i.e. the child is gone
            data = b""

        if not data:
            self._finish_output()
            return

        complete, self._pending = split_incomplete_utf8(self._pending + data)
        if complete:
            self._enqueue(complete)

    def _enqueue(self, data: bytes) -> None:
        if self._normalizer:
            data = self._normalizer.feed(data)
        self._queue.put_nowait(data)

    def _finish_output(self) -> None:
        if self._eof:
            return
        self._eof = True
        if self._loop and self.master_fd is not None:
            self._loop.remove_reader(self.master_fd)
        if self._pending:
            self._enqueue(self._pending)
            self._pending = b""
        self._queue.put_nowait(None)
        logger.debug(f"Output ended for {self.label}")

    async def output(self) -> AsyncIterator[bytes]:
        """Yield output chunks until the process exits or is terminated."""
        while True:
            chunk = await self._queue.get()
            if chunk is None:
                return
            yield chunk

    async def write(self, data: bytes) -> None:
        """Write input to the PTY.

        Raises:
            ProcessClosedError: If the process has been terminated or exited
        """
        if self._closed or self.master_fd is None:
            raise ProcessClosedError(f"Process closed: {self.label}")

        view = memoryview(data)
        while view:
            try:
                written = os.write(self.master_fd, view)
            except BlockingIOError:
                await asyncio.sleep(0.01)
                continue
            except OSError as e:
                raise ProcessClosedError(f"Process closed: {self.label} ({e})")
            view = view[written:]

    def resize(self, cols: int, rows: int) -> None:
        """Resize the PTY and notify the child.

        Raises:
            ProcessClosedError: If the process has been terminated
        """
        if self._closed or self.master_fd is None:
            raise ProcessClosedError(f"Process closed: {self.label}")

        set_winsize(self.master_fd, cols, rows)
        self.cols, self.rows = cols, rows
        # The slave is not the child's controlling terminal, so SIGWINCH
        # is not delivered automatically.
        if self._proc and self._proc.returncode is None:
            try:
                self._proc.send_signal(signal.SIGWINCH)
            except ProcessLookupError:
                pass

    async def terminate(self) -> None:
        """Hang up the child (SIGHUP, then SIGKILL after the grace period) and release the PTY.

        Safe to call multiple times.
        """
        if self._closed:
            return
        self._closed = True

        if self._proc and self._proc.returncode is None:
            try:
                os.killpg(self._proc.pid, signal.SIGHUP)
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(self._proc.wait(), timeout=self.kill_grace_seconds)
            except asyncio.TimeoutError:
                logger.warning(f"{self.label} ignored SIGHUP, sending SIGKILL")
                try:
                    os.killpg(self._proc.pid, signal.SIGKILL)
                except ProcessLookupError:
                    pass
                await self._proc.wait()

        self._finish_output()
        if self.master_fd is not None:
            try:
                os.close(self.master_fd)
            except OSError:
                pass
            self.master_fd = None

        logger.info(f"Terminated {self.label}")

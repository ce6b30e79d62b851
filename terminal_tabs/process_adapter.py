"""Process adapters: the one place that drives an OS-level terminal process.

Two implementations share one interface:

- EphemeralAdapter runs the command directly on a PTY. Killing it ends the
  process; output ends when the process exits.
- PersistentAdapter attaches to (creating if absent) a tmux session and views
  it through a `tmux attach-session` client on a PTY. kill() destroys the
  tmux session, detach() only stops the view. The two are never conflated.

Adapters know nothing about clients or owners.
"""

import logging
import shlex
import shutil
from pathlib import Path
from typing import AsyncIterator, Optional

from .errors import LaunchError, ProcessClosedError, TerminalError
from .models import Terminal, TerminalKind
from .pty_process import PtyProcess
from .tmux_controller import TmuxController, TmuxError

logger = logging.getLogger(__name__)

# View clients we will restart for one terminal before treating it as dead
MAX_VIEW_RESTARTS = 5


def _resolve_working_dir(working_dir: Optional[str]) -> str:
    path = Path(working_dir or "~").expanduser()
    if not path.is_dir():
        raise LaunchError(f"Working directory does not exist: {working_dir}")
    return str(path.resolve())


class ProcessAdapter:
    """Interface for the process behind one terminal."""

    kind: TerminalKind
    normalizes_eol = False

    def __init__(self, terminal: Terminal):
        self.terminal_id = terminal.id

    async def start(self) -> None:
        raise NotImplementedError

    def output(self) -> AsyncIterator[bytes]:
        raise NotImplementedError

    async def write(self, data: bytes) -> None:
        raise NotImplementedError

    async def resize(self, cols: int, rows: int) -> None:
        raise NotImplementedError

    async def kill(self) -> None:
        raise NotImplementedError

    async def detach(self) -> None:
        raise NotImplementedError

    async def recover(self) -> bool:
        """Try to resume output after the stream ended. False means the process is gone."""
        return False

    @property
    def alive(self) -> bool:
        raise NotImplementedError


class EphemeralAdapter(ProcessAdapter):
    """A terminal backed directly by a PTY process."""

    kind = TerminalKind.EPHEMERAL
    normalizes_eol = True

    def __init__(self, terminal: Terminal, default_shell: str = "bash", kill_grace_seconds: float = 0.5):
        super().__init__(terminal)
        self.command = terminal.command or default_shell
        self.working_dir = terminal.working_dir
        self.cols = terminal.cols
        self.rows = terminal.rows
        self.kill_grace_seconds = kill_grace_seconds
        self.process: Optional[PtyProcess] = None

    async def start(self) -> None:
        try:
            argv = shlex.split(self.command)
        except ValueError as e:
            raise LaunchError(f"Invalid command {self.command!r}: {e}", self.terminal_id)
        if not argv or shutil.which(argv[0]) is None:
            raise LaunchError(f"Command not found: {self.command}", self.terminal_id)

        cwd = _resolve_working_dir(self.working_dir)
        self.process = PtyProcess(
            argv,
            cwd=cwd,
            cols=self.cols,
            rows=self.rows,
            normalize_eol=self.normalizes_eol,
            kill_grace_seconds=self.kill_grace_seconds,
            label=f"terminal {self.terminal_id}",
        )
        try:
            await self.process.start()
        except OSError as e:
            raise LaunchError(f"Failed to launch {self.command}: {e}", self.terminal_id)

    def output(self) -> AsyncIterator[bytes]:
        if not self.process:
            raise ProcessClosedError("Process not started", self.terminal_id)
        return self.process.output()

    async def write(self, data: bytes) -> None:
        if not self.process:
            raise ProcessClosedError("Process not started", self.terminal_id)
        await self.process.write(data)

    async def resize(self, cols: int, rows: int) -> None:
        if not self.process:
            raise ProcessClosedError("Process not started", self.terminal_id)
        self.process.resize(cols, rows)

    async def kill(self) -> None:
        if self.process:
            await self.process.terminate()

    async def detach(self) -> None:
        raise TerminalError("Ephemeral terminals cannot be detached", self.terminal_id)

    @property
    def alive(self) -> bool:
        return self.process is not None and self.process.alive


class PersistentAdapter(ProcessAdapter):
    """A terminal backed by a tmux session, viewed through an attach client."""

    kind = TerminalKind.PERSISTENT

    def __init__(self, terminal: Terminal, tmux: TmuxController, kill_grace_seconds: float = 0.5):
        super().__init__(terminal)
        self.tmux = tmux
        self.session_name = terminal.multiplexer_handle or terminal.id
        self.command = terminal.command
        self.working_dir = terminal.working_dir
        self.cols = terminal.cols
        self.rows = terminal.rows
        self.kill_grace_seconds = kill_grace_seconds
        self.view: Optional[PtyProcess] = None
        self.detached = False
        self.view_restarts = 0
        self._killed = False

    async def start(self) -> None:
        """Attach to the tmux session, creating it first if it does not exist."""
        if not self.tmux.is_available():
            raise LaunchError(f"tmux binary not found: {self.tmux.binary}", self.terminal_id)

        if not await self.tmux.session_exists(self.session_name):
            cwd = _resolve_working_dir(self.working_dir)
            try:
                await self.tmux.create_session(
                    self.session_name,
                    cwd,
                    cols=self.cols,
                    rows=self.rows,
                    command=self.command,
                )
            except TmuxError as e:
                raise LaunchError(str(e), self.terminal_id)
        else:
            logger.info(f"Attaching to existing tmux session {self.session_name}")

        await self._start_view()

    async def _start_view(self) -> None:
        self.view = PtyProcess(
            self.tmux.attach_command(self.session_name),
            cols=self.cols,
            rows=self.rows,
            kill_grace_seconds=self.kill_grace_seconds,
            label=f"tmux view {self.session_name}",
        )
        try:
            await self.view.start()
        except OSError as e:
            raise LaunchError(f"Failed to attach to {self.session_name}: {e}", self.terminal_id)
        self.detached = False

    async def reattach(self) -> None:
        """Start a fresh view client after the previous one went away."""
        if self._killed:
            raise ProcessClosedError(f"Session killed: {self.session_name}", self.terminal_id)
        if self.view:
            await self.view.terminate()
        await self._start_view()
        logger.info(f"Re-attached view to tmux session {self.session_name}")

    async def session_alive(self) -> bool:
        if self._killed:
            return False
        return await self.tmux.session_exists(self.session_name)

    async def recover(self) -> bool:
        """Re-attach if only the view client died (e.g. someone ran `tmux detach`)."""
        if self.detached or self.view_restarts >= MAX_VIEW_RESTARTS:
            return False
        if not await self.session_alive():
            return False
        self.view_restarts += 1
        try:
            await self.reattach()
        except TerminalError as e:
            logger.error(f"Could not re-attach to {self.session_name}: {e}")
            return False
        return True

    def output(self) -> AsyncIterator[bytes]:
        if not self.view:
            raise ProcessClosedError("Session not attached", self.terminal_id)
        return self.view.output()

    async def write(self, data: bytes) -> None:
        if not self.view or self.detached:
            raise ProcessClosedError(f"Session not attached: {self.session_name}", self.terminal_id)
        await self.view.write(data)

    async def resize(self, cols: int, rows: int) -> None:
        # tmux sizes the window from its attached client, so resizing our
        # view PTY is enough.
        if not self.view or self.detached:
            raise ProcessClosedError(f"Session not attached: {self.session_name}", self.terminal_id)
        self.view.resize(cols, rows)
        self.cols, self.rows = cols, rows

    async def detach(self) -> None:
        """Stop viewing the session. The tmux session keeps running."""
        if self.detached:
            return
        self.detached = True
        if self.view:
            await self.view.terminate()
        logger.info(f"Detached from tmux session {self.session_name} (session kept alive)")

    async def kill(self) -> None:
        """Destroy the tmux session and stop the view."""
        self._killed = True
        if not await self.tmux.kill_session(self.session_name):
            logger.error(f"tmux session {self.session_name} may still be running")
        if self.view:
            await self.view.terminate()

    @property
    def alive(self) -> bool:
        return not self._killed and not self.detached and self.view is not None and self.view.alive


def create_adapter(terminal: Terminal, tmux: TmuxController, config: Optional[dict] = None) -> ProcessAdapter:
    """Build the adapter matching a terminal's kind."""
    terminals_config = (config or {}).get("terminals", {})
    grace = terminals_config.get("kill_grace_seconds", 0.5)
    if terminal.kind == TerminalKind.PERSISTENT:
        return PersistentAdapter(terminal, tmux, kill_grace_seconds=grace)
    return EphemeralAdapter(
        terminal,
        default_shell=terminals_config.get("default_shell", "bash"),
        kill_grace_seconds=grace,
    )

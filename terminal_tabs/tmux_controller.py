"""tmux operations backing persistent terminals."""

import asyncio
import logging
import shutil
from pathlib import Path
from typing import Optional

from .pty_process import clean_env

logger = logging.getLogger(__name__)


class TmuxError(RuntimeError):
    """Raised when a tmux command fails."""


class TmuxController:
    """Creates, inspects and destroys the tmux sessions behind persistent terminals."""

    def __init__(self, binary: str = "tmux", config: Optional[dict] = None):
        self.binary = binary
        self.config = config or {}

        # Load timeout configuration with fallbacks
        timeouts = self.config.get("timeouts", {})
        tmux_timeouts = timeouts.get("tmux", {})

        self.command_timeout_seconds = tmux_timeouts.get("command_timeout_seconds", 5)

    def is_available(self) -> bool:
        """Check if the tmux binary is installed."""
        return shutil.which(self.binary) is not None

    async def _run_tmux(self, *args: str, check: bool = True) -> tuple[int, str, str]:
        """
        Run a tmux command without blocking the event loop.

        Returns:
            Tuple of (returncode, stdout, stderr)

        Raises:
            TmuxError: If check is set and the command fails or times out
        """
        cmd = [self.binary] + list(args)
        logger.debug(f"Running tmux command: {' '.join(cmd)}")
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=clean_env(),
            )
        except OSError as e:
            raise TmuxError(f"Failed to run tmux: {e}")

        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(), timeout=self.command_timeout_seconds
            )
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise TmuxError(f"Timeout running tmux {args[0] if args else ''}")

        result = (proc.returncode, stdout.decode(errors="replace"), stderr.decode(errors="replace"))
        if check and proc.returncode != 0:
            raise TmuxError(f"tmux {args[0] if args else ''} failed: {result[2].strip()}")
        return result

    async def session_exists(self, session_name: str) -> bool:
        """Check if a tmux session exists."""
        try:
            returncode, _, _ = await self._run_tmux("has-session", "-t", f"={session_name}", check=False)
        except TmuxError as e:
            logger.warning(f"Could not query tmux for {session_name}: {e}")
            return False
        return returncode == 0

    async def create_session(
        self,
        session_name: str,
        working_dir: str,
        cols: int = 80,
        rows: int = 24,
        command: Optional[str] = None,
    ) -> None:
        """
        Create a new detached tmux session.

        Args:
            session_name: Name for the tmux session
            working_dir: Directory to start the session in
            cols: Initial window width
            rows: Initial window height
            command: Shell command to run instead of the default shell

        Raises:
            TmuxError: If the directory is missing or tmux refuses
        """
        working_path = Path(working_dir).expanduser().resolve()
        if not working_path.is_dir():
            raise TmuxError(f"Working directory does not exist: {working_dir}")

        args = [
            "new-session",
            "-d",
            "-s", session_name,
            "-c", str(working_path),
            "-x", str(cols),
            "-y", str(rows),
        ]
        if command:
            args.append(command)

        await self._run_tmux(*args)
        logger.info(f"Created tmux session {session_name} in {working_path}")

    async def kill_session(self, session_name: str) -> bool:
        """
        Kill a tmux session.

        Returns:
            True if the session is gone afterwards
        """
        if not await self.session_exists(session_name):
            logger.warning(f"Session {session_name} does not exist")
            return True  # Already gone

        try:
            await self._run_tmux("kill-session", "-t", f"={session_name}")
            logger.info(f"Killed tmux session {session_name}")
            return True
        except TmuxError as e:
            logger.error(f"Failed to kill session: {e}")
            return False

    async def list_sessions(self) -> list[str]:
        """List all tmux session names (empty if no server is running)."""
        try:
            returncode, stdout, _ = await self._run_tmux(
                "list-sessions", "-F", "#{session_name}", check=False
            )
        except TmuxError as e:
            logger.warning(f"Could not list tmux sessions: {e}")
            return []
        if returncode != 0:
            return []
        return [s.strip() for s in stdout.strip().split("\n") if s.strip()]

    def attach_command(self, session_name: str) -> list[str]:
        """argv for a client that views the session from a PTY."""
        return [self.binary, "attach-session", "-t", f"={session_name}"]

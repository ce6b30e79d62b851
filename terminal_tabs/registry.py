"""Terminal registry and lifecycle management."""

from __future__ import annotations

import asyncio
import logging
import re
from collections import OrderedDict
from typing import Awaitable, Callable, Optional, Union

from .errors import LaunchError, NotFoundError, TerminalError
from .models import (
    SpawnConfig,
    Terminal,
    TerminalEvent,
    TerminalEventType,
    TerminalKind,
    TerminalStatus,
    new_terminal_id,
)
from .process_adapter import ProcessAdapter, create_adapter
from .tmux_controller import TmuxController

logger = logging.getLogger(__name__)

# How many finished spawn request ids are remembered for duplicate detection
COMPLETED_REQUEST_MEMORY = 256

AdapterFactory = Callable[[Terminal], ProcessAdapter]
EventHandler = Callable[[TerminalEvent], Awaitable[None]]


class TerminalRegistry:
    """
    Authoritative table of terminals.

    Owns naming, status transitions and creation metadata. Every terminal has
    exactly one ProcessAdapter, created through `adapter_factory`. The
    registry never talks to clients; lifecycle changes are announced to
    handlers registered with add_event_handler().
    """

    def __init__(
        self,
        tmux: Optional[TmuxController] = None,
        config: Optional[dict] = None,
        adapter_factory: Optional[AdapterFactory] = None,
    ):
        self.config = config or {}
        terminals_config = self.config.get("terminals", {})
        self.session_prefix = terminals_config.get("session_prefix", "ctt")
        self.spawn_timeout_seconds = terminals_config.get("spawn_timeout_seconds", 10)
        self.error_retention_seconds = terminals_config.get("error_retention_seconds", 30)

        self.tmux = tmux or TmuxController(config=self.config)
        self._adapter_factory = adapter_factory or (
            lambda terminal: create_adapter(terminal, self.tmux, self.config)
        )

        self.terminals: dict[str, Terminal] = {}
        self._adapters: dict[str, ProcessAdapter] = {}
        self._launch_tasks: dict[str, asyncio.Task] = {}
        self._requests: dict[str, asyncio.Future] = {}
        self._completed_requests: OrderedDict[str, Union[Terminal, TerminalError]] = OrderedDict()
        self._adoptions: dict[str, asyncio.Task] = {}
        self._removal_handles: dict[str, asyncio.TimerHandle] = {}
        self._event_handlers: list[EventHandler] = []

    def add_event_handler(self, handler: EventHandler):
        """Register a handler for terminal lifecycle events."""
        self._event_handlers.append(handler)

    async def _emit_event(self, event: TerminalEvent):
        """Emit an event to all registered handlers."""
        for handler in self._event_handlers:
            try:
                await handler(event)
            except Exception as e:
                logger.error(f"Event handler error: {e}")

    # Lookups

    def get(self, terminal_id: str) -> Optional[Terminal]:
        """Get a terminal by ID."""
        return self.terminals.get(terminal_id)

    def get_open(self, terminal_id: str) -> Terminal:
        """Get a terminal that can take owners and I/O.

        Raises:
            NotFoundError: If the id is unknown, still spawning, errored or closed
        """
        terminal = self.terminals.get(terminal_id)
        if terminal is None or not terminal.is_open:
            raise NotFoundError(terminal_id)
        return terminal

    def list(self) -> list[Terminal]:
        """List terminals in creation order."""
        return list(self.terminals.values())

    def active_count(self) -> int:
        """Count terminals not in the closed state."""
        return sum(1 for t in self.terminals.values() if t.status != TerminalStatus.CLOSED)

    def adapter(self, terminal_id: str) -> Optional[ProcessAdapter]:
        return self._adapters.get(terminal_id)

    # Naming

    def _next_name(self, base: str) -> str:
        """
        Pick a display name for a new terminal of type `base`.

        The first live terminal gets the bare base name, later ones get
        `base-2`, `base-3`, ... continuing after the highest suffix in use.
        """
        pattern = re.compile(rf"^{re.escape(base)}(?:-(\d+))?$")
        highest = 0
        for terminal in self.terminals.values():
            match = pattern.match(terminal.name)
            if match:
                highest = max(highest, int(match.group(1)) if match.group(1) else 1)
        if highest == 0:
            return base
        return f"{base}-{highest + 1}"

    # Spawn

    async def spawn(self, config: SpawnConfig, request_id: Optional[str] = None) -> tuple[Terminal, bool]:
        """
        Create a terminal and start its process.

        A request id is honoured at most once: a repeat of an in-flight or
        recently completed request returns the original terminal (or re-raises
        the original failure) instead of spawning again.

        Args:
            config: What to spawn
            request_id: Client-supplied correlation id

        Returns:
            Tuple of (terminal, created) where created is False for duplicates

        Raises:
            LaunchError: If the process could not be started
        """
        if not request_id:
            return await self._spawn(config, None), True

        if request_id in self._completed_requests:
            logger.info(f"Duplicate spawn request {request_id} (already completed)")
            return self._replay_request(request_id), False

        in_flight = self._requests.get(request_id)
        if in_flight is not None:
            logger.info(f"Duplicate spawn request {request_id} (in flight)")
            await asyncio.shield(in_flight)
            return self._replay_request(request_id), False

        # First request runs inline; duplicates wait on `done`
        done = asyncio.get_running_loop().create_future()
        self._requests[request_id] = done
        try:
            terminal = await self._spawn(config, request_id)
        except asyncio.CancelledError:
            self._remember_request(request_id, LaunchError("Spawn cancelled"))
            raise
        except TerminalError as e:
            self._remember_request(request_id, e)
            raise
        except Exception as e:
            self._remember_request(request_id, LaunchError(str(e)))
            raise
        self._remember_request(request_id, terminal)
        return terminal, True

    def _remember_request(self, request_id: str, outcome: Union[Terminal, TerminalError]) -> None:
        self._completed_requests[request_id] = outcome
        while len(self._completed_requests) > COMPLETED_REQUEST_MEMORY:
            self._completed_requests.popitem(last=False)
        done = self._requests.pop(request_id, None)
        if done is not None and not done.done():
            done.set_result(None)

    def _replay_request(self, request_id: str) -> Terminal:
        outcome = self._completed_requests.get(request_id)
        if outcome is None:
            raise LaunchError(f"Spawn request {request_id} expired")
        if isinstance(outcome, TerminalError):
            raise LaunchError(outcome.message, outcome.terminal_id)
        return outcome

    async def _spawn(self, config: SpawnConfig, request_id: Optional[str]) -> Terminal:
        terminal = Terminal(
            id=new_terminal_id(self.session_prefix, config.terminal_type),
            name=config.name or self._next_name(config.terminal_type),
            terminal_type=config.terminal_type,
            kind=config.kind,
            working_dir=config.working_dir or "",
            command=config.command,
            cols=config.cols,
            rows=config.rows,
        )
        if terminal.kind == TerminalKind.PERSISTENT:
            terminal.multiplexer_handle = terminal.id

        self.terminals[terminal.id] = terminal
        logger.info(f"Spawning terminal {terminal.name} (id={terminal.id}, kind={terminal.kind.value})")

        try:
            adapter = self._adapter_factory(terminal)
        except Exception as e:
            await self._fail_spawn(terminal, request_id, f"Could not create adapter: {e}")
            raise LaunchError(f"Could not create adapter: {e}", terminal.id) from e
        self._adapters[terminal.id] = adapter

        launch = asyncio.create_task(self._launch(terminal, adapter))
        self._launch_tasks[terminal.id] = launch
        try:
            await asyncio.wait({launch})
        except asyncio.CancelledError:
            launch.cancel()
            self._mark_error(terminal, "Spawn cancelled")
            raise
        finally:
            self._launch_tasks.pop(terminal.id, None)

        if launch.cancelled() or terminal.status == TerminalStatus.CLOSED:
            logger.info(f"Terminal {terminal.id} was closed while spawning")
            raise LaunchError("Terminal closed during spawn", terminal.id)

        error = launch.exception()
        if error is not None:
            await self._fail_spawn(terminal, request_id, str(error))
            if isinstance(error, LaunchError):
                raise error
            raise LaunchError(str(error), terminal.id) from error

        terminal.status = TerminalStatus.ACTIVE
        terminal.touch()
        logger.info(f"Spawned terminal {terminal.name} (id={terminal.id})")
        await self._emit_event(TerminalEvent(TerminalEventType.SPAWNED, terminal, request_id=request_id))
        return terminal

    async def _launch(self, terminal: Terminal, adapter: ProcessAdapter) -> None:
        """Start the adapter within the spawn timeout, cleaning up on any failure."""
        try:
            await asyncio.wait_for(adapter.start(), timeout=self.spawn_timeout_seconds)
        except asyncio.TimeoutError:
            await self._discard_adapter(adapter)
            raise LaunchError(
                f"Terminal did not become ready within {self.spawn_timeout_seconds}s", terminal.id
            )
        except asyncio.CancelledError:
            # Closed mid-spawn: do not leave whatever did start running
            await self._discard_adapter(adapter)
            raise
        except Exception as e:
            await self._discard_adapter(adapter)
            if isinstance(e, LaunchError):
                raise
            raise LaunchError(f"Failed to start terminal: {e}", terminal.id) from e

    async def _discard_adapter(self, adapter: ProcessAdapter) -> None:
        try:
            await adapter.kill()
        except Exception as e:
            logger.error(f"Failed to clean up adapter for {adapter.terminal_id}: {e}")

    async def _fail_spawn(self, terminal: Terminal, request_id: Optional[str], reason: str) -> None:
        logger.error(f"Failed to spawn terminal {terminal.name} (id={terminal.id}): {reason}")
        self._mark_error(terminal, reason)
        await self._emit_event(
            TerminalEvent(TerminalEventType.SPAWN_FAILED, terminal, request_id=request_id, reason=reason)
        )

    def _mark_error(self, terminal: Terminal, reason: str) -> None:
        """Keep a failed terminal listed briefly so the requester can see why."""
        terminal.status = TerminalStatus.ERROR
        terminal.error_message = reason
        terminal.touch()
        self._adapters.pop(terminal.id, None)

        if self.error_retention_seconds <= 0:
            self.terminals.pop(terminal.id, None)
            return
        loop = asyncio.get_running_loop()
        self._removal_handles[terminal.id] = loop.call_later(
            self.error_retention_seconds, self._remove_errored, terminal.id
        )

    def _remove_errored(self, terminal_id: str) -> None:
        self._removal_handles.pop(terminal_id, None)
        terminal = self.terminals.get(terminal_id)
        if terminal and terminal.status == TerminalStatus.ERROR:
            del self.terminals[terminal_id]
            logger.debug(f"Removed errored terminal {terminal_id}")

    # Close

    async def close(self, terminal_id: str, reason: Optional[str] = None) -> bool:
        """
        Close a terminal, killing its process or tmux session.

        Idempotent: unknown and already-closed ids succeed.

        Returns:
            Always True
        """
        terminal = self.terminals.get(terminal_id)
        if terminal is None or terminal.status == TerminalStatus.CLOSED:
            logger.debug(f"Close of unknown or closed terminal {terminal_id} (no-op)")
            return True

        previous = terminal.status
        terminal.status = TerminalStatus.CLOSED
        terminal.touch()
        del self.terminals[terminal_id]

        handle = self._removal_handles.pop(terminal_id, None)
        if handle:
            handle.cancel()
        if previous == TerminalStatus.ERROR:
            logger.info(f"Removed errored terminal {terminal.name} (id={terminal_id})")
            return True

        adapter = self._adapters.pop(terminal_id, None)
        launch = self._launch_tasks.get(terminal_id)
        if launch and not launch.done():
            # The launch cleans up whatever it managed to start
            launch.cancel()
        elif adapter:
            await self._discard_adapter(adapter)

        suffix = f" ({reason})" if reason else ""
        logger.info(f"Closed terminal {terminal.name} (id={terminal_id}){suffix}")
        await self._emit_event(TerminalEvent(TerminalEventType.CLOSED, terminal, reason=reason))
        return True

    async def handle_process_exit(self, terminal_id: str) -> bool:
        """
        React to a terminal's output stream ending.

        Returns:
            True if the adapter recovered and output continues, False if the
            terminal is closed
        """
        terminal = self.terminals.get(terminal_id)
        if terminal is None or terminal.status == TerminalStatus.CLOSED:
            return False

        adapter = self._adapters.get(terminal_id)
        if adapter and await adapter.recover():
            logger.info(f"Recovered output stream for terminal {terminal_id}")
            return True

        logger.warning(f"Process for terminal {terminal.name} (id={terminal_id}) exited")
        await self.close(terminal_id, reason="process exited")
        return False

    # Ownership-driven transitions

    def mark_detached(self, terminal_id: str) -> None:
        """Record that a persistent terminal has no owners left."""
        terminal = self.terminals.get(terminal_id)
        if terminal is None:
            raise NotFoundError(terminal_id)
        if not terminal.is_persistent:
            return
        if terminal.status == TerminalStatus.ACTIVE:
            terminal.status = TerminalStatus.DETACHED
            terminal.touch()
            logger.info(f"Terminal {terminal.name} detached (session kept alive)")

    def mark_reattached(self, terminal_id: str) -> None:
        """Record that a detached persistent terminal has an owner again."""
        terminal = self.terminals.get(terminal_id)
        if terminal is None:
            raise NotFoundError(terminal_id)
        if not terminal.is_persistent:
            return
        if terminal.status == TerminalStatus.DETACHED:
            terminal.status = TerminalStatus.ACTIVE
            terminal.touch()
            logger.info(f"Terminal {terminal.name} re-attached")

    def record_activity(self, terminal_id: str) -> None:
        terminal = self.terminals.get(terminal_id)
        if terminal:
            terminal.touch()

    def record_resize(self, terminal_id: str, cols: int, rows: int) -> None:
        terminal = self.terminals.get(terminal_id)
        if terminal:
            terminal.cols = cols
            terminal.rows = rows

    # tmux sessions the registry does not know about

    def _type_from_session_name(self, session_name: str) -> str:
        match = re.match(rf"^{re.escape(self.session_prefix)}-(.+)-[0-9a-f]{{8}}$", session_name)
        if match:
            return match.group(1)
        return session_name[len(self.session_prefix) + 1:] or "bash"

    async def list_orphans(self) -> list[str]:
        """tmux sessions carrying our prefix that no terminal is registered for."""
        prefix = f"{self.session_prefix}-"
        sessions = await self.tmux.list_sessions()
        return [s for s in sessions if s.startswith(prefix) and s not in self.terminals]

    async def adopt(self, session_name: str) -> Terminal:
        """
        Register a surviving tmux session (e.g. after a backend restart) as a
        persistent terminal whose id is the session name.

        Raises:
            NotFoundError: If the name lacks our prefix or tmux has no such session
            LaunchError: If the session exists but could not be attached
        """
        existing = self.terminals.get(session_name)
        if existing is not None:
            return existing

        in_flight = self._adoptions.get(session_name)
        if in_flight is None:
            in_flight = asyncio.ensure_future(self._adopt(session_name))
            self._adoptions[session_name] = in_flight
            in_flight.add_done_callback(lambda _: self._adoptions.pop(session_name, None))
        return await asyncio.shield(in_flight)

    async def _adopt(self, session_name: str) -> Terminal:
        if not session_name.startswith(f"{self.session_prefix}-"):
            raise NotFoundError(session_name)
        if not await self.tmux.session_exists(session_name):
            raise NotFoundError(session_name)

        terminal_type = self._type_from_session_name(session_name)
        terminal = Terminal(
            id=session_name,
            name=self._next_name(terminal_type),
            terminal_type=terminal_type,
            kind=TerminalKind.PERSISTENT,
            multiplexer_handle=session_name,
        )
        self.terminals[terminal.id] = terminal
        adapter = self._adapter_factory(terminal)
        self._adapters[terminal.id] = adapter

        try:
            await asyncio.wait_for(adapter.start(), timeout=self.spawn_timeout_seconds)
        except (Exception, asyncio.CancelledError) as e:
            # Never kill a session we were only asked to re-attach to
            self.terminals.pop(terminal.id, None)
            self._adapters.pop(terminal.id, None)
            try:
                await adapter.detach()
            except Exception as detach_error:
                logger.error(f"Failed to release view of {session_name}: {detach_error}")
            if isinstance(e, asyncio.CancelledError):
                raise
            logger.error(f"Failed to adopt tmux session {session_name}: {e}")
            raise LaunchError(f"Failed to attach to {session_name}: {e}", session_name) from e

        terminal.status = TerminalStatus.ACTIVE
        terminal.touch()
        logger.info(f"Adopted tmux session {session_name} as terminal {terminal.name}")
        await self._emit_event(TerminalEvent(TerminalEventType.SPAWNED, terminal))
        return terminal

    # Shutdown

    async def shutdown(self) -> None:
        """Kill ephemeral terminals; leave persistent tmux sessions running."""
        logger.info(f"Shutting down registry ({len(self.terminals)} terminals)")

        for handle in self._removal_handles.values():
            handle.cancel()
        self._removal_handles.clear()

        for terminal_id, terminal in list(self.terminals.items()):
            try:
                if terminal.kind == TerminalKind.EPHEMERAL or terminal.status == TerminalStatus.SPAWNING:
                    await self.close(terminal_id, reason="shutdown")
                    continue
                adapter = self._adapters.pop(terminal_id, None)
                self.terminals.pop(terminal_id, None)
                if adapter and terminal.is_open:
                    await adapter.detach()
                    logger.info(f"Left tmux session {terminal.multiplexer_handle} running")
            except Exception as e:
                logger.error(f"Error shutting down terminal {terminal_id}: {e}")

        self.terminals.clear()
        self._adapters.clear()
        logger.info("Registry shut down")

"""Ownership router: who receives a terminal's output and may drive it."""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional, Protocol

from .errors import NotFoundError, ProcessClosedError, TerminalError, UnauthorizedError
from .models import SpawnConfig, Terminal, TerminalEvent, TerminalEventType, TerminalStatus
from .registry import TerminalRegistry
from .resume_buffer import ResumeBuffer

logger = logging.getLogger(__name__)


class Connection(Protocol):
    """What the router needs from a client connection."""

    id: str

    def deliver_output(self, terminal_id: str, data: bytes, offset: int) -> None:
        """Queue output for the client. Must not block."""


@dataclass
class Route:
    """Per-terminal routing state."""
    terminal_id: str
    buffer: ResumeBuffer
    owners: dict[str, Connection] = field(default_factory=dict)  # insertion ordered
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    pump: Optional[asyncio.Task] = None
    pending_resize: Optional[tuple[int, int]] = None
    resize_task: Optional[asyncio.Task] = None
    closed: bool = False


class OwnershipRouter:
    """
    Maps terminals to the connections that own them.

    Each open terminal has one Route with its own lock, so operations on
    unrelated terminals never wait on each other. A single pump task per
    terminal reads the adapter's output and fans it out to the owners present
    at the moment of emission.
    """

    def __init__(self, registry: TerminalRegistry, config: Optional[dict] = None):
        self.registry = registry
        self.config = config or {}
        terminals_config = self.config.get("terminals", {})
        self.resume_buffer_bytes = terminals_config.get("resume_buffer_bytes", 65536)
        self.resize_debounce_ms = terminals_config.get("resize_debounce_ms", 50)

        self._routes: dict[str, Route] = {}
        registry.add_event_handler(self._on_registry_event)

    async def _on_registry_event(self, event: TerminalEvent):
        if event.event_type == TerminalEventType.SPAWNED:
            self._open_route(event.terminal)
        elif event.event_type == TerminalEventType.CLOSED:
            self._teardown(event.terminal.id)

    def _open_route(self, terminal: Terminal) -> Route:
        route = self._routes.get(terminal.id)
        if route is not None:
            return route
        route = Route(terminal_id=terminal.id, buffer=ResumeBuffer(self.resume_buffer_bytes))
        self._routes[terminal.id] = route
        route.pump = asyncio.create_task(self._pump(route))
        logger.debug(f"Opened route for terminal {terminal.id}")
        return route

    def _teardown(self, terminal_id: str) -> None:
        route = self._routes.pop(terminal_id, None)
        if route is None:
            return
        route.closed = True
        route.owners.clear()
        route.pending_resize = None
        current = asyncio.current_task()
        for task in (route.pump, route.resize_task):
            if task and not task.done() and task is not current:
                task.cancel()
        logger.debug(f"Tore down route for terminal {terminal_id}")

    def _get_route(self, terminal_id: str) -> Route:
        route = self._routes.get(terminal_id)
        if route is None or route.closed:
            raise NotFoundError(terminal_id)
        return route

    async def _pump(self, route: Route):
        """Read output until the process is gone for good."""
        terminal_id = route.terminal_id
        while not route.closed:
            adapter = self.registry.adapter(terminal_id)
            if adapter is None:
                return
            try:
                async for chunk in adapter.output():
                    await self.broadcast_output(terminal_id, chunk)
            except ProcessClosedError:
                pass
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Output pump failed for terminal {terminal_id}: {e}")

            if route.closed:
                return
            if not await self.registry.handle_process_exit(terminal_id):
                return

    # Operations

    def owners(self, terminal_id: str) -> list[Connection]:
        route = self._routes.get(terminal_id)
        if route is None:
            return []
        return list(route.owners.values())

    def owned_by(self, connection: Connection) -> list[str]:
        """Terminal ids the connection currently owns."""
        return [tid for tid, route in self._routes.items() if connection.id in route.owners]

    async def spawn(
        self,
        config: SpawnConfig,
        connection: Connection,
        request_id: Optional[str] = None,
    ) -> tuple[Terminal, bool]:
        """
        Spawn a terminal and make the requester its first owner.

        Returns:
            Tuple of (terminal, created); created is False for a duplicate request id
        """
        terminal, created = await self.registry.spawn(config, request_id=request_id)
        await self.attach(terminal.id, connection)
        return terminal, created

    async def attach(self, terminal_id: str, connection: Connection, since: Optional[int] = None) -> Terminal:
        """
        Add a connection to a terminal's owners and replay buffered output.

        Attaching twice is a no-op. An unknown id is tried as a surviving tmux
        session before giving up.

        Args:
            terminal_id: Terminal to attach to
            connection: The new owner
            since: Replay only output after this byte offset

        Raises:
            NotFoundError: If the terminal does not exist
        """
        terminal = self.registry.get(terminal_id)
        if terminal is None:
            terminal = await self.registry.adopt(terminal_id)
        if not terminal.is_open:
            raise NotFoundError(terminal_id)

        route = self._routes.get(terminal_id) or self._open_route(terminal)
        async with route.lock:
            if route.closed:
                raise NotFoundError(terminal_id)
            if connection.id in route.owners:
                return terminal

            first_owner = not route.owners
            route.owners[connection.id] = connection
            if first_owner and terminal.status == TerminalStatus.DETACHED:
                self.registry.mark_reattached(terminal_id)

            backlog = route.buffer.since(since)
            if backlog:
                connection.deliver_output(terminal_id, backlog, route.buffer.offset)

        logger.info(f"Connection {connection.id} attached to {terminal.name} ({len(route.owners)} owners)")
        return terminal

    async def release(self, terminal_id: str, connection: Connection) -> None:
        """
        Remove a connection from a terminal's owners without touching the process.

        The last owner leaving detaches a persistent terminal and closes an
        ephemeral one.

        Raises:
            NotFoundError: If the terminal does not exist
        """
        route = self._get_route(terminal_id)
        terminal = self.registry.get(terminal_id)
        if terminal is None:
            raise NotFoundError(terminal_id)

        async with route.lock:
            if connection.id not in route.owners:
                return
            del route.owners[connection.id]
            logger.info(f"Connection {connection.id} released {terminal.name} ({len(route.owners)} owners)")
            if route.owners:
                return

            if terminal.is_persistent:
                self.registry.mark_detached(terminal_id)
            else:
                await self.registry.close(terminal_id, reason="released by last owner")

    async def route_input(self, terminal_id: str, connection: Connection, data: bytes) -> None:
        """
        Deliver input from an owner to the terminal's process.

        Raises:
            NotFoundError: If the terminal does not exist
            UnauthorizedError: If the connection does not own the terminal
            ProcessClosedError: If the process is gone
        """
        route = self._get_route(terminal_id)
        async with route.lock:
            if connection.id not in route.owners:
                raise UnauthorizedError(terminal_id, connection.id)
            adapter = self.registry.adapter(terminal_id)
            if adapter is None:
                raise NotFoundError(terminal_id)
            await adapter.write(data)
        self.registry.record_activity(terminal_id)

    async def route_resize(self, terminal_id: str, connection: Connection, cols: int, rows: int) -> None:
        """
        Resize a terminal on behalf of an owner.

        Persistent terminals are shared by every viewer, so a burst of resizes
        is collapsed into one applying the last geometry.

        Raises:
            NotFoundError: If the terminal does not exist
            UnauthorizedError: If the connection does not own the terminal
        """
        route = self._get_route(terminal_id)
        terminal = self.registry.get(terminal_id)
        if terminal is None:
            raise NotFoundError(terminal_id)

        async with route.lock:
            if connection.id not in route.owners:
                raise UnauthorizedError(terminal_id, connection.id)

            if not terminal.is_persistent or self.resize_debounce_ms <= 0:
                await self._apply_resize(terminal_id, cols, rows)
                return

            route.pending_resize = (cols, rows)
            if route.resize_task is None or route.resize_task.done():
                route.resize_task = asyncio.create_task(self._flush_resize(route))

    async def _flush_resize(self, route: Route):
        await asyncio.sleep(self.resize_debounce_ms / 1000)
        async with route.lock:
            size = route.pending_resize
            route.pending_resize = None
            route.resize_task = None
            if size is None or route.closed:
                return
            try:
                await self._apply_resize(route.terminal_id, *size)
            except TerminalError as e:
                logger.warning(f"Deferred resize of {route.terminal_id} failed: {e}")

    async def _apply_resize(self, terminal_id: str, cols: int, rows: int) -> None:
        adapter = self.registry.adapter(terminal_id)
        if adapter is None:
            raise NotFoundError(terminal_id)
        await adapter.resize(cols, rows)
        self.registry.record_resize(terminal_id, cols, rows)
        logger.debug(f"Resized {terminal_id} to {cols}x{rows}")

    async def broadcast_output(self, terminal_id: str, data: bytes) -> None:
        """Buffer output and hand it to every current owner, in order."""
        route = self._routes.get(terminal_id)
        if route is None:
            return
        async with route.lock:
            if route.closed:
                return
            offset = route.buffer.append(data)
            for connection in list(route.owners.values()):
                try:
                    connection.deliver_output(terminal_id, data, offset)
                except Exception as e:
                    logger.error(f"Failed to deliver output of {terminal_id} to {connection.id}: {e}")
        self.registry.record_activity(terminal_id)

    async def force_close(self, terminal_id: str) -> bool:
        """
        Destroy a terminal regardless of who owns it.

        Returns:
            True if the terminal existed
        """
        existed = self.registry.get(terminal_id) is not None
        route = self._routes.get(terminal_id)
        if route is None:
            await self.registry.close(terminal_id, reason="closed by client")
            return existed
        async with route.lock:
            await self.registry.close(terminal_id, reason="closed by client")
        return existed

    async def drop_connection(self, connection: Connection) -> None:
        """Release everything a disconnected client owned."""
        for terminal_id in self.owned_by(connection):
            try:
                await self.release(terminal_id, connection)
            except NotFoundError:
                continue
            except TerminalError as e:
                logger.error(f"Error releasing {terminal_id} for {connection.id}: {e}")

    async def shutdown(self) -> None:
        """Stop every pump and pending resize."""
        tasks = []
        for terminal_id in list(self._routes):
            route = self._routes[terminal_id]
            tasks.extend(t for t in (route.pump, route.resize_task) if t and not t.done())
            self._teardown(terminal_id)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Router shut down")

"""Transport gateway: WebSocket connections in, router calls out."""

import asyncio
import logging
import uuid
from typing import Optional

from fastapi import WebSocket

from .errors import BadRequestError, ErrorKind, TerminalError
from .models import TerminalEvent, TerminalEventType, TerminalKind
from .protocol import (
    AttachMessage,
    ClientMessage,
    CloseMessage,
    InputMessage,
    ListMessage,
    ReleaseMessage,
    ResizeMessage,
    SpawnMessage,
    attached_message,
    closed_message,
    error_message,
    list_message,
    output_message,
    parse_client_message,
    released_message,
    spawned_message,
)
from .registry import TerminalRegistry
from .router import OwnershipRouter

logger = logging.getLogger(__name__)


class ClientConnection:
    """
    One WebSocket client.

    Outbound messages go through a queue drained by a single writer task, so
    producers never wait on a slow socket and per-connection order holds.
    """

    def __init__(self, websocket: WebSocket, connection_id: Optional[str] = None):
        self.id = connection_id or uuid.uuid4().hex[:8]
        self.websocket = websocket
        self.closed = False
        self._queue: asyncio.Queue = asyncio.Queue()
        self._writer: Optional[asyncio.Task] = None

    def start(self):
        self._writer = asyncio.create_task(self._write_loop())

    def send(self, message: dict) -> None:
        if self.closed:
            return
        self._queue.put_nowait(message)

    def deliver_output(self, terminal_id: str, data: bytes, offset: int) -> None:
        self.send(output_message(terminal_id, data, offset))

    async def _write_loop(self):
        while True:
            message = await self._queue.get()
            if message is None:
                return
            try:
                await self.websocket.send_json(message)
            except Exception as e:
                logger.warning(f"Connection {self.id} send failed, dropping writer: {e}")
                self.closed = True
                return

    async def close(self):
        """Flush queued messages and stop the writer."""
        if self.closed and (self._writer is None or self._writer.done()):
            return
        self.closed = True
        self._queue.put_nowait(None)
        if self._writer:
            await self._writer


class TransportGateway:
    """Speaks the message protocol on behalf of the router and registry."""

    def __init__(self, registry: TerminalRegistry, router: OwnershipRouter, config: Optional[dict] = None):
        self.registry = registry
        self.router = router
        self.config = config or {}
        terminals_config = self.config.get("terminals", {})
        self.default_kind = TerminalKind(terminals_config.get("default_kind", TerminalKind.PERSISTENT.value))

        self.connections: dict[str, ClientConnection] = {}
        self._tasks: set[asyncio.Task] = set()
        registry.add_event_handler(self._on_registry_event)

    async def _on_registry_event(self, event: TerminalEvent):
        if event.event_type == TerminalEventType.SPAWNED:
            self.broadcast(spawned_message(event.terminal, event.request_id))
        elif event.event_type == TerminalEventType.CLOSED:
            self.broadcast(closed_message(event.terminal.id, event.reason))

    def broadcast(self, message: dict) -> None:
        """Send a lifecycle message to every connection."""
        for connection in list(self.connections.values()):
            connection.send(message)

    async def handle(self, websocket: WebSocket) -> None:
        """Serve one accepted WebSocket until it disconnects."""
        connection = ClientConnection(websocket)
        connection.start()
        self.connections[connection.id] = connection
        logger.info(f"Connection {connection.id} opened ({len(self.connections)} connected)")

        try:
            while True:
                frame = await websocket.receive()
                if frame.get("type") == "websocket.disconnect":
                    logger.info(f"Connection {connection.id} disconnected")
                    break

                raw = frame.get("text")
                if raw is None:
                    try:
                        raw = (frame.get("bytes") or b"").decode("utf-8")
                    except UnicodeDecodeError:
                        logger.warning(f"Undecodable binary frame from {connection.id}")
                        connection.send(error_message(ErrorKind.BAD_REQUEST, "Binary frame is not valid UTF-8"))
                        continue
                await self.dispatch(connection, raw)
        finally:
            self.connections.pop(connection.id, None)
            await self.router.drop_connection(connection)
            await connection.close()
            logger.info(f"Connection {connection.id} closed ({len(self.connections)} connected)")

    async def dispatch(self, connection: ClientConnection, raw: str) -> None:
        """Handle one frame, turning failures into `error` messages for the sender."""
        request_id = None
        terminal_id = None
        try:
            message = parse_client_message(raw)
            request_id = getattr(message, "request_id", None)
            terminal_id = getattr(message, "terminal_id", None)

            if isinstance(message, SpawnMessage):
                # Spawning can take seconds; keep reading this connection meanwhile
                task = asyncio.create_task(self._spawn(connection, message))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
                return
            await self._handle_message(connection, message)
        except BadRequestError as e:
            logger.warning(f"Bad message from {connection.id}: {e.message}")
            connection.send(error_message(e.kind, e.message, e.request_id, e.terminal_id))
        except TerminalError as e:
            connection.send(error_message(e.kind, e.message, request_id, e.terminal_id or terminal_id))
        except Exception as e:
            logger.error(f"Error handling message from {connection.id}: {e}")
            connection.send(error_message(ErrorKind.INTERNAL, str(e), request_id, terminal_id))

    async def _handle_message(self, connection: ClientConnection, message: ClientMessage) -> None:
        if isinstance(message, AttachMessage):
            terminal = await self.router.attach(message.terminal_id, connection, since=message.since)
            connection.send(attached_message(terminal))
        elif isinstance(message, ReleaseMessage):
            await self.router.release(message.terminal_id, connection)
            connection.send(released_message(message.terminal_id))
        elif isinstance(message, CloseMessage):
            existed = await self.router.force_close(message.terminal_id)
            if not existed:
                # Nothing was broadcast, but the requester still gets an answer
                connection.send(closed_message(message.terminal_id))
        elif isinstance(message, InputMessage):
            await self.router.route_input(message.terminal_id, connection, message.data.encode("utf-8"))
        elif isinstance(message, ResizeMessage):
            await self.router.route_resize(message.terminal_id, connection, message.cols, message.rows)
        elif isinstance(message, ListMessage):
            connection.send(list_message(self.registry.list()))
        else:
            raise BadRequestError(f"Unsupported message type: {type(message).__name__}")

    async def _spawn(self, connection: ClientConnection, message: SpawnMessage) -> None:
        request_id = message.request_id
        try:
            config = message.config.to_spawn_config(self.default_kind)
            terminal, created = await self.router.spawn(config, connection, request_id=request_id)
        except TerminalError as e:
            connection.send(error_message(e.kind, e.message, request_id, e.terminal_id))
            return
        except Exception as e:
            logger.error(f"Spawn for {connection.id} failed: {e}")
            connection.send(error_message(ErrorKind.LAUNCH_FAILURE, str(e), request_id))
            return

        if not created:
            # Duplicate request: no lifecycle broadcast, answer the requester only
            connection.send(spawned_message(terminal, request_id))

        if connection.closed or connection.id not in self.connections:
            # Client went away while we were spawning
            try:
                await self.router.release(terminal.id, connection)
            except TerminalError as e:
                logger.warning(f"Could not release {terminal.id} after disconnect: {e}")

    async def shutdown(self) -> None:
        """Cancel in-flight spawns and close every connection."""
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        for connection in list(self.connections.values()):
            await connection.close()
        self.connections.clear()
        logger.info("Gateway shut down")

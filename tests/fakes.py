"""In-memory fakes for registry, router and gateway tests."""

import asyncio
from typing import Optional

from terminal_tabs.errors import ProcessClosedError, TerminalError
from terminal_tabs.models import Terminal, TerminalKind
from terminal_tabs.process_adapter import ProcessAdapter


class FakeAdapter(ProcessAdapter):
    """
    In-memory stand-in for a PTY or tmux-backed process.

    Whatever is written is echoed back as output, like a terminal with echo on.
    """

    def __init__(self, terminal: Terminal, start_delay: float = 0, start_error: Optional[Exception] = None):
        super().__init__(terminal)
        self.kind = terminal.kind
        self.start_delay = start_delay
        self.start_error = start_error
        self.started = False
        self.killed = False
        self.detached = False
        self.written: list[bytes] = []
        self.resizes: list[tuple[int, int]] = []
        self.recover_result = False
        self.recover_calls = 0
        self._queue: asyncio.Queue = asyncio.Queue()

    async def start(self) -> None:
        if self.start_delay:
            await asyncio.sleep(self.start_delay)
        if self.start_error:
            raise self.start_error
        self.started = True

    async def output(self):
        while True:
            chunk = await self._queue.get()
            if chunk is None:
                return
            yield chunk

    def emit(self, data: bytes) -> None:
        """Pretend the process printed something."""
        self._queue.put_nowait(data)

    def exit(self) -> None:
        """Pretend the process (or view client) went away."""
        self._queue.put_nowait(None)

    async def write(self, data: bytes) -> None:
        if self.killed:
            raise ProcessClosedError("Process closed", self.terminal_id)
        self.written.append(data)
        self.emit(data)

    async def resize(self, cols: int, rows: int) -> None:
        if self.killed:
            raise ProcessClosedError("Process closed", self.terminal_id)
        self.resizes.append((cols, rows))

    async def kill(self) -> None:
        if not self.killed:
            self.killed = True
            self.exit()

    async def detach(self) -> None:
        if self.kind == TerminalKind.EPHEMERAL:
            raise TerminalError("Ephemeral terminals cannot be detached", self.terminal_id)
        self.detached = True
        self.exit()

    async def recover(self) -> bool:
        self.recover_calls += 1
        if self.recover_result:
            self._queue = asyncio.Queue()
        return self.recover_result

    @property
    def alive(self) -> bool:
        return self.started and not self.killed and not self.detached


class FakeAdapterFactory:
    """Adapter factory that records every adapter it builds."""

    def __init__(self):
        self.adapters: dict[str, FakeAdapter] = {}
        self.start_delay = 0
        self.start_error: Optional[Exception] = None

    def __call__(self, terminal: Terminal) -> FakeAdapter:
        adapter = FakeAdapter(terminal, start_delay=self.start_delay, start_error=self.start_error)
        self.adapters[terminal.id] = adapter
        return adapter


class FakeConnection:
    """Records output delivered by the router."""

    def __init__(self, connection_id: str):
        self.id = connection_id
        self.received: list[tuple[str, bytes, int]] = []

    def deliver_output(self, terminal_id: str, data: bytes, offset: int) -> None:
        self.received.append((terminal_id, data, offset))

    def output_for(self, terminal_id: str) -> bytes:
        return b"".join(data for tid, data, _ in self.received if tid == terminal_id)


async def settle(rounds: int = 5) -> None:
    """Let pump tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)



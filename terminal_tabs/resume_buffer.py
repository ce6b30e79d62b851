"""Bounded replay buffer for reconnecting clients."""

from collections import deque
from typing import Optional


class ResumeBuffer:
    """
    Keeps the most recent output of one terminal.

    Every byte ever emitted has a position; `offset` is the position just past
    the newest byte. Whole chunks are evicted from the front once more than
    `max_bytes` are held. A watermark that lands inside a multi-byte UTF-8
    character is moved forward to the next character start.
    """

    def __init__(self, max_bytes: int = 65536):
        self.max_bytes = max_bytes
        self._chunks: deque[tuple[int, bytes]] = deque()  # (start offset, data)
        self._size = 0
        self.offset = 0

    def append(self, data: bytes) -> int:
        """Record a chunk and return the offset just past it."""
        if not data:
            return self.offset
        self._chunks.append((self.offset, data))
        self._size += len(data)
        self.offset += len(data)
        while self._size > self.max_bytes and len(self._chunks) > 1:
            _, dropped = self._chunks.popleft()
            self._size -= len(dropped)
        return self.offset

    @property
    def start_offset(self) -> int:
        """Offset of the oldest byte still held."""
        if not self._chunks:
            return self.offset
        return self._chunks[0][0]

    def __len__(self) -> int:
        return self._size

    def since(self, watermark: Optional[int] = None) -> bytes:
        """
        Return buffered bytes after `watermark`.

        None means everything buffered. A watermark older than the buffer
        yields everything still held; one at or past `offset` yields nothing.
        """
        if watermark is None or watermark <= self.start_offset:
            return b"".join(chunk for _, chunk in self._chunks)
        if watermark >= self.offset:
            return b""

        parts = []
        for start, chunk in self._chunks:
            end = start + len(chunk)
            if end <= watermark:
                continue
            cut = max(0, watermark - start)
            if cut:
                # Skip continuation bytes so replay starts on a character
                while cut < len(chunk) and chunk[cut] & 0xC0 == 0x80:
                    cut += 1
            parts.append(chunk[cut:])
        return b"".join(parts)

    def clear(self) -> None:
        self._chunks.clear()
        self._size = 0

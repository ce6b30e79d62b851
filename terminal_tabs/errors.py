"""Error taxonomy shared by the registry, router and gateway."""

from enum import Enum
from typing import Optional


class ErrorKind(Enum):
    """Stable error codes surfaced to clients in `error` messages."""
    NOT_FOUND = "not_found"
    UNAUTHORIZED = "unauthorized"
    LAUNCH_FAILURE = "launch_failure"
    PROCESS_CLOSED = "process_closed"
    BAD_REQUEST = "bad_request"
    INTERNAL = "internal"


class TerminalError(RuntimeError):
    """Base class for terminal operation failures."""

    kind = ErrorKind.INTERNAL

    def __init__(self, message: str, terminal_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.terminal_id = terminal_id


class NotFoundError(TerminalError):
    """Raised when a terminal id is not registered."""

    kind = ErrorKind.NOT_FOUND

    def __init__(self, terminal_id: str):
        super().__init__(f"Terminal not found: {terminal_id}", terminal_id)


class UnauthorizedError(TerminalError):
    """Raised when a connection that does not own a terminal tries to drive it."""

    kind = ErrorKind.UNAUTHORIZED

    def __init__(self, terminal_id: str, connection_id: str):
        super().__init__(
            f"Connection {connection_id} is not attached to terminal {terminal_id}",
            terminal_id,
        )
        self.connection_id = connection_id


class LaunchError(TerminalError):
    """Raised when the underlying process or tmux session could not be started."""

    kind = ErrorKind.LAUNCH_FAILURE


class ProcessClosedError(TerminalError):
    """Raised on I/O against a process that has been killed or has exited."""

    kind = ErrorKind.PROCESS_CLOSED


class BadRequestError(TerminalError):
    """Raised when a client message cannot be parsed or validated."""

    kind = ErrorKind.BAD_REQUEST

    def __init__(self, message: str, request_id: Optional[str] = None, terminal_id: Optional[str] = None):
        super().__init__(message, terminal_id)
        self.request_id = request_id

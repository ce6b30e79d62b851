"""WebSocket message protocol.

Every frame is a JSON object tagged by `type`, with camelCase fields.
Client messages are parsed into a discriminated union; server messages are
built with the helpers at the bottom of this module.
"""

import json
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel

from .errors import BadRequestError, ErrorKind
from .models import DEFAULT_COLS, DEFAULT_ROWS, DEFAULT_TERMINAL_TYPE, SpawnConfig, Terminal, TerminalKind


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# Client -> server

class SpawnOptions(WireModel):
    """Spawn configuration as sent by a client."""
    terminal_type: Optional[str] = None
    kind: Optional[Literal["ephemeral", "persistent"]] = None
    use_tmux: Optional[bool] = None  # Older clients send this instead of kind
    name: Optional[str] = None
    working_dir: Optional[str] = None
    command: Optional[str] = None
    cols: Optional[int] = Field(default=None, ge=1, le=1000)
    rows: Optional[int] = Field(default=None, ge=1, le=1000)

    def to_spawn_config(self, default_kind: TerminalKind = TerminalKind.PERSISTENT) -> SpawnConfig:
        if self.kind is not None:
            kind = TerminalKind(self.kind)
        elif self.use_tmux is not None:
            kind = TerminalKind.PERSISTENT if self.use_tmux else TerminalKind.EPHEMERAL
        else:
            kind = default_kind
        return SpawnConfig(
            terminal_type=self.terminal_type or DEFAULT_TERMINAL_TYPE,
            kind=kind,
            name=self.name or None,
            working_dir=self.working_dir,
            command=self.command or None,
            cols=self.cols or DEFAULT_COLS,
            rows=self.rows or DEFAULT_ROWS,
        )


class SpawnMessage(WireModel):
    type: Literal["spawn"]
    config: SpawnOptions = Field(default_factory=SpawnOptions)
    request_id: Optional[str] = None


class AttachMessage(WireModel):
    type: Literal["attach"]
    terminal_id: str
    since: Optional[int] = Field(default=None, ge=0)


class ReleaseMessage(WireModel):
    type: Literal["release"]
    terminal_id: str


class CloseMessage(WireModel):
    type: Literal["close"]
    terminal_id: str


class InputMessage(WireModel):
    type: Literal["input"]
    terminal_id: str
    data: str


class ResizeMessage(WireModel):
    type: Literal["resize"]
    terminal_id: str
    cols: int = Field(ge=1, le=1000)
    rows: int = Field(ge=1, le=1000)


class ListMessage(WireModel):
    type: Literal["list"]


ClientMessage = Annotated[
    Union[
        SpawnMessage,
        AttachMessage,
        ReleaseMessage,
        CloseMessage,
        InputMessage,
        ResizeMessage,
        ListMessage,
    ],
    Field(discriminator="type"),
]

_client_message_adapter = TypeAdapter(ClientMessage)


def parse_client_message(raw: str) -> ClientMessage:
    """
    Parse one client frame.

    Raises:
        BadRequestError: If the frame is not valid JSON or not a known message.
            Carries the requestId/terminalId when they could be read.
    """
    try:
        payload = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise BadRequestError(f"Invalid JSON: {e}")
    if not isinstance(payload, dict):
        raise BadRequestError("Message must be a JSON object")

    try:
        return _client_message_adapter.validate_python(payload)
    except ValidationError as e:
        request_id = payload.get("requestId")
        terminal_id = payload.get("terminalId")
        raise BadRequestError(
            f"Invalid {payload.get('type', 'untyped')} message: {_summarize(e)}",
            request_id=request_id if isinstance(request_id, str) else None,
            terminal_id=terminal_id if isinstance(terminal_id, str) else None,
        )


def _summarize(error: ValidationError) -> str:
    parts = []
    for item in error.errors():
        location = ".".join(str(p) for p in item["loc"]) or "message"
        parts.append(f"{location}: {item['msg']}")
    return "; ".join(parts)


# Server -> client

class TerminalInfo(WireModel):
    """A terminal as shown to clients."""
    id: str
    name: str
    terminal_type: str
    kind: str
    session_name: Optional[str] = None
    working_dir: str
    command: Optional[str] = None
    status: str
    error_message: Optional[str] = None
    created_at: str
    last_activity: str
    cols: int
    rows: int

    @classmethod
    def from_terminal(cls, terminal: Terminal) -> "TerminalInfo":
        return cls(
            id=terminal.id,
            name=terminal.name,
            terminal_type=terminal.terminal_type,
            kind=terminal.kind.value,
            session_name=terminal.multiplexer_handle,
            working_dir=terminal.working_dir,
            command=terminal.command,
            status=terminal.status.value,
            error_message=terminal.error_message,
            created_at=terminal.created_at.isoformat(),
            last_activity=terminal.last_activity.isoformat(),
            cols=terminal.cols,
            rows=terminal.rows,
        )


def terminal_payload(terminal: Terminal) -> dict:
    return TerminalInfo.from_terminal(terminal).model_dump(by_alias=True)


def spawned_message(terminal: Terminal, request_id: Optional[str] = None) -> dict:
    message = {"type": "spawned", "terminal": terminal_payload(terminal)}
    if request_id:
        message["requestId"] = request_id
    return message


def closed_message(terminal_id: str, reason: Optional[str] = None) -> dict:
    message = {"type": "closed", "terminalId": terminal_id}
    if reason:
        message["reason"] = reason
    return message


def output_message(terminal_id: str, data: bytes, offset: int) -> dict:
    # Chunks arrive split on character boundaries, so each decodes on its own
    return {
        "type": "output",
        "terminalId": terminal_id,
        "data": data.decode("utf-8", errors="replace"),
        "offset": offset,
    }


def list_message(terminals: list[Terminal]) -> dict:
    return {"type": "list", "terminals": [terminal_payload(t) for t in terminals]}


def attached_message(terminal: Terminal) -> dict:
    return {"type": "attached", "terminalId": terminal.id, "terminal": terminal_payload(terminal)}


def released_message(terminal_id: str) -> dict:
    return {"type": "released", "terminalId": terminal_id}


def error_message(
    code: ErrorKind,
    reason: str,
    request_id: Optional[str] = None,
    terminal_id: Optional[str] = None,
) -> dict:
    message = {"type": "error", "code": code.value, "reason": reason}
    if request_id:
        message["requestId"] = request_id
    if terminal_id:
        message["terminalId"] = terminal_id
    return message

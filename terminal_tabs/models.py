"""Data models for the Terminal Tabs backend."""

import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional


class TerminalKind(Enum):
    """How a terminal is backed."""
    EPHEMERAL = "ephemeral"    # Direct PTY process, dies with it
    PERSISTENT = "persistent"  # tmux session, survives client disconnect


class TerminalStatus(Enum):
    """Terminal lifecycle status."""
    SPAWNING = "spawning"
    ACTIVE = "active"
    DETACHED = "detached"  # Persistent, no owners attached
    CLOSED = "closed"
    ERROR = "error"        # Failed to start


class TerminalEventType(Enum):
    """Lifecycle events emitted by the registry."""
    SPAWNED = "spawned"
    CLOSED = "closed"
    SPAWN_FAILED = "spawn_failed"


DEFAULT_TERMINAL_TYPE = "bash"
DEFAULT_COLS = 80
DEFAULT_ROWS = 24

_SLUG_RE = re.compile(r"[^a-z0-9]+")


def type_slug(terminal_type: str) -> str:
    """Reduce a terminal type to a tmux-safe slug ("Claude Code" -> "claude-code")."""
    slug = _SLUG_RE.sub("-", terminal_type.lower()).strip("-")
    return slug or DEFAULT_TERMINAL_TYPE


def new_terminal_id(prefix: str, terminal_type: str) -> str:
    """Allocate a terminal id; for persistent terminals it is also the tmux session name."""
    return f"{prefix}-{type_slug(terminal_type)}-{uuid.uuid4().hex[:8]}"


@dataclass
class SpawnConfig:
    """What a client asked for when spawning a terminal."""
    terminal_type: str = DEFAULT_TERMINAL_TYPE
    kind: TerminalKind = TerminalKind.PERSISTENT
    name: Optional[str] = None  # Explicit display name, used verbatim
    working_dir: Optional[str] = None
    command: Optional[str] = None  # None = default shell
    cols: int = DEFAULT_COLS
    rows: int = DEFAULT_ROWS


@dataclass
class Terminal:
    """A terminal tracked by the registry."""
    id: str
    name: str
    terminal_type: str = DEFAULT_TERMINAL_TYPE
    kind: TerminalKind = TerminalKind.PERSISTENT
    multiplexer_handle: Optional[str] = None  # tmux session name (persistent only)
    working_dir: str = ""
    command: Optional[str] = None
    status: TerminalStatus = TerminalStatus.SPAWNING
    error_message: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.now)
    last_activity: datetime = field(default_factory=datetime.now)
    cols: int = DEFAULT_COLS
    rows: int = DEFAULT_ROWS

    @property
    def is_persistent(self) -> bool:
        return self.kind == TerminalKind.PERSISTENT

    @property
    def is_open(self) -> bool:
        """True while the terminal can accept owners and I/O."""
        return self.status in (TerminalStatus.ACTIVE, TerminalStatus.DETACHED)

    def touch(self) -> None:
        self.last_activity = datetime.now()

    def to_dict(self) -> dict:
        """Convert terminal to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "name": self.name,
            "terminal_type": self.terminal_type,
            "kind": self.kind.value,
            "multiplexer_handle": self.multiplexer_handle,
            "working_dir": self.working_dir,
            "command": self.command,
            "status": self.status.value,
            "error_message": self.error_message,
            "created_at": self.created_at.isoformat(),
            "last_activity": self.last_activity.isoformat(),
            "cols": self.cols,
            "rows": self.rows,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Terminal":
        """Create terminal from dictionary."""
        return cls(
            id=data["id"],
            name=data["name"],
            terminal_type=data.get("terminal_type", DEFAULT_TERMINAL_TYPE),
            kind=TerminalKind(data.get("kind", TerminalKind.PERSISTENT.value)),
            multiplexer_handle=data.get("multiplexer_handle"),
            working_dir=data.get("working_dir", ""),
            command=data.get("command"),
            status=TerminalStatus(data.get("status", TerminalStatus.ACTIVE.value)),
            error_message=data.get("error_message"),
            created_at=datetime.fromisoformat(data["created_at"]),
            last_activity=datetime.fromisoformat(data["last_activity"]),
            cols=data.get("cols", DEFAULT_COLS),
            rows=data.get("rows", DEFAULT_ROWS),
        )


@dataclass
class TerminalEvent:
    """A lifecycle change the transport layer may need to announce."""
    event_type: TerminalEventType
    terminal: Terminal
    request_id: Optional[str] = None
    reason: Optional[str] = None

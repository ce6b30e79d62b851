"""Unit tests for the WebSocket message protocol."""

import json
from datetime import datetime

import pytest

from terminal_tabs.errors import BadRequestError, ErrorKind, LaunchError
from terminal_tabs.models import Terminal, TerminalKind, TerminalStatus
from terminal_tabs.protocol import (
    AttachMessage,
    InputMessage,
    ListMessage,
    ResizeMessage,
    SpawnMessage,
    error_message,
    output_message,
    parse_client_message,
    spawned_message,
)


def frame(**payload) -> str:
    return json.dumps(payload)


class TestParsing:

    def test_spawn_with_camel_case_config(self):
        message = parse_client_message(frame(
            type="spawn",
            requestId="r1",
            config={"terminalType": "claude-code", "workingDir": "/tmp", "cols": 120, "rows": 40},
        ))

        assert isinstance(message, SpawnMessage)
        assert message.request_id == "r1"
        config = message.config.to_spawn_config()
        assert config.terminal_type == "claude-code"
        assert config.working_dir == "/tmp"
        assert (config.cols, config.rows) == (120, 40)
        assert config.kind == TerminalKind.PERSISTENT

    def test_spawn_defaults(self):
        message = parse_client_message(frame(type="spawn"))
        config = message.config.to_spawn_config(TerminalKind.EPHEMERAL)

        assert config.terminal_type == "bash"
        assert config.kind == TerminalKind.EPHEMERAL
        assert config.name is None

    @pytest.mark.parametrize("options,expected", [
        ({"useTmux": False}, TerminalKind.EPHEMERAL),
        ({"useTmux": True}, TerminalKind.PERSISTENT),
        ({"kind": "ephemeral", "useTmux": True}, TerminalKind.EPHEMERAL),
    ])
    def test_spawn_kind_selection(self, options, expected):
        message = parse_client_message(frame(type="spawn", config=options))
        assert message.config.to_spawn_config().kind == expected

    def test_attach_with_since(self):
        message = parse_client_message(frame(type="attach", terminalId="t1", since=42))
        assert isinstance(message, AttachMessage)
        assert message.terminal_id == "t1"
        assert message.since == 42

    def test_input_and_resize(self):
        message = parse_client_message(frame(type="input", terminalId="t1", data="ls\r"))
        assert isinstance(message, InputMessage)
        assert message.data == "ls\r"

        message = parse_client_message(frame(type="resize", terminalId="t1", cols=100, rows=30))
        assert isinstance(message, ResizeMessage)
        assert (message.cols, message.rows) == (100, 30)

    def test_list(self):
        assert isinstance(parse_client_message(frame(type="list")), ListMessage)

    def test_invalid_json(self):
        with pytest.raises(BadRequestError, match="Invalid JSON"):
            parse_client_message("{not json")

    def test_non_object(self):
        with pytest.raises(BadRequestError):
            parse_client_message("[1, 2]")

    def test_unknown_type(self):
        with pytest.raises(BadRequestError) as exc_info:
            parse_client_message(frame(type="explode", requestId="r9"))
        assert exc_info.value.kind == ErrorKind.BAD_REQUEST
        assert exc_info.value.request_id == "r9"

    def test_missing_field_keeps_ids(self):
        with pytest.raises(BadRequestError) as exc_info:
            parse_client_message(frame(type="input", terminalId="t1"))
        assert exc_info.value.terminal_id == "t1"
        assert "data" in exc_info.value.message

    def test_resize_rejects_zero(self):
        with pytest.raises(BadRequestError):
            parse_client_message(frame(type="resize", terminalId="t1", cols=0, rows=24))


class TestServerMessages:

    def test_spawned_message_is_camel_case(self):
        terminal = Terminal(
            id="ctt-bash-0a1b2c3d",
            name="bash",
            kind=TerminalKind.PERSISTENT,
            multiplexer_handle="ctt-bash-0a1b2c3d",
            working_dir="/tmp",
            status=TerminalStatus.ACTIVE,
            created_at=datetime(2024, 1, 1, 12, 0, 0),
            last_activity=datetime(2024, 1, 1, 12, 0, 0),
        )

        message = spawned_message(terminal, "r1")

        assert message["type"] == "spawned"
        assert message["requestId"] == "r1"
        assert message["terminal"]["id"] == "ctt-bash-0a1b2c3d"
        assert message["terminal"]["terminalType"] == "bash"
        assert message["terminal"]["sessionName"] == "ctt-bash-0a1b2c3d"
        assert message["terminal"]["workingDir"] == "/tmp"
        assert message["terminal"]["status"] == "active"
        assert message["terminal"]["createdAt"] == "2024-01-01T12:00:00"

    def test_output_message_decodes_utf8(self):
        message = output_message("t1", "héllo".encode(), 6)
        assert message == {"type": "output", "terminalId": "t1", "data": "héllo", "offset": 6}

    def test_error_message_omits_missing_ids(self):
        error = LaunchError("Command not found: nope")
        message = error_message(error.kind, error.message, request_id="r1")

        assert message == {
            "type": "error",
            "code": "launch_failure",
            "reason": "Command not found: nope",
            "requestId": "r1",
        }

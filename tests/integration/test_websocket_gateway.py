"""End-to-end tests of the /ws endpoint with fake process adapters."""

import time

import pytest

from terminal_tabs.errors import LaunchError


def sync(ws) -> list:
    """Round-trip a list request so the server has processed everything before it."""
    ws.send_json({"type": "list"})
    while True:
        message = ws.receive_json()
        if message["type"] == "list":
            return message["terminals"]


def test_spawn_input_output_close(test_client):
    with test_client as client:
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "spawn", "requestId": "r1", "config": {"terminalType": "bash", "kind": "ephemeral"}})
            spawned = ws.receive_json()
            assert spawned["type"] == "spawned"
            assert spawned["requestId"] == "r1"
            terminal_id = spawned["terminal"]["id"]
            assert spawned["terminal"]["name"] == "bash"

            ws.send_json({"type": "input", "terminalId": terminal_id, "data": "echo hi\r"})
            assert ws.receive_json() == {"type": "output", "terminalId": terminal_id, "data": "echo hi\r", "offset": 8}

            ws.send_json({"type": "close", "terminalId": terminal_id})
            closed = ws.receive_json()
            assert closed["type"] == "closed"
            assert closed["terminalId"] == terminal_id

        assert client.get(f"/api/terminals/{terminal_id}").status_code == 404


def test_shared_terminal_between_surfaces(test_client):
    with test_client as client:
        with client.websocket_connect("/ws") as panel, client.websocket_connect("/ws") as popup:
            sync(panel)
            sync(popup)

            panel.send_json({"type": "spawn", "requestId": "r1", "config": {"kind": "persistent"}})
            terminal_id = panel.receive_json()["terminal"]["id"]

            # Every surface learns about the new tab
            assert popup.receive_json()["terminal"]["id"] == terminal_id

            # ...but only owners may type into it
            popup.send_json({"type": "input", "terminalId": terminal_id, "data": "x"})
            error = popup.receive_json()
            assert error["type"] == "error"
            assert error["code"] == "unauthorized"

            popup.send_json({"type": "attach", "terminalId": terminal_id})
            assert popup.receive_json()["type"] == "attached"

            panel.send_json({"type": "input", "terminalId": terminal_id, "data": "ls\r"})
            assert panel.receive_json()["data"] == "ls\r"
            assert popup.receive_json()["data"] == "ls\r"

            assert client.get(f"/api/terminals/{terminal_id}").json()["owners"] == 2


def test_duplicate_spawn_request(test_client):
    with test_client as client:
        with client.websocket_connect("/ws") as ws:
            frame = {"type": "spawn", "requestId": "same", "config": {"kind": "ephemeral"}}
            ws.send_json(frame)
            first = ws.receive_json()
            ws.send_json(frame)
            second = ws.receive_json()

            assert first["terminal"]["id"] == second["terminal"]["id"]
            assert client.get("/api/terminals").json()["count"] == 1


def test_spawn_failure_reports_error(test_client, adapter_factory):
    adapter_factory.start_error = LaunchError("Command not found: nope")
    with test_client as client:
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "spawn", "requestId": "r1", "config": {"command": "nope"}})
            error = ws.receive_json()

            assert error == {
                "type": "error",
                "code": "launch_failure",
                "reason": "Command not found: nope",
                "requestId": "r1",
            }
            [terminal] = sync(ws)
            assert terminal["status"] == "error"


def test_bad_frame_does_not_drop_connection(test_client):
    with test_client as client:
        with client.websocket_connect("/ws") as ws:
            ws.send_text("{broken")
            assert ws.receive_json()["code"] == "bad_request"
            assert sync(ws) == []


def test_binary_frames_are_decoded(test_client):
    with test_client as client:
        with client.websocket_connect("/ws") as ws:
            ws.send_bytes(b'{"type": "list"}')
            assert ws.receive_json() == {"type": "list", "terminals": []}

            ws.send_bytes(b"\xff\xfe")
            error = ws.receive_json()
            assert error["type"] == "error"
            assert error["code"] == "bad_request"

            # The connection keeps working afterwards
            assert sync(ws) == []


def test_disconnect_closes_ephemeral_terminals(test_client):
    with test_client as client:
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "spawn", "config": {"kind": "ephemeral"}})
            terminal_id = ws.receive_json()["terminal"]["id"]

        deadline = time.monotonic() + 2.0
        while client.get(f"/api/terminals/{terminal_id}").status_code != 404:
            if time.monotonic() > deadline:
                pytest.fail("ephemeral terminal survived its only owner disconnecting")
            time.sleep(0.02)

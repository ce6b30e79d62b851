"""
Regression tests: releasing a persistent terminal must never kill it

Tests verify that:
1. Disconnecting the last owner detaches a persistent terminal and leaves the tmux session alone
2. A new connection can re-attach and receives the output it missed
3. An explicit close destroys the session, and a later attach fails with not_found
"""

import time

import pytest


def wait_for_status(client, terminal_id: str, status: str, timeout: float = 2.0) -> dict:
    """Poll the HTTP API until a terminal reaches `status`."""
    deadline = time.monotonic() + timeout
    while True:
        response = client.get(f"/api/terminals/{terminal_id}")
        data = response.json() if response.status_code == 200 else None
        if data and data["status"] == status:
            return data
        if time.monotonic() > deadline:
            pytest.fail(f"{terminal_id} never reached {status}: {data}")
        time.sleep(0.02)


def test_disconnect_detaches_and_reconnect_resumes(test_client, adapter_factory, mock_tmux):
    with test_client as client:
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "spawn", "requestId": "r1", "config": {"kind": "persistent"}})
            terminal_id = ws.receive_json()["terminal"]["id"]

            ws.send_json({"type": "input", "terminalId": terminal_id, "data": "make\r"})
            first = ws.receive_json()
            assert first["data"] == "make\r"

        detached = wait_for_status(client, terminal_id, "detached")
        assert detached["owners"] == 0
        adapter = adapter_factory.adapters[terminal_id]
        assert not adapter.killed
        mock_tmux.kill_session.assert_not_awaited()

        with client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "attach", "terminalId": terminal_id, "since": 0})
            replay = ws.receive_json()
            assert replay == {"type": "output", "terminalId": terminal_id, "data": "make\r", "offset": 5}
            attached = ws.receive_json()
            assert attached["type"] == "attached"
            assert attached["terminal"]["status"] == "active"

            # Already-seen output is not replayed when the client sends its watermark
            ws.send_json({"type": "release", "terminalId": terminal_id})
            assert ws.receive_json()["type"] == "released"
            ws.send_json({"type": "attach", "terminalId": terminal_id, "since": 5})
            assert ws.receive_json()["type"] == "attached"


def test_close_destroys_persistent_terminal(test_client, adapter_factory, mock_tmux):
    with test_client as client:
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "spawn", "config": {"kind": "persistent"}})
            terminal_id = ws.receive_json()["terminal"]["id"]

            ws.send_json({"type": "close", "terminalId": terminal_id})
            assert ws.receive_json()["type"] == "closed"
            assert adapter_factory.adapters[terminal_id].killed

            # tmux no longer has the session, so attach cannot adopt it
            mock_tmux.session_exists.return_value = False
            ws.send_json({"type": "attach", "terminalId": terminal_id})
            error = ws.receive_json()
            assert error["type"] == "error"
            assert error["code"] == "not_found"
            assert error["terminalId"] == terminal_id

"""Shared pytest fixtures for Terminal Tabs tests."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from terminal_tabs.gateway import TransportGateway
from terminal_tabs.models import SpawnConfig, TerminalKind
from terminal_tabs.registry import TerminalRegistry
from terminal_tabs.router import OwnershipRouter
from terminal_tabs.server import create_app
from terminal_tabs.tmux_controller import TmuxController

from tests.fakes import FakeAdapterFactory


@pytest.fixture
def test_config() -> dict:
    """Configuration with short timeouts for tests."""
    return {
        "terminals": {
            "session_prefix": "ctt",
            "spawn_timeout_seconds": 0.5,
            "error_retention_seconds": 30,
            "resume_buffer_bytes": 1024,
            "resize_debounce_ms": 20,
            "kill_grace_seconds": 0.1,
        },
    }


@pytest.fixture
def mock_tmux() -> MagicMock:
    """
    Mock TmuxController for testing without actual tmux sessions.

    Returns:
        MagicMock with the async tmux methods configured
    """
    mock = MagicMock(spec=TmuxController)
    mock.binary = "tmux"
    mock.is_available.return_value = True
    mock.session_exists = AsyncMock(return_value=True)
    mock.create_session = AsyncMock(return_value=None)
    mock.kill_session = AsyncMock(return_value=True)
    mock.list_sessions = AsyncMock(return_value=[])
    mock.attach_command.side_effect = lambda name: ["tmux", "attach-session", "-t", f"={name}"]
    return mock


@pytest.fixture
def adapter_factory() -> FakeAdapterFactory:
    return FakeAdapterFactory()


@pytest.fixture
def registry(mock_tmux, test_config, adapter_factory) -> TerminalRegistry:
    """TerminalRegistry backed by fake adapters."""
    return TerminalRegistry(tmux=mock_tmux, config=test_config, adapter_factory=adapter_factory)


@pytest.fixture
def router(registry, test_config) -> OwnershipRouter:
    return OwnershipRouter(registry, config=test_config)


@pytest.fixture
def gateway(registry, router, test_config) -> TransportGateway:
    return TransportGateway(registry, router, config=test_config)


@pytest.fixture
def ephemeral_config() -> SpawnConfig:
    return SpawnConfig(terminal_type="bash", kind=TerminalKind.EPHEMERAL)


@pytest.fixture
def persistent_config() -> SpawnConfig:
    return SpawnConfig(terminal_type="bash", kind=TerminalKind.PERSISTENT)


@pytest.fixture
def test_client(registry, router, gateway, test_config) -> TestClient:
    """
    Create a FastAPI TestClient wired to fake-adapter components.

    Use as a context manager so HTTP calls and WebSockets share one event loop.
    """
    app = create_app(registry=registry, router=router, gateway=gateway, config=test_config)
    return TestClient(app)

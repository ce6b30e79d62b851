"""FastAPI server: the /ws endpoint and read-only status API."""

import logging
from typing import Optional

from fastapi import FastAPI, HTTPException, WebSocket

from .protocol import terminal_payload

logger = logging.getLogger(__name__)


def create_app(
    registry=None,
    router=None,
    gateway=None,
    config: Optional[dict] = None,
    lifespan=None,
) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        registry: TerminalRegistry instance
        router: OwnershipRouter instance
        gateway: TransportGateway instance
        config: Configuration dictionary
        lifespan: Optional ASGI lifespan context manager

    Returns:
        Configured FastAPI app
    """
    app = FastAPI(
        title="Terminal Tabs",
        description="Shared PTY and tmux terminals for browser surfaces",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.state.config = config or {}
    app.state.registry = registry
    app.state.router = router
    app.state.gateway = gateway

    def _require_registry():
        if not app.state.registry:
            raise HTTPException(status_code=503, detail="Terminal registry not configured")
        return app.state.registry

    @app.get("/")
    async def root():
        """Health check endpoint."""
        return {"status": "ok", "service": "terminal-tabs"}

    @app.get("/health")
    async def health():
        """Health check endpoint with live counts."""
        registry = app.state.registry
        gateway = app.state.gateway
        return {
            "status": "healthy",
            "active_terminals": registry.active_count() if registry else 0,
            "connections": len(gateway.connections) if gateway else 0,
        }

    @app.get("/api/terminals")
    async def list_terminals():
        """List all registered terminals."""
        registry = _require_registry()
        return {
            "terminals": [terminal_payload(t) for t in registry.list()],
            "count": registry.active_count(),
        }

    @app.get("/api/terminals/{terminal_id}")
    async def get_terminal(terminal_id: str):
        """Get one terminal with its owner count."""
        registry = _require_registry()
        terminal = registry.get(terminal_id)
        if not terminal:
            raise HTTPException(status_code=404, detail="Terminal not found")
        payload = terminal_payload(terminal)
        payload["owners"] = len(app.state.router.owners(terminal_id)) if app.state.router else 0
        return payload

    @app.get("/api/tmux/orphaned-sessions")
    async def orphaned_sessions():
        """tmux sessions with our prefix that no terminal is registered for."""
        registry = _require_registry()
        orphans = await registry.list_orphans()
        return {"orphanedSessions": orphans, "count": len(orphans)}

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        if not app.state.gateway:
            await websocket.close(code=1011)
            return
        await websocket.accept()
        await app.state.gateway.handle(websocket)

    return app

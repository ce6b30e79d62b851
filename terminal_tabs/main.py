"""Main entry point - orchestrates all components."""

import asyncio
import logging
import os
from pathlib import Path

import uvicorn
import yaml

from .gateway import TransportGateway
from .registry import TerminalRegistry
from .router import OwnershipRouter
from .server import create_app
from .tmux_controller import TmuxController

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "config.yaml"


def load_config(config_path: str = DEFAULT_CONFIG_PATH) -> dict:
    """Load configuration from YAML file."""
    path = Path(config_path).expanduser()

    if not path.exists():
        logger.warning(f"Config file not found: {config_path}, using defaults")
        return {}

    with open(path) as f:
        return yaml.safe_load(f) or {}


class TerminalTabsApp:
    """Main application orchestrator."""

    def __init__(self, config: dict):
        self.config = config

        # Server config
        self.host = config.get("server", {}).get("host", "127.0.0.1")
        self.port = config.get("server", {}).get("port", 8129)

        # One registry for the whole process, shared by everything below
        self.tmux = TmuxController(config=config)
        self.registry = TerminalRegistry(tmux=self.tmux, config=config)
        self.router = OwnershipRouter(self.registry, config=config)
        self.gateway = TransportGateway(self.registry, self.router, config=config)

        self.app = create_app(
            registry=self.registry,
            router=self.router,
            gateway=self.gateway,
            config=config,
        )

    async def start(self):
        """Start the web server and run until it exits."""
        logger.info("Starting Terminal Tabs backend...")

        if not self.tmux.is_available():
            logger.warning("tmux not found; persistent terminals will fail to spawn")
        else:
            orphans = await self.registry.list_orphans()
            if orphans:
                logger.info(f"Found {len(orphans)} tmux sessions from a previous run: {', '.join(orphans)}")

        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_level="info",
        )
        server = uvicorn.Server(config)

        logger.info(f"Starting server on http://{self.host}:{self.port}")

        # Run until shutdown
        await server.serve()

    async def stop(self):
        """Stop all components. Ephemeral terminals die, tmux sessions stay."""
        logger.info("Stopping Terminal Tabs backend...")

        await self.gateway.shutdown()
        await self.router.shutdown()
        await self.registry.shutdown()

        logger.info("Shutdown complete")


async def main():
    """Main entry point."""
    config = load_config(os.environ.get("TT_CONFIG", DEFAULT_CONFIG_PATH))

    # Setup logging
    level_name = str(config.get("logging", {}).get("level", "INFO")).upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    app = TerminalTabsApp(config)
    try:
        await app.start()
    finally:
        await app.stop()


def run():
    """Entry point for console script."""
    asyncio.run(main())


if __name__ == "__main__":
    run()

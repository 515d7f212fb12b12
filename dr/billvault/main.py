"""
BillVault - Main entry point.

This module runs the backup service with all background loops:
- Scheduled full and incremental backups
- Replication health checks and catch-up pushes
- Retention purges

Usage:
    python -m dr.billvault.main

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - Shutdown waits for in-flight replication pushes
    - A restore in progress finishes (commit or rollback) before shutdown completes

How to change safely:
    - Add new loops to BackupService, not here
    - Test shutdown sequence thoroughly
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys

import json_log_formatter

from .config import ServiceConfig
from .service import BackupService

logger = logging.getLogger(__name__)


def setup_logging(config: ServiceConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Service configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("aiobotocore").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)


class Server:
    """Runs a BackupService until a shutdown is requested.

    Example:
        >>> server = Server()
        >>> await server.run()  # returns after request_shutdown()
    """

    def __init__(self, config: ServiceConfig | None = None) -> None:
        self.config = config or ServiceConfig.from_env()
        self.service = BackupService(self.config)
        self._shutdown_event = asyncio.Event()

    async def run(self) -> None:
        """Start the service and block until shutdown is requested."""
        try:
            await self.service.start()
            logger.info("BillVault started successfully")
            await self._shutdown_event.wait()
        except Exception as e:
            logger.error(f"Service startup failed: {e}", exc_info=True)
            raise
        finally:
            await self.service.stop()

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        self._shutdown_event.set()


def main() -> None:
    """Main entry point."""
    try:
        config = ServiceConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config)
    server = Server(config)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    def handle_signal(sig: int) -> None:
        logger.info(f"Received signal {sig}, initiating shutdown")
        server.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal, sig)

    try:
        loop.run_until_complete(server.run())
    except KeyboardInterrupt:
        pass
    finally:
        loop.close()


if __name__ == "__main__":
    main()

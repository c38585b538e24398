"""
TxStore Server - Main entry point.

This module starts the TxStore server with all components:
- gRPC Datastore server (primary API)
- Admin HTTP server (optional, FastAPI via uvicorn)
- Maintenance loop (idle transaction expiry, version compaction)

Usage:
    python -m txstore_server.main

Settings are read with ServerConfig.from_env().

Invariants:
    - The store is ready before the gRPC server accepts requests
    - Graceful shutdown lets in-flight RPCs finish within the grace period
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from pathlib import Path

import json_log_formatter
import uvicorn

from .api import DatastoreServicer, GrpcServer, create_http_app
from .config import ServerConfig
from .store import EntityStore
from .transactions import TransactionRegistry

logger = logging.getLogger(__name__)


def setup_logging(config: ServerConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Server configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.VerboseJSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("grpc").setLevel(logging.WARNING)


class Server:
    """TxStore Server orchestrator.

    Manages the lifecycle of all server components:
    - Entity store and transaction registry
    - gRPC server
    - Admin HTTP server
    - Background maintenance loop

    Example:
        >>> server = Server()
        >>> await server.start()
        >>> # Server is running until request_shutdown()
        >>> await server.stop()
    """

    MAINTENANCE_INTERVAL_SECONDS = 5.0

    def __init__(self, config: ServerConfig | None = None) -> None:
        """Initialize the server.

        Args:
            config: Optional server configuration (loaded from env if not provided)
        """
        self.config = config or ServerConfig.from_env()
        self._running = False
        self._shutdown_event = asyncio.Event()

        # Components (initialized in start())
        self.store: EntityStore | None = None
        self.registry: TransactionRegistry | None = None
        self.servicer: DatastoreServicer | None = None
        self.grpc_server: GrpcServer | None = None
        self.http_server: uvicorn.Server | None = None

        # Background tasks
        self._tasks: list[asyncio.Task] = []

    async def start(self) -> None:
        """Start the server and block until shutdown is requested."""
        if self._running:
            logger.warning("Server already running")
            return

        logger.info("Starting TxStore server")
        self.config.log_config()

        try:
            data_dir = Path(self.config.storage.data_dir)
            data_dir.mkdir(parents=True, exist_ok=True)

            self.store = EntityStore(
                data_dir=str(data_dir),
                wal_mode=self.config.storage.wal_mode,
                busy_timeout_ms=self.config.storage.busy_timeout_ms,
            )
            self.registry = TransactionRegistry(
                idle_timeout_seconds=self.config.transactions.idle_timeout_seconds,
            )
            self.servicer = DatastoreServicer(
                store=self.store,
                registry=self.registry,
                config=self.config.transactions,
            )

            host, port = self.config.grpc.bind_address.rsplit(":", 1)
            self.grpc_server = GrpcServer(
                servicer=self.servicer,
                host=host,
                port=int(port),
                max_message_size=self.config.grpc.max_message_size,
                max_concurrent_rpcs=self.config.grpc.max_concurrent_rpcs,
            )
            await self.grpc_server.start()

            if self.config.http.enabled:
                self.http_server = uvicorn.Server(
                    uvicorn.Config(
                        create_http_app(self.servicer),
                        host=self.config.http.host,
                        port=self.config.http.port,
                        log_config=None,
                    )
                )
                http_task = asyncio.create_task(self.http_server.serve())
                # uvicorn captures SIGINT/SIGTERM while serving
                http_task.add_done_callback(lambda _: self.request_shutdown())
                self._tasks.append(http_task)

            self._tasks.append(asyncio.create_task(self._maintenance_loop()))

            self._running = True
            logger.info("TxStore server started successfully")

            await self._shutdown_event.wait()

        except Exception as e:
            logger.error(f"Server startup failed: {e}", exc_info=True)
            self._running = True
            await self.stop()
            raise

    async def _maintenance_loop(self) -> None:
        """Expire idle transactions and periodically compact versions."""
        interval = self.config.storage.compaction_interval_seconds
        since_compaction = 0.0
        while True:
            await asyncio.sleep(self.MAINTENANCE_INTERVAL_SECONDS)
            since_compaction += self.MAINTENANCE_INTERVAL_SECONDS
            try:
                self.servicer.expire_idle_transactions()
                if interval > 0 and since_compaction >= interval:
                    since_compaction = 0.0
                    await self.servicer.compact()
            except Exception as e:
                logger.error(f"Maintenance pass failed: {e}", exc_info=True)

    async def stop(self) -> None:
        """Stop the server gracefully."""
        if not self._running:
            return

        logger.info("Stopping TxStore server")

        if self.http_server:
            self.http_server.should_exit = True

        if self.grpc_server:
            await self.grpc_server.stop(self.config.grpc.shutdown_grace_seconds)

        for task in self._tasks:
            task.cancel()

        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

        self._running = False
        logger.info("TxStore server stopped")

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        self._shutdown_event.set()


def main() -> None:
    """Main entry point."""
    try:
        config = ServerConfig.from_env()
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
        loop.run_until_complete(server.start())
    except KeyboardInterrupt:
        pass
    finally:
        loop.run_until_complete(server.stop())
        loop.close()


if __name__ == "__main__":
    main()

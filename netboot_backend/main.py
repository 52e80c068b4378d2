"""
Netboot backend main entry point.

Builds the DNSMasq backend, keeps it in sync with disk and manages lifecycle.
"""

import asyncio
import logging
import signal
import sys
import structlog
from prometheus_client import start_http_server

from netboot_backend.config import BackendConfig
from netboot_backend.dnsmasq.backend import Backend
from netboot_backend.errors import BackendError, ConfigurationError
from netboot_backend.maintenance import MaintenanceManager

# Configure structured logging
structlog.configure(
    processors=[
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
        structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(logging.INFO),
    context_class=dict,
    logger_factory=structlog.PrintLoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()


class NetbootBackendService:
    """Main service coordinator."""

    def __init__(self, config: BackendConfig):
        self.config = config
        self.backend: Backend = None
        self.maintenance: MaintenanceManager = None

        self.running = False
        self.tasks = []

    async def start(self):
        """Start the backend and its background tasks."""
        logger.info(
            "backend_service_starting",
            root_dir=self.config.root_dir,
            auto_assign=self.config.auto_assign_enabled,
        )

        self.backend = Backend(self.config)

        # Reconcile with whatever is on disk before serving
        await self.backend.sync()

        # Start Prometheus metrics server
        if self.config.metrics_enabled:
            start_http_server(self.config.metrics_port)
            logger.info("prometheus_metrics_enabled", port=self.config.metrics_port)

        # Start file watchers
        self.tasks.append(asyncio.create_task(self.backend.start()))

        # Start housekeeping
        self.maintenance = MaintenanceManager(self.config, self.backend)
        await self.maintenance.start()

        self.running = True
        logger.info("backend_service_started")

    async def stop(self):
        """Stop the backend and its background tasks."""
        logger.info("backend_service_stopping")
        self.running = False

        if self.maintenance:
            await self.maintenance.stop()

        # Cancel all tasks
        for task in self.tasks:
            task.cancel()

        await asyncio.gather(*self.tasks, return_exceptions=True)

        if self.backend:
            self.backend.close()

        logger.info("backend_service_stopped")

    async def run(self):
        """Run service until shutdown signal."""
        await self.start()

        # Wait for shutdown signal
        stop_event = asyncio.Event()

        def signal_handler():
            logger.info("shutdown_signal_received")
            stop_event.set()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, signal_handler)

        # Wait for stop event
        await stop_event.wait()

        # Cleanup
        await self.stop()


async def main():
    """Main entry point."""
    # Load configuration
    try:
        config = BackendConfig.from_env()
    except ConfigurationError as e:
        logger.error("configuration_error", error=str(e))
        sys.exit(1)

    # Set log level
    log_level = getattr(logging, config.log_level.upper(), logging.INFO)
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
    )

    service = NetbootBackendService(config)
    try:
        await service.run()
    except BackendError as e:
        logger.error("backend_fatal_error", error=str(e))
        await service.stop()
        sys.exit(1)


def run():
    """Console script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()

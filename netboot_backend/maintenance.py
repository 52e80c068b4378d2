"""
Backend housekeeping.

Periodically releases IPs whose decline cooldown has passed so they become
assignable again.
"""

import asyncio
import structlog

from netboot_backend.config import BackendConfig
from netboot_backend.dnsmasq.backend import Backend

logger = structlog.get_logger()


class MaintenanceManager:
    """Runs periodic housekeeping against the backend."""

    def __init__(self, config: BackendConfig, backend: Backend):
        self.config = config
        self.backend = backend
        self.running = False
        self.task: asyncio.Task = None
        self.consecutive_failures = 0

    async def sweep(self) -> bool:
        """
        Run one housekeeping pass.

        Returns:
            True if the pass succeeded, False otherwise.
        """
        try:
            cleared = await self.backend.clear_declined_ips()
        except Exception as e:
            self.consecutive_failures += 1
            logger.error(
                "maintenance_sweep_failed",
                error=str(e),
                consecutive_failures=self.consecutive_failures,
            )
            return False

        self.consecutive_failures = 0
        if cleared:
            logger.info("declined_ips_released", count=cleared)
        return True

    async def maintenance_loop(self):
        """Background task that sweeps on a fixed interval."""
        logger.info(
            "maintenance_loop_started",
            interval_seconds=self.config.decline_sweep_interval,
        )

        while self.running:
            await self.sweep()
            await asyncio.sleep(self.config.decline_sweep_interval)

    async def start(self):
        """Start maintenance background task."""
        if self.running:
            logger.warning("maintenance_already_running")
            return

        self.running = True
        self.task = asyncio.create_task(self.maintenance_loop())
        logger.info("maintenance_started")

    async def stop(self):
        """Stop maintenance background task."""
        if not self.running:
            return

        self.running = False
        if self.task:
            self.task.cancel()
            try:
                await self.task
            except asyncio.CancelledError:
                pass

        logger.info("maintenance_stopped")

"""Unit tests for filesystem-driven store reloads.

These tests wait on real filesystem events and are marked slow.
"""

import asyncio
import os
import time

import pytest

from netboot_backend.dnsmasq.lease import LeaseManager
from netboot_backend.dnsmasq.options import ConfigManager
from netboot_backend.dnsmasq.watcher import FileWatcher

MAC = "aa:bb:cc:dd:ee:ff"
TIMEOUT = 5.0


async def wait_for(predicate, timeout=TIMEOUT):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        await asyncio.sleep(0.05)
    return predicate()


async def run_watching(manager):
    task = asyncio.create_task(manager.start())
    # Let the task subscribe before anything is written
    await asyncio.sleep(0.2)
    return task


async def stop(task):
    task.cancel()
    await asyncio.gather(task, return_exceptions=True)


class TestFileWatcher:
    """Tests for the watcher bookkeeping."""

    def test_add_is_idempotent(self, temp_dir):
        """Test a directory is only watched once."""
        watcher = FileWatcher("test")
        try:
            assert watcher.add(str(temp_dir)) is True
            assert watcher.add(str(temp_dir)) is False
            assert watcher.watched == (os.path.realpath(temp_dir),)
        finally:
            watcher.close()

    def test_missing_directory_not_watched(self, temp_dir):
        """Test non-existent directories are skipped."""
        watcher = FileWatcher("test")
        try:
            assert watcher.add(str(temp_dir / "missing")) is False
            assert watcher.watched == ()
        finally:
            watcher.close()

    def test_closed_watcher(self, temp_dir):
        """Test a closed watcher accepts no directories and closes twice."""
        watcher = FileWatcher("test")
        watcher.close()
        assert watcher.add(str(temp_dir)) is False
        watcher.close()


@pytest.mark.slow
class TestStoreReload:
    """Tests for reloads triggered by external writers."""

    @pytest.mark.asyncio
    async def test_lease_file_change_reloads(self, temp_dir):
        """Test an external lease file write becomes visible."""
        lease_file = temp_dir / "dnsmasq.leases"
        manager = LeaseManager(str(lease_file))
        task = await run_watching(manager)
        try:
            expiry = int(time.time()) + 3600
            lease_file.write_text(f"{expiry} {MAC} 192.168.1.100 external\n")

            assert await wait_for(lambda: manager.get_lease(MAC) is not None)
            assert manager.get_lease(MAC).hostname == "external"
        finally:
            await stop(task)
            manager.close()

    @pytest.mark.asyncio
    async def test_lease_file_replace_reloads(self, temp_dir):
        """Test a write-then-rename replacement is picked up."""
        lease_file = temp_dir / "dnsmasq.leases"
        manager = LeaseManager(str(lease_file))
        task = await run_watching(manager)
        try:
            expiry = int(time.time()) + 3600
            staged = temp_dir / "staged"
            staged.write_text(f"{expiry} {MAC} 192.168.1.100 renamed\n")
            os.replace(staged, lease_file)

            assert await wait_for(lambda: manager.get_lease(MAC) is not None)
        finally:
            await stop(task)
            manager.close()

    @pytest.mark.asyncio
    async def test_host_file_change_reloads(self, temp_dir):
        """Test new host and option files become visible."""
        (temp_dir / "hosts").mkdir()
        (temp_dir / "opts").mkdir()
        manager = ConfigManager(str(temp_dir))
        task = await run_watching(manager)
        try:
            (temp_dir / "opts" / "ironic-node-1.conf").write_text("tag:node-1,66,10.0.0.1\n")
            (temp_dir / "hosts" / f"ironic-{MAC}.conf").write_text(
                f"{MAC},set:node-1,set:ironic\n"
            )

            assert await wait_for(lambda: len(manager.get_options(MAC)) == 1)
            assert manager.is_netboot_enabled(MAC)
        finally:
            await stop(task)
            manager.close()

    @pytest.mark.asyncio
    async def test_own_save_keeps_state(self, temp_dir):
        """Test reloads triggered by the store's own writes keep its data."""
        manager = ConfigManager(str(temp_dir))
        task = await run_watching(manager)
        try:
            manager.add_netboot_options(MAC, "192.168.1.1", "192.168.1.1")
            manager.save_config()
            await asyncio.sleep(0.5)

            assert manager.is_netboot_enabled(MAC)
            assert len(manager.get_options(MAC)) == 7
        finally:
            await stop(task)
            manager.close()

    @pytest.mark.asyncio
    async def test_backend_start_runs_both_watchers(self, make_backend, temp_dir):
        """Test the backend reloads both stores until it is cancelled."""
        backend = make_backend()
        (temp_dir / "hosts").mkdir(exist_ok=True)
        (temp_dir / "opts").mkdir(exist_ok=True)
        backend.config_manager.watcher.add(str(temp_dir / "hosts"))
        backend.config_manager.watcher.add(str(temp_dir / "opts"))
        task = await run_watching(backend)
        try:
            expiry = int(time.time()) + 3600
            (temp_dir / "dnsmasq.leases").write_text(f"{expiry} {MAC} 192.168.1.100 external\n")
            (temp_dir / "opts" / "ironic-node-1.conf").write_text("tag:node-1,66,10.0.0.1\n")
            (temp_dir / "hosts" / f"ironic-{MAC}.conf").write_text(
                f"{MAC},set:node-1,set:ironic\n"
            )

            assert await wait_for(lambda: backend.lease_manager.get_lease(MAC) is not None)
            assert await wait_for(lambda: backend.config_manager.is_netboot_enabled(MAC))
        finally:
            await stop(task)

        assert task.cancelled()

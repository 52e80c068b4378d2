"""Unit tests for crash-safe file replacement."""

import pytest

from netboot_backend.dnsmasq.files import atomic_write, ensure_dir
from netboot_backend.errors import StorageError


class TestAtomicWrite:
    """Tests for tmp-file-and-rename writes."""

    def test_write_replaces_file(self, temp_dir):
        """Test the new content replaces the old and no tmp file remains."""
        path = temp_dir / "leases"
        path.write_text("old\n")

        atomic_write(str(path), ["first", "second"])

        assert path.read_text() == "first\nsecond\n"
        assert not (temp_dir / "leases.tmp").exists()

    def test_failed_replace_removes_tmp(self, temp_dir):
        """Test a failed rename leaves neither tmp file nor partial target."""
        target = temp_dir / "target"
        target.mkdir()
        (target / "occupied").write_text("")

        with pytest.raises(StorageError):
            atomic_write(str(target), ["line"])

        assert not (temp_dir / "target.tmp").exists()
        assert target.is_dir()

    def test_failed_write_raises_storage_error(self, temp_dir):
        """Test an unwritable tmp path raises StorageError."""
        with pytest.raises(StorageError):
            atomic_write(str(temp_dir / "missing" / "leases"), ["line"])


class TestEnsureDir:
    """Tests for directory creation."""

    def test_creates_once(self, temp_dir):
        """Test the directory is created only when missing."""
        path = temp_dir / "hosts"
        assert ensure_dir(str(path)) is True
        assert ensure_dir(str(path)) is False

    def test_file_in_the_way(self, temp_dir):
        """Test a file at the path raises StorageError."""
        path = temp_dir / "hosts"
        path.write_text("")
        with pytest.raises(StorageError):
            ensure_dir(str(path))

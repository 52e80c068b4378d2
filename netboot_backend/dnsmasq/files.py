"""
Crash-safe file replacement shared by the lease and config stores.
"""

import contextlib
import os
from typing import Iterable

from netboot_backend.errors import StorageError

TMP_SUFFIX = ".tmp"


def atomic_write(path: str, lines: Iterable[str]) -> None:
    """
    Replace ``path`` with ``lines`` via ``<path>.tmp`` and rename.

    Readers see either the old file or the complete new one.
    """
    tmp_path = path + TMP_SUFFIX
    try:
        with open(tmp_path, "w", encoding="utf-8") as f:
            for line in lines:
                f.write(line)
                f.write("\n")
            f.flush()
            os.fsync(f.fileno())
    except OSError as e:
        _discard(tmp_path)
        raise StorageError(f"failed to write temporary file {tmp_path}: {e}") from e

    try:
        os.replace(tmp_path, path)
    except OSError as e:
        _discard(tmp_path)
        raise StorageError(f"failed to replace {path}: {e}") from e


def _discard(tmp_path: str) -> None:
    # The original error is the one reported
    with contextlib.suppress(OSError):
        os.remove(tmp_path)


def ensure_dir(path: str) -> bool:
    """Create ``path`` if missing. Returns True if it was created."""
    if os.path.isdir(path):
        return False
    try:
        os.makedirs(path, mode=0o755, exist_ok=True)
    except OSError as e:
        raise StorageError(f"failed to create directory {path}: {e}") from e
    return True


def read_lines(path: str) -> list[str]:
    """Return stripped lines of ``path``. Raises FileNotFoundError if missing."""
    with open(path, "r", encoding="utf-8", errors="replace") as f:
        return [line.strip() for line in f]

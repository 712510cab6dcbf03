"""
File system helpers for phaseflow.

This module provides the small set of safe file operations used by the
local execution environment and the data directory:
- Directory creation (mkdir -p)
- Atomic writes (temp file in the same directory, then rename)
- Bounded binary reads
- Recursive directory removal
"""

from __future__ import annotations

import os
import shutil
import tempfile
from pathlib import Path


class FileSystemError(Exception):
    """Raised when a file system operation fails."""
    pass


def ensure_dir(path: str | Path) -> Path:
    """
    Create a directory and its parents if missing.

    Raises:
        FileSystemError: If directory creation fails.
    """
    path = Path(path)
    try:
        path.mkdir(parents=True, exist_ok=True)
        return path
    except OSError as e:
        raise FileSystemError(f"Failed to create directory {path}: {e}")


def safe_write(path: str | Path, content: str | bytes) -> int:
    """
    Write text or bytes to a file atomically.

    Args:
        path: Destination file.
        content: Text (encoded as utf-8) or raw bytes.

    Returns:
        Number of bytes written.

    Raises:
        FileSystemError: If the write fails.
    """
    path = Path(path)
    data = content.encode("utf-8") if isinstance(content, str) else content
    ensure_dir(path.parent)

    try:
        fd, temp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            shutil.move(temp_path, path)
        except Exception:
            try:
                os.unlink(temp_path)
            except OSError:
                pass
            raise
    except OSError as e:
        raise FileSystemError(f"Failed to write file {path}: {e}")
    return len(data)


def read_bytes(path: str | Path) -> bytes:
    """
    Read a file's binary contents.

    Raises:
        FileSystemError: If the path is missing, not a file, or unreadable.
    """
    path = Path(path)
    if not path.exists():
        raise FileSystemError(f"File not found: {path}")
    if not path.is_file():
        raise FileSystemError(f"Not a file: {path}")
    try:
        return path.read_bytes()
    except OSError as e:
        raise FileSystemError(f"Failed to read file {path}: {e}")


def remove_dir(path: str | Path) -> bool:
    """
    Remove a directory tree.

    Returns:
        True if the directory was removed, False if it did not exist.

    Raises:
        FileSystemError: If removal fails.
    """
    path = Path(path)
    if not path.exists():
        return False
    if not path.is_dir():
        raise FileSystemError(f"Not a directory: {path}")
    try:
        shutil.rmtree(path)
        return True
    except OSError as e:
        raise FileSystemError(f"Failed to remove directory {path}: {e}")

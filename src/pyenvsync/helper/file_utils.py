from __future__ import annotations

import os
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from filelock import FileLock, Timeout

LOCK_SUFFIX = ".lock"


def lock_path_for(path: Path) -> Path:
    """
    Returns the advisory lock file guarding `path`: the sibling
    `<name>.lock`, whether `path` is a file, a directory, or not created yet.
    """
    return path.with_name(path.name + LOCK_SUFFIX)


@contextmanager
def exclusive_lock(path: Path, *, timeout: float = -1) -> Iterator[FileLock]:
    """
    Holds an exclusive advisory lock on `path` for the duration of the block.

    The lock is released on every exit path, including exceptions.

    Args:
        path (Path): The file or directory being protected.
        timeout (float): Seconds to wait for the lock. A negative value waits
            forever, zero fails immediately when the lock is held.

    Yields:
        FileLock: The acquired lock.

    Raises:
        filelock.Timeout: If the lock cannot be acquired within `timeout`.
    """
    target = lock_path_for(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    lock = FileLock(str(target), timeout=timeout)
    with lock:
        yield lock


def atomic_write_bytes(path: Path, data: bytes) -> None:
    """
    Writes `data` to `path` so that readers see either the old or new file.

    The content goes to a temporary file in the same directory, is flushed
    and fsynced, then renamed over the destination with `os.replace`. A crash
    at any point leaves the previous file intact.

    Args:
        path (Path): The destination file.
        data (bytes): The full new content.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def atomic_write_text(path: Path, text: str) -> None:
    atomic_write_bytes(path, text.encode("utf-8"))


__all__ = [
    "Timeout",
    "atomic_write_bytes",
    "atomic_write_text",
    "exclusive_lock",
    "lock_path_for",
]

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from pyenvsync.engine.audit.audit_event_model import AuditEvent, EventType, StageType, audit, record
from pyenvsync.engine.lock.lockfile_codec import deserialize, serialize
from pyenvsync.errors import LockfileError, ResolutionInProgressError
from pyenvsync.helper.file_utils import Timeout, atomic_write_bytes, exclusive_lock
from pyenvsync.model.lock.solution_model import Lockfile


@dataclass(frozen=True, slots=True)
class LoadedLockfile:
    lockfile: Lockfile
    stale: bool


class LockfileStore:
    """
    Reads and writes one lockfile path.

    Writers hold an exclusive lock on `<lockfile>.lock` and replace the file
    atomically, so a reader sees either the previous lockfile or the new
    one. A second writer waits up to `timeout` seconds and then fails with
    `ResolutionInProgressError`.
    """

    def __init__(self, path: Path, *, timeout: float = 10.0):
        self.path = Path(path)
        self.timeout = timeout

    def exists(self) -> bool:
        return self.path.is_file()

    @audit(StageType.LOCK, "load")
    def load(self, current_hash: str | None = None) -> LoadedLockfile:
        """
        Args:
            current_hash (str | None): The requirement hash of the current
                inputs. When given and different from the stored one, the
                result is flagged stale.

        Returns:
            LoadedLockfile: The lockfile and its staleness.

        Raises:
            LockfileError: If the lockfile is missing or corrupt.
        """
        try:
            data = self.path.read_bytes()
        except FileNotFoundError:
            raise LockfileError(f"lockfile {self.path} does not exist") from None
        except OSError as e:
            raise LockfileError(f"cannot read lockfile {self.path}: {e}") from e

        lockfile = deserialize(data)
        stale = current_hash is not None and lockfile.requirement_hash != current_hash
        record(AuditEvent.make(
            StageType.LOCK,
            EventType.INPUT,
            substage="load",
            message=f"Loaded {self.path.name}" + (" (stale)" if stale else ""),
            payload={"path": self.path.as_posix(), "stale": stale, "packages": len(lockfile.solution.packages)}))
        return LoadedLockfile(lockfile, stale)

    @audit(StageType.LOCK, "write")
    def write(self, lockfile: Lockfile) -> Path:
        """
        Raises:
            ResolutionInProgressError: If another writer holds the lock past
                the timeout.
        """
        data = serialize(lockfile)
        try:
            with exclusive_lock(self.path, timeout=self.timeout):
                atomic_write_bytes(self.path, data)
        except Timeout as e:
            raise ResolutionInProgressError(
                f"another process is writing {self.path}; gave up after {self.timeout}s") from e
        record(AuditEvent.make(
            StageType.LOCK,
            EventType.OUTPUT,
            substage="write",
            message=f"Wrote {self.path.name}",
            payload={"path": self.path.as_posix(), "bytes": len(data)}))
        return self.path

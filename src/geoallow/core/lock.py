"""Single-instance run lock.

Applies and restores mutate global policy state (the fail-open window),
so at most one pipeline may run at a time. A second invocation that finds
the lock held fails immediately instead of queueing behind the first.
"""

import fcntl
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from geoallow.core.exceptions import LockError


@contextmanager
def exclusive_lock(path: Path) -> Generator[Path, None, None]:
    """Hold a non-blocking exclusive flock on path for the block's duration.

    The holder's PID is written into the file for diagnostics. The lock is
    released on every exit path, including exceptions.

    Args:
        path: Lock file path (created if missing)

    Raises:
        LockError: If another process holds the lock
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o644)
    try:
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            holder = _read_holder(fd)
            raise LockError(
                f"Another geoallow run is in progress (lock: {path})",
                hint="Wait for it to finish; runs are never queued",
                details=[f"Lock holder PID: {holder}"] if holder else None,
            )

        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode())
        try:
            yield path
        finally:
            os.ftruncate(fd, 0)
            fcntl.flock(fd, fcntl.LOCK_UN)
    finally:
        os.close(fd)


def _read_holder(fd: int) -> str:
    try:
        os.lseek(fd, 0, os.SEEK_SET)
        return os.read(fd, 32).decode(errors="replace").strip()
    except OSError:
        return ""

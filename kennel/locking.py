"""File locking utilities using fcntl.flock.

All cross-process mutations of kennel state (mailboxes, dog state files, run
history) go through file_lock() so that each storage call is bounded by a
timeout instead of blocking forever on a wedged peer.
"""

import fcntl
import os
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from .errors import LockTimeout, StorageError

DEFAULT_LOCK_TIMEOUT = 10.0  # seconds

# How long to sleep between non-blocking attempts
_POLL_INTERVAL = 0.05


def _open_lock_file(path: Path) -> int:
    path.parent.mkdir(parents=True, exist_ok=True)
    return os.open(str(path), os.O_RDWR | os.O_CREAT, 0o644)


@contextmanager
def file_lock(
    path: Path | str,
    *,
    shared: bool = False,
    timeout: float | None = DEFAULT_LOCK_TIMEOUT,
) -> Generator[None, None, None]:
    """Hold an flock on ``path`` for the duration of the block.

    Args:
        path: Path to the lock file (created if missing)
        shared: Take a shared (reader) lock instead of an exclusive one
        timeout: Seconds to keep retrying; None blocks indefinitely

    Raises:
        LockTimeout: If the lock is not acquired before the deadline
        StorageError: If the lock file cannot be opened or locked
    """
    path = Path(path)
    try:
        fd = _open_lock_file(path)
    except OSError as e:
        raise StorageError(f"cannot open lock {path}: {e}", path=path) from e
    mode = fcntl.LOCK_SH if shared else fcntl.LOCK_EX

    try:
        if timeout is None:
            fcntl.flock(fd, mode)
        else:
            deadline = time.monotonic() + timeout
            while True:
                try:
                    fcntl.flock(fd, mode | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() >= deadline:
                        raise LockTimeout(
                            f"timed out after {timeout:.1f}s waiting for lock {path}",
                            path=path,
                        )
                    time.sleep(_POLL_INTERVAL)
    except OSError as e:
        os.close(fd)
        raise StorageError(f"cannot lock {path}: {e}", path=path) from e
    except BaseException:
        os.close(fd)
        raise

    try:
        yield
    finally:
        try:
            fcntl.flock(fd, fcntl.LOCK_UN)
        except OSError:
            pass
        os.close(fd)


@contextmanager
def try_lock(path: Path | str) -> Generator[bool, None, None]:
    """Non-blocking exclusive lock.

    Yields:
        True if the lock was acquired, False if another process holds it

    Example:
        with try_lock(scheduler_lock_path) as acquired:
            if not acquired:
                return  # another scheduler is mid-cycle
    """
    fd = _open_lock_file(Path(path))
    try:
        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        acquired = True
    except OSError:
        acquired = False

    try:
        yield acquired
    finally:
        if acquired:
            try:
                fcntl.flock(fd, fcntl.LOCK_UN)
            except OSError:
                pass
        os.close(fd)

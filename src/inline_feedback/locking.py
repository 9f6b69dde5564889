"""Lock-file mutual exclusion for the shared feedback store.

The lock is a marker file created with O_CREAT | O_EXCL, which is atomic on
local filesystems for every platform we run on. Whoever creates the file owns
the lock; releasing it deletes the file. A lock whose modification time is
older than ``stale_after`` is assumed to belong to a crashed process and is
removed by the next contender. Releasing only deletes the file if it is still
the one this holder created, so a holder that outlived its stale limit never
deletes the lock of whoever took over.
"""

import contextlib
import json
import os
import time
from collections.abc import Callable, Generator
from pathlib import Path

from inline_feedback.logging import get_logger
from inline_feedback.models import utc_now_iso

ReleaseLock = Callable[[], None]


class LockTimeout(Exception):  # noqa: N818
    """Raised when the store lock cannot be acquired within the timeout."""

    pass


def acquire_lock(
    path: Path,
    timeout: float = 5.0,
    retry_interval: float = 0.025,
    stale_after: float = 30.0,
) -> ReleaseLock:
    """
    Create the lock file, waiting for other holders to release it.

    Args:
        path: Path of the lock marker file
        timeout: Maximum seconds to wait for the lock (default 5.0)
        retry_interval: Seconds to sleep between attempts (default 0.025)
        stale_after: Lock age in seconds after which it is removed (default 30.0)

    Returns:
        Callable that releases the lock. Safe to call once.

    Raises:
        LockTimeout: If the lock cannot be acquired within timeout
        OSError: If the lock file cannot be created for reasons other than contention
    """
    # Ensure parent directory exists (for lock file creation)
    path.parent.mkdir(parents=True, exist_ok=True)

    start_time = time.monotonic()

    while True:
        try:
            fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            if _remove_if_stale(path, stale_after):
                continue

            elapsed = time.monotonic() - start_time
            if elapsed >= timeout:
                raise LockTimeout(
                    f"Timed out waiting for feedback store lock after {timeout:.1f} seconds "
                    f"({path}). Another process is writing; try again."
                )
            time.sleep(retry_interval)
            continue

        _write_lock_metadata(fd)
        return _make_release(fd, path)


def _write_lock_metadata(fd: int) -> None:
    """Record the holder's pid for humans inspecting a stuck lock."""
    payload = json.dumps({"pid": os.getpid(), "createdAt": utc_now_iso()}) + "\n"
    try:
        os.write(fd, payload.encode("utf-8"))
    except OSError as e:
        # The file's existence is the lock; its content is informational
        get_logger().debug("Could not write lock metadata", error=str(e))


def _remove_if_stale(path: Path, stale_after: float) -> bool:
    """Delete the lock file if it is older than stale_after seconds.

    Returns:
        True if the caller should retry immediately (lock removed or vanished)
    """
    try:
        age = time.time() - path.stat().st_mtime
    except FileNotFoundError:
        # Released between our create attempt and the stat
        return True

    if age <= stale_after:
        return False

    try:
        path.unlink()
    except FileNotFoundError:
        # Another contender removed it first
        return True

    get_logger().warning(
        f"Removed stale feedback store lock {path} (held for {age:.0f}s, limit {stale_after:.0f}s)"
    )
    return True


def _make_release(fd: int, path: Path) -> ReleaseLock:
    owned = os.fstat(fd)
    released = False

    def release() -> None:
        nonlocal released
        if released:
            return
        released = True
        try:
            # While fd is open its inode cannot be reused, so a match means the file is ours
            current = path.stat()
            if (current.st_dev, current.st_ino) == (owned.st_dev, owned.st_ino):
                path.unlink()
            else:
                get_logger().warning(
                    f"Feedback store lock {path} was taken over as stale; leaving it in place"
                )
        except FileNotFoundError:
            # A contender judged our lock stale and nobody holds it now
            pass
        finally:
            try:
                os.close(fd)
            except OSError:
                pass

    return release


@contextlib.contextmanager
def store_lock(
    path: Path,
    timeout: float = 5.0,
    retry_interval: float = 0.025,
    stale_after: float = 30.0,
) -> Generator[None, None, None]:
    """
    Hold the lock file for the duration of the block.

    Example:
        >>> with store_lock(lock_path(project_root)):
        ...     write_locked(project_root, store)
    """
    release = acquire_lock(
        path, timeout=timeout, retry_interval=retry_interval, stale_after=stale_after
    )
    try:
        yield
    finally:
        release()

from __future__ import annotations

import errno
import fcntl
import logging
import os
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from codex_rotator.core.errors import LockTimeoutError, StorageError
from codex_rotator.core.utils.retry import backoff_seconds

logger = logging.getLogger(__name__)

LOCK_SUFFIX = ".lock"


def lock_path_for(path: Path) -> Path:
    return path.with_name(path.name + LOCK_SUFFIX)


@contextmanager
def file_lock(
    path: Path,
    *,
    timeout_seconds: float = 10.0,
    retry_interval_seconds: float = 0.05,
) -> Iterator[None]:
    """Hold an exclusive cross-process lock on the sibling ``<path>.lock`` file.

    The lock file never carries document data. Separate ``open()`` calls get separate
    ``flock`` ownership, so two threads of one process serialize exactly like two processes.
    """
    target = lock_path_for(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    try:
        fd = os.open(target, os.O_RDWR | os.O_CREAT, 0o600)
    except OSError as exc:
        raise StorageError(f"failed to open lock file {target}: {exc}") from exc

    try:
        deadline = time.monotonic() + timeout_seconds
        attempt = 0
        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except OSError as exc:
                if exc.errno not in (errno.EAGAIN, errno.EACCES, errno.EWOULDBLOCK):
                    raise StorageError(f"failed to lock {target}: {exc}") from exc
                if time.monotonic() >= deadline:
                    logger.warning("Lock wait exceeded path=%s timeout_seconds=%s", target, timeout_seconds)
                    raise LockTimeoutError(f"timed out after {timeout_seconds:.1f}s waiting for lock {target}")
                time.sleep(backoff_seconds(attempt, base=retry_interval_seconds, cap=retry_interval_seconds * 4))
                attempt += 1
        try:
            yield
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
    finally:
        os.close(fd)

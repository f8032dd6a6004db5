from __future__ import annotations

import fcntl
import logging
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from .errors import LockHeldError, PreconditionError

logger = logging.getLogger(__name__)


@contextmanager
def exclusive_lock(path: str) -> Iterator[None]:
    """Hold an exclusive, non-blocking flock on path for the duration of the block.

    The kernel drops the lock when the process exits, so a crashed run never
    leaves a stale lock behind.
    """

    p = Path(path)
    try:
        p.parent.mkdir(parents=True, exist_ok=True)
        handle = p.open("a+", encoding="utf-8")
    except OSError as e:
        raise PreconditionError(f"Cannot open lock file {path} ({e.strerror}); run the installer as root") from e
    try:
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as e:
            raise LockHeldError(f"Another installer run holds {path}; wait for it to finish") from e
        handle.seek(0)
        handle.truncate()
        handle.write(f"{os.getpid()}\n")
        handle.flush()
        logger.debug("Acquired lock %s", path)
        try:
            yield
        finally:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
    finally:
        handle.close()

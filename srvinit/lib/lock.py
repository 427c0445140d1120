import fcntl
import logging
import os
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from srvinit.lib.errors import SchedulerRaceDetected

LOG = logging.getLogger(__name__)

LOCK_NAME = '.srvinit.lock'
POLL_INTERVAL = 0.2


@contextmanager
def directory_lock(directory: Path, timeout: float = 60) -> Iterator[Path]:
    """Hold an exclusive advisory lock on directory for the duration of the block.

    Raises SchedulerRaceDetected if another process keeps the lock past timeout.
    """
    directory.mkdir(parents=True, exist_ok=True)
    lock_path = directory / LOCK_NAME
    fd = os.open(lock_path, os.O_RDWR | os.O_CREAT, 0o600)
    deadline = time.monotonic() + timeout
    try:
        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError:
                if time.monotonic() >= deadline:
                    raise SchedulerRaceDetected(
                        f"{lock_path} is held by another process (waited {timeout:g}s)"
                    ) from None
                time.sleep(POLL_INTERVAL)

        LOG.debug("acquired %s", lock_path)
        try:
            yield lock_path
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
            LOG.debug("released %s", lock_path)
    finally:
        os.close(fd)

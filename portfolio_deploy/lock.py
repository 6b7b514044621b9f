import fcntl
import os
from pathlib import Path

from .errors import DeploymentInProgress
from .logger import get_logger


class DeployLock:
    """Non-blocking exclusive lock held for the duration of one deploy or rollback"""

    def __init__(self, path):
        self.path = Path(path)
        self._fd = None
        self.logger = get_logger("lock")

    @property
    def held(self):
        return self._fd is not None

    def acquire(self):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            os.close(fd)
            owner = self.path.read_text().strip() or "unknown"
            raise DeploymentInProgress(f"deployment already in progress (pid {owner})")
        os.ftruncate(fd, 0)
        os.write(fd, str(os.getpid()).encode())
        self._fd = fd
        self.logger.debug(f"Acquired deploy lock {self.path}")

    def release(self):
        if self._fd is None:
            return
        fcntl.flock(self._fd, fcntl.LOCK_UN)
        os.close(self._fd)
        self._fd = None
        self.logger.debug("Deploy lock released")

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False

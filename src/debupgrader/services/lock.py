"""Single-instance guard based on an advisory file lock."""

import fcntl
import os
import time
from typing import Optional

from debupgrader.constants import EXIT_LOCK_FAILED
from debupgrader.errors import UpgraderError
from debupgrader.errors_catalog import actionable_error


class ProcessLock:
    """Exclusive flock on a well-known path, held for the whole run."""

    POLL_INTERVAL = 0.2

    def __init__(self, registry, logger):
        self.registry = registry
        self.logger = logger
        self.path: Optional[str] = None
        self.fd: Optional[int] = None
        self.was_acquired = False

    def acquire(self, path: str, timeout: float):
        self.logger.debug("Acquiring lock: %s", path)
        try:
            os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
            fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o644)
        except OSError as exc:
            raise UpgraderError(
                f"Cannot open lock file {path}: {exc}", exit_code=EXIT_LOCK_FAILED
            ) from exc

        deadline = time.monotonic() + max(0.0, timeout)
        try:
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() >= deadline:
                        raise UpgraderError(
                            actionable_error("lock_timeout", path=path, timeout=f"{timeout:g}"),
                            exit_code=EXIT_LOCK_FAILED,
                        )
                    time.sleep(self.POLL_INTERVAL)

            os.ftruncate(fd, 0)
            os.write(fd, f"{os.getpid()}\n".encode("ascii"))
            os.fsync(fd)
        except OSError as exc:
            os.close(fd)
            raise UpgraderError(f"Cannot lock {path}: {exc}", exit_code=EXIT_LOCK_FAILED) from exc
        except BaseException:
            os.close(fd)
            raise

        self.fd = fd
        self.path = path
        self.was_acquired = True
        self.logger.debug("Lock acquired (PID: %s)", os.getpid())
        self.registry.register_cleanup("release_lock", self.release)

    def release(self):
        if self.fd is None:
            return
        try:
            fcntl.flock(self.fd, fcntl.LOCK_UN)
        finally:
            os.close(self.fd)
            self.fd = None
        self.logger.debug("Lock released")

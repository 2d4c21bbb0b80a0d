"""Cleanup/rollback registry and the run finalizer."""

import os
import secrets
import shutil
import signal
import tempfile
from typing import Callable, Dict, List, Optional, Tuple

import psutil

from debupgrader.constants import CHILD_GRACE_SECONDS
from debupgrader.errors import UpgraderError
from debupgrader.errors_catalog import actionable_error
from debupgrader.models import Termination


class CleanupRegistry:
    """Ordered ledger of cleanup actions and reversible file mutations."""

    def __init__(self, logger):
        self.logger = logger
        self.actions: List[Tuple[str, Callable[[], None]]] = []
        self.created_files: Dict[str, None] = {}
        self.modified_files: Dict[str, str] = {}

    def register_cleanup(self, name: str, action: Callable[[], None]):
        self.actions.append((name, action))
        self.logger.debug("Registered cleanup action: %s", name)

    def register_created_file(self, path: str):
        self.created_files[path] = None
        self.logger.debug("Registered created file: %s", path)

    def register_modified_file(self, path: str, backup: str):
        self.modified_files[path] = backup
        self.logger.debug("Registered modified file: %s (backup: %s)", path, backup)

    def backup_file(self, path: str) -> Optional[str]:
        if not os.path.isfile(path):
            return None

        backup = f"{path}.bak.{secrets.randbits(32)}"
        try:
            shutil.copy2(path, backup)
        except OSError as exc:
            raise UpgraderError(f"Could not back up {path}: {exc}") from exc
        self.register_modified_file(path, backup)
        return backup

    def atomic_write(self, path: str, content: str):
        """Writes content through a sibling temp file and records the change."""
        parent = os.path.dirname(path) or "."
        os.makedirs(parent, exist_ok=True)

        if os.path.exists(path):
            if path not in self.modified_files and path not in self.created_files:
                self.backup_file(path)
        else:
            self.register_created_file(path)

        fd, temp_path = tempfile.mkstemp(prefix=f".{os.path.basename(path)}.tmp.", dir=parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as file_obj:
                file_obj.write(content)
            os.replace(temp_path, path)
        except OSError as exc:
            raise UpgraderError(f"Could not write {path}: {exc}") from exc
        finally:
            if os.path.exists(temp_path):
                try:
                    os.remove(temp_path)
                except OSError:
                    pass

    def run_actions(self):
        while self.actions:
            name, action = self.actions.pop()
            self.logger.debug("Executing cleanup action: %s", name)
            try:
                action()
            except Exception as exc:
                self.logger.warning("Cleanup action '%s' failed: %s", name, exc)

    def rollback(self):
        for path in list(self.created_files):
            if os.path.isfile(path):
                self.logger.debug("Removing created file: %s", path)
                try:
                    os.remove(path)
                except OSError as exc:
                    self.logger.warning("Could not remove %s: %s", path, exc)

        for path, backup in self.modified_files.items():
            if not os.path.isfile(backup):
                self.logger.warning("Backup %s for %s is missing; cannot restore", backup, path)
                continue
            self.logger.debug("Restoring %s from %s", path, backup)
            try:
                os.replace(backup, path)
            except OSError as exc:
                self.logger.warning("Could not restore %s: %s", path, exc)

        self.created_files.clear()
        self.modified_files.clear()

    def discard_backups(self):
        for backup in self.modified_files.values():
            if os.path.exists(backup):
                try:
                    os.remove(backup)
                    self.logger.debug("Removed backup: %s", backup)
                except OSError as exc:
                    self.logger.warning("Could not remove backup %s: %s", backup, exc)
        self.modified_files.clear()

    def commit(self):
        """Accepts every pending mutation; nothing recorded so far will be rolled back."""
        self.discard_backups()
        self.created_files.clear()


def terminate_children(logger, grace_seconds: float = CHILD_GRACE_SECONDS):
    try:
        children = psutil.Process().children(recursive=True)
    except psutil.Error as exc:
        logger.debug("Could not list child processes: %s", exc)
        return

    if not children:
        return

    logger.debug("Terminating %s child process(es)", len(children))
    for child in children:
        try:
            child.terminate()
        except psutil.NoSuchProcess:
            continue
        except psutil.Error as exc:
            logger.debug("Could not terminate PID %s: %s", child.pid, exc)

    _, alive = psutil.wait_procs(children, timeout=grace_seconds)
    for child in alive:
        try:
            child.kill()
        except psutil.Error:
            continue


class Finalizer:
    """Single exit-path handler: cleanup actions, rollback and final status."""

    def __init__(
        self,
        config,
        registry: CleanupRegistry,
        dispatcher,
        package_manager,
        lock,
        logger,
        reaper: Optional[Callable] = None,
    ):
        self.config = config
        self.registry = registry
        self.dispatcher = dispatcher
        self.package_manager = package_manager
        self.lock = lock
        self.logger = logger
        self.reaper = reaper or terminate_children
        self.in_progress = False
        self.completed = False

    def finalize(self, termination: Termination) -> int:
        if self.in_progress:
            return termination.exit_code
        self.in_progress = True

        exit_code = termination.exit_code
        previous_mask = self._mask_signals()
        try:
            self.dispatcher.enter_cleanup()
            self.logger.debug(
                "Cleanup triggered (exit_code=%s, signal=%s)",
                exit_code,
                termination.signal_name or "none",
            )

            self._guard("Child process termination", lambda: self.reaper(self.logger))

            if termination.signal_name:
                self.logger.info("Cleaning up after SIG%s...", termination.signal_name)

            self._guard("Cleanup actions", self.registry.run_actions)

            if termination.failed:
                self.logger.info("Rolling back changes...")
                self._guard("Rollback", self.registry.rollback)
                self._guard("Package database recovery", self._recover_package_database)
            else:
                self._guard("Backup removal", self.registry.discard_backups)

            self._guard("Status report", lambda: self._report(termination))
        finally:
            self._restore_mask(previous_mask)
            self.completed = True

        return exit_code

    def _guard(self, description: str, func: Callable[[], None]):
        try:
            func()
        except Exception as exc:
            self.logger.warning("%s failed during cleanup: %s", description, exc)

    def _recover_package_database(self):
        if self.config.dry_run:
            self.logger.debug("Dry run: skipping package database recovery")
            return
        if not getattr(self.lock, "was_acquired", False):
            self.logger.debug("Instance lock was never held: skipping package database recovery")
            return
        if not self.package_manager.is_available():
            return

        self.logger.debug("Attempting dpkg recovery...")
        self.package_manager.configure_pending()

        if not self.package_manager.can_check_locks():
            self.logger.warning(
                "fuser not found (psmisc not installed): skipping lock cleanup for safety"
            )
        elif self.package_manager.locks_in_use():
            self.logger.warning("Another apt process holds locks: skipping lock cleanup")
        else:
            self.package_manager.clear_stale_locks()

    def _report(self, termination: Termination):
        if not termination.failed:
            return

        self.logger.error("Run failed with exit code: %s", termination.exit_code)
        if termination.signal_name:
            self.logger.error("Terminated by: SIG%s", termination.signal_name)
        elif termination.phase:
            self.logger.error(
                actionable_error(
                    "phase_failed", phase=termination.phase, log_file=self.config.paths.log_file
                )
            )
            return
        self.logger.info("Log file: %s", self.config.paths.log_file)

    def _mask_signals(self):
        if not hasattr(signal, "pthread_sigmask"):
            return None
        graceful = self.dispatcher.graceful_signal_numbers()
        if not graceful:
            return None
        try:
            return signal.pthread_sigmask(signal.SIG_BLOCK, graceful)
        except (OSError, ValueError) as exc:
            self.logger.debug("Could not mask signals during cleanup: %s", exc)
            return None

    def _restore_mask(self, previous_mask):
        if previous_mask is None:
            return
        try:
            signal.pthread_sigmask(signal.SIG_SETMASK, previous_mask)
        except (OSError, ValueError) as exc:
            self.logger.debug("Could not restore signal mask: %s", exc)

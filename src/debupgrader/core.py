import logging
import os
import uuid
from typing import Any, Dict, List, Optional

import requests
from rich.console import Console

from . import __version__
from .constants import (
    EXIT_ALREADY_UPGRADED,
    EXIT_GENERAL_ERROR,
    EXIT_SUCCESS,
    EXIT_VALIDATION_FAILED,
    SOURCE_CODENAME,
    SOURCE_VERSION,
    TARGET_CODENAME,
    TARGET_VERSION,
)
from .errors import AlreadyUpgraded, CommandError, TerminationRequested, UpgraderError
from .errors_catalog import actionable_error
from .models import RunConfiguration, Termination
from .services.cleanup import CleanupRegistry, Finalizer
from .services.command_runner import CommandRunner
from .services.lock import ProcessLock
from .services.manifest import ManifestService
from .services.package_manager import AptPackageManager
from .services.preflight import PreflightService
from .services.reporter import THEME, Reporter
from .services.signals import SignalDispatcher
from .services.snapshot import SnapshotService
from .services.sources import SourcesService
from .services.state import FileMarkerStore, MarkerStore, Phase, PhaseRunner
from .services.system import SystemService

console = Console(theme=THEME)
logger = logging.getLogger("debupgrader")


class DebianUpgrader:
    """Runs the bookworm to trixie upgrade as a sequence of resumable phases."""

    def __init__(
        self,
        config: RunConfiguration,
        package_manager=None,
        system=None,
        requests_module=requests,
        marker_store: Optional[MarkerStore] = None,
    ):
        self.config = config
        self.paths = config.paths
        self.run_id = uuid.uuid4().hex[:10]
        self.manifest_file = os.path.join(self.paths.state_dir, "run-manifest.json")
        self.manifest_started = False

        self.command_runner = CommandRunner(
            logger=logger,
            dry_run=config.dry_run,
            trace_commands=config.trace_commands,
            xtrace=config.xtrace,
        )
        self.reporter = Reporter(logger=logger, console=console)
        self.registry = CleanupRegistry(logger=logger)
        self.signal_dispatcher = SignalDispatcher(config=config, logger=logger)
        self.package_manager = package_manager or AptPackageManager(
            runner=self.command_runner,
            logger=logger,
            paths=self.paths,
        )
        self.system = system or SystemService(runner=self.command_runner, logger=logger)
        self.sources_service = SourcesService(
            registry=self.registry,
            logger=logger,
            paths=self.paths,
            dry_run=config.dry_run,
        )
        self.snapshot_service = SnapshotService(
            package_manager=self.package_manager,
            registry=self.registry,
            logger=logger,
            paths=self.paths,
            dry_run=config.dry_run,
        )
        self.preflight_service = PreflightService(
            config=config,
            system=self.system,
            package_manager=self.package_manager,
            sources=self.sources_service,
            reporter=self.reporter,
            logger=logger,
            requests_module=requests_module,
        )
        self.lock = ProcessLock(registry=self.registry, logger=logger)
        self.marker_store = marker_store or FileMarkerStore(self.paths.state_dir)
        self.manifest_service = ManifestService(
            manifest_file=self.manifest_file,
            logger=logger,
            enabled=not config.dry_run,
        )
        self.phase_runner = PhaseRunner(
            store=self.marker_store,
            registry=self.registry,
            manifest=self.manifest_service,
            reporter=self.reporter,
            logger=logger,
            dry_run=config.dry_run,
        )
        self.finalizer = Finalizer(
            config=config,
            registry=self.registry,
            dispatcher=self.signal_dispatcher,
            package_manager=self.package_manager,
            lock=self.lock,
            logger=logger,
        )

    def phases(self) -> List[Phase]:
        return [
            Phase("preflight", "Pre-flight checks", self.phase_preflight),
            Phase("snapshot_state", "Snapshotting current package state", self.phase_snapshot_state),
            Phase(
                "update_bookworm",
                f"Updating current {SOURCE_CODENAME} installation",
                self.phase_update_bookworm,
            ),
            Phase(
                "switch_sources",
                f"Switching APT sources from {SOURCE_CODENAME} to {TARGET_CODENAME}",
                self.phase_switch_sources,
            ),
            Phase("minimal_upgrade", "Performing minimal upgrade (no removals)", self.phase_minimal_upgrade),
            Phase("full_upgrade", "Performing full upgrade", self.phase_full_upgrade),
            Phase("post_cleanup", "Post-upgrade cleanup", self.phase_post_cleanup),
            Phase("post_validation", "Post-upgrade validation", self.phase_post_validation),
        ]

    def _build_manifest_metadata(self) -> Dict[str, Any]:
        return {
            "version": __version__,
            "source": f"{SOURCE_CODENAME} ({SOURCE_VERSION})",
            "target": f"{TARGET_CODENAME} ({TARGET_VERSION})",
            "conffile_policy": self.config.conffile_policy,
            "services": list(self.config.services),
            "force": self.config.force,
            "skip_reboot_check": self.config.skip_reboot_check,
        }

    def phase_preflight(self) -> Dict[str, Any]:
        details = self.preflight_service.run_all()
        self.reporter.success("Pre-flight checks passed")
        return details

    def phase_snapshot_state(self) -> Dict[str, Any]:
        self.snapshot_service.capture_pre()
        self.reporter.success("Package state snapshot saved to %s", self.paths.state_dir)
        return {"snapshot_dir": self.paths.state_dir}

    def phase_update_bookworm(self):
        logger.info("Refreshing package index...")
        self.package_manager.update()

        logger.info("Upgrading packages within %s...", SOURCE_CODENAME)
        self.package_manager.upgrade("keep")

        logger.info("Performing dist-upgrade within %s...", SOURCE_CODENAME)
        self.package_manager.dist_upgrade("keep")

        self.reporter.success("Current %s installation fully updated", SOURCE_CODENAME)

    def phase_switch_sources(self) -> Dict[str, Any]:
        stale = self.sources_service.clear_stale_backups()
        modified = self.sources_service.switch_release(SOURCE_CODENAME, TARGET_CODENAME)

        logger.info("Verifying new sources with apt-get update...")
        try:
            self.package_manager.update()
        except CommandError as exc:
            raise UpgraderError(
                actionable_error("sources_update_failed", codename=TARGET_CODENAME),
                exit_code=EXIT_VALIDATION_FAILED,
            ) from exc

        self.reporter.success("APT sources switched to %s", TARGET_CODENAME)
        return {"modified_sources": modified, "stale_backups_removed": stale}

    def phase_minimal_upgrade(self):
        self.package_manager.upgrade(self.config.conffile_policy)
        self.reporter.success("Minimal upgrade complete")

    def phase_full_upgrade(self):
        self.package_manager.full_upgrade(self.config.conffile_policy)
        self.reporter.success("Full upgrade complete")

    def phase_post_cleanup(self) -> Dict[str, Any]:
        logger.info("Removing obsolete packages...")
        self.package_manager.autoremove_purge()

        logger.info("Cleaning package cache...")
        self.package_manager.clean()

        logger.info("Modernizing APT sources to DEB822 format...")
        if not self.package_manager.supports_modernize_sources():
            logger.info("apt modernize-sources not available - upgrading apt package...")
            self.package_manager.install_only_upgrade("apt", self.config.conffile_policy)
        modernized = self.package_manager.modernize_sources()
        if not modernized:
            logger.warning("apt modernize-sources failed - skipping DEB822 migration (non-fatal)")

        details: Dict[str, Any] = {"deb822_sources": modernized}
        self.snapshot_service.capture_post()
        if not self.config.dry_run:
            changes = self.snapshot_service.summarize_changes()
            if changes:
                details["package_changes"] = {
                    "upgraded": changes.upgraded,
                    "added": changes.added,
                    "removed": changes.removed,
                }

        self.reporter.success("Post-upgrade cleanup complete")
        return details

    def phase_post_validation(self) -> Dict[str, Any]:
        issues = 0

        release = self.system.read_os_release(self.paths.os_release)
        if release.codename == TARGET_CODENAME:
            self.reporter.success("Release: %s", release.pretty_name or TARGET_CODENAME)
        else:
            logger.error("Expected %s, got %s", TARGET_CODENAME, release.codename or "unknown")
            issues += 1

        audit_output = self.package_manager.audit()
        if not audit_output:
            self.reporter.success("dpkg audit: clean")
        else:
            logger.warning("dpkg audit found issues:")
            logger.warning("  %s", audit_output.splitlines()[0])
            issues += 1

        logger.info("Checking for broken dependencies...")
        self.package_manager.fix_broken()

        if self.config.services:
            logger.info("Checking critical services...")
            for service in self.config.services:
                if self.system.service_active(service):
                    self.reporter.success("Service %s: active", service)
                else:
                    logger.error("Service %s: NOT active", service)
                    issues += 1

        kernel = self.system.kernel_release()
        logger.info("Running kernel: %s", kernel)

        if self.system.has_needrestart():
            logger.info("Checking for services needing restart...")
            self.system.run_needrestart()

        reboot_required = self.system.reboot_required(self.paths.reboot_required)
        if not self.config.skip_reboot_check:
            if reboot_required:
                logger.warning("REBOOT REQUIRED: A reboot is needed to complete the upgrade")
            else:
                logger.info(
                    "No reboot-required marker found (reboot still recommended after major upgrade)"
                )

        if issues:
            logger.warning("Post-validation completed with %s issue(s)", issues)
        else:
            self.reporter.success("Post-validation passed")
        return {"issues": issues, "kernel": kernel, "reboot_required": reboot_required}

    def print_summary(self):
        self.reporter.banner("UPGRADE COMPLETE")
        if self.config.dry_run:
            logger.info("Mode: DRY-RUN (no changes made)")

        logger.info(
            "Upgrade: Debian %s (%s) -> Debian %s (%s)",
            SOURCE_VERSION,
            SOURCE_CODENAME,
            TARGET_VERSION,
            TARGET_CODENAME,
        )
        logger.info("Conffile policy: %s", self.config.conffile_policy)
        logger.info("Log file: %s", self.paths.log_file)
        logger.info("State directory: %s", self.paths.state_dir)

        if not self.config.skip_reboot_check:
            logger.warning("A reboot is strongly recommended after a major version upgrade:")
            logger.warning("  sudo reboot")

    def reset_markers(self) -> int:
        if self.config.dry_run:
            pending = len(self.marker_store.completed())
            logger.info("[DRY-RUN] Would clear %s step marker(s)", pending)
            return 0

        removed = self.phase_runner.reset()
        self.reporter.success("Step markers cleared. Next run will start fresh.")
        return removed

    def _print_header(self):
        self.reporter.banner(
            f"Debian Upgrade: {SOURCE_CODENAME} -> {TARGET_CODENAME} v{__version__}"
        )
        if self.config.dry_run:
            logger.warning("DRY-RUN MODE: No changes will be made")
        if self.config.trace_commands:
            logger.warning("TRACE MODE: Command tracing enabled")

    def _manifest_status(self, termination: Termination) -> str:
        if termination.exit_code == EXIT_SUCCESS:
            return "success"
        if termination.exit_code == EXIT_ALREADY_UPGRADED:
            return "already_upgraded"
        if termination.cause == "signal":
            return "aborted"
        return "failed"

    def _finish(self, termination: Termination) -> int:
        try:
            self.signal_dispatcher.enter_cleanup()
        except TerminationRequested as exc:
            termination = self._signal_termination(exc)
            self.signal_dispatcher.enter_cleanup()

        try:
            exit_code = self.finalizer.finalize(termination)
        finally:
            self.signal_dispatcher.restore()

        if self.manifest_started:
            self.manifest_service.finalize(
                self._manifest_status(termination),
                exit_code=exit_code,
                error=termination.error,
            )
        return exit_code

    def _signal_termination(self, exc: TerminationRequested) -> Termination:
        return Termination.from_signal(
            exc.signal_name, exc.exit_code, phase=self.phase_runner.current_phase
        )

    def _execute(self) -> Termination:
        try:
            self._print_header()

            if self.config.reset:
                self.reset_markers()
                return Termination.normal()

            self.lock.acquire(self.paths.lock_file, self.config.lock_timeout)

            self.manifest_service.start_run(self.run_id, self._build_manifest_metadata())
            self.manifest_started = True

            self.phase_runner.run_all(self.phases())

            self.print_summary()
            self.reporter.success("Upgrade completed successfully!")
            return Termination.normal()

        except AlreadyUpgraded as exc:
            return Termination.from_error(
                EXIT_ALREADY_UPGRADED, str(exc), phase=self.phase_runner.current_phase
            )
        except UpgraderError as exc:
            self.signal_dispatcher.report_failure(exc, phase=self.phase_runner.current_phase)
            return Termination.from_error(
                exc.exit_code, str(exc), phase=self.phase_runner.current_phase
            )
        except Exception as exc:
            logger.exception("Unexpected error")
            self.signal_dispatcher.report_failure(exc, phase=self.phase_runner.current_phase)
            return Termination.from_error(
                EXIT_GENERAL_ERROR, str(exc), phase=self.phase_runner.current_phase
            )

    def run(self) -> int:
        """Executes every pending phase and returns the process exit code.

        A signal may interrupt any phase or the failure reporting that follows
        it; either way the finalizer runs exactly once before returning.
        """
        termination = Termination.from_error(EXIT_GENERAL_ERROR, "Run interrupted")
        try:
            self.signal_dispatcher.install()
            termination = self._execute()
        except TerminationRequested as exc:
            termination = self._signal_termination(exc)
        finally:
            exit_code = self._finish(termination)
        return exit_code

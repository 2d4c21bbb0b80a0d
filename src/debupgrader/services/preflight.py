"""Environment checks run before any system mutation."""

import resource
import shutil
import socket
import time
from typing import Any, Dict, List, Optional

import requests
from packaging import version

from debupgrader.constants import (
    EXIT_DISK_SPACE,
    EXIT_GENERAL_ERROR,
    EXIT_NETWORK_ERROR,
    EXIT_ROOT_REQUIRED,
    EXIT_WRONG_RELEASE,
    MIN_DISK_SPACE_MB,
    NETWORK_HOSTS,
    PROGRAM_NAME,
    RECOMMENDED_MIN_FDS,
    REQUIRED_COMMANDS,
    SNAPSHOT_REMINDER_SECONDS,
    SOURCE_CODENAME,
    SOURCE_VERSION,
    TARGET_CODENAME,
    TARGET_VERSION,
)
from debupgrader.errors import AlreadyUpgraded, UpgraderError
from debupgrader.errors_catalog import actionable_error
from debupgrader.models import ReleaseInfo, RunConfiguration


class PreflightService:
    """Independent checks, each fatal unless documented as a warning."""

    NETWORK_TIMEOUT = (5, 10)

    def __init__(
        self,
        config: RunConfiguration,
        system,
        package_manager,
        sources,
        reporter,
        logger,
        requests_module=requests,
    ):
        self.config = config
        self.system = system
        self.package_manager = package_manager
        self.sources = sources
        self.reporter = reporter
        self.logger = logger
        self.requests = requests_module

    def run_all(self) -> Dict[str, Any]:
        self.check_root()
        release = self.check_current_release()
        self.check_disk_space()
        self.check_file_descriptors()
        held = self.check_held_packages()
        self.validate_required_commands()
        self.check_dns()
        self.check_network()
        third_party = self.check_third_party_repos()
        self.snapshot_reminder()
        return {
            "release": release.codename,
            "held_packages": held,
            "third_party_sources": third_party,
        }

    def check_root(self):
        if not self.system.is_root():
            raise UpgraderError(
                actionable_error("root_required", program=PROGRAM_NAME), exit_code=EXIT_ROOT_REQUIRED
            )

    def check_current_release(self) -> ReleaseInfo:
        self.logger.info("Checking current Debian release...")
        release = self.system.read_os_release(self.config.paths.os_release)

        if release.codename == TARGET_CODENAME:
            self.reporter.success(
                "System already running %s (%s)", TARGET_CODENAME, release.pretty_name
            )
            raise AlreadyUpgraded(f"System already running {TARGET_CODENAME}")

        if release.codename == SOURCE_CODENAME:
            self.reporter.success(
                "Current release: %s (Debian %s)",
                release.codename,
                release.version_id or SOURCE_VERSION,
            )
            return release

        message = actionable_error(
            "unexpected_release",
            current=release.codename,
            expected=SOURCE_CODENAME,
            source_version=SOURCE_VERSION,
            source=SOURCE_CODENAME,
        )
        if self._is_newer_than_target(release.version_id):
            message = (
                f"{message} Debian {release.version_id} is newer than {TARGET_VERSION} "
                f"({TARGET_CODENAME}); there is nothing to upgrade."
            )
        raise UpgraderError(message, exit_code=EXIT_WRONG_RELEASE)

    @staticmethod
    def _is_newer_than_target(version_id: str) -> bool:
        if not version_id:
            return False
        try:
            return version.parse(version_id) > version.parse(TARGET_VERSION)
        except version.InvalidVersion:
            return False

    def check_disk_space(self, mount_point: str = "/"):
        self.logger.info("Checking available disk space...")
        try:
            available_mb = shutil.disk_usage(mount_point).free // (1024 * 1024)
        except OSError:
            available_mb = 0

        if available_mb < MIN_DISK_SPACE_MB:
            raise UpgraderError(
                actionable_error(
                    "insufficient_disk", available=available_mb, required=MIN_DISK_SPACE_MB
                ),
                exit_code=EXIT_DISK_SPACE,
            )
        self.reporter.success(
            "Disk space OK: %sMB available (%sMB required)", available_mb, MIN_DISK_SPACE_MB
        )

    def check_file_descriptors(self) -> int:
        self.logger.info("Checking file descriptor limits...")
        try:
            soft_limit, _ = resource.getrlimit(resource.RLIMIT_NOFILE)
        except (OSError, ValueError):
            soft_limit = 0

        if 0 < soft_limit < RECOMMENDED_MIN_FDS:
            self.logger.warning(
                "Low file descriptor limit: %s (recommended: %s+)", soft_limit, RECOMMENDED_MIN_FDS
            )
        else:
            self.logger.debug("File descriptor limit: %s", soft_limit)
        return soft_limit

    def check_held_packages(self) -> List[str]:
        self.logger.info("Checking for held packages...")
        try:
            held = self.package_manager.held_packages()
        except UpgraderError as exc:
            self.logger.warning("Could not list held packages: %s", exc)
            return []

        if held:
            self.logger.warning("Found %s held package(s): %s", len(held), " ".join(held))
            self.logger.warning("Held packages may cause upgrade issues")
        else:
            self.reporter.success("No held packages")
        return held

    def validate_required_commands(self):
        self.logger.debug("Validating required commands...")
        missing = [command for command in REQUIRED_COMMANDS if shutil.which(command) is None]
        if missing:
            raise UpgraderError(
                actionable_error("missing_commands", commands=", ".join(missing)),
                exit_code=EXIT_GENERAL_ERROR,
            )
        self.logger.debug("All required commands available")

    def check_dns(self):
        self.logger.info("Checking DNS resolution...")
        for host in NETWORK_HOSTS:
            try:
                socket.getaddrinfo(host, 443)
            except (socket.gaierror, UnicodeError) as exc:
                raise UpgraderError(
                    actionable_error("dns_failed", host=host), exit_code=EXIT_NETWORK_ERROR
                ) from exc
            self.logger.debug("DNS OK: %s", host)
        self.reporter.success("DNS resolution OK")

    def check_network(self):
        self.logger.info("Checking network connectivity...")
        for host in NETWORK_HOSTS:
            self.probe_host(host)
            self.logger.debug("Reachable: %s", host)
        self.reporter.success("Network connectivity confirmed")

    def probe_host(self, host: str):
        url = f"https://{host}"
        last_error: Optional[Exception] = None
        for method in ("HEAD", "GET"):
            try:
                with self.requests.request(
                    method,
                    url,
                    allow_redirects=True,
                    timeout=self.NETWORK_TIMEOUT,
                    stream=(method == "GET"),
                ) as response:
                    response.raise_for_status()
                return
            except self.requests.RequestException as exc:
                last_error = exc

        raise UpgraderError(
            actionable_error("host_unreachable", host=host, error=last_error),
            exit_code=EXIT_NETWORK_ERROR,
        )

    def check_third_party_repos(self) -> List[str]:
        self.logger.info("Checking for third-party repositories...")
        third_party = self.sources.third_party_sources()
        if third_party:
            self.logger.warning("Found %s third-party source(s):", len(third_party))
            for path in third_party:
                self.logger.warning("  %s", path)
            self.logger.warning("Third-party repos will NOT be modified - review after upgrade")
        else:
            self.reporter.success("No third-party repositories found")
        return third_party

    def snapshot_reminder(self):
        if self.config.force or self.config.dry_run:
            return

        line = "=" * 59
        self.logger.warning(line)
        self.logger.warning("  IMPORTANT: Ensure you have a VM/VPS snapshot or backup")
        self.logger.warning("  before proceeding with this major version upgrade.")
        self.logger.warning("  This is your last chance to abort (Ctrl+C).")
        self.logger.warning(line)
        self.logger.info("Continuing in %s seconds...", SNAPSHOT_REMINDER_SECONDS)
        time.sleep(SNAPSHOT_REMINDER_SECONDS)

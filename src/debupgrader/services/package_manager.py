"""apt/dpkg access for DebUpgrader."""

import glob
import os
import shutil
from typing import List, Optional

from debupgrader.models import SystemPaths
from debupgrader.services.command_runner import CommandRunner

APT_ENV = {
    "DEBIAN_FRONTEND": "noninteractive",
    "NEEDRESTART_MODE": "a",
}

CONFFILE_OPTIONS = {
    "keep": [
        "-o",
        "Dpkg::Options::=--force-confdef",
        "-o",
        "Dpkg::Options::=--force-confold",
    ],
    "replace": ["-o", "Dpkg::Options::=--force-confnew"],
    "none": [],
}

VERSIONS_FORMAT = "${Package}\\t${Version}\\n"


class AptPackageManager:
    """Drives apt-get, apt, apt-mark and dpkg non-interactively."""

    def __init__(self, runner: CommandRunner, logger, paths: Optional[SystemPaths] = None):
        self.runner = runner
        self.logger = logger
        self.paths = paths or SystemPaths()

    @staticmethod
    def apt_get_command(policy: str, *args: str) -> List[str]:
        if policy not in CONFFILE_OPTIONS:
            raise ValueError(f"Invalid conffile policy: {policy}")
        return ["apt-get", "-y", "-qq", *CONFFILE_OPTIONS[policy], "-o", "Acquire::Retries=3", *args]

    def _apt_get(self, policy: str, *args: str):
        return self.runner.execute(self.apt_get_command(policy, *args), env=APT_ENV)

    def update(self):
        self._apt_get("none", "update")

    def upgrade(self, policy: str):
        self._apt_get(policy, "upgrade")

    def dist_upgrade(self, policy: str):
        self._apt_get(policy, "dist-upgrade")

    def full_upgrade(self, policy: str):
        self._apt_get(policy, "full-upgrade")

    def autoremove_purge(self):
        self._apt_get("none", "autoremove", "--purge")

    def clean(self):
        self.runner.execute(["apt-get", "clean"])

    def install_only_upgrade(self, package: str, policy: str):
        self._apt_get(policy, "install", "--only-upgrade", package)

    def fix_broken(self):
        self._apt_get("none", "install", "-f")

    def supports_modernize_sources(self) -> bool:
        result = self.runner.run(
            ["apt", "modernize-sources", "--help"], check=False, capture_output=True
        )
        return result.returncode == 0

    def modernize_sources(self) -> bool:
        result = self.runner.execute(["apt", "modernize-sources"], check=False)
        return result.returncode == 0

    def configure_pending(self) -> bool:
        result = self.runner.run(["dpkg", "--configure", "-a"], check=False, capture_output=True)
        if result.returncode != 0:
            self.logger.warning("dpkg --configure -a exited with %s", result.returncode)
        return result.returncode == 0

    def audit(self) -> str:
        result = self.runner.run(["dpkg", "--audit"], check=False, capture_output=True)
        return (result.stdout or "").strip()

    def selections(self) -> str:
        return self.runner.run(["dpkg", "--get-selections"], capture_output=True).stdout or ""

    def held_packages(self) -> List[str]:
        held = []
        for line in self.selections().splitlines():
            fields = line.split()
            if len(fields) == 2 and fields[1] == "hold":
                held.append(fields[0])
        return held

    def manual_packages(self) -> str:
        return self.runner.run(["apt-mark", "showmanual"], capture_output=True).stdout or ""

    def package_versions(self) -> str:
        return (
            self.runner.run(["dpkg-query", "-W", f"-f={VERSIONS_FORMAT}"], capture_output=True).stdout
            or ""
        )

    def is_available(self) -> bool:
        return shutil.which("apt-get") is not None

    def can_check_locks(self) -> bool:
        return shutil.which("fuser") is not None

    def locks_in_use(self) -> bool:
        result = self.runner.run(["fuser", self.paths.dpkg_lock], check=False, capture_output=True)
        return result.returncode == 0

    def clear_stale_locks(self) -> List[str]:
        lock_dir = os.path.dirname(self.paths.dpkg_lock)
        candidates = set(glob.glob(os.path.join(lock_dir, "lock*")))
        candidates.update(self.paths.apt_lock_files)

        removed = []
        for path in sorted(candidates):
            if not os.path.isfile(path):
                continue
            try:
                os.remove(path)
            except OSError as exc:
                self.logger.warning("Could not remove stale lock %s: %s", path, exc)
                continue
            removed.append(path)
            self.logger.debug("Removed stale lock: %s", path)
        return removed

"""Host inspection: release identity, services, kernel and reboot state."""

import os
import platform
import shlex
import shutil
from typing import Dict

from debupgrader.constants import EXIT_WRONG_RELEASE
from debupgrader.errors import UpgraderError
from debupgrader.errors_catalog import actionable_error
from debupgrader.models import ReleaseInfo
from debupgrader.services.command_runner import CommandRunner


def parse_os_release(text: str) -> Dict[str, str]:
    values = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, raw_value = line.partition("=")
        try:
            parts = shlex.split(raw_value)
        except ValueError:
            parts = [raw_value.strip("\"'")]
        values[key.strip()] = parts[0] if parts else ""
    return values


class SystemService:
    def __init__(self, runner: CommandRunner, logger):
        self.runner = runner
        self.logger = logger

    def is_root(self) -> bool:
        return os.geteuid() == 0

    def read_os_release(self, path: str) -> ReleaseInfo:
        try:
            with open(path, "r", encoding="utf-8") as file_obj:
                values = parse_os_release(file_obj.read())
        except FileNotFoundError as exc:
            raise UpgraderError(
                actionable_error("os_release_missing", path=path), exit_code=EXIT_WRONG_RELEASE
            ) from exc

        return ReleaseInfo(
            codename=values.get("VERSION_CODENAME", ""),
            version_id=values.get("VERSION_ID", ""),
            pretty_name=values.get("PRETTY_NAME", ""),
        )

    def service_active(self, name: str) -> bool:
        result = self.runner.run(
            ["systemctl", "is-active", "--quiet", f"{name}.service"], check=False
        )
        return result.returncode == 0

    def kernel_release(self) -> str:
        return platform.release()

    def has_needrestart(self) -> bool:
        return shutil.which("needrestart") is not None

    def run_needrestart(self):
        result = self.runner.run(["needrestart", "-b"], check=False, capture_output=True)
        for line in (result.stdout or "").splitlines():
            self.logger.info("  %s", line)
        if result.returncode != 0:
            self.logger.debug("needrestart exited with %s", result.returncode)

    def reboot_required(self, path: str) -> bool:
        return os.path.isfile(path)

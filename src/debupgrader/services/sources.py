"""APT source discovery, classification and release switching."""

import glob
import os
import re
from typing import List

from debupgrader.constants import EXIT_VALIDATION_FAILED, SOURCE_CODENAME, TARGET_CODENAME
from debupgrader.errors import UpgraderError
from debupgrader.errors_catalog import actionable_error
from debupgrader.models import SystemPaths

_FLAGS = re.IGNORECASE | re.MULTILINE

DISTRIBUTION_MARKERS = (
    re.compile(r"debian\.org|debian\.net", _FLAGS),
    re.compile(r"mirror\+file:", _FLAGS),
    re.compile(r"debian-archive-keyring", _FLAGS),
)
SUITE_PATTERN = re.compile(
    r"(Suites|deb\s).*\b(stable|testing|unstable|sid|bookworm|trixie|forky)\b", _FLAGS
)
COMPONENTS_PATTERN = re.compile(r"(Components:|main)", _FLAGS)


def is_distribution_source(content: str) -> bool:
    """True when the source text belongs to the Debian archive."""
    if any(pattern.search(content) for pattern in DISTRIBUTION_MARKERS):
        return True
    return bool(SUITE_PATTERN.search(content) and COMPONENTS_PATTERN.search(content))


class SourcesService:
    """Finds APT source files and rewrites Debian ones to the target release."""

    def __init__(self, registry, logger, paths: SystemPaths, dry_run: bool = False):
        self.registry = registry
        self.logger = logger
        self.paths = paths
        self.dry_run = dry_run

    def source_files(self) -> List[str]:
        files = []
        if os.path.isfile(self.paths.sources_list):
            files.append(self.paths.sources_list)
        for pattern in ("*.list", "*.sources"):
            files.extend(sorted(glob.glob(os.path.join(self.paths.sources_list_dir, pattern))))
        return [path for path in files if os.path.isfile(path)]

    @staticmethod
    def read(path: str) -> str:
        with open(path, "r", encoding="utf-8", errors="replace") as file_obj:
            return file_obj.read()

    def is_distribution_file(self, path: str) -> bool:
        return is_distribution_source(self.read(path))

    def third_party_sources(self) -> List[str]:
        return [
            path
            for path in self.source_files()
            if path != self.paths.sources_list and not self.is_distribution_file(path)
        ]

    def stale_backups(self) -> List[str]:
        patterns = (
            f"{self.paths.sources_list}.bak.*",
            os.path.join(self.paths.sources_list_dir, "*.bak.*"),
        )
        backups = []
        for pattern in patterns:
            backups.extend(path for path in sorted(glob.glob(pattern)) if os.path.isfile(path))
        return backups

    def clear_stale_backups(self) -> int:
        if self.dry_run:
            return 0

        stale = self.stale_backups()
        if stale:
            self.logger.warning("Removing %s orphaned backup file(s) from prior run(s)", len(stale))
        for path in stale:
            self.logger.debug("  Removing stale backup: %s", path)
            try:
                os.remove(path)
            except OSError as exc:
                self.logger.warning("Could not remove stale backup %s: %s", path, exc)
        return len(stale)

    def switch_release(
        self, source: str = SOURCE_CODENAME, target: str = TARGET_CODENAME
    ) -> List[str]:
        """Rewrites every Debian source naming `source`; returns the files changed."""
        modified = []
        for path in self.source_files():
            content = self.read(path)
            if source not in content:
                continue
            if not is_distribution_source(content):
                self.logger.warning("Skipping non-Debian repo: %s", path)
                continue

            self.logger.info("Updating %s...", path)
            if self.dry_run:
                self.logger.info("[DRY-RUN] Would replace '%s' with '%s' in %s", source, target, path)
            else:
                self._rewrite(path, content.replace(source, target))
            modified.append(path)

        if not modified:
            raise UpgraderError(
                actionable_error("no_sources_switched", codename=source),
                exit_code=EXIT_VALIDATION_FAILED,
            )

        self.logger.info("Modified %s source file(s)", len(modified))
        return modified

    def _rewrite(self, path: str, content: str):
        mode = os.stat(path).st_mode & 0o7777
        self.registry.atomic_write(path, content)
        os.chmod(path, mode)

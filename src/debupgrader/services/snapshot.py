"""Package-state snapshots taken before and after the upgrade."""

import os
import shutil
from dataclasses import dataclass
from typing import Dict

from debupgrader.models import SystemPaths

SOURCES_LIST_COPY = "sources.list.pre"
SOURCES_DIR_COPY = "sources.list.d.pre"


def parse_versions(text: str) -> Dict[str, str]:
    versions = {}
    for line in text.splitlines():
        name, _, version = line.partition("\t")
        if name:
            versions[name] = version.strip()
    return versions


@dataclass(frozen=True)
class VersionDiff:
    upgraded: int
    added: int
    removed: int


def diff_versions(before: Dict[str, str], after: Dict[str, str]) -> VersionDiff:
    upgraded = sum(
        1 for name, version in after.items() if name in before and before[name] != version
    )
    added = sum(1 for name in after if name not in before)
    removed = sum(1 for name in before if name not in after)
    return VersionDiff(upgraded=upgraded, added=added, removed=removed)


class SnapshotService:
    def __init__(self, package_manager, registry, logger, paths: SystemPaths, dry_run: bool = False):
        self.package_manager = package_manager
        self.registry = registry
        self.logger = logger
        self.paths = paths
        self.dry_run = dry_run

    def _path(self, name: str) -> str:
        return os.path.join(self.paths.state_dir, name)

    def capture_pre(self):
        if self.dry_run:
            self.logger.info("[DRY-RUN] Would save package state snapshots to %s/", self.paths.state_dir)
            return

        os.makedirs(self.paths.state_dir, exist_ok=True)
        self.logger.info("Saving package selections...")
        self.registry.atomic_write(self._path("selections-pre.txt"), self.package_manager.selections())

        self.logger.info("Saving manually installed packages...")
        self.registry.atomic_write(
            self._path("manual-packages-pre.txt"), self.package_manager.manual_packages()
        )

        self.logger.info("Saving package versions...")
        self.registry.atomic_write(
            self._path("package-versions-pre.txt"), self.package_manager.package_versions()
        )

        self.logger.info("Backing up APT sources...")
        self._copy_sources()

    def _copy_sources(self):
        if os.path.isfile(self.paths.sources_list):
            with open(self.paths.sources_list, "r", encoding="utf-8", errors="replace") as file_obj:
                self.registry.atomic_write(self._path(SOURCES_LIST_COPY), file_obj.read())

        if not os.path.isdir(self.paths.sources_list_dir):
            return

        target_dir = self._path(SOURCES_DIR_COPY)
        for root, _, files in os.walk(self.paths.sources_list_dir):
            relative_root = os.path.relpath(root, self.paths.sources_list_dir)
            for name in sorted(files):
                source_path = os.path.join(root, name)
                target_path = os.path.normpath(os.path.join(target_dir, relative_root, name))
                os.makedirs(os.path.dirname(target_path), exist_ok=True)
                if os.path.exists(target_path):
                    self.registry.backup_file(target_path)
                else:
                    self.registry.register_created_file(target_path)
                shutil.copy2(source_path, target_path)

    def capture_post(self):
        if self.dry_run:
            self.logger.info("[DRY-RUN] Would save post-upgrade package state to %s/", self.paths.state_dir)
            return

        self.logger.info("Saving post-upgrade package state...")
        os.makedirs(self.paths.state_dir, exist_ok=True)
        self.registry.atomic_write(self._path("selections-post.txt"), self.package_manager.selections())
        self.registry.atomic_write(
            self._path("package-versions-post.txt"), self.package_manager.package_versions()
        )
        self.registry.atomic_write(
            self._path("manual-packages-post.txt"), self.package_manager.manual_packages()
        )

    def load_versions(self, name: str) -> Dict[str, str]:
        path = self._path(name)
        if not os.path.isfile(path):
            return {}
        with open(path, "r", encoding="utf-8") as file_obj:
            return parse_versions(file_obj.read())

    def summarize_changes(self):
        before = self.load_versions("package-versions-pre.txt")
        after = self.load_versions("package-versions-post.txt")
        if not before or not after:
            self.logger.debug("Version snapshots unavailable; skipping change summary")
            return None

        diff = diff_versions(before, after)
        self.logger.info(
            "Package changes: %s upgraded, %s added, %s removed",
            diff.upgraded,
            diff.added,
            diff.removed,
        )
        return diff

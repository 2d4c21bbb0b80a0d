"""Step-marker persistence and the idempotent phase runner."""

import glob
import os
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Sequence

from debupgrader.errors import UpgraderError


class MarkerStore:
    """Durable set of completed phase names mapped to completion timestamps."""

    def is_completed(self, step_name: str) -> bool:
        raise NotImplementedError

    def mark_complete(self, step_name: str):
        raise NotImplementedError

    def completed(self) -> Dict[str, str]:
        raise NotImplementedError

    def clear(self) -> int:
        raise NotImplementedError

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).isoformat(timespec="seconds")


class FileMarkerStore(MarkerStore):
    """One `.step_<name>` file per completed phase under the state directory."""

    PREFIX = ".step_"

    def __init__(self, state_dir: str):
        self.state_dir = state_dir

    def _marker_path(self, step_name: str) -> str:
        return os.path.join(self.state_dir, f"{self.PREFIX}{step_name}")

    def is_completed(self, step_name: str) -> bool:
        return os.path.isfile(self._marker_path(step_name))

    def mark_complete(self, step_name: str):
        os.makedirs(self.state_dir, exist_ok=True)
        fd, temp_path = tempfile.mkstemp(prefix=".marker-", dir=self.state_dir)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as file_obj:
                file_obj.write(f"{self._now()}\n")
                file_obj.flush()
                os.fsync(file_obj.fileno())
            os.replace(temp_path, self._marker_path(step_name))
        except OSError as exc:
            raise UpgraderError(f"Could not write step marker for '{step_name}': {exc}") from exc
        finally:
            if os.path.exists(temp_path):
                try:
                    os.remove(temp_path)
                except OSError:
                    pass

    def completed(self) -> Dict[str, str]:
        markers = {}
        for path in sorted(glob.glob(os.path.join(self.state_dir, f"{self.PREFIX}*"))):
            name = os.path.basename(path)[len(self.PREFIX):]
            try:
                with open(path, "r", encoding="utf-8") as file_obj:
                    markers[name] = file_obj.read().strip()
            except OSError:
                markers[name] = ""
        return markers

    def clear(self) -> int:
        if not os.path.isdir(self.state_dir):
            return 0

        removed = 0
        for path in glob.glob(os.path.join(self.state_dir, f"{self.PREFIX}*")):
            try:
                os.remove(path)
                removed += 1
            except OSError as exc:
                raise UpgraderError(f"Could not remove step marker {path}: {exc}") from exc
        return removed


class MemoryMarkerStore(MarkerStore):
    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self.markers: Dict[str, str] = dict(initial or {})

    def is_completed(self, step_name: str) -> bool:
        return step_name in self.markers

    def mark_complete(self, step_name: str):
        self.markers.setdefault(step_name, self._now())

    def completed(self) -> Dict[str, str]:
        return dict(self.markers)

    def clear(self) -> int:
        removed = len(self.markers)
        self.markers.clear()
        return removed


@dataclass(frozen=True)
class Phase:
    name: str
    title: str
    callback: Callable[[], Optional[Dict[str, Any]]]


class PhaseRunner:
    """Runs phases in order, skipping those whose marker already exists."""

    def __init__(self, store: MarkerStore, registry, manifest, reporter, logger, dry_run: bool = False):
        self.store = store
        self.registry = registry
        self.manifest = manifest
        self.reporter = reporter
        self.logger = logger
        self.dry_run = dry_run
        self.current_phase: Optional[str] = None

    def is_completed(self, phase_name: str) -> bool:
        return self.store.is_completed(phase_name)

    def mark_complete(self, phase_name: str):
        if not self.dry_run:
            self.store.mark_complete(phase_name)
        self.logger.debug("Step '%s' marked complete", phase_name)

    def run_all(self, phases: Sequence[Phase]):
        total = len(phases)
        for index, phase in enumerate(phases, start=1):
            self.run(phase, index, total)

    def run(self, phase: Phase, index: int, total: int) -> bool:
        self.reporter.step(index, total, phase.title)

        if self.is_completed(phase.name):
            self.logger.info("Step already completed - skipping")
            self.manifest.step_started(phase.name, details={"resumed": True})
            self.manifest.step_finished(phase.name, "skipped")
            return False

        self.current_phase = phase.name
        self.manifest.step_started(phase.name)
        try:
            details = phase.callback()
        except BaseException as exc:
            self.manifest.step_finished(phase.name, "failed", error=str(exc))
            raise

        self.mark_complete(phase.name)
        self.registry.commit()
        self.manifest.step_finished(phase.name, "success", details=details)
        self.current_phase = None
        return True

    def reset(self) -> int:
        removed = self.store.clear()
        self.logger.debug("Step markers cleared (%s removed)", removed)
        return removed

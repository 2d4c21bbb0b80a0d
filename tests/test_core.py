import glob
import json
import logging
import os
import signal
import subprocess
import time

import pytest

import debupgrader.services.cleanup as cleanup_module
from debupgrader.core import DebianUpgrader
from debupgrader.errors import CommandError, TerminationRequested
from debupgrader.models import ReleaseInfo, RunConfiguration, SystemPaths
from debupgrader.services.cleanup import CleanupRegistry
from debupgrader.services.command_runner import CommandRunner
from debupgrader.services.lock import ProcessLock
from debupgrader.services.package_manager import AptPackageManager
from debupgrader.services.preflight import PreflightService
from debupgrader.services.signals import SignalDispatcher

REAL_INSTALL = SignalDispatcher.install
REAL_RESTORE = SignalDispatcher.restore

PHASE_NAMES = [
    "preflight",
    "snapshot_state",
    "update_bookworm",
    "switch_sources",
    "minimal_upgrade",
    "full_upgrade",
    "post_cleanup",
    "post_validation",
]

DEBIAN_LIST = "deb http://deb.debian.org/debian bookworm main\n"
THIRD_PARTY_LIST = "deb https://download.docker.com/linux/debian bookworm stable\n"


class FakeSystem:
    def __init__(self, codename="bookworm"):
        self.codename = codename
        self.active_services = {"ssh"}

    def is_root(self):
        return True

    def read_os_release(self, _path):
        version_id = "13" if self.codename == "trixie" else "12"
        return ReleaseInfo(self.codename, version_id, f"Debian GNU/Linux {version_id} ({self.codename})")

    def service_active(self, name):
        return name in self.active_services

    def kernel_release(self):
        return "6.12.0-1-amd64"

    def has_needrestart(self):
        return False

    def run_needrestart(self):
        return None

    def reboot_required(self, _path):
        return False


class FakePackageManager:
    """In-memory package manager.

    `fail_on` names an operation that fails on its `fail_call`-th use, or runs
    `hook` instead when one is given.
    """

    def __init__(self, system, fail_on=None, fail_call=1, error=None, hook=None):
        self.system = system
        self.fail_on = fail_on
        self.fail_call = fail_call
        self.error = error
        self.hook = hook
        self.calls = []
        self.recovery_calls = []
        self.counts = {}

    def _record(self, name, *args):
        self.counts[name] = self.counts.get(name, 0) + 1
        self.calls.append((name,) + args)
        if name == self.fail_on and self.counts[name] == self.fail_call:
            if self.hook:
                self.hook()
                return
            raise self.error or CommandError(
                f"Command failed (100): apt-get {name}", command=["apt-get", name], returncode=100
            )

    def update(self):
        self._record("update")

    def upgrade(self, policy):
        self._record("upgrade", policy)

    def dist_upgrade(self, policy):
        self._record("dist_upgrade", policy)

    def full_upgrade(self, policy):
        self._record("full_upgrade", policy)
        self.system.codename = "trixie"

    def autoremove_purge(self):
        self._record("autoremove_purge")

    def clean(self):
        self._record("clean")

    def install_only_upgrade(self, package, policy):
        self._record("install_only_upgrade", package, policy)

    def fix_broken(self):
        self._record("fix_broken")

    def supports_modernize_sources(self):
        return True

    def modernize_sources(self):
        self._record("modernize_sources")
        return True

    def audit(self):
        return ""

    def selections(self):
        return "bash\tinstall\n"

    def held_packages(self):
        return []

    def manual_packages(self):
        return "bash\n"

    def package_versions(self):
        if self.system.codename == "trixie":
            return "bash\t5.2.37-1\n"
        return "bash\t5.2.15-2\n"

    def is_available(self):
        return True

    def configure_pending(self):
        self.recovery_calls.append("configure_pending")
        return True

    def can_check_locks(self):
        return True

    def locks_in_use(self):
        return False

    def clear_stale_locks(self):
        self.recovery_calls.append("clear_stale_locks")
        return []


class OfflineRunner(CommandRunner):
    """Dry-run runner whose read-only queries never reach the host."""

    def __init__(self, logger):
        super().__init__(logger=logger, dry_run=True)
        self.ran = []

    def run(self, cmd, check=True, capture_output=False, timeout=None, env=None):
        self.ran.append(cmd)
        return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="")


@pytest.fixture(autouse=True)
def isolate_process_state(monkeypatch):
    monkeypatch.setattr(SignalDispatcher, "install", lambda self: None)
    monkeypatch.setattr(SignalDispatcher, "restore", lambda self: None)
    monkeypatch.setattr(cleanup_module, "terminate_children", lambda logger, grace_seconds=0: None)
    for check in ("check_disk_space", "validate_required_commands", "check_dns", "check_network"):
        monkeypatch.setattr(PreflightService, check, lambda self: None)


@pytest.fixture
def paths(tmp_path):
    apt_dir = tmp_path / "apt"
    (apt_dir / "sources.list.d").mkdir(parents=True)
    (apt_dir / "sources.list").write_text(DEBIAN_LIST, encoding="utf-8")
    (apt_dir / "sources.list.d" / "docker.list").write_text(THIRD_PARTY_LIST, encoding="utf-8")
    return SystemPaths(
        log_file=str(tmp_path / "log" / "upgrade.log"),
        state_dir=str(tmp_path / "state"),
        lock_file=str(tmp_path / "lock" / "upgrade.lock"),
        apt_dir=str(apt_dir),
        reboot_required=str(tmp_path / "reboot-required"),
        dpkg_lock=str(tmp_path / "dpkg" / "lock"),
        apt_lock_files=(),
    )


def build_upgrader(paths, system=None, package_manager=None, **config_kwargs):
    config_kwargs.setdefault("force", True)
    config = RunConfiguration(paths=paths, lock_timeout=0, **config_kwargs)
    system = system or FakeSystem()
    package_manager = package_manager or FakePackageManager(system)
    return DebianUpgrader(config, package_manager=package_manager, system=system)


def markers(paths):
    if not os.path.isdir(paths.state_dir):
        return []
    return sorted(name[len(".step_"):] for name in os.listdir(paths.state_dir) if name.startswith(".step_"))


def read_manifest(paths):
    with open(f"{paths.state_dir}/run-manifest.json", encoding="utf-8") as file_obj:
        return json.load(file_obj)


def backups(paths):
    return glob.glob(f"{paths.apt_dir}/**/*.bak.*", recursive=True)


def test_full_run_applies_every_phase(paths):
    upgrader = build_upgrader(paths, services=("ssh",))

    exit_code = upgrader.run()

    assert exit_code == 0
    assert markers(paths) == sorted(PHASE_NAMES)
    assert upgrader.package_manager.calls == [
        ("update",),
        ("upgrade", "keep"),
        ("dist_upgrade", "keep"),
        ("update",),
        ("upgrade", "replace"),
        ("full_upgrade", "replace"),
        ("autoremove_purge",),
        ("clean",),
        ("modernize_sources",),
        ("fix_broken",),
    ]
    with open(paths.sources_list, encoding="utf-8") as file_obj:
        assert file_obj.read() == "deb http://deb.debian.org/debian trixie main\n"
    with open(f"{paths.sources_list_dir}/docker.list", encoding="utf-8") as file_obj:
        assert file_obj.read() == THIRD_PARTY_LIST
    assert backups(paths) == []
    assert upgrader.package_manager.recovery_calls == []

    manifest = read_manifest(paths)
    assert manifest["status"] == "success"
    assert [step["name"] for step in manifest["steps"]] == PHASE_NAMES


def test_second_run_is_a_no_op(paths):
    system = FakeSystem()
    assert build_upgrader(paths, system=system).run() == 0

    package_manager = FakePackageManager(system)
    second = build_upgrader(paths, system=system, package_manager=package_manager)

    assert second.run() == 0
    assert package_manager.calls == []
    assert {step["status"] for step in read_manifest(paths)["steps"]} == {"skipped"}


def test_failed_phase_is_resumed_without_repeating_earlier_phases(paths):
    system = FakeSystem()
    failing = FakePackageManager(system, fail_on="full_upgrade")

    assert build_upgrader(paths, system=system, package_manager=failing).run() == 1
    assert markers(paths) == sorted(PHASE_NAMES[:5])
    assert failing.recovery_calls == ["configure_pending", "clear_stale_locks"]
    assert read_manifest(paths)["steps"][-1]["status"] == "failed"

    resumed = FakePackageManager(system)
    assert build_upgrader(paths, system=system, package_manager=resumed).run() == 0
    assert resumed.calls[0] == ("full_upgrade", "replace")
    assert ("update",) not in resumed.calls
    assert markers(paths) == sorted(PHASE_NAMES)


def test_failure_rolls_back_the_running_phase_only(paths):
    system = FakeSystem()
    package_manager = FakePackageManager(system, fail_on="update", fail_call=2)

    exit_code = build_upgrader(paths, system=system, package_manager=package_manager).run()

    assert exit_code == 9
    with open(paths.sources_list, encoding="utf-8") as file_obj:
        assert file_obj.read() == DEBIAN_LIST
    assert backups(paths) == []
    assert markers(paths) == sorted(PHASE_NAMES[:3])
    with open(f"{paths.state_dir}/selections-pre.txt", encoding="utf-8") as file_obj:
        assert file_obj.read() == "bash\tinstall\n"


def test_already_upgraded_exits_without_mutation(paths):
    system = FakeSystem(codename="trixie")
    package_manager = FakePackageManager(system)

    exit_code = build_upgrader(paths, system=system, package_manager=package_manager).run()

    assert exit_code == 6
    assert package_manager.calls == []
    assert package_manager.recovery_calls == []
    assert markers(paths) == []
    with open(paths.sources_list, encoding="utf-8") as file_obj:
        assert file_obj.read() == DEBIAN_LIST
    assert read_manifest(paths)["status"] == "already_upgraded"


def test_reset_clears_markers_without_running_phases(paths):
    system = FakeSystem()
    assert build_upgrader(paths, system=system).run() == 0
    assert markers(paths)

    package_manager = FakePackageManager(system)
    exit_code = build_upgrader(paths, system=system, package_manager=package_manager, reset=True).run()

    assert exit_code == 0
    assert markers(paths) == []
    assert package_manager.calls == []


def test_dry_run_changes_nothing(paths, caplog):
    caplog.set_level(logging.INFO, logger="debupgrader")
    logger = logging.getLogger("debupgrader.test")
    runner = OfflineRunner(logger)
    package_manager = AptPackageManager(runner=runner, logger=logger, paths=paths)

    exit_code = build_upgrader(
        paths, package_manager=package_manager, dry_run=True, force=False
    ).run()

    assert exit_code == 0
    assert not os.path.exists(paths.state_dir)
    with open(paths.sources_list, encoding="utf-8") as file_obj:
        assert file_obj.read() == DEBIAN_LIST
    assert backups(paths) == []
    assert all(cmd[0] != "apt-get" for cmd in runner.ran)
    assert "[DRY-RUN] Would execute:" in caplog.text
    assert "[DRY-RUN] Would save package state snapshots" in caplog.text


def test_signal_during_phase_routes_through_finalizer(paths):
    system = FakeSystem()
    package_manager = FakePackageManager(
        system, fail_on="dist_upgrade", error=TerminationRequested("TERM", 15)
    )

    exit_code = build_upgrader(paths, system=system, package_manager=package_manager).run()

    assert exit_code == 143
    assert markers(paths) == sorted(PHASE_NAMES[:2])
    assert package_manager.recovery_calls == ["configure_pending", "clear_stale_locks"]
    assert read_manifest(paths)["status"] == "aborted"


def test_lock_held_elsewhere_fails_with_lock_code(paths):
    logger = logging.getLogger("debupgrader.test")
    holder = ProcessLock(registry=CleanupRegistry(logger), logger=logger)
    holder.acquire(paths.lock_file, timeout=0)

    system = FakeSystem()
    package_manager = FakePackageManager(system)
    try:
        exit_code = build_upgrader(paths, system=system, package_manager=package_manager).run()
    finally:
        holder.release()

    assert exit_code == 2
    assert package_manager.calls == []
    assert package_manager.recovery_calls == []
    assert markers(paths) == []


def sigterm_self():
    os.kill(os.getpid(), signal.SIGTERM)
    time.sleep(5)


def use_real_signal_handlers(monkeypatch):
    monkeypatch.setattr(SignalDispatcher, "install", REAL_INSTALL)
    monkeypatch.setattr(SignalDispatcher, "restore", REAL_RESTORE)


def test_real_sigterm_during_phase_restores_sources(paths, monkeypatch):
    use_real_signal_handlers(monkeypatch)
    previous = signal.getsignal(signal.SIGTERM)
    system = FakeSystem()
    package_manager = FakePackageManager(system, fail_on="update", fail_call=2, hook=sigterm_self)

    exit_code = build_upgrader(paths, system=system, package_manager=package_manager).run()

    assert exit_code == 143
    with open(paths.sources_list, encoding="utf-8") as file_obj:
        assert file_obj.read() == DEBIAN_LIST
    assert backups(paths) == []
    assert markers(paths) == sorted(PHASE_NAMES[:3])
    assert read_manifest(paths)["status"] == "aborted"
    assert signal.getsignal(signal.SIGTERM) == previous


def test_sigterm_while_reporting_failure_still_rolls_back(paths, monkeypatch):
    use_real_signal_handlers(monkeypatch)
    reported = []

    def report_then_signal(self, exc, phase=None):
        reported.append(phase)
        sigterm_self()

    monkeypatch.setattr(SignalDispatcher, "report_failure", report_then_signal)
    system = FakeSystem()
    package_manager = FakePackageManager(system, fail_on="update", fail_call=2)

    exit_code = build_upgrader(paths, system=system, package_manager=package_manager).run()

    assert reported == ["switch_sources"]
    assert exit_code == 143
    with open(paths.sources_list, encoding="utf-8") as file_obj:
        assert file_obj.read() == DEBIAN_LIST
    assert backups(paths) == []
    assert package_manager.recovery_calls == ["configure_pending", "clear_stale_locks"]


def test_manifest_records_phase_details(paths):
    upgrader = build_upgrader(paths)

    assert upgrader.run() == 0

    steps = {step["name"]: step for step in read_manifest(paths)["steps"]}
    assert steps["preflight"]["details"]["third_party_sources"] == [
        f"{paths.sources_list_dir}/docker.list"
    ]
    assert steps["switch_sources"]["details"]["modified_sources"] == [paths.sources_list]
    assert steps["post_cleanup"]["details"]["package_changes"] == {
        "upgraded": 1,
        "added": 0,
        "removed": 0,
    }
    assert steps["post_validation"]["details"]["issues"] == 0

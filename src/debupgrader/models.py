"""Shared domain models for DebUpgrader."""

import os
from dataclasses import dataclass, field
from typing import Optional, Tuple

from . import constants


@dataclass(frozen=True)
class SystemPaths:
    """Filesystem locations touched by a run."""

    log_file: str = constants.LOG_FILE
    state_dir: str = constants.STATE_DIR
    lock_file: str = constants.LOCK_FILE
    os_release: str = constants.OS_RELEASE_FILE
    apt_dir: str = constants.APT_DIR
    reboot_required: str = constants.REBOOT_REQUIRED_FILE
    dpkg_lock: str = constants.DPKG_LOCK_FILE
    apt_lock_files: Tuple[str, ...] = constants.APT_LOCK_FILES

    @property
    def sources_list(self) -> str:
        return os.path.join(self.apt_dir, "sources.list")

    @property
    def sources_list_dir(self) -> str:
        return os.path.join(self.apt_dir, "sources.list.d")


@dataclass(frozen=True)
class RunConfiguration:
    """Options of one run, frozen once the command line is parsed."""

    dry_run: bool = False
    verbose: bool = False
    syslog: bool = False
    trace_commands: bool = False
    xtrace: bool = False
    force: bool = False
    conffile_policy: str = "replace"
    skip_reboot_check: bool = False
    reset: bool = False
    services: Tuple[str, ...] = ()
    lock_timeout: float = constants.LOCK_TIMEOUT_SECONDS
    paths: SystemPaths = field(default_factory=SystemPaths)

    def __post_init__(self):
        if self.conffile_policy not in constants.CONFFILE_POLICIES:
            raise ValueError(
                f"Invalid conffile policy '{self.conffile_policy}'. "
                f"Must be one of: {', '.join(constants.CONFFILE_POLICIES)}."
            )


@dataclass(frozen=True)
class ReleaseInfo:
    """Release identity parsed from os-release."""

    codename: str
    version_id: str = ""
    pretty_name: str = ""


@dataclass(frozen=True)
class Termination:
    """Why the run is ending; consumed once by the finalizer."""

    cause: str
    exit_code: int
    signal_name: Optional[str] = None
    phase: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def normal(cls, exit_code: int = constants.EXIT_SUCCESS) -> "Termination":
        return cls(cause="normal", exit_code=exit_code)

    @classmethod
    def from_error(
        cls, exit_code: int, error: str, phase: Optional[str] = None
    ) -> "Termination":
        return cls(cause="error", exit_code=exit_code, phase=phase, error=error)

    @classmethod
    def from_signal(
        cls, signal_name: str, exit_code: int, phase: Optional[str] = None
    ) -> "Termination":
        return cls(
            cause="signal",
            exit_code=exit_code,
            signal_name=signal_name,
            phase=phase,
            error=f"Terminated by SIG{signal_name}",
        )

    @property
    def failed(self) -> bool:
        return self.exit_code not in (constants.EXIT_SUCCESS, constants.EXIT_ALREADY_UPGRADED)

"""Signal and fault dispatching for DebUpgrader."""

import os
import shlex
import signal
import traceback
from typing import Any, Dict, List, Optional

from debupgrader.constants import SOURCE_CODENAME, TARGET_CODENAME
from debupgrader.errors import CommandError, TerminationRequested

GRACEFUL_SIGNALS = (
    ("HUP", "Hangup"),
    ("INT", "Interrupt"),
    ("QUIT", "Quit"),
    ("TERM", "Terminated"),
)

# Synchronous faults raised inside the interpreter itself cannot be serviced from
# Python; these handlers cover fault signals delivered by another process.
FAULT_SIGNALS = (
    ("ILL", "Illegal instruction"),
    ("TRAP", "Trace/breakpoint trap"),
    ("ABRT", "Aborted"),
    ("BUS", "Bus error"),
    ("FPE", "Floating point exception"),
    ("SEGV", "Segmentation fault"),
    ("STKFLT", "Stack fault"),
    ("SYS", "Bad system call"),
)


class SignalState:
    """Write-once record of the first termination signal received."""

    def __init__(self):
        self.name: Optional[str] = None
        self.number: Optional[int] = None

    @property
    def is_set(self) -> bool:
        return self.name is not None

    def latch(self, name: str, number: int) -> bool:
        if self.is_set:
            return False
        self.name = name
        self.number = number
        return True


class SignalDispatcher:
    """Turns signals into TerminationRequested and reports command failures."""

    def __init__(self, config, logger):
        self.config = config
        self.logger = logger
        self.state = SignalState()
        self.cleanup_mode = False
        self._previous: Dict[int, Any] = {}
        self._descriptions: Dict[str, str] = {}
        self._fatal: Dict[str, bool] = {}
        for name, description in GRACEFUL_SIGNALS:
            self._descriptions[name] = description
            self._fatal[name] = False
        for name, description in FAULT_SIGNALS:
            self._descriptions[name] = description
            self._fatal[name] = True

    @staticmethod
    def _signal_number(name: str) -> Optional[int]:
        return getattr(signal, f"SIG{name}", None)

    def graceful_signal_numbers(self) -> List[int]:
        numbers = []
        for name, _ in GRACEFUL_SIGNALS:
            signum = self._signal_number(name)
            if signum is not None:
                numbers.append(signum)
        return numbers

    def install(self):
        for name in self._descriptions:
            signum = self._signal_number(name)
            if signum is None:
                continue
            try:
                self._previous[signum] = signal.signal(signum, self.handle)
            except (OSError, ValueError, RuntimeError) as exc:
                self.logger.debug("Cannot trap SIG%s: %s", name, exc)
        self.logger.debug("Signal handlers installed")

    def restore(self):
        for signum, previous in self._previous.items():
            try:
                signal.signal(signum, previous if previous is not None else signal.SIG_DFL)
            except (OSError, ValueError, RuntimeError):
                continue
        self._previous.clear()

    def enter_cleanup(self):
        self.cleanup_mode = True

    def handle(self, signum: int, frame=None):
        if self.cleanup_mode:
            return

        try:
            name = signal.Signals(signum).name[3:]
        except ValueError:
            name = str(signum)
        if not self.state.latch(name, signum):
            return

        description = self._descriptions.get(name, "Unknown signal")
        fatal = self._fatal.get(name, True)
        if fatal:
            self.logger.error(
                "FATAL: Received SIG%s (%s) - attempting emergency cleanup...", name, description
            )
            self.logger.error("This indicates a serious error. Please report if reproducible.")
        else:
            self.logger.warning(
                "Received SIG%s (%s) - initiating graceful shutdown...", name, description
            )

        raise TerminationRequested(name, signum, fatal=fatal)

    def report_failure(self, exc: BaseException, phase: Optional[str] = None):
        """Logs the failing operation and where it was called from."""
        frames = traceback.extract_tb(exc.__traceback__)
        call_sites = [
            frame for frame in frames if not frame.filename.endswith("command_runner.py")
        ] or frames

        if isinstance(exc, CommandError):
            self.logger.error("Command failed with exit code %s", exc.returncode)
        else:
            message = str(exc) or type(exc).__name__
            self.logger.error("Operation failed: %s", message.splitlines()[0])

        if call_sites:
            site = call_sites[-1]
            self.logger.error(
                "  Location: %s() at %s:%s", site.name, os.path.basename(site.filename), site.lineno
            )
        if phase:
            self.logger.error("  Phase:    %s", phase)
        if isinstance(exc, CommandError):
            self.logger.error("  Command:  %s", shlex.join(exc.command))
            if exc.stderr:
                self.logger.error("  Stderr:   %s", exc.stderr.splitlines()[-1])

        if not self.config.verbose:
            return

        self.logger.debug("Stack trace:")
        for index, frame in enumerate(reversed(frames), start=1):
            self.logger.debug("  [%s] %s() at %s:%s", index, frame.name, frame.filename, frame.lineno)

        self.logger.debug("Variable state:")
        self.logger.debug("  dry_run=%s", self.config.dry_run)
        self.logger.debug("  conffile_policy=%s", self.config.conffile_policy)
        self.logger.debug("  source_codename=%s", SOURCE_CODENAME)
        self.logger.debug("  target_codename=%s", TARGET_CODENAME)

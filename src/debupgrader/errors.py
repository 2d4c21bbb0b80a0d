"""Domain errors for DebUpgrader."""

from typing import Optional, Sequence

from .constants import EXIT_ALREADY_UPGRADED, EXIT_GENERAL_ERROR


class UpgraderError(RuntimeError):
    """Raised when the upgrade cannot continue safely."""

    def __init__(self, message: str, exit_code: int = EXIT_GENERAL_ERROR):
        super().__init__(message)
        self.exit_code = exit_code


class CommandError(UpgraderError):
    """Raised when an external command returns a non-zero status."""

    def __init__(
        self,
        message: str,
        command: Sequence[str],
        returncode: Optional[int] = None,
        stderr: str = "",
    ):
        super().__init__(message)
        self.command = list(command)
        self.returncode = returncode
        self.stderr = stderr


class AlreadyUpgraded(UpgraderError):
    """The system already runs the target release; nothing to do."""

    def __init__(self, message: str):
        super().__init__(message, exit_code=EXIT_ALREADY_UPGRADED)


class TerminationRequested(BaseException):
    """Raised from a signal handler to unwind the run towards the finalizer."""

    def __init__(self, signal_name: str, signal_number: int, fatal: bool = False):
        super().__init__(f"SIG{signal_name}")
        self.signal_name = signal_name
        self.signal_number = signal_number
        self.fatal = fatal

    @property
    def exit_code(self) -> int:
        return 128 + self.signal_number

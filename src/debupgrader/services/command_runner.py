"""Subprocess execution service for DebUpgrader."""

import inspect
import os
import shlex
import subprocess
import sys
from typing import Dict, List, Optional

from debupgrader.constants import COMMAND_STOP_GRACE_SECONDS
from debupgrader.errors import CommandError, UpgraderError


class CommandRunner:
    """Runs external commands with consistent error handling."""

    def __init__(
        self,
        logger,
        dry_run: bool = False,
        trace_commands: bool = False,
        xtrace: bool = False,
        default_timeout: Optional[float] = None,
        trace_stream=None,
        stop_grace_seconds: float = COMMAND_STOP_GRACE_SECONDS,
    ):
        self.logger = logger
        self.dry_run = dry_run
        self.trace_commands = trace_commands
        self.xtrace = xtrace
        self.default_timeout = default_timeout
        self.trace_stream = trace_stream or sys.stderr
        self.stop_grace_seconds = stop_grace_seconds

    @staticmethod
    def format_command(cmd: List[str], env: Optional[Dict[str, str]] = None) -> str:
        prefix = " ".join(f"{key}={shlex.quote(value)}" for key, value in (env or {}).items())
        command = shlex.join(cmd)
        return f"{prefix} {command}" if prefix else command

    def execute(
        self,
        cmd: List[str],
        env: Optional[Dict[str, str]] = None,
        check: bool = True,
    ) -> subprocess.CompletedProcess:
        """Runs a state-changing command, or only reports it in dry-run mode."""
        if self.dry_run:
            self.logger.info("[DRY-RUN] Would execute: %s", self.format_command(cmd, env))
            return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="")
        return self.run(cmd, check=check, env=env)

    def run(
        self,
        cmd: List[str],
        check: bool = True,
        capture_output: bool = False,
        timeout: Optional[float] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> subprocess.CompletedProcess:
        cmd_str = self.format_command(cmd, env)
        self.logger.debug("Executing: %s", cmd_str)
        self._trace(cmd_str)

        effective_timeout = timeout if timeout is not None else self.default_timeout
        process_env = dict(os.environ, **env) if env else None
        pipe = subprocess.PIPE if capture_output else None

        try:
            process = subprocess.Popen(cmd, text=True, stdout=pipe, stderr=pipe, env=process_env)
        except FileNotFoundError as exc:
            raise UpgraderError(
                f"Required command not found: {cmd[0]}. Please install it and try again."
            ) from exc
        except OSError as exc:
            raise UpgraderError(f"Failed to execute command: {cmd_str}. {exc}") from exc

        try:
            stdout, stderr = process.communicate(timeout=effective_timeout)
        except subprocess.TimeoutExpired as exc:
            self.stop(process)
            raise UpgraderError(
                f"Command timed out after {effective_timeout}s: {cmd_str}"
            ) from exc
        except BaseException:
            self.stop(process)
            raise

        result = subprocess.CompletedProcess(cmd, process.returncode, stdout=stdout, stderr=stderr)

        if capture_output and result.stdout:
            self.logger.debug("Command output: %s", result.stdout.strip())

        if result.returncode == 0 or not check:
            return result

        stderr = (result.stderr or "").strip() if capture_output else ""
        message = f"Command failed ({result.returncode}): {cmd_str}"
        if stderr:
            message = f"{message}\n{stderr}"
        raise CommandError(message, command=cmd, returncode=result.returncode, stderr=stderr)

    def stop(self, process: subprocess.Popen):
        """Sends SIGTERM, waits the grace period, then SIGKILL."""
        if process.poll() is None:
            self.logger.debug("Stopping PID %s", process.pid)
            process.terminate()
            try:
                process.wait(timeout=self.stop_grace_seconds)
            except subprocess.TimeoutExpired:
                self.logger.debug("PID %s ignored SIGTERM; killing it", process.pid)
                process.kill()
                process.wait()

        for stream in (process.stdout, process.stderr):
            if stream is not None:
                stream.close()

    def _trace(self, cmd_str: str):
        if self.xtrace:
            self.trace_stream.write(f"+ {cmd_str}\n")
            self.trace_stream.flush()

        if not self.trace_commands:
            return

        frame = inspect.currentframe()
        while frame is not None and frame.f_globals.get("__name__") == __name__:
            frame = frame.f_back
        if frame is None:
            self.logger.info("[main] %s", cmd_str)
            return
        self.logger.info("[%s:%s] %s", frame.f_code.co_name, frame.f_lineno, cmd_str)

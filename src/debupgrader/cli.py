import logging
import logging.handlers
import os
from typing import List, Optional, Tuple

import click
from rich.logging import RichHandler

from .constants import (
    CONFFILE_POLICIES,
    DEFAULT_CONFIG_FILE,
    EXIT_INVALID_ARGS,
    LOCK_TIMEOUT_SECONDS,
    LOG_FILE_MODE,
    PROGRAM_NAME,
)
from .core import DebianUpgrader, UpgraderError, console
from .models import RunConfiguration, SystemPaths
from .services.config_loader import ConfigLoader
from .services.reporter import ConsoleFilter

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"

_console_handler = RichHandler(console=console, rich_tracebacks=True, show_path=False)
_console_handler.addFilter(ConsoleFilter())

logging.basicConfig(
    level="INFO",
    format="%(message)s",
    datefmt="[%X]",
    handlers=[_console_handler],
)

_run_handlers: List[logging.Handler] = []


class UpgradeCommand(click.Command):
    """Reports every command-line usage error with the invalid-arguments exit code."""

    def parse_args(self, ctx, args):
        try:
            return super().parse_args(ctx, args)
        except click.UsageError as exc:
            exc.exit_code = EXIT_INVALID_ARGS
            raise


def _invalid_arguments(message: str) -> click.ClickException:
    exc = click.ClickException(message)
    exc.exit_code = EXIT_INVALID_ARGS
    return exc


def _resolve_option(cli_value, config, key, default=None):
    if cli_value is not None:
        return cli_value
    if key in config:
        return config[key]
    return default


def parse_services(value: Optional[str]) -> Tuple[str, ...]:
    if not value:
        return ()
    return tuple(item.strip() for item in str(value).split(",") if item.strip())


def _configure_logging(logger: logging.Logger, log_file: str, verbose: bool, use_syslog: bool):
    for handler in _run_handlers:
        logger.removeHandler(handler)
        handler.close()
    _run_handlers.clear()

    level = logging.DEBUG if verbose else logging.INFO
    logging.getLogger().setLevel(level)
    logger.setLevel(level)

    try:
        os.makedirs(os.path.dirname(log_file) or ".", exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        os.chmod(log_file, LOG_FILE_MODE)
    except OSError as exc:
        logger.warning("Cannot write log file %s: %s", log_file, exc)
    else:
        file_handler.setLevel(level)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(file_handler)
        _run_handlers.append(file_handler)

    if not use_syslog:
        return

    try:
        syslog_handler = logging.handlers.SysLogHandler(
            address="/dev/log",
            facility=logging.handlers.SysLogHandler.LOG_USER,
        )
    except OSError as exc:
        logger.warning("Syslog unavailable, continuing without it: %s", exc)
        return
    syslog_handler.ident = f"{PROGRAM_NAME}: "
    syslog_handler.setLevel(level)
    syslog_handler.setFormatter(logging.Formatter("[%(levelname)s] %(message)s"))
    logger.addHandler(syslog_handler)
    _run_handlers.append(syslog_handler)


@click.command(cls=UpgradeCommand, context_settings={"help_option_names": ["-h", "--help"]})
@click.option(
    "--services",
    required=False,
    help="Comma-separated services to verify after the upgrade (e.g. ssh,nginx).",
)
@click.option(
    "--conffile-policy",
    required=False,
    type=click.Choice(CONFFILE_POLICIES),
    help="How to resolve changed configuration files: replace (default) or keep.",
)
@click.option(
    "--skip-reboot-check",
    is_flag=True,
    default=None,
    help="Don't warn about reboot at the end.",
)
@click.option(
    "--reset",
    is_flag=True,
    default=False,
    help="Clear step markers and exit, so the next run starts fresh.",
)
@click.option(
    "--dry-run",
    is_flag=True,
    default=None,
    help="Report what would be done without changing the system.",
)
@click.option("--verbose", "-v", is_flag=True, default=None, help="Enable debug output.")
@click.option(
    "--trace-commands",
    is_flag=True,
    default=None,
    help="Log every executed command with its call site.",
)
@click.option("--syslog", is_flag=True, default=None, help="Also send log output to syslog.")
@click.option(
    "--force",
    "-f",
    is_flag=True,
    default=None,
    help="Skip the snapshot reminder pause.",
)
@click.option(
    "--config",
    required=False,
    type=click.Path(),
    help=f"Path to a YAML configuration file. Defaults to {DEFAULT_CONFIG_FILE} if present.",
)
def main(
    services,
    conffile_policy,
    skip_reboot_check,
    reset,
    dry_run,
    verbose,
    trace_commands,
    syslog,
    force,
    config,
):
    """Upgrade Debian 12 (bookworm) to Debian 13 (trixie) in resumable steps."""
    logger = logging.getLogger("debupgrader")

    try:
        config_loader = ConfigLoader()
        resolved_config = config
        if resolved_config is None and os.path.exists(DEFAULT_CONFIG_FILE):
            resolved_config = DEFAULT_CONFIG_FILE

        config_values = config_loader.load(resolved_config)
    except UpgraderError as exc:
        raise _invalid_arguments(str(exc)) from exc

    xtrace = os.environ.get("TRACE") == "1"
    verbose = bool(_resolve_option(verbose, config_values, "verbose", default=False))
    syslog = bool(_resolve_option(syslog, config_values, "syslog", default=False))

    defaults = SystemPaths()
    paths = SystemPaths(
        log_file=config_values.get("log_file") or defaults.log_file,
        state_dir=config_values.get("state_dir") or defaults.state_dir,
        lock_file=config_values.get("lock_file") or defaults.lock_file,
    )

    try:
        run_config = RunConfiguration(
            dry_run=bool(_resolve_option(dry_run, config_values, "dry_run", default=False)),
            verbose=verbose,
            syslog=syslog,
            trace_commands=bool(
                _resolve_option(trace_commands, config_values, "trace_commands", default=False)
            ),
            xtrace=xtrace,
            force=bool(_resolve_option(force, config_values, "force", default=False)),
            conffile_policy=str(
                _resolve_option(conffile_policy, config_values, "conffile_policy", default="replace")
            ),
            skip_reboot_check=bool(
                _resolve_option(skip_reboot_check, config_values, "skip_reboot_check", default=False)
            ),
            reset=reset,
            services=parse_services(_resolve_option(services, config_values, "services")),
            lock_timeout=float(config_values.get("lock_timeout", LOCK_TIMEOUT_SECONDS)),
            paths=paths,
        )
    except (TypeError, ValueError) as exc:
        raise _invalid_arguments(str(exc)) from exc

    _configure_logging(logger, paths.log_file, verbose or xtrace, syslog)

    raise SystemExit(DebianUpgrader(run_config).run())


if __name__ == "__main__":
    main()

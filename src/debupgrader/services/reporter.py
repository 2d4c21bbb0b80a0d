"""Leveled console and log reporting helpers."""

import logging

from rich.rule import Rule
from rich.theme import Theme

SUCCESS = 25
logging.addLevelName(SUCCESS, "OK")

THEME = Theme(
    {
        "logging.level.ok": "green",
        "logging.level.warning": "yellow",
        "logging.level.debug": "cyan",
    }
)

FILE_ONLY = {"console": False}


class ConsoleFilter(logging.Filter):
    """Drops records that were already rendered on the console by other means."""

    def filter(self, record: logging.LogRecord) -> bool:
        return getattr(record, "console", True)


class Reporter:
    """Prints step banners and success lines to the console and the log."""

    BANNER_WIDTH = 63

    def __init__(self, logger: logging.Logger, console):
        self.logger = logger
        self.console = console

    def success(self, message: str, *args):
        self.logger.log(SUCCESS, message, *args)

    def step(self, index: int, total: int, title: str):
        label = f"[Step {index}/{total}] {title}"
        self.console.print()
        self.console.print(Rule(f"[bold blue]{label}[/bold blue]", align="left"))
        self.logger.info(label, extra=FILE_ONLY)

    def banner(self, title: str):
        line = "=" * self.BANNER_WIDTH
        self.console.print(f"\n[bold]{line}[/bold]")
        self.console.print(f"[bold]{title.center(self.BANNER_WIDTH)}[/bold]")
        self.console.print(f"[bold]{line}[/bold]")
        self.logger.info(title, extra=FILE_ONLY)

"""Operator-facing progress output."""

from rich.console import Console
from rich.markup import escape

from kata_manager.logging_config import get_logger

logger = get_logger(__name__)


class Reporter:
    """Prints tagged progress lines to the terminal and mirrors them to the log."""

    def __init__(self, console: Console | None = None):
        self.console = console or Console()

    def info(self, message: str) -> None:
        logger.info(message)
        self.console.print(f"[blue]\\[INFO][/blue]  {escape(message)}")

    def ok(self, message: str) -> None:
        logger.info(message)
        self.console.print(f"[green]\\[OK][/green]    {escape(message)}")

    def warn(self, message: str) -> None:
        logger.warning(message)
        self.console.print(f"[yellow]\\[WARN][/yellow]  {escape(message)}")

    def error(self, message: str) -> None:
        logger.error(message)
        self.console.print(f"[red]\\[ERROR][/red] {escape(message)}")

    def dry_run(self, message: str) -> None:
        self.warn(f"[DRY-RUN] {message}")

    def echo(self, message: str = "") -> None:
        self.console.print(escape(message))

    def banner(self, *lines: str) -> None:
        self.console.print("=" * 44)
        for line in lines:
            self.console.print(f"  {escape(line)}")
        self.console.print("=" * 44)
        self.console.print()

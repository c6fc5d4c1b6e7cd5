"""Rich console and logging setup."""

import logging

from rich.console import Console
from rich.logging import RichHandler

console = Console()


def setup_logging(*, verbose: bool = False, quiet: bool = False) -> None:
    """Configure the root logger with a Rich handler."""
    level = logging.DEBUG if verbose else (logging.ERROR if quiet else logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=verbose)],
        force=True,
    )

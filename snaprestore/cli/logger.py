"""
CLI logging.

- configure_logging: process-wide file logging (the terminal belongs to the TUI)
- CLILogger: operator-facing lines for the headless commands
"""

from __future__ import annotations

import logging
from pathlib import Path

import typer

LOG_FORMAT = '%(asctime)s | %(levelname)s | %(name)s | %(message)s'


def configure_logging(log_file: Path, verbose: bool = False) -> logging.Logger:
    """
    Send the package's log records to a file. Safe to call more than once.

    Args:
        log_file: Log file path (parent directories are created)
        verbose: Log at DEBUG instead of INFO

    Returns:
        The package root logger
    """
    log_file = log_file.expanduser()
    log_file.parent.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger('snaprestore')
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    logger.propagate = False

    if not any(
        isinstance(handler, logging.FileHandler) and handler.baseFilename == str(log_file.resolve())
        for handler in logger.handlers
    ):
        file_handler = logging.FileHandler(log_file, encoding='utf-8')
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(file_handler)

    return logger


class CLILogger:
    """
    Operator-facing logger for the headless commands.

    Outputs messages to stdout/stderr with optional verbose mode.
    """

    def __init__(self, verbose: bool = False) -> None:
        """
        Initialize CLI logger.

        Args:
            verbose: If True, show info messages. If False, only warnings/errors.
        """
        self.verbose = verbose

    async def info(self, message: str) -> None:
        """Log info message (only if verbose)."""
        if self.verbose:
            typer.echo(f'[INFO] {message}')

    async def warning(self, message: str) -> None:
        """Log warning message."""
        typer.secho(f'[WARNING] {message}', fg=typer.colors.YELLOW, err=True)

    async def error(self, message: str) -> None:
        """Log error message."""
        typer.secho(f'[ERROR] {message}', fg=typer.colors.RED, err=True)

"""
Memory Hub — Logging
Console output through rich, optional rotating log file.

Modules log through `logging.getLogger(__name__)`; this module only
wires handlers onto the package logger once, at daemon start.
"""
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

PACKAGE_LOGGER = "memory_hub"
FILE_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

console = Console(stderr=True)


def configure_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    max_bytes: int = 5 * 1024 * 1024,
    backup_count: int = 3,
) -> logging.Logger:
    """
    Install handlers on the package logger. Safe to call repeatedly;
    handlers from an earlier call are replaced.
    """
    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.setLevel(getattr(logging, str(level).upper(), logging.INFO))
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    console_handler = RichHandler(
        console=console,
        show_path=False,
        rich_tracebacks=True,
        log_time_format="[%X]",
    )
    console_handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
    logger.addHandler(console_handler)

    if log_file:
        path = Path(log_file).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
        )
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt=DATE_FORMAT))
        logger.addHandler(file_handler)

    logger.propagate = False
    return logger


def print_status(status: dict) -> None:
    """Render MemoryHub.status() for an operator."""
    table = Table(title="Memory Hub", show_header=True, header_style="bold")
    table.add_column("Component")
    table.add_column("State")
    for key, value in status.items():
        if isinstance(value, dict):
            value = ", ".join(f"{k}={v}" for k, v in value.items())
        table.add_row(str(key), str(value))
    console.print(table)

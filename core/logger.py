"""
Logging for the Trailing Stop Engine.

Components log through ``get_logger(component)``; the component name travels
in ``extra[component]`` and prefixes every line. ``setup_logger`` installs:

- a rotating text log
- an optional JSON-lines log (loguru ``serialize``) for log shippers
- colored stderr output
"""
from __future__ import annotations

import sys
from pathlib import Path
from typing import Any

from loguru import logger
from rich.console import Console
from rich.theme import Theme

DEFAULT_COMPONENT = "trailing_stop"

TEXT_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | "
    "{extra[component]: <16} | {message}"
)
STDERR_FORMAT = (
    "<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{extra[component]: <16}</cyan> | <level>{message}</level>"
)

# CLI output (tables, outcomes); log records go through loguru instead
console = Console(theme=Theme({
    "info": "cyan",
    "warning": "yellow",
    "error": "bold red",
    "paused": "bold white on red",
    "success": "bold green",
}))

# Records from unbound loggers still render
logger.configure(extra={"component": DEFAULT_COMPONENT})


def _rotating_sink(path: str, rotation: str, retention: str) -> dict[str, Any]:
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    return {
        'sink': path,
        'rotation': rotation,
        'retention': retention,
        'compression': "zip",
        'enqueue': True,
    }


def setup_logger(
    log_file: str = "logs/trailing_stop.log",
    level: str = "INFO",
    rotation: str = "10 MB",
    retention: str = "7 days",
    json_file: str = "",
    console_output: bool = True,
) -> Any:
    """
    Replace loguru's default handler with the engine's sinks.

    Args:
        log_file: Text log path
        level: Minimum level for every sink
        rotation: Rotation trigger, e.g. "10 MB" or "1 day"
        retention: How long rotated files are kept
        json_file: JSON-lines log path; empty disables it
        console_output: Also log to stderr (off for quiet CLI commands)

    Returns:
        The configured loguru logger
    """
    logger.remove()

    logger.add(
        format=TEXT_FORMAT,
        level=level,
        backtrace=True,
        diagnose=False,
        **_rotating_sink(log_file, rotation, retention),
    )

    if json_file:
        logger.add(level=level, serialize=True, **_rotating_sink(json_file, rotation, retention))

    if console_output:
        logger.add(sys.stderr, format=STDERR_FORMAT, level=level, colorize=True, enqueue=True)

    get_logger("logger").info(
        f"Logging to {log_file}{f' and {json_file}' if json_file else ''} at {level}"
    )
    return logger


def get_logger(component: str = DEFAULT_COMPONENT) -> Any:
    """Logger whose records are tagged with ``component``."""
    return logger.bind(component=component)

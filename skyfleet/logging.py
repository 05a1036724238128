"""Logging configuration for skyfleet.

Structured logging via loguru. The library is silent by default; call
``setup_logging`` to add sinks and ``teardown_logging`` to remove them.

Example:
    from skyfleet.logging import LogConfig, setup_logging, teardown_logging

    handlers = setup_logging(LogConfig(level="DEBUG", console=True))
    ...
    teardown_logging(handlers)
"""

from __future__ import annotations

import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal

from loguru import logger

logger.disable("skyfleet")

type LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "TRACE"]

_CONTEXT_KEYS = (
    "actor", "component", "node", "template", "instance_id", "request_id",
)


def _format_context(record: Any) -> str:
    extra = record.get("extra", {})
    parts = [f"{k}={extra[k]}" for k in _CONTEXT_KEYS if k in extra]
    return f" [{' '.join(parts)}]" if parts else ""


CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan>"
    "<dim>{extra[_ctx]}</dim> - "
    "<level>{message}</level>"
)

FILE_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | "
    "{name}:{function}:{line}{extra[_ctx]} - {message}"
)


@dataclass(frozen=True, slots=True)
class LogConfig:
    """Attributes:
        level: Minimum log level for the console sink.
        file: Path to a log file; ``None`` disables file output.
        console: Whether to log to stderr.
        rotation: File rotation policy (e.g., "50 MB", "1 day").
        retention: Number of old log files to keep.
    """

    level: LogLevel = "INFO"
    file: str | None = ".skyfleet/skyfleet.log"
    console: bool = False
    rotation: str = "50 MB"
    retention: int = 10


def setup_logging(config: LogConfig) -> list[int]:
    """Enable skyfleet logging and return the ids of the sinks added."""
    logger.enable("skyfleet")
    logger.configure(patcher=lambda r: r["extra"].update(_ctx=_format_context(r)))
    handler_ids: list[int] = []

    if config.console:
        hid = logger.add(
            sys.stderr,
            level=config.level,
            format=CONSOLE_FORMAT,
            colorize=True,
            filter="skyfleet",
        )
        handler_ids.append(hid)

    if config.file:
        Path(config.file).parent.mkdir(parents=True, exist_ok=True)
        hid = logger.add(
            config.file,
            level="DEBUG",
            format=FILE_FORMAT,
            filter="skyfleet",
            rotation=config.rotation,
            retention=config.retention,
            compression="zip",
            diagnose=False,
        )
        handler_ids.append(hid)

    return handler_ids


def teardown_logging(handler_ids: list[int]) -> None:
    for hid in handler_ids:
        logger.remove(hid)
    logger.disable("skyfleet")

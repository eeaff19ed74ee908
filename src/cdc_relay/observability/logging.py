"""structlog setup shared by every relay command."""

from __future__ import annotations

import logging
import sys
from typing import Any

import structlog

from cdc_relay.config.models import LoggingConfig


def configure_logging(level: str = "INFO", json_output: bool = False) -> None:
    """Route structlog through stdlib logging on stderr.

    ``json_output`` switches the console renderer for one JSON object per line.
    """
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        msg = f"Unknown log level '{level}'"
        raise ValueError(msg)

    logging.basicConfig(
        format="%(message)s", stream=sys.stderr, level=numeric_level, force=True
    )
    # Broker client chatter stays at WARNING or above.
    for noisy in ("aio_pika", "aiormq"):
        logging.getLogger(noisy).setLevel(max(numeric_level, logging.WARNING))

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.format_exc_info,
    ]
    if json_output:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )


def configure_from(config: LoggingConfig) -> None:
    configure_logging(config.level, config.json_output)

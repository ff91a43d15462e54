"""Structured logging configuration for telelog.

Three output modes:
- interactive terminal: structlog's coloured console renderer
- under systemd (``JOURNAL_STREAM`` set): logfmt without timestamps, since
  journald stamps every line itself
- anything else: one JSON object per line

Third-party loggers (httpx) go through the same formatter.
"""

import logging
import os
import sys
from typing import cast

import structlog


def _renderer() -> structlog.types.Processor:
    if sys.stderr.isatty():
        return structlog.dev.ConsoleRenderer()
    if os.environ.get("JOURNAL_STREAM"):
        return structlog.processors.LogfmtRenderer(key_order=["level", "event"])
    return structlog.processors.JSONRenderer(ensure_ascii=False)


def configure_logging(service_name: str = "telelog", level: str = "INFO") -> None:
    """Configure structured logging for the relay.

    Args:
        service_name: Value bound as ``service`` on every log entry
        level: Log level name ('DEBUG', 'INFO', ...)
    """
    log_level = logging.getLevelName(level.upper())
    if not isinstance(log_level, int):
        log_level = logging.INFO

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
    ]
    if not os.environ.get("JOURNAL_STREAM"):
        shared_processors.append(structlog.processors.TimeStamper(fmt="iso", utc=True))

    structlog.configure(
        processors=shared_processors
        + [
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared_processors,
            processor=_renderer(),
        )
    )
    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(log_level)

    # httpx logs each request URL at INFO, and the URL carries the bot token
    logging.getLogger("httpx").setLevel(max(log_level, logging.WARNING))

    structlog.contextvars.bind_contextvars(service=service_name, host=os.uname().nodename)


def get_logger(name: str | None = None) -> structlog.BoundLogger:
    """Get a logger instance."""
    return cast(structlog.BoundLogger, structlog.get_logger(name))

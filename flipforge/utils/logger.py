"""
Logging for pipeline runs.

Every event goes through structlog as key/value pairs on stderr, leaving
stdout to the CLI's tables and JSON. While a driver node runs, the product,
account and phase it works on are bound through contextvars, so research
providers and the Claude client log them without passing them around.
"""

import logging
import sys
from typing import Optional

import structlog
from structlog.types import Processor

# Client libraries that log each HTTP request at INFO
NOISY_LOGGERS = ("httpx", "httpcore", "anthropic")


def _processors(json_format: bool) -> list[Processor]:
    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.format_exc_info,
    ]
    if json_format:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    return processors


def setup_logging(
    level: str = "INFO",
    json_format: bool = True,
    log_file: Optional[str] = None,
) -> None:
    """
    Configure structlog and the stdlib root logger for a pipeline process.

    The CLI calls this once per command: WARNING by default, DEBUG with
    --verbose, console rendering for humans and JSON lines for collectors.

    Args:
        level: Level name such as "INFO" or "WARNING".
        json_format: JSON lines instead of the colored console renderer.
        log_file: Also append stdlib records to this file.
    """
    log_level = getattr(logging, level.upper())

    structlog.configure(
        processors=_processors(json_format),
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=log_level)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(log_level)
        logging.getLogger().addHandler(file_handler)


def get_logger(name: str) -> structlog.BoundLogger:
    return structlog.get_logger(name)


class LogContext:
    """
    Bind product_id, account_id, phase and similar keys for the enclosed block.

    Keys given as None are skipped, so callers can pass whatever identifiers
    the current graph state holds.

    Example:
        >>> with LogContext(product_id="p1", account_id="acct-1", phase=2):
        ...     logger.info("Phase started")
    """

    def __init__(self, **kwargs):
        self.context = {k: v for k, v in kwargs.items() if v is not None}
        self._bound = False

    def __enter__(self):
        structlog.contextvars.bind_contextvars(**self.context)
        self._bound = True
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._bound:
            structlog.contextvars.unbind_contextvars(*self.context.keys())
            self._bound = False

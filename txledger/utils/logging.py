"""
Structured logging configuration using structlog.

Log lines go to stderr so that commands printing ledger JSON on stdout
(export) stay machine-readable.
"""

import logging
import sys
from typing import Any, Optional

import structlog
from structlog.typing import EventDict, Processor


def _shorten_hashes(_, __, event_dict: EventDict) -> EventDict:
    """Abbreviate 32-byte tx hashes in console output."""
    value = event_dict.get("tx_hash")
    if isinstance(value, str) and len(value) == 66:
        event_dict["tx_hash"] = f"{value[:10]}…{value[-6:]}"
    return event_dict


def setup_logging(log_level: str = "INFO", json_logs: Optional[bool] = None) -> None:
    """Configure structured logging for the ledger.

    ``json_logs`` defaults to JSON output unless stderr is a terminal.
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=level,
    )

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    if json_logs is None:
        json_logs = not sys.stderr.isatty()

    if json_logs:
        processors = shared_processors + [
            structlog.processors.dict_tracebacks,
            structlog.processors.JSONRenderer()
        ]
    else:
        processors = shared_processors + [
            _shorten_hashes,
            structlog.dev.ConsoleRenderer(colors=True)
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.BoundLogger:
    """Get a logger, bound to a module or component name when given."""
    logger = structlog.get_logger()
    if name:
        logger = logger.bind(module=name)
    return logger


class LoggerMixin:
    """Gives services a ``log`` property bound to the class name."""

    @property
    def log(self) -> structlog.BoundLogger:
        if not hasattr(self, "_logger"):
            self._logger = get_logger(self.__class__.__name__)
        return self._logger


def log_context(**kwargs: Any):
    """Bind key/values (user, chain) to every log line emitted in scope."""
    return structlog.contextvars.bound_contextvars(**kwargs)

"""
Structured logging configuration using structlog.

Every record carries the service name and the process role (api, worker or
all) so API and reconciliation output can be told apart once aggregated.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.typing import EventDict, Processor, WrappedLogger

SERVICE_NAME = "agentpay"

# Third-party loggers held at WARNING or above
QUIET_LOGGERS = ("httpx", "httpcore", "web3", "sqlalchemy.engine", "aiosqlite")


def add_service(role: str) -> Processor:
    """Processor stamping the service name and process role on each event."""

    def processor(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
        event_dict.setdefault("service", SERVICE_NAME)
        event_dict.setdefault("role", role)
        return event_dict

    return processor


def setup_logging(log_level: str = "INFO", role: str = "api") -> None:
    """
    Configure structured logging for the application.

    Args:
        log_level: Minimum level for engine loggers
        role: Process role stamped on every record ("api", "worker", "all")
    """

    level = getattr(logging, log_level.upper(), logging.INFO)

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=level,
    )
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        add_service(role),
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]

    # Development: colored console output
    # Production: JSON output
    if sys.stderr.isatty():
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(colors=True)
        ]
    else:
        processors = shared_processors + [
            structlog.processors.dict_tracebacks,
            structlog.processors.JSONRenderer()
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.BoundLogger:
    """Get a logger instance with optional name binding."""
    logger = structlog.get_logger()
    if name:
        logger = logger.bind(module=name)
    return logger


class LoggerMixin:
    """Mixin class to add logging to any class."""

    @property
    def log(self) -> structlog.BoundLogger:
        """Get a logger bound to this class name."""
        if not hasattr(self, "_logger"):
            self._logger = get_logger(self.__class__.__name__)
        return self._logger


def log_context(**kwargs: Any) -> structlog.contextvars.bound_contextvars:
    """Context manager to add context to all log messages in scope, e.g. buyer and item."""
    return structlog.contextvars.bound_contextvars(**kwargs)

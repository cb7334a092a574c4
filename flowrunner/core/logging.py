"""Structured logging configuration.

Every module logs through ``get_logger(__name__)`` with keyword context.
Context bound with ``bind_job_context`` (queue, job id) is merged into each
event emitted while a job is processed.
"""

import sys
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import List

import structlog
from structlog.contextvars import bind_contextvars, merge_contextvars, unbind_contextvars

from flowrunner.core.config import Settings

# Library loggers capped at WARNING
NOISY_LOGGERS = (
    "apscheduler",
    "aiosqlite",
    "sqlalchemy.engine",
    "sqlalchemy.pool",
    "httpx",
    "httpcore",
    "uvicorn.access",
)


def _stdlib_handlers(settings: Settings, level: int) -> List[logging.Handler]:
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if settings.log_file:
        log_path = Path(settings.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path))
    for handler in handlers:
        handler.setLevel(level)
    return handlers


def _processors(settings: Settings) -> list:
    processors = [
        merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if settings.log_format == "json":
        return [
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            *processors,
            structlog.processors.JSONRenderer(),
        ]

    return [
        structlog.processors.TimeStamper(fmt="%H:%M:%S"),
        *processors,
        structlog.dev.ConsoleRenderer(
            colors=False,
            pad_event=35,
            exception_formatter=structlog.dev.plain_traceback,
        ),
    ]


def configure_logging(settings: Settings) -> None:
    """Configure stdlib logging and structlog from settings."""
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(level=level, handlers=_stdlib_handlers(settings, level),
                        format="%(message)s", force=True)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    structlog.configure(
        processors=_processors(settings),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


@contextmanager
def bind_job_context(queue: str, job_id: str):
    """Attach ``queue`` and ``job_id`` to every log event inside the block.

    Context variables are per asyncio task, so concurrent jobs do not see
    each other's ids.
    """
    bind_contextvars(queue=queue, job_id=job_id)
    try:
        yield
    finally:
        unbind_contextvars("queue", "job_id")


def log_execution_time(logger: structlog.BoundLogger, operation: str,
                       start_time: float, end_time: float, **kwargs) -> None:
    logger.info(
        "Operation completed",
        operation=operation,
        duration_ms=int((end_time - start_time) * 1000),
        **kwargs
    )


def log_store_operation(logger: structlog.BoundLogger, operation: str,
                        key: str, **kwargs) -> None:
    """Redis key operations, at debug level."""
    logger.debug("Store operation", operation=operation, key=key, **kwargs)

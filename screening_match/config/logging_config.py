"""Logging configuration using structlog. Log files go to ./tmp/ directory."""
import logging
import sys
from pathlib import Path
from typing import Optional

import structlog


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None
) -> None:
    """
    Configure structured logging.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional log filename (will be created in ./tmp/)
    """
    handlers = [logging.StreamHandler(sys.stdout)]

    if log_file:
        tmp_dir = Path("./tmp")
        tmp_dir.mkdir(exist_ok=True)
        handlers.append(logging.FileHandler(tmp_dir / log_file))

    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, log_level.upper()),
        handlers=handlers,
        force=True
    )

    # Matching runs are audited in their own tables; SQL echo is only noise here
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer() if not log_file else structlog.processors.JSONRenderer()
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper())
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True
    )


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


def bind_execution_ref(execution_ref: str) -> None:
    """Attach a matching run's reference to every log line emitted in this context."""
    structlog.contextvars.bind_contextvars(execution_ref=execution_ref)


def unbind_execution_ref() -> None:
    structlog.contextvars.unbind_contextvars("execution_ref")

"""Structured logging for the iris workflow.

Uses structlog for JSON-formatted, machine-readable logs. Every module gets
its logger through get_logger() and logs events with key/value context
(stage, channel, post_id, ...) instead of formatted strings.
"""
import logging
import logging.handlers
from pathlib import Path

import structlog


def configure_logging(log_dir: str = "logs", level: str = "INFO") -> None:
    """Configure structlog with a JSON renderer and a rotating file handler.

    Args:
        log_dir: Directory for log files. Created if it doesn't exist.
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
    """
    log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    # File handler with rotation (10MB, keep 5)
    file_handler = logging.handlers.RotatingFileHandler(
        log_path / "iris_workflow.jsonl",
        maxBytes=10_000_000,
        backupCount=5,
        encoding="utf-8",
    )

    logging.basicConfig(
        format="%(message)s",
        level=numeric_level,
        handlers=[file_handler],
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str):
    """Get a named structlog logger.

    Args:
        name: Logger name, typically the module or component name.
    """
    return structlog.get_logger(name)

"""Logging configuration using structlog for structured logging."""

import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Any, Dict, Optional, Sequence

import structlog
from structlog.types import FilteringBoundLogger


def configure_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    json_logs: bool = False,
) -> FilteringBoundLogger:
    """Configure structured logging with structlog.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        log_file: Optional log file path for file logging
        json_logs: Whether to use JSON formatting on the console

    Returns:
        Configured structlog logger
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="ISO"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if json_logs:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()))

    # Console output goes to stderr so CLI results on stdout stay parseable
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=numeric_level,
    )

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            log_path,
            maxBytes=5 * 1024 * 1024,
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.setLevel(numeric_level)
        file_handler.setFormatter(logging.Formatter("%(message)s"))
        logging.getLogger().addHandler(file_handler)

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )

    return structlog.get_logger()


def get_logger(name: str, **initial_context: Any) -> FilteringBoundLogger:
    """Get a logger instance with optional initial context.

    Args:
        name: Logger name (typically __name__)
        **initial_context: Initial context to bind to logger

    Returns:
        Configured logger with bound context
    """
    logger = structlog.get_logger(name)
    if initial_context:
        logger = logger.bind(**initial_context)
    return logger


def log_command(
    logger: FilteringBoundLogger,
    argv: Sequence[str],
    returncode: Optional[int],
    duration_ms: float,
    **context: Any,
) -> None:
    """Log the outcome of an external command.

    Args:
        logger: Structlog logger instance
        argv: Command line that was executed
        returncode: Process exit code, None when it never finished
        duration_ms: Wall time in milliseconds
        **context: Additional context
    """
    logger.debug(
        "External command finished",
        argv=list(argv),
        returncode=returncode,
        duration_ms=round(duration_ms, 1),
        metric_type="command",
        **context,
    )


def log_health_probe(
    logger: FilteringBoundLogger,
    strategy: str,
    online: bool,
    duration_ms: float,
    **context: Any,
) -> None:
    """Log a single health probe result."""
    logger.debug(
        "Health probe",
        strategy=strategy,
        online=online,
        duration_ms=round(duration_ms, 1),
        metric_type="health_probe",
        **context,
    )


def sanitize_log_data(data: Dict[str, Any]) -> Dict[str, Any]:
    """Remove sensitive information from log data.

    Args:
        data: Dictionary that may contain sensitive information

    Returns:
        Sanitized dictionary with sensitive values masked
    """
    sensitive_keys = {
        "password",
        "token",
        "key",
        "secret",
        "authorization",
        "api_key",
        "access_token",
        "refresh_token",
        "jwt",
        "credential",
    }

    sanitized = data.copy()

    for key, value in data.items():
        if any(sensitive in key.lower() for sensitive in sensitive_keys):
            sanitized[key] = "[REDACTED]"
        elif isinstance(value, dict):
            sanitized[key] = sanitize_log_data(value)

    return sanitized

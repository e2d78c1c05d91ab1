"""Structured logging for stream-loader, built on structlog.

Every event is one JSON object on stdout (and optionally a daily log file)
carrying an ISO-8601 timestamp, level and logger name. Loader components log
dotted event names (``loader.started``, ``stage.upload.retry``,
``batch.completed``) and bind ``run_id``, ``table`` and ``batch_seq``.

Connection strings travel through the loader as settings, options and inside
driver error messages, so the sanitizer works on two levels:
- values under sensitive keys are replaced entirely
- credentials embedded in any string value (``postgresql://user:pw@host``,
  ``password=pw``) are masked in place, keeping the rest of the message

Configuration:
- LOG_LEVEL: DEBUG, INFO, WARNING, ERROR or CRITICAL. Default: INFO
- LOG_TO_FILE: Enable file logging (1, true, yes). Default: disabled
- LOG_FILE_DIR: Directory for log files. Default: logs/

Usage:
    >>> from stream_loader.utils.logging import get_logger
    >>> logger = get_logger(__name__)
    >>> logger.info("loader.started", table="orders", run_id="a1b2c3")
"""

import logging
import os
import re
from datetime import datetime
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
from typing import Any, Dict, MutableMapping

import structlog
from structlog.types import EventDict, Processor

from stream_loader.config import get_settings

# Keys whose whole value is withheld
SENSITIVE_PATTERNS = [
    re.compile(r".*password.*", re.IGNORECASE),
    re.compile(r".*token.*", re.IGNORECASE),
    re.compile(r".*secret.*", re.IGNORECASE),
    re.compile(r"^dsn$", re.IGNORECASE),
    re.compile(r"^DATABASE_URL$", re.IGNORECASE),
    re.compile(r"^connection_url$", re.IGNORECASE),
]

# Credentials inside free text: URL userinfo and libpq keyword pairs
_URL_PASSWORD = re.compile(r"(?P<prefix>\b[a-z][a-z0-9+.-]*://[^:/@\s]+:)[^@\s]+(?=@)", re.IGNORECASE)
_KEYWORD_PASSWORD = re.compile(r"(?P<prefix>\bpassword\s*=\s*)('[^']*'|\S+)", re.IGNORECASE)

REDACTED_VALUE = "[REDACTED]"


def mask_credentials(text: str) -> str:
    """Mask passwords embedded in connection strings within ``text``.

    Args:
        text: Any message, e.g. a DSN or a psycopg2 error string

    Returns:
        The same text with every embedded password replaced by [REDACTED]

    Example:
        >>> mask_credentials("could not connect to postgresql://app:s3cr3t@db:5432/sales")
        'could not connect to postgresql://app:[REDACTED]@db:5432/sales'
        >>> mask_credentials("host=db user=app password=s3cr3t")
        'host=db user=app password=[REDACTED]'
    """
    masked = _URL_PASSWORD.sub(lambda m: m.group("prefix") + REDACTED_VALUE, text)
    return _KEYWORD_PASSWORD.sub(lambda m: m.group("prefix") + REDACTED_VALUE, masked)


def sanitize_for_logging(data: Dict[str, Any]) -> Dict[str, Any]:
    """Redact sensitive values from a dictionary before logging.

    Redacts values for keys matching password, token or secret (substring,
    case-insensitive) and the connection keys DATABASE_URL, dsn and
    connection_url. String values under other keys keep their text with
    embedded credentials masked. Nested dictionaries are handled recursively.

    Args:
        data: Dictionary that may contain sensitive data

    Returns:
        New dictionary with sensitive values replaced by [REDACTED]

    Example:
        >>> sanitize_for_logging({"password": "secret123", "user": "admin"})
        {'password': '[REDACTED]', 'user': 'admin'}
    """
    sanitized: Dict[str, Any] = {}
    for key, value in data.items():
        if any(pattern.match(key) for pattern in SENSITIVE_PATTERNS):
            sanitized[key] = REDACTED_VALUE
        elif isinstance(value, dict):
            sanitized[key] = sanitize_for_logging(value)
        elif isinstance(value, str):
            sanitized[key] = mask_credentials(value)
        else:
            sanitized[key] = value
    return sanitized


def sanitization_processor(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> MutableMapping[str, Any]:
    """Structlog processor applying ``sanitize_for_logging`` before rendering.

    The incoming event dict is left untouched.
    """
    return sanitize_for_logging(dict(event_dict))


def _get_log_level() -> int:
    """Get log level from settings.

    Falls back to the raw LOG_LEVEL variable when settings fail validation,
    e.g. a production environment without a usable DATABASE_URL.

    Returns:
        Logging level constant (e.g., logging.INFO, logging.DEBUG)
    """
    try:
        level_name = get_settings().LOG_LEVEL.upper()
    except Exception:
        level_name = os.getenv("LOG_LEVEL", "INFO").upper()

    return getattr(logging, level_name, logging.INFO)


def _should_log_to_file() -> bool:
    return os.getenv("LOG_TO_FILE", "").lower() in ("1", "true", "yes")


def _get_log_file_path() -> Path:
    """Daily log file under LOG_FILE_DIR: ``stream-loader-YYYYMMDD.log``."""
    log_dir = Path(os.getenv("LOG_FILE_DIR", "logs"))
    log_dir.mkdir(parents=True, exist_ok=True)
    return log_dir / f"stream-loader-{datetime.now().strftime('%Y%m%d')}.log"


def _configure_structlog() -> None:
    """Configure structlog with JSON rendering and sanitization.

    Sets up stdlib handlers (stdout, plus a midnight-rotated file kept for
    30 days when LOG_TO_FILE is set) and the processor chain: level, logger
    name, ISO timestamp, sanitization, exception formatting, JSON. Values
    JSON cannot encode (Decimal, datetime, enums) are rendered with ``str``.
    """
    level = _get_log_level()
    logging.basicConfig(format="%(message)s", level=level, handlers=[])

    stdout_handler = logging.StreamHandler()
    stdout_handler.setLevel(level)
    logging.root.addHandler(stdout_handler)

    if _should_log_to_file():
        file_handler = TimedRotatingFileHandler(
            filename=str(_get_log_file_path()),
            when="midnight",
            interval=1,
            backupCount=30,
            encoding="utf-8",
        )
        file_handler.setLevel(level)
        logging.root.addHandler(file_handler)

    processors: list[Processor] = [
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        sanitization_processor,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer(default=str),
    ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


_configure_structlog()


def get_logger(name: str) -> Any:
    """Get a structlog BoundLogger instance.

    Args:
        name: Logger name (typically __name__ of the calling module)

    Returns:
        A structlog BoundLogger configured with JSON rendering and sanitization

    Example:
        >>> logger = get_logger(__name__)
        >>> logger.info("batch.sealed", batch_seq=3, rows=50000)
    """
    return structlog.get_logger(name)


def bind_context(**kwargs: Any) -> Any:
    """Create a logger with bound context fields.

    Args:
        **kwargs: Context fields to bind (e.g., run_id="a1b2c3", table="orders")

    Returns:
        A BoundLogger with the specified context already bound

    Example:
        >>> logger = bind_context(run_id="a1b2c3", table="orders")
        >>> logger.info("batch.completed", batch_seq=1)
    """
    return structlog.get_logger().bind(**kwargs)

"""Logging configuration for the token liquidity service.

Settlement code tags records with ``transaction_id`` (and ``needs_review``
when an operator has to look at a payout) through ``extra=``; the CLI tags
every record with ``pool_address`` through ``LogContext``. Both formatters
surface those fields so a single settlement can be followed through the log.
"""

from __future__ import annotations

import json
import logging
import re
import sys
from pathlib import Path
from typing import Any

CONTEXT_FIELDS = ("pool_address", "transaction_id", "needs_review")

TEXT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_SENSITIVE_KEYS = ("wallet_api_key", "api_key", "password", "secret", "authorization")
_SENSITIVE_PATTERN = re.compile(
    rf"({'|'.join(_SENSITIVE_KEYS)})['\"]?\s*[:=]?\s*['\"]?(bearer\s+)?[\w\-\.]+",
    re.IGNORECASE,
)
_BEARER_PATTERN = re.compile(r"bearer\s+[\w\-\.]+", re.IGNORECASE)


def redact(message: str) -> str:
    message = _SENSITIVE_PATTERN.sub(lambda match: f"{match.group(1)}=[REDACTED]", message)
    return _BEARER_PATTERN.sub("Bearer [REDACTED]", message)


def _context(record: logging.LogRecord) -> dict[str, Any]:
    return {
        field: getattr(record, field)
        for field in CONTEXT_FIELDS
        if getattr(record, field, None) is not None
    }


class PoolFormatter(logging.Formatter):
    """Text formatter that appends the settlement context and redacts secrets.

    ``pool_address`` is left out of the suffix; one process serves one pool.
    """

    def __init__(self, *, sanitize: bool = True) -> None:
        super().__init__(TEXT_FORMAT, datefmt=DATE_FORMAT)
        self.sanitize = sanitize

    def format(self, record: logging.LogRecord) -> str:
        record_copy = logging.makeLogRecord(record.__dict__)
        message = record_copy.getMessage()
        if self.sanitize:
            message = redact(message)
        context = _context(record)
        tags = []
        if "transaction_id" in context:
            tags.append(f"tx={context['transaction_id']}")
        if context.get("needs_review"):
            tags.append("REVIEW")
        if tags:
            message = f"{message} [{' '.join(tags)}]"
        record_copy.msg = message
        record_copy.args = ()
        return super().format(record_copy)


class StructuredFormatter(logging.Formatter):
    """One JSON object per record, settlement context at the top level."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": self.formatTime(record, DATE_FORMAT),
            "level": record.levelname,
            "logger": record.name,
            "message": redact(record.getMessage()),
        }
        log_data.update(_context(record))
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data, default=str)


def setup_logging(
    level: str = "INFO",
    *,
    structured: bool = False,
    sanitize: bool = True,
    log_file: str | None = None,
) -> None:
    """
    Configure logging for the application.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        structured: Use JSON structured logging
        sanitize: Redact credentials from text log messages
        log_file: Optional file path for log output
    """
    root_logger = logging.getLogger()
    root_logger.handlers.clear()

    log_level = getattr(logging, level.upper(), logging.INFO)
    root_logger.setLevel(log_level)

    formatter: logging.Formatter
    if structured:
        formatter = StructuredFormatter()
    else:
        formatter = PoolFormatter(sanitize=sanitize)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        try:
            log_path = Path(log_file)
            log_path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_file)
            file_handler.setLevel(log_level)
            file_handler.setFormatter(formatter)
            root_logger.addHandler(file_handler)
        except OSError as exc:
            root_logger.warning(
                "Failed to set up file logging to %s: %s", log_file, exc
            )

    logging.getLogger("aiohttp").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)


class LogContext:
    """Tag every record created inside the block with the given fields.

    Example:
        with LogContext(pool_address="bitcoincash:qq..."):
            logger.info("Starting reconciliation")
    """

    def __init__(self, **fields: Any) -> None:
        self.fields = fields
        self._previous = logging.getLogRecordFactory()

    def __enter__(self) -> "LogContext":
        previous = self._previous = logging.getLogRecordFactory()

        def record_factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
            record = previous(*args, **kwargs)
            for key, value in self.fields.items():
                setattr(record, key, value)
            return record

        logging.setLogRecordFactory(record_factory)
        return self

    def __exit__(self, *args: Any) -> None:
        logging.setLogRecordFactory(self._previous)

"""
Structured logging with run correlation and sensitive data masking.

Every log line emitted during an expiration run carries the run's ``job_id``,
so that the page fetches, per-reservation retries and the final report of
one invocation can be tied together in the log stream. Reservation reference
codes are masked down to their trailing suffix before they leave the process.

Usage:
    from fleet_expiry.logging import LogContext, get_logger

    logger = get_logger(__name__)

    with LogContext(job_id=run.run_id):
        logger.info(
            "Booking expired successfully",
            reservation_id=reservation.id,
            reference=reservation.reference,  # emitted as ***-001
        )
"""
from __future__ import annotations

import json
import logging
import re
import sys
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from typing import Any, Optional, Sequence

from .constants import LoggingConfig

# Run correlation id, inherited by tasks spawned inside the run
job_id_var: ContextVar[Optional[str]] = ContextVar("job_id", default=None)


# =============================================================================
# Sensitive Data Masking
# =============================================================================

def mask_reference(value: Optional[str], visible: int = LoggingConfig.REFERENCE_VISIBLE_CHARS) -> str:
    """Mask a reference code down to its trailing suffix.

    Args:
        value: The reference code (e.g. "BK-2024-001")
        visible: Number of trailing characters to keep

    Returns:
        Masked reference (e.g. "***-001")
    """
    if not value:
        return LoggingConfig.REFERENCE_MASK_PREFIX
    if len(value) <= visible:
        return LoggingConfig.REFERENCE_MASK_PREFIX
    return f"{LoggingConfig.REFERENCE_MASK_PREFIX}{value[-visible:]}"


def is_sensitive_key(key: str) -> bool:
    """Check if a key name indicates secret data."""
    key_lower = key.lower().replace("-", "_")
    return key_lower in LoggingConfig.SENSITIVE_FIELDS or any(
        sensitive in key_lower
        for sensitive in ("secret", "password", "token", "credential")
    )


def is_reference_key(key: str) -> bool:
    return key.lower() in LoggingConfig.REFERENCE_FIELDS


def mask_sensitive_data(
    data: Any,
    additional_fields: Optional[Sequence[str]] = None,
    _depth: int = 0,
    _max_depth: int = 10,
) -> Any:
    """Recursively mask sensitive data in a data structure.

    Secret-looking keys are replaced by the mask pattern. Reference-code keys
    keep only their trailing suffix. Strings are scanned for inline
    credentials.

    Args:
        data: The data structure to mask (dict, list, or scalar)
        additional_fields: Additional field names to mask entirely

    Returns:
        Copy of data with sensitive values masked
    """
    if _depth > _max_depth:
        return data

    if isinstance(data, dict):
        result = {}
        for key, value in data.items():
            if is_sensitive_key(key) or (additional_fields and key in additional_fields):
                result[key] = LoggingConfig.MASK_PATTERN
            elif is_reference_key(key):
                result[key] = _mask_reference_value(value)
            else:
                result[key] = mask_sensitive_data(
                    value,
                    additional_fields,
                    _depth + 1,
                    _max_depth,
                )
        return result

    if isinstance(data, (list, tuple)):
        return type(data)(
            mask_sensitive_data(item, additional_fields, _depth + 1, _max_depth)
            for item in data
        )

    if isinstance(data, str):
        return _mask_inline_patterns(data)

    return data


def _mask_reference_value(value: Any) -> Any:
    if isinstance(value, (list, tuple)):
        return [mask_reference(str(v)) for v in value]
    if value is None:
        return None
    return mask_reference(str(value))


def _mask_inline_patterns(text: str) -> str:
    """Mask credentials embedded in free text (URLs, bearer tokens)."""
    if len(text) > LoggingConfig.MAX_LOG_MESSAGE_LENGTH:
        text = text[: LoggingConfig.MAX_LOG_MESSAGE_LENGTH] + "...[truncated]"

    patterns = [
        (r"([a-z][a-z0-9+.-]*://)[^:/@\s]+:[^@\s]+@", r"\1***:***@"),
        (r"(Bearer\s+)[a-zA-Z0-9._-]+", r"\1***"),
    ]
    for pattern, replacement in patterns:
        text = re.sub(pattern, replacement, text, flags=re.IGNORECASE)
    return text


# =============================================================================
# Run Correlation
# =============================================================================

def get_job_id() -> Optional[str]:
    """Get the current run's correlation id."""
    return job_id_var.get()


class LogContext:
    """Context manager binding a run's job_id for the duration of a block."""

    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        self._token: Optional[Token[Optional[str]]] = None

    def __enter__(self) -> "LogContext":
        self._token = job_id_var.set(self.job_id)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._token is not None:
            job_id_var.reset(self._token)
            self._token = None


class JobIdFilter(logging.Filter):
    """Logging filter that stamps the current job_id on every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.job_id = job_id_var.get()
        return True


# =============================================================================
# Structured Logger
# =============================================================================

class StructuredLogger:
    """Logger wrapper that takes structured fields and masks them.

    Usage:
        logger = StructuredLogger(__name__)
        logger.warning("Failed to expire booking, retrying", attempt=2)
    """

    def __init__(self, name: str) -> None:
        self._logger = logging.getLogger(name)

    @property
    def name(self) -> str:
        return self._logger.name

    def _build_extra(self, fields: dict[str, Any]) -> dict[str, Any]:
        data = mask_sensitive_data(fields)
        job_id = job_id_var.get()
        if job_id:
            data["job_id"] = job_id
        return {"data": data}

    def _log(self, level: int, message: str, exc_info: bool, fields: dict[str, Any]) -> None:
        if self._logger.isEnabledFor(level):
            self._logger.log(level, message, exc_info=exc_info, extra=self._build_extra(fields))

    def debug(self, message: str, **fields: Any) -> None:
        self._log(logging.DEBUG, message, False, fields)

    def info(self, message: str, **fields: Any) -> None:
        self._log(logging.INFO, message, False, fields)

    def warning(self, message: str, **fields: Any) -> None:
        self._log(logging.WARNING, message, False, fields)

    def error(self, message: str, exc_info: bool = False, **fields: Any) -> None:
        self._log(logging.ERROR, message, exc_info, fields)

    def exception(self, message: str, **fields: Any) -> None:
        """Log error with the active exception's traceback."""
        self._log(logging.ERROR, message, True, fields)


def get_logger(name: str) -> StructuredLogger:
    """Get a structured logger for the given name."""
    return StructuredLogger(name)


# =============================================================================
# Formatting
# =============================================================================

class JsonFormatter(logging.Formatter):
    """JSON log formatter for log aggregators."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        job_id = getattr(record, "job_id", None)
        if job_id:
            log_data["job_id"] = job_id

        data = getattr(record, "data", None)
        if data:
            log_data["data"] = {k: v for k, v in data.items() if k != "job_id"}

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable formatter that appends structured fields."""

    def __init__(self) -> None:
        super().__init__(
            "%(asctime)s - %(name)s - %(levelname)s - [%(job_id)s] %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    def format(self, record: logging.LogRecord) -> str:
        if not hasattr(record, "job_id"):
            record.job_id = None
        line = super().format(record)
        data = getattr(record, "data", None)
        fields = {k: v for k, v in (data or {}).items() if k != "job_id"}
        if fields:
            line = f"{line} {json.dumps(fields, default=str)}"
        return line


def configure_logging(
    level: str = "INFO",
    json_format: bool = True,
    log_file: Optional[str] = None,
) -> None:
    """Configure root logging for the scheduler process.

    Args:
        level: Logging level name (DEBUG, INFO, WARNING, ERROR)
        json_format: Use JSON structured logging (True) or text (False)
        log_file: Optional file path for logging output (always JSON)
    """
    formatter: logging.Formatter = JsonFormatter() if json_format else TextFormatter()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    console_handler.addFilter(JobIdFilter())
    handlers: list[logging.Handler] = [console_handler]

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(JsonFormatter())
        file_handler.addFilter(JobIdFilter())
        handlers.append(file_handler)

    logging.basicConfig(
        level=getattr(logging, level.upper()),
        handlers=handlers,
        force=True,
    )
    # APScheduler logs every job execution at INFO
    logging.getLogger("apscheduler").setLevel(logging.WARNING)


__all__ = [
    "mask_reference",
    "mask_sensitive_data",
    "is_sensitive_key",
    "get_job_id",
    "LogContext",
    "JobIdFilter",
    "StructuredLogger",
    "get_logger",
    "JsonFormatter",
    "TextFormatter",
    "configure_logging",
]

"""
Structured logging for ShieldRoute.

JSON output for log aggregation in production, colored console output in
development. Every record carries the current HTTP request context, and
values that would weaken request confidentiality (oracle proofs, masking
multipliers, salts, keys) are redacted before they are written.
"""

import json
import logging
import os
import re
import sys
import threading
from datetime import UTC, datetime
from typing import Any

# ============================================================
# Sensitive Data Redaction
# ============================================================

SENSITIVE_PATTERNS = [
    # key=value style secrets
    (re.compile(r"(api[_-]?key|token|secret|password|proof|signature)([\"']?\s*[:=]\s*[\"']?)([^\s\"',}{]+)", re.IGNORECASE), r"\1\2[REDACTED]"),
    (re.compile(r"(Bearer\s+)([^\s]+)", re.IGNORECASE), r"\1[REDACTED]"),
    (re.compile(r"-----BEGIN[^-]+PRIVATE KEY-----.*?-----END[^-]+PRIVATE KEY-----", re.DOTALL), "[REDACTED_PRIVATE_KEY]"),
    # 20-byte principals: keep the first and last 4 hex digits
    (re.compile(r"\b(0x)([a-fA-F0-9]{4})([a-fA-F0-9]{32})([a-fA-F0-9]{4})\b"), r"\1\2...\4"),
    # Base64 blobs the size of an Ed25519 signature or larger
    (re.compile(r"\b[A-Za-z0-9+/]{64,}={0,2}"), "[REDACTED_BLOB]"),
]

# Fields that are always replaced outright
REDACTED_FIELDS = {
    "password",
    "secret",
    "api_key",
    "token",
    "authorization",
    "private_key",
    "proof",
    "signature",
    "salt",
    "multiplier",
}

# LogRecord attributes that are not user-supplied extras
_RESERVED_ATTRS = frozenset({
    "name", "msg", "args", "created", "filename", "funcName", "levelname",
    "levelno", "lineno", "module", "msecs", "pathname", "process",
    "processName", "relativeCreated", "stack_info", "exc_info", "exc_text",
    "thread", "threadName", "message", "taskName",
})


def redact_sensitive_data(data: Any, depth: int = 0, max_depth: int = 10) -> Any:
    """
    Recursively redact sensitive values in dicts, lists and strings.
    """
    if depth > max_depth:
        return "[MAX_DEPTH_EXCEEDED]"

    if isinstance(data, dict):
        return {
            key: "[REDACTED]"
            if str(key).lower().replace("-", "_") in REDACTED_FIELDS
            else redact_sensitive_data(value, depth + 1, max_depth)
            for key, value in data.items()
        }
    if isinstance(data, (list, tuple)):
        return [redact_sensitive_data(item, depth + 1, max_depth) for item in data]
    if isinstance(data, str):
        return redact_string(data)
    return data


def redact_string(text: str) -> str:
    if not isinstance(text, str):
        return text
    for pattern, replacement in SENSITIVE_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


def _extra_fields(record: logging.LogRecord) -> dict[str, Any]:
    """Fields passed through ``extra=`` on the logging call."""
    return {k: v for k, v in record.__dict__.items() if k not in _RESERVED_ATTRS}


# ============================================================
# Request Context
# ============================================================

_request_context = threading.local()


def set_request_context(**kwargs) -> None:
    """Attach values to every record logged by this thread."""
    if not hasattr(_request_context, "data"):
        _request_context.data = {}
    _request_context.data.update(kwargs)


def clear_request_context() -> None:
    _request_context.data = {}


def get_request_context() -> dict[str, Any]:
    return getattr(_request_context, "data", {})


# ============================================================
# Formatters
# ============================================================


class JSONFormatter(logging.Formatter):
    """
    One JSON object per record:

    {
        "timestamp": "2026-01-15T10:30:00+00:00",
        "level": "INFO",
        "logger": "lifecycle",
        "message": "Status pending -> processing",
        "request_id": 7,
        "context": {"http_request_id": "...", "method": "POST", "path": "/requests/7/process"}
    }
    """

    def __init__(self, include_stack_info: bool = True, redact_sensitive: bool = True):
        super().__init__()
        self.include_stack_info = include_stack_info
        self.redact_sensitive = redact_sensitive

    def _clean(self, value: Any) -> Any:
        return redact_sensitive_data(value) if self.redact_sensitive else value

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": self._clean(record.getMessage()),
        }

        if record.levelno >= logging.WARNING:
            log_entry["location"] = {
                "file": record.pathname,
                "line": record.lineno,
                "function": record.funcName,
            }

        if record.exc_info and self.include_stack_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        context = get_request_context()
        if context:
            log_entry["context"] = self._clean(context)

        for key, value in _extra_fields(record).items():
            log_entry[key] = self._clean({key: value})[key]

        return json.dumps(log_entry, default=str)


class ConsoleFormatter(logging.Formatter):
    """Colored, single-line output for development."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "")
        timestamp = datetime.now().strftime("%H:%M:%S.%f")[:-3]

        msg = (
            f"{color}{timestamp} {record.levelname[0]} [{record.name}]{self.RESET} "
            f"{redact_string(record.getMessage())}"
        )

        context = get_request_context()
        if context:
            ctx_str = " ".join(f"{k}={v}" for k, v in context.items())
            msg += f" {color}({ctx_str}){self.RESET}"

        extras = redact_sensitive_data(_extra_fields(record))
        if extras:
            msg += " [" + ", ".join(f"{k}={v}" for k, v in extras.items()) + "]"

        if record.exc_info:
            msg += "\n" + self.formatException(record.exc_info)

        return msg


# ============================================================
# Setup
# ============================================================


def configure_logging(
    level: str = "INFO",
    json_output: bool | None = None,
    log_file: str | None = None,
) -> None:
    """
    Configure the root logger.

    Args:
        level: Log level name
        json_output: JSON format; when None, follows LOG_FORMAT=json
        log_file: Optional file that always receives JSON records
    """
    if json_output is None:
        json_output = os.getenv("LOG_FORMAT", "").lower() == "json"

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(JSONFormatter() if json_output else ConsoleFormatter())
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(JSONFormatter())
        root_logger.addHandler(file_handler)

    logging.getLogger("werkzeug").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


class LoggingContext:
    """
    Temporarily add context to every record in a block.

    Usage:
        with LoggingContext(request_id=7, operation="refund"):
            logger.info("Paying out")
    """

    def __init__(self, **kwargs):
        self.context = kwargs
        self.previous_context = {}

    def __enter__(self):
        self.previous_context = get_request_context().copy()
        set_request_context(**self.context)
        return self

    def __exit__(self, _exc_type, _exc_val, _exc_tb):
        clear_request_context()
        if self.previous_context:
            set_request_context(**self.previous_context)
        return False


# Default setup on first import
if not logging.getLogger().handlers:
    configure_logging(level=os.getenv("LOG_LEVEL", "INFO"))

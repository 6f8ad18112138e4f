"""
Structured logging configuration for the market indexer.

Provides JSON or human-readable log lines with:
- Security filtering (credentials never reach the log)
- Sanitized URLs (no query strings, no embedded user:password@)
- Stripped messages (no leading/trailing whitespace or newlines)

Usage:
    from marketindexer.logging_config import setup_logging, get_logger

    setup_logging(level="debug", json_format=False)  # Call once at startup
    logger = get_logger(__name__)
    logger.info("message", extra={"market": "BTC-USD"})
"""

from __future__ import annotations

import json
import logging
import re
import sys
from datetime import UTC, datetime
from typing import Any
from urllib.parse import urlsplit, urlunsplit

# Matches http(s) and ws(s) URLs in free-form text
_URL_PATTERN = re.compile(r"((?:https?|wss?)://[^\s\"'<>]+)")
# Matches sensitive patterns that might appear in text
_SENSITIVE_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    # Bearer tokens
    (re.compile(r"\b(bearer|token)[=:\s]+['\"]?[\w\-\.]+['\"]?", re.I), "[TOKEN]"),
    # Authorization headers
    (re.compile(r"\b(authorization)[=:\s]+['\"]?[\w\-\.=]+['\"]?", re.I), "[AUTH]"),
    # password=..., password: ...
    (re.compile(r"\b(password|passwd)[=:]\s*['\"]?\S+['\"]?", re.I), "[PASSWORD]"),
]

# Fields dropped from `extra` on exact (case-insensitive) match
BLOCKED_FIELDS: frozenset[str] = frozenset(
    {
        "ip",
        "ip_address",
        "user_agent",
        "email",
        "headers",
    }
)

# Fields dropped from `extra` when the key contains any of these
BLOCKED_SUBSTRINGS: frozenset[str] = frozenset(
    {
        "password",
        "secret",
        "token",
        "auth",
        "credential",
        "api_key",
    }
)

# High-cardinality or bulky fields: url -> endpoint (sanitized), others redacted
HIGH_CARDINALITY_FIELDS: dict[str, str] = {
    "url": "endpoint",
    "body": "[BODY]",
    "payload": "[PAYLOAD]",
    "document": "[DOCUMENT]",
}

# LogRecord attributes that are not user-supplied extras
_RESERVED_ATTRS: frozenset[str] = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "message",
        "taskName",
    }
)

LOG_LEVELS: dict[str, int] = {
    "info": logging.INFO,
    "debug": logging.DEBUG,
}


def sanitize_url(url: str) -> str:
    """Drop credentials, query string and fragment from a URL."""
    try:
        parts = urlsplit(url)
    except ValueError:
        return "[URL]"
    if not parts.scheme or not parts.hostname:
        return "[URL]"
    netloc = parts.hostname
    try:
        port = parts.port
    except ValueError:
        port = None
    if port is not None:
        netloc = f"{netloc}:{port}"
    return urlunsplit((parts.scheme, netloc, parts.path, "", ""))


def _sanitize_url_in_text(match: re.Match[str]) -> str:
    return sanitize_url(match.group(1))


def _sanitize_text(text: str) -> str:
    """Sanitize free-form text (msg, exc): URLs, tokens, auth headers, passwords."""
    if not text:
        return text

    result = _URL_PATTERN.sub(_sanitize_url_in_text, text)
    for pattern, replacement in _SENSITIVE_PATTERNS:
        result = pattern.sub(replacement, result)
    return result


def _is_blocked(key: str) -> bool:
    key_lower = key.lower()
    if key_lower in BLOCKED_FIELDS:
        return True
    return any(blocked in key_lower for blocked in BLOCKED_SUBSTRINGS)


def _filter_log_record(record: dict[str, Any], *, _depth: int = 0) -> dict[str, Any]:
    """Filter sensitive and high-cardinality fields from log record.

    Recursively filters nested dicts up to depth 3.
    """
    if _depth > 3:
        return {"_truncated": "max depth exceeded"}

    filtered: dict[str, Any] = {}

    for key, value in record.items():
        if _is_blocked(key):
            continue

        key_lower = key.lower()
        if key_lower in HIGH_CARDINALITY_FIELDS:
            if key_lower == "url" and isinstance(value, str):
                filtered["endpoint"] = sanitize_url(value)
            else:
                filtered[key] = HIGH_CARDINALITY_FIELDS[key_lower]
            continue

        if isinstance(value, (int, float, bool, type(None))):
            filtered[key] = value
        elif isinstance(value, str):
            filtered[key] = _sanitize_text(value)
        elif isinstance(value, (list, tuple)):
            # Cap list size to prevent huge log lines
            if len(value) <= 10:
                filtered[key] = [
                    _sanitize_text(v) if isinstance(v, str) else v for v in value
                ]
            else:
                filtered[key] = f"[list:{len(value)} items]"
        elif isinstance(value, dict):
            filtered[key] = _filter_log_record(value, _depth=_depth + 1)
        else:
            filtered[key] = _sanitize_text(str(value))

    return filtered


def _extra_fields(record: logging.LogRecord) -> dict[str, Any]:
    return {k: v for k, v in record.__dict__.items() if k not in _RESERVED_ATTRS}


def _message(record: logging.LogRecord) -> str:
    return _sanitize_text(record.getMessage().strip())


class JsonFormatter(logging.Formatter):
    """JSON log formatter for structured logging.

    Output format:
    {"ts":"2024-01-01T00:00:00.000+00:00","level":"INFO","logger":"module","msg":"...", ...}
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_dict: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "msg": _message(record),
        }

        # Add location for warnings and errors
        if record.levelno >= logging.WARNING:
            log_dict["file"] = record.filename
            log_dict["line"] = record.lineno

        if record.exc_info:
            exc_text = self.formatException(record.exc_info)
            log_dict["exc"] = _sanitize_text(exc_text)

        extra = _extra_fields(record)
        if extra:
            log_dict.update(_filter_log_record(extra))

        return json.dumps(log_dict, default=str, ensure_ascii=False)


class SimpleFormatter(logging.Formatter):
    """Human-readable formatter for terminals and development."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as human-readable string."""
        ts = datetime.fromtimestamp(record.created, tz=UTC).strftime("%Y-%m-%dT%H:%M:%S")
        base = f"{ts} {record.levelname:8s} {record.name}: {_message(record)}"

        extra = _extra_fields(record)
        if extra:
            filtered = _filter_log_record(extra)
            if filtered:
                extra_str = " ".join(f"{k}={v}" for k, v in filtered.items())
                base = f"{base} | {extra_str}"

        if record.exc_info:
            base = f"{base}\n{_sanitize_text(self.formatException(record.exc_info))}"

        return base


def parse_level(level: int | str) -> int:
    """
    Resolve a log level.

    Accepts logging constants and the config names "info" / "debug".

    Raises:
        ValueError: For unknown level names.
    """
    if isinstance(level, int):
        return level
    try:
        return LOG_LEVELS[level.strip().lower()]
    except KeyError:
        raise ValueError(
            f"Unknown log level {level!r}, expected one of {sorted(LOG_LEVELS)}"
        ) from None


def setup_logging(
    *,
    level: int | str = logging.INFO,
    json_format: bool = False,
    stream: Any = None,
) -> None:
    """Configure logging for the application.

    Call once at application startup.

    Args:
        level: Log level (logging constant, "info" or "debug").
        json_format: Use JSON formatter (default: human-readable).
        stream: Output stream (default stderr).
    """
    if stream is None:
        stream = sys.stderr

    handler = logging.StreamHandler(stream)
    formatter = JsonFormatter() if json_format else SimpleFormatter()
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.setLevel(parse_level(level))

    # Remove existing handlers to avoid duplicates
    root.handlers.clear()
    root.addHandler(handler)

    # Suppress noisy third-party loggers
    logging.getLogger("aiohttp").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance.

    Args:
        name: Logger name (typically __name__).
    """
    return logging.getLogger(name)

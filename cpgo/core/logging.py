"""Structured logging with redaction helpers."""

import logging
import json
import re
from typing import Any
from datetime import datetime, timezone

# Sensitive key patterns to redact
SENSITIVE_PATTERNS = [
    r"api[_-]?key",
    r"token",
    r"secret",
    r"password",
    r"credential",
    r"auth",
    r"private[_-]?key",
    r"cookie"
]

# Run context attributes copied from `extra=` into the JSON document
CONTEXT_FIELDS = (
    "repository",
    "stage",
    "base_branch",
    "head_branch",
    "commit_sha",
    "pr_number",
    "url",
    "headers",
    "error",
    "causes",
)


class StructuredFormatter(logging.Formatter):
    """JSON structured log formatter."""

    def format(self, record: logging.LogRecord) -> str:
        log_obj = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for field in CONTEXT_FIELDS:
            if hasattr(record, field):
                log_obj[field] = getattr(record, field)

        # Add exception info if present
        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_obj, default=str)


def redact_sensitive(data: Any) -> Any:
    """Redact sensitive information from data.

    Args:
        data: Data to redact (dict, list, or string)

    Returns:
        Redacted data
    """
    if isinstance(data, dict):
        return {k: redact_value(k, v) for k, v in data.items()}
    elif isinstance(data, list):
        return [redact_sensitive(item) for item in data]
    elif isinstance(data, str):
        for pattern in SENSITIVE_PATTERNS:
            data = re.sub(
                rf"({pattern})[\s=:]*[\S]+",
                r"\1=***REDACTED***",
                data,
                flags=re.IGNORECASE
            )
        return data
    return data


def redact_value(key: str, value: Any) -> Any:
    """Redact value if key matches sensitive pattern.

    Args:
        key: Dictionary key
        value: Value to potentially redact

    Returns:
        Original or redacted value
    """
    key_lower = key.lower()
    for pattern in SENSITIVE_PATTERNS:
        if re.search(pattern, key_lower):
            return "***REDACTED***"

    # Recursively redact nested structures
    if isinstance(value, (dict, list)):
        return redact_sensitive(value)

    return value


def setup_logging(
    level: str = "INFO",
    structured: bool = True
) -> None:
    """Set up application logging on stderr.

    Args:
        level: Log level name
        structured: Use structured JSON logging
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Clear existing handlers
    root_logger.handlers = []

    handler = logging.StreamHandler()

    if structured:
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(
            logging.Formatter(
                "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
            )
        )

    root_logger.addHandler(handler)

    # Suppress noisy libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

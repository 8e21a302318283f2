"""Logging configuration with secret redaction."""

import json
import logging
import re
import sys
from datetime import datetime, timezone

SECRET_PATTERN = re.compile(
    r"(api_key|token|secret|password|connection_string|auth_token)([\s\"']*(?:=>|=|:)[\s\"']*)([a-zA-Z0-9_\-.~]+)",
    re.IGNORECASE,
)


def redact(text: str) -> str:
    """Mask values that follow secret-looking keys."""
    return SECRET_PATTERN.sub(r'\1\2[REDACTED]', text)


class SecretRedactionFilter(logging.Filter):
    """Redacts secrets from log messages and their string arguments."""

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = redact(record.msg)

        if isinstance(record.args, dict):
            record.args = {
                k: redact(v) if isinstance(v, str) else v
                for k, v in record.args.items()
            }
        elif isinstance(record.args, tuple):
            record.args = tuple(
                redact(arg) if isinstance(arg, str) else arg
                for arg in record.args
            )
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def setup_logging(log_level: str = "INFO", log_format: str = "text") -> None:
    """Configure root logging for the service.

    Args:
        log_level: Logging level name
        log_format: ``text`` or ``json``
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(SecretRedactionFilter())

    if log_format == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))

    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        handlers=[handler],
        force=True,
    )

"""
JSON logging for the API and worker processes.

Audit events go to the "procura.audit" logger with their tenant, actor and
entity as top-level fields; credentials are redacted on the way out.
"""
import json
import logging
import re
import sys
from datetime import datetime, timezone
from typing import Any, Optional

from procura.core.config import settings

AUDIT_LOGGER_NAME = "procura.audit"

_SENSITIVE_PATTERN = re.compile(
    r'(password|secret|token|api_key|apikey|authorization)'
    r'[\"\']?\s*[:=]\s*[\"\']?[^\s,;\"\'}{]+',
    re.IGNORECASE,
)

_SENSITIVE_KEYS = frozenset({"password", "secret", "secret_key", "api_key", "apikey", "token", "access_token", "authorization"})

# Record attributes promoted into the JSON entry when present
_RECORD_FIELDS = ("org_id", "user_id", "action", "entity_type", "entity_id", "details", "path", "method")


def redact(obj: Any) -> Any:
    """Mask sensitive keys at any depth of a details payload."""
    if isinstance(obj, dict):
        return {k: "***REDACTED***" if str(k).lower() in _SENSITIVE_KEYS else redact(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [redact(i) for i in obj]
    return obj


def redact_text(message: str) -> str:
    return _SENSITIVE_PATTERN.sub(r'\1=***REDACTED***', message)


class StructuredFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": redact_text(record.getMessage()),
        }
        for field in _RECORD_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                entry[field] = value

        if record.exc_info:
            entry["exception"] = redact_text(self.formatException(record.exc_info))

        return json.dumps(entry, default=str)


def setup_logging():
    root = logging.getLogger()
    if root.handlers:
        return

    root.setLevel(logging.DEBUG if settings.DEBUG else logging.INFO)
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(StructuredFormatter())
    root.addHandler(handler)

    for noisy in ("uvicorn.access", "httpx", "httpcore", "sqlalchemy.engine"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def log_audit_event(
    org_id: int,
    action: str,
    entity_type: str,
    entity_id: Optional[int],
    user_id: Optional[int] = None,
    details: Optional[dict] = None,
):
    """Mirror an audit row to the log stream, e.g. `AUDIT rfq_awarded rfq:12`."""
    get_logger(AUDIT_LOGGER_NAME).info(
        f"AUDIT {action} {entity_type}:{entity_id}",
        extra={
            "org_id": org_id,
            "user_id": user_id,
            "action": action,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "details": redact(details) if details else None,
        },
    )

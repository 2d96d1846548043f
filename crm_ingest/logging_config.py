"""JSON logging for the ingestion service.

Every record of a webhook invocation carries its ``request_id`` as a top-level
field so one request can be followed across the gateway, the ingestion path
and the detached forwarding task.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

SERVICE_NAME = "crm-ingest"
QUIET_LOGGERS = ("httpx", "httpcore", "uvicorn.access", "sqlalchemy.engine")


class JSONFormatter(logging.Formatter):
    """One JSON object per line; ``context`` holds the structured fields."""

    def format(self, record: logging.LogRecord) -> str:
        context = dict(getattr(record, "context", None) or {})
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "service": SERVICE_NAME,
            "logger": record.name,
            "message": record.getMessage(),
        }

        request_id = context.pop("request_id", None)
        if request_id:
            entry["request_id"] = request_id
        if context:
            entry["context"] = context
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, ensure_ascii=False, default=str)


def setup_logging(level: str = "INFO") -> None:
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in root.handlers[:]:
        root.removeHandler(handler)

    stream = logging.StreamHandler(sys.stdout)
    stream.setFormatter(JSONFormatter())
    root.addHandler(stream)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"crm_ingest.{name}")


class LoggerAdapter(logging.LoggerAdapter):
    """Merges bound fields with the ``extra={"context": ...}`` of each call."""

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        extra = kwargs.get("extra") or {}
        merged = {**self.extra, **(extra.get("context") or {}), **(kwargs.pop("context", None) or {})}
        if merged:
            kwargs["extra"] = {**extra, "context": merged}
        return msg, kwargs


def bind_request(name: str, request_id: str) -> LoggerAdapter:
    """Logger for one webhook invocation."""
    return LoggerAdapter(get_logger(name), {"request_id": request_id})

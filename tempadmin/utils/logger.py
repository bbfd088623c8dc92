"""Structured JSON logging for the service.

Call-sites attach structured fields with ``extra={"extra": {...}}``; the
formatter merges them into the emitted object. Approval tokens are bearer
credentials, so any field named like one is masked before it is written.
"""

from __future__ import annotations

import json
import logging
import os
import sys
from typing import Any, Dict

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FILE = os.getenv("LOG_FILE")

REDACTED_FIELDS = frozenset({"token", "approve_token", "deny_token", "approveToken", "denyToken", "key"})


def _redact(fields: Dict[str, Any]) -> Dict[str, Any]:
    return {k: ("***" if k in REDACTED_FIELDS and v else v) for k, v in fields.items()}


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        payload: Dict[str, Any] = {
            "level": record.levelname,
            "name": record.name,
            "message": record.getMessage(),
            "time": self.formatTime(record, "%Y-%m-%dT%H:%M:%S%z"),
        }
        if hasattr(record, "extra") and isinstance(record.extra, dict):
            payload.update(_redact(record.extra))
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def configure_logging() -> None:
    root = logging.getLogger()
    if root.handlers:
        return
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())
    root.setLevel(LOG_LEVEL)
    root.addHandler(handler)

    # Optional on-disk copy for hosts without a log shipper
    if LOG_FILE:
        file_handler = logging.FileHandler(LOG_FILE, encoding="utf-8")
        file_handler.setFormatter(JsonFormatter())
        root.addHandler(file_handler)


logger = logging.getLogger("tempadmin")

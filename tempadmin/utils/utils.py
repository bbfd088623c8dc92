"""Misc cross-cutting helpers."""

from __future__ import annotations

import os
from datetime import datetime, timezone
from uuid import uuid4


def generate_request_id() -> str:
    return uuid4().hex


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def get_env_bool(name: str, default: bool = False) -> bool:
    return os.getenv(name, str(int(default))).lower() in {"1", "true", "yes"}


def get_env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


def parse_int_list(raw: str | None, default: list[int]) -> list[int]:
    """Parse a comma separated list of integers such as ``"2,5,10"``.

    Blank entries are ignored so trailing commas in ``.env`` files are harmless.
    """
    if raw is None or not raw.strip():
        return list(default)
    return [int(part) for part in raw.split(",") if part.strip()]

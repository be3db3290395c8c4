"""Shared utility functions used across Prioritizer modules."""
from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import Any

_MISSING = object()


def json_parse(value: str | None, default: Any = _MISSING) -> Any:
    """Safely parse a JSON string, returning *default* on failure.

    If no default is given, returns ``{}`` on parse error.
    """
    try:
        return json.loads(value or "")
    except (json.JSONDecodeError, TypeError):
        return {} if default is _MISSING else default


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the naive DateTime columns."""
    return datetime.now(UTC).replace(tzinfo=None)


def split_csv(value: str | None) -> list[str]:
    """Split a comma-separated cell into trimmed, non-empty parts."""
    if not value:
        return []
    return [part.strip() for part in str(value).split(",") if part.strip()]

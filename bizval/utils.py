"""Shared utility functions used across bizval modules."""
from __future__ import annotations

import json
from datetime import datetime, UTC
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


def json_dump(value: Any) -> str:
    """Stable JSON encoding (sorted keys) for persisted snapshots."""
    return json.dumps(value, sort_keys=True, default=str)


def utcnow() -> datetime:
    return datetime.now(UTC)

"""JSON helpers that never fail on values the stdlib encoder rejects."""

from __future__ import annotations

import json
from datetime import date, datetime, timedelta


def _default(value):
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, timedelta):
        return value.total_seconds()
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    to_dict = getattr(value, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return str(value)


def safe_json(value):
    """Return ``value`` converted to plain JSON-compatible Python objects."""
    return json.loads(safe_json_dumps(value))


def safe_json_dumps(value, **kwargs) -> str:
    kwargs.setdefault("default", _default)
    return json.dumps(value, **kwargs)

"""Shared utility functions used across SISTUR modules."""
from __future__ import annotations

import json
from collections.abc import Mapping
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


def get_field(item: Any, name: str, default: Any = None) -> Any:
    """Read *name* from a dict-like row or an attribute-style object (ORM, dataclass)."""
    if isinstance(item, Mapping):
        return item.get(name, default)
    return getattr(item, name, default)

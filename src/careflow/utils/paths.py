from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel


def resolve_path(source: Any, path: str) -> Any:
    """Resolve a dot-separated *path* against nested mappings and models.

    ``resolve_path({"client": {"tags": ["vip"]}}, "client.tags")`` returns
    ``["vip"]``. Numeric segments index into lists. A flat key that itself
    contains dots (``{"a.b": 1}``) wins over traversal. Any missing segment
    yields ``None``.
    """
    if isinstance(source, Mapping) and path in source:
        return source[path]

    current: Any = source
    for segment in path.split("."):
        if current is None:
            return None
        if isinstance(current, Mapping):
            current = current.get(segment)
        elif isinstance(current, BaseModel):
            current = getattr(current, segment, None)
        elif isinstance(current, (list, tuple)) and segment.isdigit():
            index = int(segment)
            current = current[index] if index < len(current) else None
        else:
            return None
    return current

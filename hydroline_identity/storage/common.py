"""Storage helpers shared between the memory and postgres implementations."""

from __future__ import annotations

import dataclasses
import math
from datetime import datetime
from typing import Any, Dict, Optional, Type, TypeVar

T = TypeVar("T")

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100


def normalize_username(username: str) -> str:
    """Canonical unique key for external usernames."""
    return username.strip().lower()


def normalize_email(email: Optional[str]) -> Optional[str]:
    if email is None:
        return None
    cleaned = email.strip().lower()
    return cleaned or None


def clamp_page(page: Optional[int], page_size: Optional[int]) -> tuple[int, int]:
    """Return ``(page, page_size)`` with page >= 1 and page_size in 1..100."""
    safe_page = max(1, int(page or 1))
    if page_size is None:
        safe_size = DEFAULT_PAGE_SIZE
    else:
        safe_size = min(MAX_PAGE_SIZE, max(1, int(page_size)))
    return safe_page, safe_size


def pagination_meta(total: int, page: int, page_size: int) -> Dict[str, int]:
    return {
        "total": total,
        "page": page,
        "pageSize": page_size,
        "pageCount": max(1, math.ceil(total / page_size)),
    }


def serialize_record(obj: Any) -> Dict[str, Any]:
    """Dump a model dataclass to JSON-safe primitives."""
    out: Dict[str, Any] = {}
    for f in dataclasses.fields(obj):
        value = getattr(obj, f.name)
        if isinstance(value, datetime):
            value = value.isoformat()
        out[f.name] = value
    return out


def deserialize_record(cls: Type[T], data: Dict[str, Any]) -> T:
    """Rebuild a model dataclass, parsing ISO timestamps for datetime fields."""
    kwargs: Dict[str, Any] = {}
    for f in dataclasses.fields(cls):
        if f.name not in data:
            continue
        value = data[f.name]
        if isinstance(value, str) and "datetime" in str(f.type):
            value = datetime.fromisoformat(value)
        kwargs[f.name] = value
    return cls(**kwargs)


__all__ = [
    "DEFAULT_PAGE_SIZE",
    "MAX_PAGE_SIZE",
    "clamp_page",
    "deserialize_record",
    "normalize_email",
    "normalize_username",
    "pagination_meta",
    "serialize_record",
]

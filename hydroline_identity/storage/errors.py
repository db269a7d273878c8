from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """A unique key (email, external username, role/label/channel key) or a
    foreign key was violated at the storage layer.

    ``detail`` names the offending field so services can translate it into a
    domain error.
    """

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = dict(detail or {})

    def __str__(self) -> str:
        return f"{self.message} ({self.detail})" if self.detail else self.message


__all__ = ["ConstraintViolation"]

from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class UnknownFieldError(ValueError):
    """Raised when an update names a column the store does not expose."""

    def __init__(self, fields: set[str]):
        super().__init__(f"unknown user fields: {', '.join(sorted(fields))}")
        self.fields = fields


__all__ = ["ConstraintViolation", "UnknownFieldError"]

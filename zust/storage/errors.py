from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated.

    ``detail`` carries the violated ``constraint`` name and, where it maps to
    a single column, the ``field``.
    """

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    @property
    def constraint(self) -> Optional[str]:
        return self.detail.get("constraint")

    @property
    def field(self) -> Optional[str]:
        return self.detail.get("field")


class InvalidValueError(Exception):
    """Raised when a value does not fit its column (too long, out of range)."""


class StorageUnavailableError(Exception):
    """Raised when the backing store cannot be reached or fails mid-operation."""


__all__ = ["ConstraintViolation", "InvalidValueError", "StorageUnavailableError"]

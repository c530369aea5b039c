from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StoreUnavailable(Exception):
    """Raised when a backing store times out or cannot be reached.

    Callers must treat this as a failure of the request, never as an allow.
    """

    def __init__(
        self, message: str, *, backend: str, operation: Optional[str] = None
    ) -> None:
        super().__init__(message)
        self.message = message
        self.backend = backend
        self.operation = operation


__all__ = ["ConstraintViolation", "StoreUnavailable"]

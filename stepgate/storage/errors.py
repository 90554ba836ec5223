from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a write would break a storage-level invariant."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StoreUnavailable(Exception):
    """The backing store could not be reached or failed mid-operation.

    ``operation`` names the contract method that failed; the driver exception
    is chained as ``__cause__``.
    """

    def __init__(self, operation: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(f"store unavailable during {operation}")
        self.operation = operation
        self.detail = detail or {}


__all__ = ["ConstraintViolation", "StoreUnavailable"]

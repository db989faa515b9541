from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StorageTimeout(Exception):
    """Raised when a persistence call exceeds its pool or statement timeout."""

    def __init__(self, operation: str, timeout_seconds: Optional[float] = None):
        super().__init__(f"{operation} timed out")
        self.operation = operation
        self.timeout_seconds = timeout_seconds


__all__ = ["ConstraintViolation", "StorageTimeout"]

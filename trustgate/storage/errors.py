from __future__ import annotations

from typing import Any, Dict, Optional


class StorageError(Exception):
    """Base class for errors raised by the credential and counter stores."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class NotFound(StorageError):
    """Raised when a lookup by id, email, secret or name finds no record."""


class ConstraintViolation(StorageError):
    """Raised when a storage-layer uniqueness constraint is violated."""


class StoreUnavailable(StorageError):
    """Raised when a backing store cannot be reached or times out."""


__all__ = ["StorageError", "NotFound", "ConstraintViolation", "StoreUnavailable"]

from __future__ import annotations

from typing import Any, Dict, Optional


class StorageError(Exception):
    """Base class for failures raised by a store implementation."""


class ConstraintViolation(StorageError):
    """A write would break a uniqueness rule, e.g. a second user with the same account."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail: Dict[str, Any] = dict(detail) if detail else {}


class StoreUnavailable(StorageError):
    """The backing database could not be reached."""


__all__ = ["ConstraintViolation", "StorageError", "StoreUnavailable"]

from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    @property
    def field(self) -> Optional[str]:
        return self.detail.get("field")


class PoolError(Exception):
    """The connection pool could not provide a usable connection."""


class PoolExhausted(PoolError):
    """Every connection stayed leased for the whole wait timeout."""


class PoolClosed(PoolError):
    """The pool has been shut down."""


__all__ = ["ConstraintViolation", "PoolClosed", "PoolError", "PoolExhausted"]

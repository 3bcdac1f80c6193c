from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StoreUnavailable(Exception):
    """Raised when a backend cannot be reached or fails transiently."""

    def __init__(self, message: str, *, backend: str = "unknown"):
        super().__init__(message)
        self.message = message
        self.backend = backend


__all__ = ["ConstraintViolation", "StoreUnavailable"]

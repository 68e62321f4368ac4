from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class VersionConflict(ConstraintViolation):
    """Raised when a compare-and-swap write finds a different stored version."""

    def __init__(
        self,
        message: str,
        *,
        expected_version: int,
        actual_version: int,
        detail: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            message,
            {
                **(detail or {}),
                "expected_version": expected_version,
                "actual_version": actual_version,
            },
        )
        self.expected_version = expected_version
        self.actual_version = actual_version


__all__ = ["ConstraintViolation", "VersionConflict"]

from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class TokenAlreadyRevoked(Exception):
    """The conditional revoke found the refresh token missing or already revoked."""


class StoreUnavailable(Exception):
    """The backing store could not be reached or failed mid-operation."""


class CacheUnavailable(Exception):
    """The revocation cache could not be reached."""


__all__ = [
    "ConstraintViolation",
    "TokenAlreadyRevoked",
    "StoreUnavailable",
    "CacheUnavailable",
]

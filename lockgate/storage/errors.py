from __future__ import annotations

from typing import Any, Dict, Optional


class SessionPayloadError(Exception):
    """Raised when a stored session payload cannot be decoded."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class SchemaMissingError(Exception):
    """Raised when the sessions/users tables are absent and auto-migration is off."""


__all__ = ["SessionPayloadError", "SchemaMissingError"]

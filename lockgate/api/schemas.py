from __future__ import annotations

from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

_VALID_ERROR_CODES = frozenset(
    {
        "validation_error",
        "unauthorized",
        "not_found",
        "server_error",
        "upstream_error",
    }
)


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """JSON response envelope."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class LoginView(BaseModel):
    """Landing page payload for clients asking for JSON."""

    authorization_url: str
    user_id: Optional[str] = None
    user_name: Optional[str] = None


class HealthView(BaseModel):
    status: str = Field(..., pattern="^(healthy|unhealthy)$")
    store: str

from __future__ import annotations

import re
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
    "username_taken",
    "invalid_credentials",
    "incorrect_password",
    "locked_out",
    "oauth_failed",
    "auth_disabled",
    "not_configured",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable machine-readable error code")
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
    """API envelope wrapping every JSON response."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class RegisterRequest(BaseModel):
    # Length rules are enforced by the credential service so every caller shares them
    username: str = Field(..., max_length=64)
    password: str = Field(..., max_length=256)
    email: Optional[str] = Field(default=None, max_length=254)

    @field_validator("email")
    @classmethod
    def _validate_email(cls, value: Optional[str]) -> Optional[str]:
        if value is None or not value.strip():
            return None
        normalized = value.strip().lower()
        if not _EMAIL_PATTERN.match(normalized):
            raise ValueError("invalid email address")
        return normalized


class LoginRequest(BaseModel):
    username: str = Field(..., max_length=64)
    password: str = Field(..., max_length=256)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(..., max_length=256)
    new_password: str = Field(..., max_length=256)


class UserResponse(BaseModel):
    id: str
    username: str
    email: Optional[str] = None
    role: str
    created_at: datetime


class AuthResponse(BaseModel):
    user: UserResponse
    token: Optional[str] = None
    session_id: Optional[str] = None
    expires_at: Optional[datetime] = None


class AuthStatusResponse(BaseModel):
    enabled: bool
    mode: str
    user: Optional[UserResponse] = None


class LinkedProvider(BaseModel):
    provider: str
    email: Optional[str] = None
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None
    linked_at: datetime


class MeResponse(BaseModel):
    user: UserResponse
    providers: List[LinkedProvider] = Field(default_factory=list)


class SessionResponse(BaseModel):
    id: str
    created_at: datetime
    expires_at: datetime
    last_used_at: Optional[datetime] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    current: bool = False


class ProviderInfo(BaseModel):
    name: str
    enabled: bool


class LockoutStatusResponse(BaseModel):
    identifier: str
    failed_attempts: int
    max_attempts: int
    locked: bool
    remaining_minutes: int
    attempts_remaining: int

from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "token_expired",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})


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
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


def _strip_invisible(value: str) -> str:
    # Zero-width and bidi override characters can make two usernames look identical
    zero_width = "​‌‍﻿"
    bidi = {chr(c) for c in range(0x202A, 0x202F)} | {chr(c) for c in range(0x2066, 0x206A)}
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi)
    return unicodedata.normalize("NFKC", cleaned)


_USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_.@-]+$")
_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def _validate_username(value: str) -> str:
    normalized = _strip_invisible(value.strip())
    if not normalized:
        raise ValueError("username is required")
    if len(normalized) > 64:
        raise ValueError("username must be at most 64 characters")
    if not _USERNAME_PATTERN.match(normalized):
        raise ValueError(
            "username may only contain letters, numbers, '.', '_', '-' and '@'"
        )
    return normalized


def _validate_email(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    normalized = _strip_invisible(value.strip().lower())
    if not normalized:
        return None
    if len(normalized) > 254 or not _EMAIL_PATTERN.match(normalized):
        raise ValueError("invalid email address")
    return normalized


class RegisterRequest(BaseModel):
    username: str
    password: str = Field(..., max_length=1024)
    email: Optional[str] = None

    @field_validator("username")
    @classmethod
    def _validate_register_username(cls, value: str) -> str:
        return _validate_username(value)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value)


class LoginRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=64)
    password: str = Field(..., min_length=1, max_length=1024)


class RefreshRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    refresh_token: str = Field(..., alias="refreshToken", min_length=1, max_length=4096)


class ResendVerificationRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=64)


class ShareCreateRequest(BaseModel):
    resource_id: str = Field(..., min_length=1, max_length=256)
    variant: str = Field(..., min_length=1, max_length=64)
    ttl_hours: float = Field(default=24, ge=0, allow_inf_nan=False)


class UserResponse(BaseModel):
    id: str
    username: str
    email: Optional[str] = None
    email_verified: bool = False
    created_at: Optional[datetime] = None


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    access_expires_at: datetime
    refresh_expires_at: datetime


class AuthResponse(BaseModel):
    user: UserResponse
    tokens: Optional[TokenResponse] = None
    email_verification_required: bool = False
    email_sent: bool = False
    message: Optional[str] = None


class ProfileResponse(BaseModel):
    id: str
    username: str
    email: Optional[str] = None
    email_verified: bool = False
    source: str


class ShareResponse(BaseModel):
    token: str
    resource_id: str
    variant: str
    expires_at: datetime
    url: Optional[str] = None


class SharedResourceResponse(BaseModel):
    resource_id: str
    variant: str
    expires_at: datetime

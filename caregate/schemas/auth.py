"""Authentication and session schemas."""

import uuid
from datetime import datetime

from pydantic import BaseModel, EmailStr, Field


class LoginRequest(BaseModel):
    """Request schema for user login."""

    email: EmailStr = Field(..., description="User's email address")
    password: str = Field(..., min_length=1, max_length=128)
    device_fingerprint: str = Field(
        ...,
        min_length=8,
        max_length=128,
        description="Stable identifier of the signing-in device",
    )


class LoginResponse(BaseModel):
    """Response schema for successful login."""

    access_token: str
    token_type: str = "bearer"
    expires_in: int = Field(..., description="JWT lifetime in seconds")
    session_id: uuid.UUID
    user_id: uuid.UUID


class ElevateRequest(BaseModel):
    """Password re-entry for a sensitive operation."""

    password: str = Field(..., min_length=1, max_length=128)


class ElevateResponse(BaseModel):
    elevated: bool
    expires_at: datetime


class LogoutResponse(BaseModel):
    message: str = "Successfully logged out"


class ErrorResponse(BaseModel):
    """Error response schema."""

    detail: str = Field(..., description="Error message")
    error: str | None = Field(default=None, description="Machine-readable error code")

from __future__ import annotations

from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from campusauth.service.auth import AuthContext, SessionTokens
from campusauth.storage.models import Role

_VALID_ERROR_CODES = {
    "invalid_credentials",
    "missing_token",
    "invalid_token",
    "validation_error",
    "not_found",
    "conflict",
    "rate_limited",
    "server_error",
}


class ErrorBody(BaseModel):
    """Error payload with a stable, machine-readable code."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(f"unknown error code: {value}")
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class LoginRequest(_CamelModel):
    username_or_email: str = Field(
        ..., alias="usernameOrEmail", min_length=1, max_length=320
    )
    password: str = Field(..., min_length=1, max_length=1024)

    @field_validator("username_or_email")
    @classmethod
    def _strip_identifier(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("usernameOrEmail must not be blank")
        return stripped


class LoginResponse(_CamelModel):
    access_token: str = Field(..., alias="accessToken")
    expires_in_seconds: int = Field(..., alias="expiresInSeconds")
    username: str
    full_name: str = Field(..., alias="fullName")
    role: Role

    @classmethod
    def from_session(cls, session: SessionTokens) -> "LoginResponse":
        return cls(
            access_token=session.access_token,
            expires_in_seconds=session.expires_in_seconds,
            username=session.username,
            full_name=session.full_name,
            role=session.role,
        )


class ForgotPasswordRequest(_CamelModel):
    email: str = Field(..., min_length=3, max_length=320)

    @field_validator("email")
    @classmethod
    def _validate_email(cls, value: str) -> str:
        stripped = value.strip()
        if "@" not in stripped:
            raise ValueError("invalid email address")
        return stripped


class ResetPasswordRequest(_CamelModel):
    token: str = Field(..., min_length=1, max_length=2048)
    new_password: str = Field(..., alias="newPassword", max_length=1024)


class MeResponse(_CamelModel):
    username: str
    role: Role
    full_name: str = Field(..., alias="fullName")

    @classmethod
    def from_context(cls, context: AuthContext) -> "MeResponse":
        return cls(username=context.username, role=context.role, full_name=context.full_name)

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from pitchcoach.storage.models import User

# Bound free-form input before it reaches hashing or storage
MAX_NAME_LENGTH = 100
MAX_EMAIL_LENGTH = 254
MAX_PASSWORD_INPUT_LENGTH = 1024
MAX_TOKEN_LENGTH = 2048

_VALID_ERROR_CODES = frozenset({
    "VALIDATION_ERROR",
    "DUPLICATE_EMAIL",
    "EMAIL_IN_USE",
    "UNAUTHORIZED",
    "INVALID_CREDENTIALS",
    "INCORRECT_PASSWORD",
    "AUTH_REQUIRED",
    "TOKEN_EXPIRED",
    "INVALID_TOKEN",
    "INVALID_REFRESH_TOKEN",
    "USER_NOT_FOUND",
    "NOT_FOUND",
    "METHOD_NOT_ALLOWED",
    "INTERNAL_ERROR",
})


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class ErrorBody(BaseModel):
    """Error payload returned for every failed request."""

    message: str
    status: int = Field(..., ge=400, le=599)
    code: str = Field(..., description="Stable machine-readable error code")

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class UserView(_CamelModel):
    """Public projection of a user; never carries credential material."""

    id: str
    first_name: str = Field(..., alias="firstName")
    last_name: str = Field(..., alias="lastName")
    email: str
    created_at: datetime = Field(..., alias="createdAt")

    @classmethod
    def from_user(cls, user: User) -> "UserView":
        return cls(
            id=user.id,
            first_name=user.first_name,
            last_name=user.last_name,
            email=user.email,
            created_at=user.created_at,
        )


class RegisterRequest(_CamelModel):
    first_name: Optional[str] = Field(None, alias="firstName", max_length=MAX_NAME_LENGTH)
    last_name: Optional[str] = Field(None, alias="lastName", max_length=MAX_NAME_LENGTH)
    email: Optional[str] = Field(None, max_length=MAX_EMAIL_LENGTH)
    password: Optional[str] = Field(None, max_length=MAX_PASSWORD_INPUT_LENGTH)


class LoginRequest(_CamelModel):
    email: Optional[str] = Field(None, max_length=MAX_EMAIL_LENGTH)
    password: Optional[str] = Field(None, max_length=MAX_PASSWORD_INPUT_LENGTH)


class RefreshTokenRequest(_CamelModel):
    refresh_token: Optional[str] = Field(None, alias="refreshToken", max_length=MAX_TOKEN_LENGTH)


class AuthResponse(_CamelModel):
    user: UserView
    access_token: str = Field(..., alias="accessToken")
    refresh_token: str = Field(..., alias="refreshToken")


class TokenPairResponse(_CamelModel):
    access_token: str = Field(..., alias="accessToken")
    refresh_token: str = Field(..., alias="refreshToken")


class MessageResponse(BaseModel):
    message: str


class ProfileUpdateRequest(_CamelModel):
    first_name: Optional[str] = Field(None, alias="firstName", max_length=MAX_NAME_LENGTH)
    last_name: Optional[str] = Field(None, alias="lastName", max_length=MAX_NAME_LENGTH)
    email: Optional[str] = Field(None, max_length=MAX_EMAIL_LENGTH)


class PasswordChangeRequest(_CamelModel):
    current_password: Optional[str] = Field(
        None, alias="currentPassword", max_length=MAX_PASSWORD_INPUT_LENGTH
    )
    new_password: Optional[str] = Field(
        None, alias="newPassword", max_length=MAX_PASSWORD_INPUT_LENGTH
    )


class HealthResponse(BaseModel):
    status: str
    database: str
    timestamp: datetime
    message: Optional[str] = None

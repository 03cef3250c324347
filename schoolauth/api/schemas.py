from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from schoolauth.logging import get_correlation_id
from schoolauth.storage.models import Account

# Field bounds here are shape checks only; business rules live in the
# service layer so every caller gets the same messages.
MAX_EMAIL_LENGTH = 255
MAX_PASSWORD_LENGTH = 128
MAX_TOKEN_LENGTH = 4096

_VALID_ERROR_CODES = frozenset({
    "validation_error",
    "unauthorized",
    "invalid_token",
    "token_expired",
    "token_revoked",
    "account_locked",
    "account_inactive",
    "email_not_verified",
    "forbidden",
    "not_found",
    "conflict",
    "invalid_transition",
    "rate_limited",
    "server_error",
})


def _request_id() -> str:
    return get_correlation_id() or ""


class ErrorBody(BaseModel):
    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """Uniform response wrapper for every endpoint."""

    status: Literal["success", "error"]
    message: Optional[str] = None
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


class _Request(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)


class RegisterRequest(_Request):
    email: str = Field(..., max_length=MAX_EMAIL_LENGTH)
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)
    confirm_password: Optional[str] = Field(
        default=None, alias="confirmPassword", max_length=MAX_PASSWORD_LENGTH
    )
    name: Optional[str] = Field(default=None, max_length=120)
    first_name: Optional[str] = Field(default=None, alias="firstName", max_length=60)
    last_name: Optional[str] = Field(default=None, alias="lastName", max_length=60)
    role: Optional[str] = Field(default=None, max_length=16)
    phone: Optional[str] = Field(default=None, max_length=32)
    address: Optional[str] = Field(default=None, max_length=500)
    date_of_birth: Optional[str] = Field(default=None, alias="dateOfBirth", max_length=32)


class LoginRequest(_Request):
    """``email`` may carry a username; ``username`` is accepted as well."""

    email: Optional[str] = Field(default=None, max_length=MAX_EMAIL_LENGTH)
    username: Optional[str] = Field(default=None, max_length=MAX_EMAIL_LENGTH)
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)
    remember_me: bool = Field(default=False, alias="rememberMe")

    @model_validator(mode="after")
    def _require_identifier(self) -> "LoginRequest":
        if not (self.email or self.username):
            raise ValueError("email or username is required")
        return self

    @property
    def identifier(self) -> str:
        return self.email or self.username or ""


class RefreshRequest(_Request):
    refresh_token: str = Field(..., alias="refreshToken", max_length=MAX_TOKEN_LENGTH)


class LogoutRequest(_Request):
    refresh_token: Optional[str] = Field(
        default=None, alias="refreshToken", max_length=MAX_TOKEN_LENGTH
    )


class EmailRequest(_Request):
    email: str = Field(..., max_length=MAX_EMAIL_LENGTH)


class VerifyEmailRequest(_Request):
    token: str = Field(..., max_length=MAX_TOKEN_LENGTH)


class PasswordResetConfirm(_Request):
    token: str = Field(..., max_length=MAX_TOKEN_LENGTH)
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)
    confirm_password: Optional[str] = Field(
        default=None, alias="confirmPassword", max_length=MAX_PASSWORD_LENGTH
    )


class ChangePasswordRequest(_Request):
    current_password: str = Field(..., alias="currentPassword", max_length=MAX_PASSWORD_LENGTH)
    new_password: str = Field(..., alias="newPassword", max_length=MAX_PASSWORD_LENGTH)
    confirm_password: Optional[str] = Field(
        default=None, alias="confirmPassword", max_length=MAX_PASSWORD_LENGTH
    )


class ProfileUpdateRequest(_Request):
    first_name: Optional[str] = Field(default=None, alias="firstName", max_length=60)
    last_name: Optional[str] = Field(default=None, alias="lastName", max_length=60)
    phone: Optional[str] = Field(default=None, max_length=32)
    address: Optional[str] = Field(default=None, max_length=500)


class AccountResponse(BaseModel):
    id: str
    email: str
    username: str
    name: str
    first_name: str
    last_name: str
    role: str
    verified: bool
    status: str
    phone: Optional[str] = None
    address: Optional[str] = None
    date_of_birth: Optional[str] = None
    last_login: Optional[datetime] = None
    created_at: datetime

    @classmethod
    def from_account(cls, account: Account) -> "AccountResponse":
        return cls(
            id=account.id,
            email=account.email,
            username=account.username,
            name=account.display_name,
            first_name=account.first_name,
            last_name=account.last_name,
            role=account.role.value,
            verified=account.verified,
            status=account.status.value,
            phone=account.phone,
            address=account.address,
            date_of_birth=account.date_of_birth,
            last_login=account.last_login,
            created_at=account.created_at,
        )


class TokenPairResponse(BaseModel):
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"


class LoginResponse(TokenPairResponse):
    user: AccountResponse


class RegisterResponse(BaseModel):
    user: AccountResponse
    verification_required: bool = True


class VerifyEmailResponse(BaseModel):
    user: AccountResponse
    already_verified: bool = False


class CheckEmailResponse(BaseModel):
    exists: bool
    verified: bool
    available: bool

from __future__ import annotations

import re
import unicodedata
from typing import Any, List, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_serializer,
)
from pydantic.alias_generators import to_camel

from payauth.service import messages
from payauth.service.messages import Validation
from payauth.service.tokens import TokenPair
from payauth.storage.models import User, UserType

EMAIL_REGEX = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
MAX_EMAIL_LENGTH = 254
MAX_TOKEN_LENGTH = 4096
_LOWER = re.compile(r"[a-z]")
_UPPER = re.compile(r"[A-Z]")
_DIGIT = re.compile(r"\d")

# Message used when a field is absent or not a string; keyed by wire name.
FIELD_REQUIRED_MESSAGES = {
    "email": Validation.EMAIL_REQUIRED,
    "password": Validation.PASSWORD_REQUIRED,
    "newPassword": Validation.PASSWORD_REQUIRED,
    "currentPassword": Validation.PASSWORD_REQUIRED,
    "name": Validation.NAME_REQUIRED,
    "token": Validation.TOKEN_REQUIRED,
    "refreshToken": Validation.TOKEN_REQUIRED,
}


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and drop zero-width characters used for spoofing."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    return unicodedata.normalize("NFKC", cleaned)


def _validate_email(value: str) -> str:
    normalized = _normalize_unicode(value).strip().lower()
    if not normalized:
        raise ValueError(Validation.EMAIL_REQUIRED)
    if len(normalized) > MAX_EMAIL_LENGTH or not EMAIL_REGEX.match(normalized):
        raise ValueError(Validation.EMAIL_FORMAT)
    return normalized


def _validate_password_strength(value: str) -> str:
    # Needs lower, upper and digit; symbols are accepted on top of those.
    if not value:
        raise ValueError(Validation.PASSWORD_REQUIRED)
    if len(value) < messages.PASSWORD_MIN_LENGTH:
        raise ValueError(Validation.PASSWORD_MIN_LENGTH)
    if len(value) > messages.PASSWORD_MAX_LENGTH:
        raise ValueError(Validation.PASSWORD_MAX_LENGTH)
    if not (_LOWER.search(value) and _UPPER.search(value) and _DIGIT.search(value)):
        raise ValueError(Validation.PASSWORD_FORMAT)
    return value


def _validate_name(value: str) -> str:
    normalized = _normalize_unicode(value).strip()
    if not normalized:
        raise ValueError(Validation.NAME_REQUIRED)
    if len(normalized) < messages.NAME_MIN_LENGTH:
        raise ValueError(Validation.NAME_MIN_LENGTH)
    if len(normalized) > messages.NAME_MAX_LENGTH:
        raise ValueError(Validation.NAME_MAX_LENGTH)
    return normalized


def _require_token(value: str) -> str:
    value = value.strip()
    if not value:
        raise ValueError(Validation.TOKEN_REQUIRED)
    if len(value) > MAX_TOKEN_LENGTH:
        raise ValueError(messages.INVALID_TOKEN.message)
    return value


class _Request(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=False)


class SignupRequest(_Request):
    email: str
    password: str
    name: str
    type: Optional[str] = None

    @field_validator("email")
    @classmethod
    def _validate_signup_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @field_validator("name")
    @classmethod
    def _validate_signup_name(cls, value: str) -> str:
        return _validate_name(value)

    @field_validator("type")
    @classmethod
    def _validate_type(cls, value: Optional[str]) -> Optional[str]:
        # Self-service sign-up only creates merchant owners. Staff accounts
        # need a parent owner and super admins are provisioned out of band.
        if value is None:
            return None
        normalized = value.strip().upper()
        if normalized != UserType.OWNER.value:
            raise ValueError(Validation.USER_TYPE)
        return normalized


class LoginRequest(_Request):
    email: str
    password: str

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _require_password(cls, value: str) -> str:
        if not value:
            raise ValueError(Validation.PASSWORD_REQUIRED)
        if len(value) > messages.PASSWORD_MAX_LENGTH:
            raise ValueError(Validation.INVALID_INPUT)
        return value


class RefreshRequest(_Request):
    refresh_token: str = Field(..., alias="refreshToken")

    @field_validator("refresh_token")
    @classmethod
    def _validate_refresh_token(cls, value: str) -> str:
        return _require_token(value)


class ForgotPasswordRequest(_Request):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_forgot_email(cls, value: str) -> str:
        return _validate_email(value)


class ResetPasswordRequest(_Request):
    token: str
    new_password: str = Field(..., alias="newPassword")

    @field_validator("token")
    @classmethod
    def _validate_reset_token(cls, value: str) -> str:
        return _require_token(value)

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class ChangePasswordRequest(_Request):
    current_password: str = Field(..., alias="currentPassword")
    new_password: str = Field(..., alias="newPassword")

    @field_validator("current_password")
    @classmethod
    def _require_current(cls, value: str) -> str:
        if not value:
            raise ValueError(Validation.PASSWORD_REQUIRED)
        if len(value) > messages.PASSWORD_MAX_LENGTH:
            raise ValueError(Validation.PASSWORD_MAX_LENGTH)
        return value

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class _Response(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class UserResponse(_Response):
    id: str
    email: str
    name: str
    type: UserType
    status: str
    parent_user_id: Optional[str] = None

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            name=user.name,
            type=user.type,
            status=user.status.value,
            parent_user_id=user.parent_user_id,
        )


class TokensResponse(_Response):
    access_token: str
    refresh_token: str
    expires_in: int

    @classmethod
    def from_pair(cls, pair: TokenPair) -> "TokensResponse":
        return cls(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            expires_in=pair.expires_in,
        )


class AuthPayload(_Response):
    user: UserResponse
    tokens: TokensResponse
    message: str


class UserPayload(_Response):
    user: UserResponse


class TokensPayload(_Response):
    tokens: TokensResponse


class MessagePayload(_Response):
    message: str


class FieldError(BaseModel):
    field: str
    message: str


class Envelope(BaseModel):
    """Response body shared by every endpoint: ``{success, data?, message?, code?, field?, errors?}``."""

    success: bool = True
    data: Optional[Any] = None
    message: Optional[str] = None
    code: Optional[str] = None
    field: Optional[str] = None
    errors: Optional[List[FieldError]] = None

    @model_serializer(mode="wrap")
    def _omit_unset(self, handler) -> dict[str, Any]:
        body = handler(self)
        return {key: value for key, value in body.items() if value is not None}

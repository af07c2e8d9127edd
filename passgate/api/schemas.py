from __future__ import annotations

import re
import unicodedata
import uuid
from typing import Any, List, Optional
from urllib.parse import urlparse
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

from passgate.service.errors import ERRORS_BY_KIND

MAX_FINGERPRINT_LENGTH = 256
MAX_TOKEN_LENGTH = 2048


_VALID_ERROR_CODES = frozenset(cls.error_code for cls in ERRORS_BY_KIND.values())


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


def _normalize_unicode(value: str) -> str:
    # Strip zero-width and bidi override characters before NFKC
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(
        c for c in value if c not in zero_width and c not in bidi_overrides
    )
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password(value: str) -> str:
    if len(value) < 6:
        raise ValueError("password must be at least 6 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


def _validate_uuid(value: str, field_name: str) -> str:
    try:
        return str(uuid.UUID(value))
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{field_name} must be a UUID") from exc


def _validate_http_url(value: str) -> str:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError("link must be an absolute http(s) URL")
    return value


def _validate_name(value: str) -> str:
    cleaned = _normalize_unicode(value).strip()
    if not cleaned:
        raise ValueError("must not be empty")
    return cleaned


class RegisterRequest(BaseModel):
    email: str
    password: str
    name: str = Field(..., max_length=128)
    surname: str = Field(..., max_length=128)
    patronymic: Optional[str] = Field(default=None, max_length=128)
    invitation_code: Optional[str] = None

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_register_password(cls, value: str) -> str:
        return _validate_password(value)

    @field_validator("name", "surname")
    @classmethod
    def _validate_register_name(cls, value: str) -> str:
        return _validate_name(value)

    @field_validator("invitation_code")
    @classmethod
    def _validate_invitation_code(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return _validate_uuid(value, "invitation_code")


class LoginRequest(BaseModel):
    email: str
    password: str
    fingerprint: str = Field(..., min_length=1, max_length=MAX_FINGERPRINT_LENGTH)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_login_password(cls, value: str) -> str:
        return _validate_password(value)


class TokenPairResponse(BaseModel):
    user_id: str
    role: str
    access_token: str
    access_expires_at: int
    refresh_token: str
    refresh_expires_at: int


class AuthRequest(BaseModel):
    access_token: str = Field(..., min_length=1, max_length=MAX_TOKEN_LENGTH)
    fingerprint: str = Field(..., min_length=1, max_length=MAX_FINGERPRINT_LENGTH)


class CredentialResponse(BaseModel):
    user_id: str
    role: str
    expires_at: int
    issued_at: int


class RefreshRequest(BaseModel):
    fingerprint: str = Field(..., min_length=1, max_length=MAX_FINGERPRINT_LENGTH)
    # Falls back to the refresh_token cookie when omitted
    refresh_token: Optional[str] = Field(default=None, max_length=MAX_TOKEN_LENGTH)


class LogoutRequest(BaseModel):
    fingerprint: str = Field(..., min_length=1, max_length=MAX_FINGERPRINT_LENGTH)
    user_id: Optional[str] = None
    access_token: Optional[str] = Field(default=None, max_length=MAX_TOKEN_LENGTH)

    @field_validator("user_id")
    @classmethod
    def _validate_user_id(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return _validate_uuid(value, "user_id")

    @model_validator(mode="after")
    def _require_one_owner_source(self):
        if bool(self.user_id) == bool(self.access_token):
            raise ValueError("provide exactly one of user_id or access_token")
        return self


class InviteRequest(BaseModel):
    access_token: str = Field(..., min_length=1, max_length=MAX_TOKEN_LENGTH)
    email: str
    name: str = Field(..., max_length=128)
    surname: str = Field(..., max_length=128)
    patronymic: Optional[str] = Field(default=None, max_length=128)
    role: Optional[str] = Field(default=None, min_length=1, max_length=64)
    link_to_register_form: str = Field(..., max_length=2048)

    @field_validator("email")
    @classmethod
    def _validate_invite_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("name", "surname")
    @classmethod
    def _validate_invite_name(cls, value: str) -> str:
        return _validate_name(value)

    @field_validator("link_to_register_form")
    @classmethod
    def _validate_register_link(cls, value: str) -> str:
        return _validate_http_url(value)


class InviteResponse(BaseModel):
    user_id: str
    delivered: bool


class PasswordForgotRequest(BaseModel):
    email: str
    link_to_reset_form: str = Field(..., max_length=2048)

    @field_validator("email")
    @classmethod
    def _validate_forgot_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("link_to_reset_form")
    @classmethod
    def _validate_reset_link(cls, value: str) -> str:
        return _validate_http_url(value)


class ResetPasswordRequest(BaseModel):
    user_id: str
    secret_code: str
    password: str

    @field_validator("user_id")
    @classmethod
    def _validate_reset_user(cls, value: str) -> str:
        return _validate_uuid(value, "user_id")

    @field_validator("secret_code")
    @classmethod
    def _validate_reset_secret(cls, value: str) -> str:
        return _validate_uuid(value, "secret_code")

    @field_validator("password")
    @classmethod
    def _validate_reset_password(cls, value: str) -> str:
        return _validate_password(value)


class UserInfoResponse(BaseModel):
    uid: str
    email: str
    name: str
    surname: str
    patronymic: Optional[str] = None
    role: str
    partition: str


class UserListResponse(BaseModel):
    items: List[str]

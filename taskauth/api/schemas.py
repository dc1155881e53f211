from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from taskauth.service.auth import TokenPair
from taskauth.storage.models import Session, User

_VALID_ERROR_CODES = frozenset({
    "VALIDATION_ERROR",
    "INVALID_CURRENT_PASSWORD",
    "AUTH_REQUIRED",
    "INVALID_CREDENTIALS",
    "ACCOUNT_DEACTIVATED",
    "ACCOUNT_LOCKED",
    "TOKEN_MISSING",
    "TOKEN_EXPIRED",
    "TOKEN_INVALID",
    "USER_NOT_FOUND",
    "SESSION_INVALID",
    "PASSWORD_CHANGED",
    "REFRESH_TOKEN_MISSING",
    "REFRESH_TOKEN_INVALID",
    "TOKEN_REUSE_DETECTED",
    "INSUFFICIENT_PERMISSIONS",
    "NOT_FOUND",
    "SESSION_NOT_FOUND",
    "CONFLICT",
    "USER_EXISTS",
    "RATE_LIMIT_EXCEEDED",
    "SERVER_ERROR",
    "STORE_UNAVAILABLE",
})


class ErrorBody(BaseModel):
    """Error envelope body; ``code`` is one of the stable machine-readable values."""

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
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


# -- input validation ---------------------------------------------------------

_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_]{3,30}$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = unicodedata.normalize("NFKC", value.strip().lower())
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


def _validate_username(value: str) -> str:
    value = value.strip()
    if not _USERNAME_PATTERN.match(value):
        raise ValueError(
            "username must be 3-30 characters of letters, digits and underscores"
        )
    return value.lower()


def _validate_password_strength(value: str) -> str:
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    if not re.search(r"[a-z]", value):
        raise ValueError("password must contain a lowercase letter")
    if not re.search(r"[A-Z]", value):
        raise ValueError("password must contain an uppercase letter")
    if not re.search(r"\d", value):
        raise ValueError("password must contain a digit")
    return value


def _clean_name(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    if len(value) > 50:
        raise ValueError("name must be at most 50 characters")
    return value or None


class CamelModel(BaseModel):
    """Accepts camelCase (and snake_case) input, dumps camelCase with ``by_alias``."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RegisterRequest(CamelModel):
    username: str
    email: str
    password: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None

    @field_validator("username")
    @classmethod
    def _validate_username(cls, value: str) -> str:
        return _validate_username(value)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @field_validator("first_name", "last_name")
    @classmethod
    def _validate_names(cls, value: Optional[str]) -> Optional[str]:
        return _clean_name(value)


class LoginRequest(CamelModel):
    email: str
    password: str = Field(..., min_length=1, max_length=128)
    remember_me: bool = False

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class TokenRefreshRequest(CamelModel):
    # Absence is reported as REFRESH_TOKEN_MISSING by the service, not as a 400
    refresh_token: Optional[str] = Field(default=None, max_length=4096)


class PasswordChangeRequest(CamelModel):
    current_password: str = Field(..., min_length=1, max_length=128)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @model_validator(mode="after")
    def _reject_unchanged(self) -> "PasswordChangeRequest":
        if self.current_password == self.new_password:
            raise ValueError("new password must differ from the current password")
        return self


class UserActiveRequest(CamelModel):
    is_active: bool


# -- responses ----------------------------------------------------------------


class UserResponse(CamelModel):
    id: str
    username: str
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    full_name: Optional[str] = None
    is_active: bool = True
    is_email_verified: bool = False
    is_admin: bool = False
    last_login: Optional[datetime] = None
    created_at: datetime

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            username=user.username,
            email=user.email,
            first_name=user.first_name,
            last_name=user.last_name,
            full_name=user.full_name,
            is_active=user.is_active,
            is_email_verified=user.is_email_verified,
            is_admin=user.is_admin,
            last_login=user.last_login,
            created_at=user.created_at,
        )


class SessionResponse(CamelModel):
    """Session as shown to its owner; never carries the refresh token or its hash."""

    id: str
    device_info: Dict[str, Optional[str]]
    login_method: str
    created_at: datetime
    last_accessed_at: datetime
    expires_at: datetime
    risk_score: int
    is_suspicious: bool
    is_current: bool = False

    @classmethod
    def from_session(
        cls, session: Session, *, current_session_id: Optional[str] = None
    ) -> "SessionResponse":
        return cls(
            id=session.id,
            device_info=session.device_info.to_dict(),
            login_method=session.login_method,
            created_at=session.created_at,
            last_accessed_at=session.last_accessed_at,
            expires_at=session.expires_at,
            risk_score=session.risk_score,
            is_suspicious=session.is_suspicious,
            is_current=session.id == current_session_id,
        )


class TokenPairResponse(CamelModel):
    access_token: str
    refresh_token: str
    expires_in: str

    @classmethod
    def from_pair(cls, pair: TokenPair) -> "TokenPairResponse":
        return cls(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            expires_in=pair.expires_in,
        )


class AuthResponse(CamelModel):
    user: UserResponse
    tokens: TokenPairResponse
    session: SessionResponse


class TokensResponse(CamelModel):
    tokens: TokenPairResponse


class MeResponse(CamelModel):
    user: UserResponse
    session: SessionResponse


class SessionListResponse(CamelModel):
    sessions: List[SessionResponse]

from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from gatewarden.storage.models import (
    ApiKey,
    Device,
    SecurityEvent,
    SecurityEventType,
    Session,
    Severity,
)

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "invalid_token",
    "invalid_session",
    "two_factor_required",
    "expired",
    "forbidden",
    "not_found",
    "account_locked",
    "rate_limited",
    "validation_error",
    "conflict",
    "delivery_failed",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

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


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


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


class SignupRequest(BaseModel):
    email: str
    password: str = Field(..., max_length=128)
    name: Optional[str] = Field(default=None, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_signup_email(cls, value: str) -> str:
        return _validate_email(value)


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., max_length=128)
    location: Optional[str] = Field(default=None, max_length=128)
    device_salt: Optional[str] = Field(default=None, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class LoginResponse(BaseModel):
    account_id: str
    session_token: str
    session_expires_at: datetime
    device_id: str
    two_factor_required: bool = False
    code_expires_at: Optional[datetime] = None


class TwoFactorVerifyRequest(BaseModel):
    code: str = Field(..., min_length=6, max_length=6, pattern=r"^\d{6}$")


class PasswordResetRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_reset_email(cls, value: str) -> str:
        return _validate_email(value)


class PasswordResetConfirm(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)
    new_password: str = Field(..., max_length=128)


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(..., max_length=128)
    new_password: str = Field(..., max_length=128)


class ApiKeyCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=128)
    scopes: List[str] = Field(default_factory=list, max_length=64)
    expires_in_days: Optional[int] = Field(default=None, ge=1, le=3650)


class ApiKeyResponse(BaseModel):
    id: str
    name: str
    key_prefix: Optional[str] = None
    scopes: List[str]
    is_active: bool
    expires_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    created_at: datetime

    @classmethod
    def from_record(cls, record: ApiKey) -> "ApiKeyResponse":
        return cls(
            id=record.id,
            name=record.name,
            key_prefix=record.key_prefix,
            scopes=list(record.scopes),
            is_active=record.is_active,
            expires_at=record.expires_at,
            last_used_at=record.last_used_at,
            created_at=record.created_at,
        )


class ApiKeyIssuedResponse(ApiKeyResponse):
    key: str


class SessionResponse(BaseModel):
    id: str
    device_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    location: Optional[str] = None
    created_at: datetime
    last_active_at: datetime
    expires_at: datetime
    current: bool = False

    @classmethod
    def from_session(cls, session: Session, current_token: Optional[str] = None) -> "SessionResponse":
        return cls(
            id=session.id,
            device_id=session.device_id,
            ip_address=session.ip_address,
            user_agent=session.user_agent,
            location=session.location,
            created_at=session.created_at,
            last_active_at=session.last_active_at,
            expires_at=session.expires_at,
            current=session.token == current_token,
        )


class DeviceResponse(BaseModel):
    id: str
    name: Optional[str] = None
    device_type: str
    browser: Optional[str] = None
    os: Optional[str] = None
    location: Optional[str] = None
    is_trusted: bool
    is_active: bool
    last_active_at: datetime

    @classmethod
    def from_device(cls, device: Device) -> "DeviceResponse":
        return cls(
            id=device.id,
            name=device.name,
            device_type=device.device_type.value,
            browser=device.browser,
            os=device.os,
            location=device.location,
            is_trusted=device.is_trusted,
            is_active=device.is_active,
            last_active_at=device.last_active_at,
        )


class SecurityEventResponse(BaseModel):
    id: str
    event_type: SecurityEventType
    severity: Severity
    description: str
    account_id: Optional[str] = None
    ip_address: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    is_resolved: bool
    resolved_by: Optional[str] = None
    created_at: datetime

    @classmethod
    def from_event(cls, event: SecurityEvent) -> "SecurityEventResponse":
        return cls(
            id=event.id,
            event_type=event.event_type,
            severity=event.severity,
            description=event.description,
            account_id=event.account_id,
            ip_address=event.ip_address,
            metadata=dict(event.metadata),
            is_resolved=event.is_resolved,
            resolved_by=event.resolved_by,
            created_at=event.created_at,
        )


class UnlockRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_unlock_email(cls, value: str) -> str:
        return _validate_email(value)

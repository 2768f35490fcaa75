from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from gatewarden.config import OrganizationPolicy


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class Severity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class SecurityEventType(str, Enum):
    LOGIN_SUCCESS = "LOGIN_SUCCESS"
    LOGIN_FAILED = "LOGIN_FAILED"
    LOGOUT = "LOGOUT"
    MULTIPLE_FAILED_LOGINS = "MULTIPLE_FAILED_LOGINS"
    SUSPICIOUS_LOGIN = "SUSPICIOUS_LOGIN"
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
    ACCOUNT_UNLOCKED = "ACCOUNT_UNLOCKED"
    SESSION_TIMEOUT = "SESSION_TIMEOUT"
    SESSION_TERMINATED = "SESSION_TERMINATED"
    DEVICE_REGISTERED = "DEVICE_REGISTERED"
    DEVICE_TRUSTED = "DEVICE_TRUSTED"
    DEVICE_REMOVED = "DEVICE_REMOVED"
    TWO_FACTOR_SENT = "TWO_FACTOR_SENT"
    TWO_FACTOR_VERIFIED = "TWO_FACTOR_VERIFIED"
    TWO_FACTOR_FAILED = "TWO_FACTOR_FAILED"
    TWO_FACTOR_ENABLED = "TWO_FACTOR_ENABLED"
    TWO_FACTOR_DISABLED = "TWO_FACTOR_DISABLED"
    API_KEY_CREATED = "API_KEY_CREATED"
    API_KEY_USED = "API_KEY_USED"
    API_KEY_ROTATED = "API_KEY_ROTATED"
    API_KEY_DELETED = "API_KEY_DELETED"
    PASSWORD_RESET_REQUEST = "PASSWORD_RESET_REQUEST"
    PASSWORD_RESET_COMPLETE = "PASSWORD_RESET_COMPLETE"
    PASSWORD_CHANGED = "PASSWORD_CHANGED"
    SSO_LOGIN = "SSO_LOGIN"
    SSO_FAILED = "SSO_FAILED"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    UNAUTHORIZED_ACCESS_ATTEMPT = "UNAUTHORIZED_ACCESS_ATTEMPT"
    SETTINGS_CHANGED = "SETTINGS_CHANGED"


class TerminationReason(str, Enum):
    EXPIRED = "EXPIRED"
    USER_LOGOUT = "USER_LOGOUT"
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
    PASSWORD_RESET = "PASSWORD_RESET"
    DEVICE_REMOVED = "DEVICE_REMOVED"
    SESSION_LIMIT_EXCEEDED = "SESSION_LIMIT_EXCEEDED"
    INACTIVITY = "INACTIVITY"
    ADMIN_ACTION = "ADMIN_ACTION"


class DeviceType(str, Enum):
    DESKTOP = "DESKTOP"
    MOBILE = "MOBILE"
    TABLET = "TABLET"
    UNKNOWN = "UNKNOWN"


@dataclass
class Account:
    id: str
    email: str
    organization_id: Optional[str] = None
    name: Optional[str] = None
    role: str = "user"
    is_active: bool = True
    failed_login_attempts: int = 0
    locked_until: Optional[datetime] = None
    two_factor_enabled: bool = False
    is_online: bool = False
    last_active_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    last_password_change: Optional[datetime] = None
    reset_token_hash: Optional[str] = None
    reset_token_expires_at: Optional[datetime] = None
    device_salt: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    def lock_active(self, now: datetime) -> bool:
        return self.locked_until is not None and self.locked_until > now


@dataclass
class Session:
    token: str
    account_id: str
    expires_at: datetime
    id: str = field(default_factory=new_id)
    device_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    location: Optional[str] = None
    is_active: bool = True
    two_factor_pending: bool = False
    created_at: datetime = field(default_factory=utcnow)
    last_active_at: datetime = field(default_factory=utcnow)
    terminated_at: Optional[datetime] = None
    termination_reason: Optional[TerminationReason] = None


@dataclass
class Device:
    id: str
    account_id: str
    device_type: DeviceType = DeviceType.UNKNOWN
    name: Optional[str] = None
    browser: Optional[str] = None
    os: Optional[str] = None
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    location: Optional[str] = None
    is_trusted: bool = False
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    last_active_at: datetime = field(default_factory=utcnow)


@dataclass
class SecondFactorToken:
    account_id: str
    code: str
    expires_at: datetime
    id: str = field(default_factory=new_id)
    is_used: bool = False
    used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class ApiKey:
    account_id: str
    name: str
    key_hash: str
    scopes: List[str] = field(default_factory=list)
    id: str = field(default_factory=new_id)
    key_prefix: Optional[str] = None
    is_active: bool = True
    expires_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    deactivated_at: Optional[datetime] = None
    deactivation_reason: Optional[str] = None


@dataclass
class SecurityEvent:
    event_type: SecurityEventType
    severity: Severity
    description: str
    account_id: Optional[str] = None
    id: str = field(default_factory=new_id)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    is_resolved: bool = False
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Organization:
    id: str
    name: str
    policy: OrganizationPolicy = field(default_factory=OrganizationPolicy)
    created_at: datetime = field(default_factory=utcnow)

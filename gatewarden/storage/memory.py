from __future__ import annotations

import threading
import uuid
from dataclasses import fields
from datetime import datetime
from typing import (
    Any,
    Callable,
    Collection,
    Dict,
    List,
    Optional,
    Protocol,
)

from gatewarden.logging import get_logger
from gatewarden.storage.errors import ConstraintViolation
from gatewarden.storage.models import (
    Account,
    ApiKey,
    Device,
    Organization,
    SecondFactorToken,
    SecurityEvent,
    SecurityEventType,
    Session,
    Severity,
    TerminationReason,
)


class SecurityStore(Protocol):
    """Persistence contract the security components are written against."""

    # accounts
    def create_account(
        self,
        email: str,
        *,
        organization_id: Optional[str] = None,
        name: Optional[str] = None,
        role: str = "user",
    ) -> Account: ...

    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def get_account_by_reset_token(self, token_hash: str) -> Optional[Account]: ...

    def consume_reset_token(self, token_hash: str, now: datetime) -> Optional[Account]: ...

    def update_account(self, account_id: str, **changes: Any) -> Optional[Account]: ...

    def list_accounts(
        self,
        *,
        organization_id: Optional[str] = None,
        is_online: Optional[bool] = None,
        last_active_before: Optional[datetime] = None,
    ) -> List[Account]: ...

    def increment_failed_logins(self, account_id: str) -> int: ...

    def clear_expired_lockouts(self, now: datetime) -> int: ...

    def clear_expired_reset_tokens(self, now: datetime) -> int: ...

    def save_password(self, account_id: str, password_hash: str) -> None: ...

    def get_password_hash(self, account_id: str) -> Optional[str]: ...

    # sessions
    def create_session(self, session: Session) -> Session: ...

    def get_session(self, token: str) -> Optional[Session]: ...

    def update_session(self, token: str, **changes: Any) -> Optional[Session]: ...

    def list_sessions(
        self, account_id: str, *, active_only: bool = True
    ) -> List[Session]: ...

    def list_expired_sessions(self, now: datetime) -> List[Session]: ...

    def count_active_sessions(self, account_id: str) -> int: ...

    def terminate_sessions(
        self,
        *,
        reason: TerminationReason,
        now: datetime,
        account_id: Optional[str] = None,
        device_id: Optional[str] = None,
    ) -> int: ...

    # devices
    def get_device(self, device_id: str) -> Optional[Device]: ...

    def upsert_device(self, device: Device) -> Device: ...

    def update_device(self, device_id: str, **changes: Any) -> Optional[Device]: ...

    def list_devices(
        self,
        account_id: Optional[str] = None,
        *,
        include_inactive: bool = False,
    ) -> List[Device]: ...

    def deactivate_devices_inactive_since(self, cutoff: datetime) -> int: ...

    # second-factor tokens
    def create_second_factor_token(
        self, token: SecondFactorToken
    ) -> SecondFactorToken: ...

    def list_second_factor_tokens(
        self, account_id: str, *, unused_only: bool = False
    ) -> List[SecondFactorToken]: ...

    def consume_second_factor_token(
        self, account_id: str, code: str, now: datetime
    ) -> Optional[SecondFactorToken]: ...

    def invalidate_second_factor_tokens(
        self, account_id: str, *, now: Optional[datetime] = None
    ) -> int: ...

    def delete_stale_second_factor_tokens(self, now: datetime) -> int: ...

    # api keys
    def create_api_key(self, api_key: ApiKey) -> ApiKey: ...

    def get_api_key(self, key_id: str) -> Optional[ApiKey]: ...

    def get_api_key_by_hash(self, key_hash: str) -> Optional[ApiKey]: ...

    def update_api_key(self, key_id: str, **changes: Any) -> Optional[ApiKey]: ...

    def list_api_keys(
        self, account_id: Optional[str] = None, *, active_only: bool = False
    ) -> List[ApiKey]: ...

    def deactivate_expired_api_keys(self, now: datetime) -> int: ...

    # security events
    def append_event(self, event: SecurityEvent) -> SecurityEvent: ...

    def get_event(self, event_id: str) -> Optional[SecurityEvent]: ...

    def list_events(
        self,
        *,
        account_id: Optional[str] = None,
        account_ids: Optional[Collection[str]] = None,
        event_type: Optional[SecurityEventType] = None,
        severity: Optional[Severity] = None,
        is_resolved: Optional[bool] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[SecurityEvent]: ...

    def count_events(
        self,
        *,
        account_id: Optional[str] = None,
        account_ids: Optional[Collection[str]] = None,
        event_type: Optional[SecurityEventType] = None,
        severity: Optional[Severity] = None,
        is_resolved: Optional[bool] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> int: ...

    def resolve_event(
        self, event_id: str, resolved_by: str, now: datetime
    ) -> Optional[SecurityEvent]: ...

    # organizations
    def create_organization(self, organization: Organization) -> Organization: ...

    def get_organization(self, organization_id: str) -> Optional[Organization]: ...

    def list_organizations(self) -> List[Organization]: ...

    def update_organization(
        self, organization_id: str, **changes: Any
    ) -> Optional[Organization]: ...


def _apply_changes(record: Any, changes: Dict[str, Any]) -> None:
    allowed = {f.name for f in fields(record)}
    unknown = set(changes) - allowed
    if unknown:
        raise ValueError(f"unknown fields for {type(record).__name__}: {sorted(unknown)}")
    for key, value in changes.items():
        setattr(record, key, value)


class MemoryStore:
    """In-process store; every read-modify-write runs under one RLock."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.passwords: Dict[str, str] = {}
        self.sessions: Dict[str, Session] = {}
        self.devices: Dict[str, Device] = {}
        self.second_factor_tokens: Dict[str, SecondFactorToken] = {}
        self.api_keys: Dict[str, ApiKey] = {}
        self.events: List[SecurityEvent] = []
        self.organizations: Dict[str, Organization] = {}
        # RLock so helpers can re-enter from public methods
        self._data_lock = threading.RLock()

    # accounts
    def create_account(
        self,
        email: str,
        *,
        organization_id: Optional[str] = None,
        name: Optional[str] = None,
        role: str = "user",
    ) -> Account:
        normalized = email.strip().lower()
        with self._data_lock:
            if any(a.email == normalized for a in self.accounts.values()):
                raise ConstraintViolation("email already exists", field="email")
            account = Account(
                id=str(uuid.uuid4()),
                email=normalized,
                organization_id=organization_id,
                name=name,
                role=role,
            )
            self.accounts[account.id] = account
            return account

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            return self.accounts.get(account_id)

    def get_account_by_email(self, email: str) -> Optional[Account]:
        normalized = email.strip().lower()
        with self._data_lock:
            return next((a for a in self.accounts.values() if a.email == normalized), None)

    def get_account_by_reset_token(self, token_hash: str) -> Optional[Account]:
        with self._data_lock:
            return next(
                (a for a in self.accounts.values() if a.reset_token_hash == token_hash),
                None,
            )

    def consume_reset_token(self, token_hash: str, now: datetime) -> Optional[Account]:
        """Clear a live reset token and return its account; at most one caller wins."""
        with self._data_lock:
            for account in self.accounts.values():
                if (
                    account.reset_token_hash == token_hash
                    and account.reset_token_expires_at is not None
                    and account.reset_token_expires_at > now
                ):
                    account.reset_token_hash = None
                    account.reset_token_expires_at = None
                    return account
            return None

    def update_account(self, account_id: str, **changes: Any) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            _apply_changes(account, changes)
            return account

    def list_accounts(
        self,
        *,
        organization_id: Optional[str] = None,
        is_online: Optional[bool] = None,
        last_active_before: Optional[datetime] = None,
    ) -> List[Account]:
        with self._data_lock:
            results = []
            for account in self.accounts.values():
                if organization_id is not None and account.organization_id != organization_id:
                    continue
                if is_online is not None and account.is_online != is_online:
                    continue
                if last_active_before is not None and (
                    account.last_active_at is None
                    or account.last_active_at >= last_active_before
                ):
                    continue
                results.append(account)
            return results

    def increment_failed_logins(self, account_id: str) -> int:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                raise ConstraintViolation("account does not exist", {"account_id": account_id})
            account.failed_login_attempts += 1
            return account.failed_login_attempts

    def clear_expired_lockouts(self, now: datetime) -> int:
        with self._data_lock:
            cleared = 0
            for account in self.accounts.values():
                if account.locked_until is not None and account.locked_until <= now:
                    account.locked_until = None
                    account.failed_login_attempts = 0
                    cleared += 1
            return cleared

    def clear_expired_reset_tokens(self, now: datetime) -> int:
        with self._data_lock:
            cleared = 0
            for account in self.accounts.values():
                expires = account.reset_token_expires_at
                if account.reset_token_hash and expires is not None and expires < now:
                    account.reset_token_hash = None
                    account.reset_token_expires_at = None
                    cleared += 1
            return cleared

    def save_password(self, account_id: str, password_hash: str) -> None:
        with self._data_lock:
            if account_id not in self.accounts:
                raise ConstraintViolation("account does not exist", {"account_id": account_id})
            self.passwords[account_id] = password_hash

    def get_password_hash(self, account_id: str) -> Optional[str]:
        with self._data_lock:
            return self.passwords.get(account_id)

    # sessions
    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.account_id not in self.accounts:
                raise ConstraintViolation(
                    "account does not exist", {"account_id": session.account_id}
                )
            if session.token in self.sessions:
                raise ConstraintViolation("session token already exists", field="token")
            self.sessions[session.token] = session
            return session

    def get_session(self, token: str) -> Optional[Session]:
        with self._data_lock:
            return self.sessions.get(token)

    def update_session(self, token: str, **changes: Any) -> Optional[Session]:
        with self._data_lock:
            session = self.sessions.get(token)
            if not session:
                return None
            _apply_changes(session, changes)
            return session

    def list_sessions(self, account_id: str, *, active_only: bool = True) -> List[Session]:
        with self._data_lock:
            return [
                s
                for s in self.sessions.values()
                if s.account_id == account_id and (s.is_active or not active_only)
            ]

    def list_expired_sessions(self, now: datetime) -> List[Session]:
        with self._data_lock:
            return [s for s in self.sessions.values() if s.is_active and s.expires_at < now]

    def count_active_sessions(self, account_id: str) -> int:
        with self._data_lock:
            return sum(
                1 for s in self.sessions.values() if s.account_id == account_id and s.is_active
            )

    def terminate_sessions(
        self,
        *,
        reason: TerminationReason,
        now: datetime,
        account_id: Optional[str] = None,
        device_id: Optional[str] = None,
    ) -> int:
        if account_id is None and device_id is None:
            raise ValueError("terminate_sessions needs an account_id or device_id filter")
        with self._data_lock:
            terminated = 0
            for session in self.sessions.values():
                if not session.is_active:
                    continue
                if account_id is not None and session.account_id != account_id:
                    continue
                if device_id is not None and session.device_id != device_id:
                    continue
                session.is_active = False
                session.terminated_at = now
                session.termination_reason = reason
                terminated += 1
            return terminated

    # devices
    def get_device(self, device_id: str) -> Optional[Device]:
        with self._data_lock:
            return self.devices.get(device_id)

    def upsert_device(self, device: Device) -> Device:
        with self._data_lock:
            existing = self.devices.get(device.id)
            if existing and existing.account_id != device.account_id:
                raise ConstraintViolation("device belongs to another account", field="id")
            self.devices[device.id] = device
            return device

    def update_device(self, device_id: str, **changes: Any) -> Optional[Device]:
        with self._data_lock:
            device = self.devices.get(device_id)
            if not device:
                return None
            _apply_changes(device, changes)
            return device

    def list_devices(
        self,
        account_id: Optional[str] = None,
        *,
        include_inactive: bool = False,
    ) -> List[Device]:
        with self._data_lock:
            results = [
                d
                for d in self.devices.values()
                if (account_id is None or d.account_id == account_id)
                and (include_inactive or d.is_active)
            ]
            return sorted(results, key=lambda d: d.last_active_at, reverse=True)

    def deactivate_devices_inactive_since(self, cutoff: datetime) -> int:
        with self._data_lock:
            deactivated = 0
            for device in self.devices.values():
                if device.is_active and device.last_active_at < cutoff:
                    device.is_active = False
                    deactivated += 1
            return deactivated

    # second-factor tokens
    def create_second_factor_token(self, token: SecondFactorToken) -> SecondFactorToken:
        with self._data_lock:
            self.second_factor_tokens[token.id] = token
            return token

    def list_second_factor_tokens(
        self, account_id: str, *, unused_only: bool = False
    ) -> List[SecondFactorToken]:
        with self._data_lock:
            results = [
                t
                for t in self.second_factor_tokens.values()
                if t.account_id == account_id and (not unused_only or not t.is_used)
            ]
            return sorted(results, key=lambda t: t.created_at, reverse=True)

    def consume_second_factor_token(
        self, account_id: str, code: str, now: datetime
    ) -> Optional[SecondFactorToken]:
        """Mark the matching live code used and return it; at most one caller wins."""
        with self._data_lock:
            for token in self.second_factor_tokens.values():
                if (
                    token.account_id == account_id
                    and token.code == code
                    and not token.is_used
                    and token.expires_at > now
                ):
                    token.is_used = True
                    token.used_at = now
                    return token
            return None

    def invalidate_second_factor_tokens(
        self, account_id: str, *, now: Optional[datetime] = None
    ) -> int:
        with self._data_lock:
            invalidated = 0
            for token in self.second_factor_tokens.values():
                if token.account_id != account_id or token.is_used:
                    continue
                if now is not None and token.expires_at <= now:
                    continue
                token.is_used = True
                invalidated += 1
            return invalidated

    def delete_stale_second_factor_tokens(self, now: datetime) -> int:
        with self._data_lock:
            stale = [
                token_id
                for token_id, token in self.second_factor_tokens.items()
                if token.is_used or token.expires_at < now
            ]
            for token_id in stale:
                del self.second_factor_tokens[token_id]
            return len(stale)

    # api keys
    def create_api_key(self, api_key: ApiKey) -> ApiKey:
        with self._data_lock:
            if any(k.key_hash == api_key.key_hash for k in self.api_keys.values()):
                raise ConstraintViolation("api key hash already exists", field="key_hash")
            self.api_keys[api_key.id] = api_key
            return api_key

    def get_api_key(self, key_id: str) -> Optional[ApiKey]:
        with self._data_lock:
            return self.api_keys.get(key_id)

    def get_api_key_by_hash(self, key_hash: str) -> Optional[ApiKey]:
        with self._data_lock:
            return next((k for k in self.api_keys.values() if k.key_hash == key_hash), None)

    def update_api_key(self, key_id: str, **changes: Any) -> Optional[ApiKey]:
        with self._data_lock:
            api_key = self.api_keys.get(key_id)
            if not api_key:
                return None
            new_hash = changes.get("key_hash")
            if new_hash and any(
                k.key_hash == new_hash and k.id != key_id for k in self.api_keys.values()
            ):
                raise ConstraintViolation("api key hash already exists", field="key_hash")
            _apply_changes(api_key, changes)
            return api_key

    def list_api_keys(
        self, account_id: Optional[str] = None, *, active_only: bool = False
    ) -> List[ApiKey]:
        with self._data_lock:
            results = [
                k
                for k in self.api_keys.values()
                if (account_id is None or k.account_id == account_id)
                and (not active_only or k.is_active)
            ]
            return sorted(results, key=lambda k: k.created_at, reverse=True)

    def deactivate_expired_api_keys(self, now: datetime) -> int:
        with self._data_lock:
            deactivated = 0
            for api_key in self.api_keys.values():
                if api_key.is_active and api_key.expires_at is not None and api_key.expires_at < now:
                    api_key.is_active = False
                    api_key.deactivated_at = now
                    api_key.deactivation_reason = "expired"
                    deactivated += 1
            return deactivated

    # security events
    def append_event(self, event: SecurityEvent) -> SecurityEvent:
        with self._data_lock:
            self.events.append(event)
            return event

    def get_event(self, event_id: str) -> Optional[SecurityEvent]:
        with self._data_lock:
            return next((e for e in self.events if e.id == event_id), None)

    def _filter_events(
        self,
        *,
        account_id: Optional[str] = None,
        account_ids: Optional[Collection[str]] = None,
        event_type: Optional[SecurityEventType] = None,
        severity: Optional[Severity] = None,
        is_resolved: Optional[bool] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> List[SecurityEvent]:
        checks: List[Callable[[SecurityEvent], bool]] = []
        if account_id is not None:
            checks.append(lambda e: e.account_id == account_id)
        if account_ids is not None:
            allowed = set(account_ids)
            checks.append(lambda e: e.account_id in allowed)
        if event_type is not None:
            checks.append(lambda e: e.event_type == event_type)
        if severity is not None:
            checks.append(lambda e: e.severity == severity)
        if is_resolved is not None:
            checks.append(lambda e: e.is_resolved == is_resolved)
        if since is not None:
            checks.append(lambda e: e.created_at >= since)
        if until is not None:
            checks.append(lambda e: e.created_at <= until)
        return [e for e in self.events if all(check(e) for check in checks)]

    def list_events(
        self,
        *,
        account_id: Optional[str] = None,
        account_ids: Optional[Collection[str]] = None,
        event_type: Optional[SecurityEventType] = None,
        severity: Optional[Severity] = None,
        is_resolved: Optional[bool] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[SecurityEvent]:
        with self._data_lock:
            matched = self._filter_events(
                account_id=account_id,
                account_ids=account_ids,
                event_type=event_type,
                severity=severity,
                is_resolved=is_resolved,
                since=since,
                until=until,
            )
        # newest first; later appends win timestamp ties
        ordered = sorted(reversed(matched), key=lambda e: e.created_at, reverse=True)
        return ordered[:limit] if limit is not None else ordered

    def count_events(
        self,
        *,
        account_id: Optional[str] = None,
        account_ids: Optional[Collection[str]] = None,
        event_type: Optional[SecurityEventType] = None,
        severity: Optional[Severity] = None,
        is_resolved: Optional[bool] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> int:
        with self._data_lock:
            return len(
                self._filter_events(
                    account_id=account_id,
                    account_ids=account_ids,
                    event_type=event_type,
                    severity=severity,
                    is_resolved=is_resolved,
                    since=since,
                    until=until,
                )
            )

    def resolve_event(
        self, event_id: str, resolved_by: str, now: datetime
    ) -> Optional[SecurityEvent]:
        with self._data_lock:
            event = next((e for e in self.events if e.id == event_id), None)
            if not event:
                return None
            event.is_resolved = True
            event.resolved_at = now
            event.resolved_by = resolved_by
            return event

    # organizations
    def create_organization(self, organization: Organization) -> Organization:
        with self._data_lock:
            if organization.id in self.organizations:
                raise ConstraintViolation("organization already exists", field="id")
            self.organizations[organization.id] = organization
            return organization

    def get_organization(self, organization_id: str) -> Optional[Organization]:
        with self._data_lock:
            return self.organizations.get(organization_id)

    def list_organizations(self) -> List[Organization]:
        with self._data_lock:
            return list(self.organizations.values())

    def update_organization(
        self, organization_id: str, **changes: Any
    ) -> Optional[Organization]:
        with self._data_lock:
            organization = self.organizations.get(organization_id)
            if not organization:
                return None
            _apply_changes(organization, changes)
            return organization


__all__ = ["MemoryStore", "SecurityStore"]

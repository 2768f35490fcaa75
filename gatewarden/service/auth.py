from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from gatewarden.logging import get_logger, hash_identifier
from gatewarden.service.activity import ActivityTracker
from gatewarden.service.api_keys import ApiKeyRegistry, has_scope
from gatewarden.service.common import Clock, PolicyResolver
from gatewarden.service.devices import DeviceInfo, DeviceRegistry
from gatewarden.service.errors import (
    AccountLockedError,
    AuthenticationError,
    ConflictError,
    RateLimitExceeded,
    ValidationError,
)
from gatewarden.service.events import SecurityEventLog
from gatewarden.service.lockout import CredentialGuard
from gatewarden.service.passwords import PasswordHashing, validate_password
from gatewarden.service.rate_limit import RULES, RateLimiter
from gatewarden.service.results import Outcome
from gatewarden.service.sessions import SessionRegistry
from gatewarden.service.two_factor import SecondFactorIssuer
from gatewarden.storage.errors import ConstraintViolation
from gatewarden.storage.memory import SecurityStore
from gatewarden.storage.models import (
    Account,
    ApiKey,
    Device,
    SecurityEventType,
    Session,
    Severity,
    TerminationReason,
    utcnow,
)

logger = get_logger(__name__)

INVALID_CREDENTIALS = "Invalid email or password"


@dataclass(frozen=True)
class LoginResult:
    account: Account
    session: Session
    device: Device
    two_factor_required: bool = False
    code_expires_at: Optional[datetime] = None


@dataclass(frozen=True)
class Principal:
    """The authenticated caller behind a request."""

    account: Account
    session: Optional[Session] = None
    api_key: Optional[ApiKey] = None
    scopes: List[str] = field(default_factory=list)

    @property
    def is_admin(self) -> bool:
        return self.account.role == "admin"

    def can(self, scope: str) -> bool:
        # Session principals act with the account's full rights
        if self.api_key is None:
            return self.is_admin or not scope.startswith("admin:")
        return has_scope(self.scopes, scope)


class AuthService:
    """Login orchestration across the rate limiter, lockout, devices and sessions."""

    def __init__(
        self,
        store: SecurityStore,
        events: SecurityEventLog,
        policies: PolicyResolver,
        rate_limiter: RateLimiter,
        guard: CredentialGuard,
        sessions: SessionRegistry,
        devices: DeviceRegistry,
        activity: ActivityTracker,
        two_factor: SecondFactorIssuer,
        api_keys: ApiKeyRegistry,
        hashing: PasswordHashing,
        *,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.events = events
        self.policies = policies
        self.rate_limiter = rate_limiter
        self.guard = guard
        self.sessions = sessions
        self.devices = devices
        self.activity = activity
        self.two_factor = two_factor
        self.api_keys = api_keys
        self.hashing = hashing
        self._clock = clock

    def _now(self) -> datetime:
        return self._clock()

    async def register_account(
        self,
        email: str,
        password: str,
        *,
        organization_id: Optional[str] = None,
        name: Optional[str] = None,
        role: str = "user",
    ) -> Account:
        errors = validate_password(password, self.policies.for_organization(organization_id).password)
        if errors:
            raise ValidationError(", ".join(errors), detail={"errors": errors})
        try:
            account = self.store.create_account(
                email, organization_id=organization_id, name=name, role=role
            )
        except ConstraintViolation as exc:
            raise ConflictError("account already exists", detail=exc.detail) from exc
        self.store.save_password(account.id, self.hashing.hash(password))
        account = self.store.update_account(account.id, last_password_change=self._now()) or account
        logger.info("account_registered", account_id=account.id, organization_id=organization_id)
        return account

    async def login(
        self,
        email: str,
        password: str,
        *,
        ip_address: str,
        user_agent: str,
        location: Optional[str] = None,
        device_salt: Optional[str] = None,
    ) -> Outcome[LoginResult]:
        limit = await self.rate_limiter.check_rate_limit(
            RateLimiter.identifier("ip", ip=ip_address), RULES["login"]
        )
        if not limit.allowed:
            await self.events.log_event(
                SecurityEventType.RATE_LIMIT_EXCEEDED,
                Severity.MEDIUM,
                "Login rate limit exceeded",
                ip_address=ip_address,
                user_agent=user_agent,
                metadata={"rule": "login", "email_hash": hash_identifier(email)},
            )
            return Outcome.fail(
                RateLimitExceeded(
                    "Too many login attempts. Please try again later.",
                    detail={"retry_after": limit.retry_after_seconds(self._now())},
                )
            )

        if await self.guard.is_account_locked(email):
            return Outcome.fail(self._locked_error(email))

        account = self.store.get_account_by_email(email)
        stored_hash = self.store.get_password_hash(account.id) if account else None
        if account is None or not account.is_active or not self.hashing.verify(stored_hash, password):
            reason = "account_disabled" if account is not None and not account.is_active else "invalid_credentials"
            await self.guard.record_failed_login(email, ip_address, user_agent, reason)
            if account is not None and await self.guard.is_account_locked(email):
                return Outcome.fail(self._locked_error(email))
            return Outcome.fail(AuthenticationError(INVALID_CREDENTIALS))

        if stored_hash and self.hashing.needs_rehash(stored_hash):
            self.store.save_password(account.id, self.hashing.hash(password))

        await self.guard.record_successful_login(account.id, ip_address, user_agent, location)
        device = await self.devices.register_device(
            account.id,
            DeviceInfo(
                user_agent=user_agent,
                ip_address=ip_address,
                location=location,
                device_salt=device_salt,
            ),
        )
        await self.sessions.check_session_limits(account.id)

        needs_second_factor = account.two_factor_enabled or self.two_factor.is_required_2fa(account.id)
        code_expires_at = None
        if needs_second_factor:
            challenge = await self.two_factor.generate_and_send_code(account.id)
            if challenge.error is not None:
                return Outcome.fail(challenge.error)
            code_expires_at = challenge.value

        session = await self.sessions.create_session(
            account.id,
            ip_address=ip_address,
            user_agent=user_agent,
            device_id=device.id,
            location=location,
            two_factor_pending=needs_second_factor,
        )
        return Outcome.ok(
            LoginResult(
                account=self.store.get_account(account.id) or account,
                session=session,
                device=device,
                two_factor_required=needs_second_factor,
                code_expires_at=code_expires_at,
            )
        )

    def _locked_error(self, email: str) -> AccountLockedError:
        info = self.guard.get_lockout_info(email)
        locked_until = info.locked_until.isoformat() if info and info.locked_until else None
        return AccountLockedError(
            "Account is temporarily locked. Please try again later.",
            detail={"locked_until": locked_until},
        )

    async def complete_two_factor(self, token: str, code: str) -> Outcome[Session]:
        """Redeem a second-factor code for a session created with a pending challenge."""
        validation = await self.sessions.validate_session(token)
        if validation.error is not None:
            return Outcome.fail(validation.error)
        session = validation.unwrap()
        if not session.two_factor_pending:
            return Outcome.ok(session)

        limit = await self.rate_limiter.check_rate_limit(
            RateLimiter.identifier("user", user_id=session.account_id), RULES["two_factor"]
        )
        if not limit.allowed:
            return Outcome.fail(
                RateLimitExceeded(
                    "Too many verification attempts. Please try again later.",
                    detail={"retry_after": limit.retry_after_seconds(self._now())},
                )
            )

        verified = await self.two_factor.verify_code(session.account_id, code)
        if verified.error is not None:
            return Outcome.fail(verified.error)
        updated = self.store.update_session(token, two_factor_pending=False)
        return Outcome.ok(updated or session)

    async def logout(self, token: str) -> bool:
        session = self.store.get_session(token)
        terminated = await self.sessions.terminate_session(token, TerminationReason.USER_LOGOUT)
        if terminated and session is not None:
            await self.events.log_event(
                SecurityEventType.LOGOUT,
                Severity.LOW,
                "User logged out",
                account_id=session.account_id,
                ip_address=session.ip_address,
                user_agent=session.user_agent,
                metadata={"session_id": session.id},
            )
        return terminated

    async def authenticate_request(
        self,
        *,
        bearer_token: Optional[str] = None,
        api_key: Optional[str] = None,
    ) -> Outcome[Principal]:
        if bearer_token:
            return await self._authenticate_session(bearer_token)
        if api_key:
            return await self._authenticate_api_key(api_key)
        return Outcome.fail(AuthenticationError("Authentication required"))

    async def _authenticate_session(self, token: str) -> Outcome[Principal]:
        validation = await self.sessions.validate_session(token)
        if validation.error is not None:
            error = validation.error
            if not isinstance(error, AuthenticationError):
                error = AuthenticationError("Invalid session", error_code="invalid_session")
            return Outcome.fail(error)
        session = validation.unwrap()
        if session.two_factor_pending:
            return Outcome.fail(
                AuthenticationError(
                    "Second factor verification required", error_code="two_factor_required"
                )
            )
        account = self.store.get_account(session.account_id)
        if account is None or not account.is_active:
            await self.sessions.terminate_session(token, TerminationReason.ADMIN_ACTION)
            return Outcome.fail(AuthenticationError("Account is not active"))
        session = await self.sessions.extend_session(token)
        await self.activity.update_user_activity(account.id)
        return Outcome.ok(Principal(account=account, session=session))

    async def _authenticate_api_key(self, key: str) -> Outcome[Principal]:
        validation = await self.api_keys.validate_api_key(key)
        if validation.error is not None:
            return Outcome.fail(validation.error)
        record = validation.unwrap()
        account = self.store.get_account(record.account_id)
        if account is None or not account.is_active:
            return Outcome.fail(AuthenticationError("Account is not active"))
        return Outcome.ok(Principal(account=account, api_key=record, scopes=list(record.scopes)))

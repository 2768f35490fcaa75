from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from gatewarden.config import PasswordPolicy
from gatewarden.logging import get_logger, hash_identifier
from gatewarden.service.common import Clock, PolicyResolver, generate_token, sha256_hex
from gatewarden.service.errors import (
    AuthenticationError,
    ExpiredError,
    InvalidTokenError,
    NotFoundError,
    ValidationError,
)
from gatewarden.service.events import SecurityEventLog
from gatewarden.service.notifications import NotificationCategory, Notifier, deliver
from gatewarden.service.passwords import PasswordHashing, describe_policy, validate_password
from gatewarden.service.results import Outcome
from gatewarden.service.sessions import SessionRegistry
from gatewarden.storage.memory import SecurityStore
from gatewarden.storage.models import (
    Account,
    SecurityEventType,
    Severity,
    TerminationReason,
    utcnow,
)

logger = get_logger(__name__)

RESET_REQUESTED_MESSAGE = "If an account exists, a reset link has been sent"


@dataclass(frozen=True)
class ResetRequestResponse:
    success: bool
    message: str


@dataclass(frozen=True)
class PasswordSecurityInfo:
    last_password_change: Optional[datetime]
    password_age_days: Optional[int]
    policy: PasswordPolicy
    requirements: List[str]


class PasswordResetFlow:
    """Reset-token issuance and redemption plus authenticated password changes."""

    def __init__(
        self,
        store: SecurityStore,
        events: SecurityEventLog,
        sessions: SessionRegistry,
        policies: PolicyResolver,
        notifier: Notifier,
        hashing: PasswordHashing,
        *,
        token_ttl_minutes: int = 60,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.events = events
        self.sessions = sessions
        self.policies = policies
        self.notifier = notifier
        self.hashing = hashing
        self.token_ttl = timedelta(minutes=token_ttl_minutes)
        self._clock = clock

    def _now(self) -> datetime:
        return self._clock()

    def _policy_errors(self, account: Account, password: str) -> List[str]:
        return validate_password(password, self.policies.for_account(account).password)

    async def initiate_password_reset(
        self,
        email: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> ResetRequestResponse:
        """Same response whether or not the account exists."""
        response = ResetRequestResponse(success=True, message=RESET_REQUESTED_MESSAGE)
        account = self.store.get_account_by_email(email)
        if account is None:
            await self.events.log_event(
                SecurityEventType.PASSWORD_RESET_REQUEST,
                Severity.LOW,
                "Password reset attempt for non-existent account",
                ip_address=ip_address,
                user_agent=user_agent,
                metadata={"email_hash": hash_identifier(email), "reason": "account_not_found"},
            )
            return response

        token = generate_token(32)
        expires_at = self._now() + self.token_ttl
        self.store.update_account(
            account.id,
            reset_token_hash=sha256_hex(token),
            reset_token_expires_at=expires_at,
        )
        await deliver(
            self.notifier,
            NotificationCategory.PASSWORD_RESET,
            account.email,
            {"token": token, "expires_at": expires_at.isoformat(), "name": account.name},
        )
        await self.events.log_event(
            SecurityEventType.PASSWORD_RESET_REQUEST,
            Severity.MEDIUM,
            "Password reset requested",
            account_id=account.id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return response

    async def validate_reset_token(self, token: str) -> Outcome[Account]:
        if not token:
            return Outcome.fail(InvalidTokenError("Invalid or expired reset token"))
        account = self.store.get_account_by_reset_token(sha256_hex(token))
        if account is None:
            return Outcome.fail(InvalidTokenError("Invalid or expired reset token"))
        expires_at = account.reset_token_expires_at
        if expires_at is None or expires_at <= self._now():
            self.store.update_account(
                account.id, reset_token_hash=None, reset_token_expires_at=None
            )
            return Outcome.fail(ExpiredError("Invalid or expired reset token"))
        return Outcome.ok(account)

    async def reset_password(
        self,
        token: str,
        new_password: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Outcome[None]:
        validation = await self.validate_reset_token(token)
        if validation.error is not None:
            return Outcome.fail(validation.error)
        account = validation.unwrap()

        errors = self._policy_errors(account, new_password)
        if errors:
            return Outcome.fail(ValidationError(", ".join(errors), detail={"errors": errors}))

        password_hash = self.hashing.hash(new_password)
        now = self._now()
        # Redeem atomically; a concurrent reset with the same token may have won while hashing
        redeemed = self.store.consume_reset_token(sha256_hex(token), now)
        if redeemed is None or redeemed.id != account.id:
            return Outcome.fail(InvalidTokenError("Invalid or expired reset token"))

        self.store.save_password(account.id, password_hash)
        self.store.update_account(
            account.id,
            last_password_change=now,
            failed_login_attempts=0,
            locked_until=None,
        )
        await self.sessions.terminate_all_user_sessions(
            account.id, TerminationReason.PASSWORD_RESET
        )
        await self.events.log_event(
            SecurityEventType.PASSWORD_RESET_COMPLETE,
            Severity.MEDIUM,
            "Password reset completed successfully",
            account_id=account.id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return Outcome.ok()

    async def change_password(
        self,
        account_id: str,
        current_password: str,
        new_password: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Outcome[None]:
        account = self.store.get_account(account_id)
        stored_hash = self.store.get_password_hash(account_id) if account else None
        if account is None or stored_hash is None:
            return Outcome.fail(NotFoundError("Account not found or no password set"))

        if not self.hashing.verify(stored_hash, current_password):
            await self.events.log_event(
                SecurityEventType.PASSWORD_CHANGED,
                Severity.MEDIUM,
                "Password change failed: incorrect current password",
                account_id=account_id,
                ip_address=ip_address,
                user_agent=user_agent,
            )
            return Outcome.fail(AuthenticationError("Current password is incorrect"))

        if self.hashing.verify(stored_hash, new_password):
            return Outcome.fail(
                ValidationError("New password must be different from current password")
            )

        errors = self._policy_errors(account, new_password)
        if errors:
            return Outcome.fail(ValidationError(", ".join(errors), detail={"errors": errors}))

        self.store.save_password(account_id, self.hashing.hash(new_password))
        self.store.update_account(account_id, last_password_change=self._now())
        await self.events.log_event(
            SecurityEventType.PASSWORD_CHANGED,
            Severity.LOW,
            "Password changed successfully",
            account_id=account_id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return Outcome.ok()

    def get_password_security_info(self, account_id: str) -> Optional[PasswordSecurityInfo]:
        account = self.store.get_account(account_id)
        if account is None:
            return None
        policy = self.policies.for_account(account).password
        age = None
        if account.last_password_change is not None:
            age = (self._now() - account.last_password_change).days
        return PasswordSecurityInfo(
            last_password_change=account.last_password_change,
            password_age_days=age,
            policy=policy,
            requirements=describe_policy(policy),
        )

    async def cleanup_expired_tokens(self) -> int:
        cleared = self.store.clear_expired_reset_tokens(self._now())
        if cleared:
            logger.info("expired_reset_tokens_cleared", count=cleared)
        return cleared

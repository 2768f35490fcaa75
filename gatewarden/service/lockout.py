from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from gatewarden.logging import get_logger, hash_identifier
from gatewarden.service.common import Clock, PolicyResolver
from gatewarden.service.errors import NotFoundError
from gatewarden.service.events import SecurityEventLog
from gatewarden.service.notifications import NotificationCategory, Notifier, deliver
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


@dataclass(frozen=True)
class LockoutInfo:
    failed_attempts: int
    max_attempts: int
    is_locked: bool
    locked_until: Optional[datetime]
    remaining_attempts: int


class CredentialGuard:
    """Failed-login accounting and account lock windows."""

    def __init__(
        self,
        store: SecurityStore,
        events: SecurityEventLog,
        sessions: SessionRegistry,
        policies: PolicyResolver,
        notifier: Notifier,
        *,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.events = events
        self.sessions = sessions
        self.policies = policies
        self.notifier = notifier
        self._clock = clock

    def _now(self) -> datetime:
        return self._clock()

    async def record_failed_login(
        self,
        email: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Optional[int]:
        """Count a failed attempt; returns the new attempt count, or None for unknown emails."""
        account = self.store.get_account_by_email(email)
        if account is None:
            await self.events.log_event(
                SecurityEventType.LOGIN_FAILED,
                Severity.MEDIUM,
                "Failed login attempt for non-existent account",
                ip_address=ip_address,
                user_agent=user_agent,
                metadata={
                    "email_hash": hash_identifier(email),
                    "reason": reason or "invalid_credentials",
                },
            )
            return None

        # A lapsed lock starts the count over before this failure is added
        if account.locked_until is not None and account.locked_until <= self._now():
            account = await self._unlock(account, unlocked_by=None)

        policy = self.policies.for_account(account)
        attempts = self.store.increment_failed_logins(account.id)
        await self.events.log_event(
            SecurityEventType.LOGIN_FAILED,
            Severity.MEDIUM,
            f"Failed login attempt {attempts}/{policy.max_failed_logins}",
            account_id=account.id,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata={
                "attempt": attempts,
                "max_attempts": policy.max_failed_logins,
                "reason": reason or "invalid_credentials",
            },
        )

        refreshed = self.store.get_account(account.id)
        already_locked = refreshed is not None and refreshed.lock_active(self._now())
        if attempts >= policy.max_failed_logins and not already_locked:
            await self.lock_account(
                account.id,
                policy.lockout_duration_minutes,
                ip_address=ip_address,
                user_agent=user_agent,
            )
        return attempts

    async def lock_account(
        self,
        account_id: str,
        duration_minutes: Optional[int] = None,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> datetime:
        account = self.store.get_account(account_id)
        if account is None:
            raise NotFoundError("account not found", detail={"account_id": account_id})
        duration = duration_minutes or self.policies.for_account(account).lockout_duration_minutes
        locked_until = self._now() + timedelta(minutes=duration)
        self.store.update_account(account_id, locked_until=locked_until, is_online=False)
        terminated = await self.sessions.terminate_all_user_sessions(
            account_id, TerminationReason.ACCOUNT_LOCKED
        )

        await self.events.log_event(
            SecurityEventType.ACCOUNT_LOCKED,
            Severity.HIGH,
            f"Account locked due to {account.failed_login_attempts} failed login attempts",
            account_id=account_id,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata={
                "lockout_duration": duration,
                "unlock_time": locked_until.isoformat(),
                "failed_attempts": account.failed_login_attempts,
                "terminated_sessions": terminated,
            },
        )
        logger.warning(
            "account_locked",
            account_id=account_id,
            locked_until=locked_until.isoformat(),
        )

        # Best effort: a failed notice never undoes the lock
        await deliver(
            self.notifier,
            NotificationCategory.ACCOUNT_LOCKED,
            account.email,
            {
                "unlock_time": locked_until.isoformat(),
                "ip_address": ip_address,
                "name": account.name,
            },
        )
        return locked_until

    async def is_account_locked(self, email: str) -> bool:
        account = self.store.get_account_by_email(email)
        if account is None or account.locked_until is None:
            return False
        if account.locked_until <= self._now():
            await self._unlock(account, unlocked_by=None)
            return False
        return True

    async def unlock_account(self, email: str, unlocked_by: Optional[str] = None) -> Account:
        account = self.store.get_account_by_email(email)
        if account is None:
            raise NotFoundError("account not found")
        return await self._unlock(account, unlocked_by=unlocked_by)

    async def _unlock(self, account: Account, *, unlocked_by: Optional[str]) -> Account:
        previous_attempts = account.failed_login_attempts
        updated = self.store.update_account(account.id, locked_until=None, failed_login_attempts=0)
        await self.events.log_event(
            SecurityEventType.ACCOUNT_UNLOCKED,
            Severity.LOW,
            f"Account unlocked by {unlocked_by}"
            if unlocked_by
            else "Account auto-unlocked after timeout",
            account_id=account.id,
            metadata={
                "unlocked_by": unlocked_by or "system",
                "previous_failed_attempts": previous_attempts,
            },
        )
        return updated or account

    async def reset_failed_attempts(self, account_id: str) -> None:
        account = self.store.get_account(account_id)
        if account is None or account.failed_login_attempts == 0:
            return
        self.store.update_account(account_id, failed_login_attempts=0, locked_until=None)

    async def record_successful_login(
        self,
        account_id: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        location: Optional[str] = None,
    ) -> None:
        await self.reset_failed_attempts(account_id)
        self.store.update_account(account_id, last_login_at=self._now())
        await self.events.log_event(
            SecurityEventType.LOGIN_SUCCESS,
            Severity.LOW,
            "Successful login",
            account_id=account_id,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata={"location": location} if location else {},
        )

    def get_lockout_info(self, email: str) -> Optional[LockoutInfo]:
        account = self.store.get_account_by_email(email)
        if account is None:
            return None
        policy = self.policies.for_account(account)
        is_locked = account.lock_active(self._now())
        return LockoutInfo(
            failed_attempts=account.failed_login_attempts,
            max_attempts=policy.max_failed_logins,
            is_locked=is_locked,
            locked_until=account.locked_until if is_locked else None,
            remaining_attempts=max(0, policy.max_failed_logins - account.failed_login_attempts),
        )

    async def cleanup_expired_lockouts(self) -> int:
        cleared = self.store.clear_expired_lockouts(self._now())
        if cleared:
            logger.info("expired_lockouts_cleared", count=cleared)
        return cleared

from __future__ import annotations

import secrets
from datetime import datetime, timedelta
from typing import List

from gatewarden.logging import get_logger
from gatewarden.service.common import Clock, PolicyResolver
from gatewarden.service.errors import DeliveryError, InvalidTokenError, NotFoundError
from gatewarden.service.events import SecurityEventLog
from gatewarden.service.notifications import NotificationCategory, Notifier, deliver
from gatewarden.service.results import Outcome
from gatewarden.storage.memory import SecurityStore
from gatewarden.storage.models import (
    Account,
    Organization,
    SecondFactorToken,
    SecurityEventType,
    Severity,
    utcnow,
)

logger = get_logger(__name__)


def generate_code() -> str:
    """Six digits, never starting with zero."""
    return str(100000 + secrets.randbelow(900000))


def generate_backup_codes(count: int = 10) -> List[str]:
    return [secrets.token_hex(8).upper() for _ in range(count)]


class SecondFactorIssuer:
    """One-time emailed codes for second-factor verification."""

    def __init__(
        self,
        store: SecurityStore,
        events: SecurityEventLog,
        policies: PolicyResolver,
        notifier: Notifier,
        *,
        code_ttl_minutes: int = 10,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.events = events
        self.policies = policies
        self.notifier = notifier
        self.code_ttl = timedelta(minutes=code_ttl_minutes)
        self._clock = clock

    def _now(self) -> datetime:
        return self._clock()

    def _account(self, account_id: str) -> Account:
        account = self.store.get_account(account_id)
        if account is None:
            raise NotFoundError("account not found", detail={"account_id": account_id})
        return account

    async def generate_and_send_code(self, account_id: str) -> Outcome[datetime]:
        """Issue a fresh code, superseding any live one; the value is its expiry."""
        account = self.store.get_account(account_id)
        if account is None:
            return Outcome.fail(NotFoundError("account not found"))

        now = self._now()
        superseded = self.store.invalidate_second_factor_tokens(account_id, now=now)
        token = self.store.create_second_factor_token(
            SecondFactorToken(
                account_id=account_id,
                code=generate_code(),
                expires_at=now + self.code_ttl,
                created_at=now,
            )
        )
        delivered = await deliver(
            self.notifier,
            NotificationCategory.TWO_FACTOR_CODE,
            account.email,
            {
                "code": token.code,
                "expires_in_minutes": int(self.code_ttl.total_seconds() // 60),
                "name": account.name,
            },
        )
        if not delivered:
            # An undelivered code must not stay redeemable
            self.store.invalidate_second_factor_tokens(account_id)
            return Outcome.fail(DeliveryError("Failed to send verification code"))

        await self.events.log_event(
            SecurityEventType.TWO_FACTOR_SENT,
            Severity.LOW,
            "2FA code generated and sent via email",
            account_id=account_id,
            metadata={"token_id": token.id, "superseded": superseded},
        )
        return Outcome.ok(token.expires_at)

    async def verify_code(self, account_id: str, code: str) -> Outcome[SecondFactorToken]:
        token = self.store.consume_second_factor_token(account_id, code.strip(), self._now())
        if token is None:
            await self.events.log_event(
                SecurityEventType.TWO_FACTOR_FAILED,
                Severity.MEDIUM,
                "Invalid or expired 2FA code provided",
                account_id=account_id,
            )
            return Outcome.fail(InvalidTokenError("Invalid or expired code"))

        await self.events.log_event(
            SecurityEventType.TWO_FACTOR_VERIFIED,
            Severity.LOW,
            "2FA code verified successfully",
            account_id=account_id,
            metadata={"token_id": token.id},
        )
        return Outcome.ok(token)

    async def enable_2fa(self, account_id: str) -> Account:
        account = self._account(account_id)
        account = self.store.update_account(account_id, two_factor_enabled=True) or account
        await self.events.log_event(
            SecurityEventType.TWO_FACTOR_ENABLED,
            Severity.LOW,
            "2FA enabled for account",
            account_id=account_id,
        )
        return account

    async def disable_2fa(self, account_id: str) -> Account:
        account = self._account(account_id)
        invalidated = self.store.invalidate_second_factor_tokens(account_id)
        account = self.store.update_account(account_id, two_factor_enabled=False) or account
        await self.events.log_event(
            SecurityEventType.TWO_FACTOR_DISABLED,
            Severity.MEDIUM,
            "2FA disabled for account",
            account_id=account_id,
            metadata={"invalidated_codes": invalidated},
        )
        return account

    def is_2fa_enabled(self, account_id: str) -> bool:
        account = self.store.get_account(account_id)
        return bool(account and account.two_factor_enabled)

    def is_required_2fa(self, account_id: str) -> bool:
        """Policy decides, regardless of the account's own toggle.

        Accounts outside an organization follow the default policy from settings.
        """
        account = self.store.get_account(account_id)
        if account is None:
            return False
        return self.policies.for_account(account).require_two_factor

    async def enforce_for_organization(self, organization_id: str, enforce: bool) -> Organization:
        organization = self.store.get_organization(organization_id)
        if organization is None:
            raise NotFoundError(
                "organization not found", detail={"organization_id": organization_id}
            )
        policy = organization.policy.model_copy(update={"require_two_factor": enforce})
        self.store.update_organization(organization_id, policy=policy)
        affected = 0
        if enforce:
            for account in self.store.list_accounts(organization_id=organization_id):
                if not account.two_factor_enabled:
                    self.store.update_account(account.id, two_factor_enabled=True)
                    affected += 1
        await self.events.log_event(
            SecurityEventType.SETTINGS_CHANGED,
            Severity.MEDIUM,
            f"2FA {'enforced' if enforce else 'not enforced'} for organization",
            metadata={
                "organization_id": organization_id,
                "action": "enforce" if enforce else "optional",
                "affected_accounts": affected,
            },
        )
        return organization

    async def cleanup_expired_tokens(self) -> int:
        deleted = self.store.delete_stale_second_factor_tokens(self._now())
        if deleted:
            logger.info("second_factor_tokens_cleaned", count=deleted)
        return deleted

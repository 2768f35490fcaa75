from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import List, Literal, Optional, Tuple

from pydantic import BaseModel

from gatewarden.logging import get_logger, hash_identifier
from gatewarden.service.common import Clock
from gatewarden.service.errors import AuthenticationError, NotFoundError, ValidationError
from gatewarden.service.events import SecurityEventLog
from gatewarden.service.results import Outcome
from gatewarden.storage.memory import SecurityStore
from gatewarden.storage.models import (
    Account,
    Organization,
    SecurityEventType,
    Severity,
    utcnow,
)

logger = get_logger(__name__)


class SSOConfig(BaseModel):
    provider: Literal["google", "azure-ad"]
    client_id: str = ""
    client_secret: str = ""
    tenant_id: Optional[str] = None
    domain: Optional[str] = None


@dataclass(frozen=True)
class IdentityProviderResult:
    """What the federation layer reports after talking to the provider."""

    email: str
    provider: str
    success: bool
    provider_account_id: Optional[str] = None
    reason: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


def validate_sso_config(config: SSOConfig) -> Tuple[bool, List[str]]:
    errors: List[str] = []
    if not config.client_id:
        errors.append("Client ID is required")
    if not config.client_secret:
        errors.append("Client Secret is required")
    if config.provider == "azure-ad" and not config.tenant_id:
        errors.append("Tenant ID is required for Azure AD")
    return not errors, errors


def _email_domain(email: str) -> str:
    return email.rpartition("@")[2].strip().lower()


class SSOCorrelator:
    """Maps identity-provider outcomes onto the audit ledger."""

    def __init__(
        self,
        store: SecurityStore,
        events: SecurityEventLog,
        *,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.events = events
        self._clock = clock

    def _now(self) -> datetime:
        return self._clock()

    def validate_email_domain(self, email: str, organization_id: Optional[str] = None) -> bool:
        if not organization_id:
            return True
        organization = self.store.get_organization(organization_id)
        if organization is None or not organization.policy.sso_domain:
            return True
        return _email_domain(email) == organization.policy.sso_domain

    async def configure_for_organization(
        self, organization_id: str, config: SSOConfig, enable: bool = True
    ) -> Organization:
        ok, errors = validate_sso_config(config)
        if enable and not ok:
            raise ValidationError(", ".join(errors), detail={"errors": errors})
        organization = self.store.get_organization(organization_id)
        if organization is None:
            raise NotFoundError(
                "organization not found", detail={"organization_id": organization_id}
            )
        policy = organization.policy.model_copy(
            update={
                "allow_sso": enable,
                "sso_domain": config.domain.strip().lstrip("@").lower()
                if enable and config.domain
                else None,
            }
        )
        organization = self.store.update_organization(organization_id, policy=policy) or organization
        await self.events.log_event(
            SecurityEventType.SETTINGS_CHANGED,
            Severity.MEDIUM,
            f"SSO {'enabled' if enable else 'disabled'} for organization",
            metadata={
                "organization_id": organization_id,
                "provider": config.provider,
                "action": "enable" if enable else "disable",
            },
        )
        return organization

    async def handle_sso_login_success(
        self,
        account_id: str,
        provider: str,
        provider_account_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Outcome[Account]:
        account = self.store.update_account(account_id, last_login_at=self._now())
        if account is None:
            return Outcome.fail(NotFoundError("account not found"))
        await self.events.log_event(
            SecurityEventType.SSO_LOGIN,
            Severity.LOW,
            f"Successful SSO login via {provider}",
            account_id=account_id,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata={"provider": provider, "provider_account_id": provider_account_id},
        )
        return Outcome.ok(account)

    async def handle_sso_login_failure(
        self,
        email: str,
        provider: str,
        reason: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Outcome[Account]:
        account = self.store.get_account_by_email(email)
        await self.events.log_event(
            SecurityEventType.SSO_FAILED,
            Severity.MEDIUM,
            f"SSO login failed via {provider}: {reason}",
            account_id=account.id if account else None,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata={
                "provider": provider,
                "email_hash": hash_identifier(email),
                "reason": reason,
            },
        )
        return Outcome.fail(AuthenticationError(reason, detail={"provider": provider}))

    async def handle_identity_provider_result(
        self, result: IdentityProviderResult
    ) -> Outcome[Account]:
        """Domain check first, then translate the provider's verdict."""
        if not result.success:
            return await self.handle_sso_login_failure(
                result.email,
                result.provider,
                result.reason or "provider_rejected",
                result.ip_address,
                result.user_agent,
            )
        account = self.store.get_account_by_email(result.email)
        if account is None:
            return await self.handle_sso_login_failure(
                result.email, result.provider, "account_not_found",
                result.ip_address, result.user_agent,
            )
        if not account.is_active:
            return await self.handle_sso_login_failure(
                result.email, result.provider, "account_disabled",
                result.ip_address, result.user_agent,
            )
        if not self.validate_email_domain(result.email, account.organization_id):
            logger.warning(
                "sso_domain_rejected",
                provider=result.provider,
                email_hash=hash_identifier(result.email),
            )
            return await self.handle_sso_login_failure(
                result.email, result.provider, "domain_not_allowed",
                result.ip_address, result.user_agent,
            )
        return await self.handle_sso_login_success(
            account.id,
            result.provider,
            result.provider_account_id,
            result.ip_address,
            result.user_agent,
        )

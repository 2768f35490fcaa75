from __future__ import annotations

import hashlib
import secrets
from datetime import datetime
from typing import Callable, Optional

from gatewarden.config import OrganizationPolicy, Settings
from gatewarden.storage.memory import SecurityStore
from gatewarden.storage.models import Account, utcnow

Clock = Callable[[], datetime]


def generate_token(nbytes: int = 32) -> str:
    """Hex token with ``nbytes`` of entropy."""
    return secrets.token_hex(nbytes)


def sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode()).hexdigest()


class PolicyResolver:
    """Looks up the organization policy governing an account."""

    def __init__(self, store: SecurityStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings
        self._default = settings.default_policy()

    @property
    def default(self) -> OrganizationPolicy:
        return self._default

    def for_organization(self, organization_id: Optional[str]) -> OrganizationPolicy:
        if not organization_id:
            return self._default
        org = self.store.get_organization(organization_id)
        if org is None or org.policy is None:
            return self._default
        return org.policy

    def for_account(self, account: Optional[Account]) -> OrganizationPolicy:
        if account is None:
            return self._default
        return self.for_organization(account.organization_id)

    def for_account_id(self, account_id: str) -> OrganizationPolicy:
        return self.for_account(self.store.get_account(account_id))


__all__ = ["Clock", "PolicyResolver", "generate_token", "sha256_hex", "utcnow"]

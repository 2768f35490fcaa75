from __future__ import annotations

from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from gatewarden.service.common import Clock
from gatewarden.storage.memory import SecurityStore
from gatewarden.storage.models import SecurityEventType, Severity, utcnow

DEFAULT_WINDOW_DAYS = 30
RECENT_WINDOW = timedelta(hours=24)
EXPIRING_SOON_WINDOW = timedelta(days=7)


def _rate(numerator: int, denominator: int) -> float:
    return round(numerator / denominator * 100, 2) if denominator else 0.0


class SecurityStats:
    """Read-only aggregates for the administrative surface.

    Every query accepts an optional organization id; when given, counts are
    restricted to that organization's accounts.
    """

    def __init__(self, store: SecurityStore, *, clock: Clock = utcnow) -> None:
        self.store = store
        self._clock = clock

    def _now(self) -> datetime:
        return self._clock()

    def _account_ids(self, organization_id: Optional[str]) -> Optional[List[str]]:
        if organization_id is None:
            return None
        return [a.id for a in self.store.list_accounts(organization_id=organization_id)]

    def _count(
        self,
        event_type: SecurityEventType,
        since: datetime,
        account_ids: Optional[List[str]],
    ) -> int:
        return self.store.count_events(event_type=event_type, since=since, account_ids=account_ids)

    def lockout_stats(self, organization_id: Optional[str] = None, days: int = DEFAULT_WINDOW_DAYS) -> Dict[str, Any]:
        now = self._now()
        since = now - timedelta(days=days)
        accounts = self.store.list_accounts(organization_id=organization_id)
        account_ids = self._account_ids(organization_id)
        return {
            "currently_locked": sum(1 for a in accounts if a.lock_active(now)),
            "accounts_with_failed_attempts": sum(1 for a in accounts if a.failed_login_attempts > 0),
            "lockouts": self._count(SecurityEventType.ACCOUNT_LOCKED, since, account_ids),
            "failed_logins": self._count(SecurityEventType.LOGIN_FAILED, since, account_ids),
            "period_days": days,
        }

    def two_factor_stats(self, organization_id: Optional[str] = None) -> Dict[str, Any]:
        now = self._now()
        accounts = self.store.list_accounts(organization_id=organization_id)
        enabled = sum(1 for a in accounts if a.two_factor_enabled)
        organizations = self.store.list_organizations()
        if organization_id is not None:
            organizations = [o for o in organizations if o.id == organization_id]
        account_ids = self._account_ids(organization_id)
        recent_since = now - RECENT_WINDOW
        return {
            "total_users": len(accounts),
            "users_2fa_enabled": enabled,
            "adoption_rate": _rate(enabled, len(accounts)),
            "organizations_2fa_required": sum(1 for o in organizations if o.policy.require_two_factor),
            "recent_2fa_activity": self._count(SecurityEventType.TWO_FACTOR_VERIFIED, recent_since, account_ids)
            + self._count(SecurityEventType.TWO_FACTOR_FAILED, recent_since, account_ids),
        }

    def api_key_stats(self, account_id: Optional[str] = None) -> Dict[str, Any]:
        now = self._now()
        keys = self.store.list_api_keys(account_id)
        active = [k for k in keys if k.is_active]
        return {
            "total": len(keys),
            "active": len(active),
            "recently_used": sum(
                1 for k in keys if k.last_used_at is not None and k.last_used_at >= now - RECENT_WINDOW
            ),
            "expiring_soon": sum(
                1
                for k in active
                if k.expires_at is not None and now <= k.expires_at <= now + EXPIRING_SOON_WINDOW
            ),
        }

    def sso_stats(self, organization_id: Optional[str] = None, days: int = DEFAULT_WINDOW_DAYS) -> Dict[str, Any]:
        since = self._now() - timedelta(days=days)
        account_ids = self._account_ids(organization_id)
        logins = self._count(SecurityEventType.SSO_LOGIN, since, account_ids)
        failures = self._count(SecurityEventType.SSO_FAILED, since, account_ids)
        return {
            "total_sso_logins": logins,
            "failed_sso_logins": failures,
            "success_rate": _rate(logins, logins + failures),
            "organizations_with_sso": sum(1 for o in self.store.list_organizations() if o.policy.allow_sso),
            "period_days": days,
        }

    def password_reset_stats(self, organization_id: Optional[str] = None, days: int = DEFAULT_WINDOW_DAYS) -> Dict[str, Any]:
        since = self._now() - timedelta(days=days)
        account_ids = self._account_ids(organization_id)
        # Probes for unknown emails carry no account and are not real requests
        requests = sum(
            1
            for e in self.store.list_events(
                event_type=SecurityEventType.PASSWORD_RESET_REQUEST,
                since=since,
                account_ids=account_ids,
            )
            if e.account_id is not None
        )
        completions = self._count(SecurityEventType.PASSWORD_RESET_COMPLETE, since, account_ids)
        return {
            "reset_requests": requests,
            "reset_completions": completions,
            "completion_rate": _rate(completions, requests),
            "password_changes": self._count(SecurityEventType.PASSWORD_CHANGED, since, account_ids),
            "period_days": days,
        }

    def device_stats(self, account_id: Optional[str] = None) -> Dict[str, Any]:
        now = self._now()
        devices = self.store.list_devices(account_id, include_inactive=True)
        return {
            "total": len(devices),
            "active": sum(1 for d in devices if d.is_active),
            "trusted": sum(1 for d in devices if d.is_active and d.is_trusted),
            "by_type": dict(Counter(d.device_type.value for d in devices)),
            "recent_activity": sum(
                1 for d in devices if d.last_active_at is not None and d.last_active_at >= now - RECENT_WINDOW
            ),
        }

    def event_stats(self, organization_id: Optional[str] = None, days: int = DEFAULT_WINDOW_DAYS) -> Dict[str, Any]:
        since = self._now() - timedelta(days=days)
        account_ids = self._account_ids(organization_id)
        return {
            "total_events": self.store.count_events(since=since, account_ids=account_ids),
            "critical": self.store.count_events(severity=Severity.CRITICAL, since=since, account_ids=account_ids),
            "high": self.store.count_events(severity=Severity.HIGH, since=since, account_ids=account_ids),
            "unresolved": self.store.count_events(is_resolved=False, since=since, account_ids=account_ids),
            "login_failures": self._count(SecurityEventType.LOGIN_FAILED, since, account_ids),
            "suspicious_logins": self._count(SecurityEventType.SUSPICIOUS_LOGIN, since, account_ids),
            "period_days": days,
        }

    def overview(self, organization_id: Optional[str] = None, days: int = DEFAULT_WINDOW_DAYS) -> Dict[str, Any]:
        return {
            "events": self.event_stats(organization_id, days),
            "lockouts": self.lockout_stats(organization_id, days),
            "two_factor": self.two_factor_stats(organization_id),
            "sso": self.sso_stats(organization_id, days),
            "password_reset": self.password_reset_stats(organization_id, days),
            "api_keys": self.api_key_stats(),
            "devices": self.device_stats(),
        }

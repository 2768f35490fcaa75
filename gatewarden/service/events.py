from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from gatewarden.logging import get_logger
from gatewarden.service.common import Clock
from gatewarden.service.errors import NotFoundError
from gatewarden.storage.memory import SecurityStore
from gatewarden.storage.models import (
    SecurityEvent,
    SecurityEventType,
    Severity,
    utcnow,
)

logger = get_logger(__name__)

FAILED_LOGIN_ALERT_WINDOW = timedelta(minutes=5)
FAILED_LOGIN_ALERT_THRESHOLD = 3
LOGIN_HISTORY_WINDOW = timedelta(hours=24)
LOGIN_HISTORY_LIMIT = 10
DISTINCT_IP_WINDOW = timedelta(hours=1)
DISTINCT_IP_THRESHOLD = 3


class SecurityEventLog:
    """Append-only audit ledger with brute-force and anomalous-login detection.

    Writes never raise: a store failure is reported on the operational log and
    ``log_event`` returns ``None`` so the calling security decision proceeds.
    """

    def __init__(self, store: SecurityStore, *, clock: Clock = utcnow) -> None:
        self.store = store
        self._clock = clock

    def _now(self) -> datetime:
        return self._clock()

    async def log_event(
        self,
        event_type: SecurityEventType,
        severity: Severity,
        description: str,
        *,
        account_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[SecurityEvent]:
        try:
            event = self.store.append_event(
                SecurityEvent(
                    event_type=event_type,
                    severity=severity,
                    description=description,
                    account_id=account_id,
                    ip_address=ip_address,
                    user_agent=user_agent,
                    metadata=dict(metadata or {}),
                    created_at=self._now(),
                )
            )
        except Exception as exc:
            logger.error(
                "security_event_write_failed",
                event_type=event_type.value,
                account_id=account_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return None

        try:
            await self._check_for_alerts(event)
        except Exception as exc:
            logger.error(
                "security_alert_check_failed",
                event_id=event.id,
                event_type=event_type.value,
                error_type=type(exc).__name__,
                error=str(exc),
            )
        return event

    async def _check_for_alerts(self, event: SecurityEvent) -> None:
        if not event.account_id:
            return
        if event.event_type is SecurityEventType.LOGIN_FAILED:
            await self._detect_repeated_failures(event)
        elif event.event_type is SecurityEventType.LOGIN_SUCCESS:
            await self._detect_suspicious_login(event)

    async def _detect_repeated_failures(self, event: SecurityEvent) -> None:
        recent_failures = self.store.count_events(
            account_id=event.account_id,
            event_type=SecurityEventType.LOGIN_FAILED,
            since=event.created_at - FAILED_LOGIN_ALERT_WINDOW,
        )
        if recent_failures >= FAILED_LOGIN_ALERT_THRESHOLD:
            await self.log_event(
                SecurityEventType.MULTIPLE_FAILED_LOGINS,
                Severity.HIGH,
                f"Multiple failed login attempts detected: {recent_failures} attempts",
                account_id=event.account_id,
                ip_address=event.ip_address,
                user_agent=event.user_agent,
                metadata={"failure_count": recent_failures},
            )

    async def _detect_suspicious_login(self, event: SecurityEvent) -> None:
        recent_logins = self.store.list_events(
            account_id=event.account_id,
            event_type=SecurityEventType.LOGIN_SUCCESS,
            since=event.created_at - LOGIN_HISTORY_WINDOW,
            until=event.created_at,
            limit=LOGIN_HISTORY_LIMIT,
        )
        previous = next((e for e in recent_logins if e.id != event.id), None)
        if previous is not None:
            if event.ip_address != previous.ip_address:
                await self.log_event(
                    SecurityEventType.SUSPICIOUS_LOGIN,
                    Severity.MEDIUM,
                    "Login from different IP address detected",
                    account_id=event.account_id,
                    ip_address=event.ip_address,
                    user_agent=event.user_agent,
                    metadata={
                        "previous_ip": previous.ip_address,
                        "current_ip": event.ip_address,
                        "seconds_since_previous": (
                            event.created_at - previous.created_at
                        ).total_seconds(),
                    },
                )
            current_location = event.metadata.get("location")
            previous_location = previous.metadata.get("location")
            if current_location and previous_location and current_location != previous_location:
                await self.log_event(
                    SecurityEventType.SUSPICIOUS_LOGIN,
                    Severity.HIGH,
                    "Login from different location detected",
                    account_id=event.account_id,
                    ip_address=event.ip_address,
                    user_agent=event.user_agent,
                    metadata={
                        "previous_location": previous_location,
                        "current_location": current_location,
                    },
                )

        hour_ago = event.created_at - DISTINCT_IP_WINDOW
        unique_ips = sorted(
            {e.ip_address for e in recent_logins if e.created_at > hour_ago and e.ip_address}
        )
        if len(unique_ips) > DISTINCT_IP_THRESHOLD:
            await self.log_event(
                SecurityEventType.SUSPICIOUS_LOGIN,
                Severity.CRITICAL,
                "Multiple IP addresses used in short time period",
                account_id=event.account_id,
                ip_address=event.ip_address,
                user_agent=event.user_agent,
                metadata={"unique_ips": unique_ips, "time_span": "1 hour"},
            )

    def get_account_events(self, account_id: str, limit: int = 50) -> List[SecurityEvent]:
        return self.store.list_events(account_id=account_id, limit=limit)

    def list_events(
        self,
        *,
        severity: Optional[Severity] = None,
        event_type: Optional[SecurityEventType] = None,
        account_id: Optional[str] = None,
        organization_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        is_resolved: Optional[bool] = None,
        limit: int = 100,
    ) -> List[SecurityEvent]:
        account_ids = None
        if organization_id is not None:
            account_ids = [a.id for a in self.store.list_accounts(organization_id=organization_id)]
        return self.store.list_events(
            account_id=account_id,
            account_ids=account_ids,
            event_type=event_type,
            severity=severity,
            is_resolved=is_resolved,
            since=start,
            until=end,
            limit=limit,
        )

    def resolve_event(self, event_id: str, resolved_by: str) -> SecurityEvent:
        event = self.store.resolve_event(event_id, resolved_by, self._now())
        if event is None:
            raise NotFoundError("security event not found", detail={"event_id": event_id})
        logger.info("security_event_resolved", event_id=event_id, resolved_by=resolved_by)
        return event

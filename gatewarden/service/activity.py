from __future__ import annotations

from datetime import datetime, timedelta

from gatewarden.logging import get_logger
from gatewarden.service.common import Clock, PolicyResolver
from gatewarden.service.events import SecurityEventLog
from gatewarden.service.sessions import SessionRegistry
from gatewarden.storage.memory import SecurityStore
from gatewarden.storage.models import (
    SecurityEventType,
    Severity,
    TerminationReason,
    utcnow,
)

logger = get_logger(__name__)

ACTIVE_THRESHOLD = timedelta(minutes=5)


class ActivityTracker:
    """Heartbeats and idle-timeout sweeps over account sessions."""

    def __init__(
        self,
        store: SecurityStore,
        events: SecurityEventLog,
        sessions: SessionRegistry,
        policies: PolicyResolver,
        *,
        inactive_cutoff_minutes: int = 30,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.events = events
        self.sessions = sessions
        self.policies = policies
        self.inactive_cutoff = timedelta(minutes=inactive_cutoff_minutes)
        self._clock = clock

    def _now(self) -> datetime:
        return self._clock()

    async def update_user_activity(self, account_id: str) -> None:
        updated = self.store.update_account(
            account_id, last_active_at=self._now(), is_online=True
        )
        if updated is None:
            logger.warning("activity_unknown_account", account_id=account_id)

    def check_session_expiry(self, account_id: str) -> bool:
        """True when the account has been idle longer than its policy allows."""
        account = self.store.get_account(account_id)
        if account is None or account.last_active_at is None:
            return False
        timeout = timedelta(minutes=self.policies.for_account(account).session_timeout_minutes)
        return self._now() - account.last_active_at > timeout

    def is_user_active(self, account_id: str) -> bool:
        account = self.store.get_account(account_id)
        if account is None or account.last_active_at is None:
            return False
        return self._now() - account.last_active_at < ACTIVE_THRESHOLD

    async def expire_user_session(
        self, account_id: str, reason: TerminationReason = TerminationReason.INACTIVITY
    ) -> int:
        terminated = await self.sessions.terminate_all_user_sessions(account_id, reason)
        await self.events.log_event(
            SecurityEventType.SESSION_TIMEOUT,
            Severity.LOW,
            f"Session expired due to {reason.value.lower()}",
            account_id=account_id,
            metadata={"reason": reason.value, "terminated_sessions": terminated},
        )
        return terminated

    async def cleanup_inactive_sessions(self) -> int:
        """Expire every online account idle past the cutoff; one failure never stops the sweep."""
        cutoff = self._now() - self.inactive_cutoff
        expired = 0
        for account in self.store.list_accounts(is_online=True, last_active_before=cutoff):
            try:
                await self.expire_user_session(account.id, TerminationReason.INACTIVITY)
                expired += 1
            except Exception as exc:
                logger.error(
                    "inactive_session_expiry_failed",
                    account_id=account.id,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
        if expired:
            logger.info("inactive_sessions_expired", accounts=expired)
        return expired

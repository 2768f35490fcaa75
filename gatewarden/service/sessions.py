from __future__ import annotations

from datetime import datetime, timedelta
from typing import List, Optional

from gatewarden.logging import get_logger
from gatewarden.service.common import Clock, PolicyResolver, generate_token
from gatewarden.service.errors import (
    NotFoundError,
    SessionExpiredError,
    SessionNotFoundError,
)
from gatewarden.service.events import SecurityEventLog
from gatewarden.service.results import Outcome
from gatewarden.storage.errors import ConstraintViolation
from gatewarden.storage.memory import SecurityStore
from gatewarden.storage.models import (
    SecurityEventType,
    Session,
    Severity,
    TerminationReason,
    utcnow,
)

logger = get_logger(__name__)

# 64 bytes of entropy, hex encoded
SESSION_TOKEN_BYTES = 64
_TOKEN_ATTEMPTS = 3


class SessionRegistry:
    """Issues, validates, extends and terminates session tokens."""

    def __init__(
        self,
        store: SecurityStore,
        events: SecurityEventLog,
        policies: PolicyResolver,
        *,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.events = events
        self.policies = policies
        self._clock = clock

    def _now(self) -> datetime:
        return self._clock()

    async def create_session(
        self,
        account_id: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        device_id: Optional[str] = None,
        location: Optional[str] = None,
        timeout_minutes: Optional[int] = None,
        two_factor_pending: bool = False,
    ) -> Session:
        account = self.store.get_account(account_id)
        if account is None:
            raise NotFoundError("account not found", detail={"account_id": account_id})
        timeout = timeout_minutes or self.policies.for_account(account).session_timeout_minutes
        now = self._now()
        session: Optional[Session] = None
        for _ in range(_TOKEN_ATTEMPTS):
            candidate = Session(
                token=generate_token(SESSION_TOKEN_BYTES),
                account_id=account_id,
                expires_at=now + timedelta(minutes=timeout),
                device_id=device_id,
                ip_address=ip_address,
                user_agent=user_agent,
                location=location,
                two_factor_pending=two_factor_pending,
                created_at=now,
                last_active_at=now,
            )
            try:
                session = self.store.create_session(candidate)
                break
            except ConstraintViolation as exc:
                if exc.detail.get("field") != "token":
                    raise
                logger.warning("session_token_collision", account_id=account_id)
        if session is None:
            raise ConstraintViolation("could not allocate a unique session token")
        self.store.update_account(account_id, is_online=True, last_active_at=now)
        logger.info(
            "session_created",
            account_id=account_id,
            session_id=session.id,
            timeout_minutes=timeout,
            device_id=device_id,
        )
        return session

    async def validate_session(self, token: str) -> Outcome[Session]:
        session = self.store.get_session(token)
        if session is None or not session.is_active:
            return Outcome.fail(SessionNotFoundError("Session not found or inactive"))

        now = self._now()
        if session.expires_at < now:
            await self.terminate_session(token, TerminationReason.EXPIRED)
            await self.events.log_event(
                SecurityEventType.SESSION_TIMEOUT,
                Severity.LOW,
                "Session expired due to timeout",
                account_id=session.account_id,
                ip_address=session.ip_address,
                user_agent=session.user_agent,
                metadata={"session_id": session.id},
            )
            return Outcome.fail(SessionExpiredError("Session has expired"))

        self.store.update_session(token, last_active_at=now)
        self.store.update_account(session.account_id, last_active_at=now, is_online=True)
        return Outcome.ok(session)

    async def extend_session(self, token: str, timeout_minutes: Optional[int] = None) -> Session:
        session = self.store.get_session(token)
        if session is None or not session.is_active:
            raise SessionNotFoundError("Session not found or inactive")
        timeout = timeout_minutes or self.policies.for_account_id(
            session.account_id
        ).session_timeout_minutes
        now = self._now()
        updated = self.store.update_session(
            token, expires_at=now + timedelta(minutes=timeout), last_active_at=now
        )
        if updated is None:
            raise SessionNotFoundError("Session not found or inactive")
        return updated

    async def terminate_session(
        self, token: str, reason: TerminationReason = TerminationReason.USER_LOGOUT
    ) -> bool:
        session = self.store.get_session(token)
        if session is None or not session.is_active:
            return False
        now = self._now()
        self.store.update_session(
            token, is_active=False, terminated_at=now, termination_reason=reason
        )
        if self.store.count_active_sessions(session.account_id) == 0:
            self.store.update_account(session.account_id, is_online=False)
        logger.info(
            "session_terminated",
            account_id=session.account_id,
            session_id=session.id,
            reason=reason.value,
        )
        return True

    async def terminate_all_user_sessions(
        self,
        account_id: str,
        reason: TerminationReason = TerminationReason.ADMIN_ACTION,
    ) -> int:
        terminated = self.store.terminate_sessions(
            account_id=account_id, reason=reason, now=self._now()
        )
        self.store.update_account(account_id, is_online=False)
        logger.info(
            "sessions_terminated",
            account_id=account_id,
            count=terminated,
            reason=reason.value,
        )
        return terminated

    async def terminate_device_sessions(self, device_id: str, account_id: str) -> int:
        terminated = self.store.terminate_sessions(
            device_id=device_id,
            account_id=account_id,
            reason=TerminationReason.DEVICE_REMOVED,
            now=self._now(),
        )
        if self.store.count_active_sessions(account_id) == 0:
            self.store.update_account(account_id, is_online=False)
        return terminated

    def get_user_sessions(self, account_id: str) -> List[Session]:
        sessions = self.store.list_sessions(account_id, active_only=True)
        return sorted(sessions, key=lambda s: s.last_active_at, reverse=True)

    async def check_session_limits(
        self, account_id: str, max_sessions: Optional[int] = None
    ) -> List[Session]:
        """Make room for one more session by evicting the least recently active ones.

        Ties on ``last_active_at`` fall back to the oldest ``created_at``.
        Returns the evicted sessions.
        """
        limit = max_sessions or self.policies.for_account_id(account_id).max_sessions
        active = sorted(
            self.store.list_sessions(account_id, active_only=True),
            key=lambda s: (s.last_active_at, s.created_at),
        )
        evicted: List[Session] = []
        while len(active) >= limit:
            oldest = active.pop(0)
            await self.terminate_session(oldest.token, TerminationReason.SESSION_LIMIT_EXCEEDED)
            await self.events.log_event(
                SecurityEventType.SESSION_TERMINATED,
                Severity.LOW,
                "Session ended to stay within the concurrent session limit",
                account_id=account_id,
                ip_address=oldest.ip_address,
                user_agent=oldest.user_agent,
                metadata={"session_id": oldest.id, "max_sessions": limit},
            )
            evicted.append(oldest)
        return evicted

    async def cleanup_expired_sessions(self) -> int:
        now = self._now()
        cleaned = 0
        for session in self.store.list_expired_sessions(now):
            if await self.terminate_session(session.token, TerminationReason.EXPIRED):
                cleaned += 1
        if cleaned:
            logger.info("expired_sessions_cleaned", count=cleaned)
        return cleaned

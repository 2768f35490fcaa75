"""Tests for session issuance, validation, limits and termination."""

from datetime import timedelta

import pytest

from conftest import events_of
from gatewarden.service.errors import NotFoundError, SessionExpiredError, SessionNotFoundError
from gatewarden.storage.models import SecurityEventType, TerminationReason


class TestCreateAndValidate:
    async def test_create_session(self, services, clock, make_account):
        account = make_account()

        session = await services.sessions.create_session(
            account.id, ip_address="10.0.0.1", user_agent="pytest"
        )

        assert len(session.token) == 128
        assert session.expires_at == clock() + timedelta(minutes=5)
        assert services.store.get_account(account.id).is_online

    async def test_tokens_are_unique(self, services, make_account):
        account = make_account()
        first = await services.sessions.create_session(account.id)
        second = await services.sessions.create_session(account.id)
        assert first.token != second.token

    async def test_create_for_unknown_account(self, services):
        with pytest.raises(NotFoundError):
            await services.sessions.create_session("missing")

    async def test_validate_touches_activity(self, services, clock, make_account):
        account = make_account()
        session = await services.sessions.create_session(account.id)
        clock.advance(minutes=2)

        outcome = await services.sessions.validate_session(session.token)

        assert outcome.success
        assert outcome.value.last_active_at == clock()
        assert services.store.get_account(account.id).last_active_at == clock()

    async def test_unknown_token(self, services):
        outcome = await services.sessions.validate_session("nope")
        assert not outcome.success
        assert isinstance(outcome.error, SessionNotFoundError)
        assert outcome.error_code == "not_found"

    async def test_expired_session_is_terminated(self, services, clock, make_account):
        account = make_account()
        session = await services.sessions.create_session(account.id)
        clock.advance(minutes=6)

        outcome = await services.sessions.validate_session(session.token)

        assert isinstance(outcome.error, SessionExpiredError)
        stored = services.store.get_session(session.token)
        assert stored.is_active is False
        assert stored.termination_reason is TerminationReason.EXPIRED
        assert len(events_of(services.store, SecurityEventType.SESSION_TIMEOUT)) == 1
        # A second look reports the session as gone rather than expired again
        again = await services.sessions.validate_session(session.token)
        assert isinstance(again.error, SessionNotFoundError)

    async def test_extend_session(self, services, clock, make_account):
        account = make_account()
        session = await services.sessions.create_session(account.id)
        clock.advance(minutes=4)

        extended = await services.sessions.extend_session(session.token, timeout_minutes=30)

        assert (extended.expires_at - clock()).total_seconds() == 30 * 60

    async def test_extend_unknown_session(self, services):
        with pytest.raises(SessionNotFoundError):
            await services.sessions.extend_session("nope")


class TestSessionLimits:
    async def test_oldest_session_is_evicted(self, services, clock, make_account):
        account = make_account()
        created = []
        for _ in range(5):
            created.append(await services.sessions.create_session(account.id))
            clock.advance(seconds=30)

        evicted = await services.sessions.check_session_limits(account.id)
        newest = await services.sessions.create_session(account.id)

        assert [s.id for s in evicted] == [created[0].id]
        assert services.store.get_session(created[0].token).termination_reason is (
            TerminationReason.SESSION_LIMIT_EXCEEDED
        )
        active = services.sessions.get_user_sessions(account.id)
        assert len(active) == 5
        assert active[0].id == newest.id

    async def test_recent_activity_protects_older_session(self, services, clock, make_account):
        account = make_account()
        first = await services.sessions.create_session(account.id)
        clock.advance(seconds=30)
        second = await services.sessions.create_session(account.id)
        clock.advance(seconds=30)
        await services.sessions.validate_session(first.token)

        evicted = await services.sessions.check_session_limits(account.id, max_sessions=2)

        assert [s.id for s in evicted] == [second.id]

    async def test_under_limit_evicts_nothing(self, services, make_account):
        account = make_account()
        await services.sessions.create_session(account.id)
        assert await services.sessions.check_session_limits(account.id) == []


class TestTermination:
    async def test_terminate_session(self, services, make_account):
        account = make_account()
        session = await services.sessions.create_session(account.id)

        assert await services.sessions.terminate_session(session.token)
        assert not await services.sessions.terminate_session(session.token)
        assert services.store.get_account(account.id).is_online is False

    async def test_terminate_all(self, services, make_account):
        account = make_account()
        other = make_account("bob@example.com")
        for _ in range(3):
            await services.sessions.create_session(account.id)
        keep = await services.sessions.create_session(other.id)

        count = await services.sessions.terminate_all_user_sessions(
            account.id, TerminationReason.PASSWORD_RESET
        )

        assert count == 3
        assert services.sessions.get_user_sessions(account.id) == []
        assert services.store.get_session(keep.token).is_active

    async def test_cleanup_expired_sessions(self, services, clock, make_account):
        account = make_account()
        await services.sessions.create_session(account.id)
        await services.sessions.create_session(account.id, timeout_minutes=60)
        clock.advance(minutes=10)

        assert await services.sessions.cleanup_expired_sessions() == 1
        assert len(services.sessions.get_user_sessions(account.id)) == 1

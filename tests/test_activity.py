"""Tests for activity heartbeats and the idle sweep."""

from conftest import events_of
from gatewarden.storage.models import SecurityEventType, TerminationReason


class TestHeartbeat:
    async def test_update_marks_online(self, services, clock, make_account):
        account = make_account()

        await services.activity.update_user_activity(account.id)

        stored = services.store.get_account(account.id)
        assert stored.is_online
        assert stored.last_active_at == clock()
        assert services.activity.is_user_active(account.id)

    async def test_user_goes_inactive_after_five_minutes(self, services, clock, make_account):
        account = make_account()
        await services.activity.update_user_activity(account.id)

        clock.advance(minutes=4)
        assert services.activity.is_user_active(account.id)
        assert not services.activity.check_session_expiry(account.id)

        clock.advance(minutes=2)
        assert not services.activity.is_user_active(account.id)
        assert services.activity.check_session_expiry(account.id)

    async def test_unknown_account(self, services):
        await services.activity.update_user_activity("missing")

        assert not services.activity.is_user_active("missing")
        assert not services.activity.check_session_expiry("missing")


class TestInactiveSweep:
    async def test_idle_sessions_are_expired(self, services, clock, make_account):
        idle = make_account()
        busy = make_account("bob@example.com")
        idle_session = await services.sessions.create_session(idle.id)
        busy_session = await services.sessions.create_session(busy.id)
        await services.activity.update_user_activity(idle.id)
        clock.advance(minutes=25)
        await services.activity.update_user_activity(busy.id)
        clock.advance(minutes=6)

        assert await services.activity.cleanup_inactive_sessions() == 1

        ended = services.store.get_session(idle_session.token)
        assert ended.termination_reason is TerminationReason.INACTIVITY
        assert services.store.get_session(busy_session.token).is_active
        assert not services.store.get_account(idle.id).is_online
        timeouts = events_of(services.store, SecurityEventType.SESSION_TIMEOUT)
        assert [e.account_id for e in timeouts] == [idle.id]
        assert await services.activity.cleanup_inactive_sessions() == 0

    async def test_one_failure_does_not_stop_the_sweep(self, services, clock, monkeypatch, make_account):
        alice = make_account()
        bob = make_account("bob@example.com")
        for account in (alice, bob):
            await services.sessions.create_session(account.id)
            await services.activity.update_user_activity(account.id)
        clock.advance(minutes=31)

        original = services.activity.expire_user_session

        async def flaky(account_id, reason=TerminationReason.INACTIVITY):
            if account_id == alice.id:
                raise RuntimeError("store unavailable")
            return await original(account_id, reason)

        monkeypatch.setattr(services.activity, "expire_user_session", flaky)

        assert await services.activity.cleanup_inactive_sessions() == 1
        assert services.store.list_sessions(bob.id) == []
        assert len(services.store.list_sessions(alice.id)) == 1

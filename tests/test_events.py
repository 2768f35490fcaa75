"""Tests for the security event ledger and its alert detectors."""

from unittest.mock import MagicMock

import pytest

from conftest import events_of
from gatewarden.service.errors import NotFoundError
from gatewarden.service.events import SecurityEventLog
from gatewarden.storage.models import SecurityEventType, Severity


async def _failed(events, account_id, ip="10.0.0.1"):
    await events.log_event(
        SecurityEventType.LOGIN_FAILED,
        Severity.MEDIUM,
        "Failed login attempt",
        account_id=account_id,
        ip_address=ip,
    )


async def _success(events, account_id, ip, location=None):
    await events.log_event(
        SecurityEventType.LOGIN_SUCCESS,
        Severity.LOW,
        "Successful login",
        account_id=account_id,
        ip_address=ip,
        metadata={"location": location} if location else {},
    )


class TestLogEvent:
    async def test_appends_with_clock_timestamp(self, services, clock):
        event = await services.events.log_event(
            SecurityEventType.SETTINGS_CHANGED, Severity.MEDIUM, "changed", metadata={"k": "v"}
        )

        assert event is not None
        assert event.created_at == clock()
        assert event.metadata == {"k": "v"}
        assert services.store.events == [event]

    async def test_store_failure_does_not_raise(self):
        store = MagicMock()
        store.append_event.side_effect = RuntimeError("disk full")
        events = SecurityEventLog(store)

        result = await events.log_event(SecurityEventType.LOGOUT, Severity.LOW, "bye")

        assert result is None


class TestRepeatedFailures:
    async def test_third_failure_in_window_raises_alert(self, services, clock, make_account):
        account = make_account()

        await _failed(services.events, account.id)
        await _failed(services.events, account.id)
        assert events_of(services.store, SecurityEventType.MULTIPLE_FAILED_LOGINS) == []

        await _failed(services.events, account.id)
        alerts = events_of(services.store, SecurityEventType.MULTIPLE_FAILED_LOGINS)
        assert len(alerts) == 1
        assert alerts[0].severity is Severity.HIGH
        assert alerts[0].metadata["failure_count"] == 3

    async def test_failures_outside_window_do_not_alert(self, services, clock, make_account):
        account = make_account()
        for _ in range(3):
            await _failed(services.events, account.id)
            clock.advance(minutes=3)

        assert events_of(services.store, SecurityEventType.MULTIPLE_FAILED_LOGINS) == []

    async def test_events_without_account_skip_detection(self, services):
        for _ in range(5):
            await _failed(services.events, None)
        assert events_of(services.store, SecurityEventType.MULTIPLE_FAILED_LOGINS) == []


class TestSuspiciousLogins:
    async def test_new_ip_is_flagged(self, services, clock, make_account):
        account = make_account()
        await _success(services.events, account.id, "10.0.0.1")
        clock.advance(minutes=10)
        await _success(services.events, account.id, "10.0.0.2")

        alerts = events_of(services.store, SecurityEventType.SUSPICIOUS_LOGIN)
        assert len(alerts) == 1
        assert alerts[0].severity is Severity.MEDIUM
        assert alerts[0].metadata["previous_ip"] == "10.0.0.1"
        assert alerts[0].metadata["current_ip"] == "10.0.0.2"

    async def test_same_ip_is_not_flagged(self, services, clock, make_account):
        account = make_account()
        await _success(services.events, account.id, "10.0.0.1")
        clock.advance(minutes=10)
        await _success(services.events, account.id, "10.0.0.1")

        assert events_of(services.store, SecurityEventType.SUSPICIOUS_LOGIN) == []

    async def test_location_change_is_high(self, services, clock, make_account):
        account = make_account()
        await _success(services.events, account.id, "10.0.0.1", location="Berlin")
        clock.advance(minutes=10)
        await _success(services.events, account.id, "10.0.0.1", location="Lima")

        alerts = events_of(services.store, SecurityEventType.SUSPICIOUS_LOGIN)
        assert [a.severity for a in alerts] == [Severity.HIGH]
        assert alerts[0].metadata["current_location"] == "Lima"

    async def test_many_addresses_in_an_hour_is_critical(self, services, clock, make_account):
        account = make_account()
        for n in range(4):
            await _success(services.events, account.id, f"10.0.0.{n}")
            clock.advance(minutes=5)

        critical = [
            e
            for e in events_of(services.store, SecurityEventType.SUSPICIOUS_LOGIN)
            if e.severity is Severity.CRITICAL
        ]
        assert len(critical) == 1
        assert len(critical[0].metadata["unique_ips"]) == 4

    async def test_logins_a_day_apart_are_not_compared(self, services, clock, make_account):
        account = make_account()
        await _success(services.events, account.id, "10.0.0.1")
        clock.advance(hours=25)
        await _success(services.events, account.id, "10.0.0.2")

        assert events_of(services.store, SecurityEventType.SUSPICIOUS_LOGIN) == []


class TestQueries:
    async def test_list_events_filters_by_organization(self, services, make_account):
        a = make_account("a@example.com", organization_id="org-a")
        b = make_account("b@example.com", organization_id="org-b")
        await services.events.log_event(SecurityEventType.LOGOUT, Severity.LOW, "a", account_id=a.id)
        await services.events.log_event(SecurityEventType.LOGOUT, Severity.LOW, "b", account_id=b.id)

        listed = services.events.list_events(organization_id="org-a")

        assert [e.account_id for e in listed] == [a.id]

    async def test_list_events_newest_first_with_limit(self, services, clock):
        for n in range(3):
            await services.events.log_event(SecurityEventType.LOGOUT, Severity.LOW, f"e{n}")
            clock.advance(seconds=1)

        listed = services.events.list_events(limit=2)

        assert [e.description for e in listed] == ["e2", "e1"]

    async def test_resolve_event(self, services, clock):
        event = await services.events.log_event(
            SecurityEventType.SUSPICIOUS_LOGIN, Severity.HIGH, "odd"
        )

        resolved = services.events.resolve_event(event.id, "admin-1")

        assert resolved.is_resolved
        assert resolved.resolved_by == "admin-1"
        assert resolved.resolved_at == clock()

    def test_resolve_unknown_event(self, services):
        with pytest.raises(NotFoundError):
            services.events.resolve_event("missing", "admin-1")

    async def test_account_events(self, services, clock, make_account):
        alice = make_account()
        bob = make_account("bob@example.com")
        for account in (alice, bob, alice):
            await services.events.log_event(
                SecurityEventType.SETTINGS_CHANGED, Severity.LOW, "changed", account_id=account.id
            )
            clock.advance(seconds=1)

        history = services.events.get_account_events(alice.id)

        assert len(history) == 2
        assert {e.account_id for e in history} == {alice.id}
        assert services.events.get_account_events(alice.id, limit=1) == history[:1]

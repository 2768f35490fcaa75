"""Tests for emailed second-factor codes."""

import re

import pytest

from conftest import STRONG_PASSWORD, build_services, events_of
from gatewarden.config import OrganizationPolicy, Settings
from gatewarden.service import two_factor as two_factor_module
from gatewarden.service.errors import DeliveryError, InvalidTokenError, NotFoundError
from gatewarden.service.notifications import NotificationCategory
from gatewarden.service.two_factor import generate_backup_codes, generate_code
from gatewarden.storage.models import Organization, SecurityEventType


def _sent_code(notifier):
    return notifier.of(NotificationCategory.TWO_FACTOR_CODE)[-1][2]["code"]


class TestCodes:
    def test_generate_code_shape(self):
        for _ in range(50):
            code = generate_code()
            assert len(code) == 6
            assert code.isdigit()
            assert code[0] != "0"

    def test_backup_codes(self):
        codes = generate_backup_codes()
        assert len(codes) == 10
        assert len(set(codes)) == 10
        assert all(re.fullmatch(r"[0-9A-F]{16}", c) for c in codes)


class TestSendAndVerify:
    async def test_code_is_single_use(self, services, notifier, clock, make_account):
        account = make_account()

        sent = await services.two_factor.generate_and_send_code(account.id)
        code = _sent_code(notifier)

        assert sent.success
        assert sent.value == clock() + services.two_factor.code_ttl
        assert (await services.two_factor.verify_code(account.id, code)).success
        replay = await services.two_factor.verify_code(account.id, code)
        assert isinstance(replay.error, InvalidTokenError)

    async def test_wrong_code_is_logged(self, services, make_account):
        account = make_account()
        await services.two_factor.generate_and_send_code(account.id)

        outcome = await services.two_factor.verify_code(account.id, "000000")

        assert not outcome.success
        assert outcome.error_code == "invalid_token"
        assert len(events_of(services.store, SecurityEventType.TWO_FACTOR_FAILED)) == 1

    async def test_expired_code(self, services, notifier, clock, make_account):
        account = make_account()
        await services.two_factor.generate_and_send_code(account.id)
        clock.advance(minutes=11)

        outcome = await services.two_factor.verify_code(account.id, _sent_code(notifier))

        assert not outcome.success

    async def test_new_code_supersedes_old(self, services, notifier, monkeypatch, make_account):
        codes = iter(["111111", "222222"])
        monkeypatch.setattr(two_factor_module, "generate_code", lambda: next(codes))
        account = make_account()

        await services.two_factor.generate_and_send_code(account.id)
        await services.two_factor.generate_and_send_code(account.id)

        assert not (await services.two_factor.verify_code(account.id, "111111")).success
        assert (await services.two_factor.verify_code(account.id, "222222")).success

    async def test_codes_are_per_account(self, services, notifier, make_account):
        alice = make_account()
        bob = make_account("bob@example.com")
        await services.two_factor.generate_and_send_code(alice.id)

        outcome = await services.two_factor.verify_code(bob.id, _sent_code(notifier))

        assert not outcome.success

    async def test_delivery_failure_leaves_no_live_code(self, services, notifier, make_account):
        account = make_account()
        notifier.fail = True

        outcome = await services.two_factor.generate_and_send_code(account.id)

        assert isinstance(outcome.error, DeliveryError)
        assert outcome.error.status_code == 503
        assert services.store.list_second_factor_tokens(account.id, unused_only=True) == []
        assert events_of(services.store, SecurityEventType.TWO_FACTOR_SENT) == []

    async def test_unknown_account(self, services):
        outcome = await services.two_factor.generate_and_send_code("missing")
        assert isinstance(outcome.error, NotFoundError)

    async def test_cleanup_removes_used_and_expired(self, services, notifier, clock, make_account):
        account = make_account()
        await services.two_factor.generate_and_send_code(account.id)
        await services.two_factor.verify_code(account.id, _sent_code(notifier))
        await services.two_factor.generate_and_send_code(account.id)
        clock.advance(minutes=11)

        assert await services.two_factor.cleanup_expired_tokens() == 2
        assert services.store.list_second_factor_tokens(account.id) == []


class TestToggles:
    async def test_enable_and_disable(self, services, notifier, make_account):
        account = make_account()

        await services.two_factor.enable_2fa(account.id)
        assert services.two_factor.is_2fa_enabled(account.id)

        await services.two_factor.generate_and_send_code(account.id)
        await services.two_factor.disable_2fa(account.id)

        assert not services.two_factor.is_2fa_enabled(account.id)
        assert services.store.list_second_factor_tokens(account.id, unused_only=True) == []
        assert len(events_of(services.store, SecurityEventType.TWO_FACTOR_DISABLED)) == 1

    async def test_enable_unknown_account(self, services):
        with pytest.raises(NotFoundError):
            await services.two_factor.enable_2fa("missing")

    async def test_organization_requirement(self, services, make_account):
        services.store.create_organization(Organization(id="org-1", name="Org"))
        member = make_account(organization_id="org-1")
        loner = make_account("solo@example.com")

        assert not services.two_factor.is_required_2fa(member.id)

        await services.two_factor.enforce_for_organization("org-1", True)

        assert services.two_factor.is_required_2fa(member.id)
        assert services.two_factor.is_2fa_enabled(member.id)
        assert not services.two_factor.is_required_2fa(loner.id)
        assert services.store.get_organization("org-1").policy.require_two_factor

    async def test_required_by_policy_object(self, services, make_account):
        services.store.create_organization(
            Organization(id="org-2", name="Strict", policy=OrganizationPolicy(require_two_factor=True))
        )
        member = make_account(organization_id="org-2")
        assert services.two_factor.is_required_2fa(member.id)

    async def test_enforce_unknown_organization(self, services):
        with pytest.raises(NotFoundError):
            await services.two_factor.enforce_for_organization("missing", True)

    async def test_default_policy_covers_accounts_without_organization(self, clock, notifier):
        services = build_services(
            clock,
            notifier,
            Settings(device_fingerprint_secret="test-fingerprint-secret", require_two_factor=True),
        )
        account = services.store.create_account("solo@example.com")
        services.store.save_password(account.id, services.hashing.hash(STRONG_PASSWORD))

        assert not services.two_factor.is_2fa_enabled(account.id)
        assert services.two_factor.is_required_2fa(account.id)

        result = await services.auth.login(
            "solo@example.com", STRONG_PASSWORD, ip_address="10.0.0.1", user_agent="pytest"
        )
        login = result.unwrap()
        assert login.two_factor_required
        assert login.session.two_factor_pending
        assert len(notifier.of(NotificationCategory.TWO_FACTOR_CODE)) == 1

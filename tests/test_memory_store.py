"""Tests for the in-process security store."""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from gatewarden.storage.errors import ConstraintViolation
from gatewarden.storage.memory import MemoryStore
from gatewarden.storage.models import Organization, SecondFactorToken, Session


@pytest.fixture
def store():
    return MemoryStore()


class TestAccounts:
    def test_email_is_normalized_and_unique(self, store):
        account = store.create_account("  Alice@Example.COM ")

        assert account.email == "alice@example.com"
        assert store.get_account_by_email("ALICE@example.com").id == account.id
        with pytest.raises(ConstraintViolation) as exc_info:
            store.create_account("alice@example.com")
        assert exc_info.value.field == "email"
        assert exc_info.value.detail == {"field": "email"}

    def test_failed_login_increment_is_atomic(self, store):
        account = store.create_account("alice@example.com")

        def hammer():
            for _ in range(100):
                store.increment_failed_logins(account.id)

        threads = [threading.Thread(target=hammer) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert store.get_account(account.id).failed_login_attempts == 800

    def test_increment_unknown_account(self, store):
        with pytest.raises(ConstraintViolation) as exc_info:
            store.increment_failed_logins("missing")
        assert exc_info.value.field is None
        assert exc_info.value.detail == {"account_id": "missing"}

    def test_password_requires_account(self, store):
        with pytest.raises(ConstraintViolation):
            store.save_password("missing", "hash")


class TestSessionsAndTokens:
    def test_duplicate_session_token(self, store):
        account = store.create_account("alice@example.com")
        expires = datetime.now(timezone.utc) + timedelta(minutes=5)
        store.create_session(Session(token="t" * 128, account_id=account.id, expires_at=expires))

        with pytest.raises(ConstraintViolation) as exc_info:
            store.create_session(Session(token="t" * 128, account_id=account.id, expires_at=expires))
        assert exc_info.value.field == "token"

    def test_second_factor_code_is_consumed_once(self, store):
        account = store.create_account("alice@example.com")
        now = datetime.now(timezone.utc)
        store.create_second_factor_token(
            SecondFactorToken(account_id=account.id, code="123456", expires_at=now + timedelta(minutes=10))
        )

        assert store.consume_second_factor_token(account.id, "123456", now) is not None
        assert store.consume_second_factor_token(account.id, "123456", now) is None

    def test_expired_code_is_not_consumed(self, store):
        account = store.create_account("alice@example.com")
        now = datetime.now(timezone.utc)
        store.create_second_factor_token(
            SecondFactorToken(account_id=account.id, code="123456", expires_at=now - timedelta(seconds=1))
        )

        assert store.consume_second_factor_token(account.id, "123456", now) is None
        assert store.delete_stale_second_factor_tokens(now) == 1

    def test_reset_token_is_redeemed_by_one_caller(self, store):
        account = store.create_account("alice@example.com")
        now = datetime.now(timezone.utc)
        store.update_account(
            account.id, reset_token_hash="digest", reset_token_expires_at=now + timedelta(hours=1)
        )
        winners = []

        def redeem():
            if store.consume_reset_token("digest", now) is not None:
                winners.append(threading.get_ident())

        threads = [threading.Thread(target=redeem) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(winners) == 1
        assert store.get_account(account.id).reset_token_hash is None
        assert store.consume_reset_token("digest", now) is None

    def test_expired_reset_token_is_not_redeemed(self, store):
        account = store.create_account("alice@example.com")
        now = datetime.now(timezone.utc)
        store.update_account(
            account.id, reset_token_hash="digest", reset_token_expires_at=now - timedelta(seconds=1)
        )

        assert store.consume_reset_token("digest", now) is None
        assert store.get_account(account.id).reset_token_hash == "digest"


class TestOrganizations:
    def test_duplicate_organization(self, store):
        store.create_organization(Organization(id="org-1", name="Acme"))

        with pytest.raises(ConstraintViolation) as exc_info:
            store.create_organization(Organization(id="org-1", name="Acme again"))
        assert exc_info.value.field == "id"
